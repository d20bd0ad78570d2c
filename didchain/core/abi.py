"""
Identity Registry ABI

Read-only subset of the ERC-1056 style registry: the two view functions the
resolver calls and the three change events it replays.
"""

REGISTRY_ABI = [
    {
        "type": "function",
        "name": "changed",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "owners",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "address"}],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "event",
        "name": "DIDOwnerChanged",
        "anonymous": False,
        "inputs": [
            {"name": "identity", "type": "address", "indexed": True},
            {"name": "owner", "type": "address", "indexed": False},
            {"name": "previousChange", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "DIDDelegateChanged",
        "anonymous": False,
        "inputs": [
            {"name": "identity", "type": "address", "indexed": True},
            {"name": "delegateType", "type": "bytes32", "indexed": False},
            {"name": "delegate", "type": "address", "indexed": False},
            {"name": "validTo", "type": "uint256", "indexed": False},
            {"name": "previousChange", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "DIDAttributeChanged",
        "anonymous": False,
        "inputs": [
            {"name": "identity", "type": "address", "indexed": True},
            {"name": "name", "type": "bytes32", "indexed": False},
            {"name": "value", "type": "bytes", "indexed": False},
            {"name": "validTo", "type": "uint256", "indexed": False},
            {"name": "previousChange", "type": "uint256", "indexed": False},
        ],
    },
]
