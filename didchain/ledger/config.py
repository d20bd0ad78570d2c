"""
Registry Configuration

Where the identity registry lives and how to reach it.

Environment Variables:
    DIDCHAIN_LEDGER_DRIVER: Which ledger reader to use
        - "memory" (default if no RPC URL configured)
        - "web3" (JSON-RPC node via web3.py)
    DIDCHAIN_RPC_URL: JSON-RPC endpoint of the ledger node
    DIDCHAIN_REGISTRY_ADDRESS: Address of the identity registry contract
    DIDCHAIN_RPC_TIMEOUT: Per-request timeout in seconds (default 10)
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..core.abi import REGISTRY_ABI


# Placeholder registry address used by the in-memory ledger
IN_MEMORY_REGISTRY_ADDRESS = "0x" + "0" * 39 + "1"


class LedgerDriver(str, Enum):
    """Supported ledger readers."""
    MEMORY = "memory"
    WEB3 = "web3"


@dataclass
class RegistrySettings:
    """Connection settings for the identity registry."""
    rpc_url: str = ""
    registry_address: str = ""
    request_timeout: float = 10.0
    abi: list[dict[str, Any]] = field(default_factory=lambda: list(REGISTRY_ABI))

    @classmethod
    def from_env(cls) -> "RegistrySettings":
        """Load settings from environment variables."""
        return cls(
            rpc_url=os.getenv("DIDCHAIN_RPC_URL", ""),
            registry_address=os.getenv("DIDCHAIN_REGISTRY_ADDRESS", ""),
            request_timeout=float(os.getenv("DIDCHAIN_RPC_TIMEOUT", "10")),
        )

    def validate(self) -> None:
        """Raise ValueError if the settings cannot reach a registry."""
        if not self.rpc_url:
            raise ValueError("DIDCHAIN_RPC_URL is not set")
        if not self.registry_address:
            raise ValueError("DIDCHAIN_REGISTRY_ADDRESS is not set")


def get_ledger_driver() -> LedgerDriver:
    """
    Get the ledger driver to use.

    Checks DIDCHAIN_LEDGER_DRIVER, then falls back to web3 if an RPC URL
    is configured and memory otherwise.
    """
    explicit = os.getenv("DIDCHAIN_LEDGER_DRIVER", "").lower()

    if explicit:
        try:
            return LedgerDriver(explicit)
        except ValueError:
            raise ValueError(
                f"Unknown DIDCHAIN_LEDGER_DRIVER: {explicit}. "
                f"Valid values: memory, web3"
            )

    if os.getenv("DIDCHAIN_RPC_URL"):
        return LedgerDriver.WEB3

    return LedgerDriver.MEMORY
