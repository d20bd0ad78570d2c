"""
didchain - resolves DIDs from an on-chain identity registry.

The registry links every change of an identity to the block of the
previous change; resolution walks that chain backwards and replays it
into a DID document.
"""

__version__ = "0.1.0"
