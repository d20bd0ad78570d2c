"""
Ledger Access for the DID Resolver

Provides:
- LedgerReader abstraction (InMemory for dev/tests, web3 for prod)
- Registry connection settings
"""

from .config import LedgerDriver, RegistrySettings, get_ledger_driver
from .reader import (
    LedgerReader,
    InMemoryLedger,
    Web3LedgerReader,
    create_ledger_reader,
)

__all__ = [
    "LedgerDriver",
    "RegistrySettings",
    "get_ledger_driver",
    "LedgerReader",
    "InMemoryLedger",
    "Web3LedgerReader",
    "create_ledger_reader",
]
