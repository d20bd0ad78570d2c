"""
Ledger Read Capability

This module defines the LedgerReader interface and provides two
implementations:
- InMemoryLedger: For development and testing; behaves like the registry
- Web3LedgerReader: For production, against a JSON-RPC node via web3.py

A LedgerReader is read-only. The resolver needs exactly three things from
the ledger:
- changed(identity): block of the identity's latest change (0 = never)
- owners(identity): current owner of the identity
- get_logs(...): the registry logs of one block for one identity
"""

import threading
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Union

from web3 import Web3

from ..core.codec import EventCodec
from ..schemas import EventKind, RawLog
from .config import (
    IN_MEMORY_REGISTRY_ADDRESS,
    LedgerDriver,
    RegistrySettings,
    get_ledger_driver,
)


ZERO_ADDRESS = "0x" + "0" * 40


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerReader(ABC):
    """
    Abstract base class for ledger access.

    Implementations raise whatever their transport raises; the walker
    owns retry and error classification.
    """

    @property
    @abstractmethod
    def registry_address(self) -> str:
        """Address of the identity registry contract."""
        pass

    @abstractmethod
    def changed(self, identity: str) -> int:
        """Block number of the identity's latest change, 0 if never changed."""
        pass

    @abstractmethod
    def owners(self, identity: str) -> str:
        """Current owner address of the identity."""
        pass

    @abstractmethod
    def get_logs(
        self,
        address: str,
        from_block: int,
        to_block: int,
        topics: Sequence[Optional[str]],
    ) -> list[RawLog]:
        """
        Logs emitted by `address` in [from_block, to_block].

        topics is positional; None matches anything.
        """
        pass

    @abstractmethod
    def latest_block(self) -> int:
        """Current head block of the ledger (used for health checks)."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedger(LedgerReader):
    """
    In-memory registry.

    Suitable for:
    - Development
    - Testing (record_* build real ABI-encoded logs)

    Recording mirrors the registry contract: each change stores the
    identity's current changed() block as previousChange, then moves
    changed() to the new block. Several changes may share a block.
    """

    def __init__(
        self,
        registry_address: str = IN_MEMORY_REGISTRY_ADDRESS,
        codec: Optional[EventCodec] = None,
    ):
        self._registry = registry_address
        self._codec = codec or EventCodec()
        self._logs: list[RawLog] = []
        self._changed: dict[str, int] = {}
        self._owners: dict[str, str] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._head = 0
        self._lock = threading.Lock()
        self.calls: dict[str, int] = {"changed": 0, "owners": 0, "get_logs": 0}

    @property
    def registry_address(self) -> str:
        return self._registry

    # ================================================================
    # RECORDING
    # ================================================================

    def _advance(self, block: Optional[int]) -> int:
        if block is None:
            block = self._head + 1
        if block < self._head:
            raise ValueError(f"Block {block} is behind the ledger head {self._head}")
        self._head = block
        return block

    def _record(self, kind: EventKind, identity: str, values: dict, block: Optional[int]) -> RawLog:
        with self._lock:
            block = self._advance(block)
            key = identity.lower()
            values = {**values, "previousChange": self._changed.get(key, 0)}
            log_index = sum(1 for log in self._logs if log.block_number == block)
            log = self._codec.encode(kind, identity, values, block, self._registry, log_index)
            self._logs.append(log)
            self._changed[key] = block
            return log

    def record_owner_changed(self, identity: str, owner: str, block: Optional[int] = None) -> RawLog:
        log = self._record(EventKind.OWNER_CHANGED, identity, {"owner": owner}, block)
        with self._lock:
            self._owners[identity.lower()] = owner
        return log

    def record_delegate_changed(
        self,
        identity: str,
        delegate_type: str,
        delegate: str,
        valid_to: int,
        block: Optional[int] = None,
    ) -> RawLog:
        return self._record(
            EventKind.DELEGATE_CHANGED,
            identity,
            {"delegateType": delegate_type, "delegate": delegate, "validTo": valid_to},
            block,
        )

    def record_attribute_changed(
        self,
        identity: str,
        name: str,
        value: Union[bytes, str],
        valid_to: int,
        block: Optional[int] = None,
    ) -> RawLog:
        if isinstance(value, str):
            value = value.encode("utf-8")
        return self._record(
            EventKind.ATTRIBUTE_CHANGED,
            identity,
            {"name": name, "value": value, "validTo": valid_to},
            block,
        )

    def inject_log(self, identity: str, log: RawLog) -> None:
        """Append an arbitrary log and point changed(identity) at its block."""
        with self._lock:
            self._advance(log.block_number)
            self._logs.append(log)
            self._changed[identity.lower()] = log.block_number

    def fail_next(self, method: str, exc: Exception, times: int = 1) -> None:
        """Make the next `times` calls of `method` raise `exc`."""
        with self._lock:
            self._failures.setdefault(method, []).extend([exc] * times)

    def _call(self, method: str) -> None:
        with self._lock:
            self.calls[method] += 1
            pending = self._failures.get(method)
            exc = pending.pop(0) if pending else None
        if exc is not None:
            raise exc

    # ================================================================
    # READING
    # ================================================================

    def changed(self, identity: str) -> int:
        self._call("changed")
        with self._lock:
            return self._changed.get(identity.lower(), 0)

    def owners(self, identity: str) -> str:
        self._call("owners")
        with self._lock:
            return self._owners.get(identity.lower(), identity)

    def get_logs(
        self,
        address: str,
        from_block: int,
        to_block: int,
        topics: Sequence[Optional[str]],
    ) -> list[RawLog]:
        self._call("get_logs")
        with self._lock:
            logs = list(self._logs)
        return [
            log for log in logs
            if log.address.lower() == address.lower()
            and from_block <= log.block_number <= to_block
            and self._topics_match(log, topics)
        ]

    @staticmethod
    def _topics_match(log: RawLog, topics: Sequence[Optional[str]]) -> bool:
        for position, topic in enumerate(topics):
            if topic is None:
                continue
            if position >= len(log.topics) or log.topics[position].lower() != topic.lower():
                return False
        return True

    def latest_block(self) -> int:
        return self._head


# ============================================================
# WEB3 IMPLEMENTATION
# ============================================================

def _to_hex(value) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


class Web3LedgerReader(LedgerReader):
    """
    Registry reader over a JSON-RPC node.

    Usage:
        reader = Web3LedgerReader(RegistrySettings.from_env())
        block = reader.changed("0x...")
    """

    def __init__(self, settings: RegistrySettings, web3=None):
        """
        Args:
            settings: RPC endpoint, registry address and ABI
            web3: Pre-built Web3 instance (tests, custom providers)
        """
        if web3 is None:
            settings.validate()
            web3 = Web3(Web3.HTTPProvider(
                settings.rpc_url,
                request_kwargs={"timeout": settings.request_timeout},
            ))
        self._w3 = web3
        self._address = Web3.to_checksum_address(settings.registry_address)
        self._contract = self._w3.eth.contract(address=self._address, abi=settings.abi)

    @property
    def registry_address(self) -> str:
        return self._address

    def changed(self, identity: str) -> int:
        return int(self._contract.functions.changed(Web3.to_checksum_address(identity)).call())

    def owners(self, identity: str) -> str:
        """
        Current owner. The registry stores the zero address until the
        first ownership change, which means the identity owns itself.
        """
        identity = Web3.to_checksum_address(identity)
        owner = self._contract.functions.owners(identity).call()
        if not owner or owner.lower() == ZERO_ADDRESS:
            return identity
        return Web3.to_checksum_address(owner)

    def get_logs(
        self,
        address: str,
        from_block: int,
        to_block: int,
        topics: Sequence[Optional[str]],
    ) -> list[RawLog]:
        entries = self._w3.eth.get_logs({
            "address": Web3.to_checksum_address(address),
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": list(topics),
        })
        return [self._to_raw_log(entry) for entry in entries]

    @staticmethod
    def _to_raw_log(entry) -> RawLog:
        tx_hash = entry.get("transactionHash")
        return RawLog(
            address=entry["address"],
            topics=[_to_hex(t) for t in entry["topics"]],
            data=_to_hex(entry["data"]),
            block_number=int(entry["blockNumber"]),
            log_index=int(entry.get("logIndex", 0)),
            transaction_hash=_to_hex(tx_hash) if tx_hash is not None else None,
        )

    def latest_block(self) -> int:
        return int(self._w3.eth.block_number)


def create_ledger_reader(settings: Optional[RegistrySettings] = None) -> LedgerReader:
    """
    Create the LedgerReader selected by configuration.

    Returns:
        InMemoryLedger when no RPC endpoint is configured
        Web3LedgerReader otherwise
    """
    if get_ledger_driver() == LedgerDriver.MEMORY:
        return InMemoryLedger()
    return Web3LedgerReader(settings or RegistrySettings.from_env())
