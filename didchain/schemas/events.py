"""
Registry Event Schema

The registry never edits history. Every ownership, delegate or attribute
change is emitted as a log entry in the block where it happened, and each
entry points back at the block of the identity's previous change.

RawLog is the ledger's view of an entry (topics + ABI-encoded data).
RegistryEvent is the decoded record consumed by the reducer.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    """
    Registry event kinds, named after the contract events.
    You can add more later, never remove.
    """
    OWNER_CHANGED = "DIDOwnerChanged"
    DELEGATE_CHANGED = "DIDDelegateChanged"
    ATTRIBUTE_CHANGED = "DIDAttributeChanged"


class DelegateType(str, Enum):
    """Roles a delegate can be granted on behalf of an identity."""
    SIGNATURE_AUTHORITY = "sigAuth"
    VERIFICATION_KEY = "veriKey"


class RawLog(BaseModel):
    """
    A log entry as returned by the ledger.

    topics[0] is the event signature hash, topics[1] the padded identity.
    """
    model_config = ConfigDict(frozen=True)

    address: str
    topics: list[str] = Field(default_factory=list)
    data: str = Field(
        default="0x",
        description="0x-prefixed hex of the ABI-encoded non-indexed fields"
    )
    block_number: int = Field(..., ge=0)
    log_index: int = 0
    transaction_hash: Optional[str] = None


class RegistryEvent(BaseModel):
    """
    A decoded registry event.

    values holds the named fields. Every kind carries previousChange;
    delegate and attribute changes also carry validTo.
    """
    kind: EventKind
    identity: str
    values: dict[str, Any]
    block_number: int
    log_index: int = 0

    @property
    def previous_change(self) -> int:
        return int(self.values.get("previousChange", 0))

    @property
    def valid_to(self) -> Optional[int]:
        valid_to = self.values.get("validTo")
        return int(valid_to) if valid_to is not None else None
