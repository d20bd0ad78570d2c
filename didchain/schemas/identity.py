"""
Identity Schema

A DID names exactly one ledger address. The address is the registry key
for every ownership, delegate and attribute change of the identity.
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import InvalidDIDError


# did:<method>[:<network>]:<address>
DID_PATTERN = re.compile(r"^did:([a-z0-9]+):(?:([a-z0-9]+):)?(0x[0-9a-fA-F]{40})$")


class Identity(BaseModel):
    """
    A parsed DID.

    Build instances with parse_did(); the address is always the one
    captured by DID_PATTERN.
    """
    model_config = ConfigDict(frozen=True)

    did: str
    method: str
    network: Optional[str] = None
    address: str = Field(
        ...,
        description="Registry address of the identity (0x-prefixed, 40 hex chars)"
    )

    @property
    def topic(self) -> str:
        """Identity address left-padded to 32 bytes, lowercase hex."""
        return "0x" + "0" * 24 + self.address[2:].lower()


def extract_address(did: str) -> str:
    """Return the address embedded in a DID, or raise InvalidDIDError."""
    return parse_did(did).address


def parse_did(did: str) -> Identity:
    """Parse a DID string into an Identity."""
    match = DID_PATTERN.match(did or "")
    if not match:
        raise InvalidDIDError(f"Invalid DID: {did!r}")
    method, network, address = match.groups()
    return Identity(did=did, method=method, network=network, address=address)
