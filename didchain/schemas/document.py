"""
Identity Document Schemas

Two shapes live here:

- LogDocument: the per-identity accumulator built while walking the
  registry's change chain. Every entry remembers the block it was written
  at; an entry is only ever replaced by one from a strictly newer block.
- RenderedDocument: the immutable, externally shared DID document. Only
  entries whose validity deadline is still in the future make it here,
  and validity/block bookkeeping is stripped.

JSON field names follow the DID document vocabulary (camelCase aliases).
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_CONTEXT = "https://www.w3.org/ns/did/v1"

# Bookkeeping fields never shown in a rendered document
LOG_ONLY_FIELDS = {"validity", "block"}


class LogEntry(BaseModel):
    """Fields shared by every entry of a LogDocument."""
    model_config = ConfigDict(populate_by_name=True)

    validity: int = Field(
        ...,
        description="Unix timestamp (seconds) after which the entry is expired"
    )
    block: int = Field(
        ...,
        ge=0,
        description="Ledger block at which the entry was written"
    )

    def as_dict(self) -> dict[str, Any]:
        """Alias-keyed view of the entry, including bookkeeping fields."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def rendered(self) -> dict[str, Any]:
        """Alias-keyed view without validity/block."""
        return self.model_dump(by_alias=True, exclude_none=True, exclude=LOG_ONLY_FIELDS)


class PublicKeyEntry(LogEntry):
    """A verification key attached to the identity."""
    id: str
    type: str
    controller: str
    ethereum_address: Optional[str] = Field(default=None, alias="ethereumAddress")
    public_key_hex: Optional[str] = Field(default=None, alias="publicKeyHex")
    public_key_base64: Optional[str] = Field(default=None, alias="publicKeyBase64")
    public_key_pem: Optional[str] = Field(default=None, alias="publicKeyPem")


class AuthenticationEntry(LogEntry):
    """
    Grants a public key the right to authenticate as the identity.

    public_key references a PublicKeyEntry id.
    """
    type: str
    public_key: str = Field(..., alias="publicKey")


class ServiceEntry(LogEntry):
    """
    A service endpoint descriptor.

    Descriptors are written by third parties; unknown fields are kept.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    type: str
    service_endpoint: Optional[Any] = Field(default=None, alias="serviceEndpoint")


class AttributeEntry(LogEntry):
    """An opaque attribute whose name did not match the attribute grammar."""
    attribute: str


class LogDocument(BaseModel):
    """
    Per-identity accumulator for one traversal.

    Owned exclusively by the traversal that builds it until it is merged.
    top_block is the traversal's high-water mark: a later traversal seeded
    with this document stops once the chain drops below it.
    """
    model_config = ConfigDict(populate_by_name=True)

    owner: Optional[str] = None
    top_block: int = Field(default=0, alias="topBlock", ge=0)
    public_key: dict[str, PublicKeyEntry] = Field(default_factory=dict, alias="publicKey")
    authentication: dict[str, AuthenticationEntry] = Field(default_factory=dict)
    service: dict[str, ServiceEntry] = Field(default_factory=dict)
    attributes: dict[str, AttributeEntry] = Field(default_factory=dict)

    def to_json_dict(self) -> dict[str, Any]:
        """JSON-compatible representation, used by the log store and the API."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_json_dict(cls, data: dict[str, Any]) -> "LogDocument":
        return cls.model_validate(data)


class RenderedDocument(BaseModel):
    """
    The immutable DID document.

    authentication always starts with the implicit owner entry.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    context: str = Field(default=DEFAULT_CONTEXT, alias="@context")
    id: str
    public_key: list[dict[str, Any]] = Field(default_factory=list, alias="publicKey")
    authentication: list[dict[str, Any]] = Field(default_factory=list)
    service: list[dict[str, Any]] = Field(default_factory=list)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
