# Canonical Schemas for the DID Resolver
# Identities, registry events and the documents built from them.

from .identity import Identity, DID_PATTERN, parse_did, extract_address
from .events import EventKind, DelegateType, RawLog, RegistryEvent
from .document import (
    DEFAULT_CONTEXT,
    LogEntry,
    PublicKeyEntry,
    AuthenticationEntry,
    ServiceEntry,
    AttributeEntry,
    LogDocument,
    RenderedDocument,
)
from .selector import Selector, SelectorCategory

__all__ = [
    # Identity
    "Identity",
    "DID_PATTERN",
    "parse_did",
    "extract_address",
    # Events
    "EventKind",
    "DelegateType",
    "RawLog",
    "RegistryEvent",
    # Documents
    "DEFAULT_CONTEXT",
    "LogEntry",
    "PublicKeyEntry",
    "AuthenticationEntry",
    "ServiceEntry",
    "AttributeEntry",
    "LogDocument",
    "RenderedDocument",
    # Selector
    "Selector",
    "SelectorCategory",
]
