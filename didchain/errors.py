"""
Resolver Error Taxonomy

Structural errors are fatal to the resolution that raised them and are
surfaced to the caller. Payload-shape errors are handled per attribute
section by the reducer.
"""


class ResolverError(Exception):
    """Base exception for resolution errors."""
    pass


class InvalidDIDError(ResolverError):
    """Raised when a DID string does not carry an extractable address."""
    pass


class UnresolvedIdentityError(ResolverError):
    """
    Raised when the registry cannot report a change block for an identity.

    Distinct from an identity with no history (change block 0).
    """
    pass


class DecodeError(ResolverError):
    """Raised when a ledger log entry is unrecognized or malformed."""
    pass


class PayloadDecodeError(DecodeError):
    """Raised when an attribute value cannot be decoded into its descriptor."""
    pass


class UnhandledEventError(ResolverError):
    """Raised when a decoded event kind has no reducer handler."""
    pass


class LedgerReadError(ResolverError):
    """Raised when a ledger read keeps failing after retries."""
    pass


class TraversalCancelled(ResolverError):
    """Raised when a traversal observes its cancellation token."""
    pass


class LogStoreError(Exception):
    """
    Raised when the log cache cannot be read or written.

    Not a ResolverError: the cache is optional and resolution carries on
    without it.
    """
    pass
