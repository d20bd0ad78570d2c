# Core resolution services
from .abi import REGISTRY_ABI
from .codec import (
    EventCodec,
    EventSchema,
    parse_bytes32_string,
    format_bytes32_string,
)
from .attributes import AttributeName, parse_attribute_name
from .reducer import DocumentReducer, ReduceOutcome
from .retry import (
    CancellationToken,
    RetryPolicy,
    RetryConfig,
    RetryExhaustedError,
)
from .walker import ChainWalker, ChainStep, WalkResult
from .merger import merge_logs
from .builder import DocumentBuilder, document_from_logs
from .selector import matches, query
from .resolver import Resolver, ResolverConfig, create_resolver

__all__ = [
    "REGISTRY_ABI",
    "EventCodec",
    "EventSchema",
    "parse_bytes32_string",
    "format_bytes32_string",
    "AttributeName",
    "parse_attribute_name",
    "DocumentReducer",
    "ReduceOutcome",
    "CancellationToken",
    "RetryPolicy",
    "RetryConfig",
    "RetryExhaustedError",
    "ChainWalker",
    "ChainStep",
    "WalkResult",
    "merge_logs",
    "DocumentBuilder",
    "document_from_logs",
    "matches",
    "query",
    "Resolver",
    "ResolverConfig",
    "create_resolver",
]
