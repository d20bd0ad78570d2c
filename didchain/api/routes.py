"""
API Routes for the DID Resolver

Resolution endpoints (all read-only):
- GET  /1.0/identifiers/{did}   - Resolve a DID to its DID document
- GET  /api/logs/{did}          - The merged log document of a DID
- GET  /api/owners/{did}        - Current owner of a DID
- POST /api/query               - Point query: first entry matching a selector
- POST /api/resolve             - Resolve several DIDs concurrently

Errors map to status codes:
- InvalidDIDError, malformed selector -> 400
- UnresolvedIdentityError            -> 404
- DecodeError                        -> 422
- LedgerReadError                    -> 502
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..core.resolver import Resolver
from ..errors import (
    DecodeError,
    InvalidDIDError,
    LedgerReadError,
    ResolverError,
    UnresolvedIdentityError,
)
from ..observability import get_logger
from ..schemas import Selector


router = APIRouter()
logger = get_logger(__name__)


# ============================================================
# Dependency Injection
# ============================================================

def get_resolver(request: Request) -> Resolver:
    """Resolver created at startup (see main.lifespan)."""
    return request.app.state.resolver


_STATUS_BY_ERROR = (
    (InvalidDIDError, status.HTTP_400_BAD_REQUEST),
    (UnresolvedIdentityError, status.HTTP_404_NOT_FOUND),
    (DecodeError, 422),
    (LedgerReadError, status.HTTP_502_BAD_GATEWAY),
)


def _http_error(error: ResolverError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


# ============================================================
# Request/Response Models
# ============================================================

class QueryRequest(BaseModel):
    """Point query against one DID."""
    did: str
    selector: Any = Field(..., description="{category: {property: value}}")


class QueryResponse(BaseModel):
    """First rendered entry matching the selector, or null."""
    did: str
    match: Optional[dict[str, Any]] = None


class ResolveManyRequest(BaseModel):
    """Batch resolution request."""
    dids: list[str] = Field(..., min_length=1, max_length=100)


class OwnerResponse(BaseModel):
    did: str
    owner: str


# ============================================================
# Resolution Endpoints
# ============================================================

@router.get(
    "/1.0/identifiers/{did}",
    tags=["Resolution"],
    summary="Resolve a DID",
)
def resolve_did(did: str, request: Request):
    """
    Resolve a DID to its current DID document.

    Only entries whose validity lies in the future are included.
    """
    resolver = get_resolver(request)
    try:
        document = resolver.resolve(did)
    except ResolverError as e:
        raise _http_error(e)
    return document.to_json_dict()


@router.get(
    "/api/logs/{did}",
    tags=["Resolution"],
    summary="Get the log document of a DID",
)
def read_log(did: str, request: Request):
    """
    The merged log document, including expired entries and the
    validity/block bookkeeping of each one.
    """
    resolver = get_resolver(request)
    try:
        log = resolver.read_log(did)
    except ResolverError as e:
        raise _http_error(e)
    return log.to_json_dict()


@router.get(
    "/api/owners/{did}",
    response_model=OwnerResponse,
    tags=["Resolution"],
    summary="Get the current owner of a DID",
)
def read_owner(did: str, request: Request):
    resolver = get_resolver(request)
    try:
        owner = resolver.owner_of(did)
    except ResolverError as e:
        raise _http_error(e)
    return OwnerResponse(did=did, owner=owner)


@router.post(
    "/api/query",
    response_model=QueryResponse,
    tags=["Resolution"],
    summary="Query one entry of a DID document",
)
def query_document(body: QueryRequest, request: Request):
    """
    Find the first publicKey, authentication or service entry whose
    properties all equal the selector's.

    The history walk stops as soon as a match is found.
    """
    try:
        selector = Selector.from_dict(body.selector)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    resolver = get_resolver(request)
    try:
        match = resolver.read(body.did, selector)
    except ResolverError as e:
        raise _http_error(e)
    return QueryResponse(did=body.did, match=match)


@router.post(
    "/api/resolve",
    tags=["Resolution"],
    summary="Resolve several DIDs",
)
def resolve_many(body: ResolveManyRequest, request: Request):
    """
    Resolve independent DIDs concurrently.

    Each DID maps to {"document": ...} or {"error": ..., "status": ...};
    one failure does not fail the batch.
    """
    resolver = get_resolver(request)
    results = resolver.resolve_many(body.dids)

    response = {}
    for did, outcome in results.items():
        if isinstance(outcome, ResolverError):
            error = _http_error(outcome)
            response[did] = {"error": error.detail, "status": error.status_code}
        elif isinstance(outcome, Exception):
            logger.error(f"Unexpected resolution failure for {did}", did=did, error=str(outcome))
            response[did] = {"error": str(outcome), "status": status.HTTP_500_INTERNAL_SERVER_ERROR}
        else:
            response[did] = {"document": outcome.to_json_dict()}
    return response
