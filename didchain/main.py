"""
didchain - DID Resolver for an on-chain identity registry

Main application entry point.

Run with:
    uvicorn didchain.main:app
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from didchain import __version__
from didchain.core import Resolver, create_resolver
from didchain.observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


def create_app(resolver: Optional[Resolver] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        resolver: Pre-built resolver (tests); created from the
            environment at startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.resolver = resolver or create_resolver()
        logger.info(
            "Application startup complete",
            ledger=type(app.state.resolver.ledger).__name__,
            registry=app.state.resolver.ledger.registry_address,
            store=type(app.state.resolver.store).__name__,
        )

        yield

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="didchain",
        description="""
## DID Resolver

Resolves `did:<method>:<network>:0x...` identifiers by walking the
identity registry's backward-linked change history.

### Endpoints

- `GET /1.0/identifiers/{did}`: the DID document
- `GET /api/logs/{did}`: the log document with validity bookkeeping
- `POST /api/query`: the first entry matching a selector

### Storage Backends

- **InMemoryLogStore**: Development/testing (default)
- **PostgresLogStore**: Shared cache of resolved histories

Set `DATABASE_URL` or `DATABASE_HOST` environment variables to use PostgreSQL.
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)

    from didchain.api.routes import router
    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "didchain"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Ledger reachability (head block)
        - Log store connectivity

        Returns 200 if healthy, 503 if unhealthy.
        """
        resolver = request.app.state.resolver
        health_status = check_health(ledger=resolver.ledger, store=resolver.store)

        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """
        Get application metrics.

        Returns counters and latency percentiles.
        """
        return get_metrics().get_summary()

    return app


app = create_app()
