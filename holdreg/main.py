"""
HoldReg - Holding Registry

Main application entry point.

    uvicorn holdreg.main:app
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api.auth import ReplayGuard
from .bootstrap import build_registry_from_env
from .core import OracleError, RegistryService
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    if getattr(app.state, "registry", None) is None:
        app.state.registry = build_registry_from_env()

    registry: RegistryService = app.state.registry
    logger.info(
        "Application startup complete",
        event_count=registry.event_count,
        store_type=type(registry.store).__name__,
        facilitator_role=registry.config.facilitator_role,
    )

    yield

    logger.info("Application shutdown complete")


def create_app(registry: Optional[RegistryService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        registry: A ready RegistryService. If None, one is built from
            the environment at startup.
    """
    app = FastAPI(
        title="HoldReg",
        description="""
## Holding Registry

Actors register a claimed holding of an asset. The registry answers,
at any moment, whether that claim is still backed by a live balance.

### Registration

- **Self-registration**: any address may claim up to its own live balance
- **Delegated registration**: a facilitator (holder of the configured
  role) registers for an actor, presenting the actor's signature over
  the attestation message
- A new registration replaces the previous claim

### Verification

- Verified amount = claim if the live balance covers it, else 0
- Eligibility = (verified amount > 0, standing = true)

### Audit

Every accepted registration appends a hash-chained audit record.
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.replay_guard = ReplayGuard()

    app.add_middleware(RequestContextMiddleware)

    from .api.routes import router
    app.include_router(router, prefix="/api/v1")

    @app.exception_handler(OracleError)
    async def oracle_unavailable(request: Request, exc: OracleError):
        """Balance or role source unreadable: fail the request, never guess."""
        logger.error("Oracle unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.get("/health", tags=["System"])
    async def health():
        """Returns 200 if the service is running."""
        return {"status": "healthy", "service": "holdreg"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Store connectivity
        - Audit chain integrity

        Returns 200 if healthy, 503 if unhealthy.
        """
        registry = request.app.state.registry
        status = check_health(registry=registry, store=registry.store)

        return JSONResponse(
            status_code=200 if status.healthy else 503,
            content={
                "status": "healthy" if status.healthy else "unhealthy",
                "checks": status.checks,
                "duration_ms": status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


app = create_app()
