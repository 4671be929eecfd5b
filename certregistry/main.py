import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from certregistry.config import Settings, get_settings
from certregistry.context import build_context, close_context
from certregistry.errors import InvalidInput, NotFound, RegistryError
from certregistry.routers import admin, certificates, health, institutions
from certregistry.services.endpoint_selector import EndpointSelection

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    ledger=None,
    store=None,
    selection: Optional[EndpointSelection] = None,
) -> FastAPI:
    """Build the application. Tests inject fake ledger and store clients."""
    settings = settings or get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        logger.info(
            "Starting %s (port=%d, db=%s, reconcile=%s)",
            settings.service_name,
            settings.server_port,
            settings.database_url,
            "enabled" if settings.reconcile_enabled else "disabled",
        )
        context = await build_context(settings, ledger=ledger, store=store, selection=selection)
        application.state.context = context
        if context.selection.degraded:
            logger.warning("No RPC endpoint answered the startup probe; using %s", context.selection.policy)

        if settings.reconcile_enabled:
            try:
                from certregistry.tasks.scheduler import start_scheduler

                start_scheduler(context)
            except Exception as e:
                logger.warning("Failed to start scheduler: %s", e)

        yield

        # Shutdown
        logger.info("Shutting down %s", settings.service_name)
        from certregistry.tasks.scheduler import stop_scheduler

        stop_scheduler()
        await close_context(context)

    application = FastAPI(
        title="Certificate Registry",
        description="Ledger-anchored certificate issuance and verification",
        version=settings.service_version,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError):
        if isinstance(exc, NotFound):
            logger.info("%s %s -> 404 (%s): %s", request.method, request.url.path, exc.reason, exc)
        elif exc.status_code >= 500:
            logger.error("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc)
        else:
            logger.warning("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @application.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = sorted({".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()})
        error = InvalidInput(f"Invalid request: {exc.errors()}", public_message=f"Invalid or missing fields: {', '.join(fields)}")
        logger.warning("%s %s -> 400: %s", request.method, request.url.path, error)
        return JSONResponse(status_code=error.status_code, content=error.to_payload())

    @application.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "code": "internal_error", "retryable": False},
        )

    # Register routers
    application.include_router(health.router, prefix="/api", tags=["health"])
    application.include_router(certificates.router, prefix="/api", tags=["certificates"])
    application.include_router(institutions.router, prefix="/api", tags=["institutions"])
    application.include_router(admin.router, prefix="/api", tags=["admin"])
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().server_port)
