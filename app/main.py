import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.router import router as v1_router
from app.core.config import Settings, settings as default_settings
from app.core.errors import MarketplaceError
from app.core.logging import configure_logging
from app.core.services import Services, build_services
from app.core.telemetry import instrument_engine, setup_telemetry

log = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "services", None) is None:
            owned = build_services(settings)
            if settings.telemetry_enabled and owned.engine is not None:
                instrument_engine(owned.engine)
            app.state.services = owned
        log.info("%s started (env=%s)", settings.service_name, settings.env)
        try:
            yield
        finally:
            if owned is not None:
                await owned.aclose()

    app = FastAPI(title="DomainVault API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["POST", "GET", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type", "stripe-signature"],
    )

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
        if exc.status_code >= 500:
            log.error("%s %s failed: %s %s", request.method, request.url.path, exc.code, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})

    if settings.telemetry_enabled:
        setup_telemetry(app, settings)

    app.include_router(v1_router)
    return app


app = create_app()
