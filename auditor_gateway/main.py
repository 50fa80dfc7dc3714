# ─────────────────────────────────────────────────────────────────────────────
# Application Factory — wires settings, services, middleware and routes
# ─────────────────────────────────────────────────────────────────────────────
#   uvicorn auditor_gateway.main:create_app --factory --host 0.0.0.0 --port 3000
#   auditor-gateway                       (console script, HOST/PORT from env)
# ─────────────────────────────────────────────────────────────────────────────


from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from limits.storage import Storage

from auditor_gateway.config import Settings, get_settings
from auditor_gateway.exceptions import register_exception_handlers
from auditor_gateway.logging_config import configure_logging
from auditor_gateway.middleware import RequestContextMiddleware, StageMiddleware
from auditor_gateway.origins import OriginWhitelist
from auditor_gateway.rate_limit import build_rate_limiter
from auditor_gateway.routes import generate, health
from auditor_gateway.routes import metrics as metrics_routes
from auditor_gateway.services.metrics import GatewayMetrics
from auditor_gateway.stages import ADMISSION_STAGES, API_STAGES, GatewayServices
from auditor_gateway.tracing import configure_tracing
from auditor_gateway.upstream import UpstreamClient

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Log the effective configuration on startup; close the upstream pool on shutdown."""
    services: GatewayServices = app.state.services
    settings = services.settings

    tracer_provider = configure_tracing(settings.otel_exporter)

    logger.info(
        "gateway_started",
        service=settings.service_name,
        port=settings.port,
        health_path="/health",
        api_path="/api/generate",
        allowed_origins=services.whitelist.cors_allow_origins(),
        environment=settings.environment,
    )
    if services.upstream.configured:
        logger.info("upstream_credential_loaded")
    else:
        logger.error(
            "upstream_credential_missing",
            hint="Generation requests will return 500 until the API key is set",
        )

    yield

    await services.upstream.aclose()
    if tracer_provider is not None:
        tracer_provider.shutdown()


def build_services(
    settings: Settings,
    *,
    rate_limit_storage: Storage | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> GatewayServices:
    """Create the process-lifetime collaborators from settings."""
    limiter = build_rate_limiter(settings, rate_limit_storage)
    return GatewayServices(
        settings=settings,
        whitelist=OriginWhitelist.from_csv(settings.allowed_origins),
        limiter=limiter,
        upstream=UpstreamClient.from_settings(settings, http_client=http_client),
        metrics=GatewayMetrics(),
    )


def create_app(
    settings: Settings | None = None,
    *,
    rate_limit_storage: Storage | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Application factory. Invoked by: uvicorn auditor_gateway.main:create_app --factory"""
    settings = settings or get_settings()
    configure_logging(
        log_level=settings.log_level,
        json_output=settings.log_json,
        secrets=[settings.gemini_api_key.get_secret_value()],
    )

    services = build_services(settings, rate_limit_storage=rate_limit_storage, http_client=http_client)

    app = FastAPI(
        title=settings.service_name,
        description="Credential-holding gateway for the generative-content API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.settings = settings

    # Middleware order (Starlette applies in reverse):
    #   RequestContext → admission (log, origin) → CORS → coarse rate limit → routes
    app.add_middleware(StageMiddleware, stages=API_STAGES)
    app.add_middleware(
        CORSMiddleware,
        **services.whitelist.cors_options(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-Request-ID"],
    )
    app.add_middleware(StageMiddleware, stages=ADMISSION_STAGES)
    app.add_middleware(RequestContextMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router, tags=["health"])
    app.include_router(generate.router, tags=["generate"])
    app.include_router(metrics_routes.router, tags=["metrics"])

    return app


def run() -> None:
    """Console entry point: serve on HOST:PORT from settings."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
