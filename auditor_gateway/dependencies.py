# ─────────────────────────────────────────────────────────────────────────────
# Dependency Injection — FastAPI Depends() providers
# ─────────────────────────────────────────────────────────────────────────────
# State flows: create_app builds GatewayServices → app.state stores →
# Depends() injects. No module-level mutable state.
# ─────────────────────────────────────────────────────────────────────────────


from fastapi import Request

from auditor_gateway.config import Settings
from auditor_gateway.services.metrics import GatewayMetrics
from auditor_gateway.stages import GatewayServices


def get_services(request: Request) -> GatewayServices:
    """Inject the shared GatewayServices bundle."""
    return request.app.state.services  # type: ignore[no-any-return]


def get_settings_dep(request: Request) -> Settings:
    """Inject Settings into endpoints via Depends()."""
    return request.app.state.services.settings  # type: ignore[no-any-return]


def get_metrics(request: Request) -> GatewayMetrics:
    """Inject GatewayMetrics into endpoints via Depends()."""
    return request.app.state.services.metrics  # type: ignore[no-any-return]
