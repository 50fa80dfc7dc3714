# ─────────────────────────────────────────────────────────────────────────────
# Health Check Routes — liveness and readiness
# ─────────────────────────────────────────────────────────────────────────────
#   /health        → Liveness check. Always 200, even without a credential.
#   /health/ready  → Readiness. 503 until the upstream credential is set.
# ─────────────────────────────────────────────────────────────────────────────

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from auditor_gateway.config import Settings
from auditor_gateway.dependencies import get_settings_dep
from auditor_gateway.schemas import LivenessResponse, ReadinessResponse

router = APIRouter()


@router.get("/health", response_model=LivenessResponse)
async def liveness(settings: Settings = Depends(get_settings_dep)) -> LivenessResponse:
    """Liveness check — is the process alive? No I/O."""
    return LivenessResponse(status="ok", service=settings.service_name)


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness(settings: Settings = Depends(get_settings_dep)) -> JSONResponse:
    """Readiness check — can this instance serve generation traffic?

    Reports only whether the upstream is configured, never which setting
    is missing.
    """
    ready = settings.upstream_configured
    response = ReadinessResponse(
        status="ready" if ready else "not_ready",
        upstream_configured=ready,
    )
    return JSONResponse(status_code=200 if ready else 503, content=response.model_dump())
