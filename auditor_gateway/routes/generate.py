# ─────────────────────────────────────────────────────────────────────────────
# POST /api/generate — credential-holding proxy endpoint (THIN)
# ─────────────────────────────────────────────────────────────────────────────


from fastapi import APIRouter, Depends, Request

from auditor_gateway.dependencies import get_services
from auditor_gateway.schemas import ErrorEnvelope, GenerateResponse
from auditor_gateway.stages import GatewayServices, RequestContext, handle_generation

router = APIRouter()

_ERRORS = {
    status: {"model": ErrorEnvelope}
    for status in (400, 401, 413, 429, 500, 502, 503, 504)
}


@router.post("/api/generate", response_model=GenerateResponse, responses=_ERRORS)  # type: ignore[arg-type]
async def generate(
    request: Request,
    services: GatewayServices = Depends(get_services),
) -> GenerateResponse:
    """Forward {contents, generationConfig} upstream and return {success, text}.

    The body is streamed raw so malformed JSON produces the gateway's 400
    envelope rather than FastAPI's 422, and an oversized body is cut off
    at the byte limit. Stage order lives in stages.py.
    """
    ctx = RequestContext.from_request(request)
    return await handle_generation(ctx, request.stream(), services)
