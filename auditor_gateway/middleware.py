# ─────────────────────────────────────────────────────────────────────────────
# Request Middleware — request ID, timing, and admission stage wiring
# ─────────────────────────────────────────────────────────────────────────────


import time
import uuid
from collections.abc import Sequence
from typing import Any

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from auditor_gateway.exceptions import GatewayError, error_response
from auditor_gateway.stages import GatewayServices, RequestContext, Stage, run_stages

logger = structlog.get_logger()


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Adds request ID, logs timing, attaches context for structured logging."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = str(uuid.uuid4())[:8]
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        try:
            response: Response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration_ms = (time.perf_counter() - start) * 1000

        services: GatewayServices | None = getattr(request.app.state, "services", None)
        if services is not None:
            services.metrics.record_request(response.status_code)

        logger.info(
            "request_completed",
            request_id=request_id,
            method=request.method,
            path=str(request.url.path),
            status=response.status_code,
            duration_ms=round(duration_ms, 1),
        )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time-Ms"] = str(round(duration_ms, 1))
        return response


class StageMiddleware(BaseHTTPMiddleware):
    """Runs a fixed list of admission stages before the wrapped app.

    A stage that raises GatewayError short-circuits into the error envelope.
    Exceptions raised in middleware never reach the app's exception handlers,
    so the conversion happens here.
    """

    def __init__(self, app: Any, *, stages: Sequence[tuple[str, Stage]]) -> None:
        super().__init__(app)
        self._stages = stages

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        services: GatewayServices = request.app.state.services
        ctx = RequestContext.from_request(request)
        try:
            run_stages(self._stages, ctx, services)
        except GatewayError as exc:
            return error_response(
                exc, include_details=services.settings.expose_error_details
            )
        return await call_next(request)
