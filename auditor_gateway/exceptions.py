# ─────────────────────────────────────────────────────────────────────────────
# Custom Exceptions + FastAPI Exception Handlers
# ─────────────────────────────────────────────────────────────────────────────
# Every failure leaves the gateway as the same JSON envelope:
#   {"error": str, "code": int, "retryAfter"?: int, "raw"?: str, "details"?: str}
# ─────────────────────────────────────────────────────────────────────────────


from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = structlog.get_logger(__name__)

RAW_MAX_CHARS = 1000


def truncate_raw(text: str | None, limit: int = RAW_MAX_CHARS) -> str | None:
    """Bound diagnostic text before it is stored or sent anywhere."""
    if not text:
        return None
    return text[:limit]


# ── Exception hierarchy ──────────────────────────────────────────────────────


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    def __init__(self, message: str, status_code: int = 500, *, raw: str | None = None):
        self.message = message
        self.status_code = status_code
        self.raw = truncate_raw(raw)
        super().__init__(message)

    @property
    def code(self) -> int:
        return self.status_code


class ConfigurationError(GatewayError):
    """Raised when the server is missing configuration a request needs.

    The client-facing message never names the missing setting.
    """

    def __init__(self) -> None:
        super().__init__(
            "Server configuration error. Please contact the administrator.",
            status_code=500,
        )


class InvalidRequestError(GatewayError):
    """Raised when a generation body fails shape validation."""

    def __init__(self, message: str = "Invalid request: contents array is required"):
        super().__init__(message, status_code=400)


class PayloadTooLargeError(GatewayError):
    def __init__(self, limit_bytes: int):
        super().__init__(
            f"Request body exceeds the {limit_bytes} byte limit",
            status_code=413,
        )


class OriginNotAllowedError(GatewayError):
    """Raised when a request's Origin header is not whitelisted."""

    def __init__(self, origin: str):
        self.origin = origin
        super().__init__(f"Origin {origin} not allowed by CORS", status_code=401)


class RateLimitExceededError(GatewayError):
    """Raised when a client IP exhausts a rate-limit tier.

    retry_after_seconds is the time left in the current window; the
    handler sends it both in the body and as a Retry-After header.
    """

    def __init__(self, message: str, tier: str, retry_after_seconds: int):
        self.tier = tier
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, status_code=429)


class UpstreamError(GatewayError):
    """The upstream API answered with an error of its own."""

    def __init__(self, message: str, upstream_code: int, *, raw: str | None = None):
        self.upstream_code = upstream_code
        if upstream_code == 429:
            status = 429
        elif 400 <= upstream_code < 600:
            status = upstream_code
        else:
            status = 500
        super().__init__(message, status_code=status, raw=raw)

    @property
    def code(self) -> int:
        return self.upstream_code


class UpstreamTransportError(GatewayError):
    """The upstream could not be reached (DNS, refused, reset)."""

    def __init__(self, message: str, status_code: int, kind: str, detail: str | None = None):
        self.kind = kind
        self.detail = detail
        super().__init__(message, status_code=status_code)


class UpstreamTimeoutError(GatewayError):
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            "Request timeout. The API took too long to respond.",
            status_code=504,
        )


class UnexpectedResponseError(GatewayError):
    """The upstream answered 2xx but without the expected candidate shape."""

    def __init__(self, raw: str | None = None):
        super().__init__(
            "Unexpected response format from upstream API",
            status_code=502,
            raw=raw,
        )


# ── Envelope rendering ───────────────────────────────────────────────────────


def error_envelope(exc: GatewayError, *, include_details: bool = False) -> dict[str, Any]:
    """Build the client-facing body for a gateway error."""
    body: dict[str, Any] = {"error": exc.message, "code": exc.code}
    if isinstance(exc, RateLimitExceededError):
        body["retryAfter"] = exc.retry_after_seconds
    if include_details:
        if exc.raw:
            body["raw"] = exc.raw
        if isinstance(exc, UpstreamTransportError) and exc.detail:
            body["details"] = truncate_raw(exc.detail)
    return body


def error_response(exc: GatewayError, *, include_details: bool = False) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc, include_details=include_details),
        headers=headers,
    )


def _include_details(request: Request) -> bool:
    settings = getattr(request.app.state, "settings", None)
    return bool(settings is not None and settings.expose_error_details)


# ── Handler registration ────────────────────────────────────────────────────


def register_exception_handlers(app: FastAPI) -> None:
    """Register all custom exception handlers on the FastAPI app.

    Endpoints raise GatewayError subclasses; these handlers catch them
    and return the envelope -- no inline try/except in endpoints.
    """

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "gateway_error",
            error=exc.message,
            error_type=type(exc).__name__,
            status=exc.status_code,
            path=request.url.path,
        )
        return error_response(exc, include_details=_include_details(request))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail), "code": exc.status_code},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_error", error=str(exc), exc_info=True)
        content: dict[str, Any] = {
            "error": "Internal server error. Please try again later.",
            "code": 500,
        }
        if _include_details(request):
            content["details"] = truncate_raw(str(exc))
        return JSONResponse(status_code=500, content=content)
