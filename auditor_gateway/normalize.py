# Maps an UpstreamOutcome onto the client-facing contract.
#
# Precedence:
#   timeout                         → 504
#   transport failure               → 503 (refused / resolution) or 502
#   upstream {"error": {...}}       → 429, passthrough 4xx/5xx, else 500
#   non-2xx without an error object → passthrough status, raw
#   candidates[0].content present   → 200 {success, text}
#   anything else                   → 502 unexpected format, raw


from typing import Any

from auditor_gateway.exceptions import (
    GatewayError,
    UnexpectedResponseError,
    UpstreamError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from auditor_gateway.schemas import GenerateResponse
from auditor_gateway.upstream import (
    TransportErrorKind,
    TransportFailure,
    UpstreamOutcome,
    UpstreamResponse,
    UpstreamTimeout,
)

_TRANSPORT_ERRORS: dict[TransportErrorKind, tuple[int, str]] = {
    TransportErrorKind.REFUSED: (503, "Service temporarily unavailable. Please try again later."),
    TransportErrorKind.RESOLUTION: (503, "Cannot connect to API service. Please try again later."),
    TransportErrorKind.NETWORK: (502, "Network error contacting upstream API"),
}


def extract_text(data: Any) -> str | None:
    """Text of the first candidate, or None if the shape is wrong."""
    if not isinstance(data, dict):
        return None
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    first = candidates[0]
    if not isinstance(first, dict):
        return None
    content = first.get("content")
    if not isinstance(content, dict) or not content:
        return None
    parts = content.get("parts")
    if isinstance(parts, list) and parts:
        return "".join(
            str(part.get("text") or "") for part in parts if isinstance(part, dict)
        )
    return str(content.get("text") or "")


def _upstream_error(response: UpstreamResponse) -> UpstreamError | None:
    data = response.data
    error = data.get("error") if isinstance(data, dict) else None
    if error:
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message") or "Unknown error"
        else:
            code, message = None, str(error)
        if not isinstance(code, int) or isinstance(code, bool) or not code:
            code = response.status_code or 500
        return UpstreamError(str(message), code, raw=response.raw)

    if not response.ok:
        return UpstreamError(
            f"API request failed with status {response.status_code}",
            response.status_code,
            raw=response.raw,
        )
    return None


def to_error(outcome: UpstreamOutcome) -> GatewayError | None:
    """The gateway error an outcome maps to, or None for a usable success."""
    if isinstance(outcome, UpstreamTimeout):
        return UpstreamTimeoutError(outcome.timeout_seconds)
    if isinstance(outcome, TransportFailure):
        status, message = _TRANSPORT_ERRORS[outcome.kind]
        return UpstreamTransportError(message, status, outcome.kind.value, detail=outcome.detail)

    upstream_error = _upstream_error(outcome)
    if upstream_error is not None:
        return upstream_error
    if extract_text(outcome.data) is None:
        return UnexpectedResponseError(raw=outcome.raw)
    return None


def normalize(outcome: UpstreamOutcome) -> GenerateResponse:
    """Return the success body or raise the matching GatewayError."""
    error = to_error(outcome)
    if error is not None:
        raise error
    text = extract_text(outcome.data) if isinstance(outcome, UpstreamResponse) else None
    if text is None:
        raise UnexpectedResponseError()
    return GenerateResponse(success=True, text=text)
