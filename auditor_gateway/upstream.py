# Upstream client: forwards validated requests to the Gemini generateContent API.
# Holds the credential, runs each call under a CancellationToken, and returns a
# tagged UpstreamOutcome instead of raising. Single attempt, never retries.


from __future__ import annotations

import asyncio
import enum
import json
import socket
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from opentelemetry import trace
from pydantic import SecretStr

from auditor_gateway.config import Settings
from auditor_gateway.exceptions import truncate_raw
from auditor_gateway.logging_config import REDACTED
from auditor_gateway.schemas import GenerationRequest

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


def redact(text: str, secret: str) -> str:
    if not secret or not text:
        return text
    return text.replace(secret, REDACTED)


# ── Cancellation ─────────────────────────────────────────────────────────────


class CancellationToken:
    """Timer-backed abort signal for one upstream call.

    The deadline is armed when scope() is entered. Either the timer firing or
    an out-of-band cancel() aborts whatever is awaited inside the scope; the
    scope then raises TimeoutError. The timer is released on every exit path.
    """

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        self.cancelled = False
        self.released = False
        self._timeout: asyncio.Timeout | None = None
        self._pending_cancel = False

    @asynccontextmanager
    async def scope(self) -> AsyncIterator[CancellationToken]:
        try:
            async with asyncio.timeout(self.timeout_seconds) as timeout:
                self._timeout = timeout
                if self._pending_cancel:
                    self.cancel()
                yield self
        except TimeoutError:
            self.cancelled = True
            raise
        finally:
            self._timeout = None
            self.released = True

    def cancel(self) -> None:
        """Abort the guarded call now instead of waiting for the deadline."""
        if self._timeout is None:
            self._pending_cancel = True
            return
        self._timeout.reschedule(asyncio.get_running_loop().time())


# ── Outcomes ─────────────────────────────────────────────────────────────────


class TransportErrorKind(enum.StrEnum):
    REFUSED = "refused"
    RESOLUTION = "resolution"
    NETWORK = "network"


@dataclass(frozen=True)
class UpstreamResponse:
    """The upstream answered. data is None when the body was not JSON."""

    status_code: int
    data: Any
    raw: str | None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(frozen=True)
class TransportFailure:
    kind: TransportErrorKind
    detail: str


@dataclass(frozen=True)
class UpstreamTimeout:
    timeout_seconds: float


UpstreamOutcome = UpstreamResponse | TransportFailure | UpstreamTimeout


_REFUSED_MARKERS = ("connection refused", "econnrefused", "errno 111", "errno 61")
_RESOLUTION_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated",
    "enotfound",
)


def _kind_from_chain(exc: BaseException) -> TransportErrorKind | None:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return TransportErrorKind.RESOLUTION
        if isinstance(current, ConnectionRefusedError):
            return TransportErrorKind.REFUSED
        if isinstance(current, BaseExceptionGroup):
            # One member per resolved address the connector tried.
            kinds = [_kind_from_chain(member) for member in current.exceptions]
            if TransportErrorKind.RESOLUTION in kinds:
                return TransportErrorKind.RESOLUTION
            if kinds and all(kind is TransportErrorKind.REFUSED for kind in kinds):
                return TransportErrorKind.REFUSED
        current = current.__cause__ or current.__context__
    return None


def classify_transport_error(exc: BaseException) -> TransportErrorKind:
    """Map an httpx transport failure to its cause."""
    kind = _kind_from_chain(exc)
    if kind is not None:
        return kind

    message = str(exc).lower()
    if any(marker in message for marker in _RESOLUTION_MARKERS):
        return TransportErrorKind.RESOLUTION
    if any(marker in message for marker in _REFUSED_MARKERS):
        return TransportErrorKind.REFUSED
    return TransportErrorKind.NETWORK


# ── Client ───────────────────────────────────────────────────────────────────


class UpstreamClient:
    """Credential-holding client for the generative-content API."""

    def __init__(
        self,
        *,
        api_key: SecretStr,
        base_url: str,
        model: str,
        timeout_seconds: float,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self.timeout_seconds = timeout_seconds
        # Connection pooling only. The deadline comes from CancellationToken.
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(None))

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: httpx.AsyncClient | None = None
    ) -> UpstreamClient:
        return cls(
            api_key=settings.gemini_api_key,
            base_url=settings.upstream_base_url,
            model=settings.upstream_model,
            timeout_seconds=settings.upstream_timeout_seconds,
            http_client=http_client,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key.get_secret_value())

    @property
    def url(self) -> str:
        return f"{self._base_url}/models/{self._model}:generateContent"

    def new_token(self) -> CancellationToken:
        return CancellationToken(self.timeout_seconds)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def generate(
        self, request: GenerationRequest, token: CancellationToken | None = None
    ) -> UpstreamOutcome:
        """Forward one generation request. Never raises for upstream failures."""
        token = token or self.new_token()
        secret = self._api_key.get_secret_value()

        with tracer.start_as_current_span("upstream_generate") as span:
            span.set_attribute("upstream.model", self._model)
            start = time.perf_counter()
            try:
                async with token.scope():
                    response = await self._http.post(
                        self.url,
                        json=request.upstream_payload(),
                        headers={"x-goog-api-key": secret},
                    )
            except (TimeoutError, httpx.TimeoutException):
                logger.error(
                    "upstream_timeout",
                    timeout_s=token.timeout_seconds,
                    cancelled=token.cancelled,
                )
                span.set_attribute("upstream.outcome", "timeout")
                return UpstreamTimeout(timeout_seconds=token.timeout_seconds)
            except httpx.TransportError as exc:
                kind = classify_transport_error(exc)
                detail = redact(str(exc) or type(exc).__name__, secret)
                logger.error(
                    "upstream_transport_error",
                    kind=kind.value,
                    error_type=type(exc).__name__,
                    error=detail,
                )
                span.set_attribute("upstream.outcome", f"transport_{kind.value}")
                return TransportFailure(kind=kind, detail=detail)

            duration_ms = (time.perf_counter() - start) * 1000
            span.set_attribute("upstream.status_code", response.status_code)

        raw_text = redact(response.text, secret)
        try:
            data = json.loads(raw_text) if raw_text else None
        except ValueError:
            data = None
            logger.warning("upstream_body_not_json", status=response.status_code)

        if response.is_success:
            logger.info(
                "upstream_response",
                status=response.status_code,
                duration_ms=round(duration_ms, 1),
            )
        else:
            logger.warning(
                "upstream_error",
                status=response.status_code,
                duration_ms=round(duration_ms, 1),
                raw=truncate_raw(raw_text, 200),
            )
        return UpstreamResponse(
            status_code=response.status_code,
            data=data,
            raw=truncate_raw(raw_text),
        )
