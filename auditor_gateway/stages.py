# ─────────────────────────────────────────────────────────────────────────────
# Request Stages — the gateway's ordered, named processing steps
# ─────────────────────────────────────────────────────────────────────────────
# Each admission stage is a plain function (RequestContext, GatewayServices)
# that returns None to continue or raises a GatewayError to reject. Middleware
# and the generate route only wire these together:
#
#   ADMISSION   log → origin                       (every request)
#   API         rate_limit (coarse tier)           (paths under /api/)
#   GENERATE    rate_limit (strict) → credential   (POST /api/generate)
#               → read body → validate → forward → normalize
#
# The strict-tier slot is taken BEFORE the body is validated: malformed
# requests count against the generation limit.
# ─────────────────────────────────────────────────────────────────────────────

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import pydantic
import structlog
from starlette.requests import Request

from auditor_gateway.config import Settings
from auditor_gateway.exceptions import (
    ConfigurationError,
    GatewayError,
    InvalidRequestError,
    OriginNotAllowedError,
    PayloadTooLargeError,
    RateLimitExceededError,
)
from auditor_gateway.normalize import normalize
from auditor_gateway.origins import OriginWhitelist
from auditor_gateway.rate_limit import API_TIER, GENERATE_TIER, RateLimiter, client_ip
from auditor_gateway.schemas import GenerateResponse, GenerationRequest
from auditor_gateway.services.metrics import GatewayMetrics
from auditor_gateway.upstream import CancellationToken, UpstreamClient

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/"

Body = bytes | AsyncIterable[bytes]


def _declared_length(value: str | None) -> int | None:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


@dataclass(frozen=True)
class RequestContext:
    """What the admission stages need to know about a request."""

    method: str
    path: str
    client_ip: str
    origin: str | None = None
    preflight: bool = False
    content_length: int | None = None

    @classmethod
    def from_request(cls, request: Request) -> RequestContext:
        method = request.method.upper()
        return cls(
            method=method,
            path=request.url.path,
            client_ip=client_ip(request),
            origin=request.headers.get("origin"),
            preflight=method == "OPTIONS"
            and "access-control-request-method" in request.headers,
            content_length=_declared_length(request.headers.get("content-length")),
        )

    @property
    def in_api_namespace(self) -> bool:
        return self.path.startswith(API_PREFIX)


@dataclass(frozen=True)
class GatewayServices:
    """Process-lifetime collaborators shared by every request."""

    settings: Settings
    whitelist: OriginWhitelist
    limiter: RateLimiter
    upstream: UpstreamClient
    metrics: GatewayMetrics


Stage = Callable[[RequestContext, GatewayServices], None]


# ── Admission stages ─────────────────────────────────────────────────────────


def log_request(ctx: RequestContext, services: GatewayServices) -> None:
    logger.info(
        "request_received",
        method=ctx.method,
        path=ctx.path,
        client_ip=ctx.client_ip,
        origin=ctx.origin or "no-origin",
    )


def check_origin(ctx: RequestContext, services: GatewayServices) -> None:
    try:
        services.whitelist.check(ctx.origin)
    except OriginNotAllowedError:
        services.metrics.record_origin_rejection()
        logger.warning(
            "origin_rejected",
            origin=ctx.origin,
            path=ctx.path,
            preflight=ctx.preflight,
        )
        raise


def _check_tier(tier: str, ctx: RequestContext, services: GatewayServices) -> None:
    try:
        services.limiter.check(tier, ctx.client_ip)
    except RateLimitExceededError:
        services.metrics.record_rate_limited(tier)
        raise


def limit_api(ctx: RequestContext, services: GatewayServices) -> None:
    """Coarse tier: every non-OPTIONS request under /api/."""
    if ctx.method == "OPTIONS" or not ctx.in_api_namespace:
        return
    _check_tier(API_TIER, ctx, services)


def limit_generate(ctx: RequestContext, services: GatewayServices) -> None:
    """Strict tier: generation requests only, on top of the coarse tier."""
    _check_tier(GENERATE_TIER, ctx, services)


def require_credential(ctx: RequestContext, services: GatewayServices) -> None:
    if not services.upstream.configured:
        logger.error("upstream_credential_missing", hint="Set the upstream API key")
        raise ConfigurationError()


ADMISSION_STAGES: Sequence[tuple[str, Stage]] = (
    ("log", log_request),
    ("origin", check_origin),
)

API_STAGES: Sequence[tuple[str, Stage]] = (("rate_limit", limit_api),)

GENERATE_STAGES: Sequence[tuple[str, Stage]] = (
    ("rate_limit", limit_generate),
    ("credential", require_credential),
)


def run_stages(
    stages: Sequence[tuple[str, Stage]], ctx: RequestContext, services: GatewayServices
) -> None:
    """Run stages in order; the first GatewayError stops the chain."""
    for name, stage in stages:
        try:
            stage(ctx, services)
        except GatewayError as exc:
            logger.debug("stage_rejected", stage=name, error_type=type(exc).__name__)
            raise


# ── Generation stages ────────────────────────────────────────────────────────


def validate_payload(payload: Any) -> GenerationRequest:
    """Check a decoded body has a non-empty `contents` list."""
    if not isinstance(payload, dict):
        raise InvalidRequestError("Invalid request: body must be a JSON object")
    try:
        return GenerationRequest.model_validate(payload)
    except pydantic.ValidationError as exc:
        fields = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
        if fields and "contents" not in fields:
            raise InvalidRequestError(
                "Invalid request: generationConfig must be an object"
            ) from None
        raise InvalidRequestError() from None


def validate_body(body: bytes, max_bytes: int) -> GenerationRequest:
    if len(body) > max_bytes:
        raise PayloadTooLargeError(max_bytes)
    if not body.strip():
        return validate_payload({})
    try:
        payload = json.loads(body)
    except ValueError:
        raise InvalidRequestError("Invalid request: body must be a JSON object") from None
    return validate_payload(payload)


async def read_body(body: Body, max_bytes: int, declared_length: int | None = None) -> bytes:
    """Collect a request body, stopping as soon as it passes max_bytes.

    A declared Content-Length over the limit is rejected before any chunk
    is read.
    """
    if isinstance(body, bytes):
        if len(body) > max_bytes:
            raise PayloadTooLargeError(max_bytes)
        return body
    if declared_length is not None and declared_length > max_bytes:
        raise PayloadTooLargeError(max_bytes)

    chunks: list[bytes] = []
    total = 0
    async for chunk in body:
        total += len(chunk)
        if total > max_bytes:
            raise PayloadTooLargeError(max_bytes)
        chunks.append(chunk)
    return b"".join(chunks)


async def handle_generation(
    ctx: RequestContext,
    body: Body,
    services: GatewayServices,
    token: CancellationToken | None = None,
) -> GenerateResponse:
    """Strict limit → credential → read + validate → forward → normalize."""
    run_stages(GENERATE_STAGES, ctx, services)

    max_bytes = services.settings.max_body_bytes
    try:
        raw = await read_body(body, max_bytes, ctx.content_length)
        generation = validate_body(raw, max_bytes)
    except GatewayError:
        services.metrics.record_validation_failure()
        raise

    start = time.perf_counter()
    outcome = await services.upstream.generate(generation, token)
    latency_ms = (time.perf_counter() - start) * 1000

    try:
        response = normalize(outcome)
    except GatewayError as exc:
        services.metrics.record_generation(type(exc).__name__, latency_ms)
        raise
    services.metrics.record_generation("success", latency_ms)
    return response
