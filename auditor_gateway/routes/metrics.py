# ─────────────────────────────────────────────────────────────────────────────
# Metrics Endpoints — JSON and Prometheus text exposition
# ─────────────────────────────────────────────────────────────────────────────
# GET /metrics            → GatewayMetrics.to_dict()
# GET /metrics/prometheus → text/plain Prometheus format
# ─────────────────────────────────────────────────────────────────────────────

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import CollectorRegistry, Gauge, generate_latest

from auditor_gateway.dependencies import get_metrics
from auditor_gateway.services.metrics import GatewayMetrics

router = APIRouter()

# ── Prometheus metrics (custom registry to avoid default process metrics) ─────

_registry = CollectorRegistry()

_requests_total = Gauge(
    "gateway_requests_total",
    "Requests completed by the gateway",
    registry=_registry,
)

_responses_by_status = Gauge(
    "gateway_responses",
    "Responses sent, by HTTP status",
    ["status"],
    registry=_registry,
)

_rate_limited = Gauge(
    "gateway_rate_limited",
    "Requests rejected by a rate-limit tier",
    ["tier"],
    registry=_registry,
)

_upstream_outcomes = Gauge(
    "gateway_upstream_outcomes",
    "Upstream calls by normalized outcome",
    ["outcome"],
    registry=_registry,
)

_origin_rejections = Gauge(
    "gateway_origin_rejections",
    "Requests rejected by the origin whitelist",
    registry=_registry,
)

_upstream_latency_p95 = Gauge(
    "gateway_upstream_latency_p95_ms",
    "p95 upstream round-trip latency in milliseconds",
    registry=_registry,
)


def _sync_metrics(metrics: GatewayMetrics) -> None:
    """Copy GatewayMetrics counters into the Prometheus gauges."""
    data = metrics.to_dict()
    _requests_total.set(data["requests_total"])
    _origin_rejections.set(data["origin_rejections"])
    _upstream_latency_p95.set(data["upstream_latency_p95_ms"])
    for status, count in data["responses_by_status"].items():
        _responses_by_status.labels(status=status).set(count)
    for tier, count in data["rate_limited"].items():
        _rate_limited.labels(tier=tier).set(count)
    for outcome, count in data["upstream_outcomes"].items():
        _upstream_outcomes.labels(outcome=outcome).set(count)


@router.get("/metrics")
async def metrics_endpoint(metrics: GatewayMetrics = Depends(get_metrics)) -> dict[str, Any]:
    """Gateway counters — requests, rejections, upstream outcomes, latency."""
    return metrics.to_dict()


@router.get("/metrics/prometheus")
async def prometheus_metrics(metrics: GatewayMetrics = Depends(get_metrics)) -> Response:
    """Prometheus text exposition format metrics endpoint."""
    _sync_metrics(metrics)
    return Response(
        content=generate_latest(_registry),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
