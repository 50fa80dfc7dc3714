# ─────────────────────────────────────────────────────────────────────────────
# Gateway Metrics — thread-safe request/outcome tracking
# ─────────────────────────────────────────────────────────────────────────────
# Counts requests, rejections per admission stage, upstream outcomes by kind,
# and upstream latency percentiles. Exposed via GET /metrics.
#
# Bounded: latency history uses deque(maxlen=1000), auto-evicts oldest.
# ─────────────────────────────────────────────────────────────────────────────

from __future__ import annotations

import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any


@dataclass
class GatewayMetrics:
    """Thread-safe gateway metrics."""

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    requests_total: int = 0
    generations_total: int = 0
    origin_rejections: int = 0
    validation_failures: int = 0

    _rate_limited: Counter[str] = field(default_factory=Counter, repr=False)
    _outcomes: Counter[str] = field(default_factory=Counter, repr=False)
    _statuses: Counter[int] = field(default_factory=Counter, repr=False)

    # Upstream round-trip latencies in ms; only the last 1000 are kept
    _latency_history: deque[float] = field(default_factory=lambda: deque(maxlen=1000), repr=False)

    _start_time: float = field(default_factory=time.time, repr=False)

    def record_request(self, status_code: int) -> None:
        with self._lock:
            self.requests_total += 1
            self._statuses[status_code] += 1

    def record_origin_rejection(self) -> None:
        with self._lock:
            self.origin_rejections += 1

    def record_rate_limited(self, tier: str) -> None:
        with self._lock:
            self._rate_limited[tier] += 1

    def record_validation_failure(self) -> None:
        with self._lock:
            self.validation_failures += 1

    def record_generation(self, outcome: str, latency_ms: float) -> None:
        """Record one completed upstream call, labelled by normalized outcome."""
        with self._lock:
            self.generations_total += 1
            self._outcomes[outcome] += 1
            self._latency_history.append(latency_ms)

    def to_dict(self) -> dict[str, Any]:
        """Serialize metrics for the /metrics endpoint."""
        with self._lock:
            latencies = sorted(self._latency_history)
            n = len(latencies)
            return {
                "requests_total": self.requests_total,
                "generations_total": self.generations_total,
                "origin_rejections": self.origin_rejections,
                "validation_failures": self.validation_failures,
                "rate_limited": dict(self._rate_limited),
                "upstream_outcomes": dict(self._outcomes),
                "responses_by_status": {str(k): v for k, v in sorted(self._statuses.items())},
                "upstream_latency_p50_ms": round(latencies[n // 2], 1) if n else 0,
                "upstream_latency_p95_ms": round(latencies[int(n * 0.95)], 1) if n else 0,
                "upstream_latency_mean_ms": round(sum(latencies) / n, 1) if n else 0,
                "uptime_seconds": int(time.time() - self._start_time),
            }
