# ─────────────────────────────────────────────────────────────────────────────
# Rate Limiter — fixed-window tiers per client IP, backed by `limits`
# ─────────────────────────────────────────────────────────────────────────────
# Two tiers by default:
#   api       → every path under /api/ (coarse, e.g. 200 per 15 min)
#   generate  → POST /api/generate only (strict, e.g. 30 per minute)
#
# Counters live in a limits storage (MemoryStorage unless one is injected);
# limits' FixedWindowRateLimiter owns window start, expiry and reset time.
# test-then-hit runs under one lock and never awaits, so a rejected request
# is never counted and two requests sharing an IP cannot both take the last
# slot. Expired keys are swept by the storage itself.
# ─────────────────────────────────────────────────────────────────────────────

from __future__ import annotations

import math
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog
from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from auditor_gateway.config import Settings
from auditor_gateway.exceptions import RateLimitExceededError

logger = structlog.get_logger(__name__)

API_TIER = "api"
GENERATE_TIER = "generate"


def client_ip(request: Request) -> str:
    """Rate-limit key: the connecting client's address."""
    return get_remote_address(request)


@dataclass(frozen=True)
class RateLimitTier:
    """An independently configured rate-limit scope."""

    name: str
    window_seconds: int
    max_requests: int
    message: str = "Too many requests from this IP, please try again later."

    @classmethod
    def from_window_ms(cls, name: str, window_ms: int, max_requests: int, **kwargs: str) -> RateLimitTier:
        # limits counts windows in whole seconds.
        return cls(name, max(1, math.ceil(window_ms / 1000)), max_requests, **kwargs)

    def item(self) -> RateLimitItem:
        return RateLimitItemPerSecond(self.max_requests, self.window_seconds, namespace=self.name)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    tier: str
    count: int
    limit: int
    retry_after_seconds: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


@dataclass
class RateLimiter:
    """Applies every configured tier against one shared limits storage."""

    tiers: dict[str, RateLimitTier]
    storage: Storage = field(default_factory=MemoryStorage)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _items: dict[str, RateLimitItem] = field(init=False, repr=False)
    _strategy: FixedWindowRateLimiter = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._items = {name: tier.item() for name, tier in self.tiers.items()}
        self._strategy = FixedWindowRateLimiter(self.storage)

    @classmethod
    def from_tiers(cls, tiers: Iterable[RateLimitTier], storage: Storage | None = None) -> RateLimiter:
        tier_map = {t.name: t for t in tiers}
        if storage is None:
            return cls(tiers=tier_map)
        return cls(tiers=tier_map, storage=storage)

    def hit(self, tier_name: str, key: str) -> RateLimitDecision:
        """Count one request against (tier, key) and decide admit/reject.

        A rejected hit is not counted, so a counter never exceeds the
        tier max before its window resets.
        """
        tier = self.tiers[tier_name]
        item = self._items[tier_name]
        with self._lock:
            if self._strategy.test(item, key):
                self._strategy.hit(item, key)
                stats = self._strategy.get_window_stats(item, key)
                return RateLimitDecision(
                    True, tier_name, tier.max_requests - stats.remaining, tier.max_requests, 0
                )
            stats = self._strategy.get_window_stats(item, key)

        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        return RateLimitDecision(False, tier_name, tier.max_requests, tier.max_requests, retry_after)

    def check(self, tier_name: str, key: str) -> RateLimitDecision:
        """Like hit(), but raises RateLimitExceededError on rejection."""
        decision = self.hit(tier_name, key)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                tier=tier_name,
                client_ip=key,
                limit=decision.limit,
                retry_after=decision.retry_after_seconds,
            )
            raise RateLimitExceededError(
                self.tiers[tier_name].message,
                tier=tier_name,
                retry_after_seconds=decision.retry_after_seconds,
            )
        return decision

    def count(self, tier_name: str, key: str) -> int:
        """Current count in the live window (0 if none or expired)."""
        stats = self._strategy.get_window_stats(self._items[tier_name], key)
        return self.tiers[tier_name].max_requests - stats.remaining

    def reset(self) -> None:
        with self._lock:
            self.storage.reset()


def build_rate_limiter(settings: Settings, storage: Storage | None = None) -> RateLimiter:
    """Construct the two gateway tiers from settings."""
    return RateLimiter.from_tiers(
        [
            RateLimitTier.from_window_ms(API_TIER, settings.rate_limit_window_ms, settings.rate_limit_max),
            RateLimitTier.from_window_ms(
                GENERATE_TIER,
                settings.generate_limit_window_ms,
                settings.generate_limit_max,
                message="Too many generation requests. Please wait a moment.",
            ),
        ],
        storage=storage,
    )
