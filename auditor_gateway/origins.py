# Origin whitelist: decides which browser origins may call the gateway.
# Built once from ALLOWED_ORIGINS at startup and never mutated afterwards.


from dataclasses import dataclass
from typing import Any

import structlog

from auditor_gateway.exceptions import OriginNotAllowedError

logger = structlog.get_logger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class OriginWhitelist:
    """Immutable set of admitted origins (or the wildcard)."""

    origins: frozenset[str]

    @classmethod
    def from_csv(cls, allowed_origins: str) -> "OriginWhitelist":
        """Parse a comma-separated list. Empty string → deny every cross-origin call."""
        origins = frozenset(o.strip() for o in allowed_origins.split(",") if o.strip())
        if not origins:
            logger.warning(
                "cors_no_origins_configured",
                hint="Set ALLOWED_ORIGINS. Cross-origin requests will be rejected.",
            )
        return cls(origins=origins)

    @property
    def allows_any(self) -> bool:
        return WILDCARD in self.origins

    def allows(self, origin: str | None) -> bool:
        # No Origin header (or an empty one): same-origin or server-to-server call.
        if not origin:
            return True
        if self.allows_any:
            return True
        return origin in self.origins

    def check(self, origin: str | None) -> None:
        """Raise OriginNotAllowedError unless the origin is admitted."""
        if not self.allows(origin):
            raise OriginNotAllowedError(str(origin))

    def cors_allow_origins(self) -> list[str]:
        """Origins list in the shape CORSMiddleware expects."""
        if self.allows_any:
            return [WILDCARD]
        return sorted(self.origins)

    def cors_options(self) -> dict[str, Any]:
        """CORSMiddleware origin arguments.

        Wildcard mode reflects the request origin through a match-all regex,
        since a literal "*" is refused by browsers on credentialed requests.
        """
        if self.allows_any:
            return {"allow_origins": [], "allow_origin_regex": ".*"}
        return {"allow_origins": sorted(self.origins)}
