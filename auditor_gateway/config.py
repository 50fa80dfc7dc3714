# ─────────────────────────────────────────────────────────────────────────────
# Settings — Pydantic v2 BaseSettings
# ─────────────────────────────────────────────────────────────────────────────


from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Gateway configuration sourced from environment variables.

    Read once at startup. Numeric fields are validated eagerly so a bad
    override fails process start instead of the first request.
    """

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    # ── Server ───────────────────────────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = Field(3000, gt=0, lt=65536)
    service_name: str = "EA Grant Auditor API"

    # "production" hides raw upstream text and exception details from clients.
    environment: str = "production"

    # ── Security ─────────────────────────────────────────────────────────────
    # SecretStr keeps the key out of repr() and model_dump().
    # Empty string = generation disabled; /health still serves.
    gemini_api_key: SecretStr = SecretStr("")

    # Comma-separated origins, or "*" to admit every origin.
    allowed_origins: str = (
        "https://graev.netlify.app,http://localhost:3000,http://localhost:5173"
    )

    # ── Rate limits (window in milliseconds, max requests per window per IP) ─
    rate_limit_window_ms: int = Field(15 * 60 * 1000, gt=0)
    rate_limit_max: int = Field(200, gt=0)
    generate_limit_window_ms: int = Field(60 * 1000, gt=0)
    generate_limit_max: int = Field(30, gt=0)

    # ── Upstream ─────────────────────────────────────────────────────────────
    upstream_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    upstream_model: str = "gemini-2.0-flash"
    upstream_timeout_seconds: float = Field(600.0, gt=0)

    # ── Limits ───────────────────────────────────────────────────────────────
    max_body_bytes: int = Field(100 * 1024 * 1024, gt=0)

    # ── Observability ────────────────────────────────────────────────────────
    # "console" or "gcp"; empty leaves tracing off.
    otel_exporter: str = ""

    # ── Logging ──────────────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def expose_error_details(self) -> bool:
        """Whether envelopes may carry `raw` / `details` diagnostics."""
        return not self.is_production

    @property
    def upstream_configured(self) -> bool:
        return bool(self.gemini_api_key.get_secret_value())


@lru_cache
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
