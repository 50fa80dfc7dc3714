# ─────────────────────────────────────────────────────────────────────────────
# Pydantic v2 Request / Response Schemas
# ─────────────────────────────────────────────────────────────────────────────


from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Structured-output mode: the client expects the model to answer in JSON.
DEFAULT_GENERATION_CONFIG: dict[str, Any] = {"responseMimeType": "application/json"}


class GenerationRequest(BaseModel):
    """Body of POST /api/generate, forwarded upstream as-is."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    contents: list[Any] = Field(..., min_length=1, description="Ordered content parts, forwarded as-is")
    generation_config: dict[str, Any] | None = Field(None, alias="generationConfig")

    def upstream_payload(self) -> dict[str, Any]:
        """Body for the upstream generateContent call."""
        return {
            "contents": self.contents,
            "generationConfig": (
                self.generation_config
                if self.generation_config is not None
                else dict(DEFAULT_GENERATION_CONFIG)
            ),
        }


class GenerateResponse(BaseModel):
    """Successful generation result."""

    success: bool = True
    text: str


class ErrorEnvelope(BaseModel):
    """Stable error shape returned for every failure."""

    model_config = ConfigDict(populate_by_name=True)

    error: str
    code: int
    retry_after: int | None = Field(None, alias="retryAfter")
    raw: str | None = Field(None, max_length=1000)
    details: str | None = None


class LivenessResponse(BaseModel):
    """Liveness check — minimal, near-zero cost."""

    status: str = "ok"
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check — can this instance serve generation traffic?"""

    status: str  # "ready" or "not_ready"
    upstream_configured: bool
