# ─────────────────────────────────────────────────────────────────────────────
# Tests — request stages, exercised without a running app
# ─────────────────────────────────────────────────────────────────────────────

import asyncio
import json

import httpx
import pytest
from conftest import CANDIDATE_BODY, GENERATE_BODY, GENERATE_PATH, make_settings

from auditor_gateway.exceptions import (
    ConfigurationError,
    InvalidRequestError,
    OriginNotAllowedError,
    PayloadTooLargeError,
    RateLimitExceededError,
    UpstreamTimeoutError,
)
from auditor_gateway.main import build_services
from auditor_gateway.rate_limit import API_TIER, GENERATE_TIER
from auditor_gateway.schemas import DEFAULT_GENERATION_CONFIG, GenerateResponse
from auditor_gateway.stages import (
    ADMISSION_STAGES,
    GENERATE_STAGES,
    RequestContext,
    check_origin,
    handle_generation,
    limit_api,
    limit_generate,
    read_body,
    require_credential,
    run_stages,
    validate_body,
    validate_payload,
)


def _ctx(
    method: str = "POST",
    path: str = "/api/generate",
    origin: str | None = None,
    ip: str = "203.0.113.7",
    preflight: bool = False,
) -> RequestContext:
    return RequestContext(method=method, path=path, client_ip=ip, origin=origin, preflight=preflight)


class TestStageOrder:
    def test_admission_runs_log_then_origin(self):
        assert [name for name, _ in ADMISSION_STAGES] == ["log", "origin"]

    def test_generation_takes_rate_limit_slot_before_credential_check(self):
        assert [name for name, _ in GENERATE_STAGES] == ["rate_limit", "credential"]


class TestOriginStage:
    def test_rejects_unlisted_origin(self, services):
        with pytest.raises(OriginNotAllowedError):
            check_origin(_ctx(origin="https://evil.example"), services)
        assert services.metrics.origin_rejections == 1

    def test_admits_missing_origin(self, services):
        check_origin(_ctx(origin=None), services)

    def test_rejected_preflight_leaves_limiter_untouched(self, services):
        ctx = _ctx(method="OPTIONS", origin="https://evil.example", preflight=True)
        with pytest.raises(OriginNotAllowedError):
            run_stages(ADMISSION_STAGES, ctx, services)
        assert services.limiter.count(API_TIER, "203.0.113.7") == 0
        assert services.limiter.count(GENERATE_TIER, "203.0.113.7") == 0


class TestRateLimitStages:
    def test_coarse_tier_skips_paths_outside_api(self, services):
        for _ in range(500):
            limit_api(_ctx(method="GET", path="/health"), services)
        assert services.limiter.count(API_TIER, "203.0.113.7") == 0

    def test_coarse_tier_skips_options(self, services):
        limit_api(_ctx(method="OPTIONS", path="/api/generate", preflight=True), services)
        assert services.limiter.count(API_TIER, "203.0.113.7") == 0

    def test_coarse_tier_counts_api_requests(self, clock):
        services = build_services(make_settings(rate_limit_max=2))
        limit_api(_ctx(), services)
        limit_api(_ctx(), services)
        with pytest.raises(RateLimitExceededError) as exc_info:
            limit_api(_ctx(), services)
        assert exc_info.value.tier == API_TIER
        assert services.metrics.to_dict()["rate_limited"] == {API_TIER: 1}

    def test_strict_tier(self, clock):
        services = build_services(make_settings(generate_limit_max=1))
        limit_generate(_ctx(), services)
        with pytest.raises(RateLimitExceededError) as exc_info:
            limit_generate(_ctx(), services)
        assert exc_info.value.tier == GENERATE_TIER
        assert exc_info.value.retry_after_seconds == 60


class TestCredentialStage:
    def test_missing_key_raises_generic_configuration_error(self, clock):
        services = build_services(make_settings(gemini_api_key=""))
        with pytest.raises(ConfigurationError) as exc_info:
            require_credential(_ctx(), services)
        assert exc_info.value.status_code == 500
        assert "GEMINI" not in exc_info.value.message
        assert "key" not in exc_info.value.message.lower()


class TestValidation:
    def test_valid_payload_gets_default_config(self):
        request = validate_payload(GENERATE_BODY)
        assert request.upstream_payload()["generationConfig"] == DEFAULT_GENERATION_CONFIG

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"contents": []},
            {"contents": None},
            {"contents": "text"},
            {"contents": {"parts": []}},
        ],
    )
    def test_bad_contents_rejected(self, payload):
        with pytest.raises(InvalidRequestError) as exc_info:
            validate_payload(payload)
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Invalid request: contents array is required"

    def test_content_entries_forwarded_as_is(self):
        request = validate_payload({"contents": ["plain text", {"parts": [{"text": "hi"}]}]})
        assert request.upstream_payload()["contents"] == ["plain text", {"parts": [{"text": "hi"}]}]

    def test_non_object_generation_config_rejected(self):
        with pytest.raises(InvalidRequestError, match="generationConfig"):
            validate_payload({"contents": [{"parts": []}], "generationConfig": "fast"})

    @pytest.mark.parametrize("body", [b"[1, 2]", b"not json", b'"string"'])
    def test_non_object_body_rejected(self, body):
        with pytest.raises(InvalidRequestError, match="JSON object"):
            validate_body(body, max_bytes=1024)

    def test_empty_body_reports_missing_contents(self):
        with pytest.raises(InvalidRequestError, match="contents array is required"):
            validate_body(b"", max_bytes=1024)

    def test_oversized_body_rejected(self):
        with pytest.raises(PayloadTooLargeError) as exc_info:
            validate_body(b"x" * 2048, max_bytes=1024)
        assert exc_info.value.status_code == 413


class _Chunks:
    """Async body source that records how many chunks were pulled."""

    def __init__(self, chunk: bytes, count: int) -> None:
        self.chunk = chunk
        self.count = count
        self.pulled = 0

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for _ in range(self.count):
            self.pulled += 1
            yield self.chunk


class TestReadBody:
    async def test_joins_chunks_under_limit(self):
        body = _Chunks(b"ab", 3)
        assert await read_body(body, max_bytes=6) == b"ababab"

    async def test_stops_reading_once_limit_passed(self):
        body = _Chunks(b"x" * 64, 100)
        with pytest.raises(PayloadTooLargeError):
            await read_body(body, max_bytes=100)
        assert body.pulled == 2

    async def test_declared_length_over_limit_rejected_before_reading(self):
        body = _Chunks(b"x", 1)
        with pytest.raises(PayloadTooLargeError):
            await read_body(body, max_bytes=100, declared_length=101)
        assert body.pulled == 0

    async def test_bytes_over_limit_rejected(self):
        with pytest.raises(PayloadTooLargeError):
            await read_body(b"x" * 101, max_bytes=100)

    async def test_oversized_stream_counts_as_validation_failure(self, clock):
        services = build_services(make_settings(max_body_bytes=100))
        body = _Chunks(b"x" * 64, 10)
        with pytest.raises(PayloadTooLargeError):
            await handle_generation(_ctx(), body, services)
        assert services.metrics.validation_failures == 1
        assert body.pulled == 2


class TestHandleGeneration:
    async def test_round_trip(self, services, upstream_mock):
        upstream_mock.post(GENERATE_PATH).mock(return_value=httpx.Response(200, json=CANDIDATE_BODY))

        response = await handle_generation(_ctx(), json.dumps(GENERATE_BODY).encode(), services)

        assert response == GenerateResponse(success=True, text="Score: 7/10")
        assert services.metrics.to_dict()["upstream_outcomes"] == {"success": 1}

    async def test_invalid_body_consumes_strict_slot_before_upstream(self, clock, upstream_mock):
        """Policy: the strict-tier slot is taken before validation runs."""
        route = upstream_mock.post(GENERATE_PATH).mock(
            return_value=httpx.Response(200, json=CANDIDATE_BODY)
        )
        services = build_services(make_settings(generate_limit_max=2))

        with pytest.raises(InvalidRequestError):
            await handle_generation(_ctx(), b'{"contents": []}', services)

        assert services.limiter.count(GENERATE_TIER, "203.0.113.7") == 1
        assert not route.called

    async def test_rate_limited_request_never_validated(self, clock, upstream_mock):
        services = build_services(make_settings(generate_limit_max=1))
        upstream_mock.post(GENERATE_PATH).mock(return_value=httpx.Response(200, json=CANDIDATE_BODY))
        await handle_generation(_ctx(), json.dumps(GENERATE_BODY).encode(), services)

        with pytest.raises(RateLimitExceededError):
            await handle_generation(_ctx(), b"garbage", services)
        assert services.metrics.validation_failures == 0

    async def test_timeout_recorded_and_raised(self):
        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(30)
            return httpx.Response(200, json=CANDIDATE_BODY)

        services = build_services(
            make_settings(upstream_timeout_seconds=0.05),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(hang)),
        )

        with pytest.raises(UpstreamTimeoutError):
            await handle_generation(_ctx(), json.dumps(GENERATE_BODY).encode(), services)
        assert services.metrics.to_dict()["upstream_outcomes"] == {"UpstreamTimeoutError": 1}
        await services.upstream.aclose()
