# ─────────────────────────────────────────────────────────────────────────────
# Tracing Tests — exporter selection
# ─────────────────────────────────────────────────────────────────────────────

from opentelemetry.sdk.trace import TracerProvider

from auditor_gateway.tracing import configure_tracing


def test_disabled_when_unset():
    assert configure_tracing("") is None


def test_unknown_exporter_is_ignored():
    assert configure_tracing("zipkin-ish") is None


def test_console_exporter_installs_provider():
    provider = configure_tracing("console")
    assert isinstance(provider, TracerProvider)
    provider.shutdown()
