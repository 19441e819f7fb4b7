from listing_hunter.core.config import Settings
from listing_hunter.core.telemetry import (
    ROLE_ATTRIBUTE,
    SOURCE_ATTRIBUTE,
    build_resource,
    parse_headers,
    setup_telemetry,
    shutdown_telemetry,
    start_observability,
)


def test_parse_headers_skips_malformed_pairs() -> None:
    assert parse_headers(None) == {}
    assert parse_headers("authorization=Bearer abc, x-team = hunters ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "hunters",
    }


def test_setup_telemetry_disabled_is_a_noop() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False))
    assert runtime.enabled is False
    assert runtime.provider is None
    shutdown_telemetry(runtime)


def test_resource_names_process_role_and_source() -> None:
    settings = Settings(otel_enabled=False, source_name="trademe", environment="staging")

    attributes = build_resource(settings, "worker").attributes

    assert attributes["service.name"] == "listing-hunter"
    assert attributes["deployment.environment"] == "staging"
    assert attributes[ROLE_ATTRIBUTE] == "worker"
    assert attributes[SOURCE_ATTRIBUTE] == "trademe"


def test_start_observability_keeps_role_when_tracing_is_off() -> None:
    runtime = start_observability(Settings(otel_enabled=False), role="worker")
    assert (runtime.enabled, runtime.role) == (False, "worker")
    shutdown_telemetry(runtime)
