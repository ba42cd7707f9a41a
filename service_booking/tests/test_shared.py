"""
Unit tests for shared tracing, error and metrics helpers.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import (
    ConfigurationMissingError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from shared.metrics import MetricsCollector
from shared.tracing import build_otlp_exporter_kwargs, trace_operation


class TestOtlpExporterKwargs:
    """Test cases for build_otlp_exporter_kwargs."""

    def test_override_wins(self, monkeypatch):
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://env:4317")
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_HEADERS", raising=False)
        assert build_otlp_exporter_kwargs("https://override:4317") == {"endpoint": "https://override:4317"}

    def test_env_endpoint_and_headers(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://collector:4317")
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_HEADERS", "api-key=abc, x-scope = booking,,broken")

        assert build_otlp_exporter_kwargs() == {
            "endpoint": "http://collector:4317",
            "headers": {"api-key": "abc", "x-scope": "booking"},
            "insecure": True,
        }


class TestTraceOperation:
    """Test cases for trace_operation."""

    def test_exceptions_propagate(self):
        with pytest.raises(RuntimeError):
            with trace_operation("test.op", skipped=None, key="value"):
                raise RuntimeError("boom")


class TestErrors:
    """Test cases for booking layer exceptions."""

    @pytest.mark.parametrize("error, status_code, code", [
        (ValidationError("bad"), 400, "VALIDATION_ERROR"),
        (NotFoundError(), 404, "NOT_FOUND"),
        (UpstreamUnavailableError("rezdy", "down"), 502, "UPSTREAM_UNAVAILABLE"),
        (ConfigurationMissingError("rezdy_api_key"), 500, "CONFIGURATION_MISSING"),
    ])
    def test_status_codes(self, error, status_code, code):
        assert error.status_code == status_code
        response = error.to_response()
        assert response.code == code
        assert response.trace_id is None

    def test_upstream_message_names_service(self):
        error = UpstreamUnavailableError("rezdy", "down")
        assert error.message == "rezdy: down"

    def test_configuration_default_message(self):
        assert ConfigurationMissingError("redis_url").message == "redis_url is not configured"


class TestMetricsCollector:
    """Test cases for MetricsCollector."""

    def test_collectors_are_isolated(self):
        first = MetricsCollector("booking")
        second = MetricsCollector("booking")

        first.increment_counter("cache_hits_total", entity_type="product")

        assert b'cache_hits_total{entity_type="product"} 1.0' in first.export()
        assert b'cache_hits_total{entity_type="product"}' not in second.export()

    def test_unknown_metric_is_ignored(self):
        MetricsCollector("booking").increment_counter("does_not_exist", label="x")

    def test_http_request_recorded(self):
        collector = MetricsCollector("booking")
        collector.record_http_request("GET", "/health", 200, 0.01)
        assert b'http_requests_total{method="GET",endpoint="/health",status_code="200"} 1.0' in collector.export()
