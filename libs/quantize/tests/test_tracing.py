"""Tests for the search-request span helper.

Most tests run against a real OpenTelemetry SDK tracer provider with an
in-memory exporter, so the attributes checked are the ones that would be
exported. The provider is local to each test and never installed globally.
"""

from __future__ import annotations

import logging
from typing import Any
from unittest import mock

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from libs.quantize.config import QuantizeConfig, SearchTracingConfig
from libs.quantize.tracing import SearchRequestTracer, SearchSpan


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def sdk_tracer(exporter: InMemorySpanExporter) -> Any:
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return provider.get_tracer("test")


@pytest.fixture
def search_tracer(sdk_tracer: Any) -> SearchRequestTracer:
    return SearchRequestTracer(tracer=sdk_tracer)


class TestResourceName:
    """Tests for resource name construction."""

    def test_method_and_quantized_url(self) -> None:
        """Test the resource is the upper-cased method plus the quantized URL."""
        tracer = SearchRequestTracer(tracer=mock.MagicMock())
        assert tracer.resource_name("get", "/users-2024/_doc/42") == "GET /users-?/_doc/?"

    def test_truncated(self) -> None:
        """Test the resource is truncated to the configured length."""
        tracer = SearchRequestTracer(
            SearchTracingConfig(max_resource_length=8), tracer=mock.MagicMock()
        )
        assert tracer.resource_name("GET", "/users/_search") == "GET /use"


class TestRequestAttributes:
    """Tests for request attribute construction."""

    def test_base_attributes(self) -> None:
        """Test attributes for a request without params or body."""
        tracer = SearchRequestTracer(tracer=mock.MagicMock())
        attributes = tracer.request_attributes("post", "/users/_doc/7")

        assert attributes == {
            "db.system": "elasticsearch",
            "peer.service": "elasticsearch",
            "resource.name": "POST /users/_doc/?",
            "elasticsearch.method": "POST",
            "elasticsearch.url": "/users/_doc/?",
        }

    def test_params_serialized(self) -> None:
        """Test params are serialized as compact JSON."""
        tracer = SearchRequestTracer(tracer=mock.MagicMock())
        attributes = tracer.request_attributes(
            "GET", "/users/_search", params={"refresh": "true", "size": 10}
        )
        assert attributes["elasticsearch.params"] == '{"refresh":"true","size":10}'

    def test_body_quantized(self) -> None:
        """Test the body attribute holds the quantized body."""
        tracer = SearchRequestTracer(tracer=mock.MagicMock())
        attributes = tracer.request_attributes(
            "GET", "/users/_search", body='{"query":{"match":{"name":"alice"}}}'
        )
        assert attributes["elasticsearch.body"] == '{"query":{"match":{"name":"?"}}}'

    def test_decoded_body_quantized(self) -> None:
        """Test an already decoded body is serialized before quantizing."""
        tracer = SearchRequestTracer(tracer=mock.MagicMock())
        attributes = tracer.request_attributes(
            "GET", "/users/_search", body={"query": {"terms": {"tags": ["a", "b"]}}}
        )
        assert attributes["elasticsearch.body"] == '{"query":{"terms":{"tags":"?"}}}'

    def test_quantize_config_applied(self) -> None:
        """Test show and exclude from config reach the engine."""
        config = SearchTracingConfig(
            quantize=QuantizeConfig(show=["status"], exclude=["password"])
        )
        tracer = SearchRequestTracer(config, tracer=mock.MagicMock())
        attributes = tracer.request_attributes(
            "POST",
            "/users/_doc",
            body='{"status":"active","password":"hunter2","name":"bob"}',
        )
        assert attributes["elasticsearch.body"] == '{"status":"active","name":"?"}'

    def test_capture_disabled(self) -> None:
        """Test params and body are omitted when capture is disabled."""
        config = SearchTracingConfig(capture_body=False, capture_params=False)
        tracer = SearchRequestTracer(config, tracer=mock.MagicMock())
        attributes = tracer.request_attributes(
            "GET", "/users/_search", params={"size": 1}, body='{"a":1}'
        )

        assert "elasticsearch.params" not in attributes
        assert "elasticsearch.body" not in attributes

    def test_malformed_body_degrades(self) -> None:
        """Test a malformed body becomes the placeholder."""
        tracer = SearchRequestTracer(tracer=mock.MagicMock())
        attributes = tracer.request_attributes("GET", "/users/_search", body="{oops")
        assert attributes["elasticsearch.body"] == "?"

    def test_body_truncated(self) -> None:
        """Test long bodies are truncated to the attribute limit."""
        config = SearchTracingConfig(max_attribute_length=10)
        tracer = SearchRequestTracer(config, tracer=mock.MagicMock())
        attributes = tracer.request_attributes(
            "GET", "/users/_search", body='{"query":{"match":{"name":"alice"}}}'
        )
        assert attributes["elasticsearch.body"] == '{"query":{'


class TestTraceRequest:
    """Tests for trace_request with a real SDK tracer."""

    def test_span_created(
        self, search_tracer: SearchRequestTracer, exporter: InMemorySpanExporter
    ) -> None:
        """Test a CLIENT span with quantized attributes is exported."""
        with search_tracer.trace_request(
            "get",
            "/users-2024/_search",
            body='{"query":{"match":{"name":"alice"}}}',
        ) as span:
            span.set_response(200)

        spans = exporter.get_finished_spans()
        assert len(spans) == 1

        exported = spans[0]
        assert exported.name == "elasticsearch.query"
        assert exported.kind == SpanKind.CLIENT
        assert exported.attributes["resource.name"] == "GET /users-?/_search"
        assert exported.attributes["elasticsearch.body"] == '{"query":{"match":{"name":"?"}}}'
        assert exported.attributes["http.response.status_code"] == 200
        assert exported.status.status_code == StatusCode.UNSET

    def test_server_error_marks_span(
        self, search_tracer: SearchRequestTracer, exporter: InMemorySpanExporter
    ) -> None:
        """Test a 5xx response sets ERROR status."""
        with search_tracer.trace_request("GET", "/users/_search") as span:
            span.set_response(503)

        exported = exporter.get_finished_spans()[0]
        assert exported.status.status_code == StatusCode.ERROR

    def test_exception_recorded_and_propagated(
        self, search_tracer: SearchRequestTracer, exporter: InMemorySpanExporter
    ) -> None:
        """Test exceptions are recorded on the span and re-raised."""
        with pytest.raises(ConnectionError, match="refused"):
            with search_tracer.trace_request("GET", "/users/_search"):
                raise ConnectionError("refused")

        exported = exporter.get_finished_spans()[0]
        assert exported.status.status_code == StatusCode.ERROR
        assert [event.name for event in exported.events] == ["exception"]

    def test_set_attribute_truncates(
        self, sdk_tracer: Any, exporter: InMemorySpanExporter
    ) -> None:
        """Test string attributes set on the span are truncated."""
        tracer = SearchRequestTracer(
            SearchTracingConfig(max_attribute_length=5), tracer=sdk_tracer
        )
        with tracer.trace_request("GET", "/users/_search") as span:
            span.set_attribute("elasticsearch.shard", "abcdefgh")
            span.set_attribute("elasticsearch.took", 12)

        exported = exporter.get_finished_spans()[0]
        assert exported.attributes["elasticsearch.shard"] == "abcde"
        assert exported.attributes["elasticsearch.took"] == 12

    def test_disabled_creates_no_span(self, sdk_tracer: Any, exporter: InMemorySpanExporter) -> None:
        """Test a disabled tracer yields an empty SearchSpan."""
        tracer = SearchRequestTracer(SearchTracingConfig(enabled=False), tracer=sdk_tracer)

        with tracer.trace_request("GET", "/users/_search") as span:
            assert span.span is None
            span.set_response(500)
            span.set_attribute("key", "value")

        assert exporter.get_finished_spans() == ()

    def test_attribute_failure_does_not_break_call(
        self,
        search_tracer: SearchRequestTracer,
        exporter: InMemorySpanExporter,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test an attribute failure still traces the call, without attributes."""
        with mock.patch.object(
            search_tracer, "request_attributes", side_effect=RuntimeError("boom")
        ):
            with caplog.at_level(logging.DEBUG, logger="libs.quantize.tracing"):
                with search_tracer.trace_request("GET", "/users/_search"):
                    pass

        exported = exporter.get_finished_spans()[0]
        assert dict(exported.attributes) == {}
        assert "Could not build search span attributes: RuntimeError" in caplog.text

    def test_default_tracer_from_global_provider(self) -> None:
        """Test the global tracer is used when none is passed."""
        tracer = SearchRequestTracer()

        with mock.patch("opentelemetry.trace.get_tracer") as mock_get_tracer:
            with tracer.trace_request("GET", "/users/_search"):
                pass

        mock_get_tracer.assert_called_once_with("libs.quantize")
        start = mock_get_tracer.return_value.start_as_current_span
        start.assert_called_once()
        assert start.call_args.args == ("elasticsearch.query",)
        assert start.call_args.kwargs["kind"] == SpanKind.CLIENT


class TestWrap:
    """Tests for wrapping a perform_request callable."""

    def test_wrapped_call_traced(
        self, search_tracer: SearchRequestTracer, exporter: InMemorySpanExporter
    ) -> None:
        """Test the wrapper traces the call and returns its result."""

        class Response:
            status = 201

        def perform_request(method: str, url: str, params: Any = None, body: Any = None) -> Any:
            return Response()

        traced = search_tracer.wrap(perform_request)
        result = traced("PUT", "/users/_doc/9", body='{"name":"bob"}')

        assert isinstance(result, Response)
        assert traced.__name__ == "perform_request"

        exported = exporter.get_finished_spans()[0]
        assert exported.attributes["resource.name"] == "PUT /users/_doc/?"
        assert exported.attributes["elasticsearch.body"] == '{"name":"?"}'
        assert exported.attributes["http.response.status_code"] == 201

    def test_tuple_result_status(
        self, search_tracer: SearchRequestTracer, exporter: InMemorySpanExporter
    ) -> None:
        """Test a (status, ...) tuple result records the status."""
        traced = search_tracer.wrap(lambda method, url, **kwargs: (404, {}, ""))
        assert traced("GET", "/users/_doc/1") == (404, {}, "")

        exported = exporter.get_finished_spans()[0]
        assert exported.attributes["http.response.status_code"] == 404

    def test_result_without_status(
        self, search_tracer: SearchRequestTracer, exporter: InMemorySpanExporter
    ) -> None:
        """Test results without a status leave the attribute unset."""
        traced = search_tracer.wrap(lambda method, url, **kwargs: {"ok": True})
        traced("GET", "/users/_search", params={"size": 1})

        exported = exporter.get_finished_spans()[0]
        assert "http.response.status_code" not in exported.attributes
        assert exported.attributes["elasticsearch.params"] == '{"size":1}'

    def test_wrapped_exception_propagates(
        self, search_tracer: SearchRequestTracer, exporter: InMemorySpanExporter
    ) -> None:
        """Test exceptions from the wrapped call propagate unchanged."""

        def perform_request(method: str, url: str, **kwargs: Any) -> Any:
            raise TimeoutError("took too long")

        traced = search_tracer.wrap(perform_request)
        with pytest.raises(TimeoutError):
            traced("GET", "/users/_search")

        assert exporter.get_finished_spans()[0].status.status_code == StatusCode.ERROR


class TestSearchSpan:
    """Tests for SearchSpan without a span."""

    def test_noop_without_span(self) -> None:
        """Test methods do nothing when no span is wrapped."""
        span = SearchSpan()
        span.set_attribute("key", "value")
        span.set_response(200)
        assert span.span is None

    def test_forwards_to_span(self) -> None:
        """Test methods forward to the wrapped span."""
        otel_span = mock.MagicMock()
        span = SearchSpan(otel_span)

        span.set_response(502)

        otel_span.set_attribute.assert_called_once_with("http.response.status_code", 502)
        otel_span.set_status.assert_called_once_with(StatusCode.ERROR, "HTTP 502")
