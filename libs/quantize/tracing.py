"""OpenTelemetry span helper for outgoing search requests.

Applies the quantization engine to a request before it is attached to a
span: the resource name is the HTTP method plus the quantized URL, and the
body attribute holds the quantized body. Raw values never reach the span.

Example:
    Tracing a request explicitly::

        from libs.quantize.tracing import SearchRequestTracer

        tracer = SearchRequestTracer()

        with tracer.trace_request("GET", "/users-2024/_search", body=query) as span:
            response = transport.perform_request("GET", "/users-2024/_search", body=query)
            span.set_response(response.status)

    Wrapping a transport method::

        transport.perform_request = tracer.wrap(transport.perform_request)

Tracing must never break the traced call. Failures while building span
attributes are logged at DEBUG and the span is started without them.
"""

from __future__ import annotations

import functools
import json
import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable, Iterator, TypeVar

from libs.quantize.config import SearchTracingConfig
from libs.quantize.quantize import format_body, sanitize_url
from libs.quantize.validation import MAX_ATTRIBUTE_VALUE_LENGTH, truncate

if TYPE_CHECKING:
    from opentelemetry.trace import Span, Tracer

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

TRACER_NAME = "libs.quantize"


class SearchSpan:
    """Wrapper around the span of one traced search request.

    All methods are no-ops when tracing is disabled and no span exists.
    """

    def __init__(
        self,
        span: Span | None = None,
        *,
        max_attribute_length: int = MAX_ATTRIBUTE_VALUE_LENGTH,
    ) -> None:
        self._span = span
        self._max_attribute_length = max_attribute_length

    @property
    def span(self) -> Span | None:
        """The underlying OpenTelemetry span, or None when tracing is disabled."""
        return self._span

    def set_attribute(self, key: str, value: Any) -> None:
        """Set an attribute on the span. String values are truncated."""
        if self._span is None:
            return
        if isinstance(value, str):
            value = truncate(value, self._max_attribute_length)
        self._span.set_attribute(key, value)

    def set_response(self, status_code: int) -> None:
        """Record the HTTP status of the response.

        Server errors (5xx) also mark the span as failed.
        """
        if self._span is None:
            return

        self._span.set_attribute("http.response.status_code", status_code)
        if status_code >= 500:
            from opentelemetry.trace import StatusCode

            self._span.set_status(StatusCode.ERROR, f"HTTP {status_code}")


class SearchRequestTracer:
    """Create quantized client spans for search/indexing requests.

    Args:
        config: Tracing configuration. Defaults to ``SearchTracingConfig()``.
        tracer: OpenTelemetry tracer. Defaults to the global tracer provider's
            tracer named ``libs.quantize``.
    """

    def __init__(
        self,
        config: SearchTracingConfig | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._config = config or SearchTracingConfig()
        self._options = self._config.quantize_options()
        self._tracer = tracer

    @property
    def config(self) -> SearchTracingConfig:
        return self._config

    def _get_tracer(self) -> Tracer:
        if self._tracer is None:
            from opentelemetry import trace

            self._tracer = trace.get_tracer(TRACER_NAME)
        return self._tracer

    def resource_name(self, method: str, url: str) -> str:
        """Return the span resource for a request, e.g. ``GET /index-?/_doc/?``."""
        resource = f"{method.upper()} {sanitize_url(url)}"
        return truncate(resource, self._config.max_resource_length)

    def _serialize_body(self, body: Any) -> str | bytes:
        if isinstance(body, (dict, list)):
            return json.dumps(body, ensure_ascii=False, separators=(",", ":"))
        return body

    def request_attributes(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        body: Any = None,
    ) -> dict[str, str]:
        """Build the span attributes for a request.

        Args:
            method: HTTP method.
            url: Request path, e.g. ``/my-index/_search``.
            params: Query string parameters.
            body: Request body as text, bytes, or an already decoded mapping
                or list.

        Returns:
            Attribute mapping with quantized URL and body.
        """
        limit = self._config.max_attribute_length
        quantized_url = sanitize_url(url)

        attributes = {
            "db.system": self._config.db_system,
            "peer.service": self._config.service_name,
            "resource.name": self.resource_name(method, url),
            "elasticsearch.method": method.upper(),
            "elasticsearch.url": truncate(quantized_url, limit),
        }

        if self._config.capture_params and params:
            attributes["elasticsearch.params"] = truncate(
                json.dumps(params, separators=(",", ":"), default=str), limit
            )

        if self._config.capture_body and body:
            quantized_body = format_body(self._serialize_body(body), self._options)
            attributes["elasticsearch.body"] = truncate(quantized_body, limit)

        return attributes

    @contextmanager
    def trace_request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        body: Any = None,
    ) -> Iterator[SearchSpan]:
        """Trace one search request in a CLIENT span.

        Yields:
            SearchSpan for recording the response. Wraps no span when
            tracing is disabled.

        Exceptions raised inside the block are recorded on the span, mark
        it as failed, and propagate unchanged.
        """
        limit = self._config.max_attribute_length

        if not self._config.enabled:
            logger.debug("Search tracing disabled, skipping span for %s", method)
            yield SearchSpan(max_attribute_length=limit)
            return

        try:
            attributes = self.request_attributes(method, url, params=params, body=body)
        except Exception as e:
            logger.debug("Could not build search span attributes: %s", type(e).__name__)
            attributes = {}

        from opentelemetry.trace import SpanKind, StatusCode

        with self._get_tracer().start_as_current_span(
            self._config.span_name,
            kind=SpanKind.CLIENT,
            attributes=attributes,
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            try:
                yield SearchSpan(span, max_attribute_length=limit)
            except Exception as e:
                span.record_exception(e)
                span.set_status(StatusCode.ERROR, type(e).__name__)
                raise

    def wrap(self, perform_request: F) -> F:
        """Wrap a ``perform_request(method, url, ...)`` callable in a traced span.

        The response status is recorded when the result has a ``status``
        attribute or is a tuple starting with an integer status.
        """

        @functools.wraps(perform_request)
        def traced(method: str, url: str, *args: Any, **kwargs: Any) -> Any:
            with self.trace_request(
                method,
                url,
                params=kwargs.get("params"),
                body=kwargs.get("body"),
            ) as span:
                result = perform_request(method, url, *args, **kwargs)
                status = _response_status(result)
                if status is not None:
                    span.set_response(status)
                return result

        return traced  # type: ignore[return-value]


def _response_status(result: Any) -> int | None:
    status = getattr(result, "status", None)
    if status is None and isinstance(result, tuple) and result:
        status = result[0]
    if isinstance(status, int) and not isinstance(status, bool):
        return status
    return None
