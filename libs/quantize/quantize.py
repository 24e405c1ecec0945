"""Resource quantization for search/indexing requests.

Turns a raw request path and JSON body into low-cardinality strings that are
safe to use as span resource names: literal values are replaced by
``PLACEHOLDER`` so that requests differing only in document IDs, numbers or
search terms group together, and payload data stays out of trace metadata.

Example:
    Quantizing a search request::

        from libs.quantize import format_body, sanitize_url

        sanitize_url("/my-index-2024/_doc/42")
        # "/my-index-?/_doc/?"

        format_body('{"query":{"match":{"title":"secret"}}}')
        # '{"query":{"match":{"title":"?"}}}'

        format_body('{"query":{"term":{"user":"bob"}}}', {"show": ["user"]})
        # '{"query":{"term":{"user":"bob"}}}'

All functions here are pure. They keep no state between calls and are safe
to use from any number of threads.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any, Callable

from libs.quantize.options import (
    DEFAULT_OPTIONS,
    PLACEHOLDER,
    QuantizeOptions,
    merge_options,
)

logger = logging.getLogger(__name__)

_DIGIT_RUN = re.compile(r"[0-9]+")

# Any path segment (after a "/", up to the next "/" or "?") containing a digit
_SEGMENT_WITH_DIGITS = re.compile(r"(?<=/)(?:[^?/0-9]*[0-9]+[^?/]*)")


class MalformedInputError(ValueError):
    """Raised when a body statement is not valid JSON."""

    def __init__(self, message: str, *, line: int | None = None) -> None:
        super().__init__(message)
        self.line = line


def sanitize_index_in_url(url: str) -> str:
    """Replace every digit run in the leading (index) segment of a URL.

    ``/my-index-2024/_search`` becomes ``/my-index-?/_search``. The rest of
    the URL is left alone. A URL without a second segment is returned as is.
    """
    index_end = url.find("/", 1)
    if index_end == -1:
        return url

    return _DIGIT_RUN.sub(PLACEHOLDER, url[:index_end]) + url[index_end:]


def sanitize_url(url: str) -> str:
    """Quantize a request path.

    Digit runs in the index segment are replaced one by one, preserving its
    shape. Every later segment containing a digit is replaced wholesale.

    Example:
        >>> sanitize_url("/logs-2024.01/_doc/abc123")
        '/logs-?.?/_doc/?'
    """
    if url.find("/", 1) == -1:
        return url

    return _SEGMENT_WITH_DIGITS.sub(PLACEHOLDER, sanitize_index_in_url(url))


def format_value(value: Any, options: QuantizeOptions = DEFAULT_OPTIONS) -> Any:
    """Quantize a nested JSON value.

    Mappings are quantized field by field. Sequences are walked element-wise
    only if at least one element is a mapping or sequence; a sequence of
    scalars collapses to a single placeholder. Scalars become the placeholder.
    """
    if options.shows_all:
        return value

    if isinstance(value, dict):
        return format_statement(value, options)

    if isinstance(value, (list, tuple)):
        # If any are structured, format them all
        if any(isinstance(item, (dict, list, tuple)) for item in value):
            return [format_value(item, options) for item in value]
        return PLACEHOLDER

    return PLACEHOLDER


def format_statement(statement: Any, options: QuantizeOptions = DEFAULT_OPTIONS) -> Any:
    """Quantize one parsed body statement.

    For a mapping, ``show`` keys are copied verbatim, ``exclude`` keys are
    dropped, and everything else is quantized recursively. ``show`` wins
    when a key is in both sets. Non-mapping statements are quantized like
    nested values.
    """
    if options.shows_all:
        return statement

    if not isinstance(statement, dict):
        return format_value(statement, options)

    quantized: dict[str, Any] = {}
    for key, value in statement.items():
        if key in options.show:
            quantized[key] = value
        elif key not in options.exclude:
            quantized[key] = format_value(value, options)
    return quantized


def reserialize_json(
    text: str,
    transform: Callable[[Any], Any],
    *,
    line: int | None = None,
) -> str:
    """Parse ``text`` as JSON, apply ``transform`` and dump the result compactly.

    Raises:
        MalformedInputError: If ``text`` is not valid JSON.
    """
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedInputError(f"Invalid JSON statement: {e.msg}", line=line) from e

    return json.dumps(transform(value), ensure_ascii=False, separators=(",", ":"))


def split_statements(body: str) -> list[str]:
    """Split a body into statements.

    A body ending in a newline is a bulk body: one statement per line, with
    trailing empty lines dropped. Anything else is a single statement.
    """
    if not body.endswith("\n"):
        return [body]

    statements = body.split("\n")
    while statements and statements[-1] == "":
        statements.pop()
    return statements


def _decode_body(body: str | bytes | bytearray) -> str:
    if isinstance(body, str):
        return body
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode("utf-8")
    raise TypeError(f"Body must be str or bytes, got {type(body).__name__}")


def format_body_strict(
    body: str | bytes | bytearray,
    options: QuantizeOptions | Mapping[str, Any] | None = None,
) -> str:
    """Quantize a request body, raising on unexpected failures.

    Each statement is handled on its own: a statement that is not valid JSON
    becomes the placeholder without affecting its siblings.

    Args:
        body: Raw request body, a single JSON document or newline-delimited
            bulk statements.
        options: Caller options, merged over ``DEFAULT_OPTIONS``.

    Returns:
        Quantized statements joined by newlines.

    Raises:
        ValueError: If options have an unsupported shape.
        TypeError: If body is not str or bytes.
        UnicodeDecodeError: If a bytes body is not valid UTF-8.
    """
    merged = merge_options(DEFAULT_OPTIONS, options)
    text = _decode_body(body)

    def transform(value: Any) -> Any:
        return format_statement(value, merged)

    output: list[str] = []
    for index, statement in enumerate(split_statements(text)):
        try:
            output.append(reserialize_json(statement, transform, line=index))
        except MalformedInputError as e:
            logger.debug("Statement %d not quantized: %s", index, e)
            output.append(PLACEHOLDER)

    return "\n".join(output)


def format_body(
    body: str | bytes | bytearray,
    options: QuantizeOptions | Mapping[str, Any] | None = None,
) -> str:
    """Quantize a request body without ever raising.

    Same as ``format_body_strict``, except that any failure returns the
    placeholder for the whole body. Tracing must never break the traced call.
    """
    try:
        return format_body_strict(body, options)
    except Exception as e:
        logger.debug("Body quantization failed (%s), using placeholder", type(e).__name__)
        return PLACEHOLDER
