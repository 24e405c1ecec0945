"""Resource-name quantization for search/indexing request tracing.

Converts outgoing request paths and JSON bodies into low-cardinality
resource strings, so spans group by the shape of a query instead of its
literal values, and payload data is kept out of trace metadata.

Usage:
    from libs.quantize import format_body, sanitize_url

    sanitize_url("/my-index-2024/_doc/42")
    # "/my-index-?/_doc/?"

    # Bulk bodies (newline-terminated) are quantized line by line
    format_body('{"index":{"_index":"t","_id":"1"}}\\n{"field":"value"}\\n')
    # '{"index":{"_index":"t","_id":"1"}}\\n{"field":"?"}'

    # Reveal or drop specific fields
    format_body(body, {"show": ["status"], "exclude": ["password"]})

    # Disable quantization entirely
    format_body(body, {"show": "all"})

Security:
    ``format_body`` never raises: a malformed statement becomes ``"?"`` and
    any unexpected failure returns ``"?"`` for the whole body. Use
    ``format_body_strict`` to handle failures explicitly.

    Keys listed in ``show`` are copied verbatim, including everything nested
    under them. Only list keys whose values are safe to export.
"""

from libs.quantize.options import (
    DEFAULT_EXCLUDE_KEYS,
    DEFAULT_OPTIONS,
    DEFAULT_SHOW_KEYS,
    PLACEHOLDER,
    SHOW_ALL,
    QuantizeOptions,
    ShowAll,
    merge_options,
)
from libs.quantize.quantize import (
    MalformedInputError,
    format_body,
    format_body_strict,
    format_statement,
    format_value,
    reserialize_json,
    sanitize_index_in_url,
    sanitize_url,
    split_statements,
)

__all__ = [
    "PLACEHOLDER",
    "SHOW_ALL",
    "ShowAll",
    "QuantizeOptions",
    "DEFAULT_OPTIONS",
    "DEFAULT_SHOW_KEYS",
    "DEFAULT_EXCLUDE_KEYS",
    "merge_options",
    "MalformedInputError",
    "format_body",
    "format_body_strict",
    "format_statement",
    "format_value",
    "reserialize_json",
    "sanitize_index_in_url",
    "sanitize_url",
    "split_statements",
]
