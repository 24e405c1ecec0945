"""Validation utilities for quantization inputs and span attributes."""

from typing import Any


# Span limits, matching the trace agent's truncation rules
MAX_RESOURCE_NAME_LENGTH = 5000
MAX_ATTRIBUTE_VALUE_LENGTH = 25000


def validate_field_keys(name: str, keys: Any) -> list[str]:
    """Validate a list of field keys for a ``show`` or ``exclude`` option.

    Args:
        name: Option name, used in error messages.
        keys: Iterable of field keys.

    Returns:
        The keys as a list, in their original order.

    Raises:
        ValueError: If keys is a bare string, is not iterable, or contains
            a non-string entry.
    """
    if isinstance(keys, (str, bytes)):
        raise ValueError(
            f"Option '{name}' must be a list of field keys, not a single string: {keys!r}"
        )

    try:
        items = list(keys)
    except TypeError:
        raise ValueError(
            f"Option '{name}' must be a list of field keys, got {type(keys).__name__}"
        ) from None

    for item in items:
        if not isinstance(item, str):
            raise ValueError(
                f"Option '{name}' field keys must be strings, "
                f"got {type(item).__name__}: {item!r}"
            )

    return items


def truncate(value: str, max_length: int) -> str:
    """Truncate a string to at most ``max_length`` characters.

    Raises:
        ValueError: If max_length is not positive.
    """
    if max_length <= 0:
        raise ValueError(f"max_length must be positive, got {max_length}")

    if len(value) <= max_length:
        return value
    return value[:max_length]
