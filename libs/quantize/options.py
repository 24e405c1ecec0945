"""Quantization options: which mapping keys are shown verbatim and which are dropped.

``show`` is a sum type. It is either the ``SHOW_ALL`` marker, which turns
quantization off entirely, or a frozen set of field keys whose values are
copied through untouched. ``exclude`` is always a frozen set of field keys
whose key/value pairs are removed from the output.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from libs.quantize.validation import validate_field_keys

PLACEHOLDER = "?"


class ShowAll(enum.Enum):
    """Marker for ``show`` meaning "reveal everything, do not redact"."""

    ALL = "all"

    def __repr__(self) -> str:
        return "SHOW_ALL"


SHOW_ALL = ShowAll.ALL

Show = Union[ShowAll, frozenset]

DEFAULT_SHOW_KEYS: frozenset[str] = frozenset({"_index", "_type", "_id"})
DEFAULT_EXCLUDE_KEYS: frozenset[str] = frozenset()


@dataclass(frozen=True)
class QuantizeOptions:
    """Immutable quantization policy.

    Attributes:
        show: ``SHOW_ALL`` or the set of keys whose values are preserved
            verbatim at any nesting depth.
        exclude: Keys whose key/value pairs are dropped at any nesting depth.
            Ignored when ``show`` is ``SHOW_ALL``.
    """

    show: Show = field(default_factory=frozenset)
    exclude: frozenset[str] = field(default_factory=frozenset)

    @property
    def shows_all(self) -> bool:
        """True when quantization is disabled by the ``SHOW_ALL`` marker."""
        return self.show is SHOW_ALL

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> QuantizeOptions:
        """Build options from a caller-supplied mapping.

        Accepts ``{"show": "all" | SHOW_ALL | [keys...], "exclude": [keys...]}``
        with either key optional.

        Raises:
            ValueError: If ``show`` or ``exclude`` has an unsupported shape.
        """
        if not isinstance(data, Mapping):
            raise ValueError(
                f"Quantize options must be a mapping, got {type(data).__name__}"
            )

        raw_show = data.get("show")
        show: Show
        if raw_show is None:
            show = frozenset()
        elif raw_show is SHOW_ALL or raw_show == SHOW_ALL.value:
            show = SHOW_ALL
        elif isinstance(raw_show, str):
            raise ValueError(
                f"Quantize option 'show' must be 'all' or a list of field keys, got {raw_show!r}"
            )
        else:
            show = frozenset(validate_field_keys("show", raw_show))

        raw_exclude = data.get("exclude")
        exclude = (
            frozenset()
            if raw_exclude is None
            else frozenset(validate_field_keys("exclude", raw_exclude))
        )
        return cls(show=show, exclude=exclude)

    @classmethod
    def coerce(cls, value: QuantizeOptions | Mapping[str, Any] | None) -> QuantizeOptions:
        """Accept ``None``, an options instance, or the mapping form."""
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls.from_mapping(value)


DEFAULT_OPTIONS = QuantizeOptions(show=DEFAULT_SHOW_KEYS, exclude=DEFAULT_EXCLUDE_KEYS)


def _union(left: Iterable[str], right: Iterable[str]) -> frozenset[str]:
    return frozenset(left) | frozenset(right)


def merge_options(
    base: QuantizeOptions | Mapping[str, Any] | None,
    extra: QuantizeOptions | Mapping[str, Any] | None,
) -> QuantizeOptions:
    """Merge two option records.

    If either side shows everything, the result shows everything. Otherwise
    ``show`` is the union of both sides. ``exclude`` is always the union.
    Members are never removed, so caller options cannot take away defaults.
    """
    base = QuantizeOptions.coerce(base)
    extra = QuantizeOptions.coerce(extra)

    if base.shows_all or extra.shows_all:
        show: Show = SHOW_ALL
    else:
        show = _union(base.show, extra.show)  # type: ignore[arg-type]

    return QuantizeOptions(show=show, exclude=_union(base.exclude, extra.exclude))
