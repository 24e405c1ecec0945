"""Configuration management for search-request tracing.

Supports YAML configuration files with environment variable substitution.
The quantization engine itself takes its options per call; this module only
configures the tracing helper in ``libs.quantize.tracing``.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal, Union

from libs.quantize.options import QuantizeOptions
from libs.quantize.validation import MAX_ATTRIBUTE_VALUE_LENGTH, MAX_RESOURCE_NAME_LENGTH

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off", ""}


class ConfigurationError(Exception):
    """Raised when tracing configuration is invalid."""

    pass


@dataclass
class QuantizeConfig:
    """Quantization policy applied to traced request bodies.

    Both lists are merged over the engine defaults, so the ``_index``,
    ``_type`` and ``_id`` keys stay visible even when omitted here.
    """

    show: Union[list[str], Literal["all"]] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)


@dataclass
class SearchTracingConfig:
    """Root configuration for search-request tracing."""

    enabled: bool = True
    service_name: str = "elasticsearch"
    db_system: str = "elasticsearch"
    span_name: str = "elasticsearch.query"
    capture_body: bool = True
    capture_params: bool = True
    max_resource_length: int = MAX_RESOURCE_NAME_LENGTH
    max_attribute_length: int = MAX_ATTRIBUTE_VALUE_LENGTH
    quantize: QuantizeConfig = field(default_factory=QuantizeConfig)

    def validate(self) -> None:
        """Validate the configuration.

        Validates that:
        - service_name and span_name are non-empty
        - max_resource_length and max_attribute_length are positive
        - quantize.show is "all" or a list of strings
        - quantize.exclude is a list of strings

        Raises:
            ConfigurationError: If any validation errors are found.
        """
        errors: list[str] = []

        if not self.service_name:
            errors.append("service_name must not be empty.")

        if not self.span_name:
            errors.append("span_name must not be empty.")

        if self.max_resource_length <= 0:
            errors.append(
                f"Invalid max_resource_length: {self.max_resource_length}. "
                "Value must be positive."
            )

        if self.max_attribute_length <= 0:
            errors.append(
                f"Invalid max_attribute_length: {self.max_attribute_length}. "
                "Value must be positive."
            )

        try:
            self.quantize_options()
        except ValueError as e:
            errors.append(f"Invalid quantize options: {e}")

        if errors:
            error_message = "Configuration validation failed:\n" + "\n".join(
                f"  - {error}" for error in errors
            )
            raise ConfigurationError(error_message)

    def quantize_options(self) -> QuantizeOptions:
        """Return the quantize block as engine options.

        Raises:
            ValueError: If show or exclude has an unsupported shape.
        """
        return QuantizeOptions.from_mapping(
            {"show": self.quantize.show, "exclude": self.quantize.exclude}
        )


def _substitute_env_vars(value: str) -> str:
    """Substitute ${VAR} or ${VAR:default} patterns with environment variable values.

    Supports default values using colon syntax: ${VAR:default_value}
    If no default is provided and the variable is not set, returns empty string.
    """
    pattern = r"\$\{([^}]+)\}"

    def replace(match: re.Match[str]) -> str:
        var_expr = match.group(1)
        if ":" in var_expr:
            var_name, default = var_expr.split(":", 1)
            return os.environ.get(var_name, default)
        return os.environ.get(var_expr, "")

    return re.sub(pattern, replace, value)


def _process_config_values(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively process config values, substituting environment variables."""
    result = {}
    for key, value in config.items():
        if isinstance(value, str):
            result[key] = _substitute_env_vars(value)
        elif isinstance(value, dict):
            result[key] = _process_config_values(value)
        elif isinstance(value, list):
            result[key] = [
                _substitute_env_vars(item) if isinstance(item, str) else item for item in value
            ]
        else:
            result[key] = value
    return result


def _as_bool(name: str, value: Any) -> bool:
    """Coerce YAML booleans and substituted strings like "false" to bool."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    if isinstance(value, int):
        return bool(value)
    raise ConfigurationError(f"Invalid boolean for {name}: {value!r}")


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid integer for {name}: {value!r}") from None


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file."""
    import yaml

    with open(path) as f:
        return yaml.safe_load(f) or {}


def _dict_to_config(data: dict[str, Any]) -> SearchTracingConfig:
    """Convert a dictionary to SearchTracingConfig."""
    defaults = SearchTracingConfig()
    quantize_data = data.get("quantize") or {}

    return SearchTracingConfig(
        enabled=_as_bool("enabled", data.get("enabled", defaults.enabled)),
        service_name=str(data.get("service_name", defaults.service_name)),
        db_system=str(data.get("db_system", defaults.db_system)),
        span_name=str(data.get("span_name", defaults.span_name)),
        capture_body=_as_bool("capture_body", data.get("capture_body", defaults.capture_body)),
        capture_params=_as_bool(
            "capture_params", data.get("capture_params", defaults.capture_params)
        ),
        max_resource_length=_as_int(
            "max_resource_length",
            data.get("max_resource_length", defaults.max_resource_length),
        ),
        max_attribute_length=_as_int(
            "max_attribute_length",
            data.get("max_attribute_length", defaults.max_attribute_length),
        ),
        quantize=QuantizeConfig(
            show=quantize_data.get("show") or [],
            exclude=quantize_data.get("exclude") or [],
        ),
    )


def load_config(
    config_path: str | None = None,
    service_name: str | None = None,
    **overrides: Any,
) -> SearchTracingConfig:
    """Load search tracing configuration.

    Configuration is loaded from (in order of precedence):
    1. Explicit overrides passed to this function
    2. Environment variables (via ${VAR} substitution in YAML)
    3. Specified YAML config file
    4. Default YAML config file (libs/quantize/config/default.yaml)
    5. Default values in config dataclasses

    Args:
        config_path: Path to YAML configuration file.
        service_name: Override service name.
        **overrides: Additional config overrides. Use ``quantize_show`` and
            ``quantize_exclude`` for the quantize block.

    Returns:
        SearchTracingConfig instance.

    Raises:
        ConfigurationError: If the resulting configuration is invalid or an
            override names an unknown field.
    """
    config_data: dict[str, Any] = {}

    default_config_path = Path(__file__).parent / "config" / "default.yaml"
    if default_config_path.exists():
        config_data = _load_yaml(default_config_path)

    if config_path:
        specified_path = Path(config_path)
        if specified_path.exists():
            specified_data = _load_yaml(specified_path)
            # Shallow-merge nested mappings, replace everything else
            for key, value in specified_data.items():
                if isinstance(value, dict) and isinstance(config_data.get(key), dict):
                    config_data[key] = {**config_data[key], **value}
                else:
                    config_data[key] = value
        else:
            logger.warning(f"Tracing config file not found, using defaults: {config_path}")

    config_data = _process_config_values(config_data)

    config = _dict_to_config(config_data)

    if service_name:
        config.service_name = service_name

    top_level = {f.name for f in fields(SearchTracingConfig)} - {"quantize"}
    quantize_fields = {f.name for f in fields(QuantizeConfig)}
    for key, value in overrides.items():
        if key.startswith("quantize_") and key[9:] in quantize_fields:
            setattr(config.quantize, key[9:], value)
        elif key in top_level:
            setattr(config, key, value)
        else:
            raise ConfigurationError(f"Unknown configuration override: {key}")

    config.validate()

    return config
