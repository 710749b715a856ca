"""Validates caller-supplied conversion options against an engine's allow-lists."""
from typing import Any, Mapping, Optional

from converter.conversion.errors import ValidationError
from converter.conversion.models import OPTION_FIELDS, ConversionOptions
from converter.conversion.registry import EngineCapabilities, normalise_option_value


def _normalise(value: Any) -> str:
    if isinstance(value, (bool, list, dict)):
        raise TypeError(type(value).__name__)
    return normalise_option_value(value)


def _default_for(key: str, caps: EngineCapabilities) -> Optional[str]:
    allowed = caps.allowed_values(key)
    if not allowed:
        return None
    default = caps.defaults.get(key)
    if default is not None:
        return default
    if "original" in allowed:
        return "original"
    return allowed[0]


def validate(options: Optional[Mapping[str, Any]], caps: EngineCapabilities) -> ConversionOptions:
    """Return the option snapshot for this engine or raise ValidationError naming the first bad field.

    Unknown keys and keys the engine has no allow-list for are rejected; missing keys get the engine default.
    """
    options = options or {}
    if not isinstance(options, Mapping):
        raise ValidationError("conversionOptions", "must be an object")
    for key in options:
        if key not in OPTION_FIELDS:
            raise ValidationError(str(key), "unknown option")

    values: dict[str, Optional[str]] = {}
    for key, attr in OPTION_FIELDS.items():
        allowed = caps.allowed_values(key)
        raw = options.get(key)
        if raw is None or raw == "":
            values[attr] = _default_for(key, caps)
            continue
        if not allowed:
            raise ValidationError(key, f"not supported by engine {caps.engine_id}")
        try:
            value = _normalise(raw)
        except TypeError:
            raise ValidationError(key, f"invalid value {raw!r}")
        if value not in allowed:
            raise ValidationError(key, f"{raw!r} is not one of {', '.join(allowed)}")
        values[attr] = value
    return ConversionOptions(**values)
