"""
Attribute flattening and value decoding.

Turns OTLP-style typed key/value lists into plain attribute maps.
"""

import json
import math
from typing import Any, Mapping, Optional, Sequence

from agent_telemetry.storage.models import AttributeMap, AttributeValue


def _parse_base10(raw: Any) -> Optional[int]:
    """Parse an OTLP integer (decimal string or JSON number) or return None."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() else None
    try:
        return int(str(raw).strip(), 10)
    except ValueError:
        return None


def _parse_finite(raw: Any) -> Optional[float]:
    """Convert to a finite float, or None for NaN, infinities and overflow."""
    if isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError, OverflowError):
        return None
    return value if math.isfinite(value) else None


def decode_any_value(variant: Any) -> AttributeValue:
    """Decode a variant-encoded attribute value into a scalar.

    Fields are checked in the order stringValue, intValue, doubleValue,
    boolValue; the first one present determines the result type. A value
    with none of them decodes to its JSON text, and a non-finite double
    such as "NaN" keeps its raw text, so decoding never fails.

    Args:
        variant: The ``value`` object of an OTLP key/value pair

    Returns:
        The decoded string, int, float or bool
    """
    if isinstance(variant, Mapping):
        if variant.get("stringValue") is not None:
            return str(variant["stringValue"])
        if variant.get("intValue") is not None:
            parsed = _parse_base10(variant["intValue"])
            return parsed if parsed is not None else str(variant["intValue"])
        if variant.get("doubleValue") is not None:
            parsed = _parse_finite(variant["doubleValue"])
            return parsed if parsed is not None else str(variant["doubleValue"])
        if variant.get("boolValue") is not None:
            return bool(variant["boolValue"])
    return json.dumps(variant, sort_keys=True, default=str)


def decode_point_value(point: Mapping[str, Any]) -> float:
    """Extract the numeric value of a metric data point.

    Prefers ``asDouble``, falls back to ``asInt`` parsed as a base-10
    integer. A point carrying neither, or a value that is not a finite
    float (NaN, infinities, integers beyond float range), is a zero-valued
    observation.
    """
    if point.get("asDouble") is not None:
        parsed = _parse_finite(point["asDouble"])
        return parsed if parsed is not None else 0.0
    if point.get("asInt") is not None:
        parsed = _parse_base10(point["asInt"])
        if parsed is None:
            return 0.0
        return _parse_finite(parsed) or 0.0
    return 0.0


def flatten_attributes(pairs: Optional[Sequence[Any]]) -> AttributeMap:
    """Flatten a typed key/value list into an attribute map.

    Later entries overwrite earlier ones with the same key. Entries that are
    not objects with a string key are skipped.
    """
    flat: AttributeMap = {}
    if not isinstance(pairs, (list, tuple)):
        return flat
    for pair in pairs:
        if not isinstance(pair, Mapping):
            continue
        key = pair.get("key")
        if not isinstance(key, str):
            continue
        flat[key] = decode_any_value(pair.get("value"))
    return flat


def overlay_attributes(*layers: Mapping[str, AttributeValue]) -> AttributeMap:
    """Merge attribute layers from broadest to narrowest.

    Layers are applied in order, so a key in a later layer replaces the
    same key from any earlier one. Callers pass the resource layer first and
    the point or record layer last.
    """
    merged: AttributeMap = {}
    for layer in layers:
        merged.update(layer)
    return merged
