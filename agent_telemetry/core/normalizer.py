"""
Ingestion normalizer for OTLP/JSON payloads.

Walks resource -> scope -> metric/log -> data point/record and emits flat
metric and event records. Every nested list is optional: a missing or
mistyped level is treated as empty and the walk continues.
"""

import logging
import time
from typing import Any, Dict, Iterator, List, Mapping, Optional

from agent_telemetry.storage.models import EventRecord, MetricRecord

from .attributes import decode_point_value, flatten_attributes, overlay_attributes

logger = logging.getLogger(__name__)

NANOS_PER_MILLI = 1_000_000
# Latest instant every local timezone can still render as a calendar date
MAX_TIMESTAMP_MS = 253_402_128_000_000

# Data point containers a metric may carry; each present one is walked
POINT_KINDS = ("sum", "gauge", "histogram")

EVENT_NAME_ATTRIBUTE = "event.name"
UNKNOWN_EVENT_NAME = "unknown"


class MalformedPayload(ValueError):
    """Raised when an ingest body is not a JSON object at the top level."""


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _objects(container: Mapping[str, Any], key: str) -> Iterator[Mapping[str, Any]]:
    """Yield the objects of an optional list field; anything else is empty."""
    items = container.get(key)
    if not isinstance(items, list):
        return
    for item in items:
        if isinstance(item, Mapping):
            yield item


def _now_millis() -> int:
    return int(time.time() * 1000)


def _to_millis(time_unix_nano: Any, received_at: int) -> int:
    """Convert an OTLP nanosecond timestamp to ms, defaulting to receipt time.

    Absent, unparsable, negative and out-of-calendar values all fall back
    to the receipt time.
    """
    if time_unix_nano is None or isinstance(time_unix_nano, bool) or time_unix_nano == "":
        return received_at
    try:
        if isinstance(time_unix_nano, (int, float)):
            nanos = int(time_unix_nano)
        else:
            nanos = int(str(time_unix_nano).strip(), 10)
    except (ValueError, OverflowError):
        return received_at
    millis = nanos // NANOS_PER_MILLI
    if millis < 0 or millis > MAX_TIMESTAMP_MS:
        return received_at
    return millis


def _require_object(payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise MalformedPayload(
            f"expected a JSON object at the top level, got {type(payload).__name__}"
        )
    return payload


def _iter_data_points(metric: Mapping[str, Any]) -> Iterator[Mapping[str, Any]]:
    for kind in POINT_KINDS:
        yield from _objects(_mapping(metric.get(kind)), "dataPoints")


def normalize_metrics(payload: Any, received_at: Optional[int] = None) -> List[MetricRecord]:
    """Flatten an OTLP metrics export into metric records.

    One record is produced per data point, whichever of sum, gauge or
    histogram it came from. The metric type is not kept.

    Args:
        payload: Decoded JSON body of a metrics export request
        received_at: Receipt instant in ms, used for points without a timestamp

    Returns:
        List of metric records, in payload order

    Raises:
        MalformedPayload: If the payload is not a JSON object
    """
    payload = _require_object(payload)
    if received_at is None:
        received_at = _now_millis()

    records = []
    for resource_metrics in _objects(payload, "resourceMetrics"):
        resource_attrs = flatten_attributes(
            _mapping(resource_metrics.get("resource")).get("attributes")
        )
        for scope_metrics in _objects(resource_metrics, "scopeMetrics"):
            for metric in _objects(scope_metrics, "metrics"):
                name = metric.get("name")
                if not isinstance(name, str) or not name:
                    logger.warning("Skipping metric without a name")
                    continue
                for point in _iter_data_points(metric):
                    records.append(MetricRecord(
                        timestamp=_to_millis(point.get("timeUnixNano"), received_at),
                        name=name,
                        value=decode_point_value(point),
                        attributes=overlay_attributes(
                            resource_attrs,
                            flatten_attributes(point.get("attributes")),
                        ),
                    ))
    return records


def _event_name(attributes: Dict[str, Any], log_record: Mapping[str, Any]) -> str:
    """Resolve an event name: event.name attribute, then body text, then 'unknown'."""
    explicit = attributes.get(EVENT_NAME_ATTRIBUTE)
    if explicit:
        return str(explicit)
    body = _mapping(log_record.get("body")).get("stringValue")
    if body:
        return str(body)
    return UNKNOWN_EVENT_NAME


def normalize_logs(payload: Any, received_at: Optional[int] = None) -> List[EventRecord]:
    """Flatten an OTLP logs export into event records.

    Args:
        payload: Decoded JSON body of a logs export request
        received_at: Receipt instant in ms, used for records without a timestamp

    Returns:
        List of event records, one per log record

    Raises:
        MalformedPayload: If the payload is not a JSON object
    """
    payload = _require_object(payload)
    if received_at is None:
        received_at = _now_millis()

    records = []
    for resource_logs in _objects(payload, "resourceLogs"):
        resource_attrs = flatten_attributes(
            _mapping(resource_logs.get("resource")).get("attributes")
        )
        for scope_logs in _objects(resource_logs, "scopeLogs"):
            for log_record in _objects(scope_logs, "logRecords"):
                attributes = overlay_attributes(
                    resource_attrs,
                    flatten_attributes(log_record.get("attributes")),
                )
                records.append(EventRecord(
                    timestamp=_to_millis(log_record.get("timeUnixNano"), received_at),
                    name=_event_name(attributes, log_record),
                    attributes=attributes,
                ))
    return records
