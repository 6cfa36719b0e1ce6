"""
Data models for storage layer.

Defines the two persisted record kinds and the attribute map they carry.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Union

AttributeValue = Union[str, int, float, bool]
AttributeMap = Dict[str, AttributeValue]


@dataclass(frozen=True)
class MetricRecord:
    """One numeric observation taken from a metric data point.

    Append-only: once written, metric records are never modified.
    The id is assigned by the store on insert.
    """
    timestamp: int
    name: str
    value: float
    attributes: AttributeMap = field(default_factory=dict)
    id: Optional[int] = None


@dataclass(frozen=True)
class EventRecord:
    """One discrete occurrence taken from a log record (e.g. a tool result)."""
    timestamp: int
    name: str
    attributes: AttributeMap = field(default_factory=dict)
    id: Optional[int] = None
