"""
Display formatting for report and dashboard output.
"""

from datetime import datetime
from typing import Optional


def format_cost(cost: float) -> str:
    return f"${cost:.4f}"


def format_tokens(tokens: float) -> str:
    """Abbreviate token counts: 1.5k, 2.25M."""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.2f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}k"
    return str(int(round(tokens)))


def format_duration(ms: float) -> str:
    if ms < 1000:
        return f"{int(round(ms))}ms"
    return f"{ms / 1000:.1f}s"


def format_timestamp(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M")


def tool_label(tool_name: Optional[str]) -> str:
    return tool_name or "unknown"
