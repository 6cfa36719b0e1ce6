"""
HTTP receiver for Agent Telemetry.

Accepts OTLP/HTTP JSON exports and writes them to the telemetry store.
"""

from .app import create_app

__all__ = ["create_app"]
