"""
Core modules for Agent Telemetry.

This package contains payload normalization, time windows and the
aggregation engine that computes usage rollups.
"""
