"""Configuration primitives for the flowwatch execution monitor."""

from .settings import MonitorSettings, get_settings

__all__ = ["MonitorSettings", "get_settings"]
