"""Configuration package for the spread model calibration engine."""

from .settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
