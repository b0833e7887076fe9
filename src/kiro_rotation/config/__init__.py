"""Configuration module for kiro-rotation."""

from .settings import RotationSettings, get_settings


__all__ = [
    "RotationSettings",
    "get_settings",
]
