"""Core utilities shared across kiro-rotation."""

from kiro_rotation.core.logging import configure_logging


__all__ = ["configure_logging"]
