"""kiro-rotation - Multi-account rotation for quota-metered OAuth APIs."""

from ._version import __version__


__all__ = ["__version__"]
