"""provisionctl package bootstrap.

This module exposes lightweight metadata that the CLI and packaging
machinery rely upon.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# Hatch reads the version from here (see ``[tool.hatch.version]``).
__version__ = "4.0.0a1"


def get_version() -> str:
    """Return the current package version."""
    return __version__
