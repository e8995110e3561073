"""deployctl package bootstrap.

Exposes lightweight metadata that the CLI, the release client's user agent
and the packaging machinery rely upon.
"""
from __future__ import annotations

__all__ = ["__version__"]

# Hatch reads the project version from this assignment.
__version__ = "0.3.0"
