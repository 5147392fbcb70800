"""Installed distribution version."""

from __future__ import annotations

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("llmux")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"
