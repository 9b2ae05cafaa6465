"""Top-level package for the shellcache asset cache and proxy."""

from __future__ import annotations

from typing import Any


def build_http_app(*args: Any, **kwargs: Any) -> Any:
    """Lazily import and build the HTTP front to avoid heavy module import costs."""
    from .http import build_http_app as _build_http_app

    return _build_http_app(*args, **kwargs)


__all__ = ["build_http_app"]
