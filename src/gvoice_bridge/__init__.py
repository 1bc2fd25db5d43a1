"""Top-level package for the gvoice-bridge service."""

from __future__ import annotations

from typing import Any


def build_http_app(settings: Any = None, session: Any = None) -> Any:
    """Lazily import and build the FastAPI app to avoid heavy module import costs."""
    from .config import get_settings
    from .http import build_http_app as _build_http_app

    return _build_http_app(settings or get_settings(), session)


__all__ = ["build_http_app"]
