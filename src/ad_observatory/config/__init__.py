"""Configuration package for Ad Observatory.

Re-exports the settings symbols so callers can write::

    from ad_observatory.config import get_settings
"""

from __future__ import annotations

from ad_observatory.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
