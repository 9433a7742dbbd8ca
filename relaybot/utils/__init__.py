"""Utility functions for relaybot."""

from relaybot.utils.helpers import ensure_dir, preview, short_id

__all__ = ["ensure_dir", "preview", "short_id"]
