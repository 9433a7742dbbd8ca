"""Small shared helpers."""

from __future__ import annotations

from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Create *path* (and parents) if needed and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def short_id(value: str | None, keep: int = 10) -> str:
    """Shorten a conversation id / wallet address for log lines."""
    if not value:
        return "-"
    if len(value) <= keep:
        return value
    return f"{value[:keep]}..."


def preview(text: str | None, limit: int = 50) -> str:
    """First *limit* characters of a message, for logging."""
    return (text or "")[:limit]
