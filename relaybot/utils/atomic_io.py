"""Atomic file writes for JSON snapshots.

A per-path asyncio lock serializes writers; each write lands in a temp file
next to the target and is moved into place with ``Path.replace`` so readers
never observe a half-written snapshot.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from loguru import logger


class AtomicFileWriter:
    """Async-safe atomic file writer.

    Usage::

        writer = AtomicFileWriter()
        await writer.write_json(path, data)
    """

    def __init__(self) -> None:
        self._locks: dict[Path, asyncio.Lock] = {}

    def _get_lock(self, path: Path) -> asyncio.Lock:
        resolved = path.resolve()
        if resolved not in self._locks:
            self._locks[resolved] = asyncio.Lock()
        return self._locks[resolved]

    async def write_text(self, path: Path, content: str, encoding: str = "utf-8") -> bool:
        """Atomically write *content* to *path*.

        Returns ``True`` on success, ``False`` on failure.
        """
        async with self._get_lock(path):
            temp_path: str | None = None
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, temp_path = tempfile.mkstemp(
                    dir=path.parent,
                    prefix=f".{path.name}.",
                    suffix=".tmp",
                )
                try:
                    os.write(fd, content.encode(encoding))
                finally:
                    os.close(fd)

                Path(temp_path).replace(path)
                return True
            except OSError as exc:
                logger.error(f"Atomic write failed for {path}: {exc}")
                if temp_path:
                    Path(temp_path).unlink(missing_ok=True)
                return False

    async def write_json(
        self,
        path: Path,
        data: Any,
        indent: int = 2,
        ensure_ascii: bool = False,
    ) -> bool:
        """Atomically serialize *data* as JSON and write to *path*."""
        try:
            content = json.dumps(data, indent=indent, ensure_ascii=ensure_ascii)
        except (TypeError, ValueError) as exc:
            logger.error(f"JSON serialization failed for {path}: {exc}")
            return False
        return await self.write_text(path, content)


_atomic_writer: AtomicFileWriter | None = None


def get_atomic_writer() -> AtomicFileWriter:
    """Return the process-wide :class:`AtomicFileWriter`."""
    global _atomic_writer
    if _atomic_writer is None:
        _atomic_writer = AtomicFileWriter()
    return _atomic_writer
