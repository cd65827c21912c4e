"""
Persistent blob stores holding pre-built local snapshots and the cache dump.
"""

import asyncio
from pathlib import Path
from typing import Protocol

from loguru import logger


class BlobStore(Protocol):
    """Anything that can read and write bytes by relative path."""

    async def read(self, path: str) -> bytes | None: ...

    async def write(self, path: str, data: bytes) -> None: ...


class FileBlobStore:
    """Blob store rooted at a directory; file I/O runs in a worker thread."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        resolved = (self.root / path.lstrip("/")).resolve()
        if not resolved.is_relative_to(self.root.resolve()):
            raise ValueError(f"Path escapes blob store root: {path}")
        return resolved

    async def read(self, path: str) -> bytes | None:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError:
            return None
        except IsADirectoryError:
            logger.warning(f"Blob path is a directory: {target}")
            return None

    async def write(self, path: str, data: bytes) -> None:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(target.suffix + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(target)

        await asyncio.to_thread(_write)
        logger.debug(f"Wrote {len(data)} bytes to {target}")


class MemoryBlobStore:
    """In-process blob store; handy for embedding and tests."""

    def __init__(self, blobs: dict[str, bytes] | None = None):
        self.blobs: dict[str, bytes] = dict(blobs or {})
        self.reads: list[str] = []

    async def read(self, path: str) -> bytes | None:
        self.reads.append(path)
        return self.blobs.get(path)

    async def write(self, path: str, data: bytes) -> None:
        self.blobs[path] = data
