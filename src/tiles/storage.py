"""Filesystem storage of tile bytes.

Tiles live under ``<root>/<cache_id>/<z>/<x>/<y>.<format>``. Writes go to a
temporary file in the same directory and are renamed into place, so a reader
never observes a partially written tile.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Protocol

from shared.constants import TILE_TEMP_SUFFIX

logger = logging.getLogger(__name__)


def compute_checksum(data: bytes) -> str:
    """SHA-256 hex digest of tile bytes."""
    return hashlib.sha256(data).hexdigest()


class TileStorage(Protocol):
    """Byte store addressed by relative tile paths.

    ``root`` is the local directory checked for free space before a
    download session starts.
    """

    root: Path

    def tile_path(self, cache_id: int, z: int, x: int, y: int, tile_format: str) -> str: ...

    def write(self, path: str, data: bytes) -> None: ...

    def read(self, path: str) -> bytes: ...

    def exists(self, path: str) -> bool: ...

    def delete(self, path: str) -> bool: ...

    def delete_cache_dir(self, cache_id: int) -> None: ...


class FileTileStorage:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def tile_path(cache_id: int, z: int, x: int, y: int, tile_format: str) -> str:
        return f'{cache_id}/{z}/{x}/{y}.{tile_format}'

    def resolve(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if not full.is_relative_to(self.root.resolve()):
            msg = f'Tile path escapes the storage root: {path}'
            raise ValueError(msg)
        return full

    def write(self, path: str, data: bytes) -> None:
        """Atomically write ``data``; raises OSError on failure."""
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f'{target.name}.{uuid.uuid4().hex}{TILE_TEMP_SUFFIX}')
        try:
            with open(tmp, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def read(self, path: str) -> bytes:
        return self.resolve(path).read_bytes()

    def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def delete(self, path: str) -> bool:
        full = self.resolve(path)
        try:
            full.unlink()
        except FileNotFoundError:
            return False
        return True

    def delete_cache_dir(self, cache_id: int) -> None:
        """Remove every file of a cache, including leftover temporary files."""
        cache_dir = self.resolve(str(cache_id))
        if cache_dir.exists():
            shutil.rmtree(cache_dir)
            logger.debug('Removed tile directory %s', cache_dir)

    def usage_bytes(self, cache_id: int | None = None) -> int:
        base = self.root if cache_id is None else self.resolve(str(cache_id))
        if not base.exists():
            return 0
        return sum(p.stat().st_size for p in base.rglob('*') if p.is_file())
