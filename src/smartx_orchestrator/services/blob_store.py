"""Key/value blob storage used by workers for inputs and results."""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Protocol
from uuid import uuid4

from smartx_orchestrator.errors import BlobAlreadyExistsError, BlobNotFoundError

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    """Opaque blob store contract."""

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Store bytes under a new key; raises `BlobAlreadyExistsError` if taken."""

    def get(self, key: str) -> bytes:
        """Return stored bytes; raises `BlobNotFoundError`."""

    def exists(self, key: str) -> bool: ...

    def delete(self, key: str) -> None: ...

    def list(self, prefix: str = "") -> list[str]: ...


class LocalBlobStore:
    """Filesystem blob store with write-once keys.

    Keys are POSIX-style relative paths under `root`.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        target = self._path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        staging = target.parent / f".{target.name}.{uuid4().hex}.tmp"
        staging.write_bytes(data)
        try:
            # Hard link publishes the staged file atomically and fails if the key exists.
            os.link(staging, target)
        except FileExistsError:
            raise BlobAlreadyExistsError(key) from None
        finally:
            staging.unlink(missing_ok=True)
        logger.debug("Stored blob %s (%d bytes, %s)", key, len(data), content_type)

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFoundError(key) from None

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def delete(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def list(self, prefix: str = "") -> list[str]:
        if not self.root.exists():
            return []
        keys: list[str] = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.endswith(".tmp"):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def _path_for(self, key: str) -> Path:
        pure = PurePosixPath(key)
        if not key or pure.is_absolute() or ".." in pure.parts:
            raise ValueError(f"Invalid blob key: {key!r}")
        return self.root.joinpath(*pure.parts)
