# Overview: Write-once archive store for daily audit exports.

"""
Write-once filesystem archive.

Objects are addressed by a relative key ("prefix/2026/10/16/audit.json.gz").
An existing key is never overwritten. put_once() writes a read-only temp file
beside the key and publishes it with a hard link, which fails if the key
exists; a failed write therefore never leaves a partial object at the key.
Keys cannot escape the archive root.
"""

from __future__ import annotations

import os
import stat
import tempfile
from contextlib import suppress
from pathlib import Path


class ArchiveKeyExists(FileExistsError):
    """Raised when a write targets a key that is already archived."""


class FilesystemArchiveStore:
    def __init__(self, root: str | os.PathLike):
        self.root = Path(root).resolve()

    def _path_for(self, key: str) -> Path:
        if not key or key.startswith("/") or "\\" in key:
            raise ValueError(f"Invalid archive key: {key!r}")
        parts = key.split("/")
        if any(part in ("", ".", "..") for part in parts):
            raise ValueError(f"Invalid archive key: {key!r}")
        return self.root.joinpath(*parts)

    def exists(self, key: str) -> bool:
        return self._path_for(key).exists()

    def put_once(self, key: str, data: bytes) -> int:
        """
        Store `data` under `key`. Returns bytes written.

        Raises ArchiveKeyExists if the key is already present.
        """
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            raise ArchiveKeyExists(key)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
            try:
                os.link(tmp_name, path)
            except FileExistsError as exc:
                raise ArchiveKeyExists(key) from exc
        finally:
            with suppress(FileNotFoundError):
                os.unlink(tmp_name)
        return len(data)

    def read(self, key: str) -> bytes:
        return self._path_for(key).read_bytes()
