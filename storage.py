"""
storage.py
-----------
Blob store for accepted uploads.

Responsibilities:
- Decode the base64 payload carried in FILE_UPLOAD frames
- Pick the stored name (random hex token or whitespace-sanitized original)
- Write bytes under the uploads directory, served at {url_prefix}/{name}
- Expire stored files with one-shot timers (idempotent delete)
"""

import asyncio
import base64
import binascii
import itertools
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from config import RANDOMIZED, SANITIZED, NAMING_MODES
from transfer import BAD_FILE_DATA, ValidationError, file_extension

_WHITESPACE = re.compile(r"\s")


class StorageError(Exception):
    """Writing an upload to disk failed, or its name cannot be stored safely."""


@dataclass(slots=True)
class StoredFile:
    name: str
    path: Path
    url: str
    created_at: float


def decode_payload(data: str) -> bytes:
    """
    Decode the transport encoding of an upload into raw bytes.

    Plain base64 and browser data URLs ("data:image/png;base64,....") are
    both accepted.
    """
    if not isinstance(data, str):
        raise ValidationError(BAD_FILE_DATA, "bad encoding", "File data must be base64 text")
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(BAD_FILE_DATA, "bad encoding", "File data is not valid base64") from e


def _basename(file_name: str) -> str:
    # clients may send full paths; keep only the last component
    return file_name.replace("\\", "/").rsplit("/", 1)[-1]


class BlobStore:
    def __init__(self, directory: Union[str, Path], url_prefix: str = "/uploads",
                 naming_mode: str = RANDOMIZED) -> None:
        if naming_mode not in NAMING_MODES:
            raise ValueError(f"naming_mode must be one of {NAMING_MODES}, got {naming_mode!r}")
        self.directory = Path(directory).resolve()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.url_prefix = "/" + url_prefix.strip("/")
        self.naming_mode = naming_mode
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._timer_ids = itertools.count()

    @property
    def pending_deletes(self) -> int:
        return len(self._timers)

    def stored_name(self, file_name: str) -> str:
        base = _basename(file_name)
        if self.naming_mode == SANITIZED:
            name = _WHITESPACE.sub("_", base)
            if name in ("", ".", ".."):
                raise StorageError(f"cannot store a file named {file_name!r}")
            return name

        token = secrets.token_hex(10)
        ext = file_extension(base) if base else ""
        return f"{token}.{ext}" if ext else token

    async def save(self, data: bytes, file_name: str) -> StoredFile:
        """Write data under a fresh stored name and return its reference."""
        name = self.stored_name(file_name)
        path = self.directory / name
        try:
            await asyncio.to_thread(path.write_bytes, data)
        except (OSError, ValueError) as e:
            raise StorageError(f"could not write {path}: {e}") from e
        print(f"[store] File saved: {path} ({len(data)} bytes)")
        return StoredFile(name=name, path=path, url=f"{self.url_prefix}/{name}",
                          created_at=time.time())

    def delete(self, stored: StoredFile) -> bool:
        """
        Remove a stored file. Returns True if a file was deleted.

        A file that is already gone is not an error. Other OS errors are
        logged and swallowed; deletion is never retried.
        """
        try:
            stored.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            print(f"[store] File deletion error for {stored.path}: {e}")
            return False
        print(f"[store] File deleted: {stored.path}")
        return True

    def schedule_delete(self, stored: StoredFile, delay_ms: int) -> None:
        """Arm a one-shot timer that deletes `stored` after delay_ms."""
        loop = asyncio.get_running_loop()
        key = next(self._timer_ids)
        self._timers[key] = loop.call_later(delay_ms / 1000, self._expire, key, stored)

    def _expire(self, key: int, stored: StoredFile) -> None:
        self._timers.pop(key, None)
        self.delete(stored)

    def open(self, name: str) -> Optional[Path]:
        """Resolve a URL name to a stored file, or None if it is not servable."""
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            return None
        path = self.directory / name
        if not path.is_file():
            return None
        return path

    def close(self) -> None:
        """Cancel pending expiry timers (files already on disk are left alone)."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
