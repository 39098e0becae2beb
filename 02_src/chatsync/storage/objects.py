"""Object storage for attachment files.

Files live under a root directory, addressed by the same relative paths
the hosted bucket uses ("{org}/{conversation}/{file}"). Downloads go
through signed URLs carrying an expiry and an HMAC-SHA256 signature.
"""

import asyncio
import hashlib
import hmac
import time
from pathlib import Path, PurePosixPath
from typing import Protocol
from urllib.parse import quote, urlencode

from ..errors import ObjectStorageError
from ..logging_config import get_logger

logger = get_logger(__name__)


class IObjectStorage(Protocol):
    """Bucket-like file storage."""

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str | None = None,
        upsert: bool = False,
    ) -> str:
        """Store bytes at path. Returns the stable path."""
        ...

    async def download(self, path: str) -> bytes:
        """Read the bytes stored at path."""
        ...

    async def remove(self, paths: list[str]) -> None:
        """Delete stored objects. Missing paths are ignored."""
        ...

    def create_signed_url(self, path: str, expires_in: int = 3600) -> str:
        """Build a time-limited URL for viewing/downloading."""
        ...

    def verify_signed_url(self, path: str, expires: int, signature: str) -> bool:
        """Check a signed URL's signature and expiry."""
        ...


class LocalObjectStorage:
    """Filesystem-backed object storage."""

    def __init__(self, root: str | Path, secret: str, base_url: str = "/storage"):
        self._root = Path(root)
        self._secret = secret.encode("utf-8")
        self._base_url = base_url.rstrip("/")
        self._root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise ObjectStorageError(f"Invalid object path: {path!r}")
        return self._root.joinpath(*relative.parts)

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str | None = None,
        upsert: bool = False,
    ) -> str:
        """Store bytes at path. Returns the stable path."""
        target = self._resolve(path)

        def _write() -> None:
            if target.exists() and not upsert:
                raise ObjectStorageError(f"Object already exists: {path}")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise ObjectStorageError(f"Upload failed for {path}: {e}") from e

        logger.debug(f"Stored {len(data)} bytes at {path} ({content_type})")
        return path

    async def download(self, path: str) -> bytes:
        """Read the bytes stored at path."""
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as e:
            raise ObjectStorageError(f"Object not found: {path}") from e

    async def remove(self, paths: list[str]) -> None:
        """Delete stored objects. Missing paths are ignored."""

        def _remove() -> None:
            for path in paths:
                self._resolve(path).unlink(missing_ok=True)

        await asyncio.to_thread(_remove)

    def _sign(self, path: str, expires: int) -> str:
        payload = f"{path}:{expires}".encode("utf-8")
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def create_signed_url(self, path: str, expires_in: int = 3600) -> str:
        """Build a time-limited URL for viewing/downloading."""
        self._resolve(path)
        expires = int(time.time()) + expires_in
        query = urlencode({"expires": expires, "signature": self._sign(path, expires)})
        return f"{self._base_url}/{quote(path)}?{query}"

    def verify_signed_url(self, path: str, expires: int, signature: str) -> bool:
        """Check a signed URL's signature and expiry."""
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._sign(path, expires), signature)
