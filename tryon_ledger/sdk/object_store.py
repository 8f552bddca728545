"""
Object store for input uploads and generated results.

Two implementations share one async interface:
- LocalObjectStore writes under a directory (local runs, CLI, tests)
- SupabaseObjectStore writes to a hosted storage bucket
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx

from ..core.errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "tryon-images"
FETCH_TIMEOUT_SECONDS = 60.0


def input_path(identity: str, extension: str) -> str:
    """Object path for an uploaded input image."""
    return f"{identity}/temp-inputs/{uuid.uuid4()}.{extension}"


def result_path(identity: str, extension: str = "png") -> str:
    """Object path for a generated result image."""
    return f"{identity}/results/{uuid.uuid4()}.{extension}"


def extension_for(content_type: Optional[str]) -> str:
    """File extension for a stored image content type."""
    if content_type and "jpeg" in content_type:
        return "jpg"
    return "png"


class ObjectStore(ABC):
    """Interface for storing binary objects addressed by path."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    @abstractmethod
    async def put(self, data: bytes, path: str, content_type: str) -> str:
        """Store bytes and return a publicly reachable URL.

        Raises:
            StorageError: If the write fails
        """

    async def put_from_url(self, source_url: str, path: str) -> str:
        """Fetch a remote object and store it at path.

        Raises:
            StorageError: If the fetch or the write fails
        """
        try:
            async with httpx.AsyncClient(timeout=FETCH_TIMEOUT_SECONDS, transport=self.transport) as client:
                response = await client.get(source_url, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise StorageError(f"Fetch failed for {source_url}: {e}") from e
        if not response.is_success:
            raise StorageError(f"Fetch failed for {source_url}: HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "image/png").split(";")[0]
        return await self.put(response.content, path, content_type)

    @abstractmethod
    async def exists(self, path: str) -> bool:
        pass

    @abstractmethod
    async def delete(self, path: str) -> None:
        pass


class LocalObjectStore(ObjectStore):
    """Filesystem-backed store.

    Objects live under base_dir. URLs are built from public_url when given,
    otherwise they are file:// URIs.
    """

    def __init__(self, base_dir: str, public_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_dir = Path(base_dir).resolve()
        super().__init__(transport)
        self.public_url = public_url.rstrip("/") if public_url else None

    def _resolve(self, path: str) -> Path:
        target = (self.base_dir / path).resolve()
        if self.base_dir not in target.parents:
            raise StorageError(f"Path escapes store root: {path}")
        return target

    def url_for(self, path: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{path}"
        return self._resolve(path).as_uri()

    async def put(self, data: bytes, path: str, content_type: str) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Write failed for {path}: {e}") from e
        logger.debug("Stored %d bytes (%s) at %s", len(data), content_type, path)
        return self.url_for(path)

    async def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Delete failed for {path}: {e}") from e


class SupabaseObjectStore(ObjectStore):
    """Hosted storage bucket accessed through a supabase client.

    The supabase client is synchronous, so calls run in a worker thread.
    """

    def __init__(self, client, bucket: str = DEFAULT_BUCKET, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = client
        super().__init__(transport)
        self.bucket = bucket

    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    async def put(self, data: bytes, path: str, content_type: str) -> str:
        def upload() -> str:
            self._bucket().upload(path, data, {"content-type": content_type, "upsert": "false"})
            return self._bucket().get_public_url(path)

        try:
            url = await asyncio.to_thread(upload)
        except Exception as e:
            raise StorageError(f"Upload failed for {path}: {e}") from e
        logger.debug("Uploaded %d bytes to %s/%s", len(data), self.bucket, path)
        return url

    async def exists(self, path: str) -> bool:
        folder, _, name = path.rpartition("/")
        try:
            entries = await asyncio.to_thread(self._bucket().list, folder)
        except Exception as e:
            raise StorageError(f"List failed for {folder}: {e}") from e
        return any(entry.get("name") == name for entry in entries)

    async def delete(self, path: str) -> None:
        try:
            await asyncio.to_thread(self._bucket().remove, [path])
        except Exception as e:
            raise StorageError(f"Delete failed for {path}: {e}") from e
