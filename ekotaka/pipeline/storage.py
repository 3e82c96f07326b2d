"""Blob storage adapters for pickup photos.

Both backends return the same descriptor:
``{"id", "url", "width", "height", "format", "bytes"}``.
"""

import io
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import httpx
from PIL import Image

from ekotaka import metrics
from ekotaka.config import settings

logger = logging.getLogger(__name__)


def describe_image(data: bytes) -> dict[str, Any]:
    """Width, height and format of an image already validated by the classifier."""
    with Image.open(io.BytesIO(data)) as img:
        return {
            "width": img.width,
            "height": img.height,
            "format": (img.format or "").lower(),
            "bytes": len(data),
        }


class BlobStorage(ABC):
    """Upload/delete contract of the photo store."""

    @abstractmethod
    async def upload(
        self, data: bytes, folder: str, filename: str, content_type: str
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def delete(self, blob_id: str) -> bool:
        ...

    async def close(self):
        pass


class LocalBlobStorage(BlobStorage):
    """Stores blobs on the local filesystem (development and tests)."""

    def __init__(self, root: Optional[str | Path] = None, public_base_url: Optional[str] = None):
        self.root = Path(root or settings.local_storage_dir)
        self.public_base_url = (public_base_url or settings.public_media_base_url).rstrip("/")

    def _path(self, blob_id: str) -> Path:
        path = (self.root / blob_id).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Blob id escapes storage root: {blob_id}")
        return path

    async def upload(
        self, data: bytes, folder: str, filename: str, content_type: str
    ) -> dict[str, Any]:
        info = describe_image(data)
        suffix = Path(filename).suffix or f".{info['format'] or 'bin'}"
        blob_id = f"{folder.strip('/')}/{uuid4().hex}{suffix}"
        path = self._path(blob_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return {"id": blob_id, "url": f"{self.public_base_url}/{blob_id}", **info}

    async def delete(self, blob_id: str) -> bool:
        path = self._path(blob_id)
        if not path.exists():
            return False
        path.unlink()
        return True


class HttpBlobStorage(BlobStorage):
    """Talks to an external blob/CDN service over HTTP."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = (base_url or settings.blob_storage_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.blob_storage_api_key
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                timeout=settings.blob_storage_timeout_seconds, headers=headers
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def upload(
        self, data: bytes, folder: str, filename: str, content_type: str
    ) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(
            f"{self.base_url}/upload",
            data={"folder": folder},
            files={"file": (filename, data, content_type)},
        )
        response.raise_for_status()
        payload = response.json()
        info = describe_image(data)
        return {
            "id": payload["id"],
            "url": payload["url"],
            "width": payload.get("width", info["width"]),
            "height": payload.get("height", info["height"]),
            "format": payload.get("format", info["format"]),
            "bytes": payload.get("bytes", info["bytes"]),
        }

    async def delete(self, blob_id: str) -> bool:
        client = await self._get_client()
        response = await client.delete(f"{self.base_url}/files/{blob_id}")
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True


async def delete_quietly(storage: BlobStorage, blob_id: str) -> bool:
    """Best-effort delete used while compensating a failed submission."""
    try:
        deleted = await storage.delete(blob_id)
        metrics.orphaned_photo_cleanups_total.labels(status="deleted" if deleted else "missing").inc()
        return deleted
    except (httpx.HTTPError, OSError, ValueError) as e:
        metrics.orphaned_photo_cleanups_total.labels(status="failed").inc()
        logger.error(f"Failed to delete orphaned photo {blob_id}: {e}")
        return False


_storage: Optional[BlobStorage] = None


def get_blob_storage() -> BlobStorage:
    """Configured storage backend (process-wide)."""
    global _storage
    if _storage is None:
        if settings.blob_storage_backend == "http":
            _storage = HttpBlobStorage()
        else:
            _storage = LocalBlobStorage()
    return _storage


async def close_blob_storage():
    global _storage
    if _storage is not None:
        await _storage.close()
        _storage = None
