# =============================================================================
# school_core/data/storage.py
# File storage boundary - avatars and attachments in Supabase Storage
# =============================================================================

from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Optional

import httpx
from storage3.exceptions import StorageApiError

from school_core.errors import (
    AuthorizationError,
    NetworkError,
    NotFoundError,
    SchoolSyncError,
    ValidationError,
)
from school_core.logging import get_logger

logger = get_logger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class StoredFile:
    """Retrievable reference to an uploaded object."""
    path: str
    public_url: str


def safe_filename(filename: str) -> str:
    """Strip characters Storage keys should not contain."""
    cleaned = _UNSAFE.sub("_", filename.strip()).strip("._")
    return cleaned or "file"


def _classify(error: StorageApiError, path: str) -> SchoolSyncError:
    status = str(getattr(error, "status", "") or "")
    message = getattr(error, "message", None) or str(error)
    if status in ("401", "403"):
        return AuthorizationError(message, entity="storage", operation=path)
    if status == "404":
        return NotFoundError(message, entity="storage", record_id=path)
    if status in ("400", "409", "413", "415"):
        return ValidationError(message, field="file", details={"path": path, "status": status})
    return NetworkError(message, entity="storage")


class FileStorage:
    """
    Single-shot put/delete against one Storage bucket.

    Usage:
        storage = FileStorage(client, "avatars")
        stored = await storage.put("students/42", "photo.png", data, "image/png")
        student["avatar_url"] = stored.public_url
    """

    def __init__(self, client, bucket: str):
        self.client = client
        self.bucket = bucket

    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    async def put(
        self,
        namespace: str,
        filename: str,
        payload: bytes,
        content_type: Optional[str] = None,
    ) -> StoredFile:
        """Upload ``payload`` under ``namespace/filename``, replacing any previous object."""
        path = f"{namespace.strip('/')}/{safe_filename(filename)}"
        options = {"upsert": "true"}
        if content_type:
            options["content-type"] = content_type

        try:
            await self._bucket().upload(path, payload, options)
            public_url = await self._bucket().get_public_url(path)
        except StorageApiError as e:
            raise _classify(e, path) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Upload of {path} failed: {e}", entity="storage") from e

        logger.info(f"Stored {len(payload)} bytes at {self.bucket}/{path}")
        return StoredFile(path=path, public_url=public_url)

    async def delete(self, path: str) -> None:
        """Remove one object."""
        try:
            await self._bucket().remove([path])
        except StorageApiError as e:
            raise _classify(e, path) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Delete of {path} failed: {e}", entity="storage") from e
        logger.info(f"Deleted {self.bucket}/{path}")
