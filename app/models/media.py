import asyncio
import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, AsyncIterator, Callable, Literal, Optional, Union

import aiofiles
import aiofiles.os
from loguru import logger
from pydantic import BaseModel, Field


class StorageType(str, Enum):
    LOCAL = "local"
    HOSTED_VIDEO = "hosted-video"
    HOSTED_DOCUMENT = "hosted-document"


class PrivacyStatus(str, Enum):
    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE = "private"


# === UPLOAD SOURCES ===

class OnDiskSource(BaseModel):
    """Upload whose bytes were already written to disk by the request handler"""

    kind: Literal["on_disk"] = "on_disk"
    path: Path
    original_name: str
    mime_type: str = "application/octet-stream"
    size: Optional[int] = None
    stored_name: Optional[str] = None

    def total_bytes(self) -> Optional[int]:
        if self.size and self.size > 0:
            return self.size
        try:
            return os.path.getsize(self.path)
        except OSError:
            return None

    async def read_range(self, offset: int, length: int) -> bytes:
        async with aiofiles.open(self.path, "rb") as f:
            await f.seek(offset)
            return await f.read(length)

    async def iter_chunks(self, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        async with aiofiles.open(self.path, "rb") as f:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    async def discard(self) -> None:
        """Delete the backing file; missing files are fine"""
        try:
            await aiofiles.os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to delete temp upload {self.path}: {e}")


class InMemorySource(BaseModel):
    """Upload buffered entirely in memory"""

    kind: Literal["in_memory"] = "in_memory"
    data: bytes
    original_name: str
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)

    def total_bytes(self) -> Optional[int]:
        return len(self.data) or None

    async def read_range(self, offset: int, length: int) -> bytes:
        return self.data[offset:offset + length]

    async def iter_chunks(self, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        for start in range(0, len(self.data), chunk_size):
            yield self.data[start:start + chunk_size]

    async def discard(self) -> None:
        return None


UploadSource = Annotated[Union[OnDiskSource, InMemorySource], Field(discriminator="kind")]


# === UPLOAD CONTEXT ===

class UploadProgress(BaseModel):
    uploaded_bytes: int
    total_bytes: Optional[int] = None
    percent: int = 0


ProgressCallback = Callable[[UploadProgress], None]


class UploadContext(BaseModel):
    """Who is uploading, where the result will be attached, and the runtime hooks"""

    model_config = {"arbitrary_types_allowed": True}

    user_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    privacy_status: PrivacyStatus = PrivacyStatus.UNLISTED
    course_id: Optional[str] = None
    section_id: Optional[str] = None
    group_id: Optional[str] = None
    content_id: Optional[str] = None
    on_progress: Optional[ProgressCallback] = None
    abort_signal: Optional[asyncio.Event] = None


# === STORED MEDIA REFERENCES ===

class _MediaReferenceBase(BaseModel):
    original_name: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None
    uploaded_at: datetime = Field(default_factory=datetime.now)
    uploaded_by: Optional[str] = None


class LocalMediaReference(_MediaReferenceBase):
    storage_type: Literal[StorageType.LOCAL] = StorageType.LOCAL
    stored_name: Optional[str] = None
    local_path: str
    url: Optional[str] = None


class HostedVideoReference(_MediaReferenceBase):
    storage_type: Literal[StorageType.HOSTED_VIDEO] = StorageType.HOSTED_VIDEO
    video_id: str
    video_url: str


class HostedDocumentReference(_MediaReferenceBase):
    storage_type: Literal[StorageType.HOSTED_DOCUMENT] = StorageType.HOSTED_DOCUMENT
    file_id: str
    message_id: Optional[int] = None
    chat_id: Optional[str] = None
    file_name: Optional[str] = None


StoredMediaReference = Annotated[
    Union[LocalMediaReference, HostedVideoReference, HostedDocumentReference],
    Field(discriminator="storage_type"),
]


class LocalFileHandle(BaseModel):
    path: Path
    filename: str
