import os
import uuid
from pathlib import Path
from typing import Optional

import aiofiles.os
from loguru import logger

from app.core.config import settings
from app.core.exceptions import UploadValidationError
from app.models.media import (
    LocalFileHandle,
    LocalMediaReference,
    OnDiskSource,
    UploadContext,
    UploadSource,
)
from app.services.storage_backend import StorageBackend
from app.utils.filenames import sanitize_filename


class LocalStorageBackend(StorageBackend):
    """Files already written to the upload directory by the request handler"""

    storage_type = "local"

    def __init__(self, upload_root: Optional[str] = None):
        self.upload_root = Path(upload_root or settings.upload_path)

    def allocate_path(self, category: str, original_name: str) -> Path:
        """Unique on-disk location for an incoming upload under the upload root"""
        directory = self.upload_root / category
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{uuid.uuid4().hex}_{sanitize_filename(original_name)}"

    def _build_reference(self, source: UploadSource, context: Optional[UploadContext],
                         category: str) -> LocalMediaReference:
        if not isinstance(source, OnDiskSource):
            raise UploadValidationError("Local storage requires a file already written to disk")

        stored_name = source.stored_name or source.path.name
        return LocalMediaReference(
            original_name=source.original_name,
            stored_name=stored_name,
            local_path=str(source.path),
            url=f"/api/media/local/{category}/{stored_name}",
            mime_type=source.mime_type,
            size=source.total_bytes(),
            uploaded_by=context.user_id if context else None,
        )

    async def upload_lesson_video(self, source: UploadSource,
                                  context: Optional[UploadContext] = None) -> LocalMediaReference:
        return self._build_reference(source, context, "videos")

    async def upload_lesson_file(self, source: UploadSource,
                                 context: Optional[UploadContext] = None) -> LocalMediaReference:
        return self._build_reference(source, context, "files")

    async def get_lesson_file(self, reference: LocalMediaReference, **options) -> LocalFileHandle:
        """Resolve the absolute path to stream back to the caller"""
        if reference is None or not getattr(reference, "local_path", None):
            raise UploadValidationError("Local file reference requires local_path")

        path = Path(reference.local_path)
        if not path.is_absolute():
            path = path.resolve()

        return LocalFileHandle(
            path=path,
            filename=reference.original_name or reference.stored_name or "download",
        )

    async def delete_lesson_file(self, reference: LocalMediaReference) -> None:
        """Best-effort unlink; failures are logged, never raised"""
        target = getattr(reference, "local_path", None)
        if not target:
            return
        try:
            if os.path.exists(target):
                await aiofiles.os.remove(target)
                logger.info(f"Deleted local file {target}")
        except OSError as e:
            logger.error(f"Failed to delete local file {target}: {e}")
