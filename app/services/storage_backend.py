from abc import ABC, abstractmethod
from typing import Any, Optional

from app.models.media import StoredMediaReference, UploadContext, UploadSource


class StorageBackend(ABC):
    """Contract every lesson media backend implements"""

    storage_type: str

    @abstractmethod
    async def upload_lesson_video(self, source: UploadSource,
                                  context: Optional[UploadContext] = None) -> StoredMediaReference:
        ...

    @abstractmethod
    async def upload_lesson_file(self, source: UploadSource,
                                 context: Optional[UploadContext] = None) -> StoredMediaReference:
        ...

    @abstractmethod
    async def get_lesson_file(self, reference: StoredMediaReference, **options) -> Any:
        ...

    @abstractmethod
    async def delete_lesson_file(self, reference: StoredMediaReference) -> None:
        ...
