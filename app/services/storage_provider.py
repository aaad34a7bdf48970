from functools import lru_cache
from typing import Any, Dict, NamedTuple, Optional

from app.core.config import Settings, settings
from app.models.media import StorageType
from app.services.document_relay_client import DocumentRelayClient
from app.services.local_storage import LocalStorageBackend
from app.services.resumable_upload_client import ResumableUploadClient
from app.services.storage_backend import StorageBackend


class StorageProvider(NamedTuple):
    type: StorageType
    service: StorageBackend


@lru_cache(maxsize=None)
def _local_backend(upload_root: str) -> LocalStorageBackend:
    return LocalStorageBackend(upload_root)


@lru_cache(maxsize=None)
def _video_backend() -> ResumableUploadClient:
    return ResumableUploadClient()


@lru_cache(maxsize=None)
def _document_backend() -> DocumentRelayClient:
    return DocumentRelayClient()


def get_video_provider(config: Optional[Settings] = None) -> StorageProvider:
    """Backend for lesson videos under the current routing flags"""
    config = config or settings
    if config.default_video_storage_type == StorageType.HOSTED_VIDEO.value:
        return StorageProvider(StorageType.HOSTED_VIDEO, _video_backend())
    return StorageProvider(StorageType.LOCAL, _local_backend(config.upload_path))


def get_file_provider(config: Optional[Settings] = None) -> StorageProvider:
    """Backend for lesson files under the current routing flags"""
    config = config or settings
    if config.default_file_storage_type == StorageType.HOSTED_DOCUMENT.value:
        return StorageProvider(StorageType.HOSTED_DOCUMENT, _document_backend())
    return StorageProvider(StorageType.LOCAL, _local_backend(config.upload_path))


def get_provider_for_type(storage_type: StorageType, config: Optional[Settings] = None) -> StorageBackend:
    """Backend that owns an existing reference, regardless of the current defaults"""
    config = config or settings
    if storage_type == StorageType.HOSTED_VIDEO:
        return _video_backend()
    if storage_type == StorageType.HOSTED_DOCUMENT:
        return _document_backend()
    return _local_backend(config.upload_path)


def describe_storage(config: Optional[Settings] = None) -> Dict[str, Any]:
    config = config or settings
    return {
        "video_provider": config.default_video_storage_type,
        "file_provider": config.default_file_storage_type,
        "local_storage_enabled": config.is_local_storage_enabled,
        "video_host_enabled": config.is_video_host_enabled,
        "document_host_enabled": config.is_document_host_enabled,
    }
