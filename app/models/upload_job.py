from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel, Field, PrivateAttr


class UploadJobStatus(str, Enum):
    QUEUED = "queued"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELING = "canceling"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset({
    UploadJobStatus.COMPLETED,
    UploadJobStatus.FAILED,
    UploadJobStatus.CANCELED,
})

# Jobs in these states are never evicted by the sweep
IN_FLIGHT_STATUSES = frozenset({
    UploadJobStatus.QUEUED,
    UploadJobStatus.UPLOADING,
    UploadJobStatus.CANCELING,
})

CleanupCallback = Callable[[], Union[None, Awaitable[None]]]


class UploadJob(BaseModel):
    id: str
    owner_id: Optional[str] = None
    status: UploadJobStatus = UploadJobStatus.QUEUED
    bytes_uploaded: int = 0
    total_bytes: Optional[int] = None
    percent: int = 0
    error: Optional[str] = None
    content_id: Optional[str] = None
    canceled: bool = False
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    # Runtime handles, never serialized
    _abort_signal: Any = PrivateAttr(default=None)
    _cleanup: Optional[CleanupCallback] = PrivateAttr(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_canceled(self) -> bool:
        return self.canceled or self.status in (UploadJobStatus.CANCELED, UploadJobStatus.CANCELING)

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(
            mode="json",
            include={
                "id", "status", "percent", "bytes_uploaded", "total_bytes",
                "error", "content_id", "created_at", "updated_at",
            },
        )
