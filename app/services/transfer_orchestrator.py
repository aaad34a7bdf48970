"""
Runs a lesson upload through the configured backend while keeping the
upload job registry in step: job creation, progress, cancellation and the
final status, plus operator alerts for failures an uploader cannot fix.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger

from app.core.exceptions import (
    AuthExpiredError,
    ClientCanceledError,
    QuotaExceededError,
    UploadSessionCanceledError,
    UploadSessionExistsError,
)
from app.models.media import (
    StorageType,
    StoredMediaReference,
    UploadContext,
    UploadProgress,
    UploadSource,
)
from app.models.upload_job import UploadJobStatus
from app.services.storage_provider import StorageProvider, get_file_provider, get_video_provider
from app.services.upload_issue_notifier import UploadIssueNotifier, upload_issue_notifier
from app.services.upload_jobs import UploadJobRegistry, upload_job_registry

JOB_FAILURE_MESSAGE = "Upload failed"


class TransferOrchestrator:
    def __init__(self, registry: Optional[UploadJobRegistry] = None,
                 notifier: Optional[UploadIssueNotifier] = None,
                 video_provider: Callable[[], StorageProvider] = get_video_provider,
                 file_provider: Callable[[], StorageProvider] = get_file_provider):
        self.registry = registry or upload_job_registry
        self.notifier = notifier or upload_issue_notifier
        self.video_provider = video_provider
        self.file_provider = file_provider

    async def upload_lesson_video(self, source: UploadSource, context: UploadContext,
                                  job_id: Optional[str] = None, uploader_role: Optional[str] = None,
                                  uploader_name: Optional[str] = None) -> StoredMediaReference:
        provider = self.video_provider()
        return await self._run(provider, provider.service.upload_lesson_video, "lesson video",
                               source, context, job_id, uploader_role, uploader_name)

    async def upload_lesson_file(self, source: UploadSource, context: UploadContext,
                                 job_id: Optional[str] = None, uploader_role: Optional[str] = None,
                                 uploader_name: Optional[str] = None) -> StoredMediaReference:
        provider = self.file_provider()
        return await self._run(provider, provider.service.upload_lesson_file, "lesson file",
                               source, context, job_id, uploader_role, uploader_name)

    def _progress_recorder(self, job_id: str, total_bytes: Optional[int]) -> Callable[[UploadProgress], None]:
        def record(progress: UploadProgress):
            job = self.registry.get(job_id)
            if job is None or progress.percent < job.percent:
                return
            self.registry.update(
                job_id,
                status=UploadJobStatus.UPLOADING,
                bytes_uploaded=progress.uploaded_bytes,
                total_bytes=progress.total_bytes or total_bytes,
                percent=progress.percent,
            )
        return record

    def _start_job(self, job_id: str, source: UploadSource, context: UploadContext) -> UploadContext:
        """Register the job and return a context wired to it; raises if the job was already canceled"""
        total_bytes = source.total_bytes()
        try:
            self.registry.create(job_id, owner_id=context.user_id, total_bytes=total_bytes,
                                 replace_if_exists=True)
        except UploadSessionCanceledError as e:
            raise ClientCanceledError("Upload canceled") from e

        self.registry.update(job_id, status=UploadJobStatus.UPLOADING, percent=0,
                             bytes_uploaded=0, total_bytes=total_bytes)
        abort_signal = asyncio.Event()
        self.registry.attach_runtime(job_id, abort_signal=abort_signal, cleanup=source.discard)

        # The client may have canceled between creation and attaching the abort signal
        job = self.registry.get(job_id)
        if job is None or job.is_canceled:
            raise ClientCanceledError("Upload canceled")

        return context.model_copy(update={
            "on_progress": self._progress_recorder(job_id, total_bytes),
            "abort_signal": abort_signal,
        })

    async def _run(self, provider: StorageProvider,
                   operation: Callable[[UploadSource, UploadContext], Awaitable[StoredMediaReference]],
                   label: str, source: UploadSource, context: UploadContext, job_id: Optional[str],
                   uploader_role: Optional[str], uploader_name: Optional[str]) -> StoredMediaReference:
        track = bool(job_id) and provider.type != StorageType.LOCAL
        job_id = str(job_id) if track else None
        try:
            if track:
                context = self._start_job(job_id, source, context)
            reference = await operation(source, context)
        except UploadSessionExistsError:
            # The live job belongs to another request
            await source.discard()
            raise
        except ClientCanceledError:
            if job_id:
                self.registry.update(job_id, status=UploadJobStatus.CANCELED, error=None)
            await source.discard()
            logger.info(f"{label.capitalize()} upload canceled (job {job_id})")
            raise
        except Exception as error:
            if job_id:
                job = self.registry.get(job_id)
                if job is not None and not job.is_canceled:
                    self.registry.update(job_id, status=UploadJobStatus.FAILED, error=JOB_FAILURE_MESSAGE)
            await source.discard()
            await self._alert_operators(error, label, context, uploader_role, uploader_name)
            logger.error(f"{label.capitalize()} upload via {provider.type.value} failed: {error}")
            raise

        if job_id:
            total_bytes = reference.size or source.total_bytes()
            self.registry.update(job_id, status=UploadJobStatus.PROCESSING, percent=100,
                                 bytes_uploaded=total_bytes, total_bytes=total_bytes)
            self.registry.update(job_id, status=UploadJobStatus.COMPLETED, percent=100,
                                 content_id=context.content_id)

        logger.info(f"{label.capitalize()} stored via {provider.type.value}: {source.original_name}")
        return reference

    async def _alert_operators(self, error: Exception, label: str, context: UploadContext,
                               uploader_role: Optional[str], uploader_name: Optional[str]):
        if uploader_role == "admin":
            return
        if isinstance(error, QuotaExceededError):
            issue_type = "quota"
        elif isinstance(error, AuthExpiredError):
            issue_type = "auth"
        else:
            return
        await self.notifier.notify(
            issue_type,
            uploader_id=context.user_id,
            uploader_name=uploader_name,
            context={"operation": f"{label} upload", "course_id": context.course_id},
        )


# Global orchestrator instance
transfer_orchestrator = TransferOrchestrator()


def get_transfer_orchestrator() -> TransferOrchestrator:
    return transfer_orchestrator
