"""
In-memory upload job registry.

Tracks progress and cancellation for hosted uploads independently of the
backend doing the transfer. Everything runs on one event loop, so each method
body is atomic with respect to other tasks; the terminal/canceling rules are
enforced inside update() rather than at call sites.
"""

import asyncio
import inspect
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from loguru import logger

from app.core.config import settings
from app.core.exceptions import UploadSessionCanceledError, UploadSessionExistsError
from app.models.upload_job import (
    IN_FLIGHT_STATUSES,
    CleanupCallback,
    UploadJob,
    UploadJobStatus,
)


def clamp_percent(value) -> int:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return 0
    if n != n or n in (float("inf"), float("-inf")):
        return 0
    return max(0, min(100, int(round(n))))


class UploadJobRegistry:
    def __init__(self, ttl_seconds: int = 30 * 60, clock: Callable[[], datetime] = datetime.now):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._jobs: Dict[str, UploadJob] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._jobs)

    def create(self, job_id: Optional[str] = None, owner_id: Optional[str] = None,
               total_bytes: Optional[int] = None, replace_if_exists: bool = True) -> UploadJob:
        """Register a new job, refusing to shadow a live or canceled one"""
        job_id = str(job_id) if job_id else str(uuid.uuid4())

        existing = self._jobs.get(job_id)
        if existing is not None:
            if existing.is_canceled:
                raise UploadSessionCanceledError(f"Upload session {job_id} was canceled")
            if not existing.is_terminal or not replace_if_exists:
                raise UploadSessionExistsError(f"Upload session {job_id} already exists")
            del self._jobs[job_id]

        now = self._clock()
        job = UploadJob(
            id=job_id,
            owner_id=str(owner_id) if owner_id is not None else None,
            total_bytes=total_bytes if isinstance(total_bytes, int) and total_bytes > 0 else None,
            created_at=now,
            updated_at=now,
        )
        self._jobs[job_id] = job
        logger.debug(f"Upload job {job_id} created for owner {job.owner_id}")
        return job

    def get(self, job_id: str) -> Optional[UploadJob]:
        return self._jobs.get(str(job_id))

    def update(self, job_id: str, **patch) -> Optional[UploadJob]:
        """Apply a partial update. Canceled and terminal jobs only accept `error`
        (and canceling jobs the final move to canceled)."""
        job = self.get(job_id)
        if job is None:
            return None

        if job.is_canceled or job.is_terminal:
            if "error" in patch:
                job.error = patch["error"]
            if job.status == UploadJobStatus.CANCELING and patch.get("status") == UploadJobStatus.CANCELED:
                job.status = UploadJobStatus.CANCELED
            job.updated_at = self._clock()
            return job

        for field, value in patch.items():
            if field == "percent":
                value = clamp_percent(value)
            elif field == "status":
                value = UploadJobStatus(value)
            elif field in ("id", "created_at", "updated_at"):
                continue
            setattr(job, field, value)

        job.updated_at = self._clock()
        return job

    def attach_runtime(self, job_id: str, abort_signal: Optional[asyncio.Event] = None,
                       cleanup: Optional[CleanupCallback] = None) -> Optional[UploadJob]:
        """Register the live abort signal and cleanup hook once the transfer is starting"""
        job = self.get(job_id)
        if job is None:
            return None
        job._abort_signal = abort_signal
        job._cleanup = cleanup if callable(cleanup) else None
        return job

    async def cancel(self, job_id: str) -> Optional[UploadJob]:
        """Cancel a job. Idempotent; terminal jobs are returned untouched."""
        job = self.get(job_id)
        if job is None:
            return None
        if job.is_terminal or job.status == UploadJobStatus.CANCELING:
            return job

        job.canceled = True
        job.status = UploadJobStatus.CANCELING
        job.updated_at = self._clock()
        logger.info(f"Canceling upload job {job_id}")

        abort_signal = job._abort_signal
        if abort_signal is not None:
            try:
                abort_signal.set()
            except Exception as e:
                logger.warning(f"Abort signal for upload job {job_id} failed: {e}")

        cleanup = job._cleanup
        if cleanup is not None:
            try:
                result = cleanup()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Cleanup for upload job {job_id} failed: {e}")

        job.status = UploadJobStatus.CANCELED
        job.updated_at = self._clock()
        return job

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Evict jobs older than the TTL that are no longer in flight"""
        now = now or self._clock()
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.status not in IN_FLIGHT_STATUSES and now - job.created_at >= self.ttl
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug(f"Swept {len(expired)} expired upload jobs")
        return len(expired)

    async def _sweep_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Upload job sweep failed: {e}")

    def start_sweeper(self, interval: float = 60):
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval))
            logger.info(f"Upload job sweeper started (interval {interval}s, ttl {self.ttl})")

    async def stop_sweeper(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None


# Global registry instance
upload_job_registry = UploadJobRegistry(ttl_seconds=settings.upload_job_ttl_seconds)


def get_upload_job_registry() -> UploadJobRegistry:
    """FastAPI dependency returning the shared registry"""
    return upload_job_registry
