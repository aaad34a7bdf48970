"""
Retry, backoff and cancellation helpers shared by the hosted storage clients.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Optional, TypeVar

import aiohttp
from loguru import logger

from app.core.config import settings
from app.core.exceptions import (
    ClientCanceledError,
    TransientUploadError,
    UpstreamHttpError,
)

T = TypeVar("T")

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.75
    factor: float = 2.0
    max_jitter: float = 0.25

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            factor=settings.retry_backoff_factor,
            max_jitter=settings.retry_max_jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following `attempt` (1-based)"""
        jitter = random.uniform(0, self.max_jitter) if self.max_jitter > 0 else 0.0
        return self.base_delay * (self.factor ** (attempt - 1)) + jitter


def is_retryable(error: BaseException) -> bool:
    """Transient failures: timeouts, connection resets, 408/429/5xx, malformed bodies"""
    if isinstance(error, ClientCanceledError):
        return False
    if isinstance(error, TransientUploadError):
        return True
    if isinstance(error, UpstreamHttpError):
        return error.status in RETRYABLE_STATUSES
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return True
    if isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        return True
    return False


def is_aborted(abort_signal: Optional[asyncio.Event]) -> bool:
    return abort_signal is not None and abort_signal.is_set()


def raise_if_aborted(abort_signal: Optional[asyncio.Event]):
    if is_aborted(abort_signal):
        raise ClientCanceledError("Upload canceled")


async def run_abortable(operation: Awaitable[T], abort_signal: Optional[asyncio.Event]) -> T:
    """Await `operation`, tearing it down if the abort signal fires first"""
    if abort_signal is None:
        return await operation

    operation_task = asyncio.ensure_future(operation)
    if abort_signal.is_set():
        operation_task.cancel()
        await asyncio.gather(operation_task, return_exceptions=True)
        raise ClientCanceledError("Upload canceled")

    abort_task = asyncio.ensure_future(abort_signal.wait())
    try:
        done, _ = await asyncio.wait({operation_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        operation_task.cancel()
        raise
    finally:
        abort_task.cancel()

    if operation_task in done:
        return operation_task.result()

    operation_task.cancel()
    # Drain the torn-down request so its connection is released
    await asyncio.gather(operation_task, return_exceptions=True)
    raise ClientCanceledError("Upload canceled")


async def backoff_sleep(delay: float, abort_signal: Optional[asyncio.Event] = None):
    """Sleep between attempts, waking early (and raising) on abort"""
    if delay <= 0:
        raise_if_aborted(abort_signal)
        return
    if abort_signal is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(abort_signal.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    logger.debug("Backoff interrupted by cancellation")
    raise ClientCanceledError("Upload canceled")
