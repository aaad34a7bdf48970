"""
Resumable chunked upload client for the hosted video API.

Protocol: negotiate an upload session (POST JSON descriptor, session URL comes
back in the Location header), then PUT the file in byte ranges. A 308 reply
carries the committed high-water mark in its Range header; a 2xx reply on the
last range carries the new video id.
"""

import asyncio
import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

import aiohttp
from loguru import logger

from app.core.config import settings
from app.core.exceptions import (
    AuthExpiredError,
    ClientCanceledError,
    QuotaExceededError,
    TransientUploadError,
    UnsupportedOperationError,
    UploadError,
    UploadValidationError,
    UpstreamHttpError,
    UpstreamIncompleteError,
    UpstreamProtocolError,
)
from app.models.media import (
    HostedVideoReference,
    OnDiskSource,
    PrivacyStatus,
    UploadContext,
    UploadProgress,
    UploadSource,
)
from app.services.storage_backend import StorageBackend
from app.services.upload_retry import (
    RetryPolicy,
    backoff_sleep,
    is_retryable,
    raise_if_aborted,
    run_abortable,
)
from app.services.video_audit_log import HostedVideoAuditLog
from app.services.video_host_tokens import VideoHostTokenProvider, video_host_tokens

EDUCATION_CATEGORY_ID = "27"
ALLOWED_PRIVACY_STATUSES = (PrivacyStatus.PUBLIC, PrivacyStatus.UNLISTED)
QUOTA_REASONS = frozenset({"quotaexceeded", "dailylimitexceeded", "userratelimitexceeded", "ratelimitexceeded"})
AUTH_REJECTION_STATUSES = frozenset({401, 403})

# Rounds in a row where the host neither advanced nor reported its offset
MAX_UNCONFIRMED_ROUNDS = 3

_RANGE_RE = re.compile(r"bytes=\s*(\d+)-(\d+)", re.IGNORECASE)
_VIDEO_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{11}$")
_URL_ID_PATTERNS = (
    re.compile(r"[?&]v=([^&]+)"),
    re.compile(r"youtu\.be/([^?&]+)"),
    re.compile(r"youtube\.com/embed/([^?&]+)"),
    re.compile(r"youtube\.com/v/([^?&]+)"),
)


@dataclass
class HostResponse:
    status: int
    headers: Mapping[str, str]
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Optional[Dict[str, Any]]:
        if not self.body:
            return None
        try:
            data = json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        return data if isinstance(data, dict) else None


@dataclass
class ResumableSession:
    upload_url: str
    total_bytes: int
    offset: int = 0


@dataclass
class ChunkResult:
    done: bool
    committed: Optional[int] = None
    data: Optional[Dict[str, Any]] = field(default=None)


def parse_range_end(range_header: Optional[str]) -> Optional[int]:
    """Last committed byte from a `Range: bytes=0-N` header"""
    if not range_header:
        return None
    match = _RANGE_RE.search(str(range_header))
    if not match:
        return None
    return int(match.group(2))


def extract_error_reasons(data: Optional[Dict[str, Any]]) -> List[str]:
    if not isinstance(data, dict):
        return []
    error = data.get("error")
    if not isinstance(error, dict):
        return []
    reasons = [str(item["reason"]) for item in error.get("errors") or [] if isinstance(item, dict) and item.get("reason")]
    if error.get("status"):
        reasons.append(str(error["status"]))
    return reasons


def is_quota_exceeded(reasons: List[str]) -> bool:
    return any(reason.lower() in QUOTA_REASONS for reason in reasons)


def extract_video_id(value: str) -> Optional[str]:
    """Video id from a watch/short/embed URL or a bare id"""
    value = (value or "").strip()
    for pattern in _URL_ID_PATTERNS:
        match = pattern.search(value)
        if match:
            return match.group(1)
    if _VIDEO_ID_RE.match(value):
        return value
    return None


def progress_percent(uploaded: int, total: int, done: bool) -> int:
    """Percent for a progress report; only a finished upload reports 100"""
    if done:
        return 100
    if not total:
        return 0
    return min(99, max(0, math.ceil(uploaded * 100 / total)))


class ResumableUploadClient(StorageBackend):
    storage_type = "hosted-video"

    def __init__(self, upload_url: Optional[str] = None,
                 token_provider: Optional[VideoHostTokenProvider] = None,
                 audit_log: Optional[HostedVideoAuditLog] = None,
                 chunk_size: Optional[int] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 watch_url: Optional[str] = None,
                 session_timeout: Optional[float] = None,
                 chunk_timeout: Optional[float] = None):
        self.upload_url = upload_url or settings.video_host_upload_url
        self.token_provider = token_provider or video_host_tokens
        self.audit_log = audit_log or HostedVideoAuditLog()
        self.chunk_size = min(chunk_size or settings.video_host_chunk_size, 1024 * 1024)
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.watch_url = watch_url or settings.video_host_watch_url
        self.session_timeout = session_timeout or settings.video_host_session_timeout
        self.chunk_timeout = chunk_timeout or settings.video_host_chunk_timeout

    # === PUBLIC CONTRACT ===

    async def upload_lesson_video(self, source: Union[UploadSource, str],
                                  context: Optional[UploadContext] = None) -> HostedVideoReference:
        context = context or UploadContext()
        if isinstance(source, str):
            return self.build_reference_from_url(source, context)
        return await self._upload_with_retries(source, context)

    async def upload_lesson_file(self, source: UploadSource, context: Optional[UploadContext] = None):
        raise UnsupportedOperationError("The video host does not store lesson files")

    async def get_lesson_file(self, reference, **options):
        raise UnsupportedOperationError("The video host does not serve lesson files")

    async def delete_lesson_file(self, reference: HostedVideoReference) -> None:
        """Hosted videos are never deleted automatically; the audit record is marked orphaned"""
        video_id = getattr(reference, "video_id", None)
        if not video_id:
            return
        try:
            if await self.audit_log.mark_orphaned(video_id):
                logger.info(f"Hosted video {video_id} marked orphaned (no remote deletion performed)")
        except Exception as e:
            logger.error(f"Failed to mark hosted video {video_id} orphaned: {e}")

    def build_reference_from_url(self, value: str, context: Optional[UploadContext] = None) -> HostedVideoReference:
        """Reference an already-hosted video by URL or id without uploading anything"""
        video_id = extract_video_id(value)
        if not video_id:
            raise UploadValidationError("Invalid hosted video URL or video ID")
        return HostedVideoReference(
            video_id=video_id,
            video_url=f"{self.watch_url}{video_id}",
            uploaded_by=context.user_id if context else None,
        )

    # === UPLOAD ===

    async def _upload_with_retries(self, source: UploadSource, context: UploadContext) -> HostedVideoReference:
        abort_signal = context.abort_signal
        try:
            if context.privacy_status not in ALLOWED_PRIVACY_STATUSES:
                raise UploadValidationError("Hosted videos must be public or unlisted to be embeddable")

            total_bytes = source.total_bytes()
            if not total_bytes:
                raise UploadValidationError("Video file is empty")

            refreshed = False
            attempt = 1
            while True:
                try:
                    video_id = await self._upload_once(source, total_bytes, context)
                    break
                except ClientCanceledError:
                    logger.info(f"Hosted video upload of {source.original_name} canceled")
                    raise
                except UploadError as error:
                    if self._is_auth_rejection(error):
                        if refreshed:
                            raise AuthExpiredError("Video host rejected refreshed credentials",
                                                   code="rejected") from error
                        logger.warning("Video host rejected the access token, forcing a refresh")
                        refreshed = True
                        await self.token_provider.ensure_valid_token(force_refresh=True)
                        continue

                    if attempt >= self.retry_policy.max_attempts or not is_retryable(error):
                        logger.error(f"Hosted video upload failed after {attempt} attempt(s): {error}")
                        raise

                    delay = self.retry_policy.delay_for(attempt)
                    logger.warning(f"Hosted video upload attempt {attempt} failed ({error}); retrying in {delay:.2f}s")
                    await backoff_sleep(delay, abort_signal)
                    attempt += 1

            video_url = f"{self.watch_url}{video_id}"
            await self._write_audit_record(video_id, video_url, source, context)
            logger.info(f"Hosted video upload successful: {video_url}")

            return HostedVideoReference(
                video_id=video_id,
                video_url=video_url,
                original_name=source.original_name,
                mime_type=source.mime_type,
                size=total_bytes,
                uploaded_by=context.user_id,
            )
        finally:
            await source.discard()

    async def _upload_once(self, source: UploadSource, total_bytes: int, context: UploadContext) -> str:
        """One full pass: negotiate a session and push every chunk"""
        token = await self.token_provider.ensure_valid_token()
        async with aiohttp.ClientSession() as session:
            upload = await self._open_session(session, token, source, total_bytes, context)
            data = await self._transfer(session, token, upload, source, context)

        video_id = data.get("id") if data else None
        if not video_id:
            raise UpstreamProtocolError("Video host completed the upload without returning a video id")
        return str(video_id)

    async def _request(self, session: aiohttp.ClientSession, method: str, url: str,
                       abort_signal: Optional[asyncio.Event], timeout: float, **kwargs) -> HostResponse:
        raise_if_aborted(abort_signal)

        async def send() -> HostResponse:
            async with session.request(method, url, allow_redirects=False,
                                       timeout=aiohttp.ClientTimeout(total=timeout), **kwargs) as response:
                body = await response.read()
                return HostResponse(status=response.status, headers=response.headers, body=body)

        try:
            return await run_abortable(send(), abort_signal)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientUploadError(f"{method} {url.split('?')[0]} failed: {e!r}") from e

    def _error_from_response(self, response: HostResponse, message: str) -> UploadError:
        data = response.json()
        reasons = extract_error_reasons(data)
        error_body = (data or {}).get("error")
        upstream_message = error_body.get("message") if isinstance(error_body, dict) else None
        details = {"status": response.status, "reasons": reasons, "upstream_message": upstream_message}
        if not data and response.body:
            logger.warning(f"Video host HTTP {response.status}: {response.body[:500].decode('utf-8', errors='replace')}")
        if is_quota_exceeded(reasons):
            return QuotaExceededError(f"{message}: quota exhausted ({', '.join(reasons)})", details=details)
        return UpstreamHttpError(response.status, f"{message}: HTTP {response.status}", reasons=reasons, details=details)

    @staticmethod
    def _is_auth_rejection(error: UploadError) -> bool:
        return isinstance(error, UpstreamHttpError) and error.status in AUTH_REJECTION_STATUSES

    async def _open_session(self, session: aiohttp.ClientSession, token: str, source: UploadSource,
                            total_bytes: int, context: UploadContext) -> ResumableSession:
        descriptor = {
            "snippet": {
                "title": context.title or source.original_name,
                "description": context.description or "",
                "categoryId": EDUCATION_CATEGORY_ID,
            },
            "status": {
                "privacyStatus": context.privacy_status.value,
                "embeddable": True,
                "selfDeclaredMadeForKids": False,
            },
        }
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json; charset=UTF-8",
            "X-Upload-Content-Type": source.mime_type or "application/octet-stream",
            "X-Upload-Content-Length": str(total_bytes),
        }
        response = await self._request(session, "POST", self.upload_url, context.abort_signal,
                                       self.session_timeout, json=descriptor, headers=headers)
        if not response.ok:
            raise self._error_from_response(response, "Upload session negotiation failed")

        location = response.headers.get("Location")
        if not location:
            raise UpstreamProtocolError("Upload session response had no Location header")

        logger.debug(f"Resumable session opened for {source.original_name} ({total_bytes} bytes)")
        return ResumableSession(upload_url=location, total_bytes=total_bytes)

    async def _put_chunk(self, session: aiohttp.ClientSession, token: str, upload: ResumableSession,
                         chunk: bytes, mime_type: str, abort_signal: Optional[asyncio.Event]) -> ChunkResult:
        start = upload.offset
        end = start + len(chunk) - 1
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": mime_type or "application/octet-stream",
            "Content-Range": f"bytes {start}-{end}/{upload.total_bytes}",
        }
        response = await self._request(session, "PUT", upload.upload_url, abort_signal,
                                       self.chunk_timeout, data=chunk, headers=headers)

        if response.status == 308:
            range_end = parse_range_end(response.headers.get("Range"))
            if range_end is not None:
                return ChunkResult(done=False, committed=range_end + 1)
            return await self._probe_offset(session, token, upload, abort_signal)

        if not response.ok:
            raise self._error_from_response(response, "Chunk upload failed")

        return ChunkResult(done=True, committed=upload.total_bytes, data=response.json())

    async def _probe_offset(self, session: aiohttp.ClientSession, token: str, upload: ResumableSession,
                            abort_signal: Optional[asyncio.Event]) -> ChunkResult:
        """Ask the session how many bytes it holds (zero-length PUT, `bytes */total`)"""
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Range": f"bytes */{upload.total_bytes}",
        }
        try:
            response = await self._request(session, "PUT", upload.upload_url, abort_signal,
                                           self.session_timeout, data=b"", headers=headers)
        except TransientUploadError as e:
            logger.warning(f"Upload offset probe failed: {e}")
            return ChunkResult(done=False, committed=None)

        if response.status == 308:
            range_end = parse_range_end(response.headers.get("Range"))
            # 308 without Range means nothing has been committed yet
            return ChunkResult(done=False, committed=range_end + 1 if range_end is not None else 0)
        if response.ok:
            return ChunkResult(done=True, committed=upload.total_bytes, data=response.json())

        logger.warning(f"Upload offset probe returned HTTP {response.status}")
        return ChunkResult(done=False, committed=None)

    async def _transfer(self, session: aiohttp.ClientSession, token: str, upload: ResumableSession,
                        source: UploadSource, context: UploadContext) -> Optional[Dict[str, Any]]:
        total = upload.total_bytes
        abort_signal = context.abort_signal
        unconfirmed_rounds = 0

        self._report_progress(context, 0, total, done=False)

        while upload.offset < total:
            raise_if_aborted(abort_signal)

            length = min(self.chunk_size, total - upload.offset)
            chunk = await source.read_range(upload.offset, length)
            if not chunk:
                raise UploadError(f"Source {source.original_name} ended at byte {upload.offset} of {total}")

            result = await self._put_chunk(session, token, upload, chunk, source.mime_type, abort_signal)
            if result.done:
                upload.offset = total
                self._report_progress(context, total, total, done=True)
                return result.data

            committed = result.committed
            if committed is not None and committed < upload.offset:
                raise UpstreamProtocolError(
                    f"Video host offset moved backwards ({committed} < {upload.offset})"
                )
            if committed is None or committed == upload.offset:
                unconfirmed_rounds += 1
                if unconfirmed_rounds >= MAX_UNCONFIRMED_ROUNDS:
                    raise UpstreamProtocolError(
                        f"Video host did not confirm progress past byte {upload.offset}"
                    )
                logger.warning(f"Unconfirmed chunk at offset {upload.offset}; resending from last committed byte")
                continue

            unconfirmed_rounds = 0
            upload.offset = min(committed, total)
            self._report_progress(context, upload.offset, total, done=False)

        raise UpstreamIncompleteError("Video host accepted every byte but never completed the upload")

    @staticmethod
    def _report_progress(context: UploadContext, uploaded: int, total: int, done: bool):
        if context.on_progress is None:
            return
        safe_uploaded = min(total, max(0, uploaded))
        try:
            context.on_progress(UploadProgress(
                uploaded_bytes=safe_uploaded,
                total_bytes=total,
                percent=progress_percent(safe_uploaded, total, done),
            ))
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    async def _write_audit_record(self, video_id: str, video_url: str, source: UploadSource,
                                  context: UploadContext):
        try:
            await self.audit_log.record(video_id, video_url, {
                "title": context.title or source.original_name,
                "description": context.description or "",
                "privacy_status": context.privacy_status.value,
                "uploaded_by": context.user_id,
                "course_id": context.course_id,
                "section_id": context.section_id,
                "group_id": context.group_id,
                "content_id": context.content_id,
                "original_filename": source.original_name,
                "file_size": source.total_bytes(),
                "stored_from": "disk" if isinstance(source, OnDiskSource) else "memory",
            })
        except Exception as e:
            logger.error(f"Failed to persist audit record for hosted video {video_id}: {e}")
