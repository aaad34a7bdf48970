"""
Document storage through a chat bot API.

Files go up as a single multipart `sendDocument` call into a configured
channel; downloads resolve the file id with `getFile` and stream the bytes
back to the caller without buffering the whole file.
"""

import asyncio
import json
import mimetypes
import time
import uuid
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp
from loguru import logger

from app.core.config import settings
from app.core.exceptions import (
    ClientCanceledError,
    FileTooLargeError,
    StorageMisconfiguredError,
    TransientUploadError,
    UnsupportedOperationError,
    UploadError,
    UploadValidationError,
    UpstreamHttpError,
    UpstreamProtocolError,
)
from app.models.media import (
    HostedDocumentReference,
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
from app.utils.filenames import sanitize_multipart_filename

PROGRESS_INTERVAL_SECONDS = 0.2
STREAM_CHUNK_SIZE = 64 * 1024
BODY_SNIPPET_LENGTH = 500


def _snippet(raw: bytes) -> str:
    return raw[:BODY_SNIPPET_LENGTH].decode("utf-8", errors="replace")


def parse_api_response(status: int, raw: bytes, method: str) -> Dict[str, Any]:
    """Decode a bot API envelope, raising the matching upload error"""
    if not raw:
        raise UpstreamProtocolError(f"{method} returned an empty body (HTTP {status})")
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        logger.warning(f"{method} returned a non-JSON body (HTTP {status}): {_snippet(raw)}")
        raise UpstreamProtocolError(f"{method} returned a non-JSON body (HTTP {status})") from e
    if not isinstance(data, dict):
        raise UpstreamProtocolError(f"{method} returned an unexpected payload")

    if not data.get("ok"):
        error_code = data.get("error_code") or status
        description = data.get("description") or "unknown error"
        logger.warning(f"{method} rejected with {error_code}: {description}")
        raise UpstreamHttpError(error_code, f"{method} failed: {description}",
                                details={"status": status, "error_code": error_code})
    return data


class ProgressTracker:
    """Counts streamed bytes and reports throttled progress"""

    def __init__(self, context: UploadContext, total_bytes: int,
                 interval: float = PROGRESS_INTERVAL_SECONDS, clock=time.monotonic):
        self.context = context
        self.total_bytes = total_bytes
        self.interval = interval
        self.clock = clock
        self.sent = 0
        self._last_report: Optional[float] = None

    def _emit(self, percent: int):
        if self.context.on_progress is None:
            return
        try:
            self.context.on_progress(UploadProgress(
                uploaded_bytes=min(self.sent, self.total_bytes),
                total_bytes=self.total_bytes,
                percent=percent,
            ))
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def advance(self, byte_count: int):
        self.sent += byte_count
        now = self.clock()
        if self._last_report is not None and now - self._last_report < self.interval:
            return
        self._last_report = now
        percent = int(self.sent * 100 / self.total_bytes) if self.total_bytes else 0
        self._emit(min(99, max(0, percent)))

    def finish(self):
        self.sent = self.total_bytes
        self._emit(100)


class RelayedDownload:
    """
    An upstream download whose first chunk has already arrived.

    The caller streams `iter_body()`; closing it (or the client going away)
    tears down both the upstream response and its session.
    """

    def __init__(self, status: int, headers: Dict[str, str], first_chunk: bytes,
                 response: aiohttp.ClientResponse, session: aiohttp.ClientSession):
        self.status = status
        self.headers = headers
        self.first_chunk = first_chunk
        self._response = response
        self._session = session
        self.closed = False

    async def iter_body(self) -> AsyncIterator[bytes]:
        try:
            if self.first_chunk:
                yield self.first_chunk
            async for chunk in self._response.content.iter_chunked(STREAM_CHUNK_SIZE):
                yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            # Headers are already sent; all that is left is ending the stream
            logger.warning(f"Document stream interrupted after headers were sent: {e}")
        finally:
            await self.close()

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self._response.close()
        await self._session.close()


class DocumentRelayClient(StorageBackend):
    storage_type = "hosted-document"

    def __init__(self, api_url: Optional[str] = None, bot_token: Optional[str] = None,
                 channel_id: Optional[str] = None, max_upload_bytes: Optional[int] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 upload_timeout: Optional[float] = None, download_timeout: Optional[float] = None):
        self.api_url = (api_url or settings.document_host_api_url).rstrip("/")
        self.bot_token = bot_token if bot_token is not None else settings.document_host_bot_token
        self.channel_id = channel_id if channel_id is not None else settings.document_host_channel_id
        self.max_upload_bytes = max_upload_bytes or settings.document_host_max_upload_bytes
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.upload_timeout = upload_timeout or settings.document_host_upload_timeout
        self.download_timeout = download_timeout or settings.document_host_download_timeout

    def _method_url(self, method: str) -> str:
        return f"{self.api_url}/bot{self.bot_token}/{method}"

    def _ensure_configured(self, needs_channel: bool = True):
        if not self.bot_token:
            raise StorageMisconfiguredError("Document host bot token is not configured")
        if needs_channel and not self.channel_id:
            raise StorageMisconfiguredError("Document host channel id is not configured")

    async def _call(self, method: str, abort_signal: Optional[asyncio.Event], timeout: float,
                    http_method: str = "GET", **kwargs) -> Dict[str, Any]:
        """One bot API call; network failures become transient upload errors"""
        raise_if_aborted(abort_signal)

        async def send() -> Dict[str, Any]:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
                async with session.request(http_method, self._method_url(method), **kwargs) as response:
                    try:
                        raw = await response.read()
                    except aiohttp.ClientPayloadError as e:
                        raise UpstreamProtocolError(f"{method} body could not be decoded: {e}") from e
                    return parse_api_response(response.status, raw, method)

        try:
            return await run_abortable(send(), abort_signal)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientUploadError(f"{method} request failed: {e!r}") from e

    async def _token_still_valid(self, abort_signal: Optional[asyncio.Event]) -> bool:
        """A 401 is only worth retrying when getMe still accepts the token"""
        try:
            data = await self._call("getMe", abort_signal, timeout=30)
        except ClientCanceledError:
            raise
        except UploadError as e:
            logger.warning(f"Document host token check failed: {e}")
            return False
        return bool(data.get("ok"))

    async def _should_retry(self, error: UploadError, attempt: int,
                            abort_signal: Optional[asyncio.Event]) -> bool:
        if attempt >= self.retry_policy.max_attempts:
            return False
        if is_retryable(error):
            return True
        if isinstance(error, UpstreamHttpError) and error.status == 401:
            return await self._token_still_valid(abort_signal)
        return False

    # === UPLOAD ===

    async def upload_lesson_video(self, source: UploadSource, context: Optional[UploadContext] = None):
        raise UnsupportedOperationError("Videos are not stored on the document host")

    async def upload_lesson_file(self, source: UploadSource,
                                 context: Optional[UploadContext] = None) -> HostedDocumentReference:
        context = context or UploadContext()
        abort_signal = context.abort_signal
        try:
            self._ensure_configured()

            total_bytes = source.total_bytes() or 0
            if total_bytes > self.max_upload_bytes:
                limit_mb = self.max_upload_bytes // (1024 * 1024)
                raise FileTooLargeError(f"File exceeds the {limit_mb}MB document host limit",
                                        details={"size": total_bytes, "limit": self.max_upload_bytes})
            if not total_bytes:
                raise UploadValidationError("File is empty")

            file_name = sanitize_multipart_filename(source.original_name)

            attempt = 1
            while True:
                try:
                    data = await self._send_document(source, total_bytes, file_name, context)
                    break
                except ClientCanceledError:
                    logger.info(f"Document upload of {file_name} canceled")
                    raise
                except UploadError as error:
                    if not await self._should_retry(error, attempt, abort_signal):
                        logger.error(f"Document upload failed after {attempt} attempt(s): {error}")
                        raise
                    delay = self.retry_policy.delay_for(attempt)
                    logger.warning(f"Document upload attempt {attempt} failed ({error}); retrying in {delay:.2f}s")
                    await backoff_sleep(delay, abort_signal)
                    attempt += 1

            result = data["result"]
            document = result["document"]
            chat = result.get("chat") or {}
            logger.info(f"Document uploaded to host: {file_name} ({total_bytes} bytes)")

            return HostedDocumentReference(
                file_id=document["file_id"],
                message_id=result.get("message_id"),
                chat_id=str(chat.get("id", self.channel_id)),
                file_name=document.get("file_name") or file_name,
                original_name=source.original_name,
                mime_type=source.mime_type,
                size=total_bytes,
                uploaded_by=context.user_id,
            )
        finally:
            await source.discard()

    async def _send_document(self, source: UploadSource, total_bytes: int, file_name: str,
                             context: UploadContext) -> Dict[str, Any]:
        boundary = f"----DocumentRelay{uuid.uuid4().hex}"
        mime_type = (source.mime_type or "application/octet-stream").replace("\r", "").replace("\n", "")
        preamble = (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="chat_id"\r\n\r\n'
            f"{self.channel_id}\r\n"
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="document"; filename="{file_name}"\r\n'
            f"Content-Type: {mime_type}\r\n\r\n"
        ).encode("utf-8")
        epilogue = f"\r\n--{boundary}--\r\n".encode("utf-8")

        tracker = ProgressTracker(context, total_bytes)
        tracker.advance(0)

        async def body_sender():
            yield preamble
            async for chunk in source.iter_chunks(STREAM_CHUNK_SIZE):
                raise_if_aborted(context.abort_signal)
                tracker.advance(len(chunk))
                yield chunk
            yield epilogue

        headers = {
            "Content-Type": f"multipart/form-data; boundary={boundary}",
            "Content-Length": str(len(preamble) + total_bytes + len(epilogue)),
        }
        data = await self._call("sendDocument", context.abort_signal, self.upload_timeout,
                                http_method="POST", data=body_sender(), headers=headers)

        result = data.get("result")
        if not isinstance(result, dict) or not isinstance(result.get("document"), dict) \
                or not result["document"].get("file_id"):
            raise UpstreamProtocolError("sendDocument response is missing the document file id")

        tracker.finish()
        return data

    # === DOWNLOAD ===

    async def resolve_file_path(self, file_id: str, abort_signal: Optional[asyncio.Event] = None) -> str:
        """Map a document file id to its download path with getFile"""
        self._ensure_configured(needs_channel=False)
        attempt = 1
        while True:
            try:
                data = await self._call("getFile", abort_signal, self.download_timeout,
                                        params={"file_id": file_id})
                file_path = (data.get("result") or {}).get("file_path")
                if not file_path:
                    raise UpstreamProtocolError("getFile response is missing file_path")
                return file_path
            except ClientCanceledError:
                raise
            except UploadError as error:
                if not await self._should_retry(error, attempt, abort_signal):
                    raise
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(f"getFile attempt {attempt} failed ({error}); retrying in {delay:.2f}s")
                await backoff_sleep(delay, abort_signal)
                attempt += 1

    def _download_headers(self, response: aiohttp.ClientResponse, filename: Optional[str],
                          download: bool) -> Dict[str, str]:
        content_type = response.headers.get("Content-Type")
        if not content_type or content_type == "application/octet-stream":
            guessed, _ = mimetypes.guess_type(filename or "")
            content_type = guessed or content_type or "application/octet-stream"

        headers = {"Content-Type": content_type}
        if response.headers.get("Content-Length"):
            headers["Content-Length"] = response.headers["Content-Length"]
        if filename:
            disposition = "attachment" if download else "inline"
            headers["Content-Disposition"] = f'{disposition}; filename="{sanitize_multipart_filename(filename)}"'
        return headers

    async def open_download(self, file_id: str, filename: Optional[str] = None, download: bool = False,
                            abort_signal: Optional[asyncio.Event] = None) -> RelayedDownload:
        """
        Start streaming a stored document.

        Returns once the first upstream chunk is in hand, so failures before that
        point can still be retried and reported with a proper status code.
        """
        file_path = await self.resolve_file_path(file_id, abort_signal)
        url = f"{self.api_url}/file/bot{self.bot_token}/{file_path}"

        attempt = 1
        while True:
            raise_if_aborted(abort_signal)
            session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.download_timeout))
            handed_off = False
            try:
                response = await session.get(url)
                try:
                    if response.status != 200:
                        raise UpstreamHttpError(response.status, f"Document download returned HTTP {response.status}")
                    first_chunk = await response.content.readany()
                    download_stream = RelayedDownload(
                        status=200,
                        headers=self._download_headers(response, filename, download),
                        first_chunk=first_chunk,
                        response=response,
                        session=session,
                    )
                    handed_off = True
                    return download_stream
                finally:
                    if not handed_off:
                        response.close()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                error: UploadError = TransientUploadError(f"Document download failed: {e!r}")
            except UpstreamHttpError as e:
                error = e
            finally:
                if not handed_off:
                    await session.close()

            if not await self._should_retry(error, attempt, abort_signal):
                status = getattr(error, "status", None) or 502
                logger.error(f"Document {file_id} download failed after {attempt} attempt(s): {error}")
                raise UpstreamHttpError(status, "Failed to download document") from error
            delay = self.retry_policy.delay_for(attempt)
            logger.warning(f"Document download attempt {attempt} failed ({error}); retrying in {delay:.2f}s")
            await backoff_sleep(delay, abort_signal)
            attempt += 1

    async def get_lesson_file(self, reference: HostedDocumentReference, **options) -> RelayedDownload:
        file_id = getattr(reference, "file_id", None)
        if not file_id:
            raise UploadValidationError("Document reference requires file_id")
        return await self.open_download(
            file_id,
            filename=options.get("filename") or getattr(reference, "file_name", None)
            or getattr(reference, "original_name", None),
            download=bool(options.get("download")),
            abort_signal=options.get("abort_signal"),
        )

    async def delete_lesson_file(self, reference: HostedDocumentReference) -> None:
        """Documents stay in the channel; nothing to delete"""
        logger.debug(f"Delete requested for hosted document {getattr(reference, 'file_id', None)}; no-op")
