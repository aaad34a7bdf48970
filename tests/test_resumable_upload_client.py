"""
Resumable upload client against an in-process fake video host.
"""

import asyncio
from typing import List, Optional, Tuple

import pytest
from aiohttp import web

from app.core.exceptions import (
    AuthExpiredError,
    ClientCanceledError,
    QuotaExceededError,
    UnsupportedOperationError,
    UploadValidationError,
    UpstreamIncompleteError,
    UpstreamProtocolError,
)
from app.models.media import HostedVideoReference, PrivacyStatus, UploadContext
from app.services.resumable_upload_client import (
    ResumableUploadClient,
    extract_video_id,
    parse_range_end,
    progress_percent,
)
from app.services.upload_retry import RetryPolicy
from app.services.video_audit_log import HostedVideoAuditLog
from app.services.video_host_tokens import VideoHostTokenProvider

VIDEO_ID = "dQw4w9WgXcQ"
CHUNK = 1024


class FakeVideoHost:
    """Implements just enough of the resumable protocol to exercise the client"""

    def __init__(self, total: int, range_on_put: bool = True, stall: bool = False,
                 never_complete: bool = False):
        self.total = total
        self.range_on_put = range_on_put
        self.stall = stall
        self.never_complete = never_complete
        self.received = bytearray()
        self.session_responses: List[Tuple[int, dict]] = []
        self.rejected_tokens = set()
        self.descriptors: List[dict] = []
        self.session_headers: List[dict] = []
        self.session_posts = 0
        self.put_calls = 0
        self.probe_calls = 0
        self.refresh_calls = 0

    def app(self) -> web.Application:
        app = web.Application(client_max_size=16 * 1024 * 1024)
        app.router.add_post("/upload", self.open_session)
        app.router.add_put("/session/{sid}", self.put)
        app.router.add_post("/token", self.token)
        return app

    async def open_session(self, request: web.Request) -> web.Response:
        self.session_posts += 1
        self.descriptors.append(await request.json())
        self.session_headers.append(dict(request.headers))

        if request.headers.get("Authorization") in self.rejected_tokens:
            return web.json_response({"error": {"code": 401, "errors": [{"reason": "authError"}]}}, status=401)
        if self.session_responses:
            status, body = self.session_responses.pop(0)
            return web.json_response(body, status=status)

        self.received = bytearray()
        location = request.url.with_path(f"/session/{self.session_posts}").with_query(None)
        return web.Response(status=200, headers={"Location": str(location)})

    def _incomplete(self, include_range: bool) -> web.Response:
        headers = {}
        if include_range and self.received:
            headers["Range"] = f"bytes=0-{len(self.received) - 1}"
        return web.Response(status=308, headers=headers)

    async def put(self, request: web.Request) -> web.Response:
        body = await request.read()
        content_range = request.headers["Content-Range"]

        if content_range.startswith("bytes */"):
            self.probe_calls += 1
            if len(self.received) >= self.total:
                return web.json_response({"id": VIDEO_ID})
            return self._incomplete(include_range=not self.stall)

        self.put_calls += 1
        if self.stall:
            return self._incomplete(include_range=False)

        start = int(content_range.split(" ")[1].split("-")[0])
        self.received = self.received[:start] + body
        if len(self.received) >= self.total and not self.never_complete:
            return web.json_response({"id": VIDEO_ID, "status": {"uploadStatus": "uploaded"}})
        return self._incomplete(include_range=self.range_on_put)

    async def token(self, request: web.Request) -> web.Response:
        self.refresh_calls += 1
        form = await request.post()
        assert form["grant_type"] == "refresh_token"
        return web.json_response({"access_token": "fresh-token", "expires_in": 3600})


@pytest.fixture
def payload():
    return bytes(range(256)) * 10  # 2560 bytes -> 3 chunks of 1024


async def make_client(start_fake_host, host: FakeVideoHost, tmp_path,
                      retry_policy: Optional[RetryPolicy] = None,
                      access_token: str = "stale-token") -> ResumableUploadClient:
    server = await start_fake_host(host.app())
    tokens = VideoHostTokenProvider(
        client_id="client", client_secret="secret", refresh_token="refresh",
        access_token=access_token, token_url=str(server.make_url("/token")),
    )
    return ResumableUploadClient(
        upload_url=str(server.make_url("/upload")),
        token_provider=tokens,
        audit_log=HostedVideoAuditLog(str(tmp_path / "audit")),
        chunk_size=CHUNK,
        retry_policy=retry_policy or RetryPolicy(max_attempts=3, base_delay=0, max_jitter=0),
        watch_url="https://videos.example/watch?v=",
    )


# =============================================================================
# HELPERS
# =============================================================================


class TestHelpers:
    @pytest.mark.parametrize("header,expected", [
        ("bytes=0-1023", 1023),
        ("bytes= 0-99", 99),
        (None, None),
        ("garbage", None),
    ])
    def test_parse_range_end(self, header, expected):
        assert parse_range_end(header) == expected

    @pytest.mark.parametrize("value", [
        f"https://www.youtube.com/watch?v={VIDEO_ID}",
        f"https://youtu.be/{VIDEO_ID}",
        f"https://www.youtube.com/embed/{VIDEO_ID}",
        VIDEO_ID,
    ])
    def test_extract_video_id(self, value):
        assert extract_video_id(value) == VIDEO_ID

    def test_extract_video_id_rejects_garbage(self):
        assert extract_video_id("not a video") is None

    def test_progress_percent_caps_until_done(self):
        assert progress_percent(0, 100, done=False) == 0
        assert progress_percent(1, 1000, done=False) == 1
        assert progress_percent(100, 100, done=False) == 99
        assert progress_percent(100, 100, done=True) == 100


# =============================================================================
# TRANSFER
# =============================================================================


class TestTransfer:
    async def test_upload_in_expected_number_of_chunks(self, start_fake_host, tmp_path, make_source, payload):
        """308 with Range on every intermediate PUT converges in ceil(total/chunk) PUTs"""
        host = FakeVideoHost(total=len(payload))
        client = await make_client(start_fake_host, host, tmp_path)
        source = make_source(payload)
        reports = []

        reference = await client.upload_lesson_video(
            source, UploadContext(user_id="u1", title="Intro", course_id="c1", on_progress=reports.append),
        )

        assert isinstance(reference, HostedVideoReference)
        assert reference.video_id == VIDEO_ID
        assert reference.video_url == f"https://videos.example/watch?v={VIDEO_ID}"
        assert host.put_calls == 3
        assert host.probe_calls == 0
        assert bytes(host.received) == payload
        assert [r.percent for r in reports] == [0, 40, 80, 100]
        assert not source.path.exists()

    async def test_progress_is_monotonic_and_capped(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        client = await make_client(start_fake_host, host, tmp_path)
        reports = []

        await client.upload_lesson_video(make_source(payload), UploadContext(on_progress=reports.append))

        offsets = [r.uploaded_bytes for r in reports]
        assert offsets == sorted(offsets)
        assert all(r.uploaded_bytes <= len(payload) for r in reports)
        assert all(r.percent <= 99 for r in reports[:-1])
        assert reports[-1].percent == 100

    async def test_session_descriptor_and_headers(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        client = await make_client(start_fake_host, host, tmp_path)

        await client.upload_lesson_video(
            make_source(payload),
            UploadContext(title="Lesson 1", description="Basics", privacy_status=PrivacyStatus.PUBLIC),
        )

        descriptor = host.descriptors[0]
        assert descriptor["snippet"] == {"title": "Lesson 1", "description": "Basics", "categoryId": "27"}
        assert descriptor["status"]["privacyStatus"] == "public"
        assert descriptor["status"]["embeddable"] is True
        headers = host.session_headers[0]
        assert headers["X-Upload-Content-Length"] == str(len(payload))
        assert headers["X-Upload-Content-Type"] == "video/mp4"

    async def test_missing_range_header_triggers_probe(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload), range_on_put=False)
        client = await make_client(start_fake_host, host, tmp_path)

        reference = await client.upload_lesson_video(make_source(payload), UploadContext())

        assert reference.video_id == VIDEO_ID
        assert host.put_calls == 3
        assert host.probe_calls == 2
        assert bytes(host.received) == payload

    async def test_host_that_never_completes_is_not_resent(self, start_fake_host, tmp_path, make_source, payload):
        """Committing every byte without a final response fails after exactly ceil(total/chunk) PUTs"""
        host = FakeVideoHost(total=len(payload), never_complete=True)
        client = await make_client(start_fake_host, host, tmp_path)
        source = make_source(payload)
        reports = []

        with pytest.raises(UpstreamIncompleteError):
            await client.upload_lesson_video(source, UploadContext(on_progress=reports.append))

        assert host.session_posts == 1
        assert host.put_calls == 3
        assert host.probe_calls == 0
        assert bytes(host.received) == payload
        assert max(r.percent for r in reports) == 99
        assert not source.path.exists()

    async def test_unconfirmed_progress_is_a_protocol_error(self, start_fake_host, tmp_path, make_source, payload):
        """A host that never reports an offset is not optimistically advanced past"""
        host = FakeVideoHost(total=len(payload), stall=True)
        policy = RetryPolicy(max_attempts=2, base_delay=0, max_jitter=0)
        client = await make_client(start_fake_host, host, tmp_path, retry_policy=policy)
        source = make_source(payload)

        with pytest.raises(UpstreamProtocolError):
            await client.upload_lesson_video(source, UploadContext())

        assert host.session_posts == 2
        assert host.put_calls == 6
        assert not source.path.exists()

    async def test_transient_session_errors_are_retried(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        host.session_responses = [(503, {"error": {"message": "backend"}}), (500, {})]
        client = await make_client(start_fake_host, host, tmp_path)

        reference = await client.upload_lesson_video(make_source(payload), UploadContext())

        assert reference.video_id == VIDEO_ID
        assert host.session_posts == 3

    async def test_missing_location_is_a_protocol_error(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        host.session_responses = [(200, {})] * 3
        client = await make_client(start_fake_host, host, tmp_path)

        with pytest.raises(UpstreamProtocolError):
            await client.upload_lesson_video(make_source(payload), UploadContext())

        assert host.session_posts == 3


# =============================================================================
# FAILURE CLASSIFICATION
# =============================================================================


class TestClassification:
    async def test_quota_exceeded_is_terminal(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        host.session_responses = [(403, {"error": {"errors": [{"reason": "quotaExceeded"}]}})]
        client = await make_client(start_fake_host, host, tmp_path)
        source = make_source(payload)

        with pytest.raises(QuotaExceededError):
            await client.upload_lesson_video(source, UploadContext())

        assert host.session_posts == 1
        assert host.refresh_calls == 0
        assert not source.path.exists()

    async def test_rejected_token_is_refreshed_once(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        host.rejected_tokens = {"Bearer stale-token"}
        client = await make_client(start_fake_host, host, tmp_path)

        reference = await client.upload_lesson_video(make_source(payload), UploadContext())

        assert reference.video_id == VIDEO_ID
        assert host.refresh_calls == 1
        assert host.session_posts == 2
        assert host.session_headers[-1]["Authorization"] == "Bearer fresh-token"

    async def test_rejected_refreshed_token_is_auth_expired(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        host.rejected_tokens = {"Bearer stale-token", "Bearer fresh-token"}
        client = await make_client(start_fake_host, host, tmp_path)

        with pytest.raises(AuthExpiredError):
            await client.upload_lesson_video(make_source(payload), UploadContext())

        assert host.refresh_calls == 1
        assert host.session_posts == 2

    async def test_private_videos_are_rejected_before_network(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        client = await make_client(start_fake_host, host, tmp_path)
        source = make_source(payload)

        with pytest.raises(UploadValidationError):
            await client.upload_lesson_video(source, UploadContext(privacy_status=PrivacyStatus.PRIVATE))

        assert host.session_posts == 0
        assert not source.path.exists()


# =============================================================================
# CANCELLATION
# =============================================================================


class TestCancellation:
    async def test_abort_stops_transfer(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        client = await make_client(start_fake_host, host, tmp_path)
        source = make_source(payload)
        abort = asyncio.Event()

        def on_progress(progress):
            if progress.percent >= 40:
                abort.set()

        with pytest.raises(ClientCanceledError):
            await client.upload_lesson_video(source, UploadContext(on_progress=on_progress, abort_signal=abort))

        assert host.put_calls == 1
        assert host.session_posts == 1
        assert not source.path.exists()

    async def test_pre_aborted_upload_makes_no_requests(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        client = await make_client(start_fake_host, host, tmp_path)
        abort = asyncio.Event()
        abort.set()

        with pytest.raises(ClientCanceledError):
            await client.upload_lesson_video(make_source(payload), UploadContext(abort_signal=abort))

        assert host.session_posts == 0


# =============================================================================
# AUDIT AND REFERENCES
# =============================================================================


class TestAuditAndReferences:
    async def test_success_writes_audit_record(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        client = await make_client(start_fake_host, host, tmp_path)

        await client.upload_lesson_video(
            make_source(payload, name="week1.mp4"),
            UploadContext(user_id="u9", title="Week 1", course_id="c1", section_id="s1"),
        )

        record = await client.audit_log.get(VIDEO_ID)
        assert record["status"] == "active"
        assert record["uploaded_by"] == "u9"
        assert record["course_id"] == "c1"
        assert record["original_filename"] == "week1.mp4"
        assert record["file_size"] == len(payload)

    async def test_delete_marks_audit_record_orphaned(self, start_fake_host, tmp_path, make_source, payload):
        host = FakeVideoHost(total=len(payload))
        client = await make_client(start_fake_host, host, tmp_path)
        reference = await client.upload_lesson_video(make_source(payload), UploadContext())

        await client.delete_lesson_file(reference)

        assert (await client.audit_log.get(VIDEO_ID))["status"] == "orphaned"

    async def test_existing_url_is_linked_without_upload(self, start_fake_host, tmp_path):
        host = FakeVideoHost(total=1)
        client = await make_client(start_fake_host, host, tmp_path)

        reference = await client.upload_lesson_video(f"https://youtu.be/{VIDEO_ID}", UploadContext(user_id="u1"))

        assert reference.video_id == VIDEO_ID
        assert reference.uploaded_by == "u1"
        assert host.session_posts == 0

    async def test_invalid_url_is_rejected(self, start_fake_host, tmp_path):
        client = await make_client(start_fake_host, FakeVideoHost(total=1), tmp_path)

        with pytest.raises(UploadValidationError):
            await client.upload_lesson_video("https://example.com/video", UploadContext())

    async def test_lesson_files_are_unsupported(self, start_fake_host, tmp_path, make_source):
        client = await make_client(start_fake_host, FakeVideoHost(total=1), tmp_path)

        with pytest.raises(UnsupportedOperationError):
            await client.upload_lesson_file(make_source(b"x"), UploadContext())
