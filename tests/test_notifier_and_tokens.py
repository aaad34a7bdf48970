"""
Operator alerts and video host token refresh against fake endpoints.
"""

import pytest
from aiohttp import web

from app.core.exceptions import AuthExpiredError
from app.services.upload_issue_notifier import UploadIssueNotifier
from app.services.video_host_tokens import ConnectionStatus, VideoHostTokenProvider


class TestUploadIssueNotifier:
    async def test_without_webhook_only_logs(self):
        notifier = UploadIssueNotifier(webhook_url="")

        assert await notifier.notify("quota", uploader_id="u1") is False

    async def test_posts_alert_to_webhook(self, start_fake_host):
        received = []

        async def hook(request):
            received.append(await request.json())
            return web.json_response({"ok": True})

        app = web.Application()
        app.router.add_post("/hook", hook)
        server = await start_fake_host(app)
        notifier = UploadIssueNotifier(webhook_url=str(server.make_url("/hook")))

        delivered = await notifier.notify("auth", uploader_id="u1", uploader_name="Ada",
                                          context={"operation": "lesson video upload"})

        assert delivered is True
        assert received[0]["issue_type"] == "auth"
        assert received[0]["uploader_name"] == "Ada"
        assert received[0]["subject"]

    async def test_webhook_failure_never_raises(self, start_fake_host):
        async def hook(request):
            return web.Response(status=500)

        app = web.Application()
        app.router.add_post("/hook", hook)
        server = await start_fake_host(app)

        assert await UploadIssueNotifier(webhook_url=str(server.make_url("/hook"))).notify("quota") is False

    async def test_unreachable_webhook_never_raises(self):
        notifier = UploadIssueNotifier(webhook_url="http://127.0.0.1:9/hook", timeout=1)

        assert await notifier.notify("quota") is False


class TestVideoHostTokenProvider:
    async def test_not_configured(self):
        provider = VideoHostTokenProvider()

        with pytest.raises(AuthExpiredError) as exc_info:
            await provider.ensure_valid_token()

        assert exc_info.value.code == "not_configured"
        assert provider.status()["status"] == ConnectionStatus.DISCONNECTED

    async def test_static_token_used_until_forced_refresh(self, start_fake_host):
        calls = []

        async def token(request):
            calls.append(dict(await request.post()))
            return web.json_response({"access_token": "new", "expires_in": 3600, "refresh_token": "rotated"})

        app = web.Application()
        app.router.add_post("/token", token)
        server = await start_fake_host(app)
        provider = VideoHostTokenProvider(client_id="c", client_secret="s", refresh_token="r",
                                          access_token="static", token_url=str(server.make_url("/token")))

        assert await provider.ensure_valid_token() == "static"
        assert await provider.ensure_valid_token(force_refresh=True) == "new"
        assert calls[0]["grant_type"] == "refresh_token"
        assert calls[0]["refresh_token"] == "r"
        assert provider.refresh_token == "rotated"
        assert provider.status()["connected"] is True

    async def test_refresh_failure_requires_reauth(self, start_fake_host):
        async def token(request):
            return web.json_response({"error": "invalid_grant"}, status=400)

        app = web.Application()
        app.router.add_post("/token", token)
        server = await start_fake_host(app)
        provider = VideoHostTokenProvider(refresh_token="r", token_url=str(server.make_url("/token")))

        with pytest.raises(AuthExpiredError) as exc_info:
            await provider.ensure_valid_token()

        assert exc_info.value.code == "refresh_failed"
        assert provider.status()["status"] == ConnectionStatus.REAUTH_REQUIRED
