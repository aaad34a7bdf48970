"""
Shared fixtures: on-disk upload sources, a fresh job registry and a launcher for in-process fake upstream hosts.
"""

import uuid
from typing import List

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from app.models.media import OnDiskSource
from app.services.upload_jobs import UploadJobRegistry


@pytest.fixture
def registry():
    return UploadJobRegistry(ttl_seconds=60)


@pytest.fixture
def make_source(tmp_path):
    """Write bytes to a temp file and wrap them as an on-disk upload source"""

    def _make(data: bytes, name: str = "lecture.mp4", mime_type: str = "video/mp4") -> OnDiskSource:
        path = tmp_path / f"upload_{uuid.uuid4().hex}.bin"
        path.write_bytes(data)
        return OnDiskSource(path=path, original_name=name, mime_type=mime_type, size=len(data))

    return _make


@pytest.fixture
async def start_fake_host():
    """Start an aiohttp application on a local port; all servers close at teardown"""
    servers: List[TestServer] = []

    async def _start(app: web.Application) -> TestServer:
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return server

    yield _start

    for server in servers:
        await server.close()
