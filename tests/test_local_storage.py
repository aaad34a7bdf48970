import pytest

from app.core.exceptions import UploadValidationError
from app.models.media import InMemorySource, LocalMediaReference, UploadContext
from app.services.local_storage import LocalStorageBackend


@pytest.fixture
def backend(tmp_path):
    return LocalStorageBackend(str(tmp_path))


def test_allocate_path_is_unique_and_sanitized(backend, tmp_path):
    first = backend.allocate_path("videos", "My Lesson (final).mp4")
    second = backend.allocate_path("videos", "My Lesson (final).mp4")

    assert first != second
    assert first.parent == tmp_path / "videos"
    assert first.name.endswith("_My_Lesson_final.mp4")


async def test_upload_video_returns_local_reference(backend, make_source):
    source = make_source(b"video-bytes", name="intro.mp4")

    reference = await backend.upload_lesson_video(source, UploadContext(user_id="u1"))

    assert reference.storage_type.value == "local"
    assert reference.local_path == str(source.path)
    assert reference.url == f"/api/media/local/videos/{source.path.name}"
    assert reference.size == len(b"video-bytes")
    assert reference.uploaded_by == "u1"
    assert source.path.exists()


async def test_in_memory_source_rejected(backend):
    with pytest.raises(UploadValidationError):
        await backend.upload_lesson_file(InMemorySource(data=b"x", original_name="a.pdf"))


async def test_get_lesson_file_filename_fallbacks(backend, tmp_path):
    path = tmp_path / "files" / "abc_notes.pdf"

    named = await backend.get_lesson_file(LocalMediaReference(local_path=str(path), original_name="notes.pdf"))
    stored = await backend.get_lesson_file(LocalMediaReference(local_path=str(path), stored_name="abc_notes.pdf"))
    bare = await backend.get_lesson_file(LocalMediaReference(local_path=str(path)))

    assert named.filename == "notes.pdf"
    assert stored.filename == "abc_notes.pdf"
    assert bare.filename == "download"
    assert named.path == path


async def test_get_lesson_file_requires_path(backend):
    with pytest.raises(UploadValidationError):
        await backend.get_lesson_file(None)


async def test_delete_is_best_effort(backend, make_source, tmp_path):
    source = make_source(b"x")
    reference = await backend.upload_lesson_file(source)

    await backend.delete_lesson_file(reference)
    await backend.delete_lesson_file(reference)

    assert not source.path.exists()
