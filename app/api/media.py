from fastapi import APIRouter, UploadFile, File, Form, HTTPException, Depends, Query
from fastapi.responses import FileResponse, StreamingResponse
from pathlib import Path
from pydantic import BaseModel
from loguru import logger
from typing import Dict, Any, Optional

import aiofiles

from app.core.config import settings
from app.core.exceptions import FileTooLargeError, UploadValidationError, UpstreamHttpError
from app.models.media import (
    LocalMediaReference,
    OnDiskSource,
    PrivacyStatus,
    StorageType,
    StoredMediaReference,
    UploadContext,
)
from app.services.auth_service import get_current_user
from app.services.document_relay_client import DocumentRelayClient
from app.services.local_storage import LocalStorageBackend
from app.services.resumable_upload_client import ResumableUploadClient
from app.services.storage_provider import get_provider_for_type
from app.services.transfer_orchestrator import TransferOrchestrator, get_transfer_orchestrator

router = APIRouter(prefix="/media", tags=["media"])

ALLOWED_VIDEO_MIME_TYPES = {
    "video/mp4",
    "video/webm",
    "video/x-matroska",
    "video/quicktime",
    "video/x-msvideo",
    "application/octet-stream",
}
LOCAL_CATEGORIES = ("videos", "files")
DOCUMENT_PROXY_FAILURE_MESSAGE = "Failed to retrieve file. Please try again."
SPOOL_CHUNK_SIZE = 1024 * 1024


class DeleteMediaRequest(BaseModel):
    reference: StoredMediaReference


def _local_backend() -> LocalStorageBackend:
    return get_provider_for_type(StorageType.LOCAL)


async def spool_upload(file: UploadFile, category: str) -> OnDiskSource:
    """Write the multipart file to disk in chunks, enforcing the size cap"""
    original_name = file.filename or "file"
    target = _local_backend().allocate_path(category, original_name)
    total_bytes = 0

    try:
        async with aiofiles.open(target, "wb") as out:
            while True:
                chunk = await file.read(SPOOL_CHUNK_SIZE)
                if not chunk:
                    break
                total_bytes += len(chunk)
                if total_bytes > settings.max_file_size:
                    raise FileTooLargeError(
                        f"File exceeds the maximum upload size of {settings.max_file_size // (1024 * 1024)}MB"
                    )
                await out.write(chunk)
    except Exception:
        target.unlink(missing_ok=True)
        raise

    logger.info(f"Received {original_name} ({total_bytes} bytes) into {target}")
    return OnDiskSource(
        path=target,
        original_name=original_name,
        mime_type=file.content_type or "application/octet-stream",
        size=total_bytes,
        stored_name=target.name,
    )


def _spool_category(storage_type: StorageType, category: str) -> str:
    # Hosted backends delete their input once the transfer ends
    return category if storage_type == StorageType.LOCAL else "tmp"


@router.post("/videos", status_code=201)
async def upload_lesson_video(
    file: Optional[UploadFile] = File(None),
    title: str = Form(...),
    description: Optional[str] = Form(None),
    video_url: Optional[str] = Form(None),
    upload_session_id: Optional[str] = Form(None),
    course_id: Optional[str] = Form(None),
    section_id: Optional[str] = Form(None),
    group_id: Optional[str] = Form(None),
    content_id: Optional[str] = Form(None),
    current_user: Dict[str, Any] = Depends(get_current_user),
    orchestrator: TransferOrchestrator = Depends(get_transfer_orchestrator),
):
    """Upload a lesson video to the configured video backend"""
    context = UploadContext(
        user_id=current_user["user_id"],
        title=title,
        description=description,
        privacy_status=PrivacyStatus.UNLISTED,
        course_id=course_id,
        section_id=section_id,
        group_id=group_id,
        content_id=content_id,
    )
    provider = orchestrator.video_provider()

    if file is None:
        if video_url and isinstance(provider.service, ResumableUploadClient):
            reference = provider.service.build_reference_from_url(video_url, context)
            return {"success": True, "message": "Video linked successfully",
                    "data": {"storage_type": provider.type.value, "reference": reference.model_dump(mode="json")}}
        raise HTTPException(status_code=400, detail="Video file is required")

    if file.content_type not in ALLOWED_VIDEO_MIME_TYPES:
        raise HTTPException(status_code=400, detail="Invalid video format. Allowed: MP4, WEBM, MKV, MOV, AVI")

    source = await spool_upload(file, _spool_category(provider.type, "videos"))
    reference = await orchestrator.upload_lesson_video(
        source,
        context,
        job_id=upload_session_id,
        uploader_role=current_user.get("role"),
        uploader_name=current_user.get("name"),
    )

    return {
        "success": True,
        "message": "Video uploaded successfully",
        "data": {
            "storage_type": reference.storage_type.value,
            "reference": reference.model_dump(mode="json"),
            "upload_session_id": upload_session_id,
        },
    }


@router.post("/files", status_code=201)
async def upload_lesson_file(
    file: UploadFile = File(...),
    upload_session_id: Optional[str] = Form(None),
    course_id: Optional[str] = Form(None),
    section_id: Optional[str] = Form(None),
    group_id: Optional[str] = Form(None),
    content_id: Optional[str] = Form(None),
    current_user: Dict[str, Any] = Depends(get_current_user),
    orchestrator: TransferOrchestrator = Depends(get_transfer_orchestrator),
):
    """Upload a lesson file (slides, handouts) to the configured file backend"""
    provider = orchestrator.file_provider()
    source = await spool_upload(file, _spool_category(provider.type, "files"))
    context = UploadContext(
        user_id=current_user["user_id"],
        title=file.filename,
        course_id=course_id,
        section_id=section_id,
        group_id=group_id,
        content_id=content_id,
    )
    reference = await orchestrator.upload_lesson_file(
        source,
        context,
        job_id=upload_session_id,
        uploader_role=current_user.get("role"),
        uploader_name=current_user.get("name"),
    )

    return {
        "success": True,
        "message": "File uploaded successfully",
        "data": {
            "storage_type": reference.storage_type.value,
            "reference": reference.model_dump(mode="json"),
            "upload_session_id": upload_session_id,
        },
    }


@router.get("/documents/{file_id}")
async def stream_document(
    file_id: str,
    filename: Optional[str] = Query(None),
    download: bool = Query(False),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    """Proxy a hosted document to the caller as it streams in"""
    service: DocumentRelayClient = get_provider_for_type(StorageType.HOSTED_DOCUMENT)
    try:
        relayed = await service.open_download(file_id, filename=filename, download=download)
    except UpstreamHttpError as e:
        logger.error(f"Document proxy for {file_id} failed: {e}")
        status_code = e.status if e.status and e.status >= 400 else 502
        raise HTTPException(status_code=status_code, detail=DOCUMENT_PROXY_FAILURE_MESSAGE)
    return StreamingResponse(relayed.iter_body(), status_code=relayed.status, headers=relayed.headers)


@router.get("/local/{category}/{stored_name}")
async def download_local_file(
    category: str,
    stored_name: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    if category not in LOCAL_CATEGORIES or "/" in stored_name or "\\" in stored_name or stored_name.startswith("."):
        raise HTTPException(status_code=404, detail="File not found")

    backend = _local_backend()
    original_name = stored_name.split("_", 1)[1] if "_" in stored_name else stored_name
    handle = await backend.get_lesson_file(LocalMediaReference(
        local_path=str(backend.upload_root / category / stored_name),
        stored_name=stored_name,
        original_name=original_name,
    ))
    if not handle.path.is_file():
        raise HTTPException(status_code=404, detail="File not found")

    return FileResponse(str(handle.path), filename=handle.filename)


@router.post("/delete")
async def delete_media(
    request: DeleteMediaRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    """Delete stored media; hosted backends may only mark or ignore the request"""
    reference = request.reference
    if isinstance(reference, LocalMediaReference):
        root = _local_backend().upload_root.resolve()
        target = Path(reference.local_path).resolve()
        if root not in target.parents:
            raise UploadValidationError("Local path is outside the upload directory")

    service = get_provider_for_type(reference.storage_type)
    await service.delete_lesson_file(reference)
    logger.info(f"Delete of {reference.storage_type.value} media requested by {current_user['user_id']}")
    return {"success": True, "message": "Media deleted"}
