from fastapi import APIRouter, Depends, HTTPException
from loguru import logger
from typing import Dict, Any

from app.models.upload_job import UploadJob
from app.services.auth_service import get_current_user, is_admin
from app.services.upload_jobs import UploadJobRegistry, get_upload_job_registry

router = APIRouter(prefix="/upload-jobs", tags=["upload-jobs"])


def _ensure_job_access(job: UploadJob, current_user: Dict[str, Any]):
    if str(job.owner_id) != str(current_user["user_id"]) and not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Not authorized")


@router.get("/{job_id}")
async def get_upload_job(
    job_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    registry: UploadJobRegistry = Depends(get_upload_job_registry),
):
    """Poll progress for a hosted upload"""
    job = registry.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Upload not found")

    _ensure_job_access(job, current_user)
    return {"success": True, "data": job.to_public()}


@router.post("/{job_id}/cancel")
async def cancel_upload_job(
    job_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    registry: UploadJobRegistry = Depends(get_upload_job_registry),
):
    """
    Cancel a hosted upload.

    A cancel can arrive before the upload request has registered its job; in that
    case a placeholder is created and canceled so the upload stops before any I/O.
    """
    job = registry.get(job_id)
    if job is None:
        job = registry.create(job_id, owner_id=current_user["user_id"])
        logger.info(f"Cancel arrived before upload job {job_id} was registered; placeholder created")

    _ensure_job_access(job, current_user)
    canceled = await registry.cancel(job_id)
    return {"success": True, "data": canceled.to_public()}
