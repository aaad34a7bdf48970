from fastapi import APIRouter, Depends
from typing import Dict, Any

from app.core.config import settings
from app.services.auth_service import get_current_user
from app.services.storage_provider import describe_storage
from app.services.video_host_tokens import video_host_tokens

router = APIRouter(prefix="/storage", tags=["storage"])


@router.get("/config")
async def get_storage_config(current_user: Dict[str, Any] = Depends(get_current_user)):
    """Which backend each media category is routed to"""
    return {"success": True, "data": describe_storage()}


@router.get("/video-host/status")
async def get_video_host_status(current_user: Dict[str, Any] = Depends(get_current_user)):
    return {
        "success": True,
        "data": {
            "enabled": settings.is_video_host_enabled,
            "configured": video_host_tokens.is_configured,
            **video_host_tokens.status(),
        },
    }
