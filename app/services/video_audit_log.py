import json
import os
from datetime import datetime
from typing import Any, Dict, Optional

import aiofiles
import aiofiles.os
from loguru import logger

from app.core.config import settings


class HostedVideoAuditLog:
    """One JSON record per hosted video id, linking it to the upload context"""

    def __init__(self, audit_dir: Optional[str] = None):
        self.audit_dir = audit_dir or settings.audit_path

    def _record_path(self, video_id: str) -> str:
        safe_id = "".join(c for c in video_id if c.isalnum() or c in "-_")
        return os.path.join(self.audit_dir, f"{safe_id}.json")

    async def get(self, video_id: str) -> Optional[Dict[str, Any]]:
        path = self._record_path(video_id)
        if not os.path.exists(path):
            return None
        async with aiofiles.open(path, "r") as f:
            return json.loads(await f.read())

    async def record(self, video_id: str, video_url: str, metadata: Dict[str, Any]) -> bool:
        """Persist the audit record unless one already exists; returns True when written"""
        await aiofiles.os.makedirs(self.audit_dir, exist_ok=True)
        path = self._record_path(video_id)
        if os.path.exists(path):
            return False

        now = datetime.now().isoformat()
        document = {
            "video_id": video_id,
            "video_url": video_url,
            "status": "active",
            "status_changed_at": now,
            "uploaded_at": now,
            **metadata,
        }
        async with aiofiles.open(path, "w") as f:
            await f.write(json.dumps(document, indent=2, default=str))
        logger.debug(f"Audit record written for hosted video {video_id}")
        return True

    async def mark_orphaned(self, video_id: str) -> bool:
        document = await self.get(video_id)
        if document is None:
            return False
        document["status"] = "orphaned"
        document["status_changed_at"] = datetime.now().isoformat()
        async with aiofiles.open(self._record_path(video_id), "w") as f:
            await f.write(json.dumps(document, indent=2, default=str))
        return True
