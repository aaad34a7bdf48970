from typing import Any, Dict, Optional

import aiohttp
from loguru import logger

from app.core.config import settings

ISSUE_MESSAGES = {
    "quota": (
        "Hosted video upload quota exceeded",
        "A lesson video upload failed because the video host quota is exhausted. "
        "Uploads will work again once the quota resets.",
    ),
    "auth": (
        "Hosted video credentials need attention",
        "A lesson video upload failed because the video host credentials were rejected. "
        "Re-authorize the platform account.",
    ),
}


class UploadIssueNotifier:
    """Tells operators about upload failures a normal uploader cannot fix"""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 10.0):
        self.webhook_url = webhook_url if webhook_url is not None else settings.admin_alert_webhook_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def notify(self, issue_type: str, uploader_id: Optional[str] = None,
                     uploader_name: Optional[str] = None,
                     context: Optional[Dict[str, Any]] = None) -> bool:
        """Log a critical alert and post it to the webhook when one is configured.
        Returns True when the webhook accepted it; never raises."""
        subject, message = ISSUE_MESSAGES.get(
            issue_type, ("Upload issue", f"A lesson upload failed ({issue_type}).")
        )
        uploader = uploader_name or uploader_id or "unknown user"

        logger.bind(issue_type=issue_type, uploader_id=uploader_id).critical(
            f"{subject}: {message} Uploader: {uploader}. Context: {context or {}}"
        )

        if not self.webhook_url:
            return False

        payload = {
            "subject": subject,
            "message": message,
            "issue_type": issue_type,
            "uploader_id": uploader_id,
            "uploader_name": uploader_name,
            "context": context or {},
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.webhook_url, json=payload) as response:
                    if response.status >= 400:
                        logger.error(f"Operator alert webhook returned HTTP {response.status}")
                        return False
            return True
        except Exception as e:
            logger.error(f"Failed to deliver operator alert: {e}")
            return False


# Global notifier instance
upload_issue_notifier = UploadIssueNotifier()
