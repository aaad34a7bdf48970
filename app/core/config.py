from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    app_name: str = "Media Upload Service"
    debug: bool = True

    # File upload settings
    max_file_size: int = 2 * 1024 * 1024 * 1024  # 2GB hard cap for multipart bodies
    upload_path: str = "uploads"
    audit_path: str = "uploads/.audit"

    # Storage routing. Local storage wins over every hosted backend when enabled.
    use_local_storage: bool = False
    use_video_host: bool = False
    use_document_host: bool = False

    # Video host (resumable upload API)
    video_host_upload_url: str = "https://www.googleapis.com/upload/youtube/v3/videos?uploadType=resumable&part=snippet,status"
    video_host_watch_url: str = "https://www.youtube.com/watch?v="
    video_host_token_url: str = "https://oauth2.googleapis.com/token"
    video_host_client_id: Optional[str] = None
    video_host_client_secret: Optional[str] = None
    video_host_refresh_token: Optional[str] = None
    video_host_access_token: Optional[str] = None
    video_host_chunk_size: int = 1 * 1024 * 1024  # 1MB chunks
    video_host_session_timeout: float = 120.0
    video_host_chunk_timeout: float = 180.0

    # Document host (bot API)
    document_host_api_url: str = "https://api.telegram.org"
    document_host_bot_token: Optional[str] = None
    document_host_channel_id: Optional[str] = None
    document_host_max_upload_mb: int = 50
    document_host_upload_timeout: float = 600.0
    document_host_download_timeout: float = 300.0

    # Retry policy shared by both hosted backends
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.75
    retry_backoff_factor: float = 2.0
    retry_max_jitter: float = 0.25

    # Upload job registry
    upload_job_ttl_seconds: int = 30 * 60
    upload_job_sweep_interval: int = 60

    # Authentication settings
    jwt_secret_key: str = "your-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"

    # Operator alerts
    admin_alert_webhook_url: Optional[str] = None

    @property
    def is_local_storage_enabled(self) -> bool:
        return self.use_local_storage

    @property
    def is_video_host_enabled(self) -> bool:
        return not self.use_local_storage and self.use_video_host

    @property
    def is_document_host_enabled(self) -> bool:
        return not self.use_local_storage and self.use_document_host

    @property
    def default_video_storage_type(self) -> str:
        """Storage tag used for lesson videos"""
        if self.is_local_storage_enabled:
            return "local"
        if self.is_video_host_enabled:
            return "hosted-video"
        return "local"

    @property
    def default_file_storage_type(self) -> str:
        """Storage tag used for lesson files; the document host is the non-local default"""
        if self.is_local_storage_enabled:
            return "local"
        return "hosted-document"

    @property
    def document_host_max_upload_bytes(self) -> int:
        mb = self.document_host_max_upload_mb if self.document_host_max_upload_mb > 0 else 50
        return mb * 1024 * 1024

    class Config:
        env_file = ".env"


settings = Settings()
