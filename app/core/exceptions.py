"""
Error taxonomy for storage backends and the upload job registry.

Backends raise these typed errors; the job registry only keeps a short
human-readable message and the API layer maps each family to a status code.
"""

from typing import Any, Dict, List, Optional


class UploadError(Exception):
    """Base class for every upload failure"""

    code = "UPLOAD_FAILED"
    public_message = "Upload failed. Please try again."

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.public_message)
        if code:
            self.code = code
        self.details = details or {}


class ClientCanceledError(UploadError):
    """The caller aborted the transfer. Never retried."""

    code = "UPLOAD_CANCELED"
    public_message = "Upload canceled"


class TransientUploadError(UploadError):
    """Timeouts, connection resets and other failures worth another attempt"""

    code = "UPSTREAM_TRANSIENT"


class UpstreamProtocolError(TransientUploadError):
    """Upstream answered with an empty, undecodable or malformed body"""

    code = "UPSTREAM_PROTOCOL"


class UpstreamIncompleteError(UploadError):
    """Upstream holds every byte but never finished the upload. Resending cannot help."""

    code = "UPSTREAM_INCOMPLETE"


class UpstreamHttpError(UploadError):
    """Upstream rejected the request with an HTTP or API-level error"""

    code = "UPSTREAM_HTTP"

    def __init__(self, status: Optional[int], message: Optional[str] = None, *,
                 reasons: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or f"Upstream returned HTTP {status}", details=details)
        self.status = status
        self.reasons = reasons or []


class QuotaExceededError(UploadError):
    """The hosted video quota is exhausted; terminal until the quota resets"""

    code = "QUOTA_EXCEEDED"
    public_message = "Upload failed, please try again in a few hours"


class AuthExpiredError(UploadError):
    """Platform credentials for a hosted backend are missing or no longer accepted"""

    code = "AUTH_EXPIRED"
    public_message = "Upload failed, please contact admin"


class UploadValidationError(UploadError):
    """Input rejected before any network call"""

    code = "VALIDATION_FAILED"
    public_message = "Invalid upload"


class FileTooLargeError(UploadValidationError):
    code = "FILE_TOO_LARGE"
    public_message = "File is too large"


class StorageMisconfiguredError(UploadError):
    code = "STORAGE_MISCONFIGURED"


class UnsupportedOperationError(UploadError):
    code = "UNSUPPORTED_OPERATION"


class UploadSessionExistsError(UploadError):
    code = "UPLOAD_SESSION_EXISTS"
    public_message = "Upload session already exists"


class UploadSessionCanceledError(UploadError):
    code = "UPLOAD_SESSION_CANCELED"
    public_message = "Upload session was canceled"
