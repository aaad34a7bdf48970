from fastapi import Request
from fastapi.responses import JSONResponse
from loguru import logger

from app.core.exceptions import (
    AuthExpiredError,
    ClientCanceledError,
    QuotaExceededError,
    UploadError,
    UploadSessionCanceledError,
    UploadSessionExistsError,
    UploadValidationError,
)

CLIENT_CLOSED_REQUEST = 499


def upload_error_response(error: UploadError) -> JSONResponse:
    """Status code and public message for an upload failure; upstream details stay in the logs"""
    if isinstance(error, (ClientCanceledError, UploadSessionCanceledError)):
        status_code, message = CLIENT_CLOSED_REQUEST, "Upload canceled"
    elif isinstance(error, UploadValidationError):
        status_code, message = 400, str(error)
    elif isinstance(error, UploadSessionExistsError):
        status_code, message = 409, error.public_message
    elif isinstance(error, (QuotaExceededError, AuthExpiredError)):
        status_code, message = 500, error.public_message
    else:
        status_code, message = 500, "Upload failed"

    if status_code == 500:
        logger.error(f"Upload request failed [{error.code}]: {error}")
    return JSONResponse(status_code=status_code, content={"success": False, "detail": message, "code": error.code})


async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    return upload_error_response(exc)
