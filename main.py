from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
import sys

from app.core.config import settings
from app.core.exceptions import UploadError
from app.api.error_handlers import upload_error_handler
from app.api.upload_jobs import router as upload_jobs_router
from app.api.media import router as media_router
from app.api.storage import router as storage_router
from app.services.storage_provider import describe_storage
from app.services.upload_jobs import upload_job_registry

# Configure logging
logger.remove()
logger.add(sys.stdout, level="INFO" if not settings.debug else "DEBUG")


@asynccontextmanager
async def lifespan(app: FastAPI):
    upload_job_registry.start_sweeper(settings.upload_job_sweep_interval)
    logger.info(f"Storage routing: {describe_storage()}")
    yield
    await upload_job_registry.stop_sweeper()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Lesson media uploads to local disk, a hosted video service, or a document host",
    version="1.0.0",
    debug=settings.debug,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(UploadError, upload_error_handler)

# Include routers
app.include_router(upload_jobs_router, prefix="/api")
app.include_router(media_router, prefix="/api")
app.include_router(storage_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": "1.0.0",
        "endpoints": {
            "upload_video": "/api/media/videos",
            "upload_file": "/api/media/files",
            "upload_status": "/api/upload-jobs/{job_id}",
            "cancel_upload": "/api/upload-jobs/{job_id}/cancel",
            "document": "/api/media/documents/{file_id}",
            "storage": "/api/storage/config",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "app": settings.app_name}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
