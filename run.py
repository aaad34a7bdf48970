#!/usr/bin/env python3
"""
Simple script to run the FastAPI application
"""
import uvicorn

from app.core.config import settings

if __name__ == "__main__":
    print(f"Starting {settings.app_name}...")
    print("")
    print("STORAGE:")
    print(f"  Local storage: {'ENABLED' if settings.is_local_storage_enabled else 'DISABLED'}")
    print(f"  Video host: {'ENABLED' if settings.is_video_host_enabled else 'DISABLED'}")
    print(f"  Document host: {'ENABLED' if settings.is_document_host_enabled else 'DISABLED'}")
    print("")
    print("ACCESS:")
    print("  API Documentation: http://localhost:8000/docs")
    print("")
    print("=" * 60)

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="info"
    )
