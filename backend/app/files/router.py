"""FastAPI router for attachment upload endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse

from app.config import get_config

from .schemas import UploadResponse
from .service import BlobTooLarge, LocalBlobStore, UnsupportedMediaType

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])


def get_blob_store() -> LocalBlobStore:
    """Return the process-wide blob store, creating it from config."""
    files = get_config().files
    return LocalBlobStore.get_instance(
        upload_dir=files.upload_dir,
        db_path=f"{files.upload_dir}/blob_metadata.duckdb",
        max_bytes=files.max_upload_mb * 1024 * 1024,
        allowed_mime=files.allowed_mime,
    )


@router.post("/upload", response_model=UploadResponse)
async def upload_file(
    file: UploadFile = File(...),
    uploader_id: Optional[str] = Form(None),
) -> UploadResponse:
    """Upload an image and get back the URL to reference in a message body.

    Raises:
        HTTPException 400: No file or unsupported file type
        HTTPException 413: File exceeds the size limit
    """
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="No file uploaded")

    mime_type = file.content_type or "application/octet-stream"
    try:
        metadata = get_blob_store().save(
            content=content,
            filename=file.filename or "unnamed",
            mime_type=mime_type,
            uploader_id=uploader_id,
        )
    except UnsupportedMediaType as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BlobTooLarge as e:
        raise HTTPException(status_code=413, detail=str(e))

    logger.info(f"Blob uploaded: {metadata.original_filename} -> {metadata.url}")
    return UploadResponse(
        url=metadata.url,
        mime_type=metadata.mime_type,
        size_bytes=metadata.size_bytes,
    )


@router.get("/uploads/{stored_filename}")
async def download_file(stored_filename: str):
    """Serve a stored blob.

    Raises:
        HTTPException 404: If the blob is unknown or missing on disk
    """
    store = get_blob_store()
    metadata = store.get_metadata(stored_filename)
    file_path = store.get_path(stored_filename) if metadata else None
    if metadata is None or file_path is None:
        raise HTTPException(status_code=404, detail="File not found")

    return FileResponse(
        path=file_path,
        media_type=metadata.mime_type,
        headers={"Cache-Control": "no-store", "X-Content-Type-Options": "nosniff"},
    )
