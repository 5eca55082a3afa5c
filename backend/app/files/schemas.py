"""Pydantic schemas for attachment uploads.

This module defines the data models for the attachment blob store:
- BlobMetadata: Complete blob information stored in DuckDB
- UploadResponse: API response after a successful upload

Blobs are stored under UUID-based filenames (keeping the original
extension). The message core only ever stores the returned URL.
"""
import time
import uuid
from typing import Optional

from pydantic import BaseModel, Field

# Public URL prefix for stored blobs
UPLOAD_URL_PREFIX = "/uploads"


class BlobMetadata(BaseModel):
    """Metadata for a stored blob."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique blob ID")
    stored_filename: str = Field(..., description="Filename on disk (UUID-based)")
    original_filename: str = Field(..., description="Original filename")
    mime_type: str = Field(..., description="MIME type of the blob")
    size_bytes: int = Field(..., description="Blob size in bytes")
    uploader_id: Optional[str] = Field(None, description="Identity id of the uploader")
    uploaded_at: float = Field(default_factory=time.time, description="Upload timestamp")

    @property
    def url(self) -> str:
        return f"{UPLOAD_URL_PREFIX}/{self.stored_filename}"


class UploadResponse(BaseModel):
    """Response after successful upload: the stable URL to reference."""
    url: str = Field(..., description="URL to reference in message bodies")
    mime_type: str = Field(..., description="MIME type")
    size_bytes: int = Field(..., description="Blob size in bytes")
