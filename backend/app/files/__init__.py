"""Attachment blob store for Roomcast.

Uploaded images are stored locally under UUID-based names and their
metadata is tracked in DuckDB. Messages only carry the returned URL.

Supported file types:
- Images: png, jpeg, gif, webp
"""

from .schemas import BlobMetadata, UploadResponse
from .service import BlobStore, BlobTooLarge, LocalBlobStore, UnsupportedMediaType
from .router import router

__all__ = [
    "BlobMetadata",
    "UploadResponse",
    "BlobStore",
    "BlobTooLarge",
    "LocalBlobStore",
    "UnsupportedMediaType",
    "router",
]
