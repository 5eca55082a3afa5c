"""Blob store for message attachments and profile pictures.

Handles blob storage on disk and metadata tracking in DuckDB.
Blobs are stored in: {upload_dir}/{uuid}.{ext}
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import duckdb

from .schemas import BlobMetadata

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_MIME = ["image/png", "image/jpeg", "image/gif", "image/webp"]


class UnsupportedMediaType(ValueError):
    """The MIME type is not accepted by the blob store."""


class BlobTooLarge(ValueError):
    """The blob exceeds the configured size limit."""


class BlobStore(ABC):
    """External collaborator that turns bytes into a stable URL."""

    @abstractmethod
    def save(
        self,
        content: bytes,
        filename: str,
        mime_type: str,
        uploader_id: Optional[str] = None,
    ) -> BlobMetadata:
        """Store a blob and return its metadata (including its URL)."""

    @abstractmethod
    def get_path(self, stored_filename: str) -> Optional[Path]:
        """Path of a stored blob on disk, or None if unknown."""

    @abstractmethod
    def get_metadata(self, stored_filename: str) -> Optional[BlobMetadata]:
        """Metadata of a stored blob, or None if unknown."""


class LocalBlobStore(BlobStore):
    """Disk-backed blob store with DuckDB metadata."""

    _instance: Optional["LocalBlobStore"] = None
    _upload_dir: str = "uploads"
    _db_path: str = "blob_metadata.duckdb"

    def __init__(
        self,
        upload_dir: Optional[str] = None,
        db_path: Optional[str] = None,
        max_bytes: int = 10 * 1024 * 1024,
        allowed_mime: Optional[List[str]] = None,
    ) -> None:
        if upload_dir:
            self._upload_dir = upload_dir
        if db_path:
            self._db_path = db_path
        self.max_bytes = max_bytes
        self.allowed_mime = set(allowed_mime or DEFAULT_ALLOWED_MIME)

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._ensure_upload_dir()
        self._initialize_db()

    @classmethod
    def get_instance(cls, **kwargs) -> "LocalBlobStore":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(**kwargs)
        return cls._instance

    @classmethod
    def set_instance(cls, instance: Optional["LocalBlobStore"]) -> None:
        cls._instance = instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        if cls._instance and cls._instance._connection:
            cls._instance._connection.close()
        cls._instance = None

    def _ensure_upload_dir(self) -> None:
        Path(self._upload_dir).mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS blob_metadata (
                id VARCHAR PRIMARY KEY,
                stored_filename VARCHAR NOT NULL UNIQUE,
                original_filename VARCHAR NOT NULL,
                mime_type VARCHAR NOT NULL,
                size_bytes BIGINT NOT NULL,
                uploader_id VARCHAR,
                uploaded_at TIMESTAMP NOT NULL
            )
        """)

    def save(
        self,
        content: bytes,
        filename: str,
        mime_type: str,
        uploader_id: Optional[str] = None,
    ) -> BlobMetadata:
        """Save a blob to disk and record metadata.

        Raises:
            UnsupportedMediaType: If the MIME type is not allowed.
            BlobTooLarge: If the blob exceeds the size limit.
        """
        if mime_type not in self.allowed_mime:
            raise UnsupportedMediaType(f"Unsupported file type: {mime_type}")
        size_bytes = len(content)
        if size_bytes > self.max_bytes:
            raise BlobTooLarge(
                f"File size ({size_bytes} bytes) exceeds limit ({self.max_bytes} bytes)"
            )

        blob_id = str(uuid.uuid4())
        ext = Path(filename).suffix.lower() or ""
        stored_filename = f"{blob_id}{ext}"

        file_path = Path(self._upload_dir) / stored_filename
        file_path.write_bytes(content)
        logger.info(f"Saved blob: {file_path} ({size_bytes} bytes)")

        metadata = BlobMetadata(
            id=blob_id,
            stored_filename=stored_filename,
            original_filename=filename,
            mime_type=mime_type,
            size_bytes=size_bytes,
            uploader_id=uploader_id,
        )
        self._get_connection().execute(
            """
            INSERT INTO blob_metadata
            (id, stored_filename, original_filename, mime_type, size_bytes, uploader_id, uploaded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                metadata.id,
                metadata.stored_filename,
                metadata.original_filename,
                metadata.mime_type,
                metadata.size_bytes,
                metadata.uploader_id,
                datetime.fromtimestamp(metadata.uploaded_at),
            ]
        )
        return metadata

    def get_metadata(self, stored_filename: str) -> Optional[BlobMetadata]:
        result = self._get_connection().execute(
            """
            SELECT id, stored_filename, original_filename, mime_type, size_bytes,
                   uploader_id, uploaded_at
            FROM blob_metadata
            WHERE stored_filename = ?
            """,
            [stored_filename]
        ).fetchone()
        if not result:
            return None
        return BlobMetadata(
            id=result[0],
            stored_filename=result[1],
            original_filename=result[2],
            mime_type=result[3],
            size_bytes=result[4],
            uploader_id=result[5],
            uploaded_at=result[6].timestamp() if result[6] else 0,
        )

    def get_path(self, stored_filename: str) -> Optional[Path]:
        if self.get_metadata(stored_filename) is None:
            return None
        file_path = Path(self._upload_dir) / stored_filename
        if not file_path.exists():
            return None
        return file_path
