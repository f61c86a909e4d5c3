import logging
import math
import os
from typing import Any, Dict, List, Optional, Tuple

from fastapi import UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from filevault.core.config import Settings
from filevault.core.exceptions import (
    BlobNotFoundError,
    InconsistencyError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from filevault.models.file import FileRecord, utc_now
from filevault.repositories.file_repository import file_repository
from filevault.storage.chunked_storage import BlobReadStream, ChunkedBlobStore, generate_storage_key

logger = logging.getLogger(__name__)


def _payload_size(upload: UploadFile) -> int:
    """Byte length of the received payload"""
    if upload.size is not None:
        return upload.size
    # Spooled upload without a recorded size - measure it and rewind
    upload.file.seek(0, os.SEEK_END)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


class FileService:
    @staticmethod
    def validate_upload(upload: Optional[UploadFile], settings: Settings) -> int:
        """
        Check an upload before anything touches storage.

        Returns the payload size in bytes; raises ValidationError on a missing
        file, an oversize payload or a disallowed content type.
        """
        if upload is None or not upload.filename:
            raise ValidationError("Please upload a file")

        size = _payload_size(upload)
        if size > settings.MAX_FILE_SIZE:
            raise ValidationError(
                f"Upload error: File too large (limit is {settings.MAX_FILE_SIZE} bytes)"
            )

        content_type = (upload.content_type or "").lower()
        allowed = settings.get_allowed_content_types()
        if not any(content_type.startswith(prefix) for prefix in allowed):
            raise ValidationError(
                f"File type not supported. Allowed: {', '.join(allowed)}"
            )
        return size

    @staticmethod
    def upload_file(
        db: Session,
        store: ChunkedBlobStore,
        settings: Settings,
        owner_id: int,
        upload: Optional[UploadFile]
    ) -> FileRecord:
        """
        Validate, write the blob, then commit the metadata record.

        The record is the commit marker: it is only written after the blob
        store acknowledged the write. A metadata failure after that leaves an
        orphaned blob, which is logged and left for the reconciliation job.
        """
        FileService.validate_upload(upload, settings)

        storage_key = generate_storage_key(upload.filename)
        upload.file.seek(0)
        size = store.write_blob(storage_key, upload.content_type, upload.file)

        record = FileRecord(
            owner_id=owner_id,
            storage_key=storage_key,
            original_name=upload.filename,
            content_type=upload.content_type,
            size_bytes=size,
            uploaded_at=utc_now(),
        )
        try:
            file_repository.create(db, record)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "Metadata commit failed after blob write; orphaned blob: %s",
                storage_key,
                exc_info=True,
            )
            raise StoreError("Error saving file metadata") from exc

        logger.info(
            "Uploaded %s for user %s as %s (%d bytes, id=%s)",
            record.original_name, owner_id, storage_key, size, record.id,
        )
        return record

    @staticmethod
    def list_files(
        db: Session,
        owner_id: int,
        page: int,
        limit: int
    ) -> Tuple[List[FileRecord], Dict[str, Any]]:
        """One page of the owner's files plus pagination info"""
        records, total = file_repository.list_by_owner(db, owner_id, page, limit)
        pagination = {
            "totalFiles": total,
            "totalPages": math.ceil(total / limit),
            "currentPage": page,
            "limit": limit,
        }
        return records, pagination

    @staticmethod
    def _open_blob_for(store: ChunkedBlobStore, record: FileRecord) -> BlobReadStream:
        try:
            return store.open_blob(record.storage_key)
        except BlobNotFoundError as exc:
            logger.error(
                "File %s has a metadata record but no blob under %s. Inconsistency!",
                record.id, record.storage_key,
            )
            raise InconsistencyError(
                "File found in metadata but not in storage",
                storage_key=record.storage_key,
            ) from exc

    @staticmethod
    def open_file(
        db: Session,
        store: ChunkedBlobStore,
        owner_id: int,
        file_id: str
    ) -> Tuple[FileRecord, BlobReadStream]:
        """Resolve an owned record and open its blob for streaming"""
        record = file_repository.get_by_id(db, owner_id, file_id)
        if record is None:
            raise NotFoundError("File not found")
        return record, FileService._open_blob_for(store, record)

    @staticmethod
    def open_public_file(
        db: Session,
        store: ChunkedBlobStore,
        storage_key: str
    ) -> Tuple[FileRecord, BlobReadStream]:
        """Resolve a record by storage key regardless of owner"""
        record = file_repository.get_by_storage_key(db, storage_key)
        if record is None:
            raise NotFoundError("File not found")
        return record, FileService._open_blob_for(store, record)

    @staticmethod
    def delete_file(
        db: Session,
        store: ChunkedBlobStore,
        owner_id: int,
        file_id: str
    ) -> None:
        """
        Delete the blob, then the record.

        A missing blob is reported as an inconsistency and the record is kept.
        If the record delete fails after the blob is gone, the stale record
        shows up as an inconsistency on its next access.
        """
        record = file_repository.get_by_id(db, owner_id, file_id)
        if record is None:
            raise NotFoundError("File not found")

        try:
            store.delete_blob(record.storage_key)
        except BlobNotFoundError as exc:
            logger.error(
                "Delete of file %s found no blob under %s. Inconsistency!",
                record.id, record.storage_key,
            )
            raise InconsistencyError(
                "File found in metadata but not in storage",
                storage_key=record.storage_key,
            ) from exc

        try:
            file_repository.delete_by_id(db, owner_id, file_id)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "Blob %s deleted but record %s could not be removed",
                record.storage_key, record.id,
                exc_info=True,
            )
            raise StoreError("Error deleting file metadata") from exc

        logger.info("Deleted file %s (%s) for user %s", record.id, record.storage_key, owner_id)


file_service = FileService()
