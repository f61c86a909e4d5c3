from datetime import datetime
from typing import List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, UploadFile, File as FastAPIFile, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_serializer
from sqlalchemy.orm import Session

from filevault.api.dependencies import get_blob_store, get_current_user, get_settings
from filevault.core.config import Settings
from filevault.core.database import get_db
from filevault.models.file import FileRecord
from filevault.models.user import User
from filevault.services.file_service import file_service
from filevault.storage.chunked_storage import BlobReadStream, ChunkedBlobStore

router = APIRouter(prefix="/files", tags=["files"])

# Mounted by create_app() only when PUBLIC_FILE_ACCESS is enabled
public_router = APIRouter(prefix="/files/public", tags=["files"])

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10


class FileOut(BaseModel):
    id: str
    filename: str
    original_name: str = Field(serialization_alias="originalname")
    content_type: str = Field(serialization_alias="contentType")
    size: int
    upload_date: datetime = Field(serialization_alias="uploadDate")

    model_config = ConfigDict(populate_by_name=True)

    @field_serializer("upload_date")
    def serialize_upload_date(self, value: datetime, _info):
        return value.isoformat() if value else None

    @classmethod
    def from_record(cls, record: FileRecord) -> "FileOut":
        return cls(
            id=record.id,
            filename=record.storage_key,
            original_name=record.original_name,
            content_type=record.content_type,
            size=record.size_bytes,
            upload_date=record.uploaded_at,
        )


class PaginationOut(BaseModel):
    totalFiles: int
    totalPages: int
    currentPage: int
    limit: int


class FileListOut(BaseModel):
    files: List[FileOut]
    pagination: PaginationOut


class MessageOut(BaseModel):
    message: str


def _positive_int(raw: Optional[str], default: int) -> int:
    """Parse a paging query param, falling back to the default on junk or < 1"""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= 1 else default


def _content_disposition(original_name: str) -> str:
    """inline disposition with the display name; quotes and control chars removed"""
    cleaned = "".join(ch for ch in original_name if ch >= " " and ch not in '"\\\x7f')
    ascii_name = cleaned.encode("ascii", "ignore").decode("ascii") or "file"
    disposition = f'inline; filename="{ascii_name}"'
    if ascii_name != cleaned:
        disposition += f"; filename*=UTF-8''{quote(cleaned)}"
    return disposition


def _stream_response(record: FileRecord, stream: BlobReadStream) -> StreamingResponse:
    # Once the first chunk is sent a mid-stream error can only abort the response
    return StreamingResponse(
        iter(stream),
        media_type=record.content_type,
        headers={
            "Content-Disposition": _content_disposition(record.original_name),
            "Content-Length": str(stream.length),
        },
    )


@router.post("/upload", response_model=FileOut, status_code=201)
def upload_file(
    file: Optional[UploadFile] = FastAPIFile(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: ChunkedBlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings)
):
    """Upload a single file (multipart field "file")"""
    record = file_service.upload_file(db, store, settings, current_user.id, file)
    return FileOut.from_record(record)


@router.get("", response_model=FileListOut)
def list_files(
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List the current user's files, newest first"""
    page_number = _positive_int(page, DEFAULT_PAGE)
    page_size = _positive_int(limit, DEFAULT_LIMIT)
    records, pagination = file_service.list_files(db, current_user.id, page_number, page_size)
    return {
        "files": [FileOut.from_record(record) for record in records],
        "pagination": pagination,
    }


@router.get("/{file_id}")
def get_file(
    file_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: ChunkedBlobStore = Depends(get_blob_store)
):
    """Stream a file's content"""
    record, stream = file_service.open_file(db, store, current_user.id, file_id)
    return _stream_response(record, stream)


@router.delete("/{file_id}", response_model=MessageOut)
def delete_file(
    file_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: ChunkedBlobStore = Depends(get_blob_store)
):
    """Delete a file's blob and its metadata record"""
    file_service.delete_file(db, store, current_user.id, file_id)
    return {"message": "File deleted successfully"}


@public_router.get("/{filename}")
def get_public_file(
    filename: str,
    db: Session = Depends(get_db),
    store: ChunkedBlobStore = Depends(get_blob_store)
):
    """Stream a file by its storage key without authentication"""
    record, stream = file_service.open_public_file(db, store, filename)
    return _stream_response(record, stream)
