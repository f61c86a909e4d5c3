import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, BigInteger, Index
from sqlalchemy.orm import relationship
from filevault.core.database import Base


def _new_file_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FileRecord(Base):
    """
    Metadata for an uploaded file.

    The bytes themselves live in the blob store under storage_key; this row is
    the commit marker written only after the blob write succeeded.
    """
    __tablename__ = "files"
    __table_args__ = (
        # Listing is always "this owner's files, newest first"
        Index("ix_files_owner_uploaded", "owner_id", "uploaded_at"),
    )

    # Opaque id - random so ids reveal nothing about other users' uploads
    id = Column(String(32), primary_key=True, default=_new_file_id)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    # Server-generated key of the blob; also exposed as "filename"
    storage_key = Column(String, nullable=False, unique=True)
    # Client-supplied name, used for display only
    original_name = Column(String, nullable=False)
    content_type = Column(String, nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    uploaded_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    owner = relationship("User", backref="files")

    def __repr__(self):
        return f"<FileRecord(id={self.id}, owner={self.owner_id}, key='{self.storage_key}')>"
