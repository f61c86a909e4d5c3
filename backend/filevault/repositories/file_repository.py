from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from filevault.core.exceptions import NotFoundError, ValidationError
from filevault.models.file import FileRecord


class FileRepository:
    """
    Metadata records for uploaded files.

    Every read and delete takes the owner id and filters on it, so a record
    belonging to another user behaves exactly like a missing one.
    """

    @staticmethod
    def create(db: Session, record: FileRecord) -> str:
        """Persist a new record and return its id"""
        db.add(record)
        db.commit()
        db.refresh(record)
        return record.id

    @staticmethod
    def get_by_id(db: Session, owner_id: int, file_id: str) -> Optional[FileRecord]:
        return db.query(FileRecord).filter(
            FileRecord.id == file_id,
            FileRecord.owner_id == owner_id
        ).first()

    @staticmethod
    def get_by_storage_key(db: Session, storage_key: str) -> Optional[FileRecord]:
        """Unscoped lookup, used only by the opt-in public route"""
        return db.query(FileRecord).filter(FileRecord.storage_key == storage_key).first()

    @staticmethod
    def list_by_owner(
        db: Session,
        owner_id: int,
        page: int,
        limit: int
    ) -> Tuple[List[FileRecord], int]:
        """
        One page of an owner's records, newest first, plus the owner's total count.

        A page past the end is an empty list, not an error.
        """
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive integers")

        query = db.query(FileRecord).filter(FileRecord.owner_id == owner_id)
        total = db.query(func.count(FileRecord.id)).filter(
            FileRecord.owner_id == owner_id
        ).scalar()

        records = (
            query.order_by(FileRecord.uploaded_at.desc(), FileRecord.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return records, total

    @staticmethod
    def delete_by_id(db: Session, owner_id: int, file_id: str) -> None:
        deleted = db.query(FileRecord).filter(
            FileRecord.id == file_id,
            FileRecord.owner_id == owner_id
        ).delete(synchronize_session=False)
        if not deleted:
            db.rollback()
            raise NotFoundError("File not found")
        db.commit()

    @staticmethod
    def all_storage_keys(db: Session) -> dict[str, str]:
        """Map of storage key -> record id across all owners"""
        rows = db.query(FileRecord.storage_key, FileRecord.id).all()
        return {key: file_id for key, file_id in rows}


file_repository = FileRepository()
