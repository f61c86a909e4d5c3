"""
Chunked blob store.

File content is split into fixed-size chunks and kept in two tables on a
dedicated database, mirroring the GridFS layout:

- ``<bucket>_files``: one row per blob (key, content type, length, chunk size)
- ``<bucket>_chunks``: ``(blob_id, n) -> data``, every chunk ``chunk_size``
  bytes except the last one

The store is a plain object with an explicit ``init()`` / ``close()``
lifecycle. create_app() builds one per process and hands it to request
handlers through a dependency.
"""

import logging
import math
import secrets
import time
from datetime import datetime, timezone
from typing import BinaryIO, Iterable, Iterator, Union

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError

from filevault.core.database import create_db_engine
from filevault.core.exceptions import BlobNotFoundError, StoreError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 255 * 1024

BlobSource = Union[BinaryIO, Iterable[bytes]]


def generate_storage_key(original_name: str) -> str:
    """
    Build a collision-resistant storage key for a new blob.

    ``<epoch millis>-<16 hex chars>[.<ext>]``. Only the text after the last
    dot of the client-supplied name survives, kept as given.
    """
    timestamp = time.time_ns() // 1_000_000
    random_part = secrets.token_hex(8)
    key = f"{timestamp}-{random_part}"

    extension = original_name.rsplit(".", 1)[1] if original_name and "." in original_name else ""
    if extension:
        key = f"{key}.{extension}"
    return key


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back out
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BlobReadStream:
    """Lazy reader over one blob's chunks, fetched one query per chunk."""

    def __init__(self, store: "ChunkedBlobStore", row) -> None:
        self._store = store
        self.blob_id = row.id
        self.key = row.key
        self.content_type = row.content_type
        self.length = row.length
        self.chunk_size = row.chunk_size
        self.upload_date = _as_utc(row.upload_date)

    @property
    def chunk_count(self) -> int:
        return math.ceil(self.length / self.chunk_size) if self.length else 0

    def __iter__(self) -> Iterator[bytes]:
        chunks = self._store.chunks
        for n in range(self.chunk_count):
            try:
                with self._store.engine.connect() as conn:
                    data = conn.execute(
                        select(chunks.c.data).where(
                            chunks.c.blob_id == self.blob_id,
                            chunks.c.n == n,
                        )
                    ).scalar()
            except SQLAlchemyError as exc:
                logger.exception("Failed reading chunk %d of blob %s", n, self.key)
                raise StoreError(f"Error reading blob {self.key}") from exc

            if data is None:
                # Blob deleted or truncated while streaming
                logger.error("Blob %s is missing chunk %d of %d", self.key, n, self.chunk_count)
                raise StoreError(f"Blob {self.key} is missing chunk {n}")
            yield bytes(data)

    def read(self) -> bytes:
        """Read the whole blob into memory"""
        return b"".join(self)


class ChunkedBlobStore:
    def __init__(self, url: str, bucket_name: str = "uploads", chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.url = url
        self.bucket_name = bucket_name
        self.chunk_size = chunk_size
        self.engine = create_db_engine(url)

        self.metadata = MetaData()
        self.files = Table(
            f"{bucket_name}_files",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("key", String, nullable=False, unique=True),
            Column("content_type", String, nullable=True),
            Column("length", BigInteger, nullable=False, default=0),
            Column("chunk_size", Integer, nullable=False),
            Column("upload_date", DateTime(timezone=True), nullable=False),
        )
        self.chunks = Table(
            f"{bucket_name}_chunks",
            self.metadata,
            Column("blob_id", Integer, ForeignKey(f"{bucket_name}_files.id"), primary_key=True),
            Column("n", Integer, primary_key=True),
            Column("data", LargeBinary, nullable=False),
        )

    def init(self) -> None:
        """Create the bucket tables if they don't exist"""
        self.metadata.create_all(self.engine)
        logger.info("Blob store ready (bucket=%s, chunk_size=%d)", self.bucket_name, self.chunk_size)

    def close(self) -> None:
        """Release pooled connections"""
        self.engine.dispose()
        logger.info("Blob store closed (bucket=%s)", self.bucket_name)

    def _iter_chunks(self, source: BlobSource) -> Iterator[bytes]:
        """Re-slice the source into full-size chunks; only the last may be short"""
        if hasattr(source, "read"):
            pieces = iter(lambda: source.read(self.chunk_size), b"")
        else:
            pieces = iter(source)

        buffer = bytearray()
        for piece in pieces:
            buffer.extend(piece)
            while len(buffer) >= self.chunk_size:
                yield bytes(buffer[:self.chunk_size])
                del buffer[:self.chunk_size]
        if buffer:
            yield bytes(buffer)

    def write_blob(self, storage_key: str, content_type: str | None, source: BlobSource) -> int:
        """
        Stream ``source`` into the store under ``storage_key``.

        Chunks and the blob row are written in one transaction, so the blob
        either exists completely or not at all. Returns the byte count once the
        transaction has committed.

        Raises:
            StoreError: reading the source or writing to the database failed.
        """
        logger.info("Writing blob: %s (%s)", storage_key, content_type)
        written = 0
        try:
            with self.engine.begin() as conn:
                blob_id = conn.execute(
                    insert(self.files).values(
                        key=storage_key,
                        content_type=content_type,
                        length=0,
                        chunk_size=self.chunk_size,
                        upload_date=datetime.now(timezone.utc),
                    )
                ).inserted_primary_key[0]

                for n, chunk in enumerate(self._iter_chunks(source)):
                    conn.execute(insert(self.chunks).values(blob_id=blob_id, n=n, data=chunk))
                    written += len(chunk)

                conn.execute(
                    update(self.files)
                    .where(self.files.c.id == blob_id)
                    .values(length=written, upload_date=datetime.now(timezone.utc))
                )
        except Exception as exc:
            # engine.begin() rolled the transaction back; nothing was committed
            logger.exception("Failed to write blob %s after %d bytes", storage_key, written)
            raise StoreError(f"Error writing blob {storage_key}") from exc

        logger.info("Blob written: %s (%d bytes)", storage_key, written)
        return written

    def open_blob(self, storage_key: str) -> BlobReadStream:
        """
        Open a lazy read stream.

        Raises:
            BlobNotFoundError: no blob under ``storage_key``.
            StoreError: the lookup itself failed.
        """
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.files).where(self.files.c.key == storage_key)
                ).first()
        except SQLAlchemyError as exc:
            logger.exception("Failed to open blob %s", storage_key)
            raise StoreError(f"Error opening blob {storage_key}") from exc

        if row is None:
            raise BlobNotFoundError(storage_key)
        return BlobReadStream(self, row)

    def delete_blob(self, storage_key: str) -> None:
        """
        Remove a blob and all of its chunks.

        Raises:
            BlobNotFoundError: no blob under ``storage_key``.
            StoreError: the delete failed.
        """
        logger.info("Deleting blob: %s", storage_key)
        try:
            with self.engine.begin() as conn:
                blob_id = conn.execute(
                    select(self.files.c.id).where(self.files.c.key == storage_key)
                ).scalar()
                if blob_id is None:
                    raise BlobNotFoundError(storage_key)
                conn.execute(delete(self.chunks).where(self.chunks.c.blob_id == blob_id))
                conn.execute(delete(self.files).where(self.files.c.id == blob_id))
        except SQLAlchemyError as exc:
            logger.exception("Failed to delete blob %s", storage_key)
            raise StoreError(f"Error deleting blob {storage_key}") from exc
        logger.info("Blob deleted: %s", storage_key)

    def blob_exists(self, storage_key: str) -> bool:
        try:
            with self.engine.connect() as conn:
                count = conn.execute(
                    select(func.count()).select_from(self.files).where(self.files.c.key == storage_key)
                ).scalar()
        except SQLAlchemyError as exc:
            raise StoreError(f"Error looking up blob {storage_key}") from exc
        return bool(count)

    def list_blobs(self) -> list[tuple[str, datetime]]:
        """All ``(key, upload_date)`` pairs in the bucket"""
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.files.c.key, self.files.c.upload_date)).all()
        except SQLAlchemyError as exc:
            logger.exception("Failed to list blobs in bucket %s", self.bucket_name)
            raise StoreError(f"Error listing bucket {self.bucket_name}") from exc
        return [(row.key, _as_utc(row.upload_date)) for row in rows]
