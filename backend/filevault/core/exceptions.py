"""Error taxonomy for filevault.

Every error raised by the storage pipelines derives from FileVaultError and
carries the HTTP status the boundary handler in main.py answers with.
"""


class FileVaultError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(FileVaultError):
    """Bad input: missing file, disallowed type, oversize payload, bad paging."""

    status_code = 400


class NotFoundError(FileVaultError):
    """Record absent or not owned by the caller."""

    status_code = 404


class StoreError(FileVaultError):
    """I/O or database failure in the blob store or metadata repository."""

    status_code = 500


class InconsistencyError(StoreError):
    """Metadata and blob storage have diverged.

    Raised when a file record exists but its blob does not, so operators can
    tell repository/store drift apart from an ordinary missing file.
    """

    def __init__(self, message: str, storage_key: str | None = None) -> None:
        self.storage_key = storage_key
        super().__init__(message)


class BlobNotFoundError(Exception):
    """No blob stored under the requested key.

    Raised by the blob store only. Callers decide whether a missing blob is
    fatal: the pipelines translate it into NotFoundError or InconsistencyError.
    """

    def __init__(self, storage_key: str) -> None:
        self.storage_key = storage_key
        super().__init__(f"No blob stored under key: {storage_key}")
