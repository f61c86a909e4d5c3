"""
Background reconciliation between the metadata database and the blob store.

The two stores share no transaction, so they can drift:

- a record whose blob is gone (deleted out of band, or a delete that removed
  the blob but failed to remove the record) - logged as an inconsistency
- a blob with no record (upload whose metadata commit failed) - an orphan,
  optionally purged once it is older than the grace period
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from filevault.core.config import Settings
from filevault.core.exceptions import BlobNotFoundError, StoreError
from filevault.repositories.file_repository import file_repository
from filevault.storage.chunked_storage import ChunkedBlobStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    dangling_record_ids: list[str] = field(default_factory=list)
    orphan_keys: list[str] = field(default_factory=list)
    purged_keys: list[str] = field(default_factory=list)


def reconcile_storage_job(
    session_factory: sessionmaker,
    store: ChunkedBlobStore,
    settings: Settings,
    now: datetime | None = None,
) -> ReconcileReport:
    """
    Compare record keys with blob keys and report (or purge) the differences.

    Blobs younger than ORPHAN_GRACE_MINUTES are skipped: their upload may still
    be between the blob write and the metadata commit.
    """
    now = now or datetime.now(timezone.utc)
    grace_cutoff = now - timedelta(minutes=settings.ORPHAN_GRACE_MINUTES)
    report = ReconcileReport()

    db = session_factory()
    try:
        record_keys = file_repository.all_storage_keys(db)
    finally:
        db.close()

    blobs = store.list_blobs()
    blob_keys = {key for key, _ in blobs}

    for key, file_id in record_keys.items():
        if key not in blob_keys:
            report.dangling_record_ids.append(file_id)
            logger.error("Record %s points at missing blob %s. Inconsistency!", file_id, key)

    for key, upload_date in blobs:
        if key in record_keys or upload_date > grace_cutoff:
            continue
        report.orphan_keys.append(key)
        if not settings.RECONCILE_PURGE_ORPHANS:
            logger.warning("Orphaned blob with no metadata record: %s", key)
            continue
        try:
            store.delete_blob(key)
            report.purged_keys.append(key)
            logger.info("Purged orphaned blob: %s", key)
        except BlobNotFoundError:
            logger.info("Orphaned blob %s already removed", key)
        except StoreError:
            logger.error("Error purging orphaned blob %s", key)

    logger.info(
        "Reconcile finished: %d dangling records, %d orphaned blobs, %d purged",
        len(report.dangling_record_ids), len(report.orphan_keys), len(report.purged_keys),
    )
    return report


def create_scheduler(
    session_factory: sessionmaker,
    store: ChunkedBlobStore,
    settings: Settings,
) -> BackgroundScheduler:
    """Scheduler with the reconcile job registered; started by the app lifespan"""
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        reconcile_storage_job,
        trigger=IntervalTrigger(hours=settings.RECONCILE_INTERVAL_HOURS),
        args=[session_factory, store, settings],
        id="reconcile_storage",
        name="Reconcile metadata and blob storage",
        replace_existing=True
    )
    return scheduler


def start_scheduler(scheduler: BackgroundScheduler) -> None:
    if not scheduler.running:
        scheduler.start()
        logger.info("Background scheduler started. Reconcile job scheduled.")


def stop_scheduler(scheduler: BackgroundScheduler) -> None:
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Background scheduler stopped.")
