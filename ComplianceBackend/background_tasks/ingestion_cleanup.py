from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from ComplianceBackend.celery import celery
from ComplianceBackend.crud import documents as documents_crud
from ComplianceBackend.database import SessionLocal
from ComplianceBackend.errors import BlobStorageError
from ComplianceBackend.services.blob_store import BlobStore, get_blob_store


logger = logging.getLogger(__name__)

DEFAULT_PENDING_TIMEOUT_MINUTES = 15


# updated_at is timestamptz on Postgres, so the cutoff must be aware; SQLite stores naive UTC text
def sweep_cutoff(db: Session, *, timeout_minutes: int, now: Optional[datetime] = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    cutoff = current.astimezone(timezone.utc) - timedelta(minutes=timeout_minutes)
    if db.get_bind().dialect.name == "sqlite":
        return cutoff.replace(tzinfo=None)
    return cutoff


# Deletes documents stuck in `pending` (crashed mid-ingest) and their blob objects
def sweep_stale_documents(
    db: Session,
    *,
    blob_store: Optional[BlobStore],
    timeout_minutes: int = DEFAULT_PENDING_TIMEOUT_MINUTES,
    now: Optional[datetime] = None,
    batch_size: int = 100,
) -> dict[str, int]:
    cutoff = sweep_cutoff(db, timeout_minutes=timeout_minutes, now=now)
    stale = documents_crud.find_stale_pending(db, older_than=cutoff, limit=batch_size)
    removed = 0
    blob_failures = 0
    for doc in stale:
        doc_id, storage_key = doc.id, doc.storage_key
        removed += documents_crud.delete_document_by_id(db, doc_id)
        db.commit()
        if storage_key and blob_store is not None:
            try:
                blob_store.delete(storage_key)
            except (BlobStorageError, OSError) as e:
                blob_failures += 1
                logger.warning("sweep.blob_failed: document_id=%s key=%s error=%s", doc_id, storage_key, e)
    if stale:
        logger.info("sweep.done: removed=%d blob_failures=%d cutoff=%s", removed, blob_failures, cutoff.isoformat())
    return {"removed": removed, "blobFailures": blob_failures}


@celery.task(name="sweep_stale_ingestions")
def sweep_stale_ingestions(timeout_minutes: int = DEFAULT_PENDING_TIMEOUT_MINUTES) -> dict[str, int]:
    with SessionLocal() as session:
        return sweep_stale_documents(session, blob_store=get_blob_store(), timeout_minutes=timeout_minutes)
