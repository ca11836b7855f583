"""
Tests for ComplianceBackend/background_tasks/ingestion_cleanup.py
Stale `pending` documents are removed; ready and fresh ones are kept.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from sqlalchemy import select, update

from ComplianceBackend.background_tasks.ingestion_cleanup import sweep_cutoff, sweep_stale_documents
from ComplianceBackend.crud import documents as documents_crud
from ComplianceBackend.models.document_models import RagDocument
from ComplianceBackend.services.document_ingest_service import DocumentIngestService

NOW = datetime(2026, 10, 19, 12, 0, 0)


def _pending(db, key, updated_at, storage_key=None):
    doc_id = documents_crud.upsert_document(
        db,
        {
            "document_key": key,
            "user_id": "u1",
            "filename": f"{key}.txt",
            "metadata": {},
            "storage_provider": "fake" if storage_key else None,
            "storage_key": storage_key,
        },
    )
    db.execute(update(RagDocument).where(RagDocument.id == doc_id).values(updated_at=updated_at))
    db.commit()
    return doc_id


def _keys(db):
    db.expire_all()
    return sorted(db.execute(select(RagDocument.document_key)).scalars().all())


class TestSweep:
    def test_removes_only_stale_pending(self, db, blob_store):
        _pending(db, "old", NOW - timedelta(minutes=30), storage_key="rag-documents/u1/old/old.txt")
        _pending(db, "fresh", NOW - timedelta(minutes=5))
        ready = DocumentIngestService(db).ingest(user_id="u1", document={"filename": "r.txt", "text": "x", "documentId": "ready"})
        db.execute(update(RagDocument).where(RagDocument.id == ready.document["id"]).values(updated_at=NOW - timedelta(days=1)))
        db.commit()

        result = sweep_stale_documents(db, blob_store=blob_store, timeout_minutes=15, now=NOW)

        assert result == {"removed": 1, "blobFailures": 0}
        assert _keys(db) == ["fresh", "ready"]
        assert blob_store.deleted == ["rag-documents/u1/old/old.txt"]

    def test_blob_failures_are_counted(self, db, blob_store_factory):
        _pending(db, "old", NOW - timedelta(hours=1), storage_key="k")
        result = sweep_stale_documents(db, blob_store=blob_store_factory(fail_delete=True), now=NOW)
        assert result == {"removed": 1, "blobFailures": 1}
        assert _keys(db) == []

    def test_nothing_to_do(self, db):
        assert sweep_stale_documents(db, blob_store=None, now=NOW) == {"removed": 0, "blobFailures": 0}


def _bound_to(dialect_name):
    return SimpleNamespace(get_bind=lambda: SimpleNamespace(dialect=SimpleNamespace(name=dialect_name)))


class TestSweepCutoff:
    def test_postgres_cutoff_is_aware_utc(self):
        cutoff = sweep_cutoff(_bound_to("postgresql"), timeout_minutes=15, now=NOW)
        assert cutoff == datetime(2026, 10, 19, 11, 45, tzinfo=timezone.utc)

    def test_aware_now_is_converted_to_utc(self):
        new_york = timezone(timedelta(hours=-4))
        cutoff = sweep_cutoff(_bound_to("postgresql"), timeout_minutes=15, now=datetime(2026, 10, 19, 8, 0, tzinfo=new_york))
        assert cutoff == datetime(2026, 10, 19, 11, 45, tzinfo=timezone.utc)

    def test_sqlite_cutoff_is_naive_utc(self, db):
        cutoff = sweep_cutoff(db, timeout_minutes=15, now=datetime(2026, 10, 19, 14, 0, tzinfo=timezone(timedelta(hours=2))))
        assert cutoff == datetime(2026, 10, 19, 11, 45)
        assert cutoff.tzinfo is None

    def test_defaults_to_current_time(self):
        cutoff = sweep_cutoff(_bound_to("postgresql"), timeout_minutes=0)
        assert cutoff.tzinfo is not None
        assert abs((datetime.now(timezone.utc) - cutoff).total_seconds()) < 60
