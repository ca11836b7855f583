"""
Tests for ComplianceBackend/services/document_metadata_service.py
Partial metadata updates, clears, manual summaries and deletion.
"""

import base64

import pytest
from sqlalchemy import func, select

from ComplianceBackend.errors import NotFoundError, ValidationError
from ComplianceBackend.models.document_models import RagDocument, RagDocumentChunk
from ComplianceBackend.services.document_ingest_service import DocumentIngestService
from ComplianceBackend.services.document_metadata_service import (
    DocumentMetadataService,
    normalize_clear_fields,
    normalize_tags,
)


@pytest.fixture
def stored(db, blob_store):
    return DocumentIngestService(db, blob_store=blob_store).ingest(
        user_id="u1",
        document={
            "filename": "policy.pdf",
            "text": "Quality policy text",
            "documentId": "pol-1",
            "content": base64.b64encode(b"pdf-bytes").decode(),
            "metadata": {
                "title": "Quality Policy",
                "description": "Old summary",
                "version": "1.0",
                "category": "QA",
                "tags": ["gmp"],
                "owner": "qa-team",
            },
        },
    ).document


class TestPatch:
    """Clears run before updates; aliases stay consistent."""

    def test_noop_returns_unchanged(self, db, stored):
        out = DocumentMetadataService(db).patch(user_id="u1", document_id="pol-1", updates={}, clear_fields=[])
        assert out["updatedAt"] == stored["updatedAt"]
        assert out["title"] == "Quality Policy"

    def test_update_title_refreshes_aliases(self, db, stored):
        out = DocumentMetadataService(db).patch(user_id="u1", document_id="pol-1", updates={"title": "Revised"})
        assert out["title"] == "Revised"
        assert out["metadata"]["displayTitle"] == "Revised"
        assert out["metadata"]["fileTitle"] == "Revised"

        row = db.get(RagDocument, stored["id"])
        assert row.title == "Revised"
        assert "title" not in row.meta

    def test_clear_description_removes_summary(self, db, stored):
        out = DocumentMetadataService(db).patch(user_id="u1", document_id="pol-1", clear_fields=["description"])
        assert out["summary"] is None
        assert "description" not in out["metadata"]
        assert "displaySummary" not in out["metadata"]

    def test_clear_then_update_in_one_call(self, db, stored):
        out = DocumentMetadataService(db).patch(
            user_id="u1",
            document_id="pol-1",
            updates={"summary": "New summary"},
            clear_fields=["summary", "version"],
        )
        assert out["summary"] == "New summary"
        assert out["version"] is None

    def test_clear_title_falls_back_to_filename(self, db, stored):
        out = DocumentMetadataService(db).patch(user_id="u1", document_id="pol-1", clear_fields=["title"])
        assert out["title"] == "policy.pdf"

    def test_tags_from_comma_string(self, db, stored):
        out = DocumentMetadataService(db).patch(user_id="u1", document_id="pol-1", updates={"tags": "a, b ,,c"})
        assert out["metadata"]["tags"] == ["a", "b", "c"]

    def test_empty_category_deletes_it(self, db, stored):
        out = DocumentMetadataService(db).patch(user_id="u1", document_id="pol-1", updates={"category": "  "})
        assert "category" not in out["metadata"]

    def test_other_keys_are_merged(self, db, stored):
        out = DocumentMetadataService(db).patch(user_id="u1", document_id="pol-1", updates={"site": "Basel"})
        assert out["metadata"]["site"] == "Basel"
        assert out["metadata"]["owner"] == "qa-team"

    def test_version_too_long(self, db, stored):
        with pytest.raises(ValidationError):
            DocumentMetadataService(db).patch(user_id="u1", document_id="pol-1", updates={"version": "v" * 65})

    def test_unknown_document(self, db, stored):
        with pytest.raises(NotFoundError):
            DocumentMetadataService(db).patch(user_id="u1", document_id="missing", updates={"title": "x"})

    def test_other_users_document_is_not_found(self, db, stored):
        with pytest.raises(NotFoundError):
            DocumentMetadataService(db).get(user_id="u2", document_id=stored["id"])

    def test_blank_document_id(self, db):
        with pytest.raises(ValidationError):
            DocumentMetadataService(db).get(user_id="u1", document_id="  ")


class TestManualSummary:
    """Manual summary set/get/clear."""

    def test_roundtrip(self, db, stored):
        service = DocumentMetadataService(db)
        assert service.get_manual_summary(user_id="u1", document_id="pol-1")["manualSummary"] is None

        set_out = service.set_manual_summary(user_id="u1", document_id="pol-1", manual_summary=" Reviewed ")
        assert set_out["manualSummary"] == "Reviewed"
        assert set_out["summary"] == "Old summary"

        cleared = service.clear_manual_summary(user_id="u1", document_id="pol-1")
        assert cleared["manualSummary"] is None
        assert service.get(user_id="u1", document_id="pol-1")["manualSummary"] is None

    def test_non_string_rejected(self, db, stored):
        with pytest.raises(ValidationError):
            DocumentMetadataService(db).set_manual_summary(user_id="u1", document_id="pol-1", manual_summary=3)


class TestDelete:
    """Owner-scoped deletion with best-effort blob removal."""

    def test_delete_removes_rows_and_blob(self, db, stored, blob_store):
        out = DocumentMetadataService(db, blob_store=blob_store).delete(user_id="u1", document_id="pol-1")
        assert out == {"success": True, "documentId": stored["id"]}
        assert db.execute(select(func.count()).select_from(RagDocument)).scalar_one() == 0
        assert db.execute(select(func.count()).select_from(RagDocumentChunk)).scalar_one() == 0
        assert blob_store.deleted == ["rag-documents/u1/pol-1/policy.pdf"]

    def test_blob_failure_does_not_block_delete(self, db, stored, blob_store_factory):
        store = blob_store_factory(fail_delete=True)
        out = DocumentMetadataService(db, blob_store=store).delete(user_id="u1", document_id=stored["id"])
        assert out["success"] is True

    def test_delete_missing(self, db):
        with pytest.raises(NotFoundError):
            DocumentMetadataService(db).delete(user_id="u1", document_id=123)


class TestHelpers:
    def test_normalize_clear_fields(self):
        assert normalize_clear_fields(["title", " ", 3, " tags "]) == {"title", "tags"}
        assert normalize_clear_fields("title") == set()

    def test_normalize_tags(self):
        assert normalize_tags(["a", "", " b "]) == ["a", "b"]
        assert normalize_tags(None) == []
