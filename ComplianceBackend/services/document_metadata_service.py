from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from ComplianceBackend.crud import documents as documents_crud
from ComplianceBackend.errors import BlobStorageError, NotFoundError, ValidationError
from ComplianceBackend.models.document_models import RagDocument
from ComplianceBackend.services.blob_store import BlobStore
from ComplianceBackend.services.document_metadata import (
    MAX_VERSION_LENGTH,
    coerce_metadata,
    first_non_empty_string,
    require_max_length,
    serialize_document,
    strip_alias_keys,
)


logger = logging.getLogger(__name__)

# Clear-field name -> metadata keys removed (aliases included)
CLEARABLE_FIELDS = {
    "title": ("title", "fileTitle", "documentTitle", "displayTitle"),
    "description": ("summary", "description", "displaySummary"),
    "summary": ("summary", "description", "displaySummary"),
    "version": ("version",),
    "category": ("category",),
    "tags": ("tags",),
}


def normalize_clear_fields(clear_fields: Any) -> set[str]:
    if not isinstance(clear_fields, (list, tuple, set)):
        return set()
    return {f.strip() for f in clear_fields if isinstance(f, str) and f.strip()}


def normalize_tags(value: Any) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return []
    return [t.strip() for t in value if isinstance(t, str) and t.strip()]


def _require_document_id(document_id: Any) -> Any:
    if document_id is None or (isinstance(document_id, str) and not document_id.strip()):
        raise ValidationError("documentId is required")
    return document_id


def _touch(doc: RagDocument) -> None:
    doc.updated_at = datetime.now(timezone.utc)


# Partial metadata updates, manual summaries, and deletion for a user's documents
class DocumentMetadataService:
    def __init__(self, db: Session, *, blob_store: Optional[BlobStore] = None):
        self.db = db
        self.blob_store = blob_store

    def _load(self, user_id: str, document_id: Any) -> RagDocument:
        doc = documents_crud.get_document(self.db, user_id, _require_document_id(document_id))
        if doc is None:
            raise NotFoundError("Document not found", details={"documentId": document_id})
        return doc

    def _serialize(self, doc: RagDocument) -> dict:
        return serialize_document(doc, chunk_count=documents_crud.count_chunks(self.db, doc.id))

    def get(self, *, user_id: str, document_id: Any) -> dict:
        return self._serialize(self._load(user_id, document_id))

    # Clears first, then shallow-merges updates; title/summary/version go to their columns
    def patch(self, *, user_id: str, document_id: Any, updates: Any = None, clear_fields: Any = None) -> dict:
        doc = self._load(user_id, document_id)
        updates = dict(updates) if isinstance(updates, dict) else {}
        clears = normalize_clear_fields(clear_fields)

        if not updates and not clears:
            return self._serialize(doc)

        metadata = coerce_metadata(doc.meta)
        title, summary, version = doc.title, doc.summary, doc.version

        for name in clears:
            for key in CLEARABLE_FIELDS.get(name, ()):
                metadata.pop(key, None)
        if "title" in clears:
            title = None
        if "description" in clears or "summary" in clears:
            summary = None
        if "version" in clears:
            version = None

        new_title = first_non_empty_string(
            updates.get("title"), updates.get("fileTitle"), updates.get("documentTitle"), updates.get("displayTitle")
        )
        if new_title:
            title = new_title
        new_summary = first_non_empty_string(
            updates.get("description"), updates.get("summary"), updates.get("displaySummary")
        )
        if new_summary:
            summary = new_summary
        new_version = first_non_empty_string(updates.get("version"))
        require_max_length("Document version", new_version, MAX_VERSION_LENGTH)
        if new_version:
            version = new_version

        if "category" in updates:
            category = first_non_empty_string(updates.get("category"))
            if category:
                metadata["category"] = category
            else:
                metadata.pop("category", None)
        if "tags" in updates:
            tags = normalize_tags(updates.get("tags"))
            if tags:
                metadata["tags"] = tags
            else:
                metadata.pop("tags", None)

        for key, value in strip_alias_keys(updates).items():
            if key in ("category", "tags"):
                continue
            metadata[key] = value

        doc.meta = strip_alias_keys(metadata)
        doc.title = title
        doc.summary = summary
        doc.version = version
        _touch(doc)
        self.db.commit()
        self.db.refresh(doc)
        logger.info("document.patch: user_id=%s document_id=%s cleared=%s", user_id, doc.id, sorted(clears))
        return self._serialize(doc)

    def get_manual_summary(self, *, user_id: str, document_id: Any) -> dict:
        doc = self._load(user_id, document_id)
        return {"documentId": doc.id, "manualSummary": doc.manual_summary, "summary": doc.summary}

    def set_manual_summary(self, *, user_id: str, document_id: Any, manual_summary: Any) -> dict:
        if not isinstance(manual_summary, str):
            raise ValidationError("manualSummary must be a string")
        doc = self._load(user_id, document_id)
        doc.manual_summary = manual_summary.strip() or None
        _touch(doc)
        self.db.commit()
        self.db.refresh(doc)
        return {"documentId": doc.id, "manualSummary": doc.manual_summary, "summary": doc.summary}

    def clear_manual_summary(self, *, user_id: str, document_id: Any) -> dict:
        doc = self._load(user_id, document_id)
        doc.manual_summary = None
        _touch(doc)
        self.db.commit()
        self.db.refresh(doc)
        return {"documentId": doc.id, "manualSummary": None, "summary": doc.summary}

    # Owner-scoped delete; chunks cascade, the blob object is removed best-effort
    def delete(self, *, user_id: str, document_id: Any) -> dict:
        doc = self._load(user_id, document_id)
        doc_id, storage_key = doc.id, doc.storage_key
        documents_crud.delete_document_by_id(self.db, doc_id)
        self.db.commit()
        if storage_key and self.blob_store is not None:
            try:
                self.blob_store.delete(storage_key)
            except (BlobStorageError, OSError) as e:
                logger.warning("document.delete.blob_failed: key=%s error=%s", storage_key, e)
        logger.info("document.delete: user_id=%s document_id=%s", user_id, doc_id)
        return {"success": True, "documentId": doc_id}
