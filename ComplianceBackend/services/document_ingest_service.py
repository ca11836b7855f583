from __future__ import annotations

import base64
import binascii
import logging
import math
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ComplianceBackend.crud import documents as documents_crud
from ComplianceBackend.database import describe_database_error
from ComplianceBackend.errors import (
    BlobStorageError,
    DatabaseStorageError,
    PayloadTooLargeError,
    ValidationError,
)
from ComplianceBackend.services.blob_store import BlobLocation, BlobStore
from ComplianceBackend.services.chunking import MAX_CHUNKS, chunk_text, normalize_chunk_size, sanitize_text
from ComplianceBackend.services.document_metadata import (
    MAX_DOCUMENT_KEY_LENGTH,
    MAX_FILENAME_LENGTH,
    MAX_MIME_TYPE_LENGTH,
    MAX_VERSION_LENGTH,
    coerce_metadata,
    first_non_empty_string,
    require_max_length,
    resolve_display_fields,
    serialize_document,
    strip_alias_keys,
)
from ComplianceBackend.services.document_types import (
    DocumentTypeCache,
    get_document_type_cache,
    normalize_document_type,
)


logger = logging.getLogger(__name__)

# Admission-control ceilings, checked before any store I/O
DEFAULT_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_MAX_TEXT_BYTES = 5 * 1024 * 1024
DEFAULT_BLOB_THRESHOLD_BYTES = 5 * 1024 * 1024
DEFAULT_CHUNK_BATCH_SIZE = 100

_MIME_FIELDS = ("mimeType", "type", "fileType", "contentType")


@dataclass(frozen=True)
class IngestResult:
    document: dict
    chunks: int
    storage_location: Optional[BlobLocation]

    def to_dict(self) -> dict:
        return {
            "message": "Document stored",
            "document": self.document,
            "chunks": self.chunks,
            "storageLocation": self.storage_location.to_dict() if self.storage_location else None,
        }


def _explicit_size(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value < 0:
        return None
    return int(value)


# Decoded length of a base64 string without decoding it
def estimate_base64_size(encoded: str) -> int:
    stripped = "".join(encoded.split())
    padding = len(stripped) - len(stripped.rstrip("="))
    return max(0, (len(stripped) * 3) // 4 - padding)


# Validates an upload, stores optional binary content, and persists the document plus its chunks
class DocumentIngestService:
    def __init__(
        self,
        db: Session,
        *,
        blob_store: Optional[BlobStore] = None,
        type_cache: Optional[DocumentTypeCache] = None,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        max_text_bytes: int = DEFAULT_MAX_TEXT_BYTES,
        blob_threshold_bytes: int = DEFAULT_BLOB_THRESHOLD_BYTES,
        chunk_batch_size: int = DEFAULT_CHUNK_BATCH_SIZE,
    ):
        self.db = db
        self.blob_store = blob_store
        self.type_cache = type_cache or get_document_type_cache()
        self.max_file_bytes = int(max_file_bytes)
        self.max_text_bytes = int(max_text_bytes)
        self.blob_threshold_bytes = int(blob_threshold_bytes)
        self.chunk_batch_size = max(1, int(chunk_batch_size))

    # Rejects oversized uploads before anything is written
    def _check_ceilings(self, *, text: str, chunk_size: int, explicit_size: Optional[int]) -> None:
        text_bytes = len(text.encode("utf-8"))
        if text_bytes > self.max_text_bytes:
            raise PayloadTooLargeError(
                "Document text exceeds maximum size",
                details={"limitBytes": self.max_text_bytes, "actualBytes": text_bytes},
            )
        max_length = chunk_size * MAX_CHUNKS
        if len(text) > max_length:
            raise PayloadTooLargeError(
                "Document text exceeds maximum length",
                details={"limitCharacters": max_length, "actualCharacters": len(text)},
            )
        if explicit_size is not None and explicit_size > self.max_file_bytes:
            raise PayloadTooLargeError(
                "Document exceeds maximum file size",
                details={"limitBytes": self.max_file_bytes, "actualBytes": explicit_size},
            )

    # Returns decoded bytes, or None when there is no content or it is over the blob threshold
    def _decode_content(self, document: dict, metadata: dict) -> Optional[bytes]:
        content = document.get("content")
        if not isinstance(content, str) or not content.strip():
            return None

        encoding = document.get("encoding")
        encoding = encoding.strip().lower() if isinstance(encoding, str) else ""
        if encoding and encoding != "base64":
            raise ValidationError(f"Unsupported document encoding: {encoding}")

        estimated = estimate_base64_size(content)
        if estimated > self.max_file_bytes:
            raise PayloadTooLargeError(
                "Document exceeds maximum file size",
                details={"limitBytes": self.max_file_bytes, "actualBytes": estimated},
            )
        if estimated > self.blob_threshold_bytes:
            metadata["blobStorageSkipped"] = {
                "reason": "content exceeds blob storage threshold",
                "estimatedBytes": estimated,
                "thresholdBytes": self.blob_threshold_bytes,
            }
            return None

        try:
            return base64.b64decode("".join(content.split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError("Failed to decode document content") from e

    # Best-effort upload: failures are recorded in metadata and ingestion continues
    def _store_blob(
        self,
        *,
        body: bytes,
        mime_type: Optional[str],
        user_id: str,
        document_key: str,
        filename: str,
        metadata: dict,
    ) -> Optional[BlobLocation]:
        if self.blob_store is None:
            metadata["blobStorageSkipped"] = {"reason": "blob storage is not configured"}
            return None
        try:
            location = self.blob_store.put(
                body,
                content_type=mime_type or "application/octet-stream",
                user_id=user_id,
                document_id=document_key,
                filename=filename,
                metadata={"x-user-id": user_id, "x-document-filename": filename},
            )
        except (BlobStorageError, OSError) as e:
            logger.warning("ingest.blob.error: user_id=%s document_key=%s error=%s", user_id, document_key, e)
            metadata["blobStorageError"] = {
                "message": getattr(e, "message", None) or str(e),
                "provider": getattr(self.blob_store, "provider", None),
            }
            return None

        metadata["storage"] = {
            "provider": location.provider,
            "store": location.store,
            "key": location.key,
            "path": location.path,
            "url": location.url,
            "size": location.size if location.size is not None else len(body),
            "etag": location.etag,
            "contentType": location.content_type or mime_type or "application/octet-stream",
        }
        return location

    def _discard_blob(self, location: Optional[BlobLocation]) -> None:
        if location is not None:
            self._delete_blob_key(location.key)

    def _delete_blob_key(self, key: Optional[str]) -> None:
        if not key or self.blob_store is None:
            return
        try:
            self.blob_store.delete(key)
        except (BlobStorageError, OSError) as e:
            logger.warning("ingest.blob.cleanup_failed: key=%s error=%s", key, e)

    def _write_chunks(self, document_id: int, chunks: list) -> None:
        documents_crud.delete_chunks(self.db, document_id)
        for start in range(0, len(chunks), self.chunk_batch_size):
            documents_crud.insert_chunk_batch(self.db, document_id, chunks[start:start + self.chunk_batch_size])

    # Deletes the half-written document; a sweep retries later if this fails too
    def _compensate(self, document_id: int, location: Optional[BlobLocation], superseded_key: Optional[str]) -> None:
        try:
            documents_crud.delete_document_by_id(self.db, document_id)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("ingest.compensate.failed: document_id=%s (left pending for sweep)", document_id)
        self._discard_blob(location)
        self._delete_blob_key(superseded_key)

    def ingest(self, *, user_id: str, document: dict) -> IngestResult:
        if not isinstance(document, dict):
            raise ValidationError("Document payload is required")

        filename = document.get("filename")
        filename = filename.strip() if isinstance(filename, str) else ""
        if not filename:
            raise ValidationError("Document filename is required")

        text = sanitize_text(document.get("text"))
        if not text:
            raise ValidationError("Document text is required")

        chunk_size = normalize_chunk_size(document.get("chunkSize"))
        explicit_size = _explicit_size(document.get("size"))
        self._check_ceilings(text=text, chunk_size=chunk_size, explicit_size=explicit_size)

        mime_type = first_non_empty_string(*(document.get(k) for k in _MIME_FIELDS))
        incoming_meta = coerce_metadata(document.get("metadata"))
        title, summary, version = resolve_display_fields(
            metadata=incoming_meta,
            title=document.get("title"),
            summary=document.get("summary"),
            description=document.get("description"),
            version=document.get("version"),
            filename=filename,
        )

        metadata = strip_alias_keys(incoming_meta)
        metadata.pop("storage", None)
        metadata.pop("blobStorageError", None)
        metadata.pop("blobStorageSkipped", None)
        if mime_type:
            metadata["mimeType"] = mime_type
        metadata["fileName"] = metadata.get("fileName") or filename
        original_filename = first_non_empty_string(
            document.get("originalFilename"),
            metadata.get("originalFilename"),
            metadata.get("fileName"),
            filename,
        )
        metadata["originalFilename"] = metadata.get("originalFilename") or original_filename

        document_key = first_non_empty_string(
            str(document["documentId"]) if document.get("documentId") is not None else None,
            str(document["id"]) if document.get("id") is not None else None,
        ) or uuid.uuid4().hex

        require_max_length("Document id", document_key, MAX_DOCUMENT_KEY_LENGTH)
        require_max_length("Document filename", filename, MAX_FILENAME_LENGTH)
        require_max_length("Original filename", original_filename, MAX_FILENAME_LENGTH)
        require_max_length("Document MIME type", mime_type, MAX_MIME_TYPE_LENGTH)
        require_max_length("Document version", version, MAX_VERSION_LENGTH)

        body = self._decode_content(document, metadata)
        location = None
        if body:
            location = self._store_blob(
                body=body,
                mime_type=mime_type,
                user_id=user_id,
                document_key=document_key,
                filename=filename,
                metadata=metadata,
            )

        if explicit_size is not None:
            file_size = explicit_size
        elif location is not None and location.size is not None:
            file_size = location.size
        elif body:
            file_size = len(body)
        else:
            file_size = len(text)

        chunks = chunk_text(text, chunk_size)
        file_type = normalize_document_type(
            mime_type=mime_type,
            filename=filename,
            allowed_types=self.type_cache.get_allowed_types(self.db),
        )

        logger.info(
            "ingest.start: user_id=%s document_key=%s filename=%s chunks=%d size=%s",
            user_id, document_key, filename, len(chunks), file_size,
        )

        values = {
            "document_key": document_key,
            "user_id": user_id,
            "filename": filename,
            "original_filename": original_filename,
            "file_type": file_type,
            "mime_type": mime_type,
            "file_size": file_size,
            "text_content": text,
            "metadata": metadata,
            "title": title,
            "summary": summary,
            "version": version,
            "storage_provider": location.provider if location else None,
            "storage_key": location.key if location else None,
            "storage_url": location.url if location else None,
            "content_encoding": "base64" if body else None,
        }

        # New content replaces the stored object; the old one is removed once the row is ready
        superseded_key = None

        # Step 1: document row committed as `pending` before any chunk exists
        try:
            if location is not None:
                previous_key = documents_crud.get_storage_key(self.db, user_id, document_key)
                if previous_key and previous_key != location.key:
                    superseded_key = previous_key
            document_id = documents_crud.upsert_document(self.db, values)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            self._discard_blob(location)
            logger.exception("ingest.document.failed: user_id=%s document_key=%s", user_id, document_key)
            raise DatabaseStorageError(
                "Failed to store document",
                details={"documentId": document_key, "chunkCount": len(chunks), **describe_database_error(e)},
            ) from e

        # Step 2: replace chunks in batches and flip to `ready` in the same transaction
        try:
            self._write_chunks(document_id, chunks)
            documents_crud.mark_ready(self.db, document_id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("ingest.chunks.failed: document_id=%s chunk_count=%d", document_id, len(chunks))
            self._compensate(document_id, location, superseded_key)
            raise DatabaseStorageError(
                "Failed to store document chunks",
                details={"documentId": document_id, "chunkCount": len(chunks), **describe_database_error(e)},
            ) from e

        self._delete_blob_key(superseded_key)

        row = documents_crud.get_document(self.db, user_id, document_id)
        logger.info("ingest.done: user_id=%s document_id=%s chunks=%d", user_id, document_id, len(chunks))
        return IngestResult(
            document=serialize_document(row, chunk_count=len(chunks)),
            chunks=len(chunks),
            storage_location=location,
        )
