from __future__ import annotations

from typing import Any, Iterable, Optional

from ComplianceBackend.errors import ValidationError

# Read-side aliases. Canonical values live in the title/summary/version columns;
# aliases are stripped from stored metadata and recomputed on serialization.
TITLE_ALIASES = ("title", "fileTitle", "documentTitle", "displayTitle")
SUMMARY_ALIASES = ("summary", "description", "displaySummary")
VERSION_ALIASES = ("version",)
ALIAS_KEYS = frozenset(TITLE_ALIASES + SUMMARY_ALIASES + VERSION_ALIASES)

# Widths of the bounded rag_documents columns
MAX_DOCUMENT_KEY_LENGTH = 128
MAX_FILENAME_LENGTH = 512
MAX_MIME_TYPE_LENGTH = 255
MAX_VERSION_LENGTH = 64


def first_non_empty_string(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def require_max_length(label: str, value: Optional[str], limit: int) -> None:
    if value is not None and len(value) > limit:
        raise ValidationError(f"{label} must be at most {limit} characters", details={"length": len(value)})


def coerce_metadata(raw: Any) -> dict:
    if isinstance(raw, dict):
        return dict(raw)
    return {}


def alias_values(metadata: dict, aliases: Iterable[str]) -> list:
    return [metadata.get(key) for key in aliases]


# Removes every alias key so only non-derived fields are persisted
def strip_alias_keys(metadata: dict) -> dict:
    return {key: value for key, value in metadata.items() if key not in ALIAS_KEYS}


# Resolves (title, summary, version): explicit field -> metadata and its aliases -> filename (title only)
def resolve_display_fields(
    *,
    metadata: dict,
    title: Any = None,
    summary: Any = None,
    description: Any = None,
    version: Any = None,
    filename: Optional[str] = None,
) -> tuple[Optional[str], Optional[str], Optional[str]]:
    resolved_title = first_non_empty_string(title, *alias_values(metadata, TITLE_ALIASES), filename)
    resolved_summary = first_non_empty_string(summary, description, *alias_values(metadata, SUMMARY_ALIASES))
    resolved_version = first_non_empty_string(version, *alias_values(metadata, VERSION_ALIASES))
    return resolved_title, resolved_summary, resolved_version


# Back-fills every alias from the canonical values so all aliases read the same
def with_display_aliases(
    metadata: dict,
    *,
    title: Optional[str],
    summary: Optional[str],
    version: Optional[str],
) -> dict:
    out = strip_alias_keys(metadata)
    if title:
        for key in TITLE_ALIASES:
            out[key] = title
    if summary:
        for key in SUMMARY_ALIASES:
            out[key] = summary
    if version:
        out["version"] = version
    return out


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


# Serializes a RagDocument row into the API shape (aliases computed, storage folded in)
def serialize_document(doc, *, chunk_count: Optional[int] = None) -> dict:
    title = first_non_empty_string(doc.title, doc.filename)
    metadata = with_display_aliases(
        coerce_metadata(doc.meta),
        title=title,
        summary=doc.summary,
        version=doc.version,
    )
    metadata.setdefault("fileName", doc.filename)
    if doc.original_filename:
        metadata.setdefault("originalFilename", doc.original_filename)

    storage = None
    if doc.storage_key:
        storage = {
            "provider": doc.storage_provider,
            "key": doc.storage_key,
            "url": doc.storage_url,
        }

    out = {
        "id": doc.id,
        "documentId": doc.document_key,
        "userId": doc.user_id,
        "filename": doc.filename,
        "originalFilename": doc.original_filename,
        "fileType": doc.file_type,
        "mimeType": doc.mime_type,
        "fileSize": doc.file_size,
        "metadata": metadata,
        "title": title,
        "summary": doc.summary,
        "manualSummary": doc.manual_summary,
        "version": doc.version,
        "storage": storage,
        "contentEncoding": doc.content_encoding,
        "ingestStatus": doc.ingest_status,
        "createdAt": _iso(doc.created_at),
        "updatedAt": _iso(doc.updated_at),
    }
    if chunk_count is not None:
        out["chunkCount"] = int(chunk_count)
    return out
