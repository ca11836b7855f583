from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Extension / MIME synonyms -> canonical document type
CANONICAL_DOCUMENT_TYPES = {
    "pdf": "pdf",
    "application/pdf": "pdf",
    "doc": "doc",
    "application/msword": "doc",
    "docx": "docx",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "ppt": "ppt",
    "application/vnd.ms-powerpoint": "ppt",
    "pptx": "pptx",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "xls": "xls",
    "application/vnd.ms-excel": "xls",
    "xlsx": "xlsx",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "csv": "csv",
    "text/csv": "csv",
    "txt": "text",
    "text": "text",
    "text/plain": "text",
    "md": "markdown",
    "markdown": "markdown",
    "text/markdown": "markdown",
    "json": "json",
    "application/json": "json",
    "html": "html",
    "text/html": "html",
    "xml": "xml",
    "application/xml": "xml",
}

FALLBACK_DOCUMENT_TYPES = ("other", "unknown", "text")

_ENUM_QUERY = text(
    """
    SELECT e.enumlabel
      FROM pg_type t
      JOIN pg_enum e ON t.oid = e.enumtypid
     WHERE t.typname = 'document_type'
     ORDER BY e.enumsortorder
    """
)


def guess_extension(filename: Optional[str]) -> str:
    if not isinstance(filename, str):
        return ""
    # Longer "extensions" would not fit the file_type column
    m = re.search(r"\.([a-z0-9]{1,32})$", filename.lower())
    return m.group(1) if m else ""


def _candidates(mime_type: Optional[str], filename: Optional[str]) -> list[str]:
    out: list[str] = []
    mime = mime_type.strip().lower() if isinstance(mime_type, str) else ""
    if mime:
        out.append(mime)
        if "/" in mime:
            out.append(mime.split("/", 1)[1])
    ext = guess_extension(filename)
    if ext:
        out.append(ext)
    # Preserve order, drop duplicates
    return list(dict.fromkeys(out))


# Maps MIME type / filename onto a document type; constrained by `allowed_types` when the schema has them
def normalize_document_type(
    *,
    mime_type: Optional[str],
    filename: Optional[str],
    allowed_types: Sequence[str] = (),
) -> Optional[str]:
    candidates = _candidates(mime_type, filename)

    if not allowed_types:
        for candidate in candidates:
            mapped = CANONICAL_DOCUMENT_TYPES.get(candidate)
            if mapped:
                return mapped
        return guess_extension(filename) or None

    for candidate in candidates:
        mapped = CANONICAL_DOCUMENT_TYPES.get(candidate)
        if mapped and mapped in allowed_types:
            return mapped
        if candidate in allowed_types:
            return candidate

    for fallback in FALLBACK_DOCUMENT_TYPES:
        if fallback in allowed_types:
            return fallback
    return None


# Process-wide cache of the `document_type` enum labels, loaded on first use
class DocumentTypeCache:
    def __init__(self):
        self._allowed: Optional[tuple[str, ...]] = None

    def get_allowed_types(self, db: Session) -> tuple[str, ...]:
        if self._allowed is not None:
            return self._allowed
        self._allowed = self._load(db)
        return self._allowed

    def _load(self, db: Session) -> tuple[str, ...]:
        bind = db.get_bind()
        if bind is None or bind.dialect.name != "postgresql":
            return ()
        try:
            rows = db.execute(_ENUM_QUERY).scalars().all()
        except SQLAlchemyError as e:
            logger.warning("document_types.load failed: %s", e)
            db.rollback()
            return ()
        return tuple(str(r) for r in rows if r)

    def reset(self) -> None:
        self._allowed = None


_type_cache: Optional[DocumentTypeCache] = None


def get_document_type_cache() -> DocumentTypeCache:
    global _type_cache
    if _type_cache is None:
        _type_cache = DocumentTypeCache()
    return _type_cache


def reset_document_type_cache() -> None:
    global _type_cache
    _type_cache = None
