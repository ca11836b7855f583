from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ComplianceBackend.models.document_models import (
    INGEST_STATUS_PENDING,
    INGEST_STATUS_READY,
    RagDocument,
    RagDocumentChunk,
)

# Storage-derived columns keep their old value when a re-upload carries none
_COALESCED_COLUMNS = ("storage_provider", "storage_key", "storage_url", "content_encoding")
_REPLACED_COLUMNS = (
    "filename",
    "original_filename",
    "file_type",
    "mime_type",
    "file_size",
    "text_content",
    "metadata",
    "title",
    "summary",
    "version",
    "ingest_status",
)

SORTABLE_COLUMNS = {
    "created_at": RagDocument.created_at,
    "updated_at": RagDocument.updated_at,
    "title": RagDocument.title,
    "filename": RagDocument.filename,
}


def _dialect_insert(db: Session):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert
    if name == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Upsert is not supported on dialect '{name}'.")


# Numeric ids match the primary key; anything else is treated as the client document key
def _identity_clause(document_id: Any):
    if isinstance(document_id, int) and not isinstance(document_id, bool):
        return RagDocument.id == document_id
    value = str(document_id).strip()
    if value.isdigit():
        return or_(RagDocument.id == int(value), RagDocument.document_key == value)
    return RagDocument.document_key == value


def get_document(db: Session, user_id: str, document_id: Any) -> Optional[RagDocument]:
    stmt = (
        select(RagDocument)
        .where(RagDocument.user_id == user_id, _identity_clause(document_id))
        .order_by(RagDocument.id)
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def get_by_key(db: Session, user_id: str, document_key: str) -> Optional[RagDocument]:
    stmt = select(RagDocument).where(
        RagDocument.user_id == user_id,
        RagDocument.document_key == document_key,
    )
    return db.execute(stmt).scalar_one_or_none()


def get_storage_key(db: Session, user_id: str, document_key: str) -> Optional[str]:
    stmt = select(RagDocument.storage_key).where(
        RagDocument.user_id == user_id,
        RagDocument.document_key == document_key,
    )
    return db.execute(stmt).scalar_one_or_none()


# Insert-or-update on (user_id, document_key); always leaves the row `pending` until chunks land
def upsert_document(db: Session, values: dict) -> int:
    table = RagDocument.__table__
    row = {**values, "ingest_status": INGEST_STATUS_PENDING}
    stmt = _dialect_insert(db)(table).values(**row)
    set_ = {name: stmt.excluded[name] for name in _REPLACED_COLUMNS}
    for name in _COALESCED_COLUMNS:
        set_[name] = func.coalesce(stmt.excluded[name], table.c[name])
    set_["updated_at"] = func.now()
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.user_id, table.c.document_key],
        set_=set_,
    ).returning(table.c.id)
    return int(db.execute(stmt).scalar_one())


def delete_chunks(db: Session, document_id: int) -> int:
    res = db.execute(delete(RagDocumentChunk).where(RagDocumentChunk.document_id == document_id))
    return int(res.rowcount or 0)


# One executemany per batch
def insert_chunk_batch(db: Session, document_id: int, chunks: Sequence) -> None:
    if not chunks:
        return
    db.execute(
        insert(RagDocumentChunk),
        [
            {
                "document_id": document_id,
                "chunk_index": c.index,
                "chunk_text": c.text,
                "word_count": c.word_count,
                "character_count": c.character_count,
            }
            for c in chunks
        ],
    )


def mark_ready(db: Session, document_id: int) -> None:
    db.execute(
        update(RagDocument)
        .where(RagDocument.id == document_id)
        .values(ingest_status=INGEST_STATUS_READY, updated_at=func.now())
    )


def delete_document_by_id(db: Session, document_id: int) -> int:
    # Chunks go explicitly too: SQLite only cascades with foreign_keys enabled
    db.execute(delete(RagDocumentChunk).where(RagDocumentChunk.document_id == document_id))
    res = db.execute(delete(RagDocument).where(RagDocument.id == document_id))
    return int(res.rowcount or 0)


def count_chunks(db: Session, document_id: int) -> int:
    stmt = select(func.count(RagDocumentChunk.id)).where(RagDocumentChunk.document_id == document_id)
    return int(db.execute(stmt).scalar_one() or 0)


def _chunk_count_subquery():
    return (
        select(RagDocumentChunk.document_id, func.count(RagDocumentChunk.id).label("chunk_count"))
        .group_by(RagDocumentChunk.document_id)
        .subquery()
    )


# Returns ([(document, chunk_count)], total) for the user's ready documents
def list_documents(
    db: Session,
    user_id: str,
    *,
    search: Optional[str] = None,
    file_type: Optional[str] = None,
    has_manual_summary: Optional[bool] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[tuple[RagDocument, int]], int]:
    filters = [RagDocument.user_id == user_id, RagDocument.ingest_status == INGEST_STATUS_READY]
    if search:
        pattern = f"%{search}%"
        filters.append(
            or_(
                RagDocument.title.ilike(pattern),
                RagDocument.filename.ilike(pattern),
                RagDocument.summary.ilike(pattern),
                RagDocument.manual_summary.ilike(pattern),
            )
        )
    if file_type:
        filters.append(RagDocument.file_type == file_type)
    if has_manual_summary is True:
        filters.append(and_(RagDocument.manual_summary.is_not(None), RagDocument.manual_summary != ""))
    elif has_manual_summary is False:
        filters.append(or_(RagDocument.manual_summary.is_(None), RagDocument.manual_summary == ""))

    total = db.execute(select(func.count(RagDocument.id)).where(*filters)).scalar_one()

    counts = _chunk_count_subquery()
    sort_col = SORTABLE_COLUMNS.get(sort_by, RagDocument.created_at)
    order = sort_col.asc() if sort_order == "asc" else sort_col.desc()
    stmt = (
        select(RagDocument, func.coalesce(counts.c.chunk_count, 0))
        .outerjoin(counts, counts.c.document_id == RagDocument.id)
        .where(*filters)
        .order_by(order, RagDocument.id.desc())
        .limit(limit)
        .offset(offset)
    )
    rows = [(doc, int(n)) for doc, n in db.execute(stmt).all()]
    return rows, int(total or 0)


def document_stats(db: Session, user_id: str) -> dict:
    # Same visibility as listing and search: pending rows are not counted
    visible = (RagDocument.user_id == user_id, RagDocument.ingest_status == INGEST_STATUS_READY)
    doc_row = db.execute(
        select(func.count(RagDocument.id), func.coalesce(func.sum(RagDocument.file_size), 0)).where(*visible)
    ).one()
    chunk_total = db.execute(
        select(func.count(RagDocumentChunk.id))
        .join(RagDocument, RagDocument.id == RagDocumentChunk.document_id)
        .where(*visible)
    ).scalar_one()
    return {
        "totalDocuments": int(doc_row[0] or 0),
        "totalChunks": int(chunk_total or 0),
        "totalSize": int(doc_row[1] or 0),
    }


def get_summaries(db: Session, user_id: str, document_ids: Iterable[int]) -> list[RagDocument]:
    ids = [int(i) for i in document_ids]
    if not ids:
        return []
    stmt = (
        select(RagDocument)
        .where(RagDocument.user_id == user_id, RagDocument.id.in_(ids))
        .order_by(RagDocument.id)
    )
    return list(db.execute(stmt).scalars().all())


# Ids for any mix of numeric ids and client document keys, scoped to the user
def resolve_document_ids(db: Session, user_id: str, document_ids: Iterable[Any]) -> list[int]:
    numeric: list[int] = []
    keys: list[str] = []
    for raw in document_ids:
        if raw is None or isinstance(raw, bool):
            continue
        if isinstance(raw, int):
            numeric.append(raw)
            continue
        value = str(raw).strip()
        if not value:
            continue
        if value.isdigit():
            numeric.append(int(value))
        keys.append(value)
    if not numeric and not keys:
        return []
    conds = []
    if numeric:
        conds.append(RagDocument.id.in_(numeric))
    if keys:
        conds.append(RagDocument.document_key.in_(keys))
    stmt = select(RagDocument.id).where(RagDocument.user_id == user_id, or_(*conds))
    return sorted({int(i) for i in db.execute(stmt).scalars().all()})


def find_stale_pending(db: Session, *, older_than: datetime, limit: int = 100) -> list[RagDocument]:
    stmt = (
        select(RagDocument)
        .where(RagDocument.ingest_status == INGEST_STATUS_PENDING, RagDocument.updated_at < older_than)
        .order_by(RagDocument.updated_at)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())
