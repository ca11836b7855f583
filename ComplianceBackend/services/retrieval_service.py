from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol, Sequence

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from ComplianceBackend.crud import documents as documents_crud
from ComplianceBackend.errors import ValidationError
from ComplianceBackend.models.document_models import INGEST_STATUS_READY, RagDocument, RagDocumentChunk
from ComplianceBackend.services.document_metadata import first_non_empty_string


logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 10
MAX_SEARCH_LIMIT = 50
SNIPPET_MAX_WORDS = 40


def clamp_limit(limit: Any) -> int:
    try:
        value = int(limit) if limit is not None and not isinstance(limit, bool) else 0
    except (TypeError, ValueError, OverflowError):
        value = 0
    return max(1, min(value or DEFAULT_SEARCH_LIMIT, MAX_SEARCH_LIMIT))


class SearchStrategy(Protocol):
    name: str

    def search(
        self,
        db: Session,
        *,
        user_id: str,
        query: str,
        document_ids: Optional[Sequence[int]],
        limit: int,
    ) -> list[dict]: ...


def _result(*, chunk_id, document_id, chunk_index, snippet, filename, title, summary, version, rank) -> dict:
    return {
        "documentId": document_id,
        "chunkId": chunk_id,
        "chunkIndex": chunk_index,
        "text": snippet,
        "filename": filename,
        "title": first_non_empty_string(title, filename),
        "summary": summary,
        "version": version,
        "rank": float(rank) if rank is not None else 0.0,
    }


_FTS_SQL = """
SELECT c.id AS chunk_id,
       c.document_id,
       c.chunk_index,
       d.filename,
       d.title,
       d.summary,
       d.version,
       ts_rank_cd(to_tsvector('english', c.chunk_text), plainto_tsquery('english', :query)) AS rank,
       ts_headline(
         'english',
         c.chunk_text,
         plainto_tsquery('english', :query),
         'MaxWords=40, MinWords=20, ShortWord=3'
       ) AS snippet
  FROM rag_document_chunks c
  JOIN rag_documents d ON d.id = c.document_id
 WHERE d.user_id = :user_id
   AND d.ingest_status = :ready
   AND to_tsvector('english', c.chunk_text) @@ plainto_tsquery('english', :query)
   {document_filter}
 ORDER BY rank DESC NULLS LAST, c.created_at DESC
 LIMIT :limit
"""


# Postgres full-text ranking with highlighted snippets; yields nothing on other dialects
class FullTextStrategy:
    name = "strictRank"

    def search(self, db, *, user_id, query, document_ids, limit) -> list[dict]:
        if db.get_bind().dialect.name != "postgresql":
            return []
        params = {"user_id": user_id, "query": query, "ready": INGEST_STATUS_READY, "limit": limit}
        document_filter = ""
        if document_ids:
            document_filter = "AND c.document_id = ANY(:document_ids)"
            params["document_ids"] = list(document_ids)
        rows = db.execute(text(_FTS_SQL.format(document_filter=document_filter)), params).mappings().all()
        return [
            _result(
                chunk_id=r["chunk_id"],
                document_id=r["document_id"],
                chunk_index=r["chunk_index"],
                snippet=r["snippet"],
                filename=r["filename"],
                title=r["title"],
                summary=r["summary"],
                version=r["version"],
                rank=r["rank"],
            )
            for r in rows
        ]


def query_words(query: str) -> list[str]:
    return [w for w in query.lower().split() if len(w) > 1]


# Bounded word window around the first occurrence of `term`
def snippet_around(chunk: str, term: str, *, max_words: int = SNIPPET_MAX_WORDS) -> str:
    words = chunk.split()
    if len(words) <= max_words:
        return " ".join(words)
    term_l = term.lower()
    hit = next((i for i, w in enumerate(words) if term_l in w.lower()), 0)
    start = max(0, min(hit - max_words // 2, len(words) - max_words))
    window = " ".join(words[start:start + max_words])
    prefix = "... " if start > 0 else ""
    suffix = " ..." if start + max_words < len(words) else ""
    return f"{prefix}{window}{suffix}"


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# Case-insensitive substring match, one query word at a time; the first word with hits wins
class SubstringAnyWordStrategy:
    name = "substringAny"

    def search_word(self, db, *, user_id, word, document_ids, limit) -> list[dict]:
        stmt = (
            select(RagDocumentChunk, RagDocument)
            .join(RagDocument, RagDocument.id == RagDocumentChunk.document_id)
            .where(
                RagDocument.user_id == user_id,
                RagDocument.ingest_status == INGEST_STATUS_READY,
                RagDocumentChunk.chunk_text.ilike(f"%{_escape_like(word)}%", escape="\\"),
            )
        )
        if document_ids:
            stmt = stmt.where(RagDocumentChunk.document_id.in_(list(document_ids)))
        stmt = stmt.order_by(RagDocumentChunk.created_at.desc(), RagDocumentChunk.id.desc()).limit(limit)
        return [
            _result(
                chunk_id=chunk.id,
                document_id=doc.id,
                chunk_index=chunk.chunk_index,
                snippet=snippet_around(chunk.chunk_text, word),
                filename=doc.filename,
                title=doc.title,
                summary=doc.summary,
                version=doc.version,
                rank=1.0,
            )
            for chunk, doc in db.execute(stmt).all()
        ]

    def search(self, db, *, user_id, query, document_ids, limit) -> list[dict]:
        for word in query_words(query):
            rows = self.search_word(db, user_id=user_id, word=word, document_ids=document_ids, limit=limit)
            if rows:
                logger.info("search.fallback: word=%s rows=%d", word, len(rows))
                return rows
        return []


@dataclass
class DocumentContext:
    results: list[dict] = field(default_factory=list)
    summaries: list[dict] = field(default_factory=list)

    @property
    def has_context(self) -> bool:
        return bool(self.results or self.summaries)

    def to_dict(self) -> dict:
        return {"results": self.results, "summaries": self.summaries, "hasContext": self.has_context}


def build_document_context(results: Iterable[dict], summaries: Iterable[dict]) -> DocumentContext:
    return DocumentContext(results=list(results), summaries=list(summaries))


def summary_entry(doc: RagDocument) -> dict:
    manual = first_non_empty_string(doc.manual_summary)
    ai = first_non_empty_string(doc.summary)
    return {
        "documentId": doc.id,
        "filename": doc.filename,
        "title": first_non_empty_string(doc.title, doc.filename),
        "version": doc.version,
        "manualSummary": manual,
        "summary": ai,
        # Manual summary always overrides the AI summary
        "effectiveSummary": manual or ai,
    }


# Ranks chunks for a query (full-text first, substring fallback) and gathers document summaries
class RetrievalService:
    def __init__(
        self,
        db: Session,
        *,
        primary: Optional[SearchStrategy] = None,
        fallback: Optional[SearchStrategy] = None,
    ):
        self.db = db
        self.primary = primary or FullTextStrategy()
        self.fallback = fallback or SubstringAnyWordStrategy()

    def _scope(self, user_id: str, document_ids: Optional[Sequence[Any]]) -> Optional[list[int]]:
        if not document_ids:
            return None
        return documents_crud.resolve_document_ids(self.db, user_id, document_ids)

    def search(
        self,
        *,
        user_id: str,
        query: Any,
        document_ids: Optional[Sequence[Any]] = None,
        limit: Any = None,
    ) -> list[dict]:
        q = query.strip() if isinstance(query, str) else ""
        if not q:
            raise ValidationError("Search query is required")

        scope = self._scope(user_id, document_ids)
        # Caller asked for specific documents and none of them belong to this user
        if scope is not None and not scope:
            return []

        n = clamp_limit(limit)
        rows = self.primary.search(self.db, user_id=user_id, query=q, document_ids=scope, limit=n)
        if rows:
            return rows
        logger.info("search.primary_empty: user_id=%s strategy=%s", user_id, self.primary.name)
        return self.fallback.search(self.db, user_id=user_id, query=q, document_ids=scope, limit=n)

    def get_document_summaries(self, *, user_id: str, document_ids: Any) -> list[dict]:
        if document_ids is None or not isinstance(document_ids, (list, tuple)):
            raise ValidationError("documentIds must be a list")
        ids = documents_crud.resolve_document_ids(self.db, user_id, document_ids)
        return [summary_entry(doc) for doc in documents_crud.get_summaries(self.db, user_id, ids)]

    # Search plus summaries for every document that produced a hit
    def build_context(
        self,
        *,
        user_id: str,
        query: Any,
        document_ids: Optional[Sequence[Any]] = None,
        limit: Any = None,
    ) -> DocumentContext:
        results = self.search(user_id=user_id, query=query, document_ids=document_ids, limit=limit)
        hit_ids = list(dict.fromkeys(r["documentId"] for r in results))
        summaries = self.get_document_summaries(user_id=user_id, document_ids=hit_ids) if hit_ids else []
        return build_document_context(results, summaries)
