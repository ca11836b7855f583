from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.types import JSON

from ComplianceBackend.database import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")

INGEST_STATUS_PENDING = "pending"
INGEST_STATUS_READY = "ready"


# One uploaded document: sanitized text plus denormalized title/summary/version and storage location
class RagDocument(Base):
    __tablename__ = "rag_documents"

    # Re-ingesting the same logical document upserts on (user_id, document_key)
    __table_args__ = (
        UniqueConstraint("user_id", "document_key", name="ux_rag_documents_user_id_document_key"),
        Index("ix_rag_documents_user_id_created_at", "user_id", "created_at"),
    )

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    document_key = Column(String(128), nullable=False)
    user_id = Column(String(128), index=True, nullable=False)
    filename = Column(String(512), nullable=False)
    original_filename = Column(String(512), nullable=True)
    file_type = Column(String(32), nullable=True)
    mime_type = Column(String(255), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    text_content = Column(Text, nullable=True)
    meta = Column("metadata", JSONType, nullable=False, default=dict)
    title = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    manual_summary = Column(Text, nullable=True)
    version = Column(String(64), nullable=True)
    storage_provider = Column(String(64), nullable=True)
    storage_key = Column(String(1024), nullable=True)
    storage_url = Column(String(2048), nullable=True)
    content_encoding = Column(String(32), nullable=True)
    ingest_status = Column(String(16), nullable=False, default=INGEST_STATUS_PENDING, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    chunks = relationship(
        "RagDocumentChunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RagDocumentChunk.chunk_index",
    )

    def __repr__(self):
        return f"<RagDocument(id={self.id}, user_id={self.user_id}, filename={self.filename}, status={self.ingest_status})>"


# Contiguous slice of a document's sanitized text; the unit of full-text indexing
class RagDocumentChunk(Base):
    __tablename__ = "rag_document_chunks"

    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="ux_rag_document_chunks_document_id_chunk_index"),
    )

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    document_id = Column(
        BigInteger().with_variant(Integer(), "sqlite"),
        ForeignKey("rag_documents.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    chunk_index = Column(Integer, nullable=False)
    chunk_text = Column(Text, nullable=False)
    word_count = Column(Integer, nullable=True)
    character_count = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    document = relationship("RagDocument", back_populates="chunks")
