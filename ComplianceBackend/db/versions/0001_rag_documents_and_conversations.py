"""Create document, chunk, conversation and user stats tables

Revision ID: 0001_rag_core
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_rag_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "rag_documents",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("document_key", sa.String(128), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("filename", sa.String(512), nullable=False),
        sa.Column("original_filename", sa.String(512), nullable=True),
        sa.Column("file_type", sa.String(32), nullable=True),
        sa.Column("mime_type", sa.String(255), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("text_content", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("manual_summary", sa.Text(), nullable=True),
        sa.Column("version", sa.String(64), nullable=True),
        sa.Column("storage_provider", sa.String(64), nullable=True),
        sa.Column("storage_key", sa.String(1024), nullable=True),
        sa.Column("storage_url", sa.String(2048), nullable=True),
        sa.Column("content_encoding", sa.String(32), nullable=True),
        sa.Column("ingest_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "document_key", name="ux_rag_documents_user_id_document_key"),
    )
    op.create_index("ix_rag_documents_user_id", "rag_documents", ["user_id"])
    op.create_index("ix_rag_documents_user_id_created_at", "rag_documents", ["user_id", "created_at"])
    op.create_index("ix_rag_documents_ingest_status", "rag_documents", ["ingest_status"])

    op.create_table(
        "rag_document_chunks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "document_id",
            sa.BigInteger(),
            sa.ForeignKey("rag_documents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        sa.Column("word_count", sa.Integer(), nullable=True),
        sa.Column("character_count", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("document_id", "chunk_index", name="ux_rag_document_chunks_document_id_chunk_index"),
    )
    op.create_index("ix_rag_document_chunks_document_id", "rag_document_chunks", ["document_id"])
    # Expression must match the search SQL exactly for the planner to use it
    op.execute(
        "CREATE INDEX ix_rag_document_chunks_fts "
        "ON rag_document_chunks USING GIN (to_tsvector('english', chunk_text))"
    )

    op.create_table(
        "chat_conversations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("conversation_id", sa.String(128), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("messages", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rag_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rag_message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_chat_conversations_conversation_id", "chat_conversations", ["conversation_id"])
    op.create_index("ix_chat_conversations_user_id", "chat_conversations", ["user_id"])
    op.create_index(
        "ux_chat_conversations_user_id_conversation_id",
        "chat_conversations",
        ["user_id", "conversation_id"],
        unique=True,
    )

    op.create_table(
        "user_conversation_stats",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("conversations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rag_conversations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table("user_conversation_stats")
    op.drop_index("ux_chat_conversations_user_id_conversation_id", table_name="chat_conversations")
    op.drop_index("ix_chat_conversations_user_id", table_name="chat_conversations")
    op.drop_index("ix_chat_conversations_conversation_id", table_name="chat_conversations")
    op.drop_table("chat_conversations")
    op.execute("DROP INDEX IF EXISTS ix_rag_document_chunks_fts")
    op.drop_index("ix_rag_document_chunks_document_id", table_name="rag_document_chunks")
    op.drop_table("rag_document_chunks")
    op.drop_index("ix_rag_documents_ingest_status", table_name="rag_documents")
    op.drop_index("ix_rag_documents_user_id_created_at", table_name="rag_documents")
    op.drop_index("ix_rag_documents_user_id", table_name="rag_documents")
    op.drop_table("rag_documents")
