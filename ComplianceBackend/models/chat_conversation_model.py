from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, func

from ComplianceBackend.database import Base
from ComplianceBackend.models.document_models import JSONType


# Stores one merged conversation (messages + denormalized RAG usage) per (user_id, conversation_id)
class ChatConversation(Base):
    __tablename__ = "chat_conversations"

    # DB-level uniqueness is per-user: (user_id, conversation_id)
    __table_args__ = (
        Index("ux_chat_conversations_user_id_conversation_id", "user_id", "conversation_id", unique=True),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(128), index=True, nullable=False)
    user_id = Column(String(128), index=True, nullable=False)
    messages = Column(JSONType, nullable=False, default=list)
    meta = Column("metadata", JSONType, nullable=False, default=dict)
    message_count = Column(Integer, nullable=False, default=0)
    rag_used = Column(Boolean, nullable=False, default=False)
    rag_message_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
