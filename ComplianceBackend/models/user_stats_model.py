from sqlalchemy import Column, DateTime, Integer, String, func

from ComplianceBackend.database import Base


# Per-user conversation aggregates, maintained by clamped deltas on every conversation write
class UserConversationStats(Base):
    __tablename__ = "user_conversation_stats"

    user_id = Column(String(128), primary_key=True)
    conversations = Column(Integer, nullable=False, default=0)
    messages = Column(Integer, nullable=False, default=0)
    rag_conversations = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
