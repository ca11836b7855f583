from __future__ import annotations

from typing import Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ComplianceBackend.models.chat_conversation_model import ChatConversation


def get_conversation(db: Session, user_id: str, conversation_id: str) -> Optional[ChatConversation]:
    stmt = select(ChatConversation).where(
        ChatConversation.user_id == user_id,
        ChatConversation.conversation_id == conversation_id,
    )
    return db.execute(stmt).scalar_one_or_none()


# Inserts a new conversation; returns None if a concurrent writer created it first
def create_conversation(db: Session, conv: ChatConversation) -> Optional[ChatConversation]:
    # Nested transaction so an IntegrityError doesn't discard the caller's transaction
    try:
        with db.begin_nested():
            db.add(conv)
            db.flush()
    except IntegrityError:
        return None
    return conv


def list_conversations(db: Session, user_id: str, *, limit: int = 100) -> list[ChatConversation]:
    stmt = (
        select(ChatConversation)
        .where(ChatConversation.user_id == user_id)
        .order_by(ChatConversation.updated_at.desc(), ChatConversation.id.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def delete_all_conversations(db: Session, user_id: str) -> int:
    res = db.execute(delete(ChatConversation).where(ChatConversation.user_id == user_id))
    return int(res.rowcount or 0)


# Single pass over the user's conversations for the scan-based statistics
def scan_conversation_totals(db: Session, user_id: str) -> dict:
    row = db.execute(
        select(
            func.count(ChatConversation.id),
            func.coalesce(func.sum(ChatConversation.message_count), 0),
            func.coalesce(func.sum(case((ChatConversation.rag_used.is_(True), 1), else_=0)), 0),
            func.min(ChatConversation.created_at),
            func.max(ChatConversation.created_at),
        ).where(ChatConversation.user_id == user_id)
    ).one()
    return {
        "total_conversations": int(row[0] or 0),
        "total_messages": int(row[1] or 0),
        "rag_conversations": int(row[2] or 0),
        "oldest": row[3],
        "newest": row[4],
    }