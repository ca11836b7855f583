from __future__ import annotations

from typing import Mapping, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ComplianceBackend.models.user_stats_model import UserConversationStats

# Delta key (API shape) -> column
STAT_COLUMNS = {
    "conversations": "conversations",
    "messages": "messages",
    "ragConversations": "rag_conversations",
}


# Pure form of the clamped addition: every counter stays >= 0
def apply_stats_delta(stats: Mapping[str, int], delta: Mapping[str, int]) -> dict:
    out = dict(stats)
    for key, value in delta.items():
        out[key] = max(0, int(out.get(key) or 0) + int(value))
    return out


def get_user_stats(db: Session, user_id: str) -> Optional[UserConversationStats]:
    return db.execute(
        select(UserConversationStats).where(UserConversationStats.user_id == user_id)
    ).scalar_one_or_none()


def _dialect_insert(db: Session):
    return pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert


# Atomic upsert: new rows start at max(0, delta); existing rows get max(0, current + delta)
def apply_user_stats_delta(db: Session, user_id: str, delta: Mapping[str, int]) -> None:
    changes = {STAT_COLUMNS[k]: int(v) for k, v in delta.items() if k in STAT_COLUMNS and int(v) != 0}
    if not changes:
        return

    table = UserConversationStats.__table__
    initial = {col: max(0, changes.get(col, 0)) for col in STAT_COLUMNS.values()}
    stmt = _dialect_insert(db)(table).values(user_id=user_id, **initial)

    set_ = {"last_updated": func.now()}
    for col, d in changes.items():
        current = table.c[col]
        set_[col] = case((current + d < 0, 0), else_=current + d)

    stmt = stmt.on_conflict_do_update(index_elements=[table.c.user_id], set_=set_)
    db.execute(stmt)


# Overwrites the aggregate row; only used by the explicit recompute path
def replace_user_stats(db: Session, user_id: str, *, conversations: int, messages: int, rag_conversations: int) -> None:
    table = UserConversationStats.__table__
    values = {
        "conversations": max(0, conversations),
        "messages": max(0, messages),
        "rag_conversations": max(0, rag_conversations),
    }
    stmt = _dialect_insert(db)(table).values(user_id=user_id, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.user_id],
        set_={**values, "last_updated": func.now()},
    )
    db.execute(stmt)


def delete_user_stats(db: Session, user_id: str) -> None:
    db.execute(delete(UserConversationStats).where(UserConversationStats.user_id == user_id))


def stats_to_dict(row: Optional[UserConversationStats]) -> dict:
    if row is None:
        return {"conversations": 0, "messages": 0, "ragConversations": 0, "lastUpdated": None}
    return {
        "conversations": int(row.conversations or 0),
        "messages": int(row.messages or 0),
        "ragConversations": int(row.rag_conversations or 0),
        "lastUpdated": row.last_updated.isoformat() if row.last_updated else None,
    }
