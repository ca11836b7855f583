from __future__ import annotations

import logging
import random
import re
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ComplianceBackend.crud import conversations as conversations_crud
from ComplianceBackend.crud import user_stats as user_stats_crud
from ComplianceBackend.database import describe_database_error
from ComplianceBackend.errors import DatabaseStorageError, ValidationError
from ComplianceBackend.models.chat_conversation_model import ChatConversation


logger = logging.getLogger(__name__)

MAX_LISTED_CONVERSATIONS = 100
MAX_CONVERSATION_ID_LENGTH = 128
_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_ID_KEYS = ("conversationId", "threadId", "sessionId")


def sanitize_conversation_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    trimmed = str(value).strip()
    if not trimmed:
        return None
    return _UNSAFE_ID_CHARS.sub("_", trimmed)


def generate_conversation_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"conv_{int(time.time() * 1000)}_{suffix}"


def _first_id(source: Any) -> Any:
    if not isinstance(source, dict):
        return None
    for key in _ID_KEYS:
        if source.get(key):
            return source[key]
    return None


# payload id -> metadata conversation/thread/session id -> first message's -> generated
def resolve_conversation_id(*, conversation_id: Any, metadata: dict, messages: list) -> str:
    first = messages[0] if messages else None
    conv_id = (
        sanitize_conversation_id(conversation_id)
        or sanitize_conversation_id(_first_id(metadata))
        or sanitize_conversation_id(_first_id(first))
        or generate_conversation_id()
    )
    if len(conv_id) > MAX_CONVERSATION_ID_LENGTH:
        raise ValidationError(
            f"Conversation id must be at most {MAX_CONVERSATION_ID_LENGTH} characters",
            details={"length": len(conv_id)},
        )
    return conv_id


# Milliseconds since epoch; undated or unparsable messages sort as time zero
def message_timestamp_ms(message: dict) -> float:
    value = message.get("timestamp") if isinstance(message, dict) else None
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return 0.0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp() * 1000.0
    return 0.0


# Union by message id, incoming fields win; messages without an id are dropped
def merge_messages(existing: list, incoming: list) -> list[dict]:
    by_id: dict[Any, dict] = {}
    for msg in existing or []:
        if isinstance(msg, dict) and msg.get("id"):
            by_id[msg["id"]] = msg
    dropped = 0
    for msg in incoming or []:
        if isinstance(msg, dict) and msg.get("id"):
            by_id[msg["id"]] = {**by_id.get(msg["id"], {}), **msg}
        else:
            dropped += 1
    if dropped:
        logger.info("conversation.merge: dropped %d message(s) without an id", dropped)
    # sorted() is stable, so equal timestamps keep first-seen order
    return sorted(by_id.values(), key=message_timestamp_ms)


def _uses_rag(message: dict) -> bool:
    sources = message.get("sources")
    return isinstance(sources, list) and len(sources) > 0


@dataclass(frozen=True)
class RagUsage:
    used: bool
    documents: list
    message_count: int


def compute_rag_usage(messages: list[dict]) -> RagUsage:
    rag_messages = [m for m in messages if _uses_rag(m)]
    docs: list = []
    seen = set()
    for m in rag_messages:
        for src in m["sources"]:
            doc_id = src.get("documentId") if isinstance(src, dict) else None
            if doc_id is None:
                continue
            key = str(doc_id)
            if key not in seen:
                seen.add(key)
                docs.append(doc_id)
    return RagUsage(used=bool(rag_messages), documents=docs, message_count=len(rag_messages))


# Only keys that changed: conversations on create, messages when added, ragConversations on flip
def compute_stats_delta(*, is_new: bool, added_messages: int, previously_used_rag: bool, uses_rag: bool) -> dict:
    delta: dict[str, int] = {}
    if is_new:
        delta["conversations"] = 1
    if added_messages > 0:
        delta["messages"] = added_messages
    if is_new:
        if uses_rag:
            delta["ragConversations"] = 1
    elif previously_used_rag != uses_rag:
        delta["ragConversations"] = 1 if uses_rag else -1
    return delta


@dataclass(frozen=True)
class MergeResult:
    conversation: dict
    delta: dict
    added_messages: int
    is_new: bool


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_conversation(conv: ChatConversation, *, include_messages: bool = True) -> dict:
    meta = dict(conv.meta or {})
    out = {
        "id": conv.conversation_id,
        "userId": conv.user_id,
        "metadata": meta,
        "messageCount": int(conv.message_count or 0),
        "ragUsed": bool(conv.rag_used),
        "ragDocuments": list(meta.get("ragDocuments") or []),
        "ragMessageCount": int(conv.rag_message_count or 0),
        "createdAt": _iso(conv.created_at),
        "updatedAt": _iso(conv.updated_at),
    }
    if include_messages:
        out["messages"] = list(conv.messages or [])
    return out


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Persists conversations by merging message lists, and keeps per-user aggregates in step via deltas
class ConversationService:
    def __init__(self, db: Session):
        self.db = db

    def merge_and_save(
        self,
        *,
        user_id: str,
        messages: Any,
        metadata: Any = None,
        conversation_id: Any = None,
    ) -> MergeResult:
        if not isinstance(messages, list) or not messages:
            raise ValidationError("Valid messages array is required")
        metadata = dict(metadata) if isinstance(metadata, dict) else {}

        conv_id = resolve_conversation_id(conversation_id=conversation_id, metadata=metadata, messages=messages)
        now = _utcnow()

        try:
            existing = conversations_crud.get_conversation(self.db, user_id, conv_id)
            result = self._merge_into(existing, user_id=user_id, conv_id=conv_id, messages=messages, metadata=metadata, now=now)
            if result is None:
                # Lost a create race; merge into the row the other writer committed
                existing = conversations_crud.get_conversation(self.db, user_id, conv_id)
                result = self._merge_into(existing, user_id=user_id, conv_id=conv_id, messages=messages, metadata=metadata, now=now)
            conv, delta, added, is_new = result
            user_stats_crud.apply_user_stats_delta(self.db, user_id, delta)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("conversation.save.failed: user_id=%s conversation_id=%s", user_id, conv_id)
            raise DatabaseStorageError(
                "Failed to save conversation",
                details={"conversationId": conv_id, **describe_database_error(e)},
            ) from e

        self.db.refresh(conv)
        logger.info(
            "conversation.save: user_id=%s conversation_id=%s new=%s added=%d delta=%s",
            user_id, conv_id, is_new, added, delta,
        )
        return MergeResult(conversation=serialize_conversation(conv), delta=delta, added_messages=added, is_new=is_new)

    def _merge_into(self, existing, *, user_id, conv_id, messages, metadata, now):
        existing_messages = list(existing.messages or []) if existing is not None else []
        merged = merge_messages(existing_messages, messages)
        added = max(0, len(merged) - len(existing_messages))
        usage = compute_rag_usage(merged)

        merged_meta = {
            **(dict(existing.meta or {}) if existing is not None else {}),
            **metadata,
            "conversationId": conv_id,
            "messageCount": len(merged),
            "lastActivity": now.isoformat(),
            "ragUsed": usage.used,
            "ragDocuments": usage.documents,
            "ragMessageCount": usage.message_count,
        }

        is_new = existing is None
        delta = compute_stats_delta(
            is_new=is_new,
            added_messages=added,
            previously_used_rag=bool(existing.rag_used) if existing is not None else False,
            uses_rag=usage.used,
        )

        if is_new:
            conv = ChatConversation(
                conversation_id=conv_id,
                user_id=user_id,
                messages=merged,
                meta=merged_meta,
                message_count=len(merged),
                rag_used=usage.used,
                rag_message_count=usage.message_count,
                created_at=now,
                updated_at=now,
            )
            if conversations_crud.create_conversation(self.db, conv) is None:
                return None
        else:
            conv = existing
            conv.messages = merged
            conv.meta = merged_meta
            conv.message_count = len(merged)
            conv.rag_used = usage.used
            conv.rag_message_count = usage.message_count
            conv.updated_at = now
            self.db.flush()

        return conv, delta, added, is_new

    def list_conversations(self, *, user_id: str, limit: int = MAX_LISTED_CONVERSATIONS) -> list[dict]:
        n = max(1, min(int(limit or MAX_LISTED_CONVERSATIONS), MAX_LISTED_CONVERSATIONS))
        rows = conversations_crud.list_conversations(self.db, user_id, limit=n)
        return [serialize_conversation(c, include_messages=False) for c in rows]

    # Removes every conversation and resets the aggregate row
    def delete_all(self, *, user_id: str) -> int:
        deleted = conversations_crud.delete_all_conversations(self.db, user_id)
        user_stats_crud.delete_user_stats(self.db, user_id)
        self.db.commit()
        logger.info("conversation.delete_all: user_id=%s deleted=%d", user_id, deleted)
        return deleted

    def get_stats(self, *, user_id: str) -> dict:
        return user_stats_crud.stats_to_dict(user_stats_crud.get_user_stats(self.db, user_id))

    def scan_stats(self, *, user_id: str) -> dict:
        t = conversations_crud.scan_conversation_totals(self.db, user_id)
        total = t["total_conversations"]
        return {
            "totalConversations": total,
            "totalMessages": t["total_messages"],
            "ragConversations": t["rag_conversations"],
            "ragUsagePercentage": round(t["rag_conversations"] / total * 100, 2) if total else 0,
            "avgMessagesPerConversation": round(t["total_messages"] / total, 2) if total else 0,
            "oldestConversation": _iso(t["oldest"]),
            "newestConversation": _iso(t["newest"]),
        }

    # Rebuilds the aggregate row from a full scan (explicit admin action only)
    def recompute_stats(self, *, user_id: str) -> dict:
        t = conversations_crud.scan_conversation_totals(self.db, user_id)
        user_stats_crud.replace_user_stats(
            self.db,
            user_id,
            conversations=t["total_conversations"],
            messages=t["total_messages"],
            rag_conversations=t["rag_conversations"],
        )
        self.db.commit()
        return self.get_stats(user_id=user_id)
