from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from ComplianceBackend.auth import require_user_id
from ComplianceBackend.database import get_db
from ComplianceBackend.schemas.conversations import ConversationSaveRequest
from ComplianceBackend.services.conversation_service import MAX_LISTED_CONVERSATIONS, ConversationService


router = APIRouter()


# Merges the posted messages into the stored conversation; 201 when it is new
@router.post("/conversations")
def save_conversation(
    payload: ConversationSaveRequest,
    response: Response,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    result = ConversationService(db).merge_and_save(
        user_id=user_id,
        messages=payload.messages,
        metadata=payload.metadata,
        conversation_id=payload.conversation_id,
    )
    response.status_code = 201 if result.is_new else 200
    conv = result.conversation
    return {
        "id": conv["id"],
        "message": "Conversation saved successfully" if result.is_new else "Conversation updated successfully",
        "conversation": conv,
        "messageCount": conv["messageCount"],
        "ragUsed": conv["ragUsed"],
        "ragDocuments": len(conv["ragDocuments"]),
        "appendedMessages": result.added_messages,
        "isNewConversation": result.is_new,
        "delta": result.delta,
    }


@router.get("/conversations")
def list_conversations(
    limit: int = MAX_LISTED_CONVERSATIONS,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    conversations = ConversationService(db).list_conversations(user_id=user_id, limit=limit)
    return {"conversations": conversations, "total": len(conversations)}


@router.delete("/conversations")
def delete_all_conversations(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    deleted = ConversationService(db).delete_all(user_id=user_id)
    return {"success": True, "deleted": deleted}


@router.get("/conversations/stats")
def conversation_stats(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return {"stats": ConversationService(db).get_stats(user_id=user_id)}


@router.get("/conversations/stats/scan")
def conversation_stats_scan(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return {"stats": ConversationService(db).scan_stats(user_id=user_id)}


@router.post("/conversations/stats/recompute")
def conversation_stats_recompute(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return {"stats": ConversationService(db).recompute_stats(user_id=user_id)}
