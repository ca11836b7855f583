from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ComplianceBackend.auth import require_user_id
from ComplianceBackend.database import get_db
from ComplianceBackend.schemas.documents import DocumentChatRequest, SearchRequest, SummariesRequest
from ComplianceBackend.services.chat_completion import DocumentChatService
from ComplianceBackend.services.retrieval_service import RetrievalService


router = APIRouter()


def get_document_chat_service(db: Session = Depends(get_db)) -> DocumentChatService:
    return DocumentChatService(RetrievalService(db))


# Full-text search over the user's chunks, substring fallback when nothing ranks
@router.post("/documents/search")
def search_documents(
    payload: SearchRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    query = payload.query.strip() if isinstance(payload.query, str) else payload.query
    results = RetrievalService(db).search(
        user_id=user_id,
        query=query,
        document_ids=payload.resolved_document_ids(),
        limit=payload.resolved_limit(),
    )
    return {"query": query, "results": results}


@router.post("/documents/summaries")
def document_summaries(
    payload: SummariesRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    summaries = RetrievalService(db).get_document_summaries(user_id=user_id, document_ids=payload.document_ids)
    return {"summaries": summaries}


# Answers a question from the user's documents (retrieval + completion)
@router.post("/chat/documents")
async def chat_with_documents(
    payload: DocumentChatRequest,
    user_id: str = Depends(require_user_id),
    svc: DocumentChatService = Depends(get_document_chat_service),
):
    reply = await svc.chat(
        user_id=user_id,
        message=payload.message,
        document_ids=payload.document_ids,
        history=payload.conversation_history,
        provider=payload.provider,
        model=payload.model,
    )
    return reply.to_dict()
