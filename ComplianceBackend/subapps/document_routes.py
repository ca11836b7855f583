import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ComplianceBackend.auth import require_user_id
from ComplianceBackend.database import get_db
from ComplianceBackend.rate_limiters.upload_rate_limiter import enforce_rate_limit, get_upload_rate_limiter
from ComplianceBackend.schemas.documents import DocumentUploadRequest, ManualSummaryRequest, MetadataPatchRequest
from ComplianceBackend.services.blob_store import get_blob_store
from ComplianceBackend.services.document_ingest_service import DocumentIngestService
from ComplianceBackend.services.document_library_service import DocumentLibraryService
from ComplianceBackend.services.document_metadata_service import DocumentMetadataService


router = APIRouter()
logger = logging.getLogger(__name__)


# Ingests a document: chunked text in Postgres, optional binary in the blob store
@router.post("/documents/upload")
def upload_document(
    payload: DocumentUploadRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
    limiter=Depends(get_upload_rate_limiter),
):
    enforce_rate_limit(limiter, user_id)
    svc = DocumentIngestService(db, blob_store=blob_store)
    return svc.ingest(user_id=user_id, document=payload.to_service_payload()).to_dict()


# Lists the user's documents with chunk counts, filters and pagination
@router.get("/documents")
def list_documents(
    search: Optional[str] = None,
    file_type: Optional[str] = Query(None, alias="fileType"),
    has_manual_summary: Optional[str] = Query(None, alias="hasManualSummary"),
    sort_by: str = Query("created_at", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    return DocumentLibraryService(db).list_documents(
        user_id=user_id,
        search=search,
        file_type=file_type,
        has_manual_summary=has_manual_summary,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )


@router.get("/documents/stats")
def document_stats(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return DocumentLibraryService(db).stats(user_id=user_id)


@router.delete("/documents/{document_id}")
def delete_document(
    document_id: str,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
):
    return DocumentMetadataService(db, blob_store=blob_store).delete(user_id=user_id, document_id=document_id)


# Partial metadata update with optional clears
@router.patch("/documents/{document_id}/metadata")
def patch_document_metadata(
    document_id: str,
    payload: MetadataPatchRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    document = DocumentMetadataService(db).patch(
        user_id=user_id,
        document_id=document_id,
        updates=payload.resolved_updates(),
        clear_fields=payload.clear_fields,
    )
    return {"document": document}


@router.get("/documents/{document_id}/manual-summary")
def get_manual_summary(document_id: str, user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return DocumentMetadataService(db).get_manual_summary(user_id=user_id, document_id=document_id)


@router.put("/documents/{document_id}/manual-summary")
def set_manual_summary(
    document_id: str,
    payload: ManualSummaryRequest,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    return DocumentMetadataService(db).set_manual_summary(
        user_id=user_id, document_id=document_id, manual_summary=payload.manual_summary
    )


@router.delete("/documents/{document_id}/manual-summary")
def clear_manual_summary(document_id: str, user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    return DocumentMetadataService(db).clear_manual_summary(user_id=user_id, document_id=document_id)
