from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.orm import Session

from ComplianceBackend.crud import documents as documents_crud
from ComplianceBackend.errors import ValidationError
from ComplianceBackend.services.document_metadata import serialize_document

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


def _parse_bool(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    return None


# Read-side views over a user's documents: filtered listing and storage totals
class DocumentLibraryService:
    def __init__(self, db: Session):
        self.db = db

    def list_documents(
        self,
        *,
        user_id: str,
        search: Optional[str] = None,
        file_type: Optional[str] = None,
        has_manual_summary: Any = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        limit: Any = None,
        offset: Any = None,
    ) -> dict:
        if sort_by not in documents_crud.SORTABLE_COLUMNS:
            raise ValidationError(
                f"Unsupported sort field: {sort_by}",
                details={"allowed": sorted(documents_crud.SORTABLE_COLUMNS)},
            )
        order = (sort_order or "desc").lower()
        if order not in ("asc", "desc"):
            raise ValidationError(f"Unsupported sort order: {sort_order}")

        try:
            n = int(limit) if limit is not None else DEFAULT_PAGE_SIZE
            skip = int(offset) if offset is not None else 0
        except (TypeError, ValueError) as e:
            raise ValidationError("limit and offset must be integers") from e
        n = max(1, min(n, MAX_PAGE_SIZE))
        skip = max(0, skip)

        rows, total = documents_crud.list_documents(
            self.db,
            user_id,
            search=(search or "").strip() or None,
            file_type=(file_type or "").strip() or None,
            has_manual_summary=_parse_bool(has_manual_summary),
            sort_by=sort_by,
            sort_order=order,
            limit=n,
            offset=skip,
        )
        return {
            "documents": [serialize_document(doc, chunk_count=count) for doc, count in rows],
            "total": total,
            "limit": n,
            "offset": skip,
        }

    def stats(self, *, user_id: str) -> dict:
        return documents_crud.document_stats(self.db, user_id)
