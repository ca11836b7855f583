from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel


# Shared config: camelCase on the wire, snake_case in Python, unknown keys ignored
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# Uploaded document; fields are loosely typed so the ingest service owns validation
class DocumentPayload(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")
    filename: Optional[str] = None
    text: Optional[Any] = None
    content: Optional[str] = None
    encoding: Optional[str] = None
    mime_type: Optional[str] = None
    type: Optional[str] = None
    file_type: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[Any] = None
    metadata: Optional[Any] = None
    title: Optional[Any] = None
    summary: Optional[Any] = None
    description: Optional[Any] = None
    version: Optional[Any] = None
    chunk_size: Optional[Any] = None
    document_id: Optional[Any] = None
    id: Optional[Any] = None
    original_filename: Optional[str] = None


# Accepts either {"document": {...}} or the document fields at the top level
class DocumentUploadRequest(CamelModel):
    document: DocumentPayload

    @model_validator(mode="before")
    @classmethod
    def _wrap_flat_payload(cls, data: Any) -> Any:
        if isinstance(data, dict) and not isinstance(data.get("document"), dict):
            return {"document": data}
        return data

    def to_service_payload(self) -> dict:
        return self.document.model_dump(by_alias=True, exclude_none=True)


class MetadataPatchRequest(CamelModel):
    metadata: Optional[dict] = None
    updates: Optional[dict] = None
    clear_fields: Optional[List[Any]] = None

    def resolved_updates(self) -> dict:
        return {**(self.metadata or {}), **(self.updates or {})}


class ManualSummaryRequest(CamelModel):
    manual_summary: Optional[Any] = None


class SearchOptions(CamelModel):
    limit: Optional[Any] = None
    document_ids: Optional[List[Any]] = None


class SearchRequest(CamelModel):
    query: Optional[Any] = None
    document_ids: Optional[List[Any]] = None
    limit: Optional[Any] = None
    options: Optional[SearchOptions] = None

    def resolved_limit(self) -> Any:
        if self.limit is not None:
            return self.limit
        return self.options.limit if self.options else None

    def resolved_document_ids(self) -> Optional[List[Any]]:
        if self.document_ids is not None:
            return self.document_ids
        return self.options.document_ids if self.options else None


class SummariesRequest(CamelModel):
    document_ids: Optional[Any] = None


class DocumentChatRequest(CamelModel):
    message: Optional[Any] = None
    document_ids: Optional[List[Any]] = None
    conversation_history: Optional[List[Any]] = None
    provider: Optional[str] = None
    model: Optional[str] = None
