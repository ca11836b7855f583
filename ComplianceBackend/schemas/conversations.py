from typing import Any, Optional

from ComplianceBackend.schemas.documents import CamelModel


# Conversation write: messages are merged by id into whatever is already stored
class ConversationSaveRequest(CamelModel):
    messages: Optional[Any] = None
    metadata: Optional[Any] = None
    conversation_id: Optional[Any] = None
