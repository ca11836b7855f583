# Import all SQLAlchemy models so Alembic autogenerate can discover tables via Base.metadata.
# Alembic's env.py imports this package for side effects.


from .chat_conversation_model import ChatConversation  # noqa: F401
from .document_models import RagDocument, RagDocumentChunk  # noqa: F401
from .user_stats_model import UserConversationStats  # noqa: F401
