from .factory import build_conversation_store
from .store import ConversationStore

__all__ = ["ConversationStore", "build_conversation_store"]
