"""Business logic services"""
from .ai_response_service import AIResponseService, generate_reply, get_ai_response_service
from .conversation_store import ConversationStore, get_conversation_store, save_incoming_message, save_outgoing_message
from .knowledge_retriever import KnowledgeRetriever, get_knowledge_retriever, search
from .session_manager import SessionLifecycleManager, next_status
from .session_registry import SessionRegistry, get_session_registry

__all__ = [
    "AIResponseService",
    "generate_reply",
    "get_ai_response_service",
    "ConversationStore",
    "get_conversation_store",
    "save_incoming_message",
    "save_outgoing_message",
    "KnowledgeRetriever",
    "get_knowledge_retriever",
    "search",
    "SessionLifecycleManager",
    "next_status",
    "SessionRegistry",
    "get_session_registry",
]
