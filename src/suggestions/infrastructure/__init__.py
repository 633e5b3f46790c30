"""
Suggestions Infrastructure Layer
================================

Infrastructure implementations for the suggestion lifecycle.

Contains:
- Models: SQLAlchemy ORM models
- Repositories: conversation store
- External: cleanup scheduler
"""

from src.suggestions.infrastructure.models import ConversationModel, MessageModel
from src.suggestions.infrastructure.repositories import (
    SQLAlchemyConversationStore,
    conversation_store_scope,
)
from src.suggestions.infrastructure.external import SuggestionCleanupScheduler

__all__ = [
    "ConversationModel",
    "MessageModel",
    "SQLAlchemyConversationStore",
    "conversation_store_scope",
    "SuggestionCleanupScheduler",
]
