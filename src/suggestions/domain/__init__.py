"""
Suggestions Domain Layer
========================

Domain layer for the suggestion lifecycle.

Contains:
- Entities: GenerationRequest, ConversationSuggestionState, PendingSuggestion
- Value Objects: BackoffPolicy, history snapshot builder

This layer is framework-agnostic and contains pure business logic.
"""

from src.suggestions.domain.entities import (
    DeliveryOutcome,
    GenerationRequest,
    StoredSuggestion,
    PendingSuggestion,
    ConversationSuggestionState,
    ConversationMessage,
)
from src.suggestions.domain.value_objects import (
    BackoffPolicy,
    build_history_snapshot,
)

__all__ = [
    "DeliveryOutcome",
    "GenerationRequest",
    "StoredSuggestion",
    "PendingSuggestion",
    "ConversationSuggestionState",
    "ConversationMessage",
    "BackoffPolicy",
    "build_history_snapshot",
]
