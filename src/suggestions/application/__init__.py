"""
Suggestions Application Layer
=============================

Application layer for the suggestion lifecycle.

Contains:
- Services: SuggestionLifecycleManager, MessageDispatcher
- Polling: agent-side SuggestionPoller and HTTP suggestion source
- DTOs: API request/response models
"""

from src.suggestions.application.dto import (
    CustomerMessageRequest,
    AgentMessageRequest,
    ModeUpdateRequest,
    MessageInfo,
    CustomerMessageResponse,
    AgentMessageResponse,
    PendingSuggestionResponse,
    ConversationMessagesResponse,
    DebugTraceResponse,
    ModeResponse,
)
from src.suggestions.application.services import (
    IConversationStore,
    SuggestionLifecycleManager,
    MessageDispatcher,
    OFFLINE_MESSAGE_TYPE,
)
from src.suggestions.application.polling import (
    PollStatus,
    PollResult,
    SuggestionPoller,
    HttpSuggestionSource,
)

__all__ = [
    # DTOs
    "CustomerMessageRequest",
    "AgentMessageRequest",
    "ModeUpdateRequest",
    "MessageInfo",
    "CustomerMessageResponse",
    "AgentMessageResponse",
    "PendingSuggestionResponse",
    "ConversationMessagesResponse",
    "DebugTraceResponse",
    "ModeResponse",
    # Services
    "SuggestionLifecycleManager",
    "MessageDispatcher",
    "OFFLINE_MESSAGE_TYPE",
    # Polling
    "PollStatus",
    "PollResult",
    "SuggestionPoller",
    "HttpSuggestionSource",
    # Repository Interfaces
    "IConversationStore",
]
