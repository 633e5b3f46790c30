"""
Suggestions Domain Entities
===========================

Pure Python domain entities for the suggestion lifecycle.

ConversationSuggestionState is the only mutable shared state: it holds the
current token of a conversation and the results stored under each token.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.assistant.domain import DebugTrace, GenerationResult, History


class DeliveryOutcome(str):
    """Result of a delivery check at read time."""
    DELIVERED = "delivered"
    NOT_READY = "not_ready"      # nothing stored under the current token yet
    STALE = "stale"              # only superseded results are stored
    SUPPRESSED = "suppressed"    # system is not in HITL mode


@dataclass(frozen=True)
class GenerationRequest:
    """One triggered generation. Never mutated after creation."""
    token: int
    conversation_id: str
    question: str
    history: History
    created_at: datetime
    message_count: int = 0


@dataclass(frozen=True)
class StoredSuggestion:
    """A finished pipeline result kept under the token it was generated for."""
    token: int
    request: GenerationRequest
    result: GenerationResult
    completed_at: datetime


@dataclass(frozen=True)
class PendingSuggestion:
    """A suggestion that passed the delivery check."""
    suggestion: str
    confidence: float
    token: int
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggestion": self.suggestion,
            "confidence": self.confidence,
            "token": self.token,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass
class ConversationSuggestionState:
    """
    Per-conversation token and stored results.

    Tokens only ever increase, so a result stored under an older token can
    never match again. Callers serialize access with the manager's lock.
    """
    conversation_id: str
    current_token: int = 0
    results: Dict[int, StoredSuggestion] = field(default_factory=dict)
    last_trace: Optional[DebugTrace] = None
    last_customer_message_at: Optional[datetime] = None
    customer_message_count: int = 0
    last_activity_at: Optional[datetime] = None

    def issue_token(self) -> int:
        """Supersede the current token and return the new one."""
        self.current_token += 1
        return self.current_token

    def store(self, suggestion: StoredSuggestion) -> bool:
        """
        Keep a finished result. Returns whether it is current.

        Results under tokens older than the stored one are dropped.
        """
        for token in [t for t in self.results if t < suggestion.token]:
            del self.results[token]
        self.results[suggestion.token] = suggestion
        self.last_trace = suggestion.result.debug_trace
        return suggestion.token == self.current_token

    def deliverable(self) -> Optional[StoredSuggestion]:
        return self.results.get(self.current_token)

    def check_delivery(self) -> str:
        if self.current_token in self.results:
            return DeliveryOutcome.DELIVERED
        if self.results:
            return DeliveryOutcome.STALE
        return DeliveryOutcome.NOT_READY

    def clear(self) -> None:
        """Drop stored results but keep the token sequence."""
        self.results.clear()

    def prune(self, cutoff: datetime) -> int:
        """Drop results completed before ``cutoff``. Returns how many were dropped."""
        expired = [t for t, s in self.results.items() if s.completed_at < cutoff]
        for token in expired:
            del self.results[token]
        return len(expired)

    def is_idle(self, cutoff: datetime) -> bool:
        """No stored results and no activity since ``cutoff``."""
        return not self.results and (
            self.last_activity_at is None or self.last_activity_at < cutoff
        )


@dataclass(frozen=True)
class ConversationMessage:
    """A message read from the conversation store."""
    id: str
    conversation_id: str
    sender: str
    content: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def message_type(self) -> Optional[str]:
        return self.metadata.get("message_type")
