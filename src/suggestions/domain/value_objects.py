"""
Suggestions Value Objects
=========================

Immutable value objects for the suggestion lifecycle.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

from src.assistant.domain import ConversationTurn, History
from src.config import MessageSender, Settings
from src.suggestions.domain.entities import ConversationMessage


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Poll schedule: ``delay(i) = min(base * factor ** i, cap)`` for
    ``i < max_attempts``.
    """
    base_delay_ms: int
    factor: float
    max_delay_ms: int
    max_attempts: int

    def __post_init__(self):
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("Delays must not be negative")
        if self.factor < 1.0:
            raise ValueError("Backoff factor must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_ms(self, attempt: int) -> float:
        return min(self.base_delay_ms * self.factor ** attempt, self.max_delay_ms)

    def delays(self) -> Iterator[float]:
        return (self.delay_ms(i) for i in range(self.max_attempts))

    @classmethod
    def fixed(cls, delay_ms: int, max_attempts: int) -> "BackoffPolicy":
        return cls(
            base_delay_ms=delay_ms,
            factor=1.0,
            max_delay_ms=delay_ms,
            max_attempts=max_attempts,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_delay_ms=settings.poll_base_delay_ms,
            factor=settings.poll_backoff_factor,
            max_delay_ms=settings.poll_max_delay_ms,
            max_attempts=settings.poll_max_attempts,
        )

    @classmethod
    def recovery_from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls.fixed(settings.recovery_delay_ms, settings.recovery_max_attempts)


def build_history_snapshot(
    messages: Sequence[ConversationMessage],
    until_message_id: Optional[str] = None,
) -> History:
    """
    Pair stored messages into history turns, oldest first.

    A visitor message opens a turn; agent messages that follow fill its
    answer. System messages are skipped. With ``until_message_id`` the
    snapshot stops at that (triggering) message, so messages stored after
    it never leak into its history. Consecutive visitor messages each open
    their own turn.
    """
    turns: List[List[str]] = []
    for message in messages:
        if message.id == until_message_id:
            break
        if message.sender == MessageSender.VISITOR:
            turns.append([message.content, ""])
        elif message.sender == MessageSender.AGENT and turns:
            if message.message_type == "offline_notification":
                continue
            question, answer = turns[-1]
            turns[-1][1] = f"{answer}\n{message.content}" if answer else message.content
    return tuple(ConversationTurn(question=q, answer=a) for q, a in turns)
