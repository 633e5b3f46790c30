"""
Suggestions Application Services
================================

Application services for suggestion delivery.

- SuggestionLifecycleManager: tokens, background generation, delivery check
- MessageDispatcher: stores conversation messages and routes customer
  messages according to the system mode
"""

import asyncio
import threading
import weakref
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import (
    Any, AsyncContextManager, Callable, Dict, List, Optional, Sequence, Set
)

from src.assistant.application import RAGPipeline
from src.assistant.domain import DebugTrace, History, freeze_history
from src.config import MessageSender, SystemMode, VALID_SYSTEM_MODES
from src.core import ValidationException
from src.shared.infrastructure.logging import get_logger
from src.suggestions.domain import (
    ConversationMessage,
    ConversationSuggestionState,
    DeliveryOutcome,
    GenerationRequest,
    PendingSuggestion,
    StoredSuggestion,
    build_history_snapshot,
)

logger = get_logger(__name__)

OFFLINE_MESSAGE_TYPE = "offline_notification"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Repository Interfaces ==========

class IConversationStore(ABC):
    """Interface for conversation message storage."""

    @abstractmethod
    async def append_message(
        self,
        conversation_id: str,
        sender: str,
        content: str,
        metadata: Optional[dict] = None
    ) -> ConversationMessage:
        """Store a message, creating the conversation if needed."""

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> List[ConversationMessage]:
        """All messages of a conversation, oldest first."""

    @abstractmethod
    async def latest_customer_message(self, conversation_id: str) -> Optional[ConversationMessage]:
        """Most recent visitor message."""

    @abstractmethod
    async def has_message_type(self, conversation_id: str, message_type: str) -> bool:
        """Whether a message with ``metadata.message_type`` exists."""


StoreScope = Callable[[], AsyncContextManager[IConversationStore]]


# ========== Lifecycle Manager ==========

class SuggestionLifecycleManager:
    """
    Per-conversation generation tokens and suggestion delivery.

    Every qualifying customer message (in HITL mode) and every agent reply
    issues a new token. Generations run as background tasks and store their
    result under the token they were started with. A stored result is
    delivered only if its token is still current when it is read, so a
    superseded generation is never shown even if it finishes later.
    Invalidated generations are not aborted.
    """

    def __init__(
        self,
        pipeline: RAGPipeline,
        mode: str = SystemMode.HITL,
        confidence: float = 0.85,
        retention_minutes: int = 60,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if mode not in VALID_SYSTEM_MODES:
            raise ValidationException(f"Unknown system mode: {mode}", {"mode": mode})
        self._pipeline = pipeline
        self._mode = mode
        self._confidence = confidence
        self._retention = timedelta(minutes=retention_minutes)
        self._clock = clock
        self._states: Dict[str, ConversationSuggestionState] = {}
        self._lock = threading.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._running: Dict[str, int] = {}
        self._token_floor = 0

    # ----- state -----

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def tracked_conversations(self) -> int:
        with self._lock:
            return len(self._states)

    def _state(self, conversation_id: str) -> ConversationSuggestionState:
        state = self._states.get(conversation_id)
        if state is None:
            state = ConversationSuggestionState(
                conversation_id=conversation_id, current_token=self._token_floor
            )
            self._states[conversation_id] = state
        return state

    def current_token(self, conversation_id: str) -> int:
        with self._lock:
            state = self._states.get(conversation_id)
            return state.current_token if state else self._token_floor

    def last_customer_message_at(self, conversation_id: str) -> Optional[datetime]:
        with self._lock:
            state = self._states.get(conversation_id)
            return state.last_customer_message_at if state else None

    def get_last_trace(self, conversation_id: str) -> Optional[DebugTrace]:
        """Debug trace of the most recent finished generation, current or not."""
        with self._lock:
            state = self._states.get(conversation_id)
            return state.last_trace if state else None

    # ----- triggers -----

    def on_customer_message(
        self,
        conversation_id: str,
        message: str,
        history: Optional[Sequence[Any]] = None,
        message_count: Optional[int] = None,
    ) -> Optional[GenerationRequest]:
        """
        Record a customer message and, in HITL mode, start a generation.

        Must be called from a running event loop. Returns the request that
        was started, or None when no generation was triggered.
        """
        token = self.register_customer_message(conversation_id, message)
        if token is None:
            return None
        return self.start_generation(conversation_id, token, message, history, message_count)

    def register_customer_message(self, conversation_id: str, message: str) -> Optional[int]:
        """
        Record a customer message and reserve its token.

        Returns the reserved token, or None when the message does not
        trigger a suggestion (mode is not HITL or the message is blank).
        Callers that store the message must reserve in the same order they
        store, so the newest stored question always holds the newest token.
        """
        now = self._clock()
        with self._lock:
            state = self._state(conversation_id)
            state.last_customer_message_at = now
            state.customer_message_count += 1
            state.last_activity_at = now

            if self._mode != SystemMode.HITL or not (message or "").strip():
                logger.debug(
                    "Customer message does not trigger a suggestion",
                    extra={"conversation_id": conversation_id, "mode": self._mode}
                )
                return None
            return state.issue_token()

    def start_generation(
        self,
        conversation_id: str,
        token: int,
        message: str,
        history: Optional[Sequence[Any]] = None,
        message_count: Optional[int] = None,
    ) -> Optional[GenerationRequest]:
        """
        Run the pipeline in the background under a reserved token.

        Nothing is started when the token was superseded in the meantime;
        its result could never be delivered.
        """
        with self._lock:
            state = self._state(conversation_id)
            if token != state.current_token or self._mode != SystemMode.HITL:
                logger.info(
                    "Token superseded before generation started",
                    extra={
                        "conversation_id": conversation_id,
                        "token": token,
                        "current_token": state.current_token,
                    }
                )
                return None

            request = GenerationRequest(
                token=token,
                conversation_id=conversation_id,
                question=message.strip(),
                history=freeze_history(history),
                created_at=self._clock(),
                message_count=message_count if message_count is not None else state.customer_message_count,
            )
            self._running[conversation_id] = self._running.get(conversation_id, 0) + 1

        task = asyncio.get_running_loop().create_task(self._execute(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            "Suggestion generation started",
            extra={
                "conversation_id": conversation_id,
                "token": request.token,
                "history_length": len(request.history),
            }
        )
        return request

    def on_agent_message(self, conversation_id: str) -> int:
        """Supersede any pending or in-flight suggestion. Returns the new token."""
        with self._lock:
            state = self._state(conversation_id)
            state.last_activity_at = self._clock()
            token = state.issue_token()
        logger.info(
            "Agent replied, suggestion token superseded",
            extra={"conversation_id": conversation_id, "token": token}
        )
        return token

    async def _execute(self, request: GenerationRequest) -> None:
        try:
            result = await self._pipeline.run(
                request.question,
                request.history,
                conversation_id=request.conversation_id,
            )
        except Exception as e:
            logger.error(
                "Suggestion generation crashed",
                extra={
                    "conversation_id": request.conversation_id,
                    "token": request.token,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            return
        finally:
            with self._lock:
                self._finish_running(request.conversation_id)

        stored = StoredSuggestion(
            token=request.token,
            request=request,
            result=result,
            completed_at=self._clock(),
        )
        with self._lock:
            state = self._state(request.conversation_id)
            is_current = state.store(stored)
            state.last_activity_at = stored.completed_at

        logger.info(
            "Suggestion stored" if is_current else "Superseded suggestion stored, will not be delivered",
            extra={
                "conversation_id": request.conversation_id,
                "token": request.token,
                "outcome": result.outcome,
                "is_current": is_current,
            }
        )

    def _finish_running(self, conversation_id: str) -> None:
        remaining = self._running.get(conversation_id, 0) - 1
        if remaining > 0:
            self._running[conversation_id] = remaining
        else:
            self._running.pop(conversation_id, None)

    # ----- delivery -----

    def check_delivery(self, conversation_id: str) -> str:
        if self._mode != SystemMode.HITL:
            return DeliveryOutcome.SUPPRESSED
        with self._lock:
            state = self._states.get(conversation_id)
            return state.check_delivery() if state else DeliveryOutcome.NOT_READY

    def get_pending_suggestion(self, conversation_id: str) -> Optional[PendingSuggestion]:
        """
        The suggestion for the conversation's current token, if finished.

        Returns None outside HITL mode, before the current generation has
        finished, and whenever only superseded results are stored.
        """
        if self._mode != SystemMode.HITL:
            return None

        with self._lock:
            state = self._states.get(conversation_id)
            if state is None:
                return None
            stored = state.deliverable()
            outcome = state.check_delivery()

        if stored is None:
            if outcome == DeliveryOutcome.STALE:
                logger.debug(
                    "Stored suggestion is stale, not delivered",
                    extra={"conversation_id": conversation_id}
                )
            return None

        result = stored.result
        return PendingSuggestion(
            suggestion=result.answer,
            confidence=self._confidence,
            token=stored.token,
            timestamp=stored.completed_at,
            metadata={
                "message_count": stored.request.message_count,
                "customer_message": stored.request.question,
                "sources": list(result.sources),
                "source_urls": list(result.source_urls),
                "contexts_used": result.contexts_used,
                "outcome": result.outcome,
            },
        )

    # ----- mode -----

    def set_mode(self, mode: str) -> str:
        """
        Switch the global mode. Returns the previous mode.

        Leaving HITL clears stored results and supersedes every token, so
        generations still in flight can never be delivered later.

        Raises:
            ValidationException: If the mode is unknown
        """
        if mode not in VALID_SYSTEM_MODES:
            raise ValidationException(
                f"Unknown system mode: {mode}",
                {"mode": mode, "valid": VALID_SYSTEM_MODES}
            )

        with self._lock:
            previous = self._mode
            self._mode = mode
            if previous == SystemMode.HITL and mode != SystemMode.HITL:
                for state in self._states.values():
                    state.clear()
                    state.issue_token()

        logger.info("System mode changed", extra={"previous_mode": previous, "mode": mode})
        return previous

    # ----- housekeeping -----

    def prune(self) -> int:
        """
        Drop results older than the retention window. Returns how many.

        Conversations left without results, generations or activity inside
        the window are forgotten. A forgotten conversation that comes back
        continues from the highest token ever forgotten, so tokens never
        repeat.
        """
        cutoff = self._clock() - self._retention
        with self._lock:
            removed = sum(state.prune(cutoff) for state in self._states.values())
            idle = [
                cid for cid, state in self._states.items()
                if cid not in self._running and state.is_idle(cutoff)
            ]
            for cid in idle:
                self._token_floor = max(self._token_floor, self._states.pop(cid).current_token)
        if removed or idle:
            logger.info(
                "Expired suggestions removed",
                extra={"removed": removed, "conversations_forgotten": len(idle)}
            )
        return removed

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight generations; cancel whatever is left after ``timeout``."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled unfinished generations on shutdown", extra={"count": len(pending)})


# ========== Message Dispatch ==========

class MessageDispatcher:
    """
    Stores conversation messages and applies the system mode.

    - hitl: a suggestion is generated for the agent
    - autopilot: the answer is generated and posted as an agent message
    - off: an offline notice is posted once per conversation
    """

    def __init__(
        self,
        lifecycle: SuggestionLifecycleManager,
        pipeline: RAGPipeline,
        store_scope: StoreScope,
    ):
        self._lifecycle = lifecycle
        self._pipeline = pipeline
        self._store_scope = store_scope
        # Storing a customer message and reserving its token happen under
        # one lock per conversation, so token order follows storage order.
        self._ordering_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _ordering_lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._ordering_locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._ordering_locks[conversation_id] = lock
        return lock

    async def handle_customer_message(self, conversation_id: str, content: str) -> Dict[str, Any]:
        """
        Store a customer message and route it by mode.

        Returns a summary with the stored message, the mode applied, the
        token reserved (hitl), any reply posted (off) and, for autopilot,
        the history snapshot the caller must hand to ``send_autopilot_reply``.

        Raises:
            ValidationException: If the message is empty
        """
        if not (content or "").strip():
            raise ValidationException("Message must not be empty", {"field": "content"})

        mode = self._lifecycle.mode
        reply = None
        async with self._store_scope() as store:
            async with self._ordering_lock(conversation_id):
                message = await store.append_message(conversation_id, MessageSender.VISITOR, content)
                token = self._lifecycle.register_customer_message(conversation_id, content)

            messages = await store.list_messages(conversation_id)
            history = build_history_snapshot(messages, until_message_id=message.id)
            message_count = 0
            for stored in messages:
                if stored.sender == MessageSender.VISITOR:
                    message_count += 1
                if stored.id == message.id:
                    break

            if mode == SystemMode.OFF and not await store.has_message_type(
                conversation_id, OFFLINE_MESSAGE_TYPE
            ):
                reply = await store.append_message(
                    conversation_id,
                    MessageSender.AGENT,
                    self._pipeline.prompts.offline_notice,
                    {"is_system_message": True, "message_type": OFFLINE_MESSAGE_TYPE},
                )
                logger.info("Offline notice sent", extra={"conversation_id": conversation_id})

        if token is not None:
            self._lifecycle.start_generation(
                conversation_id, token, content, history, message_count=message_count
            )

        return {
            "message": message,
            "mode": mode,
            "token": token,
            "reply": reply,
            "history": history,
            "message_count": message_count,
        }

    async def send_autopilot_reply(
        self,
        conversation_id: str,
        question: str,
        history: History,
        message_count: int,
    ) -> Optional[ConversationMessage]:
        """Generate an answer and post it as an agent message."""
        result = await self._pipeline.run(question, history, conversation_id=conversation_id)

        if self._lifecycle.mode != SystemMode.AUTOPILOT:
            logger.info(
                "Mode changed during autopilot generation, reply dropped",
                extra={"conversation_id": conversation_id, "mode": self._lifecycle.mode}
            )
            return None

        async with self._store_scope() as store:
            reply = await store.append_message(
                conversation_id,
                MessageSender.AGENT,
                result.answer,
                {
                    "is_autopilot_response": True,
                    "display_disclaimer": True,
                    "message_count": message_count,
                    "sources": result.source_urls,
                    "outcome": result.outcome,
                },
            )

        logger.info(
            "Autopilot reply sent",
            extra={"conversation_id": conversation_id, "outcome": result.outcome}
        )
        return reply

    async def handle_agent_message(
        self, conversation_id: str, content: str, agent_id: Optional[str] = None
    ) -> ConversationMessage:
        """
        Store an agent reply and supersede the conversation's suggestion token.

        Raises:
            ValidationException: If the message is empty
        """
        if not (content or "").strip():
            raise ValidationException("Message must not be empty", {"field": "content"})

        self._lifecycle.on_agent_message(conversation_id)
        async with self._store_scope() as store:
            return await store.append_message(
                conversation_id,
                MessageSender.AGENT,
                content,
                {"agent_id": agent_id} if agent_id else None,
            )

    async def list_messages(self, conversation_id: str) -> List[ConversationMessage]:
        async with self._store_scope() as store:
            return await store.list_messages(conversation_id)
