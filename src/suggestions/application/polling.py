"""
Agent-side Suggestion Polling
=============================

Client for agent tooling that waits for a suggestion to become available.

Polling is plain request/response. Each poll session sleeps according to a
BackoffPolicy before every fetch. Starting a new session, or calling
cancel(), ends any older session of the same poller at its next check.
Fetch errors count as attempts and are retried; running out of attempts
ends with ``no_suggestion``, never with an exception.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from src.config import Settings, settings
from src.shared.infrastructure.logging import get_logger
from src.suggestions.domain import BackoffPolicy

logger = get_logger(__name__)

SuggestionFetcher = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]
Sleeper = Callable[[float], Awaitable[Any]]


class PollStatus(str):
    """Terminal states of a poll session."""
    DELIVERED = "delivered"
    NO_SUGGESTION = "no_suggestion"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PollResult:
    """Outcome of one poll session."""
    status: str
    poll_id: int
    attempts: int
    errors: int = 0
    suggestion: Optional[Dict[str, Any]] = None

    @property
    def delivered(self) -> bool:
        return self.status == PollStatus.DELIVERED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SuggestionPoller:
    """
    Polls a suggestion source with exponential backoff.

    One poller serves one agent view: only its most recent session is live.
    """

    def __init__(
        self,
        fetch: SuggestionFetcher,
        policy: BackoffPolicy,
        recovery_policy: Optional[BackoffPolicy] = None,
        recovery_window: Optional[timedelta] = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._fetch = fetch
        self._policy = policy
        self._recovery_policy = recovery_policy or BackoffPolicy.recovery_from_settings(settings)
        self._recovery_window = (
            recovery_window if recovery_window is not None
            else timedelta(seconds=settings.recovery_window_seconds)
        )
        self._sleep = sleep
        self._clock = clock
        self._poll_id = 0

    @classmethod
    def from_settings(
        cls,
        fetch: SuggestionFetcher,
        config: Optional[Settings] = None,
        **kwargs: Any,
    ) -> "SuggestionPoller":
        """Poller with both schedules and the recovery window taken from settings."""
        config = config or settings
        return cls(
            fetch,
            BackoffPolicy.from_settings(config),
            recovery_policy=BackoffPolicy.recovery_from_settings(config),
            recovery_window=timedelta(seconds=config.recovery_window_seconds),
            **kwargs,
        )

    def cancel(self) -> None:
        """End the live session, e.g. when the agent replies or switches conversation."""
        self._poll_id += 1

    def _superseded(self, poll_id: int) -> bool:
        return poll_id != self._poll_id

    async def poll(
        self,
        conversation_id: str,
        policy: Optional[BackoffPolicy] = None,
    ) -> PollResult:
        """Start a new session and wait for a suggestion."""
        policy = policy or self._policy
        self._poll_id += 1
        poll_id = self._poll_id
        errors = 0

        for attempt in range(policy.max_attempts):
            await self._sleep(policy.delay_ms(attempt) / 1000)
            if self._superseded(poll_id):
                return self._cancelled(conversation_id, poll_id, attempt, errors)

            try:
                suggestion = await self._fetch(conversation_id)
            except Exception as e:
                errors += 1
                logger.warning(
                    "Suggestion poll failed, retrying",
                    extra={
                        "conversation_id": conversation_id,
                        "poll_id": poll_id,
                        "attempt": attempt + 1,
                        "error": str(e),
                    }
                )
                continue

            if self._superseded(poll_id):
                return self._cancelled(conversation_id, poll_id, attempt + 1, errors)

            if suggestion and suggestion.get("suggestion"):
                logger.info(
                    "Suggestion delivered to agent",
                    extra={"conversation_id": conversation_id, "poll_id": poll_id, "attempt": attempt + 1}
                )
                return PollResult(
                    status=PollStatus.DELIVERED,
                    poll_id=poll_id,
                    attempts=attempt + 1,
                    errors=errors,
                    suggestion=suggestion,
                )

        logger.info(
            "Suggestion polling exhausted",
            extra={
                "conversation_id": conversation_id,
                "poll_id": poll_id,
                "attempts": policy.max_attempts,
                "errors": errors,
            }
        )
        return PollResult(
            status=PollStatus.NO_SUGGESTION,
            poll_id=poll_id,
            attempts=policy.max_attempts,
            errors=errors,
        )

    async def recover(
        self,
        conversation_id: str,
        last_customer_message_at: Optional[datetime],
    ) -> PollResult:
        """
        Restore the suggestion view after re-selecting a conversation.

        A finished suggestion is returned immediately. Otherwise, if the last
        customer message is recent enough that a generation may still be
        running, a short poll session follows.
        """
        self._poll_id += 1
        poll_id = self._poll_id

        try:
            suggestion = await self._fetch(conversation_id)
        except Exception as e:
            logger.warning(
                "Suggestion recovery check failed",
                extra={"conversation_id": conversation_id, "error": str(e)}
            )
            suggestion = None

        if self._superseded(poll_id):
            return self._cancelled(conversation_id, poll_id, 1, 0)
        if suggestion and suggestion.get("suggestion"):
            return PollResult(
                status=PollStatus.DELIVERED, poll_id=poll_id, attempts=1, suggestion=suggestion
            )

        if last_customer_message_at is None or (
            self._clock() - last_customer_message_at > self._recovery_window
        ):
            return PollResult(status=PollStatus.NO_SUGGESTION, poll_id=poll_id, attempts=1)

        logger.info(
            "Recent customer message, polling for in-progress suggestion",
            extra={"conversation_id": conversation_id}
        )
        return await self.poll(conversation_id, self._recovery_policy)

    def _cancelled(self, conversation_id: str, poll_id: int, attempts: int, errors: int) -> PollResult:
        logger.debug(
            "Suggestion poll superseded",
            extra={"conversation_id": conversation_id, "poll_id": poll_id}
        )
        return PollResult(status=PollStatus.CANCELLED, poll_id=poll_id, attempts=attempts, errors=errors)


class HttpSuggestionSource:
    """
    Fetches pending suggestions from the service's HTTP API.

    Usable as the ``fetch`` callable of SuggestionPoller.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def __call__(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        """
        Raises:
            httpx.HTTPError: On transport errors or non-2xx responses
        """
        client = await self._get_client()
        response = await client.get(
            f"{self._base_url}/conversations/{conversation_id}/pending-suggestion"
        )
        response.raise_for_status()
        data = response.json()
        return data if data.get("suggestion") else None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
