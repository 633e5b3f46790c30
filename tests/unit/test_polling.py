"""
Tests for agent-side suggestion polling.

Organization
------------
- TestBackoffPolicy: delay schedule and validation
- TestSuggestionPoller: delivery, exhaustion, error retry, supersession
- TestRecovery: conversation re-selection
- TestHttpSuggestionSource: HTTP fetch against a mock transport
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from src.config import Settings
from src.suggestions.application import HttpSuggestionSource, PollStatus, SuggestionPoller
from src.suggestions.domain import BackoffPolicy


SUGGESTION = {"conversation_id": "c1", "suggestion": "Atsakymas.", "token": 3}
NO_SUGGESTION = {"conversation_id": "c1", "suggestion": None}


class RecordingSleep:
    """Records requested delays and returns immediately."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_policy(max_attempts: int = 5) -> BackoffPolicy:
    return BackoffPolicy(base_delay_ms=100, factor=2.0, max_delay_ms=500, max_attempts=max_attempts)


class TestBackoffPolicy:
    def test_delay_grows_then_caps(self) -> None:
        policy = make_policy()
        assert list(policy.delays()) == [100, 200, 400, 500, 500]

    def test_default_schedule_from_settings(self) -> None:
        policy = BackoffPolicy.from_settings(Settings())

        delays = list(policy.delays())

        assert len(delays) == 15
        assert delays[0] == 2000
        assert delays[1] == pytest.approx(2600)
        assert delays[-1] == 5000
        assert all(a <= b for a, b in zip(delays, delays[1:]))

    def test_recovery_policy_is_fixed(self) -> None:
        policy = BackoffPolicy.recovery_from_settings(Settings())
        assert list(policy.delays()) == [1500] * 8

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"base_delay_ms": -1},
            {"factor": 0.5},
            {"max_attempts": 0},
        ],
    )
    def test_invalid_policy_rejected(self, kwargs) -> None:
        params = {"base_delay_ms": 100, "factor": 1.5, "max_delay_ms": 500, "max_attempts": 3}
        params.update(kwargs)
        with pytest.raises(ValueError):
            BackoffPolicy(**params)


class TestSuggestionPoller:
    @pytest.mark.asyncio
    async def test_delivers_when_suggestion_appears(self) -> None:
        fetch = AsyncMock(side_effect=[None, None, SUGGESTION])
        sleep = RecordingSleep()
        poller = SuggestionPoller(fetch, make_policy(), sleep=sleep)

        result = await poller.poll("c1")

        assert result.status == PollStatus.DELIVERED
        assert result.delivered
        assert result.attempts == 3
        assert result.suggestion == SUGGESTION
        assert sleep.delays == [0.1, 0.2, 0.4]

    @pytest.mark.asyncio
    async def test_exhaustion_is_no_suggestion(self) -> None:
        fetch = AsyncMock(return_value=None)
        sleep = RecordingSleep()
        poller = SuggestionPoller(fetch, make_policy(max_attempts=4), sleep=sleep)

        result = await poller.poll("c1")

        assert result.status == PollStatus.NO_SUGGESTION
        assert result.attempts == 4
        assert fetch.await_count == 4
        assert sleep.delays == [0.1, 0.2, 0.4, 0.5]

    @pytest.mark.asyncio
    async def test_null_suggestion_payload_is_not_delivered(self) -> None:
        fetch = AsyncMock(return_value=NO_SUGGESTION)
        poller = SuggestionPoller(fetch, make_policy(max_attempts=2), sleep=RecordingSleep())

        result = await poller.poll("c1")

        assert result.status == PollStatus.NO_SUGGESTION

    @pytest.mark.asyncio
    async def test_errors_are_retried_and_counted(self) -> None:
        fetch = AsyncMock(side_effect=[httpx.ConnectError("refused"), RuntimeError("500"), SUGGESTION])
        poller = SuggestionPoller(fetch, make_policy(), sleep=RecordingSleep())

        result = await poller.poll("c1")

        assert result.delivered
        assert result.errors == 2

    @pytest.mark.asyncio
    async def test_persistent_errors_end_without_raising(self) -> None:
        fetch = AsyncMock(side_effect=RuntimeError("down"))
        poller = SuggestionPoller(fetch, make_policy(max_attempts=3), sleep=RecordingSleep())

        result = await poller.poll("c1")

        assert result.status == PollStatus.NO_SUGGESTION
        assert result.errors == 3

    @pytest.mark.asyncio
    async def test_cancel_ends_live_session(self) -> None:
        poller: Optional[SuggestionPoller] = None

        async def fetch(conversation_id: str):
            poller.cancel()
            return SUGGESTION

        poller = SuggestionPoller(fetch, make_policy(), sleep=RecordingSleep())

        result = await poller.poll("c1")

        assert result.status == PollStatus.CANCELLED
        assert result.suggestion is None

    @pytest.mark.asyncio
    async def test_new_session_supersedes_older_one(self) -> None:
        gate = asyncio.Event()

        async def sleep(seconds: float) -> None:
            await gate.wait()

        fetch = AsyncMock(return_value=SUGGESTION)
        poller = SuggestionPoller(fetch, make_policy(), sleep=sleep)

        first = asyncio.create_task(poller.poll("c1"))
        await asyncio.sleep(0)
        second = asyncio.create_task(poller.poll("c2"))
        await asyncio.sleep(0)
        gate.set()

        first_result, second_result = await asyncio.gather(first, second)

        assert first_result.status == PollStatus.CANCELLED
        assert second_result.delivered
        assert second_result.poll_id > first_result.poll_id
        fetch.assert_awaited_once_with("c2")


class TestRecovery:
    NOW = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    def make_poller(self, fetch) -> SuggestionPoller:
        return SuggestionPoller(
            fetch,
            make_policy(),
            recovery_policy=BackoffPolicy.fixed(1500, 3),
            recovery_window=timedelta(seconds=60),
            sleep=RecordingSleep(),
            clock=lambda: self.NOW,
        )

    @pytest.mark.asyncio
    async def test_stored_suggestion_returned_immediately(self) -> None:
        fetch = AsyncMock(return_value=SUGGESTION)

        result = await self.make_poller(fetch).recover("c1", self.NOW - timedelta(minutes=10))

        assert result.delivered
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_old_message_means_nothing_pending(self) -> None:
        fetch = AsyncMock(return_value=None)

        result = await self.make_poller(fetch).recover("c1", self.NOW - timedelta(seconds=61))

        assert result.status == PollStatus.NO_SUGGESTION
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_no_customer_message_means_nothing_pending(self) -> None:
        fetch = AsyncMock(return_value=None)

        result = await self.make_poller(fetch).recover("c1", None)

        assert result.status == PollStatus.NO_SUGGESTION
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_recent_message_resumes_short_polling(self) -> None:
        fetch = AsyncMock(side_effect=[None, None, SUGGESTION])
        poller = self.make_poller(fetch)

        result = await poller.recover("c1", self.NOW - timedelta(seconds=5))

        assert result.delivered
        assert fetch.await_count == 3
        assert poller._sleep.delays == [1.5, 1.5]

    @pytest.mark.asyncio
    async def test_recent_message_recovery_is_bounded(self) -> None:
        fetch = AsyncMock(return_value=None)

        result = await self.make_poller(fetch).recover("c1", self.NOW - timedelta(seconds=5))

        assert result.status == PollStatus.NO_SUGGESTION
        assert fetch.await_count == 1 + 3

    @pytest.mark.asyncio
    async def test_failed_check_still_falls_through_to_polling(self) -> None:
        fetch = AsyncMock(side_effect=[RuntimeError("down"), SUGGESTION])

        result = await self.make_poller(fetch).recover("c1", self.NOW - timedelta(seconds=5))

        assert result.delivered

    @pytest.mark.asyncio
    async def test_recovery_window_and_schedule_from_settings(self) -> None:
        config = Settings(
            recovery_window_seconds=10,
            recovery_delay_ms=200,
            recovery_max_attempts=2,
        )
        fetch = AsyncMock(return_value=None)
        sleep = RecordingSleep()
        poller = SuggestionPoller.from_settings(fetch, config, sleep=sleep, clock=lambda: self.NOW)

        stale = await poller.recover("c1", self.NOW - timedelta(seconds=15))
        assert stale.status == PollStatus.NO_SUGGESTION
        assert fetch.await_count == 1

        fresh = await poller.recover("c1", self.NOW - timedelta(seconds=5))
        assert fresh.status == PollStatus.NO_SUGGESTION
        assert fetch.await_count == 1 + 1 + 2
        assert sleep.delays == [0.2, 0.2]

    @pytest.mark.asyncio
    async def test_poll_schedule_from_settings(self) -> None:
        config = Settings(poll_base_delay_ms=100, poll_backoff_factor=2.0, poll_max_delay_ms=300, poll_max_attempts=3)
        sleep = RecordingSleep()
        poller = SuggestionPoller.from_settings(AsyncMock(return_value=None), config, sleep=sleep)

        result = await poller.poll("c1")

        assert result.status == PollStatus.NO_SUGGESTION
        assert sleep.delays == [0.1, 0.2, 0.3]


class TestHttpSuggestionSource:
    @staticmethod
    def client_for(payload: dict, status_code: int = 200) -> httpx.AsyncClient:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/conversations/c1/pending-suggestion"
            return httpx.Response(status_code, json=payload)

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_returns_payload_with_suggestion(self) -> None:
        source = HttpSuggestionSource("http://assistant.local/", client=self.client_for(SUGGESTION))

        assert await source("c1") == SUGGESTION
        await source.close()

    @pytest.mark.asyncio
    async def test_null_suggestion_returns_none(self) -> None:
        source = HttpSuggestionSource("http://assistant.local", client=self.client_for(NO_SUGGESTION))

        assert await source("c1") is None
        await source.close()

    @pytest.mark.asyncio
    async def test_http_error_raises_for_poller_retry(self) -> None:
        source = HttpSuggestionSource("http://assistant.local", client=self.client_for({}, status_code=503))

        with pytest.raises(httpx.HTTPStatusError):
            await source("c1")
        await source.close()
