"""
Conversation store tests against an on-disk SQLite database.
"""

from pathlib import Path
from typing import AsyncIterator

import pytest
import pytest_asyncio

from src.infrastructure.database import close_database, create_tables, init_database
from src.suggestions.domain import build_history_snapshot
from src.suggestions.infrastructure import ConversationModel, conversation_store_scope


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncIterator[None]:
    init_database(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await create_tables()
    yield
    await close_database()


class TestSQLAlchemyConversationStore:
    @pytest.mark.asyncio
    async def test_messages_listed_in_insertion_order(self, database) -> None:
        async with conversation_store_scope() as store:
            await store.append_message("c1", "visitor", "Labas")
            await store.append_message("c1", "agent", "Sveiki", {"agent_id": "a1"})
            await store.append_message("c2", "visitor", "Kitas pokalbis")
            await store.append_message("c1", "visitor", "Kada dirbate?")

        async with conversation_store_scope() as store:
            messages = await store.list_messages("c1")

        assert [m.content for m in messages] == ["Labas", "Sveiki", "Kada dirbate?"]
        assert messages[1].metadata == {"agent_id": "a1"}
        assert all(m.conversation_id == "c1" for m in messages)

    @pytest.mark.asyncio
    async def test_latest_customer_message(self, database) -> None:
        async with conversation_store_scope() as store:
            await store.append_message("c1", "visitor", "Pirmas")
            await store.append_message("c1", "visitor", "Antras")
            await store.append_message("c1", "agent", "Atsakymas")

            latest = await store.latest_customer_message("c1")
            missing = await store.latest_customer_message("nope")

        assert latest.content == "Antras"
        assert missing is None

    @pytest.mark.asyncio
    async def test_has_message_type(self, database) -> None:
        async with conversation_store_scope() as store:
            await store.append_message("c1", "agent", "Neprieinami", {"message_type": "offline_notification"})

            assert await store.has_message_type("c1", "offline_notification") is True
            assert await store.has_message_type("c1", "other") is False
            assert await store.has_message_type("c2", "offline_notification") is False

    @pytest.mark.asyncio
    async def test_conversation_created_with_customer_timestamp(self, database) -> None:
        async with conversation_store_scope() as store:
            await store.append_message("c1", "agent", "Sveiki")
            conversation = await store._session.get(ConversationModel, "c1")
            assert conversation.last_customer_message_at is None

            await store.append_message("c1", "visitor", "Labas")
            assert conversation.last_customer_message_at is not None

    @pytest.mark.asyncio
    async def test_history_snapshot_from_stored_messages(self, database) -> None:
        async with conversation_store_scope() as store:
            await store.append_message("c1", "visitor", "Labas")
            await store.append_message("c1", "agent", "Sveiki")
            current = await store.append_message("c1", "visitor", "Kada dirbate?")
            messages = await store.list_messages("c1")

        history = build_history_snapshot(messages, until_message_id=current.id)

        assert [(t.question, t.answer) for t in history] == [("Labas", "Sveiki")]
