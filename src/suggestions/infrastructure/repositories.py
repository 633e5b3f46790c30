"""
Suggestions Infrastructure Repositories
=======================================

SQLAlchemy implementation of the conversation store.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import MessageSender
from src.core import RepositoryException
from src.infrastructure.database import get_session_context
from src.suggestions.application import IConversationStore
from src.suggestions.domain import ConversationMessage
from src.suggestions.infrastructure.models import ConversationModel, MessageModel


def _to_domain(model: MessageModel) -> ConversationMessage:
    return ConversationMessage(
        id=str(model.id),
        conversation_id=model.conversation_id,
        sender=model.sender,
        content=model.content,
        created_at=model.created_at,
        metadata=dict(model.message_metadata or {}),
    )


class SQLAlchemyConversationStore(IConversationStore):
    """
    SQLAlchemy implementation of the conversation store.

    The session is committed by its owner (see ``conversation_store_scope``).
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _ensure_conversation(self, conversation_id: str, now: datetime) -> ConversationModel:
        conversation = await self._session.get(ConversationModel, conversation_id)
        if conversation is None:
            conversation = ConversationModel(id=conversation_id, created_at=now, updated_at=now)
            self._session.add(conversation)
        return conversation

    async def append_message(
        self,
        conversation_id: str,
        sender: str,
        content: str,
        metadata: Optional[dict] = None
    ) -> ConversationMessage:
        now = datetime.now(timezone.utc)
        try:
            conversation = await self._ensure_conversation(conversation_id, now)
            conversation.updated_at = now
            if sender == MessageSender.VISITOR:
                conversation.last_customer_message_at = now

            model = MessageModel(
                id=uuid4(),
                conversation_id=conversation_id,
                sender=sender,
                content=content,
                message_metadata=metadata or {},
                created_at=now,
            )
            self._session.add(model)
            await self._session.flush()
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to store message: {e}",
                {"conversation_id": conversation_id}
            )

        return _to_domain(model)

    async def list_messages(self, conversation_id: str) -> List[ConversationMessage]:
        stmt = (
            select(MessageModel)
            .where(MessageModel.conversation_id == conversation_id)
            .order_by(MessageModel.seq)
        )
        result = await self._session.execute(stmt)
        return [_to_domain(m) for m in result.scalars().all()]

    async def latest_customer_message(self, conversation_id: str) -> Optional[ConversationMessage]:
        stmt = (
            select(MessageModel)
            .where(
                MessageModel.conversation_id == conversation_id,
                MessageModel.sender == MessageSender.VISITOR,
            )
            .order_by(MessageModel.seq.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _to_domain(model) if model else None

    async def has_message_type(self, conversation_id: str, message_type: str) -> bool:
        # JSON path operators differ between backends, so filter in Python
        messages = await self.list_messages(conversation_id)
        return any(m.message_type == message_type for m in messages)


@asynccontextmanager
async def conversation_store_scope() -> AsyncGenerator[IConversationStore, None]:
    """A conversation store bound to its own committed-on-exit session."""
    async with get_session_context() as session:
        yield SQLAlchemyConversationStore(session)
