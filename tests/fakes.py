"""
Test doubles for the pipeline collaborators and the conversation store.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

from src.assistant.application import IChatModel, ISimilaritySearch
from src.suggestions.application import IConversationStore
from src.suggestions.domain import ConversationMessage


class FakeChatModel(IChatModel):
    """
    Chat model returning canned replies per operation.

    A reply may be a string, an exception instance (raised) or a callable
    taking the messages. ``gate`` blocks every call until it is set.
    """

    def __init__(self, replies: Optional[Dict[str, Any]] = None, gate: Optional[asyncio.Event] = None):
        self.replies = replies or {}
        self.gate = gate
        self.calls: List[Dict[str, Any]] = []

    async def complete(
        self,
        messages: List[dict],
        temperature: float,
        model: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        operation: str = "chat"
    ) -> str:
        self.calls.append({
            "messages": messages,
            "temperature": temperature,
            "model": model,
            "timeout_ms": timeout_ms,
            "operation": operation,
        })
        if self.gate is not None:
            await self.gate.wait()

        reply = self.replies.get(operation, f"answer to: {messages[-1]['content'][-40:]}")
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(messages)
        return reply

    def calls_for(self, operation: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["operation"] == operation]


class FakeSearch(ISimilaritySearch):
    """Similarity search returning fixed hits, or raising ``error``."""

    def __init__(self, hits: Optional[List[dict]] = None, error: Optional[Exception] = None):
        self.hits = hits or []
        self.error = error
        self.queries: List[Dict[str, Any]] = []

    async def search(self, query: str, k: int) -> List[dict]:
        self.queries.append({"query": query, "k": k})
        if self.error is not None:
            raise self.error
        return self.hits[:k]


def make_hit(
    content: str,
    name: Optional[str] = None,
    url: Optional[str] = None,
    distance: float = 0.2,
    **metadata: Any
) -> dict:
    meta = dict(metadata)
    if name is not None:
        meta["source_document_name"] = name
    if url is not None:
        meta["source_url"] = url
    return {"content": content, "metadata": meta, "distance": distance}



class ControlledChat(IChatModel):
    """
    Chat model whose generate calls block until released per question.

    ``release(fragment)`` lets the call whose user message contains
    ``fragment`` finish; the answer echoes that fragment. Questions are
    read from the simple (no history) template.
    """

    def __init__(self):
        self._events: Dict[str, asyncio.Event] = {}
        self.started: List[str] = []

    def _event(self, fragment: str) -> asyncio.Event:
        return self._events.setdefault(fragment, asyncio.Event())

    def release(self, fragment: str) -> None:
        self._event(fragment).set()

    async def complete(
        self,
        messages: List[dict],
        temperature: float,
        model: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        operation: str = "chat"
    ) -> str:
        if operation != "generate":
            return messages[-1]["content"].strip().splitlines()[-1]
        content = messages[-1]["content"]
        fragment = content.rsplit(": ", 1)[-1].strip()
        self.started.append(fragment)
        await self._event(fragment).wait()
        return f"answer for {fragment}"


class InMemoryConversationStore(IConversationStore):
    """Conversation store keeping messages in a dict."""

    def __init__(self):
        self.messages: Dict[str, List[ConversationMessage]] = {}

    async def append_message(
        self,
        conversation_id: str,
        sender: str,
        content: str,
        metadata: Optional[dict] = None
    ) -> ConversationMessage:
        message = ConversationMessage(
            id=str(uuid4()),
            conversation_id=conversation_id,
            sender=sender,
            content=content,
            metadata=metadata or {},
        )
        self.messages.setdefault(conversation_id, []).append(message)
        return message

    async def list_messages(self, conversation_id: str) -> List[ConversationMessage]:
        return list(self.messages.get(conversation_id, []))

    async def latest_customer_message(self, conversation_id: str) -> Optional[ConversationMessage]:
        visitors = [m for m in self.messages.get(conversation_id, []) if m.sender == "visitor"]
        return visitors[-1] if visitors else None

    async def has_message_type(self, conversation_id: str, message_type: str) -> bool:
        return any(m.message_type == message_type for m in self.messages.get(conversation_id, []))

    def scope(self):
        """A StoreScope handing out this store."""
        store = self

        @asynccontextmanager
        async def _scope() -> AsyncIterator[IConversationStore]:
            yield store

        return _scope
