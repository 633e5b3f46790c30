"""
LLM Client Infrastructure
==========================

Wrapper for LLM providers (OpenRouter via the OpenAI SDK, Z.AI) providing a
clean interface for chat completion and query embeddings.

The answer pipeline depends on the ILLMClient abstraction only; concrete
clients are picked by create_llm_client() from settings.
"""

import asyncio
import hashlib
import time
from typing import List, Optional
from abc import ABC, abstractmethod

from openai import APITimeoutError, AsyncOpenAI
from zai import ZaiClient

from src.config import Settings, settings
from src.core import LLMException, LLMTimeoutException, ConfigurationException
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class EmbeddingResult:
    """Result of an embedding generation."""

    def __init__(self, embedding: List[float], model: str):
        self.embedding = embedding
        self.model = model
        self.dimension = len(embedding)


class ChatCompletionResult:
    """Result of a chat completion."""

    def __init__(
        self,
        content: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int
    ):
        self.content = content
        self.model = model
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.total_tokens = prompt_tokens + completion_tokens
        self.latency_ms = latency_ms


class ILLMClient(ABC):
    """
    Interface for LLM client operations.

    Only methods actually needed by the answer pipeline are defined.
    """

    @abstractmethod
    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Generate embedding for text."""

    @abstractmethod
    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.2,
        max_tokens: int = 2000,
        operation: str = "chat_completion",
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ChatCompletionResult:
        """
        Generate chat completion.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            operation: Operation label for logs (rephrase, generate)
            model: Model override; the client default is used when omitted
            timeout: Transport timeout in seconds
        """

    async def close(self) -> None:
        """Release transport resources."""


class OpenAICompatibleLLMClient(ILLMClient):
    """
    Client for OpenAI-compatible chat APIs.

    Defaults to OpenRouter, which additionally expects HTTP-Referer and
    X-Title attribution headers.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        config: Optional[Settings] = None,
    ):
        config = config or settings
        self._api_key = api_key or config.llm_api_key
        if not self._api_key:
            raise ConfigurationException("LLM API key not configured")

        self._client = AsyncOpenAI(
            api_key=self._api_key,
            base_url=base_url or config.llm_base_url,
            default_headers={
                "HTTP-Referer": config.site_url,
                "X-Title": config.site_name,
            },
        )
        self._model = config.llm_model
        self._embedding_model = config.embedding_model

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for text.

        Raises:
            LLMException: If embedding generation fails
        """
        try:
            response = await self._client.embeddings.create(
                model=self._embedding_model,
                input=text
            )
        except Exception as e:
            raise LLMException(f"Embedding generation failed: {str(e)}")

        return EmbeddingResult(
            embedding=response.data[0].embedding,
            model=self._embedding_model
        )

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.2,
        max_tokens: int = 2000,
        operation: str = "chat_completion",
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ChatCompletionResult:
        """
        Generate chat completion.

        Raises:
            LLMTimeoutException: If the call exceeds ``timeout``
            LLMException: If completion fails
        """
        model = model or self._model
        start_time = time.perf_counter()

        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
            )
        except APITimeoutError:
            raise LLMTimeoutException(
                int((timeout or 0) * 1000),
                details={"model": model, "operation": operation},
            )
        except Exception as e:
            raise LLMException(
                f"Chat completion failed: {str(e)}",
                details={"model": model, "operation": operation},
            )

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        content = response.choices[0].message.content or ""
        usage = response.usage

        logger.debug(
            "Chat completion finished",
            extra={"model": model, "operation": operation, "latency_ms": latency_ms}
        )

        return ChatCompletionResult(
            content=content,
            model=model,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms
        )

    async def close(self) -> None:
        await self._client.close()


class ZAIILLMClient(ILLMClient):
    """
    Z.AI SDK client implementation.

    The SDK is synchronous, so calls run in a worker thread.
    """

    def __init__(self, api_key: Optional[str] = None, config: Optional[Settings] = None):
        config = config or settings
        self._api_key = api_key or config.zai_api_key
        if not self._api_key:
            raise ConfigurationException("Z.AI API key not configured")

        self._client = ZaiClient(api_key=self._api_key)
        self._model = config.llm_model
        self._embedding_model = config.embedding_model

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        try:
            response = await asyncio.to_thread(
                self._client.embeddings.create,
                model=self._embedding_model,
                input=text
            )
        except Exception as e:
            raise LLMException(f"Embedding generation failed: {str(e)}")

        return EmbeddingResult(
            embedding=response.data[0].embedding,
            model=self._embedding_model
        )

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.2,
        max_tokens: int = 2000,
        operation: str = "chat_completion",
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ChatCompletionResult:
        model = model or self._model
        start_time = time.perf_counter()

        try:
            response = await asyncio.to_thread(
                self._client.chat.completions.create,
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens
            )
        except Exception as e:
            raise LLMException(
                f"Chat completion failed: {str(e)}",
                details={"model": model, "operation": operation},
            )

        content = response.choices[0].message.content or ""

        # Z.AI doesn't return token usage, so we estimate
        return ChatCompletionResult(
            content=content,
            model=model,
            prompt_tokens=len(str(messages)),
            completion_tokens=len(content),
            latency_ms=int((time.perf_counter() - start_time) * 1000)
        )


class MockLLMClient(ILLMClient):
    """
    Mock LLM client for offline runs.

    Returns predictable responses without calling external APIs.
    """

    def __init__(self, dimension: Optional[int] = None):
        self._dimension = dimension or settings.embedding_dimension

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Return a deterministic pseudo-embedding derived from the text hash."""
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        embedding = [
            (digest[i % len(digest)] / 127.5) - 1.0
            for i in range(self._dimension)
        ]
        return EmbeddingResult(embedding=embedding, model="mock-embedding")

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.2,
        max_tokens: int = 2000,
        operation: str = "chat_completion",
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ChatCompletionResult:
        """
        Echo the last user message back, tagged with the operation.

        Rephrase calls return no text, so callers keep the original question.
        """
        user_content = str(messages[-1].get("content", "")) if messages else ""

        if operation == "rephrase":
            content = ""
        else:
            content = f"[mock:{operation}] {user_content[:200]}"

        return ChatCompletionResult(
            content=content,
            model=model or "mock-model",
            prompt_tokens=len(user_content.split()),
            completion_tokens=len(content.split()),
            latency_ms=0
        )


def create_llm_client(config: Optional[Settings] = None) -> ILLMClient:
    """
    Build the chat completion client selected by ``llm_provider``.

    Raises:
        ConfigurationException: If the selected provider lacks credentials
    """
    config = config or settings
    if config.llm_provider == "mock":
        return MockLLMClient(dimension=config.embedding_dimension)
    if config.llm_provider == "zai":
        return ZAIILLMClient(config=config)
    return OpenAICompatibleLLMClient(config=config)


__all__ = [
    "EmbeddingResult",
    "ChatCompletionResult",
    "ILLMClient",
    "OpenAICompatibleLLMClient",
    "ZAIILLMClient",
    "MockLLMClient",
    "create_llm_client",
]
