"""
Assistant External Service Adapters
===================================

Adapters for the collaborators of the answer pipeline:
- Chat completion (shared LLM client)
- Similarity search (query embedding + Milvus)
- Prompt configuration file with hot-reload
"""

import threading
from pathlib import Path
from typing import Callable, List, Optional

import yaml
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from src.assistant.application import IChatModel, ISimilaritySearch
from src.assistant.domain import PromptSet
from src.config import settings
from src.core import ConfigurationException
from src.infrastructure.llm import ILLMClient
from src.infrastructure.vectorstore import IVectorStore
from src.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)


class LLMClientAdapter(IChatModel):
    """
    Adapter that wraps the infrastructure LLM client.

    Implements the application layer IChatModel interface.
    """

    def __init__(self, client: ILLMClient, max_tokens: Optional[int] = None):
        self._client = client
        self._max_tokens = max_tokens or settings.llm_max_tokens

    async def complete(
        self,
        messages: List[dict],
        temperature: float,
        model: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        operation: str = "chat"
    ) -> str:
        result = await self._client.chat_completion(
            messages,
            temperature=temperature,
            max_tokens=self._max_tokens,
            operation=operation,
            model=model,
            timeout=timeout_ms / 1000 if timeout_ms else None,
        )
        return result.content


class VectorStoreAdapter(ISimilaritySearch):
    """
    Adapter that embeds the query and searches the vector store.

    Milvus reports cosine similarity; hits are returned with
    ``distance = 1 - similarity``.
    """

    def __init__(self, store: IVectorStore, embedder: ILLMClient):
        self._store = store
        self._embedder = embedder

    async def initialize(self) -> None:
        await self._store.initialize()

    async def get_document_count(self) -> int:
        return await self._store.get_document_count()

    async def search(self, query: str, k: int) -> List[dict]:
        with log_latency(logger, "similarity_search", k=k):
            embedding = await self._embedder.generate_embedding(query)
            results = await self._store.search(embedding.embedding, top_k=k)

        return [
            {
                "content": r.content,
                "metadata": r.metadata,
                "distance": 1.0 - r.score,
            }
            for r in results
        ]


# ========== Prompt configuration ==========

PromptListener = Callable[[PromptSet], None]


class PromptFileHandler(FileSystemEventHandler):
    """Watchdog event handler for prompt file changes."""

    def __init__(self, manager: "PromptConfigManager", path: Path):
        self.manager = manager
        self.path = path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.path.resolve():
            logger.info("Prompt file changed", extra={"path": str(event.src_path)})
            self.manager.reload()


class PromptConfigManager:
    """
    Thread-safe prompt configuration with hot-reload support.

    The YAML file holds any subset of PromptSet fields; missing fields keep
    their defaults. Listeners are called with the new PromptSet after every
    successful (re)load. A file that fails validation leaves the current
    prompts in place.
    """

    def __init__(self):
        self._prompts = PromptSet()
        self._source = "builtin"
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None
        self._listeners: List[PromptListener] = []

    @property
    def prompts(self) -> PromptSet:
        with self._lock:
            return self._prompts

    @property
    def source(self) -> str:
        return self._source

    def subscribe(self, listener: PromptListener) -> None:
        self._listeners.append(listener)

    def load(self, path: Optional[Path]) -> PromptSet:
        """
        Initial load. Without a path, or if the file is absent, defaults are used.

        Raises:
            ConfigurationException: If the file exists but is invalid
        """
        self._path = path
        if path is None or not path.exists():
            if path is not None:
                logger.warning("Prompt file not found, using defaults", extra={"path": str(path)})
            return self._set(PromptSet(), "builtin")
        return self._set(self._load_from_file(path), str(path))

    @staticmethod
    def _load_from_file(path: Path) -> PromptSet:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationException(f"Cannot read prompt file {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationException(f"Prompt file {path} must contain a mapping")

        try:
            return PromptSet(**data)
        except ValidationError as e:
            raise ConfigurationException(
                f"Invalid prompt file {path}",
                details={"errors": e.errors(include_url=False)},
            )

    def _set(self, prompts: PromptSet, source: str) -> PromptSet:
        with self._lock:
            self._prompts = prompts
            self._source = source
        for listener in list(self._listeners):
            listener(prompts)
        return prompts

    def reload(self) -> bool:
        """Reload prompts from file. Returns False and keeps the old set on error."""
        if self._path is None:
            return False

        try:
            prompts = self._load_from_file(self._path)
        except ConfigurationException as e:
            logger.error(
                "Failed to reload prompts, keeping current set",
                extra={"error": e.message, "details": e.details}
            )
            return False

        self._set(prompts, str(self._path))
        logger.info("Prompts reloaded", extra={"prompt_version": prompts.version})
        return True

    def start_watching(self) -> None:
        """Watch the prompt file for changes (no-op without a file)."""
        if self._path is None or not self._path.exists():
            logger.info("No prompt file to watch, using current prompts")
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                PromptFileHandler(self, self._path),
                str(self._path.parent),
                recursive=False
            )
            self._observer.start()
            logger.info("Started watching prompt file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static prompts", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
