"""
Vector Store Infrastructure
============================

Milvus (Zilliz Cloud) similarity search over knowledge-base chunks.

The collection is populated by the document ingestion service; this module
only reads it. Each chunk row carries its text plus the metadata fields in
CHUNK_FIELDS.
"""

import asyncio
from typing import List, Optional
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from pymilvus import MilvusClient

from src.config import Settings, settings
from src.core import VectorStoreException
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

TEXT_FIELD = "text"
CHUNK_FIELDS = [
    "source_document_name",
    "source_url",
    "chunk_index",
    "total_chunks",
    "category",
]


@dataclass
class SearchResult:
    """Result from vector search. ``score`` is cosine similarity."""
    content: str
    score: float
    metadata: dict = field(default_factory=dict)
    id: Optional[str] = None


class IVectorStore(ABC):
    """Interface for vector store operations."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the vector store."""

    @abstractmethod
    async def get_document_count(self) -> int:
        """Get number of chunks in the collection."""

    @abstractmethod
    async def search(self, query_embedding: List[float], top_k: int = 3) -> List[SearchResult]:
        """Search for similar chunks."""


class MilvusVectorStore(IVectorStore):
    """
    Zilliz Cloud (Managed Milvus) implementation of vector store.

    The collection must use the COSINE metric so hit distances are
    similarities in [-1, 1]. pymilvus is synchronous, so calls run in a
    worker thread.
    """

    def __init__(
        self,
        collection_name: Optional[str] = None,
        uri: Optional[str] = None,
        config: Optional[Settings] = None,
    ):
        config = config or settings
        self._collection_name = collection_name or config.milvus_collection_name
        self._uri = uri or config.zilliz_uri
        self._api_key = config.zilliz_api_key
        self._client: Optional[MilvusClient] = None
        self._initialized = False

    async def initialize(self) -> None:
        """Connect to Zilliz Cloud and check the collection exists."""
        if self._initialized:
            return

        if not self._uri:
            raise VectorStoreException("ZILLIZ_URI not configured")

        try:
            self._client = MilvusClient(uri=self._uri, token=self._api_key)
            exists = await asyncio.to_thread(
                self._client.has_collection, self._collection_name
            )
        except Exception as e:
            raise VectorStoreException(f"Failed to initialize Milvus: {str(e)}")

        if not exists:
            raise VectorStoreException(
                f"Collection '{self._collection_name}' does not exist",
                details={"collection": self._collection_name},
            )

        self._initialized = True
        logger.info(
            "Milvus vector store initialized",
            extra={"collection": self._collection_name}
        )

    async def get_document_count(self) -> int:
        if not self._initialized:
            await self.initialize()

        try:
            stats = await asyncio.to_thread(
                self._client.get_collection_stats, self._collection_name
            )
        except Exception as e:
            raise VectorStoreException(f"Failed to read collection stats: {str(e)}")
        return int(stats.get("row_count", 0))

    async def search(
        self,
        query_embedding: List[float],
        top_k: int = 3
    ) -> List[SearchResult]:
        """
        Search for similar chunks.

        Raises:
            VectorStoreException: If search fails
        """
        if not self._initialized:
            await self.initialize()

        try:
            results = await asyncio.to_thread(
                self._client.search,
                collection_name=self._collection_name,
                data=[query_embedding],
                limit=top_k,
                output_fields=[TEXT_FIELD, *CHUNK_FIELDS],
            )
        except Exception as e:
            raise VectorStoreException(f"Search failed: {str(e)}")

        formatted_results = []
        if results and len(results[0]) > 0:
            for hit in results[0]:
                entity = hit.get("entity", {})
                formatted_results.append(SearchResult(
                    content=entity.get(TEXT_FIELD, ""),
                    score=float(hit["distance"]),
                    metadata={
                        name: entity[name]
                        for name in CHUNK_FIELDS
                        if entity.get(name) not in (None, "")
                    },
                    id=str(hit.get("id")) if hit.get("id") is not None else None,
                ))

        return formatted_results


__all__ = [
    "SearchResult",
    "IVectorStore",
    "MilvusVectorStore",
    "CHUNK_FIELDS",
]
