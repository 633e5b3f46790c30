"""
Assistant Infrastructure Layer
==============================

Infrastructure implementations for the answer pipeline.

Contains:
- External: LLM and vector store adapters, prompt configuration manager
"""

from src.assistant.infrastructure.external import (
    LLMClientAdapter,
    VectorStoreAdapter,
    PromptConfigManager,
    PromptFileHandler,
)

__all__ = [
    "LLMClientAdapter",
    "VectorStoreAdapter",
    "PromptConfigManager",
    "PromptFileHandler",
]
