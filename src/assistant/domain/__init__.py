"""
Assistant Domain Layer
======================

Domain layer for the answer pipeline.

Contains:
- Entities: ConversationTurn, RetrievedChunk, DebugTrace, GenerationResult
- Value Objects: PromptSet, ContextFormatter, SourceAttributor

This layer is framework-agnostic and contains pure business logic.
"""

from src.assistant.domain.entities import (
    PipelineState,
    ConversationTurn,
    History,
    freeze_history,
    RetrievedChunk,
    StageRecord,
    DebugTrace,
    RephraseResult,
    GenerationOutcome,
    GenerationResult,
)
from src.assistant.domain.value_objects import (
    PromptSet,
    ContextFormatter,
    SourceAttributor,
    format_chat_history,
    render_template,
    BLOCK_SEPARATOR,
    METADATA_SEPARATOR,
)

__all__ = [
    "PipelineState",
    "ConversationTurn",
    "History",
    "freeze_history",
    "RetrievedChunk",
    "StageRecord",
    "DebugTrace",
    "RephraseResult",
    "GenerationOutcome",
    "GenerationResult",
    "PromptSet",
    "ContextFormatter",
    "SourceAttributor",
    "format_chat_history",
    "render_template",
    "BLOCK_SEPARATOR",
    "METADATA_SEPARATOR",
]
