"""
Assistant Application Layer
===========================

Application layer for the answer pipeline.

Contains:
- Services: stage services and the RAGPipeline orchestrator
- DTOs: pipeline configuration and API models
"""

from src.assistant.application.dto import (
    PipelineConfig,
    TurnDTO,
    AnswerRequest,
    AnswerResponse,
    StageRecordInfo,
    PipelineConfigResponse,
)
from src.assistant.application.services import (
    IChatModel,
    ISimilaritySearch,
    QueryRephraseService,
    RetrievalService,
    AnswerGenerationService,
    RAGPipeline,
)

__all__ = [
    # DTOs
    "PipelineConfig",
    "TurnDTO",
    "AnswerRequest",
    "AnswerResponse",
    "StageRecordInfo",
    "PipelineConfigResponse",
    # Services
    "QueryRephraseService",
    "RetrievalService",
    "AnswerGenerationService",
    "RAGPipeline",
    # Collaborator Interfaces
    "IChatModel",
    "ISimilaritySearch",
]
