"""
Assistant Application DTOs
==========================

Pipeline configuration and the request/response models of the answer API.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.config import Settings


# ========== Pipeline configuration ==========

class PipelineConfig(BaseModel):
    """
    Per-run pipeline configuration.

    Built from settings once at startup; individual runs may pass an
    adjusted copy (``config.model_copy(update={...})``).
    """
    model_config = ConfigDict(frozen=True)

    k: int = Field(default=3, ge=1, le=20, description="Passages to retrieve")

    skip_rephrasing: bool = Field(default=False)
    min_history_length: int = Field(default=1, ge=0)
    rephrasing_model: str = Field(default="google/gemini-2.5-flash-lite")
    rephrasing_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    rephrase_failure_degrades: bool = Field(default=False)

    generation_model: str = Field(default="google/gemini-2.5-flash")
    generation_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    timeout_ms: int = Field(default=60000, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineConfig":
        return cls(
            k=settings.rag_k,
            skip_rephrasing=not settings.rephrasing_enabled,
            min_history_length=settings.rephrasing_min_history,
            rephrasing_model=settings.rephrasing_model,
            rephrasing_temperature=settings.rephrasing_temperature,
            rephrase_failure_degrades=settings.rephrase_failure_degrades,
            generation_model=settings.llm_model,
            generation_temperature=settings.llm_temperature,
            timeout_ms=settings.llm_timeout_ms,
        )


# ========== Request DTOs ==========

class TurnDTO(BaseModel):
    """One history exchange as sent by API clients."""
    question: str = Field(..., description="Citizen message")
    answer: str = Field(default="", description="Reply, empty while unanswered")


class AnswerRequest(BaseModel):
    """Request model for answer generation."""
    question: str = Field(..., description="Citizen question")
    history: List[TurnDTO] = Field(default_factory=list, description="Earlier exchanges, oldest first")
    conversation_id: Optional[str] = Field(None, description="Conversation for log correlation")

    @field_validator("question")
    @classmethod
    def validate_question_length(cls, v: str) -> str:
        """Ensure question is not too long."""
        if len(v) > 4000:
            raise ValueError("Question too long (max 4000 characters)")
        return v


# ========== Response DTOs ==========

class StageRecordInfo(BaseModel):
    """Debug trace entry."""
    stage: str
    action: str
    outcome: Literal["success", "skipped", "failed"]
    inputs: Dict[str, Any] = Field(default_factory=dict)
    model: Optional[str] = None
    temperature: Optional[float] = None
    response_length: Optional[int] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    duration_ms: int = 0
    details: Dict[str, Any] = Field(default_factory=dict)


class AnswerResponse(BaseModel):
    """Response model for answer generation."""
    answer: str
    sources: List[str]
    source_urls: List[str]
    contexts_used: int
    outcome: Literal["success", "degraded"]
    debug_trace: List[StageRecordInfo]
    processing_time_ms: int


class PipelineConfigResponse(BaseModel):
    """Current pipeline configuration."""
    config: PipelineConfig
    prompt_version: str
    prompt_source: str
