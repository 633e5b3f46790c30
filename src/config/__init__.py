"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="citizen-assistant", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/assistant",
        description="Conversation store connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== LLM Provider ==========
    llm_provider: str = Field(
        default="openrouter",
        description="Chat completion provider: openrouter, zai or mock"
    )
    llm_api_key: Optional[str] = Field(
        default=None,
        description="API key for the OpenAI-compatible provider (OpenRouter)"
    )
    llm_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="Base URL of the OpenAI-compatible provider"
    )
    site_url: str = Field(
        default="http://localhost:3000",
        description="Sent as HTTP-Referer for OpenRouter attribution"
    )
    site_name: str = Field(
        default="Vilniaus rajono savivaldybės asistentas",
        description="Sent as X-Title for OpenRouter attribution"
    )
    zai_api_key: Optional[str] = Field(
        default=None,
        description="Z.AI API key (llm_provider=zai)"
    )

    # ========== Generation ==========
    llm_model: str = Field(
        default="google/gemini-2.5-flash",
        description="Model used for answer generation"
    )
    llm_temperature: float = Field(
        default=0.2,
        description="Temperature for answer generation",
        ge=0.0,
        le=2.0
    )
    llm_max_tokens: int = Field(
        default=2000,
        description="Max tokens for answer generation",
        ge=1,
        le=32000
    )
    llm_timeout_ms: int = Field(
        default=60000,
        description="Deadline for a single answer generation call",
        ge=100
    )

    # ========== Rephrasing ==========
    rephrasing_enabled: bool = Field(
        default=True,
        description="Rewrite follow-up questions using chat history before retrieval"
    )
    rephrasing_model: str = Field(
        default="google/gemini-2.5-flash-lite",
        description="Model used for query rephrasing"
    )
    rephrasing_temperature: float = Field(
        default=0.1,
        description="Temperature for query rephrasing",
        ge=0.0,
        le=2.0
    )
    rephrasing_min_history: int = Field(
        default=1,
        description="Minimum number of history turns before rephrasing is attempted",
        ge=0
    )
    rephrase_failure_degrades: bool = Field(
        default=False,
        description="Mark the result degraded when rephrasing fails"
    )

    # ========== Retrieval (Zilliz Cloud / Milvus) ==========
    rag_k: int = Field(
        default=3,
        description="Number of passages to retrieve per question",
        ge=1,
        le=20
    )
    zilliz_uri: str = Field(
        default="",
        description="Zilliz Cloud cluster URI"
    )
    zilliz_api_key: str = Field(
        default="",
        description="Zilliz Cloud API key"
    )
    milvus_collection_name: str = Field(
        default="knowledge_base",
        description="Milvus collection holding knowledge-base chunks"
    )
    embedding_model: str = Field(
        default="openai/text-embedding-3-small",
        description="Embedding model for query vectors"
    )
    embedding_dimension: int = Field(
        default=1536,
        description="Embedding vector dimension",
        ge=128
    )

    # ========== Prompts ==========
    prompt_config_path: Optional[Path] = Field(
        default=None,
        description="Optional YAML file overriding prompts and localized strings"
    )

    # ========== Suggestions ==========
    default_system_mode: str = Field(
        default="hitl",
        description="Initial system mode: hitl, autopilot or off"
    )
    suggestion_confidence: float = Field(
        default=0.85,
        description="Confidence reported with pending suggestions",
        ge=0.0,
        le=1.0
    )
    suggestion_retention_minutes: int = Field(
        default=60,
        description="How long generated results are kept before cleanup",
        ge=1
    )
    suggestion_cleanup_interval_seconds: int = Field(
        default=300,
        description="Seconds between suggestion cleanup runs",
        ge=10
    )

    # ========== Agent-side polling ==========
    poll_base_delay_ms: int = Field(default=2000, description="First poll delay", ge=1)
    poll_backoff_factor: float = Field(default=1.3, description="Poll delay multiplier", ge=1.0)
    poll_max_delay_ms: int = Field(default=5000, description="Poll delay cap", ge=1)
    poll_max_attempts: int = Field(default=15, description="Maximum poll attempts", ge=1)
    recovery_delay_ms: int = Field(default=1500, description="Recovery poll delay", ge=1)
    recovery_max_attempts: int = Field(default=8, description="Maximum recovery poll attempts", ge=1)
    recovery_window_seconds: int = Field(
        default=60,
        description="A customer message newer than this may still have a generation running",
        ge=1
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("llm_provider")
    @classmethod
    def validate_llm_provider(cls, v: str) -> str:
        allowed = {"openrouter", "zai", "mock"}
        if v not in allowed:
            raise ValueError(f"llm_provider must be one of {allowed}")
        return v

    @field_validator("default_system_mode")
    @classmethod
    def validate_system_mode(cls, v: str) -> str:
        if v not in VALID_SYSTEM_MODES:
            raise ValueError(f"default_system_mode must be one of {VALID_SYSTEM_MODES}")
        return v


# ========== Constants ==========

class SystemMode(str):
    """Global assistant operating modes."""
    HITL = "hitl"               # Suggestion shown to agent for approval
    AUTOPILOT = "autopilot"     # Answer sent automatically
    OFF = "off"                 # Offline notice only


class MessageSender(str):
    """Authors of conversation messages."""
    VISITOR = "visitor"
    AGENT = "agent"
    SYSTEM = "system"


class PipelineStage(str):
    """Answer pipeline stage names recorded in the debug trace."""
    REPHRASE = "rephrase"
    RETRIEVE = "retrieve"
    FORMAT = "format"
    GENERATE = "generate"
    ATTRIBUTE = "attribute"


class StageOutcome(str):
    """Outcome of a single pipeline stage."""
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class ResultOutcome(str):
    """Outcome of a full pipeline run."""
    SUCCESS = "success"
    DEGRADED = "degraded"


# ========== Lists for validation ==========

VALID_SYSTEM_MODES = [SystemMode.HITL, SystemMode.AUTOPILOT, SystemMode.OFF]
VALID_SENDERS = [MessageSender.VISITOR, MessageSender.AGENT, MessageSender.SYSTEM]
PIPELINE_STAGES = [
    PipelineStage.REPHRASE, PipelineStage.RETRIEVE, PipelineStage.FORMAT,
    PipelineStage.GENERATE, PipelineStage.ATTRIBUTE
]
VALID_STAGE_OUTCOMES = [StageOutcome.SUCCESS, StageOutcome.SKIPPED, StageOutcome.FAILED]
VALID_RESULT_OUTCOMES = [ResultOutcome.SUCCESS, ResultOutcome.DEGRADED]


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
