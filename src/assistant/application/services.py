"""
Assistant Application Services
==============================

Stage services for the answer pipeline and the orchestrator that runs them.

Each stage absorbs its own collaborator failures and reports them in its
StageRecord, so a run always produces a GenerationResult. The only
exception that leaves RAGPipeline is ValidationException for an empty
question, raised before the run starts.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from src.assistant.application.dto import PipelineConfig
from src.assistant.domain import (
    ContextFormatter,
    DebugTrace,
    GenerationOutcome,
    GenerationResult,
    History,
    PipelineState,
    PromptSet,
    RephraseResult,
    RetrievedChunk,
    SourceAttributor,
    StageRecord,
    format_chat_history,
    freeze_history,
    render_template,
)
from src.config import PipelineStage, ResultOutcome, StageOutcome
from src.core import LLMTimeoutException, ValidationException
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

QUERY_PREVIEW_CHARS = 200


# ========== Collaborator Interfaces ==========

class IChatModel(ABC):
    """Chat completion collaborator."""

    @abstractmethod
    async def complete(
        self,
        messages: List[dict],
        temperature: float,
        model: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        operation: str = "chat"
    ) -> str:
        """Return the completion text. Raises on upstream failure."""


class ISimilaritySearch(ABC):
    """Similarity search collaborator."""

    @abstractmethod
    async def search(self, query: str, k: int) -> List[dict]:
        """Return up to ``k`` hits as ``{content, metadata, distance}`` dicts."""


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ========== Stage Services ==========

class QueryRephraseService:
    """
    Rewrites a follow-up question into a standalone one using the history.

    Skipped when disabled or when there is too little history. A failed
    rewrite falls back to the original question.
    """

    def __init__(self, chat_model: IChatModel):
        self._chat = chat_model

    async def rephrase(
        self,
        question: str,
        history: History,
        prompts: PromptSet,
        config: PipelineConfig,
    ) -> Tuple[RephraseResult, StageRecord]:
        start = time.perf_counter()
        record = StageRecord(
            stage=PipelineStage.REPHRASE,
            action="",
            inputs={
                "question_length": len(question),
                "history_length": len(history),
                "min_history_length": config.min_history_length,
            },
        )

        skip_reason = None
        if config.skip_rephrasing:
            skip_reason = "skipped_by_config"
        elif len(history) < config.min_history_length:
            skip_reason = "skipped_no_history"

        if skip_reason:
            record.action = skip_reason
            record.outcome = StageOutcome.SKIPPED
            record.reason = skip_reason
            record.duration_ms = _elapsed_ms(start)
            return RephraseResult(query=question, was_rephrased=False, action=skip_reason), record

        record.model = config.rephrasing_model
        record.temperature = config.rephrasing_temperature
        prompt = render_template(
            prompts.rephrase_prompt,
            chat_history=format_chat_history(history, prompts.pending_answer),
            question=question,
        )

        try:
            text = await self._chat.complete(
                [{"role": "user", "content": prompt}],
                temperature=config.rephrasing_temperature,
                model=config.rephrasing_model,
                operation="rephrase",
            )
        except Exception as e:
            logger.warning(
                "Query rephrasing failed, using original question",
                extra={"error": str(e), "error_type": type(e).__name__}
            )
            record.action = "failed"
            record.outcome = StageOutcome.FAILED
            record.error = str(e)
            record.reason = "upstream_error"
            record.duration_ms = _elapsed_ms(start)
            return RephraseResult(
                query=question, was_rephrased=False, action="failed", error=str(e)
            ), record

        rephrased = (text or "").strip() or question
        was_rephrased = rephrased != question

        record.action = "rephrased"
        record.response_length = len(rephrased)
        record.details = {
            "was_rephrased": was_rephrased,
            "rephrased_query": rephrased[:QUERY_PREVIEW_CHARS],
        }
        record.duration_ms = _elapsed_ms(start)
        return RephraseResult(query=rephrased, was_rephrased=was_rephrased, action="rephrased"), record


class RetrievalService:
    """
    Fetches the top-k passages for a query.

    An empty hit list is a valid result. A search failure yields an empty
    list and a failed stage record.
    """

    def __init__(self, search: ISimilaritySearch):
        self._search = search

    @staticmethod
    def to_chunk(hit: Dict[str, Any], rank: int) -> RetrievedChunk:
        """Map a raw hit to a RetrievedChunk, with similarity = 1 - distance."""
        metadata = hit.get("metadata") or {}
        distance = float(hit.get("distance", 1.0))
        similarity = min(1.0, max(0.0, 1.0 - distance))
        return RetrievedChunk(
            content=hit.get("content") or "",
            source_name=metadata.get("source_document_name") or f"Document {rank + 1}",
            source_url=metadata.get("source_url") or None,
            similarity=similarity,
            chunk_index=_to_int(metadata.get("chunk_index")),
            total_chunks=_to_int(metadata.get("total_chunks")),
            category=metadata.get("category") or None,
        )

    async def retrieve(self, query: str, k: int) -> Tuple[List[RetrievedChunk], StageRecord]:
        start = time.perf_counter()
        record = StageRecord(
            stage=PipelineStage.RETRIEVE,
            action="retrieved",
            inputs={"query": query[:QUERY_PREVIEW_CHARS], "k": k},
        )

        try:
            hits = await self._search.search(query, k)
        except Exception as e:
            logger.warning(
                "Retrieval failed, continuing without context",
                extra={"error": str(e), "error_type": type(e).__name__, "k": k}
            )
            record.action = "failed"
            record.outcome = StageOutcome.FAILED
            record.error = str(e)
            record.reason = "upstream_error"
            record.duration_ms = _elapsed_ms(start)
            return [], record

        chunks = [self.to_chunk(hit, i) for i, hit in enumerate(hits or [])]
        record.details = {
            "results": len(chunks),
            "similarities": [round(c.similarity, 4) for c in chunks],
            "sources": [c.source_name for c in chunks],
        }
        record.duration_ms = _elapsed_ms(start)
        return chunks, record


class AnswerGenerationService:
    """
    Produces the answer from the formatted context.

    The chat call is bounded by ``timeout_ms``. A timeout and an upstream
    error both yield the fallback answer; the trace records which one.
    """

    def __init__(self, chat_model: IChatModel):
        self._chat = chat_model

    @staticmethod
    def build_messages(
        question: str,
        context: str,
        history: History,
        prompts: PromptSet,
    ) -> Tuple[List[dict], str]:
        """Return the chat messages and the template name used."""
        system = render_template(prompts.system_prompt, context=context)
        if history:
            template = "history"
            user = render_template(
                prompts.history_template,
                formatted_history=format_chat_history(history, prompts.pending_answer),
                question=question,
                context=context,
            )
        else:
            template = "simple"
            user = render_template(prompts.context_template, context=context, question=question)

        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ], template

    async def generate(
        self,
        question: str,
        context: str,
        history: History,
        prompts: PromptSet,
        config: PipelineConfig,
    ) -> Tuple[GenerationOutcome, StageRecord]:
        start = time.perf_counter()
        messages, template = self.build_messages(question, context, history, prompts)
        record = StageRecord(
            stage=PipelineStage.GENERATE,
            action="generated",
            inputs={
                "template": template,
                "context_length": len(context),
                "history_length": len(history),
                "timeout_ms": config.timeout_ms,
                "prompt_version": prompts.version,
            },
            model=config.generation_model,
            temperature=config.generation_temperature,
            details={"template": template},
        )

        reason = None
        error = None
        try:
            text = await asyncio.wait_for(
                self._chat.complete(
                    messages,
                    temperature=config.generation_temperature,
                    model=config.generation_model,
                    timeout_ms=config.timeout_ms,
                    operation="generate",
                ),
                timeout=config.timeout_ms / 1000,
            )
        except (asyncio.TimeoutError, LLMTimeoutException):
            reason = "timeout"
            error = f"generation exceeded {config.timeout_ms}ms"
        except Exception as e:
            reason = "upstream_error"
            error = str(e)
        else:
            text = (text or "").strip()
            if not text:
                reason = "empty_response"
                error = "model returned no text"

        record.duration_ms = _elapsed_ms(start)

        if reason:
            logger.warning(
                "Answer generation failed, using fallback answer",
                extra={"reason": reason, "error": error, "model": config.generation_model}
            )
            record.action = "fallback"
            record.outcome = StageOutcome.FAILED
            record.reason = reason
            record.error = error
            record.response_length = len(prompts.fallback_answer)
            return GenerationOutcome(
                answer=prompts.fallback_answer,
                succeeded=False,
                reason=reason,
                error=error,
                model=config.generation_model,
            ), record

        record.response_length = len(text)
        return GenerationOutcome(
            answer=text, succeeded=True, model=config.generation_model
        ), record


# ========== Orchestrator ==========

class RAGPipeline:
    """
    Runs rephrase, retrieve, format, generate and attribute in order.

    The pipeline owns its current PromptSet. Prompts change only through
    apply_prompts(); each run uses the set that was current when it began.
    """

    def __init__(
        self,
        rephraser: QueryRephraseService,
        retriever: RetrievalService,
        generator: AnswerGenerationService,
        config: Optional[PipelineConfig] = None,
        prompts: Optional[PromptSet] = None,
    ):
        self._rephraser = rephraser
        self._retriever = retriever
        self._generator = generator
        self._config = config or PipelineConfig()
        self._prompts = prompts or PromptSet()

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def prompts(self) -> PromptSet:
        return self._prompts

    def apply_prompts(self, prompts: PromptSet) -> None:
        """Replace the prompt set used by subsequent runs."""
        previous = self._prompts.version
        self._prompts = prompts
        logger.info(
            "Pipeline prompts replaced",
            extra={"previous_version": previous, "prompt_version": prompts.version}
        )

    @staticmethod
    def validate(question: Optional[str]) -> str:
        """
        Reject a missing or blank question.

        Raises:
            ValidationException: If the question is empty
        """
        if question is None or not str(question).strip():
            raise ValidationException("Question must not be empty", {"field": "question"})
        return str(question).strip()

    def _enter(self, state: PipelineState, conversation_id: Optional[str]) -> PipelineState:
        logger.debug(
            "Pipeline state change",
            extra={"state": state.value, "conversation_id": conversation_id}
        )
        return state

    async def run(
        self,
        question: str,
        history: Optional[Sequence[Any]] = None,
        config: Optional[PipelineConfig] = None,
        conversation_id: Optional[str] = None,
    ) -> GenerationResult:
        """
        Answer ``question`` given the history snapshot.

        Raises:
            ValidationException: If the question is empty (before any stage runs)
        """
        question = self.validate(question)
        snapshot = freeze_history(history)
        config = config or self._config
        prompts = self._prompts
        trace = DebugTrace()
        start = time.perf_counter()

        self._enter(PipelineState.STARTED, conversation_id)

        self._enter(PipelineState.REPHRASING, conversation_id)
        rephrased, record = await self._rephraser.rephrase(question, snapshot, prompts, config)
        trace.add(record)

        self._enter(PipelineState.RETRIEVING, conversation_id)
        chunks, record = await self._retriever.retrieve(rephrased.query, config.k)
        trace.add(record)
        retrieval_failed = record.failed

        self._enter(PipelineState.FORMATTING, conversation_id)
        context = self._format(chunks, prompts, trace)

        self._enter(PipelineState.GENERATING, conversation_id)
        generated, record = await self._generator.generate(
            question, context, snapshot, prompts, config
        )
        trace.add(record)

        self._enter(PipelineState.ATTRIBUTING, conversation_id)
        sources, source_urls = self._attribute(chunks, trace)

        degraded = (
            retrieval_failed
            or not generated.succeeded
            or (rephrased.action == "failed" and config.rephrase_failure_degrades)
        )
        result = GenerationResult(
            answer=generated.answer,
            sources=sources,
            source_urls=source_urls,
            contexts_used=len(chunks),
            debug_trace=trace,
            outcome=ResultOutcome.DEGRADED if degraded else ResultOutcome.SUCCESS,
        )

        self._enter(PipelineState.DONE, conversation_id)
        logger.info(
            "Answer pipeline finished",
            extra={
                "conversation_id": conversation_id,
                "outcome": result.outcome,
                "contexts_used": result.contexts_used,
                "was_rephrased": rephrased.was_rephrased,
                "failed_stages": [r.stage for r in trace.records if r.failed],
                "latency_ms": _elapsed_ms(start),
            }
        )
        return result

    async def generate_answer(
        self,
        question: str,
        history: Optional[Sequence[Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> GenerationResult:
        """Run the pipeline with the configured defaults."""
        return await self.run(question, history, conversation_id=conversation_id)

    @staticmethod
    def _format(chunks: List[RetrievedChunk], prompts: PromptSet, trace: DebugTrace) -> str:
        start = time.perf_counter()
        record = trace.add(StageRecord(
            stage=PipelineStage.FORMAT,
            action="no_documents" if not chunks else "formatted",
            inputs={"chunks": len(chunks)},
        ))
        try:
            context = ContextFormatter.format(chunks, prompts)
        except Exception as e:
            logger.error("Context formatting failed", extra={"error": str(e)})
            record.action = "failed"
            record.outcome = StageOutcome.FAILED
            record.error = str(e)
            context = prompts.no_documents_marker

        record.response_length = len(context)
        record.duration_ms = _elapsed_ms(start)
        return context

    @staticmethod
    def _attribute(
        chunks: List[RetrievedChunk], trace: DebugTrace
    ) -> Tuple[List[str], List[str]]:
        start = time.perf_counter()
        record = trace.add(StageRecord(
            stage=PipelineStage.ATTRIBUTE,
            action="attributed",
            inputs={"chunks": len(chunks)},
        ))
        try:
            sources, source_urls = SourceAttributor.attribute(chunks)
        except Exception as e:
            logger.error("Source attribution failed", extra={"error": str(e)})
            record.action = "failed"
            record.outcome = StageOutcome.FAILED
            record.error = str(e)
            sources, source_urls = [], []

        record.details = {"sources": len(sources), "source_urls": len(source_urls)}
        record.duration_ms = _elapsed_ms(start)
        return sources, source_urls
