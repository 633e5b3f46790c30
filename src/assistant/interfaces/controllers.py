"""
Assistant Controllers (API Routes)
==================================

FastAPI routes for answer generation.

Controllers delegate to the RAGPipeline held in application state.
"""

import time

from fastapi import APIRouter, Depends, HTTPException, Request

from src.assistant.application import (
    AnswerRequest,
    AnswerResponse,
    PipelineConfigResponse,
    RAGPipeline,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/assistant", tags=["Assistant"])


# ========== Example payloads for Swagger ==========

ANSWER_REQUEST_EXAMPLE = {
    "question": "Kokios bibliotekos darbo valandos?",
    "history": [],
    "conversation_id": "conv-123"
}

ANSWER_RESPONSE_EXAMPLE = {
    "answer": "Biblioteka dirba I-V 10:00-19:00, VI 10:00-16:00.",
    "sources": ["Bibliotekos darbo laikas (https://www.vilnius.lt/biblioteka)"],
    "source_urls": ["https://www.vilnius.lt/biblioteka"],
    "contexts_used": 1,
    "outcome": "success",
    "debug_trace": [
        {
            "stage": "rephrase",
            "action": "skipped_no_history",
            "outcome": "skipped",
            "inputs": {"question_length": 33, "history_length": 0, "min_history_length": 1},
            "reason": "skipped_no_history",
            "duration_ms": 0
        },
        {
            "stage": "generate",
            "action": "generated",
            "outcome": "success",
            "model": "google/gemini-2.5-flash",
            "temperature": 0.2,
            "response_length": 52,
            "duration_ms": 1830
        }
    ],
    "processing_time_ms": 2400
}


# ========== Dependencies ==========

def get_pipeline(request: Request) -> RAGPipeline:
    """Get the answer pipeline from app state."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=503,
            detail="Answer pipeline not available - LLM not configured"
        )
    return pipeline


# ========== Route Handlers ==========

@router.post(
    "/answer",
    response_model=AnswerResponse,
    summary="Answer a citizen question",
    description="""
    Run the full answer pipeline synchronously:

    1. Rephrase the question using history (skipped without history)
    2. Retrieve the top-k knowledge-base passages
    3. Format passages into the model context
    4. Generate the answer (bounded by the configured timeout)
    5. Attribute sources

    Upstream failures never fail the request: the answer falls back to a
    fixed apology and `outcome` becomes `degraded`. An empty question is
    rejected with 422.
    """,
    responses={
        200: {
            "description": "Answer generated (possibly degraded)",
            "content": {"application/json": {"example": ANSWER_RESPONSE_EXAMPLE}}
        },
        422: {"description": "Empty question"},
        503: {"description": "Pipeline not available"}
    }
)
async def answer_question(
    request: Request,
    payload: AnswerRequest,
    pipeline: RAGPipeline = Depends(get_pipeline)
):
    start_time = time.perf_counter()
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    logger.info(
        "Answering question",
        extra={
            "correlation_id": correlation_id,
            "conversation_id": payload.conversation_id,
            "history_length": len(payload.history)
        }
    )

    result = await pipeline.generate_answer(
        payload.question,
        [(t.question, t.answer) for t in payload.history],
        conversation_id=payload.conversation_id,
    )

    body = result.to_dict()
    body["processing_time_ms"] = int((time.perf_counter() - start_time) * 1000)
    return AnswerResponse(**body)


@router.get(
    "/config",
    response_model=PipelineConfigResponse,
    summary="Current pipeline configuration"
)
async def get_pipeline_config(
    request: Request,
    pipeline: RAGPipeline = Depends(get_pipeline)
):
    manager = getattr(request.app.state, "prompt_manager", None)
    return PipelineConfigResponse(
        config=pipeline.config,
        prompt_version=pipeline.prompts.version,
        prompt_source=manager.source if manager else "builtin",
    )
