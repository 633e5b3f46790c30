"""
Suggestions Controllers (API Routes)
====================================

FastAPI routes for conversation messages, pending suggestions and the
system mode.

Controllers delegate to the MessageDispatcher and SuggestionLifecycleManager
held in application state.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from src.config import SystemMode
from src.core import ResourceNotFoundException
from src.shared.infrastructure.logging import get_logger
from src.suggestions.application import (
    AgentMessageRequest,
    AgentMessageResponse,
    ConversationMessagesResponse,
    CustomerMessageRequest,
    CustomerMessageResponse,
    DebugTraceResponse,
    MessageDispatcher,
    MessageInfo,
    ModeResponse,
    ModeUpdateRequest,
    PendingSuggestionResponse,
    SuggestionLifecycleManager,
)
from src.suggestions.domain import ConversationMessage

logger = get_logger(__name__)
router = APIRouter(prefix="/conversations", tags=["Conversations"])
system_router = APIRouter(prefix="/system", tags=["System"])


# ========== Example payloads for Swagger ==========

PENDING_SUGGESTION_EXAMPLE = {
    "conversation_id": "conv-123",
    "suggestion": "Biblioteka dirba I-V 10:00-19:00.",
    "confidence": 0.85,
    "token": 4,
    "timestamp": "2025-01-15T10:30:05Z",
    "metadata": {
        "message_count": 2,
        "customer_message": "Kada dirba biblioteka?",
        "sources": ["Bibliotekos darbo laikas (https://www.vilnius.lt/biblioteka)"],
        "source_urls": ["https://www.vilnius.lt/biblioteka"],
        "contexts_used": 1,
        "outcome": "success"
    },
    "last_customer_message_at": "2025-01-15T10:30:00Z"
}


# ========== Dependencies ==========

def get_lifecycle(request: Request) -> SuggestionLifecycleManager:
    """Get the suggestion lifecycle manager from app state."""
    lifecycle = getattr(request.app.state, "lifecycle", None)
    if lifecycle is None:
        raise HTTPException(status_code=503, detail="Suggestion service not available")
    return lifecycle


def get_dispatcher(request: Request) -> MessageDispatcher:
    """Get the message dispatcher from app state."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Conversation store not available")
    return dispatcher


def _message_info(message: ConversationMessage) -> MessageInfo:
    return MessageInfo(
        id=message.id,
        conversation_id=message.conversation_id,
        sender=message.sender,
        content=message.content,
        created_at=message.created_at,
        metadata=message.metadata,
    )


# ========== Conversation Routes ==========

@router.post(
    "/{conversation_id}/messages",
    response_model=CustomerMessageResponse,
    summary="Post a customer message",
    description="""
    Store a citizen message and act on it according to the system mode:

    - **hitl**: a new suggestion token is issued and generation starts in
      the background; poll `pending-suggestion` for the result
    - **autopilot**: the answer is generated and posted as an agent message
    - **off**: an offline notice is posted (once per conversation)
    """
)
async def post_customer_message(
    request: Request,
    conversation_id: str,
    payload: CustomerMessageRequest,
    background_tasks: BackgroundTasks,
    dispatcher: MessageDispatcher = Depends(get_dispatcher)
):
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    outcome = await dispatcher.handle_customer_message(conversation_id, payload.content)

    autopilot = outcome["mode"] == SystemMode.AUTOPILOT
    if autopilot:
        background_tasks.add_task(
            dispatcher.send_autopilot_reply,
            conversation_id,
            payload.content.strip(),
            outcome["history"],
            outcome["message_count"],
        )

    logger.info(
        "Customer message accepted",
        extra={
            "correlation_id": correlation_id,
            "conversation_id": conversation_id,
            "mode": outcome["mode"],
            "token": outcome["token"],
        }
    )

    return CustomerMessageResponse(
        message=_message_info(outcome["message"]),
        mode=outcome["mode"],
        token=outcome["token"],
        reply=_message_info(outcome["reply"]) if outcome["reply"] else None,
        autopilot_scheduled=autopilot,
    )


@router.post(
    "/{conversation_id}/agent-messages",
    response_model=AgentMessageResponse,
    summary="Post an agent reply",
    description="Store an agent reply. Any pending or in-flight suggestion becomes undeliverable."
)
async def post_agent_message(
    conversation_id: str,
    payload: AgentMessageRequest,
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
    lifecycle: SuggestionLifecycleManager = Depends(get_lifecycle)
):
    message = await dispatcher.handle_agent_message(
        conversation_id, payload.content, payload.agent_id
    )
    return AgentMessageResponse(
        message=_message_info(message),
        token=lifecycle.current_token(conversation_id),
    )


@router.get(
    "/{conversation_id}/messages",
    response_model=ConversationMessagesResponse,
    summary="List conversation messages"
)
async def list_messages(
    conversation_id: str,
    dispatcher: MessageDispatcher = Depends(get_dispatcher)
):
    messages = await dispatcher.list_messages(conversation_id)
    return ConversationMessagesResponse(
        conversation_id=conversation_id,
        messages=[_message_info(m) for m in messages],
    )


@router.get(
    "/{conversation_id}/pending-suggestion",
    response_model=PendingSuggestionResponse,
    summary="Get the pending AI suggestion",
    description="""
    Returns the suggestion for the conversation's current token, or
    `suggestion: null` if none is deliverable (still generating, superseded
    by a newer message or agent reply, or the system is not in HITL mode).
    """,
    responses={
        200: {"content": {"application/json": {"example": PENDING_SUGGESTION_EXAMPLE}}}
    }
)
async def get_pending_suggestion(
    conversation_id: str,
    lifecycle: SuggestionLifecycleManager = Depends(get_lifecycle)
):
    pending = lifecycle.get_pending_suggestion(conversation_id)
    last_message_at = lifecycle.last_customer_message_at(conversation_id)

    if pending is None:
        return PendingSuggestionResponse(
            conversation_id=conversation_id,
            last_customer_message_at=last_message_at,
        )

    return PendingSuggestionResponse(
        conversation_id=conversation_id,
        suggestion=pending.suggestion,
        confidence=pending.confidence,
        token=pending.token,
        timestamp=pending.timestamp,
        metadata=pending.metadata,
        last_customer_message_at=last_message_at,
    )


@router.get(
    "/{conversation_id}/debug",
    response_model=DebugTraceResponse,
    summary="Last pipeline debug trace",
    responses={404: {"description": "No generation recorded for this conversation"}}
)
async def get_debug_trace(
    conversation_id: str,
    lifecycle: SuggestionLifecycleManager = Depends(get_lifecycle)
):
    trace = lifecycle.get_last_trace(conversation_id)
    if trace is None:
        raise ResourceNotFoundException("Debug trace", conversation_id)

    return DebugTraceResponse(
        conversation_id=conversation_id,
        current_token=lifecycle.current_token(conversation_id),
        debug_trace=trace.to_list(),
    )


# ========== System Routes ==========

@system_router.get("/mode", response_model=ModeResponse, summary="Current system mode")
async def get_mode(lifecycle: SuggestionLifecycleManager = Depends(get_lifecycle)):
    return ModeResponse(mode=lifecycle.mode)


@system_router.put("/mode", response_model=ModeResponse, summary="Change system mode")
async def set_mode(
    request: Request,
    payload: ModeUpdateRequest,
    lifecycle: SuggestionLifecycleManager = Depends(get_lifecycle)
):
    previous = lifecycle.set_mode(payload.mode)
    logger.info(
        "System mode updated via API",
        extra={
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "previous_mode": previous,
            "mode": payload.mode,
        }
    )
    return ModeResponse(mode=lifecycle.mode, previous_mode=previous)
