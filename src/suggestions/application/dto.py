"""
Suggestions Application DTOs
============================

Pydantic models for the conversation, suggestion and mode endpoints.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

SystemModeStr = Literal["hitl", "autopilot", "off"]


# ========== Request DTOs ==========

class CustomerMessageRequest(BaseModel):
    """A message from the citizen."""
    content: str = Field(..., description="Message text")

    @field_validator("content")
    @classmethod
    def validate_content_length(cls, v: str) -> str:
        if len(v) > 4000:
            raise ValueError("Message too long (max 4000 characters)")
        return v


class AgentMessageRequest(BaseModel):
    """A reply written by an agent."""
    content: str = Field(..., description="Message text")
    agent_id: Optional[str] = Field(None, description="Sending agent")


class ModeUpdateRequest(BaseModel):
    """Request model for changing the system mode."""
    mode: SystemModeStr


# ========== Response DTOs ==========

class MessageInfo(BaseModel):
    """A stored conversation message."""
    id: str
    conversation_id: str
    sender: str
    content: str
    created_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CustomerMessageResponse(BaseModel):
    """Result of posting a customer message."""
    message: MessageInfo
    mode: SystemModeStr
    token: Optional[int] = Field(None, description="Generation token started (hitl only)")
    reply: Optional[MessageInfo] = Field(None, description="Message posted in response (off mode)")
    autopilot_scheduled: bool = False


class AgentMessageResponse(BaseModel):
    """Result of posting an agent reply."""
    message: MessageInfo
    token: int = Field(..., description="Token now current for the conversation")


class PendingSuggestionResponse(BaseModel):
    """Pending suggestion, or ``suggestion: null`` when none is deliverable."""
    conversation_id: str
    suggestion: Optional[str] = None
    confidence: Optional[float] = None
    token: Optional[int] = None
    timestamp: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_customer_message_at: Optional[datetime] = None


class ConversationMessagesResponse(BaseModel):
    conversation_id: str
    messages: List[MessageInfo]


class DebugTraceResponse(BaseModel):
    """Last recorded pipeline trace of a conversation."""
    conversation_id: str
    current_token: int
    debug_trace: List[Dict[str, Any]]


class ModeResponse(BaseModel):
    mode: SystemModeStr
    previous_mode: Optional[SystemModeStr] = None
