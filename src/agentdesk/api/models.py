"""
Pydantic models for agentdesk API requests and responses.
This module defines the request and response schemas used by the chat endpoints.
"""

from typing import (
    List,
    Optional,
)

from pydantic import Field

from agentdesk.core.schema import (
    AgentOutput,
    CamelModel,
    ChatTurn,
)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class ChatRequest(CamelModel):
    """Incoming user message for the synchronous chat endpoint."""

    session_id: str = Field(..., min_length=1, description="Conversation session id")
    message: str = Field(..., min_length=1, description="User message")
    timezone: Optional[str] = None
    locale: Optional[str] = None


class StreamChatRequest(ChatRequest):
    """Streaming variant; the host page may narrow the routes and modals the agent can use."""

    available_routes: Optional[List[str]] = None
    available_modals: Optional[List[str]] = None


class ChatResponse(AgentOutput):
    """Normalized agent output plus session bookkeeping."""

    session_id: str
    history_count: int


class ErrorResponse(CamelModel):
    error: str


class SessionHistoryResponse(CamelModel):
    session_id: str
    history: List[ChatTurn] = Field(default_factory=list)
