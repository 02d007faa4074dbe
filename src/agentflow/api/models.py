"""
Pydantic models for agentflow API requests and responses.
This module defines the request and response schemas used by the agentflow API.
"""

from typing import Optional

from pydantic import (
    BaseModel,
    Field,
)

from agentflow.core.schema import ThreadType


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class ThreadRequest(BaseModel):
    """Request to create a new thread."""

    user_id: str
    title: str = "New Chat"
    type: ThreadType = ThreadType.CHAT


class ThreadResponse(BaseModel):
    """Thread information without its messages."""

    user_id: str
    thread_id: str
    title: str
    type: ThreadType


class QueryRequest(BaseModel):
    """Incoming user query; the answer is streamed back as Server-Sent Events."""

    message: str = Field(..., description="User query")
    user_id: str = Field(..., description="Owner of the thread")
    thread_id: Optional[str] = Field(None, description="Thread to continue; a new one if omitted")
    type: ThreadType = ThreadType.CHAT


class CancelResponse(BaseModel):
    """Outcome of a cancellation request."""

    task_id: Optional[str] = None
    canceled: bool


class IntentRequest(BaseModel):
    """A catalog entry to create or replace."""

    intent_id: Optional[str] = None
    name: str
    description: str
    prompt: Optional[str] = None
    model: Optional[str] = None
