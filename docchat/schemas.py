"""Pydantic request/response schemas for the API.

Defines the public contracts used by the FastAPI endpoints:
- AssistantCreate / AssistantUpdate: owner input for creating and editing assistants.
- AssistantOut / AssistantCreated: assistant records as returned to clients.
- QueuePosition: position and estimated wait of a pending crawl.
- ChatRequest / Source / MessageOut: chat turn input and stored messages.
- UsageOut: current-month usage and plan limits.
- ErrorOut: error body with the user-facing classification of the message.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AssistantCreate(BaseModel):
    """Request body for creating an assistant.

    Attributes:
        name: Display name.
        docs_url: Root URL of the documentation site to crawl.
        description: Optional free text.
    """
    name: str = Field(..., min_length=1, max_length=200)
    docs_url: str = Field(..., min_length=1, max_length=2048, description="Documentation root URL")
    description: Optional[str] = Field(default=None, max_length=2000)


class AssistantUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    is_public: Optional[bool] = None


class AssistantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    docs_url: str
    status: str
    error_message: Optional[str] = None
    pinecone_namespace: Optional[str] = None
    total_pages: Optional[int] = None
    processed_pages: Optional[int] = None
    is_public: bool = False
    public_share_id: Optional[str] = None
    last_crawled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class AssistantCreated(BaseModel):
    assistant: AssistantOut
    warning: Optional[str] = None


class PublicAssistantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    docs_url: str
    status: str


class QueuePosition(BaseModel):
    """Informational queue state for an assistant's crawl.

    Attributes:
        status: Queue item status.
        position: 1-based position among pending items, or None if not pending.
        total_pending: All pending items in the queue.
        estimated_wait_minutes: Coarse estimate from the items ahead.
    """
    status: str
    position: Optional[int] = None
    total_pending: int
    estimated_wait_minutes: int
    retry_count: int = 0
    error_message: Optional[str] = None


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000, description="User question")


class Source(BaseModel):
    url: str
    title: Optional[str] = None
    preview: Optional[str] = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    role: str
    content: str
    sources: Optional[List[Source]] = None
    created_at: datetime


class UsageOut(BaseModel):
    plan: str
    period: str
    questions_used: int
    questions_limit: Optional[int] = None  # None = unlimited
    assistants_used: int
    assistants_limit: int


class ErrorOut(BaseModel):
    detail: str
    error_type: str
    title: str
    suggestions: List[str] = Field(default_factory=list)
