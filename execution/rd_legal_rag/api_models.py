"""
Pydantic models for the Dominican Legal RAG FastAPI backend.
"""

from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class HistoryMessage(BaseModel):
    """One previous turn of the conversation."""
    role: Literal["user", "assistant"] = "user"
    content: str = ""


class ChatRequest(BaseModel):
    """Request body for the chat endpoint."""
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(default="", max_length=8000)
    history: list[HistoryMessage] = []
    user_id: Optional[str] = Field(default=None, alias="userId")
    mode: Optional[str] = None


class RagProbeRequest(BaseModel):
    """Request body for the retrieval probe."""
    message: str = ""


class ProbeChunk(BaseModel):
    """One retrieved chunk in a probe response."""
    model_config = ConfigDict(populate_by_name=True)

    title: str
    source_url: str
    canonical_key: Optional[str] = None
    chunk_index: int
    similarity: Optional[float] = None
    text_preview: str = Field(default="", alias="textPreview")


class RagProbeResponse(BaseModel):
    """Response body for the retrieval probe."""
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    total: int
    chunks: list[ProbeChunk]
    by_canonical_used: Optional[bool] = Field(default=None, alias="byCanonicalUsed")
    asked_canonical: Optional[str] = Field(default=None, alias="askedCanonical")


class EnvCheckResponse(BaseModel):
    """Which provider keys are configured (booleans only)."""
    ok: bool = True
    env: dict[str, bool]


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    database: str


class RecentChat(BaseModel):
    """One recent chat turn, without the user's text."""
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId")
    mode: str
    outcome: str
    latency_ms: float = Field(alias="latencyMs")
    chunks_count: int = Field(alias="chunksCount")
    failed: bool


class MetricsResponse(BaseModel):
    """In-process counters since the last restart."""
    model_config = ConfigDict(populate_by_name=True)

    uptime_seconds: float = Field(alias="uptimeSeconds")
    metrics: dict
    recent_chats: list[RecentChat] = Field(default_factory=list, alias="recentChats")
