"""Pydantic request/response schemas for the FastAPI backend."""

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


# ---- Requests ----

class ChatRequest(BaseModel):
    messages: list[dict[str, Any]] = Field(
        ..., min_length=1, description="Full conversation in transport shape, ending with the user turn",
    )
    session_id: str = Field(default="default", pattern=r"^[a-zA-Z0-9_.-]+$")


class InsightRequest(BaseModel):
    # Optional so a missing text is a 400 with a message, not a schema error
    text: Optional[str] = Field(default=None, validation_alias=AliasChoices("text", "responseText"))
    phase: Optional[str] = None


class WorkflowRequest(BaseModel):
    messages: list[dict[str, Any]] = Field(default_factory=list)
    conversation_id: str = Field(default="default", pattern=r"^[a-zA-Z0-9_.-]+$")
    streaming_message_id: Optional[str] = None
    enrich: bool = Field(default=False, description="Add LLM-derived insights to un-annotated nodes")


class RenderRequest(BaseModel):
    code: str = Field(..., min_length=1, description="JSX/TSX component source")
    props: dict[str, Any] = Field(default_factory=dict)


# ---- Responses ----

class InsightResponse(BaseModel):
    insight: Optional[str] = None
    source: str = "heuristic"


class PlanRecordInfo(BaseModel):
    id: str
    sessionId: str
    timestamp: int
    planText: str
    toolsUsed: list[str] = Field(default_factory=list)
    userQuery: str = ""
    status: str = "pending"


class MCPServerInfo(BaseModel):
    connected: bool = False
    tools: int = 0
    error: Optional[str] = None


class ServerStatus(BaseModel):
    status: str = "ok"
    uptime_seconds: float = 0.0
    provider: str = ""
    model: Optional[str] = None
    api_key_configured: bool = False
    mcp_servers: dict[str, MCPServerInfo] = Field(default_factory=dict)
    total_tools: int = 0
    tool_cache: dict[str, Any] = Field(default_factory=dict)
    artifact_cache: dict[str, Any] = Field(default_factory=dict)


class SandboxErrorResponse(BaseModel):
    stage: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    detail: str
