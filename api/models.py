"""Pydantic request/response schemas for the FastAPI backend."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

IterationPolicy = Literal["single_step", "fixed", "run_to_completion"]


# ---- Requests ----

class RunRequest(BaseModel):
    """Fresh-start request: an unknown or absent id creates a conversation."""
    conversation_id: Optional[str] = Field(default=None, description="Existing or caller-chosen conversation id")
    instruction: Optional[str] = Field(default=None, description="Task for a new conversation; ignored for an existing one")
    backend: Optional[str] = Field(default=None, description="'native', 'structured' or 'tool_calling'")
    iteration_policy: IterationPolicy = "single_step"
    max_iterations: Optional[int] = Field(default=None, ge=1)


class StepRequest(BaseModel):
    """Continuation request: the conversation must already exist."""
    backend: Optional[str] = None
    iteration_policy: IterationPolicy = "single_step"
    max_iterations: Optional[int] = Field(default=None, ge=1)


# ---- Responses ----

class SessionStatus(BaseModel):
    conversation_id: str
    instruction: str
    backend: str
    running: bool = False
    turn_count: int = 0
    history_length: int = 0


class HistoryEntryInfo(BaseModel):
    turn: int
    kind: str
    payload: dict[str, Any]
    timestamp: str


class SessionHistory(BaseModel):
    conversation_id: str
    turn_count: int
    entries: list[HistoryEntryInfo]


class ScreenshotResponse(BaseModel):
    image: str
    format: str = "png"


class ServerStatus(BaseModel):
    status: str = "ok"
    uptime_seconds: float = 0.0
    total_sessions: int = 0
    running_sessions: int = 0
    max_sessions: int = 100
    backends: list[str] = Field(default_factory=list)
    default_backend: str = "native"
    exclusive_desktop: bool = True
