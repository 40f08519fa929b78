"""Pydantic models shared across the ledger, gateway, pipeline, and API.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Literal: restricts a field to a fixed set of allowed string values.
- Field(default_factory=...): creates a fresh default object per instance.
- Provenance: how a generated file map was obtained (model output, repaired
  model output, or the built-in fallback template).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# Task lifecycle states used by the ledger + API responses.
TaskStatus = Literal["pending", "processing", "completed", "failed", "timeout"]
TaskKind = Literal["generate", "modify", "export"]
Provenance = Literal["model", "repaired", "fallback"]
Role = Literal["system", "user", "assistant"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "timeout"})


class GenerationResult(BaseModel):
    """Generated project: relative path -> file text, plus how it was obtained."""

    files: dict[str, str] = Field(default_factory=dict)
    provenance: Provenance

    @field_validator("files")
    @classmethod
    def _normalize_separators(cls, value: dict[str, str]) -> dict[str, str]:
        return {path.replace("\\", "/"): content for path, content in value.items()}


class Task(BaseModel):
    """Canonical task record shape returned by the ledger/API."""

    task_id: str
    kind: TaskKind
    # Raw request text (description or modification instruction).
    description: str = ""
    status: TaskStatus = "pending"
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    result: GenerationResult | None = None
    error: str | None = None
    # Diagnostics: rounds, finish reason, fallback reason, timings.
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @property
    def completed(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ChatMessage(BaseModel):
    """One role-tagged conversation turn."""

    role: Role
    content: str = ""


class CompletionUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionResponse(BaseModel):
    """Non-streaming gateway response."""

    content: str = ""
    finish_reason: str | None = None
    usage: CompletionUsage | None = None


class StreamDelta(BaseModel):
    """One event of a streaming gateway response."""

    content: str | None = None
    finish_reason: str | None = None


class ContinuationResult(BaseModel):
    """Assembled output of one continuation run."""

    text: str
    rounds: int
    finish_reason: str | None = None
    stopped_by: Literal["finished", "max_loops", "empty"] = "finished"


class ValidationResult(BaseModel):
    """Validator outcome for one raw model response."""

    valid: bool
    parsed_code: dict[str, str] | None = None
    # Extracted and/or repaired text, set whenever it differs from the input.
    cleaned_code: str | None = None
    error: str | None = None
    repaired: bool = False


class GenerateRequest(BaseModel):
    """Payload for a `generate` task."""

    description: str = Field(min_length=1)
    components: list[str] = Field(default_factory=list)
    style: str = "modern"


class ModifyRequest(BaseModel):
    """Payload for a `modify` task."""

    files: dict[str, str] = Field(min_length=1)
    instruction: str = Field(min_length=1)


class SubmitTaskRequest(BaseModel):
    """Request body for POST /tasks."""

    kind: TaskKind = "generate"
    payload: dict[str, Any] = Field(default_factory=dict)


class SubmitTaskResponse(BaseModel):
    """Response body for POST /tasks."""

    task_id: str
    status: TaskStatus = "pending"


class PollResponse(BaseModel):
    """Response body for GET /tasks/{task_id}."""

    task_id: str
    kind: TaskKind
    status: TaskStatus
    progress: int
    message: str
    completed: bool
    result: GenerationResult | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> PollResponse:
        return cls(
            task_id=task.task_id,
            kind=task.kind,
            status=task.status,
            progress=task.progress,
            message=task.message,
            completed=task.completed,
            result=task.result,
            error=task.error,
            metadata=task.metadata,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )
