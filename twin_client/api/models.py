"""
API entity models using Pydantic.

Required fields have no default, so a payload missing one fails validation
instead of producing a placeholder. Optional fields default; an explicit
null for an optional collection is read as absent.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator


class WireModel(BaseModel):
    """Base for entities decoded from camelCase JSON."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


def _none_as_empty(value: Any) -> Any:
    return [] if value is None else value


class ConversationResponse(WireModel):
    """Answer to a conversational query."""

    answer: StrictStr
    conversation_id: StrictStr = Field(alias="conversationId")
    sources: list[dict[str, Any]] = Field(default_factory=list)
    confidence: float = 0.0

    @field_validator("sources", mode="before")
    @classmethod
    def null_sources_as_empty(cls, value: Any) -> Any:
        return _none_as_empty(value)


class ConversationSummary(WireModel):
    id: StrictStr
    title: StrictStr
    last_modified: datetime = Field(alias="lastModified")


class ConversationMessage(WireModel):
    role: StrictStr
    content: StrictStr
    timestamp: datetime


class Conversation(WireModel):
    """Full conversation history."""

    id: StrictStr
    title: StrictStr
    messages: list[ConversationMessage]
    created_at: datetime = Field(alias="createdAt")
    last_modified: datetime = Field(alias="lastModified")


class QueryResponse(WireModel):
    """Answer to a one-off (non-conversational) query."""

    answer: StrictStr
    sources: list[dict[str, Any]] = Field(default_factory=list)
    confidence: float = 0.0

    @field_validator("sources", mode="before")
    @classmethod
    def null_sources_as_empty(cls, value: Any) -> Any:
        return _none_as_empty(value)


class IngestResponse(WireModel):
    message: StrictStr = "Document ingested successfully"
    document_id: StrictStr | None = Field(default=None, alias="documentId")


class HealthStatus(WireModel):
    status: StrictStr
    details: dict[str, Any] | None = None

    @property
    def is_healthy(self) -> bool:
        return self.status.lower() in ("ok", "healthy", "up")


class QueryRequest(WireModel):
    """Outgoing body for query and conversational query."""

    question: StrictStr
    k: int = 5
    conversation_id: StrictStr | None = Field(default=None, alias="conversationId")
    memory_window: int | None = Field(default=None, alias="memoryWindow")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class IngestRequest(WireModel):
    content: StrictStr
    title: StrictStr
    source: StrictStr | None = None
    metadata: dict[str, Any] | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

