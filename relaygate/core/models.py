"""Internal transport models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field


class InboundMessage(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    model: str = ""
    messages: list[InboundMessage] = Field(default_factory=list)
    stream: bool = False


class UpstreamAuthor(BaseModel):
    role: str


class UpstreamContent(BaseModel):
    content_type: str = "text"
    parts: list[str]


class UpstreamMessage(BaseModel):
    id: str
    author: UpstreamAuthor
    content: UpstreamContent
    metadata: dict = Field(default_factory=dict)


class ConversationMode(BaseModel):
    kind: str = "primary_assistant"


class UpstreamConversation(BaseModel):
    action: str = "next"
    messages: list[UpstreamMessage]
    parent_message_id: str
    model: str
    timezone_offset_min: int = 0
    suggestions: list[str] = Field(default_factory=list)
    history_and_training_disabled: bool = True
    conversation_mode: ConversationMode = Field(default_factory=ConversationMode)
    force_paragen: bool = False
    force_paragen_model_slug: str = ""
    force_nulligen: bool = False
    force_rate_limit: bool = False
    websocket_request_id: str


class ProofOfWorkChallenge(BaseModel):
    seed: str
    difficulty: str


class ChatRequirementsPayload(BaseModel):
    """Typed view of the chat-requirements response; extra keys are ignored."""

    token: str
    proofofwork: ProofOfWorkChallenge


class SessionRequirements(BaseModel):
    device_id: str
    token: str
    seed: str
    difficulty: str


class EventAuthor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str | None = None


class EventContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    parts: list[Any] = Field(default_factory=list)


class EventMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    author: EventAuthor = Field(default_factory=EventAuthor)
    content: EventContent = Field(default_factory=EventContent)


class ConversationEvent(BaseModel):
    """One JSON ``data:`` payload of the conversation stream."""

    model_config = ConfigDict(extra="ignore")

    message: EventMessage | None = None

    def assistant_snapshot(self) -> str | None:
        """Cumulative assistant text carried by this event, if any."""
        if self.message is None or self.message.author.role != "assistant":
            return None
        parts = self.message.content.parts
        if not parts or not isinstance(parts[0], str):
            return None
        return parts[0]


@dataclass(frozen=True, slots=True)
class ProofToken:
    value: str
    degraded: bool = False


@dataclass(frozen=True, slots=True)
class First:
    error: str | None = None


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class Done:
    pass


RelayEvent = Union[First, TextDelta, Done]
