"""
Defines the core Pydantic data models for the application.

These models serve as the formal, validated data contract between the store,
the tree resolver, the streaming coordinator and the session. Wire-facing
models (the chat request and the stream events) use camelCase aliases so they
match the streaming endpoint's JSON exactly.
"""

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

# --- Constants ---
USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
SYSTEM_ROLE = "system"
Role = Literal[USER_ROLE, ASSISTANT_ROLE]
Mode = Literal["auto", "manual"]

DEFAULT_CHAT_TITLE = "New Chat"
UNKNOWN_CHAT_NAME = "Unknown Chat"

# parent id (None for the root) -> selected child id
Selections = Dict[Optional[str], str]


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for models that travel over the streaming endpoint."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Records ---
class MessageStats(WireModel):
    """Usage figures reported once a response has finished."""

    tokens_input: int = 0
    tokens_output: int = 0
    cost: float = 0.0
    latency: float = 0.0
    model: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.tokens_input + self.tokens_output


class MediaAttachment(WireModel):
    """An image or video attached by the user or extracted from a response."""

    id: str = Field(default_factory=_new_id)
    type: Literal["image", "video"] = "image"
    url: str
    name: Optional[str] = None
    generated_by: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class Citation(WireModel):
    """A web-search source returned alongside a response."""

    model_config = ConfigDict(extra="allow")

    url: str
    title: Optional[str] = None
    content: Optional[str] = None


class RouterDecision(WireModel):
    """The model picked in auto mode, and why."""

    model: str
    reasoning: str = ""


class Message(BaseModel):
    """A node in the conversation tree."""

    id: str = Field(default_factory=_new_id)
    chat_id: str
    role: Role
    content: str = ""
    model: Optional[str] = None
    parent_id: Optional[str] = None
    branch_index: int = 0
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    is_partial: bool = False
    stats: Optional[MessageStats] = None
    attachments: List[MediaAttachment] = Field(default_factory=list)
    citations: List[Citation] = Field(default_factory=list)
    generated_media: List[MediaAttachment] = Field(
        default_factory=list, exclude=True
    )
    created_at: datetime = Field(default_factory=_now)

    @field_validator("role", mode="before")
    @classmethod
    def normalize_legacy_role(cls, value: Any) -> Any:
        """Older records stored assistant replies with the system role."""
        if value == SYSTEM_ROLE:
            return ASSISTANT_ROLE
        return value

    @field_validator("branch_index", mode="before")
    @classmethod
    def default_branch_index(cls, value: Any) -> Any:
        return 0 if value is None else value


class Chat(BaseModel):
    """A conversation container and its aggregate stats."""

    id: str = Field(default_factory=_new_id)
    title: str = DEFAULT_CHAT_TITLE
    preview: str = ""
    mode: Mode = "auto"
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    message_count: int = 0
    total_cost: float = 0.0
    total_tokens: int = 0
    models: List[str] = Field(default_factory=list)
    current_leaf_message_id: Optional[str] = None

    @property
    def has_default_title(self) -> bool:
        return not self.title.strip() or self.title == DEFAULT_CHAT_TITLE


# --- Request ---
class HistoryMessage(WireModel):
    role: Role
    content: str


class ImageOptions(WireModel):
    aspect_ratio: Optional[
        Literal[
            "1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9"
        ]
    ] = None
    image_size: Optional[Literal["1K", "2K", "4K"]] = None


class WebSearchOptions(WireModel):
    enabled: bool = True
    engine: Optional[str] = None
    max_results: int = 5
    search_context_size: Optional[str] = None


class ChatRequest(WireModel):
    """The body of one streaming request."""

    message: str
    attachments: List[MediaAttachment] = Field(default_factory=list)
    mode: Mode = "auto"
    models: Optional[List[str]] = None
    api_key: str
    conversation_history: List[HistoryMessage] = Field(default_factory=list)
    system_prompt: Optional[str] = None
    image_options: ImageOptions = Field(default_factory=ImageOptions)
    web_search: Optional[WebSearchOptions] = None
    generate_title: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# --- Stream events ---
class RouterEvent(WireModel):
    type: Literal["router"] = "router"
    router_decision: RouterDecision


class ContentEvent(WireModel):
    type: Literal["content"] = "content"
    content: str = ""
    model: Optional[str] = None


class CitationsEvent(WireModel):
    type: Literal["citations"] = "citations"
    citations: List[Citation] = Field(default_factory=list)
    model: Optional[str] = None


class StatsEvent(WireModel):
    type: Literal["stats"] = "stats"
    stats: MessageStats
    model: Optional[str] = None


class SummaryEvent(WireModel):
    type: Literal["summary"] = "summary"
    summary: str


class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    error: str = "Stream error occurred"
    model: Optional[str] = None


class DoneEvent(WireModel):
    type: Literal["done"] = "done"
    model: Optional[str] = None


StreamEvent = Annotated[
    Union[
        RouterEvent,
        ContentEvent,
        CitationsEvent,
        StatsEvent,
        SummaryEvent,
        ErrorEvent,
        DoneEvent,
    ],
    Field(discriminator="type"),
]

stream_event_adapter: TypeAdapter = TypeAdapter(StreamEvent)
