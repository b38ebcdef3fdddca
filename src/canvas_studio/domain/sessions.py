"""Domain models for chat sessions and their messages."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from canvas_studio.domain.placeholders import Bounds


class MessageRole(StrEnum):
    """Author of a chat message."""

    USER = "user"
    ASSISTANT = "assistant"
    ERROR = "error"


class RequestKind(StrEnum):
    """Kinds of generation request the engine can run."""

    GENERATE = "generate"
    EDIT = "edit"
    BLEND = "blend"
    ANALYZE = "analyze"
    CHAT = "chat"
    VECTORIZE = "vectorize"
    VIDEO = "video"


IMAGE_KINDS = frozenset({RequestKind.GENERATE, RequestKind.EDIT, RequestKind.BLEND})


def utcnow() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class GenerationStatus:
    """Progress of a message whose content is still being produced."""

    is_generating: bool = False
    progress: float = 0.0
    error: str | None = None
    stage: str | None = None


@dataclass(frozen=True)
class Message:
    """A single entry of a conversation."""

    id: str
    role: MessageRole
    content: str
    timestamp: datetime
    image_data: str | None = None
    remote_url: str | None = None
    thumbnail: str | None = None
    source_image_data: str | None = None
    source_images_data: tuple[str, ...] = ()
    video_url: str | None = None
    video_thumbnail: str | None = None
    expects_image_output: bool = False
    expects_video_output: bool = False
    generation_status: GenerationStatus | None = None
    group_id: str | None = None
    group_index: int | None = None
    group_total: int | None = None
    provider: str | None = None
    model: str | None = None
    metadata: dict[str, object] | None = None

    @property
    def has_renderable_media(self) -> bool:
        """Return True when the message can still show an image or video."""
        return bool(
            self.image_data
            or self.remote_url
            or self.thumbnail
            or self.video_url
            or self.video_thumbnail
        )


@dataclass(frozen=True)
class MessageDraft:
    """Fields supplied by callers when appending a message."""

    role: MessageRole
    content: str
    image_data: str | None = None
    source_image_data: str | None = None
    source_images_data: tuple[str, ...] = ()
    expects_image_output: bool = False
    expects_video_output: bool = False
    generation_status: GenerationStatus | None = None
    group_id: str | None = None
    group_index: int | None = None
    group_total: int | None = None
    provider: str | None = None


@dataclass(frozen=True)
class CachedImage:
    """Most recent image of a session, used as the implicit edit subject."""

    image_id: str
    prompt: str
    image_data: str | None = None
    remote_url: str | None = None
    bounds: Bounds | None = None
    layer_id: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class ImageHistoryEntry:
    """Append-only record of a produced asset."""

    id: str
    prompt: str
    operation_kind: str
    timestamp: datetime
    thumbnail: str | None = None
    remote_url: str | None = None
    image_data: str | None = None
    parent_image_id: str | None = None


@dataclass(frozen=True)
class OperationRecord:
    """Outcome of one executed request."""

    id: str
    kind: str
    timestamp: datetime
    input: str
    output: str | None = None
    success: bool = True
    metadata: dict[str, object] | None = None


@dataclass
class ContextInfo:
    """Conversation-level hints carried across requests."""

    user_preferences: dict[str, object] = field(default_factory=dict)
    recent_prompts: list[str] = field(default_factory=list)
    image_history: list[ImageHistoryEntry] = field(default_factory=list)
    iteration_count: int = 0
    last_operation_kind: str | None = None


@dataclass
class Session:
    """Durable state of one conversation."""

    session_id: str
    name: str
    start_time: datetime
    last_activity: datetime
    messages: list[Message] = field(default_factory=list)
    operations: list[OperationRecord] = field(default_factory=list)
    current_mode: str = RequestKind.CHAT.value
    active_image_id: str | None = None
    cached_image: CachedImage | None = None
    context_info: ContextInfo = field(default_factory=ContextInfo)

    def find_message(self, message_id: str) -> Message | None:
        """Return the message with the given id, if present."""
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


@dataclass(frozen=True)
class SessionSummary:
    """Listing row for a session."""

    session_id: str
    name: str
    last_activity: datetime
    created_at: datetime
    message_count: int
    preview: str | None = None
