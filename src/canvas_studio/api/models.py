"""Pydantic models for the HTTP surface."""

from datetime import datetime

from pydantic import BaseModel, Field

from canvas_studio.domain.placeholders import Bounds, CanvasEvent
from canvas_studio.domain.sessions import Message, SessionSummary


class CreateSessionRequest(BaseModel):
    name: str | None = None


class RenameSessionRequest(BaseModel):
    name: str = Field(min_length=1)


class SessionView(BaseModel):
    """Listing row for a session."""

    session_id: str
    name: str
    last_activity: datetime
    created_at: datetime
    message_count: int
    preview: str | None = None
    is_current: bool = False

    @classmethod
    def from_summary(cls, summary: SessionSummary, current_id: str | None) -> "SessionView":
        return cls(
            session_id=summary.session_id,
            name=summary.name,
            last_activity=summary.last_activity,
            created_at=summary.created_at,
            message_count=summary.message_count,
            preview=summary.preview,
            is_current=summary.session_id == current_id,
        )


class StatusView(BaseModel):
    is_generating: bool
    progress: float
    error: str | None = None
    stage: str | None = None


class MessageView(BaseModel):
    """Chat message as shown to the client."""

    id: str
    role: str
    content: str
    timestamp: datetime
    image_data: str | None = None
    remote_url: str | None = None
    thumbnail: str | None = None
    video_url: str | None = None
    video_thumbnail: str | None = None
    generation_status: StatusView | None = None
    group_id: str | None = None
    group_index: int | None = None
    group_total: int | None = None
    provider: str | None = None
    model: str | None = None
    metadata: dict[str, object] | None = None

    @classmethod
    def from_message(cls, message: Message) -> "MessageView":
        status = message.generation_status
        return cls(
            id=message.id,
            role=message.role.value,
            content=message.content,
            timestamp=message.timestamp,
            image_data=message.image_data,
            remote_url=message.remote_url,
            thumbnail=message.thumbnail,
            video_url=message.video_url,
            video_thumbnail=message.video_thumbnail,
            generation_status=(
                StatusView(
                    is_generating=status.is_generating,
                    progress=status.progress,
                    error=status.error,
                    stage=status.stage,
                )
                if status
                else None
            ),
            group_id=message.group_id,
            group_index=message.group_index,
            group_total=message.group_total,
            provider=message.provider,
            model=message.model,
            metadata=message.metadata,
        )


class DispatchRequest(BaseModel):
    """A user intent submitted from the chat composer."""

    prompt: str
    manual_mode: str = "auto"
    source_image: str | None = None
    blend_sources: list[str] = Field(default_factory=list)
    analysis_image: str | None = None
    multiplier: int | str | None = None


class DispatchResponse(BaseModel):
    group_id: str
    session_id: str | None = None


class CanvasEventView(BaseModel):
    kind: str
    payload: dict[str, object]

    @classmethod
    def from_event(cls, event: CanvasEvent) -> "CanvasEventView":
        return cls(kind=event.kind, payload=event.payload)


class BoundsModel(BaseModel):
    """Axis-aligned rectangle in canvas coordinates."""

    x: float
    y: float
    width: float = Field(gt=0)
    height: float = Field(gt=0)

    def to_bounds(self) -> Bounds:
        return Bounds(x=self.x, y=self.y, width=self.width, height=self.height)


class ViewportRequest(BaseModel):
    viewport: BoundsModel | None = None


class PlacementReport(BaseModel):
    """Where the canvas actually put an asset."""

    bounds: BoundsModel
    image_id: str | None = None
    layer_id: str | None = None
