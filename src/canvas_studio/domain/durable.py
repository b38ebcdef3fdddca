"""Durable (JSON-safe) forms of sessions and their messages."""

from datetime import datetime

from pydantic import BaseModel, Field


class SerializedStatus(BaseModel):
    """Stored generation status."""

    is_generating: bool = False
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    error: str | None = None
    stage: str | None = None


class SerializedMessage(BaseModel):
    """Stored chat message."""

    id: str
    role: str
    content: str = ""
    timestamp: datetime
    image_data: str | None = None
    remote_url: str | None = None
    thumbnail: str | None = None
    source_image_data: str | None = None
    source_images_data: list[str] = Field(default_factory=list)
    video_url: str | None = None
    video_thumbnail: str | None = None
    expects_image_output: bool = False
    expects_video_output: bool = False
    generation_status: SerializedStatus | None = None
    group_id: str | None = None
    group_index: int | None = None
    group_total: int | None = None
    provider: str | None = None
    model: str | None = None
    metadata: dict[str, object] | None = None


class SerializedBounds(BaseModel):
    x: float
    y: float
    width: float
    height: float


class SerializedCachedImage(BaseModel):
    """Stored cached-image pointer."""

    image_id: str
    prompt: str = ""
    image_data: str | None = None
    remote_url: str | None = None
    bounds: SerializedBounds | None = None
    layer_id: str | None = None
    timestamp: datetime | None = None


class SerializedImageHistoryEntry(BaseModel):
    id: str
    prompt: str = ""
    operation_kind: str
    timestamp: datetime
    thumbnail: str | None = None
    remote_url: str | None = None
    image_data: str | None = None
    parent_image_id: str | None = None


class SerializedOperation(BaseModel):
    id: str
    kind: str
    timestamp: datetime
    input: str = ""
    output: str | None = None
    success: bool = True
    metadata: dict[str, object] | None = None


class SerializedContext(BaseModel):
    user_preferences: dict[str, object] = Field(default_factory=dict)
    recent_prompts: list[str] = Field(default_factory=list)
    image_history: list[SerializedImageHistoryEntry] = Field(default_factory=list)
    iteration_count: int = Field(default=0, ge=0)
    last_operation_kind: str | None = None


class SerializedSession(BaseModel):
    """Stored session."""

    session_id: str
    name: str
    start_time: datetime
    last_activity: datetime
    messages: list[SerializedMessage] = Field(default_factory=list)
    operations: list[SerializedOperation] = Field(default_factory=list)
    current_mode: str = "chat"
    active_image_id: str | None = None
    cached_image: SerializedCachedImage | None = None
    context_info: SerializedContext = Field(default_factory=SerializedContext)


class SerializedSessionSet(BaseModel):
    """Everything persisted for one workspace."""

    session_set_id: str
    active_session_id: str | None = None
    sessions: list[SerializedSession] = Field(default_factory=list)
