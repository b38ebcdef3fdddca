"""Provider request and result models."""

from dataclasses import dataclass, field

from canvas_studio.domain.sessions import RequestKind


@dataclass(frozen=True)
class ProviderRequest:
    """Input for a single provider call."""

    kind: RequestKind
    prompt: str
    provider: str
    model: str
    source_images: tuple[str, ...] = ()
    aspect_ratio: str | None = None
    image_size: str | None = None
    enable_web_search: bool = False
    context: str | None = None


@dataclass(frozen=True)
class ProviderPayload:
    """Normalized data returned by a successful provider call."""

    text: str | None = None
    image_data: str | None = None
    remote_url: str | None = None
    video_url: str | None = None
    video_thumbnail: str | None = None
    selected_tool: str | None = None
    model: str | None = None
    metadata: dict[str, object] = field(default_factory=dict)

    @property
    def has_image(self) -> bool:
        return bool(self.image_data or self.remote_url)


@dataclass(frozen=True)
class ProviderSuccess:
    """Tagged success variant."""

    data: ProviderPayload


@dataclass(frozen=True)
class ProviderFailure:
    """Tagged failure variant carrying the provider's code and message."""

    code: str
    message: str


ProviderResult = ProviderSuccess | ProviderFailure


@dataclass(frozen=True)
class UploadResult:
    """Outcome of a blob upload."""

    success: bool
    url: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class SaveReceipt:
    """Acknowledgement returned by the persistence collaborator."""

    version: int
    updated_at: str
