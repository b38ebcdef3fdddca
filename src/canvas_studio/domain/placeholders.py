"""Geometry and placeholder models shared with the canvas."""

from dataclasses import dataclass

PLACEHOLDER_PREFIX = "ai-placeholder-"


@dataclass(frozen=True)
class Point:
    """A canvas coordinate."""

    x: float
    y: float

    def offset(self, dx: float = 0.0, dy: float = 0.0) -> "Point":
        return Point(self.x + dx, self.y + dy)


ORIGIN = Point(0.0, 0.0)


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned rectangle given by its top-left corner and size."""

    x: float
    y: float
    width: float
    height: float

    @classmethod
    def around(cls, center: Point, width: float, height: float) -> "Bounds":
        """Build bounds centered on a point."""
        return cls(center.x - width / 2, center.y - height / 2, width, height)

    @property
    def center(self) -> Point:
        return Point(self.x + self.width / 2, self.y + self.height / 2)

    def overlaps(self, other: "Bounds") -> bool:
        """Return True when the two rectangles share any area."""
        return (
            self.x < other.x + other.width
            and other.x < self.x + self.width
            and self.y < other.y + other.height
            and other.y < self.y + self.height
        )


@dataclass(frozen=True)
class PlaceholderSpec:
    """Speculative frame shown on the canvas while a request runs."""

    placeholder_id: str
    center: Point
    width: float
    height: float
    operation_kind: str
    group_id: str | None = None
    group_index: int | None = None
    group_total: int | None = None
    group_anchor: Point | None = None
    prefer_horizontal: bool = False

    @property
    def bounds(self) -> Bounds:
        return Bounds.around(self.center, self.width, self.height)


def placeholder_id_for(message_id: str) -> str:
    """Derive the placeholder id owned by a message."""
    return f"{PLACEHOLDER_PREFIX}{message_id}"


@dataclass(frozen=True)
class LayoutHint:
    """Shared row layout for a parallel cohort."""

    anchor: Point
    index: int
    total: int


@dataclass(frozen=True)
class CanvasEvent:
    """Fire-and-forget notification for the rendering layer."""

    kind: str
    payload: dict[str, object]
