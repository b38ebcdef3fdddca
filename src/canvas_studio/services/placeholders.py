"""Speculative placeholder prediction and canvas event protocol."""

import logging
from dataclasses import dataclass, field, replace
from typing import Protocol

from canvas_studio.domain.placeholders import (
    Bounds,
    CanvasEvent,
    PlaceholderSpec,
    Point,
)

_logger = logging.getLogger(__name__)

SHOW_PLACEHOLDER = "show-placeholder"
REMOVE_PLACEHOLDER = "remove-placeholder"
UPDATE_PLACEHOLDER_PROGRESS = "update-placeholder-progress"
PLACE_IMAGE = "place-image"

_VERTICAL_KINDS = frozenset({"generate", "manual"})


class CanvasEventSink(Protocol):
    """Outbound port to the rendering layer."""

    def emit(self, event: CanvasEvent) -> None:
        """Deliver an event; delivery is fire-and-forget."""


@dataclass(frozen=True)
class PlacementRequest:
    """Everything the canvas needs to place a produced image."""

    source: str
    file_name: str
    operation_kind: str
    placeholder_id: str
    center: Point | None = None
    width: float | None = None
    height: float | None = None
    group_id: str | None = None
    group_index: int | None = None
    group_total: int | None = None


@dataclass
class PlaceholderBridge:
    """Predicts free canvas cells and mirrors placeholder lifecycle to the sink."""

    sink: CanvasEventSink
    offset_horizontal: float = 522.0
    offset_vertical: float = 552.0
    max_attempts: int = 20
    viewport: Bounds | None = None
    _pending: dict[str, PlaceholderSpec] = field(default_factory=dict)
    _placed: list[Bounds] = field(default_factory=list)

    def show(self, spec: PlaceholderSpec) -> PlaceholderSpec:
        """Show a placeholder at the nearest free cell and return the final spec."""
        if spec.placeholder_id in self._pending:
            self.remove(spec.placeholder_id)
        resolved = self._avoid_collisions(spec)
        self._pending[resolved.placeholder_id] = resolved
        self.sink.emit(CanvasEvent(SHOW_PLACEHOLDER, _spec_payload(resolved)))
        return resolved

    def remove(self, placeholder_id: str) -> bool:
        """Remove a pending placeholder; unknown ids are a no-op."""
        if self._pending.pop(placeholder_id, None) is None:
            return False
        self.sink.emit(CanvasEvent(REMOVE_PLACEHOLDER, {"placeholder_id": placeholder_id}))
        return True

    def update_progress(self, placeholder_id: str, percent: float) -> None:
        if placeholder_id not in self._pending:
            return
        self.sink.emit(
            CanvasEvent(
                UPDATE_PLACEHOLDER_PROGRESS,
                {"placeholder_id": placeholder_id, "percent": round(percent, 2)},
            )
        )

    def place_image(self, request: PlacementRequest) -> None:
        """Ask the canvas to place an image where its placeholder stood."""
        pending = self._pending.get(request.placeholder_id)
        if pending is not None:
            self._placed.append(pending.bounds)
        elif request.center is not None and request.width and request.height:
            self._placed.append(Bounds.around(request.center, request.width, request.height))
        payload: dict[str, object] = {
            "source": request.source,
            "file_name": request.file_name,
            "operation_kind": request.operation_kind,
            "placeholder_id": request.placeholder_id,
            "layout_hints": _layout_hints(request, pending),
        }
        self.sink.emit(CanvasEvent(PLACE_IMAGE, payload))

    def pending_spec(self, placeholder_id: str) -> PlaceholderSpec | None:
        return self._pending.get(placeholder_id)

    def register_placed(self, bounds: Bounds) -> None:
        """Record an asset the canvas reports as placed."""
        self._placed.append(bounds)

    def set_viewport(self, viewport: Bounds | None) -> None:
        self.viewport = viewport

    def viewport_center(self) -> Point | None:
        return self.viewport.center if self.viewport else None

    def _avoid_collisions(self, spec: PlaceholderSpec) -> PlaceholderSpec:
        horizontal = spec.prefer_horizontal or spec.operation_kind not in _VERTICAL_KINDS
        dx = self.offset_horizontal if horizontal else 0.0
        dy = 0.0 if horizontal else self.offset_vertical
        candidate = spec
        for _attempt in range(self.max_attempts):
            if not self._occupied(candidate.bounds):
                return candidate
            candidate = replace(candidate, center=candidate.center.offset(dx, dy))
        _logger.info(
            "No free cell for %s after %s attempts, accepting overlap",
            spec.placeholder_id,
            self.max_attempts,
        )
        return candidate

    def _occupied(self, bounds: Bounds) -> bool:
        if any(bounds.overlaps(existing) for existing in self._placed):
            return True
        return any(bounds.overlaps(pending.bounds) for pending in self._pending.values())


def _spec_payload(spec: PlaceholderSpec) -> dict[str, object]:
    payload: dict[str, object] = {
        "placeholder_id": spec.placeholder_id,
        "center": {"x": spec.center.x, "y": spec.center.y},
        "width": spec.width,
        "height": spec.height,
        "operation_kind": spec.operation_kind,
    }
    if spec.group_id is not None:
        payload["group_id"] = spec.group_id
        payload["group_index"] = spec.group_index
        payload["group_total"] = spec.group_total
    if spec.group_anchor is not None:
        payload["group_anchor"] = {"x": spec.group_anchor.x, "y": spec.group_anchor.y}
    return payload


def _layout_hints(
    request: PlacementRequest, pending: PlaceholderSpec | None
) -> dict[str, object]:
    center = pending.center if pending else request.center
    hints: dict[str, object] = {}
    if center is not None:
        hints["center"] = {"x": center.x, "y": center.y}
    width = pending.width if pending else request.width
    height = pending.height if pending else request.height
    if width and height:
        hints["width"] = width
        hints["height"] = height
    if request.group_id is not None:
        hints["group_id"] = request.group_id
        hints["group_index"] = request.group_index
        hints["group_total"] = request.group_total
    return hints
