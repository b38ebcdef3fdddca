"""Fans one user intent out into independent pipeline runs."""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from canvas_studio.config import Settings, parse_multiplier
from canvas_studio.domain.errors import ValidationError
from canvas_studio.domain.placeholders import ORIGIN, LayoutHint, Point
from canvas_studio.domain.sessions import (
    IMAGE_KINDS,
    GenerationStatus,
    MessageDraft,
    MessageRole,
    RequestKind,
)
from canvas_studio.services.pipeline import GenerationPipeline
from canvas_studio.services.placeholders import PlaceholderBridge
from canvas_studio.services.routing import ToolRouter
from canvas_studio.services.scheduler import Scheduler
from canvas_studio.services.session_store import SessionStore, new_id

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationIntent:
    """What the user asked for, before routing."""

    prompt: str
    manual_mode: str = "auto"
    source_image: str | None = None
    blend_sources: tuple[str, ...] = ()
    analysis_image: str | None = None
    multiplier: int | str | None = None


@dataclass(frozen=True)
class GroupSummary:
    group_id: str
    total: int
    succeeded: int
    failed: int
    message_ids: tuple[str, ...] = ()


@dataclass
class ParallelCoordinator:
    """Creates the cohort messages and launches one pipeline run per sibling."""

    store: SessionStore
    pipeline: GenerationPipeline
    router: ToolRouter
    bridge: PlaceholderBridge
    scheduler: Scheduler
    settings: Settings
    _groups: dict[str, list["asyncio.Task[Any]"]] = field(default_factory=dict)
    _members: dict[str, tuple[str, ...]] = field(default_factory=dict)

    async def dispatch(self, intent: GenerationIntent) -> str:
        """Start the runs for an intent and return the group id."""
        prompt = intent.prompt.strip()
        if not prompt:
            raise ValidationError("Prompt must not be empty")
        session_id = self.store.ensure_active_session()
        decision = await self.router.route(
            prompt,
            intent.manual_mode,
            self.settings.ai_provider,
            blend_source_count=len(intent.blend_sources),
            session_id=session_id,
        )
        kind = decision.kind
        sources = self.pipeline.validate(kind, _sources_for(kind, intent), session_id)
        try:
            requested = parse_multiplier(
                intent.multiplier
                if intent.multiplier is not None
                else self.settings.auto_mode_multiplier
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        multiplier = requested if kind in IMAGE_KINDS else 1

        if self.store.detect_iterative_intent(prompt, session_id):
            self.store.increment_iteration(session_id)
        self.store.remember_prompt(prompt, session_id)

        group_id = new_id("group")
        self.store.add_message(
            MessageDraft(
                role=MessageRole.USER,
                content=prompt,
                source_image_data=sources[0] if kind is RequestKind.EDIT and sources else None,
                source_images_data=sources if kind is RequestKind.BLEND else (),
            ),
            session_id=session_id,
        )
        anchor = self._shared_anchor(session_id) if multiplier > 1 else None
        message_ids: list[str] = []
        tasks: list[asyncio.Task[Any]] = []
        for index in range(multiplier):
            message = self.store.add_message(
                MessageDraft(
                    role=MessageRole.ASSISTANT,
                    content="",
                    expects_image_output=kind in IMAGE_KINDS,
                    expects_video_output=kind is RequestKind.VIDEO,
                    generation_status=GenerationStatus(
                        is_generating=True, progress=0.0, stage="queued"
                    ),
                    group_id=group_id if multiplier > 1 else None,
                    group_index=index if multiplier > 1 else None,
                    group_total=multiplier if multiplier > 1 else None,
                    provider=self.settings.ai_provider,
                ),
                session_id=session_id,
            )
            message_ids.append(message.id)
            layout = (
                LayoutHint(anchor=anchor, index=index, total=multiplier)
                if anchor is not None
                else None
            )
            tasks.append(
                self.scheduler.spawn(
                    self._run_sibling(
                        kind,
                        decision.prompt,
                        sources,
                        message.id,
                        session_id,
                        layout,
                        delay=index * self.settings.parallel_stagger_seconds,
                    )
                )
            )
        self._groups[group_id] = tasks
        self._members[group_id] = tuple(message_ids)
        for task in tasks:
            task.add_done_callback(lambda _task, key=group_id: self._forget_if_done(key))
        _logger.info(
            "Dispatched %s x%s as group %s (%s)",
            kind.value,
            multiplier,
            group_id,
            decision.reason,
        )
        return group_id

    async def settle(self, group_id: str) -> GroupSummary:
        """Wait for every sibling of a group and count the outcomes.

        Groups are forgotten once all siblings finish, so a group settled after
        that point reports no members.
        """
        tasks = self._groups.get(group_id, [])
        message_ids = self._members.get(group_id, ())
        await asyncio.gather(*tasks, return_exceptions=True)
        self._groups.pop(group_id, None)
        self._members.pop(group_id, None)
        succeeded = 0
        for message_id in message_ids:
            message = self.store.get_message(message_id)
            status = message.generation_status if message else None
            if status is not None and not status.error and status.stage == "completed":
                succeeded += 1
        return GroupSummary(
            group_id=group_id,
            total=len(message_ids),
            succeeded=succeeded,
            failed=len(message_ids) - succeeded,
            message_ids=message_ids,
        )

    def pending_groups(self) -> list[str]:
        return [
            group_id
            for group_id, tasks in self._groups.items()
            if any(not task.done() for task in tasks)
        ]

    def _forget_if_done(self, group_id: str) -> None:
        tasks = self._groups.get(group_id)
        if tasks is not None and all(task.done() for task in tasks):
            del self._groups[group_id]
            self._members.pop(group_id, None)

    async def _run_sibling(  # noqa: PLR0913
        self,
        kind: RequestKind,
        prompt: str,
        sources: tuple[str, ...],
        message_id: str,
        session_id: str,
        layout: LayoutHint | None,
        *,
        delay: float,
    ) -> None:
        if delay > 0:
            await self.scheduler.sleep(delay)
        try:
            await self.pipeline.run(
                kind,
                prompt,
                sources,
                message_id,
                session_id=session_id,
                layout=layout,
            )
        except Exception as exc:
            _logger.exception("Sibling %s failed outside the pipeline", message_id)
            self.store.update_message(
                message_id,
                lambda current: replace(
                    current, content=f"Sorry, the {kind.value} request failed: {exc}"
                ),
                session_id=session_id,
            )
            self.store.update_message_status(
                message_id,
                session_id=session_id,
                is_generating=False,
                progress=0.0,
                error=str(exc) or type(exc).__name__,
                stage="failed",
            )

    def _shared_anchor(self, session_id: str) -> Point:
        cached = self.store.cached_image(session_id)
        if cached is not None and cached.bounds is not None:
            return cached.bounds.center.offset(dy=self.settings.placement_offset_vertical)
        return self.bridge.viewport_center() or ORIGIN


def _sources_for(kind: RequestKind, intent: GenerationIntent) -> tuple[str, ...]:
    if kind is RequestKind.BLEND:
        return intent.blend_sources
    if kind is RequestKind.ANALYZE:
        image = intent.analysis_image or intent.source_image
        return (image,) if image else ()
    if kind in {RequestKind.EDIT, RequestKind.VECTORIZE}:
        return (intent.source_image,) if intent.source_image else ()
    return ()
