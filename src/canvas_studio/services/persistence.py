"""Durable session storage: serialization, debounced saves and hydration."""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Protocol

from canvas_studio.domain.durable import (
    SerializedBounds,
    SerializedCachedImage,
    SerializedContext,
    SerializedImageHistoryEntry,
    SerializedMessage,
    SerializedOperation,
    SerializedSession,
    SerializedSessionSet,
    SerializedStatus,
)
from canvas_studio.domain.placeholders import Bounds
from canvas_studio.domain.providers import SaveReceipt
from canvas_studio.domain.sessions import (
    CachedImage,
    ContextInfo,
    GenerationStatus,
    ImageHistoryEntry,
    Message,
    MessageRole,
    OperationRecord,
    Session,
)
from canvas_studio.services.assets import (
    AssetLifecycleManager,
    drop_large_inline,
    is_remote_url,
    normalize_inline,
)
from canvas_studio.services.guards import SingleSlotGuard
from canvas_studio.services.scheduler import Scheduler
from canvas_studio.services.session_store import SessionStore, StoreChange

_logger = logging.getLogger(__name__)

INTERRUPTED_NOTICE = "This generation was interrupted before it finished. Please try again."
_MIGRATION_BACKOFF_START = 0.1
_MIGRATION_BACKOFF_MAX = 1.0


class SessionSetRepository(Protocol):
    """Persistence interface for the stored session set."""

    def load(self, session_set_id: str) -> SerializedSessionSet | None:
        """Return the stored session set, if present."""

    def save(self, form: SerializedSessionSet) -> SaveReceipt:
        """Store the session set and return the new version."""


@dataclass
class SessionSerializer:
    """Converts sessions to and from their durable form."""

    store: SessionStore
    assets: AssetLifecycleManager
    inline_media_limit: int = 150_000

    async def serialize(self, session: Session) -> SerializedSession:
        """Upload pending inline images, then build a size-capped durable form."""
        await self._upload_pending(session)
        current = self.store.get_session(session.session_id) or session
        return SerializedSession(
            session_id=current.session_id,
            name=current.name,
            start_time=current.start_time,
            last_activity=current.last_activity,
            messages=[self._serialize_message(message) for message in current.messages],
            operations=[
                SerializedOperation(
                    id=operation.id,
                    kind=operation.kind,
                    timestamp=operation.timestamp,
                    input=operation.input,
                    output=operation.output,
                    success=operation.success,
                    metadata=operation.metadata,
                )
                for operation in current.operations
            ],
            current_mode=current.current_mode,
            active_image_id=current.active_image_id,
            cached_image=self._serialize_cached(current.cached_image),
            context_info=SerializedContext(
                user_preferences=dict(current.context_info.user_preferences),
                recent_prompts=list(current.context_info.recent_prompts),
                image_history=[
                    SerializedImageHistoryEntry(
                        id=entry.id,
                        prompt=entry.prompt,
                        operation_kind=entry.operation_kind,
                        timestamp=entry.timestamp,
                        thumbnail=self._cap(entry.thumbnail, entry.id),
                        remote_url=entry.remote_url,
                        image_data=None
                        if is_remote_url(entry.remote_url)
                        else self._cap(entry.image_data, entry.id),
                        parent_image_id=entry.parent_image_id,
                    )
                    for entry in current.context_info.image_history
                ],
                iteration_count=current.context_info.iteration_count,
                last_operation_kind=current.context_info.last_operation_kind,
            ),
        )

    def deserialize(self, form: SerializedSession) -> Session:
        """Rebuild a session, dropping stale failures and aborting in-flight work."""
        messages: list[Message] = []
        for stored in form.messages:
            message = _message_from_form(stored)
            if message is not None:
                messages.append(message)
        cached = form.cached_image
        return Session(
            session_id=form.session_id,
            name=form.name,
            start_time=form.start_time,
            last_activity=form.last_activity,
            messages=messages,
            operations=[
                OperationRecord(
                    id=operation.id,
                    kind=operation.kind,
                    timestamp=operation.timestamp,
                    input=operation.input,
                    output=operation.output,
                    success=operation.success,
                    metadata=operation.metadata,
                )
                for operation in form.operations
            ],
            current_mode=form.current_mode,
            active_image_id=form.active_image_id,
            cached_image=CachedImage(
                image_id=cached.image_id,
                prompt=cached.prompt,
                image_data=cached.image_data,
                remote_url=cached.remote_url,
                bounds=Bounds(**cached.bounds.model_dump()) if cached.bounds else None,
                layer_id=cached.layer_id,
                timestamp=cached.timestamp,
            )
            if cached
            else None,
            context_info=ContextInfo(
                user_preferences=dict(form.context_info.user_preferences),
                recent_prompts=list(form.context_info.recent_prompts),
                image_history=[
                    ImageHistoryEntry(**entry.model_dump())
                    for entry in form.context_info.image_history
                ],
                iteration_count=form.context_info.iteration_count,
                last_operation_kind=form.context_info.last_operation_kind,
            ),
        )

    async def _upload_pending(self, session: Session) -> None:
        pending = [
            message
            for message in session.messages
            if normalize_inline(message.image_data) is not None
            and not is_remote_url(message.remote_url)
        ]
        if not pending:
            return
        urls = await asyncio.gather(
            *(
                self.assets.upload_inline(message.image_data or "", session.session_id)
                for message in pending
            )
        )
        for message, url in zip(pending, urls, strict=True):
            if url is None:
                continue
            self.store.update_message(
                message.id,
                lambda current, url=url: replace(current, remote_url=url),
                session_id=session.session_id,
            )

    def _serialize_message(self, message: Message) -> SerializedMessage:
        status = message.generation_status
        has_remote = is_remote_url(message.remote_url)
        return SerializedMessage(
            id=message.id,
            role=message.role.value,
            content=message.content,
            timestamp=message.timestamp,
            image_data=None if has_remote else self._cap(message.image_data, message.id),
            remote_url=message.remote_url,
            thumbnail=self._cap(message.thumbnail, message.id),
            source_image_data=self._cap(message.source_image_data, message.id),
            source_images_data=[
                value
                for value in message.source_images_data
                if len(value) <= self.inline_media_limit
            ],
            video_url=message.video_url,
            video_thumbnail=self._cap(message.video_thumbnail, message.id),
            expects_image_output=message.expects_image_output,
            expects_video_output=message.expects_video_output,
            generation_status=SerializedStatus(
                is_generating=status.is_generating,
                progress=status.progress,
                error=status.error,
                stage=status.stage,
            )
            if status
            else None,
            group_id=message.group_id,
            group_index=message.group_index,
            group_total=message.group_total,
            provider=message.provider,
            model=message.model,
            metadata=message.metadata,
        )

    def _serialize_cached(self, cached: CachedImage | None) -> SerializedCachedImage | None:
        if cached is None:
            return None
        return SerializedCachedImage(
            image_id=cached.image_id,
            prompt=cached.prompt,
            image_data=None
            if is_remote_url(cached.remote_url)
            else self._cap(cached.image_data, cached.image_id),
            remote_url=cached.remote_url,
            bounds=SerializedBounds(
                x=cached.bounds.x,
                y=cached.bounds.y,
                width=cached.bounds.width,
                height=cached.bounds.height,
            )
            if cached.bounds
            else None,
            layer_id=cached.layer_id,
            timestamp=cached.timestamp,
        )

    def _cap(self, value: str | None, owner_id: str) -> str | None:
        capped = drop_large_inline(value, self.inline_media_limit)
        if value is not None and capped is None:
            _logger.warning(
                "Dropping %s-char inline payload of %s from durable form",
                len(value),
                owner_id,
            )
        return capped


def _message_from_form(stored: SerializedMessage) -> Message | None:
    try:
        role = MessageRole(stored.role)
    except ValueError:
        _logger.warning("Dropping message %s with unknown role %r", stored.id, stored.role)
        return None
    if role is MessageRole.ERROR:
        return None
    message = Message(
        id=stored.id,
        role=role,
        content=stored.content,
        timestamp=stored.timestamp,
        image_data=stored.image_data,
        remote_url=stored.remote_url,
        thumbnail=stored.thumbnail,
        source_image_data=stored.source_image_data,
        source_images_data=tuple(stored.source_images_data),
        video_url=stored.video_url,
        video_thumbnail=stored.video_thumbnail,
        expects_image_output=stored.expects_image_output,
        expects_video_output=stored.expects_video_output,
        group_id=stored.group_id,
        group_index=stored.group_index,
        group_total=stored.group_total,
        provider=stored.provider,
        model=stored.model,
        metadata=stored.metadata,
    )
    status = stored.generation_status
    if status is None:
        return message
    if status.error and not status.is_generating:
        if role is MessageRole.ASSISTANT and not message.has_renderable_media:
            return None
        if message.has_renderable_media:
            return replace(
                message,
                generation_status=GenerationStatus(
                    is_generating=False, progress=status.progress, stage=status.stage
                ),
            )
    if status.is_generating:
        return replace(
            message,
            content=INTERRUPTED_NOTICE,
            generation_status=GenerationStatus(
                is_generating=False, progress=status.progress, stage="aborted"
            ),
        )
    return replace(
        message,
        generation_status=GenerationStatus(
            is_generating=False,
            progress=status.progress,
            error=status.error,
            stage=status.stage,
        ),
    )


@dataclass
class PersistenceCoordinator:
    """Debounced, mutually exclusive saves of the whole session set."""

    store: SessionStore
    serializer: SessionSerializer
    repository: SessionSetRepository
    assets: AssetLifecycleManager
    scheduler: Scheduler
    session_set_id: str = "default"
    debounce_seconds: float = 0.3
    guard: SingleSlotGuard = field(default_factory=lambda: SingleSlotGuard("persist"))
    hydrating: bool = False
    hydrate_failed: bool = False
    last_receipt: SaveReceipt | None = None
    _dirty: bool = False
    _generation: int = 0
    _last_saved: str | None = None
    _tasks: set["asyncio.Task[None]"] = field(default_factory=set)

    def attach(self) -> None:
        """Save automatically whenever the store changes."""
        self.store.subscribe(self._on_change)

    def schedule(self) -> None:
        """Request a save; requests within the debounce window coalesce."""
        if self.hydrating or self.hydrate_failed:
            return
        self._dirty = True
        self._generation += 1
        task = self.scheduler.spawn(self._debounced(self._generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> SaveReceipt | None:
        """Save now; returns None when skipped or another save is running.

        After a failed hydration nothing is saved, so the stored set is never
        replaced by a partial one.
        """
        if self.hydrate_failed:
            _logger.warning("Skipping save because stored sessions failed to load")
            return None
        if not self.guard.try_acquire():
            self._dirty = True
            return None
        try:
            receipt: SaveReceipt | None = None
            while True:
                await self._wait_for_migration()
                self._dirty = False
                form = await self._build_form()
                encoded = form.model_dump_json()
                if encoded != self._last_saved:
                    receipt = self.repository.save(form)
                    self._last_saved = encoded
                    self.last_receipt = receipt
                    _logger.info(
                        "Saved %s sessions (version %s)",
                        len(form.sessions),
                        receipt.version,
                    )
                if not self._dirty:
                    return receipt
        finally:
            self.guard.release()

    async def hydrate(self) -> bool:
        """Load stored sessions into the store, then migrate legacy payloads."""
        self.hydrating = True
        try:
            form = self.repository.load(self.session_set_id)
            if form is None:
                self.hydrate_failed = False
                return False
            sessions = [self.serializer.deserialize(item) for item in form.sessions]
            self.store.replace_sessions(sessions, form.active_session_id)
            self.hydrate_failed = False
            _logger.info("Hydrated %s sessions", len(sessions))
        except Exception:
            self.hydrate_failed = True
            raise
        finally:
            self.hydrating = False
        if await self.assets.migrate_legacy(self.store.all_sessions()):
            self.schedule()
        return True

    async def drain(self) -> None:
        """Wait for scheduled saves to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _debounced(self, generation: int) -> None:
        await self.scheduler.sleep(self.debounce_seconds)
        if generation != self._generation:
            return
        try:
            await self.flush()
        except Exception:
            _logger.exception("Saving sessions failed")

    async def _wait_for_migration(self) -> None:
        delay = _MIGRATION_BACKOFF_START
        while self.assets.migration_guard.running:
            await self.scheduler.sleep(delay)
            delay = min(delay * 2, _MIGRATION_BACKOFF_MAX)

    async def _build_form(self) -> SerializedSessionSet:
        sessions = [
            await self.serializer.serialize(session)
            for session in self.store.all_sessions()
        ]
        return SerializedSessionSet(
            session_set_id=self.session_set_id,
            active_session_id=self.store.state.current_session_id,
            sessions=sessions,
        )

    def _on_change(self, change: StoreChange) -> None:
        if change.persistable:
            self.schedule()
