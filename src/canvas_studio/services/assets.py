"""Asset lifecycle: normalization, upload, thumbnails and memory demotion."""

import asyncio
import base64
import binascii
import io
import logging
import re
from collections.abc import Coroutine
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from PIL import Image, UnidentifiedImageError

from canvas_studio.domain.providers import UploadResult
from canvas_studio.domain.sessions import ImageHistoryEntry, Message, Session
from canvas_studio.services.guards import SingleSlotGuard
from canvas_studio.services.scheduler import Scheduler
from canvas_studio.services.session_store import SessionStore, new_id

_logger = logging.getLogger(__name__)

_DATA_IMAGE = re.compile(r"^data:image/", re.IGNORECASE)
_REMOTE = re.compile(r"^https?://", re.IGNORECASE)
_BASE64 = re.compile(r"^[A-Za-z0-9+/=]+$")
_WHITESPACE = re.compile(r"\s+")
_MIN_BARE_BASE64 = 120
_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


class BlobStorage(Protocol):
    """Interface for durable binary storage."""

    async def upload(
        self, data: bytes, destination_hint: str, content_type: str
    ) -> UploadResult:
        """Store bytes and return a public URL on success."""


def is_remote_url(value: str | None) -> bool:
    return bool(value) and bool(_REMOTE.match(value.strip()))


def normalize_inline(value: str | None) -> str | None:
    """Return a clean image data URL, or None when the value is not inline data."""
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if _DATA_IMAGE.match(trimmed):
        parts = trimmed.split(",")
        if len(parts) >= 3 and parts[1].startswith("data:"):
            return f"{parts[0]},{parts[-1]}"
        return trimmed
    compact = _WHITESPACE.sub("", trimmed)
    if len(compact) > _MIN_BARE_BASE64 and _BASE64.match(compact):
        return f"data:image/png;base64,{compact}"
    return None


def ensure_data_url(value: str) -> str:
    if value.startswith("data:"):
        return value
    return f"data:image/png;base64,{value}"


def drop_large_inline(value: str | None, limit: int) -> str | None:
    """Keep an inline payload only when it fits under the limit."""
    if value is None or len(value) <= limit:
        return value
    return None


def decode_data_url(data_url: str) -> tuple[str, bytes]:
    """Split a data URL into its MIME type and decoded bytes."""
    header, _, encoded = data_url.partition(",")
    mime_type = header.removeprefix("data:").split(";")[0] or "image/png"
    try:
        return mime_type, base64.b64decode(encoded, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Inline image data is not valid base64") from exc


def build_thumbnail(raw: bytes, max_edge: int = 512, quality: int = 82) -> str | None:
    """Render a WebP preview that fits within max_edge pixels."""
    try:
        with Image.open(io.BytesIO(raw)) as source:
            image = source.convert("RGBA")
    except (UnidentifiedImageError, OSError) as exc:
        _logger.warning("Could not decode image for thumbnail: %s", exc)
        return None
    image.thumbnail((max_edge, max_edge), Image.LANCZOS)
    buffer = io.BytesIO()
    image.save(buffer, format="WEBP", quality=quality)
    encoded = base64.b64encode(buffer.getvalue()).decode("utf-8")
    return f"data:image/webp;base64,{encoded}"


@dataclass(frozen=True)
class AssetContext:
    """Where a produced asset came from."""

    message_id: str
    session_id: str | None
    prompt: str
    operation_kind: str
    parent_image_id: str | None = None


@dataclass(frozen=True)
class RegisteredAsset:
    history_id: str
    remote_url: str | None = None
    thumbnail: str | None = None


@dataclass(frozen=True)
class PlacementSource:
    """Concrete representation chosen for canvas placement."""

    kind: str
    value: str | None = None

    @property
    def found(self) -> bool:
        return self.kind != "none"


NO_SOURCE = PlacementSource(kind="none")


@dataclass
class AssetLifecycleManager:
    """Reconciles inline, local and remote representations of images."""

    store: SessionStore
    storage: BlobStorage
    scheduler: Scheduler
    upload_prefix: str = "ai-chat-history/"
    thumbnail_max_edge: int = 512
    thumbnail_quality: int = 82
    demote_grace_seconds: float = 3.0
    legacy_inline_threshold: int = 350_000
    migration_guard: SingleSlotGuard = field(
        default_factory=lambda: SingleSlotGuard("legacy-migration")
    )
    _tasks: set["asyncio.Task[Any]"] = field(default_factory=set)

    async def register_result(
        self, image_data: str, context: AssetContext
    ) -> RegisteredAsset:
        """Upload a produced image, build its preview and back-fill the message."""
        history_id = new_id("img")
        inline = normalize_inline(image_data)
        remote_url = image_data.strip() if is_remote_url(image_data) else None
        thumbnail: str | None = None
        if inline is not None:
            mime_type, raw = decode_data_url(inline)
            thumbnail = build_thumbnail(
                raw, self.thumbnail_max_edge, self.thumbnail_quality
            )
            remote_url = await self._upload(
                raw, mime_type, f"{context.session_id or 'orphan'}/{history_id}"
            )

        session_id = self._session_for(context.message_id, context.session_id)
        if session_id is not None:
            self.store.add_image_history(
                ImageHistoryEntry(
                    id=history_id,
                    prompt=context.prompt,
                    operation_kind=context.operation_kind,
                    timestamp=self.scheduler.now(),
                    thumbnail=thumbnail,
                    remote_url=remote_url,
                    image_data=None if remote_url else inline,
                    parent_image_id=context.parent_image_id,
                ),
                session_id=session_id,
            )
            self._backfill(context.message_id, session_id, remote_url, thumbnail)
            self.spawn(self.demote(context.message_id, session_id))
        return RegisteredAsset(
            history_id=history_id, remote_url=remote_url, thumbnail=thumbnail
        )

    def spawn_registration(self, image_data: str, context: AssetContext) -> None:
        """Run register_result in the background."""
        self.spawn(self._register_safely(image_data, context))

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = self.scheduler.spawn(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every background task started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def resolve_for_placement(self, candidates: list[str | None]) -> PlacementSource:
        """Pick inline data first, then remote URLs, then local references."""
        values = [value.strip() for value in candidates if value and value.strip()]
        for value in values:
            inline = normalize_inline(value)
            if inline is not None:
                return PlacementSource(kind="inline", value=inline)
        for value in values:
            if is_remote_url(value):
                return PlacementSource(kind="remote", value=value)
        for value in values:
            if value.startswith("blob:"):
                return PlacementSource(kind="local", value=value)
        return NO_SOURCE

    async def demote(self, message_id: str, session_id: str | None = None) -> bool:
        """Drop the inline payload once a preview and remote copy exist."""
        await self.scheduler.sleep(self.demote_grace_seconds)
        message = self.store.get_message(message_id, session_id)
        if message is None or not _can_demote(message):
            return False
        self.store.update_message(
            message_id,
            lambda current: replace(current, image_data=None),
            session_id=session_id,
        )
        _logger.info("Demoted inline payload of message %s", message_id)
        return True

    async def migrate_legacy(self, sessions: list[Session]) -> bool:
        """Upload oversized inline payloads that never got a remote copy."""
        if not self.migration_guard.try_acquire():
            return False
        try:
            changed = False
            for session in sessions:
                changed = await self._migrate_session(session) or changed
            if changed:
                _logger.info("Legacy inline migration updated stored assets")
            return changed
        finally:
            self.migration_guard.release()

    async def _migrate_session(self, session: Session) -> bool:
        changed = False
        for message in list(session.messages):
            if not self._needs_upload(message.image_data, message.remote_url):
                continue
            uploaded = await self._upload_legacy(message.image_data, session.session_id)
            if uploaded is None:
                continue
            url, preview = uploaded
            self.store.update_message(
                message.id,
                lambda current, url=url, preview=preview: replace(
                    current,
                    remote_url=url,
                    image_data=preview,
                    thumbnail=current.thumbnail or preview,
                ),
                session_id=session.session_id,
            )
            changed = True

        cached = session.cached_image
        if cached is not None and self._needs_upload(cached.image_data, cached.remote_url):
            uploaded = await self._upload_legacy(cached.image_data, session.session_id)
            if uploaded is not None:
                url, preview = uploaded
                self.store.update_cached_image(
                    lambda current, url=url, preview=preview: replace(
                        current, remote_url=url, image_data=preview
                    ),
                    session_id=session.session_id,
                )
                changed = True

        for entry in list(session.context_info.image_history):
            if not self._needs_upload(entry.image_data, entry.remote_url):
                continue
            uploaded = await self._upload_legacy(entry.image_data, session.session_id)
            if uploaded is None:
                continue
            url, preview = uploaded
            self.store.replace_image_history_entry(
                entry.id,
                replace(
                    entry,
                    remote_url=url,
                    image_data=None,
                    thumbnail=entry.thumbnail or preview,
                ),
                session_id=session.session_id,
            )
            changed = True
        return changed

    async def upload_inline(self, inline: str, session_id: str) -> str | None:
        """Upload an inline payload and return its URL, or None on failure."""
        normalized = normalize_inline(inline)
        if normalized is None:
            return None
        mime_type, raw = decode_data_url(normalized)
        return await self._upload(raw, mime_type, f"{session_id}/{new_id('img')}")

    def _needs_upload(self, inline: str | None, remote: str | None) -> bool:
        return bool(
            inline
            and not is_remote_url(remote)
            and len(inline) > self.legacy_inline_threshold
        )

    async def _upload_legacy(
        self, inline: str | None, session_id: str
    ) -> tuple[str, str | None] | None:
        normalized = normalize_inline(inline)
        if normalized is None:
            return None
        mime_type, raw = decode_data_url(normalized)
        url = await self._upload(raw, mime_type, f"{session_id}/{new_id('legacy')}")
        if url is None:
            return None
        return url, build_thumbnail(raw, self.thumbnail_max_edge, self.thumbnail_quality)

    async def _upload(self, raw: bytes, mime_type: str, stem: str) -> str | None:
        extension = _EXTENSIONS.get(mime_type, "png")
        destination = f"{self.upload_prefix}{stem}.{extension}"
        result = await self.storage.upload(raw, destination, mime_type)
        if not result.success or not result.url:
            _logger.warning("Upload to %s failed: %s", destination, result.error)
            return None
        return result.url

    async def _register_safely(self, image_data: str, context: AssetContext) -> None:
        try:
            await self.register_result(image_data, context)
        except Exception:
            _logger.exception(
                "Asset registration failed for message %s", context.message_id
            )

    def _session_for(self, message_id: str, session_id: str | None) -> str | None:
        found = self.store.find_message(message_id, session_id)
        return found[0].session_id if found else session_id

    def _backfill(
        self,
        message_id: str,
        session_id: str,
        remote_url: str | None,
        thumbnail: str | None,
    ) -> None:
        if remote_url is None and thumbnail is None:
            return
        self.store.update_message(
            message_id,
            lambda current: replace(
                current,
                remote_url=current.remote_url or remote_url,
                thumbnail=current.thumbnail or thumbnail,
            ),
            session_id=session_id,
        )
        cached = self.store.cached_image(session_id)
        if cached is not None and cached.image_id == message_id and remote_url:
            self.store.update_cached_image(
                lambda current: replace(current, remote_url=remote_url),
                session_id=session_id,
            )


def _can_demote(message: Message) -> bool:
    if not (message.image_data and message.thumbnail):
        return False
    if not is_remote_url(message.remote_url):
        return False
    return len(message.image_data) > 2 * len(message.thumbnail)
