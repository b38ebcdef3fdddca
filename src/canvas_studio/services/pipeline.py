"""Single-request generation pipeline."""

import logging
from dataclasses import dataclass, replace
from typing import Protocol

from canvas_studio.config import Settings
from canvas_studio.domain.catalog import model_for
from canvas_studio.domain.errors import (
    GenerationError,
    ProviderEmptyResult,
    QuotaOrRateLimitError,
    UnknownError,
    ValidationError,
    classify_failure,
)
from canvas_studio.domain.placeholders import (
    ORIGIN,
    LayoutHint,
    PlaceholderSpec,
    Point,
    placeholder_id_for,
)
from canvas_studio.domain.providers import (
    ProviderFailure,
    ProviderPayload,
    ProviderRequest,
    ProviderResult,
)
from canvas_studio.domain.sessions import (
    IMAGE_KINDS,
    CachedImage,
    Message,
    RequestKind,
)
from canvas_studio.services.assets import (
    AssetContext,
    AssetLifecycleManager,
    is_remote_url,
    normalize_inline,
)
from canvas_studio.services.placeholders import PlaceholderBridge, PlacementRequest
from canvas_studio.services.progress import ProgressEstimator
from canvas_studio.services.scheduler import Scheduler
from canvas_studio.services.session_store import SessionStore

_logger = logging.getLogger(__name__)

_SIZE_FACTORS = {"2K": 1.1, "4K": 1.25}
_SUCCESS_CONTENT = {
    RequestKind.GENERATE: "Image generated.",
    RequestKind.EDIT: "Image edited.",
    RequestKind.BLEND: "Images blended.",
    RequestKind.VIDEO: "Video generated.",
}


class GenerationProvider(Protocol):
    """Interface for the provider controller; failures are returned, not raised."""

    async def generate(self, request: ProviderRequest) -> ProviderResult:
        """Create an image from a prompt."""

    async def edit(self, request: ProviderRequest) -> ProviderResult:
        """Edit a single source image."""

    async def blend(self, request: ProviderRequest) -> ProviderResult:
        """Blend two or more source images."""

    async def analyze(self, request: ProviderRequest) -> ProviderResult:
        """Describe a source image."""

    async def chat(self, request: ProviderRequest) -> ProviderResult:
        """Answer a text prompt."""

    async def vectorize(self, request: ProviderRequest) -> ProviderResult:
        """Produce vector drawing code."""

    async def video(self, request: ProviderRequest) -> ProviderResult:
        """Generate a short video."""

    async def select_tool(self, request: ProviderRequest) -> ProviderResult:
        """Pick the tool that should serve a prompt."""


class DownloadSink(Protocol):
    """Receives finished images when auto-download is enabled."""

    async def save(self, source: str, file_name: str) -> None:
        """Persist an image somewhere the user can reach it."""


@dataclass(frozen=True)
class _Outcome:
    request: ProviderRequest
    payload: ProviderPayload | None = None
    error: GenerationError | None = None


@dataclass
class GenerationPipeline:
    """Runs one logical request and settles its assistant message."""

    store: SessionStore
    bridge: PlaceholderBridge
    assets: AssetLifecycleManager
    provider: GenerationProvider
    scheduler: Scheduler
    settings: Settings
    download_sink: DownloadSink | None = None

    def validate(
        self,
        kind: RequestKind,
        sources: tuple[str, ...],
        session_id: str | None = None,
    ) -> tuple[str, ...]:
        """Check preconditions and return the sources the request will use."""
        cleaned = tuple(source for source in sources if source and source.strip())
        if kind is RequestKind.BLEND:
            if len(cleaned) < 2:
                raise ValidationError("Blending needs at least two source images")
            return cleaned
        if kind is RequestKind.VECTORIZE:
            return cleaned[:1]
        if kind in {RequestKind.EDIT, RequestKind.ANALYZE}:
            if cleaned:
                return cleaned[:1]
            cached = _cached_source(self.store.cached_image(session_id))
            if cached is None:
                raise ValidationError(
                    f"No source image or cached image available for {kind.value}"
                )
            return (cached,)
        return cleaned

    async def run(
        self,
        kind: RequestKind,
        prompt: str,
        sources: tuple[str, ...],
        target_message_id: str,
        *,
        session_id: str | None = None,
        layout: LayoutHint | None = None,
    ) -> None:
        """Execute the request; only ValidationError escapes."""
        resolved_sources = self.validate(kind, sources, session_id)
        found = self.store.find_message(target_message_id, session_id)
        if found is None:
            raise ValidationError(f"Unknown target message {target_message_id}")
        session, message = found
        session_id = session.session_id
        cached = session.cached_image
        parent_image_id = None
        if cached is not None and kind is not RequestKind.GENERATE:
            parent_image_id = cached.image_id

        self.store.begin_request()
        self.store.update_message_status(
            message.id,
            session_id=session_id,
            is_generating=True,
            progress=self.settings.progress_initial,
            error=None,
            stage="preparing",
        )
        estimator = ProgressEstimator(
            store=self.store,
            scheduler=self.scheduler,
            message_id=message.id,
            session_id=session_id,
            ceiling=self.settings.progress_ceiling,
            duration_ticks=self.settings.progress_duration_ticks,
            tick_seconds=self.settings.progress_tick_seconds,
        )
        spec: PlaceholderSpec | None = None
        try:
            if kind in IMAGE_KINDS:
                spec = self.bridge.show(
                    self._predict_placeholder(kind, message, cached, layout)
                )
            estimator.start()
            self.store.update_message_status(
                message.id, session_id=session_id, stage="generating"
            )
            outcome = await self._execute(kind, prompt, resolved_sources, message.id, session_id)
            estimator.stop()
            if outcome.error is not None:
                self._fail(kind, prompt, message.id, session_id, outcome)
            else:
                self._succeed(
                    kind, prompt, message.id, session_id, outcome, spec, parent_image_id
                )
        except Exception as exc:
            _logger.exception("Unexpected failure while running %s", kind.value)
            self._fail(
                kind,
                prompt,
                message.id,
                session_id,
                _Outcome(
                    request=self._request(kind, prompt, resolved_sources),
                    error=UnknownError(str(exc) or type(exc).__name__),
                ),
            )
        finally:
            estimator.stop()
            if spec is not None:
                self.bridge.remove(spec.placeholder_id)
            self.store.end_request()

    async def _execute(
        self,
        kind: RequestKind,
        prompt: str,
        sources: tuple[str, ...],
        message_id: str,
        session_id: str,
    ) -> _Outcome:
        request = self._request(kind, prompt, sources)
        outcome = await self._call_until_payload(request)
        if not self._should_fall_back(outcome):
            return outcome

        _logger.warning(
            "Quota hit on %s/%s, retrying once with %s",
            request.provider,
            request.model,
            self.settings.fallback_target_model,
        )
        current = self.store.get_message(message_id, session_id)
        status = current.generation_status if current else None
        progress = status.progress if status else 0.0
        self.store.update_message_status(
            message_id,
            session_id=session_id,
            stage="fallback",
            progress=max(progress, self.settings.fallback_min_progress),
        )
        fallback_request = replace(request, model=self.settings.fallback_target_model)
        return await self._call_until_payload(fallback_request)

    def _should_fall_back(self, outcome: _Outcome) -> bool:
        if not isinstance(outcome.error, QuotaOrRateLimitError):
            return False
        request = outcome.request
        return (
            request.provider in self.settings.fallback_providers
            and request.model == self.settings.fallback_source_model
        )

    async def _call_until_payload(self, request: ProviderRequest) -> _Outcome:
        attempts = max(self.settings.empty_result_attempts, 1)
        for attempt in range(1, attempts + 1):
            result = await self._call(request)
            if isinstance(result, ProviderFailure):
                return _Outcome(
                    request=request,
                    error=classify_failure(result, self.settings.quota_rules()),
                )
            if _has_expected_output(request.kind, result.data):
                return _Outcome(request=request, payload=result.data)
            _logger.warning(
                "Provider returned no %s output (attempt %s/%s)",
                request.kind.value,
                attempt,
                attempts,
            )
            if attempt < attempts:
                await self.scheduler.sleep(self.settings.empty_result_retry_delay_seconds)
        return _Outcome(
            request=request,
            error=ProviderEmptyResult("The provider finished without returning a result"),
        )

    async def _call(self, request: ProviderRequest) -> ProviderResult:
        handlers = {
            RequestKind.GENERATE: self.provider.generate,
            RequestKind.EDIT: self.provider.edit,
            RequestKind.BLEND: self.provider.blend,
            RequestKind.ANALYZE: self.provider.analyze,
            RequestKind.CHAT: self.provider.chat,
            RequestKind.VECTORIZE: self.provider.vectorize,
            RequestKind.VIDEO: self.provider.video,
        }
        return await handlers[request.kind](request)

    def _request(
        self, kind: RequestKind, prompt: str, sources: tuple[str, ...]
    ) -> ProviderRequest:
        provider = self.settings.ai_provider
        return ProviderRequest(
            kind=kind,
            prompt=prompt,
            provider=provider,
            model=model_for(kind, provider),
            source_images=sources,
            aspect_ratio=self.settings.aspect_ratio,
            image_size=self.settings.image_size,
            enable_web_search=self.settings.enable_web_search,
        )

    def _succeed(  # noqa: PLR0913
        self,
        kind: RequestKind,
        prompt: str,
        message_id: str,
        session_id: str,
        outcome: _Outcome,
        spec: PlaceholderSpec | None,
        parent_image_id: str | None,
    ) -> None:
        payload = outcome.payload or ProviderPayload()
        request = outcome.request
        inline = normalize_inline(payload.image_data)
        remote_url = payload.remote_url if is_remote_url(payload.remote_url) else None
        content = payload.text if payload.text else _SUCCESS_CONTENT.get(kind, "")
        metadata: dict[str, object] = dict(payload.metadata)
        if kind is RequestKind.VECTORIZE and payload.text:
            metadata["code"] = payload.text

        self.store.update_message(
            message_id,
            lambda current: replace(
                current,
                content=content,
                image_data=inline or current.image_data,
                remote_url=remote_url or current.remote_url,
                video_url=payload.video_url or current.video_url,
                video_thumbnail=payload.video_thumbnail or current.video_thumbnail,
                provider=request.provider,
                model=payload.model or request.model,
                metadata=metadata or current.metadata,
            ),
            session_id=session_id,
        )
        self.store.update_message_status(
            message_id,
            session_id=session_id,
            is_generating=False,
            progress=100.0,
            error=None,
            stage="completed",
        )

        message = self.store.get_message(message_id, session_id)
        if kind in IMAGE_KINDS and message is not None:
            self._place(kind, prompt, message, spec, parent_image_id, session_id)

        self.store.record_operation(
            kind.value,
            prompt,
            output=_summarize(content),
            success=True,
            metadata={"provider": request.provider, "model": payload.model or request.model},
            session_id=session_id,
        )

    def _place(  # noqa: PLR0913
        self,
        kind: RequestKind,
        prompt: str,
        message: Message,
        spec: PlaceholderSpec | None,
        parent_image_id: str | None,
        session_id: str,
    ) -> None:
        source = self.assets.resolve_for_placement([message.image_data, message.remote_url])
        if not source.found or source.value is None:
            _logger.warning("No placeable image for message %s", message.id)
            return
        file_name = f"ai_{kind.value}_{message.id}.png"
        self.bridge.place_image(
            PlacementRequest(
                source=source.value,
                file_name=file_name,
                operation_kind=kind.value,
                placeholder_id=placeholder_id_for(message.id),
                center=spec.center if spec else None,
                width=spec.width if spec else None,
                height=spec.height if spec else None,
                group_id=message.group_id,
                group_index=message.group_index,
                group_total=message.group_total,
            )
        )
        self.store.cache_latest_image(
            image_id=message.id,
            prompt=prompt,
            image_data=message.image_data,
            remote_url=message.remote_url,
            bounds=spec.bounds if spec else None,
            session_id=session_id,
        )
        self.assets.spawn_registration(
            source.value,
            AssetContext(
                message_id=message.id,
                session_id=session_id,
                prompt=prompt,
                operation_kind=kind.value,
                parent_image_id=parent_image_id,
            ),
        )
        if self.settings.auto_download and self.download_sink is not None:
            self.assets.spawn(self._download(source.value, file_name))

    async def _download(self, source: str, file_name: str) -> None:
        if self.download_sink is None:
            return
        try:
            await self.download_sink.save(source, file_name)
        except Exception:
            _logger.exception("Auto-download of %s failed", file_name)

    def _fail(
        self,
        kind: RequestKind,
        prompt: str,
        message_id: str,
        session_id: str,
        outcome: _Outcome,
    ) -> None:
        error = outcome.error or UnknownError("Unknown failure")
        empty = isinstance(error, ProviderEmptyResult)
        _logger.warning(
            "%s failed for message %s (%s): %s",
            kind.value,
            message_id,
            error.code,
            error.message,
        )
        if empty:
            content = "The request finished but no result came back. Please try again."
        else:
            content = f"Sorry, the {kind.value} request failed: {error.message}"
        self.store.update_message(
            message_id,
            lambda current: replace(
                current,
                content=content,
                provider=outcome.request.provider,
                model=outcome.request.model,
            ),
            session_id=session_id,
        )
        if empty:
            self.store.update_message_status(
                message_id,
                session_id=session_id,
                is_generating=False,
                progress=100.0,
                error=None,
                stage="empty",
            )
        else:
            self.store.update_message_status(
                message_id,
                session_id=session_id,
                is_generating=False,
                progress=0.0,
                error=error.message,
                stage="failed",
            )
        self.store.record_operation(
            kind.value,
            prompt,
            output=error.code,
            success=False,
            session_id=session_id,
        )

    def _predict_placeholder(
        self,
        kind: RequestKind,
        message: Message,
        cached: CachedImage | None,
        layout: LayoutHint | None,
    ) -> PlaceholderSpec:
        width, height = self._estimate_size(cached)
        grouped = layout is not None and layout.total > 1
        anchor: Point | None = None
        if grouped:
            anchor = layout.anchor
            center = anchor.offset(dx=layout.index * self.settings.placement_offset_horizontal)
        elif cached is not None and cached.bounds is not None:
            cached_center = cached.bounds.center
            if kind is RequestKind.GENERATE:
                center = cached_center.offset(dy=self.settings.placement_offset_vertical)
            else:
                center = cached_center.offset(dx=self.settings.placement_offset_horizontal)
        else:
            center = self.bridge.viewport_center() or ORIGIN
        return PlaceholderSpec(
            placeholder_id=placeholder_id_for(message.id),
            center=center,
            width=width,
            height=height,
            operation_kind=kind.value,
            group_id=message.group_id,
            group_index=message.group_index,
            group_total=message.group_total,
            group_anchor=anchor,
            prefer_horizontal=grouped,
        )

    def _estimate_size(self, cached: CachedImage | None) -> tuple[float, float]:
        if cached is not None and cached.bounds is not None:
            return cached.bounds.width, cached.bounds.height
        edge = self.settings.placeholder_base_edge * _SIZE_FACTORS.get(
            (self.settings.image_size or "").upper(), 1.0
        )
        ratio = _parse_aspect_ratio(self.settings.aspect_ratio)
        if ratio >= 1:
            width, height = edge, edge / ratio
        else:
            width, height = edge * ratio, edge
        minimum = self.settings.placeholder_min_edge
        return max(width, minimum), max(height, minimum)


def _cached_source(cached: CachedImage | None) -> str | None:
    if cached is None:
        return None
    inline = normalize_inline(cached.image_data)
    if inline is not None:
        return inline
    if is_remote_url(cached.remote_url):
        return cached.remote_url
    return None


def _has_expected_output(kind: RequestKind, payload: ProviderPayload) -> bool:
    if kind in IMAGE_KINDS:
        return payload.has_image
    if kind is RequestKind.VIDEO:
        return bool(payload.video_url)
    return payload.text is not None


def _parse_aspect_ratio(raw: str | None) -> float:
    if not raw or ":" not in raw:
        return 1.0
    left, _, right = raw.partition(":")
    try:
        width, height = float(left), float(right)
    except ValueError:
        return 1.0
    if width <= 0 or height <= 0:
        return 1.0
    return width / height


def _summarize(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."
