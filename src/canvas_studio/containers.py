"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

from supabase import create_client

from canvas_studio.adapters.httpx_generation_provider import HttpxGenerationProvider
from canvas_studio.adapters.local_download_sink import LocalDownloadSink
from canvas_studio.adapters.openai_generation_provider import OpenAIGenerationProvider
from canvas_studio.adapters.queue_canvas_sink import QueueCanvasEventSink
from canvas_studio.adapters.supabase_blob_storage import SupabaseBlobStorage
from canvas_studio.adapters.supabase_session_set_repository import (
    SupabaseSessionSetRepository,
)
from canvas_studio.config import Settings
from canvas_studio.services.assets import AssetLifecycleManager, BlobStorage
from canvas_studio.services.coordinator import ParallelCoordinator
from canvas_studio.services.persistence import (
    PersistenceCoordinator,
    SessionSerializer,
    SessionSetRepository,
)
from canvas_studio.services.pipeline import (
    DownloadSink,
    GenerationPipeline,
    GenerationProvider,
)
from canvas_studio.services.placeholders import PlaceholderBridge
from canvas_studio.services.routing import ToolRouter
from canvas_studio.services.scheduler import AsyncioScheduler, Scheduler
from canvas_studio.services.session_store import OrchestratorState, SessionStore


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    state: OrchestratorState
    canvas_sink: QueueCanvasEventSink
    session_store: SessionStore
    placeholder_bridge: PlaceholderBridge
    asset_manager: AssetLifecycleManager
    pipeline: GenerationPipeline
    coordinator: ParallelCoordinator
    persistence: PersistenceCoordinator
    close_resources: Callable[[], Awaitable[None]]

    def session_timeout(self) -> timedelta:
        return timedelta(seconds=self.settings.session_timeout_seconds)


def assemble_container(  # noqa: PLR0913
    settings: Settings,
    provider: GenerationProvider,
    storage: BlobStorage,
    repository: SessionSetRepository,
    scheduler: Scheduler | None = None,
    canvas_sink: QueueCanvasEventSink | None = None,
    download_sink: DownloadSink | None = None,
    close_resources: Callable[[], Awaitable[None]] | None = None,
) -> AppContainer:
    """Wire services around the given collaborators."""
    resolved_scheduler = scheduler or AsyncioScheduler()
    sink = canvas_sink or QueueCanvasEventSink()
    state = OrchestratorState()
    bridge = PlaceholderBridge(
        sink=sink,
        offset_horizontal=settings.placement_offset_horizontal,
        offset_vertical=settings.placement_offset_vertical,
        max_attempts=settings.placement_max_attempts,
    )
    store = SessionStore(
        state=state,
        progress_listener=bridge,
        clock=resolved_scheduler.now,
        max_messages=settings.max_messages,
        max_operations=settings.max_operations,
        max_image_history=settings.max_image_history,
        max_recent_prompts=settings.max_recent_prompts,
    )
    assets = AssetLifecycleManager(
        store=store,
        storage=storage,
        scheduler=resolved_scheduler,
        upload_prefix=settings.upload_prefix,
        thumbnail_max_edge=settings.thumbnail_max_edge,
        thumbnail_quality=settings.thumbnail_quality,
        demote_grace_seconds=settings.demote_grace_seconds,
        legacy_inline_threshold=settings.legacy_inline_threshold,
    )
    pipeline = GenerationPipeline(
        store=store,
        bridge=bridge,
        assets=assets,
        provider=provider,
        scheduler=resolved_scheduler,
        settings=settings,
        download_sink=download_sink,
    )
    coordinator = ParallelCoordinator(
        store=store,
        pipeline=pipeline,
        router=ToolRouter(provider=provider, store=store),
        bridge=bridge,
        scheduler=resolved_scheduler,
        settings=settings,
    )
    persistence = PersistenceCoordinator(
        store=store,
        serializer=SessionSerializer(
            store=store,
            assets=assets,
            inline_media_limit=settings.inline_media_limit,
        ),
        repository=repository,
        assets=assets,
        scheduler=resolved_scheduler,
        session_set_id=settings.session_set_id,
        debounce_seconds=settings.persist_debounce_seconds,
    )

    async def _noop() -> None:
        return None

    return AppContainer(
        settings=settings,
        state=state,
        canvas_sink=sink,
        session_store=store,
        placeholder_bridge=bridge,
        asset_manager=assets,
        pipeline=pipeline,
        coordinator=coordinator,
        persistence=persistence,
        close_resources=close_resources or _noop,
    )


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    supabase_client = create_client(
        resolved_settings.supabase_url, resolved_settings.supabase_service_key
    )
    storage = SupabaseBlobStorage(supabase_client, bucket=resolved_settings.storage_bucket)
    repository = SupabaseSessionSetRepository(supabase_client)
    http_provider: HttpxGenerationProvider | None = None
    provider: GenerationProvider
    if resolved_settings.provider_backend == "openai":
        if not resolved_settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required for the openai provider backend")
        provider = OpenAIGenerationProvider.create(
            resolved_settings.openai_api_key,
            image_model=resolved_settings.openai_image_model,
            text_model=resolved_settings.openai_text_model,
        )
    else:
        http_provider = HttpxGenerationProvider.create(
            resolved_settings.backend_base_url, resolved_settings.backend_api_token
        )
        provider = http_provider
    download_sink = LocalDownloadSink.create(resolved_settings.download_dir)

    async def close_resources() -> None:
        if http_provider is not None:
            await http_provider.close()
        await download_sink.close()

    return assemble_container(
        resolved_settings,
        provider=provider,
        storage=storage,
        repository=repository,
        download_sink=download_sink,
        close_resources=close_resources,
    )
