"""Shared test fixtures."""

import asyncio
import base64
import io
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from PIL import Image

from canvas_studio.config import Settings
from canvas_studio.containers import AppContainer, assemble_container
from canvas_studio.domain.durable import SerializedSessionSet
from canvas_studio.domain.providers import (
    ProviderPayload,
    ProviderRequest,
    ProviderResult,
    ProviderSuccess,
    SaveReceipt,
    UploadResult,
)
from canvas_studio.domain.sessions import IMAGE_KINDS, RequestKind
from canvas_studio.services.assets import BlobStorage
from canvas_studio.services.persistence import SessionSetRepository
from canvas_studio.services.pipeline import GenerationProvider
from canvas_studio.services.scheduler import Scheduler

START = datetime(2026, 1, 1, tzinfo=UTC)


def png_data_url(size: tuple[int, int] = (8, 8), color: str = "red") -> str:
    """Encode a solid-color PNG as a data URL."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


@dataclass
class TickingClock:
    """Clock that advances one second per reading."""

    current: datetime = START

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


@dataclass
class InstantScheduler(Scheduler):
    """Scheduler that records delays and only yields instead of waiting."""

    current: datetime = START
    delays: list[float] = field(default_factory=list)
    tasks: list["asyncio.Task[Any]"] = field(default_factory=list)

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.current += timedelta(seconds=seconds)
        await asyncio.sleep(0)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(coro)
        self.tasks.append(task)
        return task

    async def run_pending(self) -> None:
        """Wait until every spawned task, including late ones, has finished."""
        while any(not task.done() for task in self.tasks):
            await asyncio.gather(*list(self.tasks), return_exceptions=True)


Handler = Callable[[ProviderRequest], ProviderResult]


@dataclass
class FakeProvider(GenerationProvider):
    """Provider that answers from queued results, then from defaults."""

    queued: dict[RequestKind, list[ProviderResult | Exception]] = field(
        default_factory=dict
    )
    selected_tool: str | None = "chatResponse"
    rewritten_prompt: str | None = None
    tool_result: ProviderResult | None = None
    calls: list[ProviderRequest] = field(default_factory=list)
    tool_requests: list[ProviderRequest] = field(default_factory=list)

    def queue(self, kind: RequestKind, *results: ProviderResult | Exception) -> None:
        self.queued.setdefault(kind, []).extend(results)

    async def generate(self, request: ProviderRequest) -> ProviderResult:
        return self._answer(request)

    async def edit(self, request: ProviderRequest) -> ProviderResult:
        return self._answer(request)

    async def blend(self, request: ProviderRequest) -> ProviderResult:
        return self._answer(request)

    async def analyze(self, request: ProviderRequest) -> ProviderResult:
        return self._answer(request)

    async def chat(self, request: ProviderRequest) -> ProviderResult:
        return self._answer(request)

    async def vectorize(self, request: ProviderRequest) -> ProviderResult:
        return self._answer(request)

    async def video(self, request: ProviderRequest) -> ProviderResult:
        return self._answer(request)

    async def select_tool(self, request: ProviderRequest) -> ProviderResult:
        self.tool_requests.append(request)
        if self.tool_result is not None:
            return self.tool_result
        return ProviderSuccess(
            ProviderPayload(selected_tool=self.selected_tool, text=self.rewritten_prompt)
        )

    def models_called(self, kind: RequestKind) -> list[str]:
        return [call.model for call in self.calls if call.kind is kind]

    def _answer(self, request: ProviderRequest) -> ProviderResult:
        self.calls.append(request)
        pending = self.queued.get(request.kind)
        if pending:
            result = pending.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ProviderSuccess(_default_payload(request.kind))


def _default_payload(kind: RequestKind) -> ProviderPayload:
    if kind in IMAGE_KINDS:
        return ProviderPayload(image_data=png_data_url())
    if kind is RequestKind.VIDEO:
        return ProviderPayload(
            video_url="https://cdn.test/video.mp4",
            video_thumbnail="https://cdn.test/video.jpg",
        )
    if kind is RequestKind.VECTORIZE:
        return ProviderPayload(text="new paper.Path.Circle([0, 0], 10);")
    return ProviderPayload(text="Here is my answer.")


@dataclass
class InMemoryBlobStorage(BlobStorage):
    """Blob storage that keeps uploads in memory."""

    fail: bool = False
    uploads: dict[str, bytes] = field(default_factory=dict)

    async def upload(
        self, data: bytes, destination_hint: str, content_type: str
    ) -> UploadResult:
        if self.fail:
            return UploadResult(success=False, error="storage offline")
        self.uploads[destination_hint] = data
        return UploadResult(success=True, url=f"https://cdn.test/{destination_hint}")


@dataclass
class InMemorySessionSetRepository(SessionSetRepository):
    """Session set repository backed by a dict."""

    stored: dict[str, SerializedSessionSet] = field(default_factory=dict)
    saves: list[SerializedSessionSet] = field(default_factory=list)

    def load(self, session_set_id: str) -> SerializedSessionSet | None:
        return self.stored.get(session_set_id)

    def save(self, form: SerializedSessionSet) -> SaveReceipt:
        self.stored[form.session_set_id] = form
        self.saves.append(form)
        return SaveReceipt(version=len(self.saves), updated_at=START.isoformat())


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_key="service-key",
        openai_api_key="openai-key",
        ai_provider="gemini",
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def storage() -> InMemoryBlobStorage:
    return InMemoryBlobStorage()


@pytest.fixture
def repository() -> InMemorySessionSetRepository:
    return InMemorySessionSetRepository()


@pytest.fixture
def scheduler() -> InstantScheduler:
    return InstantScheduler()


@pytest.fixture
def container(
    settings: Settings,
    provider: FakeProvider,
    storage: InMemoryBlobStorage,
    repository: InMemorySessionSetRepository,
    scheduler: InstantScheduler,
) -> AppContainer:
    return assemble_container(
        settings,
        provider=provider,
        storage=storage,
        repository=repository,
        scheduler=scheduler,
    )
