"""Tests for Supabase adapter implementations."""

import asyncio
from dataclasses import dataclass, field

import pytest

from canvas_studio.adapters.supabase_blob_storage import SupabaseBlobStorage
from canvas_studio.adapters.supabase_session_set_repository import (
    SupabaseSessionSetRepository,
)
from canvas_studio.domain.durable import SerializedSession, SerializedSessionSet
from tests.conftest import START


@dataclass
class FakeResponse:
    data: list[dict[str, object]] | None


@dataclass
class FakeTable:
    name: str
    response_queue: dict[str, list[list[dict[str, object]]]] = field(
        default_factory=lambda: {"select": [], "upsert": []}
    )
    last_payload: object | None = None
    last_filters: list[tuple[str, object]] = field(default_factory=list)

    def queue(self, action: str, data: list[dict[str, object]]) -> None:
        self.response_queue[action].append(data)

    def select(self, *_args) -> "FakeTable":
        self._action = "select"
        return self

    def upsert(self, payload) -> "FakeTable":  # type: ignore[no-untyped-def]
        self._action = "upsert"
        self.last_payload = payload
        return self

    def eq(self, column: str, value) -> "FakeTable":  # type: ignore[no-untyped-def]
        self.last_filters.append((column, value))
        return self

    def limit(self, _count: int) -> "FakeTable":
        return self

    def execute(self) -> FakeResponse:
        queue = self.response_queue[self._action]
        data = queue.pop(0) if queue else []
        return FakeResponse(data=data)


@dataclass
class FakeBucket:
    name: str
    uploads: dict[str, tuple[bytes, dict[str, str]]] = field(default_factory=dict)
    error: Exception | None = None

    def upload(self, path: str, data: bytes, file_options=None):  # type: ignore[no-untyped-def]
        if self.error is not None:
            raise self.error
        self.uploads[path] = (data, file_options or {})
        return {"Key": f"{self.name}/{path}"}

    def get_public_url(self, path: str) -> str:
        return f"https://example.supabase.co/storage/v1/object/public/{self.name}/{path}"


@dataclass
class FakeStorage:
    buckets: dict[str, FakeBucket] = field(default_factory=dict)

    def from_(self, name: str) -> FakeBucket:
        return self.buckets.setdefault(name, FakeBucket(name))


@dataclass
class FakeSupabaseClient:
    tables: dict[str, FakeTable] = field(default_factory=dict)
    storage: FakeStorage = field(default_factory=FakeStorage)

    def table(self, name: str) -> FakeTable:
        return self.tables.setdefault(name, FakeTable(name))


def _form() -> SerializedSessionSet:
    return SerializedSessionSet(
        session_set_id="default",
        active_session_id="session-1",
        sessions=[
            SerializedSession(
                session_id="session-1",
                name="Posters",
                start_time=START,
                last_activity=START,
            )
        ],
    )


def test_blob_storage_uploads_and_returns_public_url() -> None:
    client = FakeSupabaseClient()
    storage = SupabaseBlobStorage(client, bucket="canvas-assets")  # type: ignore[arg-type]

    result = asyncio.run(
        storage.upload(b"png-bytes", "ai-chat-history/s1/img-1.png", "image/png")
    )

    assert result.success is True
    assert result.url.endswith("/canvas-assets/ai-chat-history/s1/img-1.png")
    data, options = client.storage.from_("canvas-assets").uploads[
        "ai-chat-history/s1/img-1.png"
    ]
    assert data == b"png-bytes"
    assert options == {"content-type": "image/png", "upsert": "true"}


def test_blob_storage_reports_failures() -> None:
    client = FakeSupabaseClient()
    client.storage.from_("canvas-assets").error = RuntimeError("bucket missing")
    storage = SupabaseBlobStorage(client, bucket="canvas-assets")  # type: ignore[arg-type]

    result = asyncio.run(storage.upload(b"x", "a.png", "image/png"))

    assert result.success is False
    assert result.error == "bucket missing"


def test_session_set_repository_load() -> None:
    client = FakeSupabaseClient()
    table = client.table("chat_session_sets")
    table.queue(
        "select",
        [
            {
                "id": "default",
                "payload_json": _form().model_dump(mode="json"),
                "version": 3,
                "updated_at": "2026-01-01T00:00:00+00:00",
            }
        ],
    )
    repository = SupabaseSessionSetRepository(client)  # type: ignore[arg-type]

    loaded = repository.load("default")

    assert loaded == _form()
    assert table.last_filters == [("id", "default")]


def test_session_set_repository_load_missing() -> None:
    repository = SupabaseSessionSetRepository(FakeSupabaseClient())  # type: ignore[arg-type]

    assert repository.load("default") is None


def test_session_set_repository_save_bumps_version() -> None:
    client = FakeSupabaseClient()
    table = client.table("chat_session_sets")
    table.queue("select", [{"version": 3}])
    table.queue("upsert", [{"id": "default", "version": 4, "updated_at": "now"}])
    repository = SupabaseSessionSetRepository(client)  # type: ignore[arg-type]

    receipt = repository.save(_form())

    assert receipt.version == 4
    assert receipt.updated_at == "now"
    assert table.last_payload["version"] == 4
    assert table.last_payload["payload_json"]["sessions"][0]["name"] == "Posters"


def test_session_set_repository_save_requires_row() -> None:
    client = FakeSupabaseClient()
    repository = SupabaseSessionSetRepository(client)  # type: ignore[arg-type]

    with pytest.raises(RuntimeError):
        repository.save(_form())
