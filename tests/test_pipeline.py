"""Tests for the single-request generation pipeline."""

import asyncio

import pytest

from canvas_studio.containers import AppContainer
from canvas_studio.domain.catalog import FLASH_IMAGE_MODEL, PRO_IMAGE_MODEL
from canvas_studio.domain.errors import ValidationError
from canvas_studio.domain.placeholders import Bounds
from canvas_studio.domain.providers import ProviderFailure, ProviderPayload, ProviderSuccess
from canvas_studio.domain.sessions import (
    GenerationStatus,
    MessageDraft,
    MessageRole,
    RequestKind,
)
from canvas_studio.services.placeholders import (
    PLACE_IMAGE,
    REMOVE_PLACEHOLDER,
    SHOW_PLACEHOLDER,
    UPDATE_PLACEHOLDER_PROGRESS,
)
from tests.conftest import FakeProvider, InstantScheduler, png_data_url


def _target(container: AppContainer) -> str:
    message = container.session_store.add_message(
        MessageDraft(
            role=MessageRole.ASSISTANT,
            content="",
            generation_status=GenerationStatus(is_generating=True, stage="queued"),
        )
    )
    return message.id


def _run(
    container: AppContainer,
    kind: RequestKind,
    prompt: str,
    sources: tuple[str, ...] = (),
) -> str:
    message_id = _target(container)
    asyncio.run(container.pipeline.run(kind, prompt, sources, message_id))
    return message_id


def _kinds(container: AppContainer) -> list[str]:
    return [
        event.kind
        for event in container.canvas_sink.drain()
        if event.kind != UPDATE_PLACEHOLDER_PROGRESS
    ]


def test_generate_places_image_and_caches_it(
    container: AppContainer, provider: FakeProvider
) -> None:
    message_id = _run(container, RequestKind.GENERATE, "a red cube")

    message = container.session_store.get_message(message_id)
    assert message.generation_status == GenerationStatus(
        is_generating=False, progress=100.0, stage="completed"
    )
    assert message.image_data.startswith("data:image/png;base64,")
    assert message.content == "Image generated."
    assert message.model == PRO_IMAGE_MODEL
    assert _kinds(container) == [SHOW_PLACEHOLDER, PLACE_IMAGE, REMOVE_PLACEHOLDER]
    cached = container.session_store.cached_image()
    assert cached.image_id == message_id
    assert cached.bounds == Bounds(x=-256.0, y=-256.0, width=512.0, height=512.0)
    session = container.session_store.current_session()
    assert session.operations[-1].kind == "generate"
    assert session.operations[-1].success is True
    assert provider.calls[0].prompt == "a red cube"
    assert container.state.in_flight == 0


def test_place_image_payload_names_the_file(container: AppContainer) -> None:
    message_id = _run(container, RequestKind.GENERATE, "a red cube")

    placed = [
        event for event in container.canvas_sink.drain() if event.kind == PLACE_IMAGE
    ]

    assert placed[0].payload["file_name"] == f"ai_generate_{message_id}.png"
    assert placed[0].payload["placeholder_id"] == f"ai-placeholder-{message_id}"
    assert placed[0].payload["operation_kind"] == "generate"


def test_next_generate_goes_below_cached_image(container: AppContainer) -> None:
    _run(container, RequestKind.GENERATE, "a red cube")
    container.canvas_sink.drain()

    _run(container, RequestKind.GENERATE, "a blue cube")

    shown = [
        event for event in container.canvas_sink.drain() if event.kind == SHOW_PLACEHOLDER
    ]
    assert shown[0].payload["center"] == {"x": 0.0, "y": 552.0}


def test_edit_without_source_or_cache_is_rejected_before_any_work(
    container: AppContainer, provider: FakeProvider
) -> None:
    message_id = _target(container)

    with pytest.raises(ValidationError):
        asyncio.run(
            container.pipeline.run(RequestKind.EDIT, "make it blue", (), message_id)
        )

    assert provider.calls == []
    assert container.canvas_sink.drain() == []
    status = container.session_store.get_message(message_id).generation_status
    assert status.stage == "queued"


def test_blend_requires_two_sources(container: AppContainer) -> None:
    with pytest.raises(ValidationError):
        container.pipeline.validate(RequestKind.BLEND, (png_data_url(),))


def test_edit_uses_cached_image_when_no_source(
    container: AppContainer, provider: FakeProvider
) -> None:
    _run(container, RequestKind.GENERATE, "a red cube")
    cached = container.session_store.cached_image()

    _run(container, RequestKind.EDIT, "make it blue")

    edit_call = provider.calls[-1]
    assert edit_call.kind is RequestKind.EDIT
    assert edit_call.source_images == (cached.image_data,)


def test_unknown_target_message_is_rejected(container: AppContainer) -> None:
    container.session_store.ensure_active_session()

    with pytest.raises(ValidationError):
        asyncio.run(
            container.pipeline.run(RequestKind.CHAT, "hello", (), "msg-missing")
        )


def test_quota_failure_falls_back_once_to_flash_model(
    container: AppContainer, provider: FakeProvider
) -> None:
    provider.queue(
        RequestKind.GENERATE,
        ProviderFailure(code="HTTP_429", message="Resource exhausted"),
    )

    message_id = _run(container, RequestKind.GENERATE, "a red cube")

    assert provider.models_called(RequestKind.GENERATE) == [
        PRO_IMAGE_MODEL,
        FLASH_IMAGE_MODEL,
    ]
    message = container.session_store.get_message(message_id)
    assert message.model == FLASH_IMAGE_MODEL
    assert message.generation_status.stage == "completed"


def test_second_quota_failure_is_terminal(
    container: AppContainer, provider: FakeProvider
) -> None:
    provider.queue(
        RequestKind.GENERATE,
        ProviderFailure(code="HTTP_429", message="quota exceeded"),
        ProviderFailure(code="HTTP_429", message="quota exceeded"),
    )

    message_id = _run(container, RequestKind.GENERATE, "a red cube")

    assert len(provider.calls) == 2
    message = container.session_store.get_message(message_id)
    assert message.generation_status.error == "quota exceeded"
    assert message.generation_status.stage == "failed"
    assert message.content.startswith("Sorry, the generate request failed")


def test_quota_failure_on_ineligible_provider_does_not_fall_back(
    container: AppContainer, provider: FakeProvider
) -> None:
    container.settings.ai_provider = "midjourney"
    provider.queue(
        RequestKind.GENERATE,
        ProviderFailure(code="429", message="rate limit"),
    )

    _run(container, RequestKind.GENERATE, "a red cube")

    assert len(provider.calls) == 1


def test_empty_results_are_retried(
    container: AppContainer, provider: FakeProvider, scheduler: InstantScheduler
) -> None:
    provider.queue(
        RequestKind.GENERATE,
        ProviderSuccess(ProviderPayload()),
        ProviderSuccess(ProviderPayload(text="no image today")),
    )

    message_id = _run(container, RequestKind.GENERATE, "a red cube")

    assert len(provider.calls) == 3
    assert scheduler.delays.count(0.8) == 2
    status = container.session_store.get_message(message_id).generation_status
    assert status.stage == "completed"


def test_exhausted_empty_results_end_without_error(
    container: AppContainer, provider: FakeProvider
) -> None:
    provider.queue(RequestKind.GENERATE, *[ProviderSuccess(ProviderPayload())] * 3)

    message_id = _run(container, RequestKind.GENERATE, "a red cube")

    message = container.session_store.get_message(message_id)
    assert message.generation_status == GenerationStatus(
        is_generating=False, progress=100.0, stage="empty"
    )
    assert _kinds(container) == [SHOW_PLACEHOLDER, REMOVE_PLACEHOLDER]
    assert container.session_store.cached_image() is None
    assert container.session_store.current_session().operations[-1].success is False


def test_http_failure_removes_placeholder_and_records_error(
    container: AppContainer, provider: FakeProvider
) -> None:
    provider.queue(
        RequestKind.GENERATE,
        ProviderFailure(code="HTTP_500", message="Internal error"),
    )

    message_id = _run(container, RequestKind.GENERATE, "a red cube")

    message = container.session_store.get_message(message_id)
    assert message.generation_status.error == "Internal error"
    assert message.generation_status.progress == 0.0
    assert _kinds(container) == [SHOW_PLACEHOLDER, REMOVE_PLACEHOLDER]
    operation = container.session_store.current_session().operations[-1]
    assert operation.success is False
    assert operation.output == "HTTP_500"


def test_unexpected_exception_becomes_failure(
    container: AppContainer, provider: FakeProvider
) -> None:
    provider.queue(RequestKind.GENERATE, RuntimeError("socket closed"))

    message_id = _run(container, RequestKind.GENERATE, "a red cube")

    status = container.session_store.get_message(message_id).generation_status
    assert status.error == "socket closed"
    assert status.is_generating is False
    assert _kinds(container) == [SHOW_PLACEHOLDER, REMOVE_PLACEHOLDER]
    assert container.state.in_flight == 0


def test_chat_has_no_placeholder(container: AppContainer) -> None:
    message_id = _run(container, RequestKind.CHAT, "hello there")

    message = container.session_store.get_message(message_id)
    assert message.content == "Here is my answer."
    assert container.canvas_sink.drain() == []


def test_vectorize_stores_code_in_metadata(container: AppContainer) -> None:
    message_id = _run(container, RequestKind.VECTORIZE, "trace it", (png_data_url(),))

    message = container.session_store.get_message(message_id)
    assert message.metadata["code"].startswith("new paper.Path")
    assert container.canvas_sink.drain() == []


def test_vectorize_draws_from_prompt_without_image(
    container: AppContainer, provider: FakeProvider
) -> None:
    container.session_store.ensure_active_session()
    container.session_store.cache_latest_image(
        "img-1", "cube", remote_url="https://cdn.test/a.png"
    )

    message_id = _run(container, RequestKind.VECTORIZE, "draw a five pointed star")

    assert provider.calls[-1].source_images == ()
    message = container.session_store.get_message(message_id)
    assert message.metadata["code"].startswith("new paper.Path")


def test_vectorize_traces_explicit_source(
    container: AppContainer, provider: FakeProvider
) -> None:
    source = png_data_url(color="blue")

    _run(container, RequestKind.VECTORIZE, "trace it", (source, png_data_url()))

    assert provider.calls[-1].source_images == (source,)


def test_video_sets_video_fields_without_placement(container: AppContainer) -> None:
    message_id = _run(container, RequestKind.VIDEO, "a cube spinning")

    message = container.session_store.get_message(message_id)
    assert message.video_url == "https://cdn.test/video.mp4"
    assert message.video_thumbnail == "https://cdn.test/video.jpg"
    assert message.content == "Video generated."
    assert container.canvas_sink.drain() == []


def test_registration_uploads_result_in_background(
    container: AppContainer, storage
) -> None:
    async def scenario() -> str:
        message_id = _target(container)
        await container.pipeline.run(RequestKind.GENERATE, "a red cube", (), message_id)
        await container.asset_manager.drain()
        return message_id

    message_id = asyncio.run(scenario())

    message = container.session_store.get_message(message_id)
    assert message.remote_url.startswith("https://cdn.test/ai-chat-history/")
    assert message.thumbnail.startswith("data:image/webp;base64,")
    assert len(storage.uploads) == 1
    history = container.session_store.current_session().context_info.image_history
    assert history[0].prompt == "a red cube"


def test_estimated_placeholder_follows_aspect_ratio(container: AppContainer) -> None:
    container.settings.aspect_ratio = "16:9"
    container.settings.image_size = "4K"

    _run(container, RequestKind.GENERATE, "a wide cube")

    shown = [
        event for event in container.canvas_sink.drain() if event.kind == SHOW_PLACEHOLDER
    ]
    assert shown[0].payload["width"] == pytest.approx(640.0)
    assert shown[0].payload["height"] == pytest.approx(360.0)
