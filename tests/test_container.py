"""Tests for container wiring."""

import asyncio

import pytest

from canvas_studio.adapters.httpx_generation_provider import HttpxGenerationProvider
from canvas_studio.adapters.openai_generation_provider import OpenAIGenerationProvider
from canvas_studio.containers import build_container


def test_build_container_creates_services(settings) -> None:
    container = build_container(settings)
    assert container.coordinator is not None
    assert isinstance(container.pipeline.provider, HttpxGenerationProvider)
    assert container.session_store.progress_listener is container.placeholder_bridge
    asyncio.run(container.close_resources())


def test_build_container_with_openai_backend(settings) -> None:
    settings.provider_backend = "openai"
    container = build_container(settings)
    assert isinstance(container.pipeline.provider, OpenAIGenerationProvider)
    asyncio.run(container.close_resources())


def test_openai_backend_requires_key(settings) -> None:
    settings.provider_backend = "openai"
    settings.openai_api_key = None
    with pytest.raises(ValueError):
        build_container(settings)
