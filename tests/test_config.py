"""Tests for settings helpers and failure classification."""

import pytest

from canvas_studio.config import Settings, parse_multiplier
from canvas_studio.domain.catalog import (
    DEFAULT_VIDEO_MODEL,
    FLASH_IMAGE_MODEL,
    PRO_IMAGE_MODEL,
    RUNNINGHUB_IMAGE_MODEL,
    model_for,
)
from canvas_studio.domain.errors import (
    HttpError,
    NetworkError,
    QuotaOrRateLimitError,
    QuotaRules,
    UnknownError,
    classify_failure,
)
from canvas_studio.domain.providers import ProviderFailure
from canvas_studio.domain.sessions import RequestKind


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, 1), (1, 1), (2, 2), ("4", 4), ("x8", 8), (" X2 ", 2)],
)
def test_parse_multiplier_accepts_allowed_values(raw: object, expected: int) -> None:
    assert parse_multiplier(raw) == expected  # type: ignore[arg-type]


@pytest.mark.parametrize("raw", [0, 3, 16, "three", "x"])
def test_parse_multiplier_rejects_other_values(raw: object) -> None:
    with pytest.raises(ValueError):
        parse_multiplier(raw)  # type: ignore[arg-type]


def test_settings_defaults(settings: Settings) -> None:
    assert settings.progress_ceiling == 95.0
    assert settings.placement_offset_vertical == 552.0
    assert settings.fallback_target_model == FLASH_IMAGE_MODEL
    rules = settings.quota_rules()
    assert rules.code_patterns == ("429", "rate", "quota")


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("SUPABASE_URL", "https://env.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "env-key")
    monkeypatch.setenv("AUTO_MODE_MULTIPLIER", "4")
    monkeypatch.setenv("FALLBACK_PROVIDERS", '["gemini"]')

    settings = Settings()

    assert settings.supabase_url == "https://env.supabase.co"
    assert settings.auto_mode_multiplier == 4
    assert settings.fallback_providers == ["gemini"]


@pytest.mark.parametrize(
    ("failure", "expected_type", "expected_code"),
    [
        (ProviderFailure("HTTP_429", "Too many requests"), QuotaOrRateLimitError, "HTTP_429"),
        (ProviderFailure("UNKNOWN", "RESOURCE_EXHAUSTED"), QuotaOrRateLimitError, "UNKNOWN"),
        (ProviderFailure("NETWORK_ERROR", "offline"), NetworkError, "NETWORK_ERROR"),
        (ProviderFailure("HTTP_503", "unavailable"), HttpError, "HTTP_503"),
        (ProviderFailure("BAD_THING", "nope"), UnknownError, "BAD_THING"),
    ],
)
def test_classify_failure(
    failure: ProviderFailure, expected_type: type, expected_code: str
) -> None:
    error = classify_failure(failure, QuotaRules())

    assert type(error) is expected_type
    assert error.code == expected_code
    assert error.message == failure.message


def test_quota_status_is_parsed_from_http_code() -> None:
    error = classify_failure(ProviderFailure("HTTP_429", "slow down"), QuotaRules())

    assert isinstance(error, QuotaOrRateLimitError)
    assert error.status == 429


def test_custom_quota_rules() -> None:
    rules = QuotaRules(code_patterns=("LIMIT",), message_patterns=())

    assert rules.matches("DAILY_LIMIT", None)
    assert not rules.matches("HTTP_429", "quota")


def test_model_catalog() -> None:
    assert model_for(RequestKind.GENERATE, "gemini") == PRO_IMAGE_MODEL
    assert model_for(RequestKind.EDIT, "runninghub") == RUNNINGHUB_IMAGE_MODEL
    assert model_for(RequestKind.VIDEO, "gemini") == DEFAULT_VIDEO_MODEL
    assert model_for(RequestKind.CHAT, "unknown-provider") == "gemini-2.5-flash"
