"""Error taxonomy for generation requests."""

import re
from dataclasses import dataclass

from canvas_studio.domain.providers import ProviderFailure

_HTTP_CODE = re.compile(r"^HTTP_(\d{3})$")


class GenerationError(Exception):
    """Base class for generation failures."""

    code = "UNKNOWN_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class NetworkError(GenerationError):
    """Transport failure before the provider answered."""

    code = "NETWORK_ERROR"


class HttpError(GenerationError):
    """Provider was reachable but rejected the request."""

    def __init__(self, message: str, status: int | None, code: str | None = None) -> None:
        super().__init__(message, code or (f"HTTP_{status}" if status else None))
        self.status = status


class QuotaOrRateLimitError(HttpError):
    """Rejection caused by exhausted quota or rate limiting."""


class ValidationError(GenerationError):
    """Caller-side precondition failure, raised before any work starts."""

    code = "VALIDATION_ERROR"


class ProviderEmptyResult(GenerationError):
    """Provider reported success without the expected payload."""

    code = "EMPTY_RESULT"


class UnknownError(GenerationError):
    """Anything that does not fit the other categories."""


@dataclass(frozen=True)
class QuotaRules:
    """Substring rules that mark a failure as quota or rate-limit related."""

    code_patterns: tuple[str, ...] = ("429", "rate", "quota")
    message_patterns: tuple[str, ...] = (
        "quota",
        "rate limit",
        "resource_exhausted",
        "429",
    )

    def matches(self, code: str | None, message: str | None) -> bool:
        """Return True when either the code or the message matches a rule."""
        lowered_code = (code or "").lower()
        lowered_message = (message or "").lower()
        if any(pattern.lower() in lowered_code for pattern in self.code_patterns):
            return True
        return any(
            pattern.lower() in lowered_message for pattern in self.message_patterns
        )


def classify_failure(failure: ProviderFailure, rules: QuotaRules) -> GenerationError:
    """Convert a provider failure into the matching exception type."""
    status = _status_from_code(failure.code)
    if rules.matches(failure.code, failure.message):
        return QuotaOrRateLimitError(failure.message, status, code=failure.code)
    if failure.code == NetworkError.code:
        return NetworkError(failure.message)
    if status is not None:
        return HttpError(failure.message, status)
    return UnknownError(failure.message, code=failure.code or None)


def _status_from_code(code: str | None) -> int | None:
    match = _HTTP_CODE.match(code or "")
    if match is None:
        return None
    return int(match.group(1))
