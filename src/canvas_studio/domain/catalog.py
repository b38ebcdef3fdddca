"""Known providers and the models each of them resolves to."""

from canvas_studio.domain.sessions import IMAGE_KINDS, RequestKind

PRO_IMAGE_MODEL = "gemini-3-pro-image-preview"
DEFAULT_IMAGE_MODEL = PRO_IMAGE_MODEL
FLASH_IMAGE_MODEL = "gemini-2.5-flash-image-preview"
BANANA_25_IMAGE_MODEL = "gemini-2.5-flash-image"
RUNNINGHUB_IMAGE_MODEL = "runninghub-su-effect"
MIDJOURNEY_IMAGE_MODEL = "midjourney-fast"
DEFAULT_TEXT_MODEL = "gemini-2.5-flash"
PRO_TEXT_MODEL = "gemini-3-pro-preview"
BANANA_TEXT_MODEL = "banana-gemini-3-pro-preview"
DEFAULT_VIDEO_MODEL = "sora-2-reverse"

PROVIDERS = ("gemini", "gemini-pro", "banana", "banana-2.5", "runninghub", "midjourney")

_IMAGE_MODELS = {
    "gemini-pro": PRO_IMAGE_MODEL,
    "runninghub": RUNNINGHUB_IMAGE_MODEL,
    "midjourney": MIDJOURNEY_IMAGE_MODEL,
    "banana-2.5": BANANA_25_IMAGE_MODEL,
}

_TEXT_MODELS = {
    "gemini": DEFAULT_TEXT_MODEL,
    "gemini-pro": PRO_TEXT_MODEL,
    "banana": BANANA_TEXT_MODEL,
    "banana-2.5": DEFAULT_TEXT_MODEL,
}


def image_model_for(provider: str) -> str:
    return _IMAGE_MODELS.get(provider, DEFAULT_IMAGE_MODEL)


def text_model_for(provider: str) -> str:
    return _TEXT_MODELS.get(provider, DEFAULT_TEXT_MODEL)


def model_for(kind: RequestKind, provider: str) -> str:
    """Resolve the model a request kind should use on a provider."""
    if kind is RequestKind.VIDEO:
        return DEFAULT_VIDEO_MODEL
    if kind in IMAGE_KINDS:
        return image_model_for(provider)
    return text_model_for(provider)
