"""HTTP client for the generation backend controller."""

import logging
from dataclasses import dataclass
from typing import TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from canvas_studio.domain.providers import (
    ProviderFailure,
    ProviderPayload,
    ProviderRequest,
    ProviderResult,
    ProviderSuccess,
)
from canvas_studio.services.pipeline import GenerationProvider

_logger = logging.getLogger(__name__)

_AVAILABLE_TOOLS = [
    "generateImage",
    "editImage",
    "blendImages",
    "analyzeImage",
    "chatResponse",
    "generateVideo",
    "generatePaperJS",
]


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


_WireT = TypeVar("_WireT", bound=_WireModel)


class ImageResponse(_WireModel):
    image_data: str | None = Field(default=None, alias="imageData")
    image_url: str | None = Field(default=None, alias="imageUrl")
    text_response: str | None = Field(default=None, alias="textResponse")
    model: str | None = None
    metadata: dict[str, object] | None = None


class TextResponse(_WireModel):
    text: str | None = None
    model: str | None = None


class CodeResponse(_WireModel):
    code: str | None = None
    explanation: str | None = None
    model: str | None = None


class VideoResponse(_WireModel):
    video_url: str | None = Field(default=None, alias="videoUrl")
    thumbnail_url: str | None = Field(default=None, alias="thumbnailUrl")
    model: str | None = None


class ToolSelectionParameters(_WireModel):
    prompt: str | None = None


class ToolSelectionResponse(_WireModel):
    selected_tool: str | None = Field(default=None, alias="selectedTool")
    parameters: ToolSelectionParameters | None = None
    reasoning: str | None = None
    confidence: float | None = None


@dataclass
class HttpxGenerationProvider(GenerationProvider):
    """Provider that forwards requests to the backend AI routes."""

    base_url: str
    http_client: httpx.AsyncClient
    api_token: str | None = None
    timeout_seconds: float = 300.0

    @classmethod
    def create(
        cls, base_url: str, api_token: str | None = None
    ) -> "HttpxGenerationProvider":
        """Create a provider with a managed httpx session."""
        return cls(
            base_url=base_url.rstrip("/"),
            http_client=httpx.AsyncClient(),
            api_token=api_token,
        )

    async def generate(self, request: ProviderRequest) -> ProviderResult:
        return await self._image("generate-image", request, {})

    async def edit(self, request: ProviderRequest) -> ProviderResult:
        source = request.source_images[0] if request.source_images else None
        return await self._image("edit-image", request, {"sourceImage": source})

    async def blend(self, request: ProviderRequest) -> ProviderResult:
        return await self._image(
            "blend-images", request, {"sourceImages": list(request.source_images)}
        )

    async def analyze(self, request: ProviderRequest) -> ProviderResult:
        source = request.source_images[0] if request.source_images else None
        return await self._text("analyze-image", request, {"sourceImage": source})

    async def chat(self, request: ProviderRequest) -> ProviderResult:
        return await self._text(
            "text-chat", request, {"enableWebSearch": request.enable_web_search}
        )

    async def vectorize(self, request: ProviderRequest) -> ProviderResult:
        if request.source_images:
            path = "img2vector"
            extra: dict[str, object] = {"sourceImage": request.source_images[0]}
        else:
            path = "generate-paperjs"
            extra = {}
        result = await self._post(path, self._body(request, extra))
        if isinstance(result, ProviderFailure):
            return result
        parsed = _parse(CodeResponse, result)
        if isinstance(parsed, ProviderFailure):
            return parsed
        return ProviderSuccess(
            ProviderPayload(
                text=parsed.code,
                model=parsed.model,
                metadata={"explanation": parsed.explanation} if parsed.explanation else {},
            )
        )

    async def video(self, request: ProviderRequest) -> ProviderResult:
        body: dict[str, object] = {
            "prompt": request.prompt,
            "referenceImageUrls": list(request.source_images),
            "aspectRatio": request.aspect_ratio,
        }
        result = await self._post("generate-video", body)
        if isinstance(result, ProviderFailure):
            return result
        parsed = _parse(VideoResponse, result)
        if isinstance(parsed, ProviderFailure):
            return parsed
        return ProviderSuccess(
            ProviderPayload(
                video_url=parsed.video_url,
                video_thumbnail=parsed.thumbnail_url,
                model=parsed.model,
            )
        )

    async def select_tool(self, request: ProviderRequest) -> ProviderResult:
        body = self._body(
            request,
            {
                "availableTools": _AVAILABLE_TOOLS,
                "hasImages": bool(request.source_images),
                "imageCount": len(request.source_images),
                "context": request.context,
            },
        )
        result = await self._post("tool-selection", body)
        if isinstance(result, ProviderFailure):
            return result
        parsed = _parse(ToolSelectionResponse, result)
        if isinstance(parsed, ProviderFailure):
            return parsed
        return ProviderSuccess(
            ProviderPayload(
                selected_tool=parsed.selected_tool,
                text=parsed.parameters.prompt if parsed.parameters else None,
                metadata={"reasoning": parsed.reasoning, "confidence": parsed.confidence},
            )
        )

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.http_client.aclose()

    async def _image(
        self, path: str, request: ProviderRequest, extra: dict[str, object]
    ) -> ProviderResult:
        result = await self._post(path, self._body(request, extra))
        if isinstance(result, ProviderFailure):
            return result
        parsed = _parse(ImageResponse, result)
        if isinstance(parsed, ProviderFailure):
            return parsed
        return ProviderSuccess(
            ProviderPayload(
                text=parsed.text_response or None,
                image_data=parsed.image_data,
                remote_url=parsed.image_url,
                model=parsed.model,
                metadata=parsed.metadata or {},
            )
        )

    async def _text(
        self, path: str, request: ProviderRequest, extra: dict[str, object]
    ) -> ProviderResult:
        result = await self._post(path, self._body(request, extra))
        if isinstance(result, ProviderFailure):
            return result
        parsed = _parse(TextResponse, result)
        if isinstance(parsed, ProviderFailure):
            return parsed
        return ProviderSuccess(ProviderPayload(text=parsed.text, model=parsed.model))

    def _body(self, request: ProviderRequest, extra: dict[str, object]) -> dict[str, object]:
        body: dict[str, object] = {
            "prompt": request.prompt,
            "model": request.model,
            "aiProvider": request.provider,
        }
        if request.aspect_ratio:
            body["aspectRatio"] = request.aspect_ratio
        if request.image_size:
            body["imageSize"] = request.image_size
        body.update({key: value for key, value in extra.items() if value is not None})
        return body

    async def _post(
        self, path: str, body: dict[str, object]
    ) -> dict[str, object] | ProviderFailure:
        headers = {"Authorization": f"Bearer {self.api_token}"} if self.api_token else {}
        try:
            response = await self.http_client.post(
                f"{self.base_url}/ai/{path}",
                json=body,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            _logger.warning("Backend call %s failed: %s", path, exc)
            return ProviderFailure(code="NETWORK_ERROR", message=str(exc) or type(exc).__name__)
        if response.is_error:
            return ProviderFailure(
                code=f"HTTP_{response.status_code}",
                message=_error_message(response),
            )
        try:
            payload = response.json()
        except ValueError:
            return ProviderFailure(code="UNKNOWN_ERROR", message="Backend returned invalid JSON")
        if isinstance(payload, dict) and payload.get("success") is False:
            error = payload.get("error") or {}
            return ProviderFailure(
                code=str(error.get("code") or "UNKNOWN_ERROR"),
                message=str(error.get("message") or "Backend reported a failure"),
            )
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            return payload["data"]
        if not isinstance(payload, dict):
            return ProviderFailure(code="UNKNOWN_ERROR", message="Unexpected backend payload")
        return payload


def _parse(model: type[_WireT], payload: dict[str, object]) -> _WireT | ProviderFailure:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        return ProviderFailure(code="UNKNOWN_ERROR", message=f"Malformed response: {exc}")


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        message = payload.get("message")
        if isinstance(message, list):
            return "; ".join(str(item) for item in message)
        if message:
            return str(message)
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"HTTP {response.status_code}"
