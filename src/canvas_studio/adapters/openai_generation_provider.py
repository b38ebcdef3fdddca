"""OpenAI-backed generation provider."""

import base64
import binascii
import json
from dataclasses import dataclass

import openai
from openai import AsyncOpenAI

from canvas_studio.domain.providers import (
    ProviderFailure,
    ProviderPayload,
    ProviderRequest,
    ProviderResult,
    ProviderSuccess,
)
from canvas_studio.services.pipeline import GenerationProvider

TOOL_SELECTION_SCHEMA: dict[str, object] = {
    "type": "object",
    "properties": {
        "selected_tool": {
            "type": "string",
            "enum": [
                "generateImage",
                "editImage",
                "blendImages",
                "analyzeImage",
                "chatResponse",
                "generateVideo",
                "generatePaperJS",
            ],
        },
        "prompt": {"type": "string"},
        "reasoning": {"type": "string"},
    },
    "required": ["selected_tool", "prompt", "reasoning"],
    "additionalProperties": False,
}

_SIZES = {"landscape": "1536x1024", "portrait": "1024x1536", "square": "1024x1024"}


@dataclass
class OpenAIGenerationProvider(GenerationProvider):
    """Provider backed by the OpenAI Images and Responses APIs."""

    client: AsyncOpenAI
    image_model: str = "gpt-image-1"
    text_model: str = "gpt-5.2"
    store: bool = False

    @classmethod
    def create(
        cls, api_key: str, image_model: str = "gpt-image-1", text_model: str = "gpt-5.2"
    ) -> "OpenAIGenerationProvider":
        """Create an OpenAI generation provider."""
        return cls(
            client=AsyncOpenAI(api_key=api_key),
            image_model=image_model,
            text_model=text_model,
        )

    async def generate(self, request: ProviderRequest) -> ProviderResult:
        try:
            response = await self.client.images.generate(
                model=self.image_model,
                prompt=request.prompt,
                size=_size_for(request.aspect_ratio),
                n=1,
            )
        except openai.OpenAIError as exc:
            return _failure(exc)
        return self._image_payload(response)

    async def edit(self, request: ProviderRequest) -> ProviderResult:
        return await self._edit_images(request, request.source_images[:1])

    async def blend(self, request: ProviderRequest) -> ProviderResult:
        return await self._edit_images(request, request.source_images)

    async def analyze(self, request: ProviderRequest) -> ProviderResult:
        content: list[dict[str, object]] = [{"type": "input_text", "text": request.prompt}]
        content.extend(
            {"type": "input_image", "image_url": source} for source in request.source_images
        )
        return await self._respond(content)

    async def chat(self, request: ProviderRequest) -> ProviderResult:
        return await self._respond([{"type": "input_text", "text": request.prompt}])

    async def vectorize(self, request: ProviderRequest) -> ProviderResult:
        instruction = (
            "Write Paper.js code that draws the following as vector shapes. "
            "Return only code.\n"
            f"{request.prompt}"
        )
        content: list[dict[str, object]] = [{"type": "input_text", "text": instruction}]
        content.extend(
            {"type": "input_image", "image_url": source} for source in request.source_images
        )
        return await self._respond(content)

    async def video(self, request: ProviderRequest) -> ProviderResult:
        return ProviderFailure(
            code="UNSUPPORTED", message="Video generation is not available on this provider"
        )

    async def select_tool(self, request: ProviderRequest) -> ProviderResult:
        prompt = request.context or request.prompt
        try:
            response = await self.client.responses.create(
                model=self.text_model,
                input=[
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "input_text",
                                "text": (
                                    "Choose the single best tool for the request. "
                                    "Keep the user's prompt unless it needs cleanup.\n"
                                    f"{prompt}"
                                ),
                            }
                        ],
                    }
                ],
                text={
                    "format": {
                        "type": "json_schema",
                        "name": "tool_selection",
                        "strict": True,
                        "schema": TOOL_SELECTION_SCHEMA,
                    }
                },
                store=self.store,
            )
        except openai.OpenAIError as exc:
            return _failure(exc)
        output_text = response.output_text
        if not output_text:
            return ProviderFailure(code="UNKNOWN_ERROR", message="OpenAI returned an empty response")
        try:
            parsed = json.loads(output_text)
        except json.JSONDecodeError:
            return ProviderFailure(code="UNKNOWN_ERROR", message="OpenAI returned invalid JSON")
        return ProviderSuccess(
            ProviderPayload(
                selected_tool=parsed.get("selected_tool"),
                text=parsed.get("prompt") or request.prompt,
                metadata={"reasoning": parsed.get("reasoning")},
            )
        )

    async def _edit_images(
        self, request: ProviderRequest, sources: tuple[str, ...]
    ) -> ProviderResult:
        files: list[tuple[str, bytes, str]] = []
        for index, source in enumerate(sources):
            decoded = _decode_data_url(source)
            if decoded is None:
                return ProviderFailure(
                    code="UNSUPPORTED_SOURCE",
                    message="Source images must be inline data URLs",
                )
            mime_type, raw = decoded
            files.append((f"source-{index}.png", raw, mime_type))
        try:
            response = await self.client.images.edit(
                model=self.image_model,
                image=files,
                prompt=request.prompt,
                size=_size_for(request.aspect_ratio),
            )
        except openai.OpenAIError as exc:
            return _failure(exc)
        return self._image_payload(response)

    async def _respond(self, content: list[dict[str, object]]) -> ProviderResult:
        try:
            response = await self.client.responses.create(
                model=self.text_model,
                input=[{"role": "user", "content": content}],
                store=self.store,
            )
        except openai.OpenAIError as exc:
            return _failure(exc)
        return ProviderSuccess(
            ProviderPayload(text=response.output_text or "", model=self.text_model)
        )

    def _image_payload(self, response: object) -> ProviderResult:
        data = getattr(response, "data", None) or []
        first = data[0] if data else None
        encoded = getattr(first, "b64_json", None)
        url = getattr(first, "url", None)
        return ProviderSuccess(
            ProviderPayload(
                image_data=f"data:image/png;base64,{encoded}" if encoded else None,
                remote_url=url,
                text=getattr(first, "revised_prompt", None),
                model=self.image_model,
            )
        )


def _failure(exc: openai.OpenAIError) -> ProviderFailure:
    if isinstance(exc, openai.RateLimitError):
        return ProviderFailure(code="429", message=str(exc))
    if isinstance(exc, openai.APIStatusError):
        return ProviderFailure(code=f"HTTP_{exc.status_code}", message=exc.message)
    if isinstance(exc, openai.APIConnectionError):
        return ProviderFailure(code="NETWORK_ERROR", message=str(exc))
    return ProviderFailure(code="UNKNOWN_ERROR", message=str(exc))


def _size_for(aspect_ratio: str | None) -> str:
    if not aspect_ratio or ":" not in aspect_ratio:
        return _SIZES["square"]
    left, _, right = aspect_ratio.partition(":")
    try:
        ratio = float(left) / float(right)
    except (ValueError, ZeroDivisionError):
        return _SIZES["square"]
    if ratio > 1.1:
        return _SIZES["landscape"]
    if ratio < 0.9:
        return _SIZES["portrait"]
    return _SIZES["square"]


def _decode_data_url(value: str) -> tuple[str, bytes] | None:
    if not value.startswith("data:"):
        return None
    header, _, encoded = value.partition(",")
    mime_type = header.removeprefix("data:").split(";")[0] or "image/png"
    try:
        return mime_type, base64.b64decode(encoded)
    except (binascii.Error, ValueError):
        return None
