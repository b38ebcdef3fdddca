"""Maps a user intent to the request kind that should serve it."""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from canvas_studio.domain.catalog import text_model_for
from canvas_studio.domain.errors import ValidationError
from canvas_studio.domain.providers import ProviderFailure, ProviderRequest
from canvas_studio.domain.sessions import RequestKind

if TYPE_CHECKING:
    from canvas_studio.services.pipeline import GenerationProvider
    from canvas_studio.services.session_store import SessionStore

_logger = logging.getLogger(__name__)

MANUAL_MODES: dict[str, RequestKind | None] = {
    "auto": None,
    "text": RequestKind.CHAT,
    "generate": RequestKind.GENERATE,
    "edit": RequestKind.EDIT,
    "blend": RequestKind.BLEND,
    "analyze": RequestKind.ANALYZE,
    "video": RequestKind.VIDEO,
    "vector": RequestKind.VECTORIZE,
}

TOOL_KINDS: dict[str, RequestKind] = {
    "generateImage": RequestKind.GENERATE,
    "editImage": RequestKind.EDIT,
    "blendImages": RequestKind.BLEND,
    "analyzeImage": RequestKind.ANALYZE,
    "chatResponse": RequestKind.CHAT,
    "generateVideo": RequestKind.VIDEO,
    "generatePaperJS": RequestKind.VECTORIZE,
}


@dataclass(frozen=True)
class RouteDecision:
    """Chosen request kind and the prompt to run it with."""

    kind: RequestKind
    prompt: str
    reason: str


@dataclass
class ToolRouter:
    """Chooses a request kind from the manual mode or the provider's advice."""

    provider: "GenerationProvider"
    store: "SessionStore"

    async def route(
        self,
        prompt: str,
        manual_mode: str,
        provider_name: str,
        blend_source_count: int = 0,
        session_id: str | None = None,
    ) -> RouteDecision:
        """Return the request kind for an intent."""
        if manual_mode not in MANUAL_MODES:
            raise ValidationError(f"Unknown mode: {manual_mode}")
        manual_kind = MANUAL_MODES[manual_mode]
        if manual_kind is not None:
            return RouteDecision(kind=manual_kind, prompt=prompt, reason="manual")
        if blend_source_count >= 2:
            return RouteDecision(
                kind=RequestKind.BLEND, prompt=prompt, reason="blend-sources"
            )

        request = ProviderRequest(
            kind=RequestKind.CHAT,
            prompt=prompt,
            provider=provider_name,
            model=text_model_for(provider_name),
            context=self.store.build_context_prompt(prompt, session_id),
        )
        result = await self.provider.select_tool(request)
        if isinstance(result, ProviderFailure):
            _logger.warning(
                "Tool selection failed (%s): %s, answering as chat",
                result.code,
                result.message,
            )
            return RouteDecision(kind=RequestKind.CHAT, prompt=prompt, reason="fallback")
        selected = TOOL_KINDS.get(result.data.selected_tool or "")
        if selected is None:
            _logger.warning(
                "Tool selection returned unknown tool %s, answering as chat",
                result.data.selected_tool,
            )
            return RouteDecision(kind=RequestKind.CHAT, prompt=prompt, reason="fallback")
        rewritten = (result.data.text or "").strip() or prompt
        return RouteDecision(kind=selected, prompt=rewritten, reason="auto")
