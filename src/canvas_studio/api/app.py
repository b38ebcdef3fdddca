"""FastAPI application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace

from fastapi import FastAPI, HTTPException, Request, status

from canvas_studio.api.models import (
    CanvasEventView,
    CreateSessionRequest,
    DispatchRequest,
    DispatchResponse,
    MessageView,
    PlacementReport,
    RenameSessionRequest,
    SessionView,
    ViewportRequest,
)
from canvas_studio.app_logging import configure_logging
from canvas_studio.containers import AppContainer
from canvas_studio.domain.errors import ValidationError
from canvas_studio.services.coordinator import GenerationIntent
from canvas_studio.services.session_store import SessionNotFoundError


def create_app(container: AppContainer) -> FastAPI:  # noqa: PLR0915
    """Create a FastAPI app configured with dependencies."""
    configure_logging(container.settings.log_level)
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        state_container: AppContainer = app.state.container
        state_container.persistence.attach()
        try:
            await state_container.persistence.hydrate()
            state_container.session_store.prune_stale_sessions(
                state_container.session_timeout()
            )
        except Exception:
            logger.exception("Failed to hydrate chat sessions")
        yield
        await state_container.asset_manager.drain()
        try:
            await state_container.persistence.drain()
            await state_container.persistence.flush()
        except Exception:
            logger.exception("Failed to save chat sessions on shutdown")
        await state_container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    @app.post("/sessions", status_code=status.HTTP_201_CREATED)
    async def create_session(
        body: CreateSessionRequest, request: Request
    ) -> dict[str, str]:
        state_container: AppContainer = request.app.state.container
        session_id = state_container.session_store.create_session(body.name)
        return {"session_id": session_id}

    @app.get("/sessions")
    async def list_sessions(request: Request) -> dict[str, list[SessionView]]:
        """Return sessions, most recently active first."""
        state_container: AppContainer = request.app.state.container
        store = state_container.session_store
        current_id = store.state.current_session_id
        return {
            "sessions": [
                SessionView.from_summary(summary, current_id)
                for summary in store.list_sessions()
            ]
        }

    @app.post("/sessions/{session_id}/switch")
    async def switch_session(session_id: str, request: Request) -> dict[str, str]:
        state_container: AppContainer = request.app.state.container
        try:
            state_container.session_store.switch_session(session_id)
        except SessionNotFoundError as exc:
            raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc
        return {"session_id": session_id}

    @app.patch("/sessions/{session_id}")
    async def rename_session(
        session_id: str, body: RenameSessionRequest, request: Request
    ) -> dict[str, str]:
        state_container: AppContainer = request.app.state.container
        try:
            state_container.session_store.rename_session(session_id, body.name)
        except SessionNotFoundError as exc:
            raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc)) from exc
        return {"session_id": session_id, "name": body.name.strip()}

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str, request: Request) -> dict[str, str | None]:
        state_container: AppContainer = request.app.state.container
        store = state_container.session_store
        try:
            store.delete_session(session_id)
        except SessionNotFoundError as exc:
            raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc
        return {"current_session_id": store.state.current_session_id}

    @app.get("/sessions/current/messages")
    async def current_messages(request: Request) -> dict[str, object]:
        """Return the messages of the current session."""
        state_container: AppContainer = request.app.state.container
        session = state_container.session_store.current_session()
        if session is None:
            return {"session_id": None, "messages": []}
        return {
            "session_id": session.session_id,
            "messages": [MessageView.from_message(item) for item in session.messages],
        }

    @app.post("/dispatch", status_code=status.HTTP_202_ACCEPTED)
    async def dispatch(body: DispatchRequest, request: Request) -> DispatchResponse:
        """Start the generation runs for one user intent."""
        state_container: AppContainer = request.app.state.container
        intent = GenerationIntent(
            prompt=body.prompt,
            manual_mode=body.manual_mode,
            source_image=body.source_image,
            blend_sources=tuple(body.blend_sources),
            analysis_image=body.analysis_image,
            multiplier=body.multiplier,
        )
        try:
            group_id = await state_container.coordinator.dispatch(intent)
        except ValidationError as exc:
            raise HTTPException(
                status.HTTP_422_UNPROCESSABLE_ENTITY, exc.message
            ) from exc
        except SessionNotFoundError as exc:
            raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc
        return DispatchResponse(
            group_id=group_id,
            session_id=state_container.state.current_session_id,
        )

    @app.get("/canvas/events")
    async def canvas_events(request: Request) -> dict[str, list[CanvasEventView]]:
        """Drain the canvas events queued since the last poll."""
        state_container: AppContainer = request.app.state.container
        return {
            "events": [
                CanvasEventView.from_event(event)
                for event in state_container.canvas_sink.drain()
            ]
        }

    @app.post("/canvas/viewport")
    async def canvas_viewport(body: ViewportRequest, request: Request) -> dict[str, str]:
        state_container: AppContainer = request.app.state.container
        state_container.placeholder_bridge.set_viewport(
            body.viewport.to_bounds() if body.viewport else None
        )
        return {"status": "ok"}

    @app.post("/canvas/placements")
    async def canvas_placement(body: PlacementReport, request: Request) -> dict[str, str]:
        """Record where the canvas put an asset."""
        state_container: AppContainer = request.app.state.container
        bounds = body.bounds.to_bounds()
        state_container.placeholder_bridge.register_placed(bounds)
        store = state_container.session_store
        cached = store.cached_image()
        if body.image_id is not None and cached is not None and cached.image_id == body.image_id:
            store.update_cached_image(
                lambda current: replace(
                    current, bounds=bounds, layer_id=body.layer_id or current.layer_id
                )
            )
        return {"status": "ok"}

    return app
