"""Session and message store shared by the orchestration services."""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Protocol
from uuid import uuid4

from canvas_studio.domain.placeholders import Bounds, placeholder_id_for
from canvas_studio.domain.sessions import (
    CachedImage,
    GenerationStatus,
    ImageHistoryEntry,
    Message,
    MessageDraft,
    OperationRecord,
    Session,
    SessionSummary,
    utcnow,
)

_logger = logging.getLogger(__name__)

_ITERATIVE_KEYWORDS = (
    "优化",
    "调整",
    "改进",
    "修改",
    "再",
    "继续",
    "进一步",
    "更好",
    "更",
    "重新",
    "optimize",
    "adjust",
    "improve",
    "refine",
    "continue",
    "further",
    "better",
    "more",
    "again",
    "retry",
)
_MATH_OPERATOR = re.compile(r"[+\-*/]")
_MATH_CONTENT = re.compile(r"[\d+\-*/=]")
_CONTEXT_PROMPT_LIMIT = 1500


def new_id(prefix: str) -> str:
    """Return a fresh identifier with a readable prefix."""
    return f"{prefix}-{uuid4().hex[:12]}"


class ProgressListener(Protocol):
    """Receives progress ticks keyed by placeholder id."""

    def update_progress(self, placeholder_id: str, percent: float) -> None:
        """Forward a progress value to the canvas."""


@dataclass(frozen=True)
class StoreChange:
    """Notification about a store mutation."""

    kind: str
    session_id: str | None

    @property
    def persistable(self) -> bool:
        return self.kind != "progress"


ChangeListener = Callable[[StoreChange], None]


@dataclass
class OrchestratorState:
    """Shared pointer, snapshot and in-flight counter."""

    current_session_id: str | None = None
    snapshot: list[Message] = field(default_factory=list)
    in_flight: int = 0


class SessionNotFoundError(LookupError):
    """Raised when a session id is unknown."""


@dataclass
class SessionStore:
    """Owns sessions and messages; every write refreshes the snapshot."""

    state: OrchestratorState = field(default_factory=OrchestratorState)
    progress_listener: ProgressListener | None = None
    clock: Callable[[], datetime] = utcnow
    max_messages: int = 50
    max_operations: int = 20
    max_image_history: int = 10
    max_recent_prompts: int = 10
    _sessions: dict[str, Session] = field(default_factory=dict)
    _listeners: list[ChangeListener] = field(default_factory=list)

    # Sessions

    def create_session(self, name: str | None = None) -> str:
        """Create a session, make it current and return its id."""
        now = self.clock()
        session_id = new_id("session")
        label = (name or "").strip() or f"Session {len(self._sessions) + 1}"
        self._sessions[session_id] = Session(
            session_id=session_id,
            name=label,
            start_time=now,
            last_activity=now,
        )
        self._set_current(session_id)
        self._notify("session", session_id)
        return session_id

    def ensure_active_session(self) -> str:
        """Return the current session id, creating or choosing one if needed."""
        current = self.state.current_session_id
        if current is not None and current in self._sessions:
            return current
        if self._sessions:
            latest = max(self._sessions.values(), key=lambda item: item.last_activity)
            self._set_current(latest.session_id)
            return latest.session_id
        return self.create_session()

    def switch_session(self, session_id: str) -> None:
        """Make another session current."""
        session = self._require(session_id)
        session.last_activity = self.clock()
        self._set_current(session_id)
        self._notify("session", session_id)

    def rename_session(self, session_id: str, name: str) -> None:
        """Rename a session; blank names are rejected."""
        cleaned = name.strip()
        if not cleaned:
            raise ValueError("Session name must not be empty")
        session = self._require(session_id)
        session.name = cleaned
        session.last_activity = self.clock()
        self._notify("session", session_id)

    def delete_session(self, session_id: str) -> None:
        """Delete a session; the most recent remaining one becomes current."""
        self._require(session_id)
        del self._sessions[session_id]
        if self.state.current_session_id == session_id:
            remaining = sorted(
                self._sessions.values(),
                key=lambda item: item.last_activity,
                reverse=True,
            )
            self._set_current(remaining[0].session_id if remaining else None)
        self._notify("session", session_id)

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def current_session(self) -> Session | None:
        current = self.state.current_session_id
        return self._sessions.get(current) if current else None

    def all_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def list_sessions(self) -> list[SessionSummary]:
        """Return session summaries, newest activity first."""
        summaries = [
            SessionSummary(
                session_id=session.session_id,
                name=session.name,
                last_activity=session.last_activity,
                created_at=session.start_time,
                message_count=len(session.messages),
                preview=session.messages[-1].content[:50] if session.messages else None,
            )
            for session in self._sessions.values()
        ]
        return sorted(summaries, key=lambda item: item.last_activity, reverse=True)

    def replace_sessions(
        self, sessions: list[Session], active_session_id: str | None = None
    ) -> None:
        """Swap in a hydrated set of sessions."""
        self._sessions = {session.session_id: session for session in sessions}
        if active_session_id not in self._sessions:
            active_session_id = next(iter(self._sessions), None)
        self._set_current(active_session_id)
        self._notify("hydrate", active_session_id)

    def prune_stale_sessions(self, max_age: timedelta) -> list[str]:
        """Drop sessions idle for longer than max_age, keeping the current one."""
        cutoff = self.clock() - max_age
        stale = [
            session_id
            for session_id, session in self._sessions.items()
            if session.last_activity < cutoff
            and session_id != self.state.current_session_id
        ]
        for session_id in stale:
            del self._sessions[session_id]
        if stale:
            _logger.info("Pruned %s stale sessions", len(stale))
            self._notify("session", None)
        return stale

    # Messages

    def add_message(self, draft: MessageDraft, session_id: str | None = None) -> Message:
        """Append a message, absorbing an immediate duplicate."""
        session = self._target(session_id)
        if session.messages:
            last = session.messages[-1]
            if (
                last.role == draft.role
                and last.content == draft.content
                and last.group_id == draft.group_id
                and last.group_index == draft.group_index
            ):
                return last
        message = Message(
            id=new_id("msg"),
            role=draft.role,
            content=draft.content,
            timestamp=self.clock(),
            image_data=draft.image_data,
            source_image_data=draft.source_image_data,
            source_images_data=draft.source_images_data,
            expects_image_output=draft.expects_image_output,
            expects_video_output=draft.expects_video_output,
            generation_status=draft.generation_status,
            group_id=draft.group_id,
            group_index=draft.group_index,
            group_total=draft.group_total,
            provider=draft.provider,
        )
        session.messages.append(message)
        if len(session.messages) > self.max_messages:
            del session.messages[: len(session.messages) - self.max_messages]
        session.last_activity = message.timestamp
        self._refresh_snapshot(session)
        self._notify("message", session.session_id)
        return message

    def find_message(
        self, message_id: str, session_id: str | None = None
    ) -> tuple[Session, Message] | None:
        """Locate a message, searching the hinted session first."""
        candidates: list[Session] = []
        for hint in (session_id, self.state.current_session_id):
            if hint and hint in self._sessions:
                candidates.append(self._sessions[hint])
        candidates.extend(self._sessions.values())
        for session in candidates:
            message = session.find_message(message_id)
            if message is not None:
                return session, message
        return None

    def get_message(self, message_id: str, session_id: str | None = None) -> Message | None:
        found = self.find_message(message_id, session_id)
        return found[1] if found else None

    def update_message(
        self,
        message_id: str,
        patch: Callable[[Message], Message],
        session_id: str | None = None,
    ) -> Message | None:
        """Replace a message with patch(message); unknown ids are ignored."""
        return self._write(message_id, patch, session_id, kind="message")

    def update_message_status(
        self, message_id: str, session_id: str | None = None, **changes: object
    ) -> Message | None:
        """Merge status fields into a message's generation status."""

        def patch(message: Message) -> Message:
            current = message.generation_status or GenerationStatus()
            merged = replace(current, **changes)
            if merged.error:
                merged = replace(merged, is_generating=False)
            progress = min(max(float(merged.progress), 0.0), 100.0)
            if current.is_generating and merged.is_generating:
                progress = max(progress, current.progress)
            return replace(message, generation_status=replace(merged, progress=progress))

        progress_only = set(changes) <= {"progress", "stage"}
        updated = self._write(
            message_id,
            patch,
            session_id,
            kind="progress" if progress_only else "message",
        )
        if updated is not None and "progress" in changes and self.progress_listener:
            status = updated.generation_status
            if status is not None:
                self.progress_listener.update_progress(
                    placeholder_id_for(message_id), status.progress
                )
        return updated

    def clear_messages(self, session_id: str | None = None) -> None:
        session = self._target(session_id)
        session.messages.clear()
        session.last_activity = self.clock()
        self._refresh_snapshot(session)
        self._notify("message", session.session_id)

    def begin_request(self) -> None:
        self.state.in_flight += 1

    def end_request(self) -> None:
        self.state.in_flight = max(0, self.state.in_flight - 1)

    # Context

    def record_operation(  # noqa: PLR0913
        self,
        kind: str,
        input_text: str,
        output: str | None = None,
        success: bool = True,
        metadata: dict[str, object] | None = None,
        session_id: str | None = None,
    ) -> OperationRecord:
        """Record an executed operation and update the session mode."""
        session = self._target(session_id)
        record = OperationRecord(
            id=new_id("op"),
            kind=kind,
            timestamp=self.clock(),
            input=input_text,
            output=output,
            success=success,
            metadata=metadata,
        )
        session.operations.append(record)
        if len(session.operations) > self.max_operations:
            del session.operations[: len(session.operations) - self.max_operations]
        session.current_mode = kind
        session.context_info.last_operation_kind = kind
        session.last_activity = record.timestamp
        self._notify("context", session.session_id)
        return record

    def cache_latest_image(  # noqa: PLR0913
        self,
        image_id: str,
        prompt: str,
        image_data: str | None = None,
        remote_url: str | None = None,
        bounds: Bounds | None = None,
        layer_id: str | None = None,
        session_id: str | None = None,
    ) -> CachedImage:
        """Make an image the implicit subject of follow-up requests."""
        session = self._target(session_id)
        previous = session.cached_image
        if bounds is None and previous is not None:
            bounds = previous.bounds
        cached = CachedImage(
            image_id=image_id,
            prompt=prompt,
            image_data=image_data,
            remote_url=remote_url,
            bounds=bounds,
            layer_id=layer_id,
            timestamp=self.clock(),
        )
        session.cached_image = cached
        session.active_image_id = image_id
        self._notify("context", session.session_id)
        return cached

    def update_cached_image(
        self,
        patch: Callable[[CachedImage], CachedImage],
        session_id: str | None = None,
    ) -> CachedImage | None:
        session = self._target(session_id)
        if session.cached_image is None:
            return None
        session.cached_image = patch(session.cached_image)
        self._notify("context", session.session_id)
        return session.cached_image

    def cached_image(self, session_id: str | None = None) -> CachedImage | None:
        session_key = session_id or self.state.current_session_id
        session = self._sessions.get(session_key) if session_key else None
        return session.cached_image if session else None

    def clear_image_cache(self, session_id: str | None = None) -> None:
        session = self._target(session_id)
        session.cached_image = None
        session.active_image_id = None
        self._notify("context", session.session_id)

    def add_image_history(
        self, entry: ImageHistoryEntry, session_id: str | None = None
    ) -> None:
        """Append a produced asset to the bounded image history."""
        session = self._target(session_id)
        history = session.context_info.image_history
        history.append(entry)
        if len(history) > self.max_image_history:
            del history[: len(history) - self.max_image_history]
        self._notify("context", session.session_id)

    def replace_image_history_entry(
        self, entry_id: str, entry: ImageHistoryEntry, session_id: str | None = None
    ) -> None:
        session = self._target(session_id)
        history = session.context_info.image_history
        for index, existing in enumerate(history):
            if existing.id == entry_id:
                history[index] = entry
                self._notify("context", session.session_id)
                return

    def remember_prompt(self, prompt: str, session_id: str | None = None) -> None:
        session = self._target(session_id)
        prompts = session.context_info.recent_prompts
        prompts.append(prompt)
        if len(prompts) > self.max_recent_prompts:
            del prompts[: len(prompts) - self.max_recent_prompts]
        self._notify("context", session.session_id)

    def save_user_preference(
        self, key: str, value: object, session_id: str | None = None
    ) -> None:
        session = self._target(session_id)
        session.context_info.user_preferences[key] = value
        self._notify("context", session.session_id)

    def detect_iterative_intent(self, text: str, session_id: str | None = None) -> bool:
        """Return True when the input reads as a refinement of prior work."""
        lowered = text.lower()
        if any(keyword in lowered for keyword in _ITERATIVE_KEYWORDS):
            return True
        if not _MATH_OPERATOR.search(text):
            return False
        session_key = session_id or self.state.current_session_id
        session = self._sessions.get(session_key) if session_key else None
        if session is None:
            return False
        return any(
            message.role == "assistant" and _MATH_CONTENT.search(message.content)
            for message in session.messages
        )

    def increment_iteration(self, session_id: str | None = None) -> int:
        session = self._target(session_id)
        session.context_info.iteration_count += 1
        self._notify("context", session.session_id)
        return session.context_info.iteration_count

    def reset_iteration(self, session_id: str | None = None) -> None:
        session = self._target(session_id)
        session.context_info.iteration_count = 0
        self._notify("context", session.session_id)

    def build_context_prompt(self, user_input: str, session_id: str | None = None) -> str:
        """Summarize recent conversation state for tool selection."""
        session_key = session_id or self.state.current_session_id
        session = self._sessions.get(session_key) if session_key else None
        if session is None:
            return user_input

        recent_messages = session.messages[-3:]
        if recent_messages and (
            recent_messages[-1].role == "user"
            and recent_messages[-1].content == user_input
        ):
            recent_messages = recent_messages[:-1]

        lines = [f"User input: {user_input}", ""]
        if recent_messages:
            lines.append("Conversation:")
            lines.extend(
                f"- {message.role}: {_shorten(message.content, 80)}"
                for message in recent_messages
            )
            lines.append("")
        recent_operations = session.operations[-2:]
        if recent_operations:
            lines.append("Recent operations:")
            for operation in recent_operations:
                outcome = "ok" if operation.success else "failed"
                output = _shorten(operation.output or "done", 40)
                lines.append(
                    f"- {operation.kind}: {_shorten(operation.input, 40)} -> "
                    f"{output} ({outcome})"
                )
            lines.append("")
        if session.current_mode != "chat":
            lines.append(f"Current mode: {session.current_mode}")
        if session.context_info.iteration_count > 0:
            lines.append(f"Iteration: {session.context_info.iteration_count}")
        if session.context_info.last_operation_kind:
            lines.append(f"Last operation: {session.context_info.last_operation_kind}")
        if session.cached_image is not None:
            lines.append(f"Cached image: {session.cached_image.image_id}")
            if session.cached_image.prompt:
                lines.append(f"Cached prompt: {_shorten(session.cached_image.prompt, 50)}")

        prompt = "\n".join(lines)
        if len(prompt) > _CONTEXT_PROMPT_LIMIT:
            prompt = prompt[:_CONTEXT_PROMPT_LIMIT] + "\n...(context truncated)"
        return prompt + "\nInfer the user's intent from this context."

    # Observers

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener and return an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Internals

    def _write(
        self,
        message_id: str,
        patch: Callable[[Message], Message],
        session_id: str | None,
        *,
        kind: str,
    ) -> Message | None:
        found = self.find_message(message_id, session_id)
        if found is None:
            _logger.warning("Ignoring update for unknown message %s", message_id)
            return None
        session, message = found
        updated = patch(message)
        index = session.messages.index(message)
        session.messages[index] = updated
        self._refresh_snapshot(session)
        self._notify(kind, session.session_id)
        return updated

    def _set_current(self, session_id: str | None) -> None:
        self.state.current_session_id = session_id
        session = self._sessions.get(session_id) if session_id else None
        self.state.snapshot = list(session.messages) if session else []

    def _refresh_snapshot(self, session: Session) -> None:
        if session.session_id == self.state.current_session_id:
            self.state.snapshot = list(session.messages)

    def _target(self, session_id: str | None) -> Session:
        if session_id is not None:
            return self._require(session_id)
        return self._require(self.ensure_active_session())

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _notify(self, kind: str, session_id: str | None) -> None:
        change = StoreChange(kind=kind, session_id=session_id)
        for listener in list(self._listeners):
            listener(change)


def _shorten(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."
