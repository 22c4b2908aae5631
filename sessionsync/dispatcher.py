"""Event reconciliation: decide what each inbound event means for local state.

The dispatcher never reorders events. Out-of-order delivery is tolerated
instead by two rules: ids at or below a session's trimmed-head marker are
ignored, and assistant snapshots that would visibly shrink stored text are
ignored unless the server marks the message finished.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sessionsync.caches import MessageLookup, TextLengthCache
from sessionsync.config import SyncSettings
from sessionsync.events import (
    NON_METADATA_EVENTS,
    AttentionState,
    EventType,
    Prompt,
    SessionState,
    SessionStatus,
    StreamConnectionState,
    StreamEvent,
)
from sessionsync.ids import is_newer
from sessionsync.notify import Notifier
from sessionsync.payloads import (
    MODE_SWITCH_AGENTS,
    MessageRef,
    agent_candidate,
    as_dict,
    decode_event,
    is_streaming_part,
    keep_synthetic_part,
    normalize_part,
    parse_derived_status,
    parse_session_status,
    read_str,
    resolve_message,
    resolve_part,
    session_metadata_patch,
    session_upsert,
)
from sessionsync.resync import MetadataRefresher, ResyncCoordinator
from sessionsync.stall import StallDetector
from sessionsync.status import StatusSink
from sessionsync.store import Backend, SessionStore
from sessionsync.timers import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class Environment:
    """What the host tells us about where we are running."""
    visible: bool = True
    online: bool = True
    notifications_enabled: bool = True
    native_channel_active: bool = False

    @property
    def holdable(self) -> bool:
        return self.visible and self.online


@dataclass
class SyncHooks:
    """Outbound callbacks into the application."""
    on_status: Optional[StatusSink] = None
    on_prompt: Optional[Callable[[Prompt], None]] = None
    on_todos: Optional[Callable[[str, list], None]] = None
    on_event: Optional[Callable[[StreamEvent], None]] = None
    notifier: Optional[Notifier] = None


class EventDispatcher:
    def __init__(
        self,
        *,
        scheduler: Scheduler,
        store: SessionStore,
        backend: Backend,
        state: StreamConnectionState,
        settings: SyncSettings,
        resync: ResyncCoordinator,
        metadata: MetadataRefresher,
        stall: StallDetector,
        environment: Environment,
        hooks: Optional[SyncHooks] = None,
    ):
        self._scheduler = scheduler
        self._store = store
        self._backend = backend
        self._state = state
        self._settings = settings
        self._resync = resync
        self._metadata = metadata
        self._stall = stall
        self._env = environment
        self._hooks = hooks or SyncHooks()

        self.lookup = MessageLookup(store.get_message)
        self.text_lengths = TextLengthCache()

        self._hydrated: set[tuple[str, str]] = set()
        self._prompted: set[tuple[str, str, str]] = set()
        self._mode_notices: set[tuple[str, str, str]] = set()
        self._agent_selection: dict[str, tuple[float, str]] = {}

        self._handlers: dict[EventType, Callable[[dict], None]] = {
            EventType.SERVER_CONNECTED: self._on_server_connected,
            EventType.INSTANCE_DISPOSED: self._on_disposed,
            EventType.GLOBAL_DISPOSED: self._on_disposed,
            EventType.TOOLS_CHANGED: self._on_tools_changed,
            EventType.SESSION_STATUS: self._on_session_status,
            EventType.DERIVED_STATUS: self._on_derived_status,
            EventType.PART_UPDATED: self._on_part_updated,
            EventType.MESSAGE_UPDATED: self._on_message_updated,
            EventType.SESSION_CREATED: self._on_session_upsert,
            EventType.SESSION_UPDATED: self._on_session_upsert,
            EventType.SESSION_DELETED: self._on_session_deleted,
            EventType.SESSION_ABORT: self._on_session_abort,
            EventType.PERMISSION_ASKED: self._on_permission_asked,
            EventType.PERMISSION_REPLIED: self._on_permission_replied,
            EventType.QUESTION_ASKED: self._on_question_asked,
            EventType.QUESTION_REPLIED: self._on_question_resolved,
            EventType.QUESTION_REJECTED: self._on_question_resolved,
            EventType.NOTIFICATION: self._on_notification,
            EventType.TODO_UPDATED: self._on_todo_updated,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def handle(self, raw: Any) -> None:
        """Apply one inbound event. Never raises."""
        self._state.last_event_at = self._scheduler.now()

        event = raw if isinstance(raw, StreamEvent) else decode_event(raw)
        if event is None:
            logger.debug("Ignoring non-object event: %r", raw)
            return

        try:
            self._apply(event)
            if self._hooks.on_event is not None:
                self._hooks.on_event(event)
        except Exception:
            logger.warning("Failed to apply %s event", event.raw_type or event.type.value, exc_info=True)

    def _apply(self, event: StreamEvent) -> None:
        props = event.properties

        if event.type not in NON_METADATA_EVENTS:
            metadata = session_metadata_patch(props)
            if metadata is not None:
                self._store.apply_session_metadata(*metadata)

        handler = self._handlers.get(event.type)
        if handler is not None:
            handler(props)

    def reset(self) -> None:
        self.lookup.clear()
        self.text_lengths.clear()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _background(self, awaitable: Awaitable[Any], what: str) -> None:
        async def _run() -> None:
            try:
                await awaitable
            except Exception as e:
                logger.warning("%s failed: %s", what, e)

        self._scheduler.spawn(_run())

    def _is_trimmed(self, session_id: str, message_id: str) -> bool:
        marker = self._store.trimmed_head(session_id)
        return bool(marker) and not is_newer(message_id, marker)

    def _effective_directory(self) -> Optional[str]:
        session_id = self._store.current_session_id
        if not session_id:
            return None
        session = self._store.get_session(session_id)
        directory = session.get("directory") if session else None
        return directory.strip() if isinstance(directory, str) and directory.strip() else None

    @staticmethod
    def _directory(props: dict) -> Optional[str]:
        directory = props.get("directory")
        return directory if isinstance(directory, str) else None

    def forget_session(self, session_id: str) -> None:
        """Drop everything remembered about a deleted session."""
        self.lookup.forget_session(session_id)
        self._hydrated = {key for key in self._hydrated if key[0] != session_id}
        self._mode_notices = {key for key in self._mode_notices if key[0] != session_id}
        self._prompted = {key for key in self._prompted if key[1] != session_id}
        self._agent_selection.pop(session_id, None)

    def invalidate(self, session_id: str) -> None:
        self.lookup.forget_session(session_id)

    # ------------------------------------------------------------------
    # Session status
    # ------------------------------------------------------------------

    def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        source: str = "unknown",
        attention: Optional[AttentionState] = None,
    ) -> None:
        if not session_id:
            return

        previous = self._store.get_status(session_id)
        prev_type = previous.type if previous else SessionState.IDLE
        next_type = status.type

        if prev_type is not next_type:
            if next_type is SessionState.RETRY:
                logger.info(
                    "Session %s status %s -> %s (%s) attempt=%s next=%s message=%s",
                    session_id, prev_type.value, next_type.value, source,
                    status.attempt, status.next, status.message,
                )
            else:
                logger.info("Session %s status %s -> %s (%s)",
                            session_id, prev_type.value, next_type.value, source)

        self._stall.on_status_change(session_id, prev_type, next_type)

        if next_type is SessionState.IDLE:
            if previous is not None and previous.type is SessionState.IDLE and previous.confirmed_at is not None:
                confirmed_at = previous.confirmed_at
            else:
                confirmed_at = self._scheduler.now()
            record = dataclasses.replace(status, confirmed_at=confirmed_at)
        else:
            record = dataclasses.replace(status, confirmed_at=None)

        self._store.set_status(session_id, record, attention)

    def _on_session_status(self, props: dict) -> None:
        parsed = parse_session_status(props)
        if parsed is None:
            return
        session_id, status = parsed
        self.update_session_status(session_id, status, "sse:session.status")
        self._metadata.request(session_id, self._directory(props))

    def _on_derived_status(self, props: dict) -> None:
        derived = parse_derived_status(props)
        if derived is None:
            return

        existing = self._store.get_attention(derived.session_id)
        timestamp = derived.timestamp if derived.timestamp is not None else self._scheduler.wall_ms()
        attention = AttentionState(
            needs_attention=derived.needs_attention,
            last_status_change_at=timestamp,
            status=derived.status.type,
            last_user_message_at=existing.last_user_message_at if existing else None,
            is_viewed=existing.is_viewed if existing else False,
        )
        self.update_session_status(
            derived.session_id, derived.status, "sse:session-status", attention=attention,
        )

    # ------------------------------------------------------------------
    # Connection / capability events
    # ------------------------------------------------------------------

    def _on_server_connected(self, props: dict) -> None:
        self._background(self._backend.check_connection(), "Connection check")

    def _on_disposed(self, props: dict) -> None:
        self._scheduler.spawn(self._resync.bootstrap("server_disposed_event"))

    def _on_tools_changed(self, props: dict) -> None:
        directory = self._directory(props) or self._effective_directory()

        async def _refresh() -> None:
            try:
                await self._backend.refresh_capabilities(directory)
            except Exception as e:
                logger.debug("Capability refresh failed: %s", e)

        self._scheduler.spawn(_refresh())

    # ------------------------------------------------------------------
    # Parts
    # ------------------------------------------------------------------

    def _on_part_updated(self, props: dict) -> None:
        ref = resolve_part(props)
        if ref is None:
            return
        if not ref.session_id or not ref.message_id:
            logger.debug(
                "Skipping message.part.updated without resolvable session/message id "
                "(session=%s, message=%s)", ref.session_id, ref.message_id,
            )
            return

        session_id, message_id = ref.session_id, ref.message_id
        self._stall.note_message(session_id)

        if self._is_trimmed(session_id, message_id):
            logger.debug("Skipping part for trimmed message %s in %s", message_id, session_id)
            return

        role = ref.role
        if role is None:
            existing = self.lookup.get(session_id, message_id)
            role = existing.role if existing is not None else "assistant"

        if role == "user" and ref.part.get("synthetic") is True:
            logger.debug("Skipping synthetic user part for %s", message_id)
            return

        part = dict(ref.part)
        part["type"] = part.get("type") or "text"

        if role == "assistant" and is_streaming_part(part):
            self._infer_busy(session_id)

        self._store.add_part(session_id, message_id, part, role)

    def _infer_busy(self, session_id: str) -> None:
        current = self._store.get_status(session_id)
        if current is not None and current.type is not SessionState.IDLE:
            return
        if (
            current is not None
            and current.confirmed_at is not None
            and self._scheduler.now() - current.confirmed_at < self._settings.idle_confirm_grace
        ):
            return
        self.update_session_status(session_id, SessionStatus.busy(), "sse:message.part.updated")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _on_message_updated(self, props: dict) -> None:
        ref = resolve_message(props)
        if not ref.session_id or not ref.message_id:
            logger.debug(
                "Skipping message.updated without resolvable session/message id "
                "(session=%s, message=%s)", ref.session_id, ref.message_id,
            )
            return

        session_id, message_id = ref.session_id, ref.message_id
        self._stall.note_message(session_id)

        if self._is_trimmed(session_id, message_id):
            logger.debug("Skipping update for trimmed message %s in %s", message_id, session_id)
            return

        if ref.role == "user":
            self._apply_user_message(ref, session_id, message_id)
            return

        existing = self.lookup.get(session_id, message_id)
        existing_len = self.text_lengths.length_of(existing.parts if existing else None)
        existing_stop = existing is not None and existing.finish == "stop"
        existing_completed = existing.completed_at if existing is not None else None

        has_parts = bool(ref.parts)
        completed_at = ref.completed_at
        has_completed_status = ref.has_completed_status
        event_stop = ref.finish == "stop"

        if not (has_parts or completed_at is not None or has_completed_status or event_stop):
            return

        if has_parts and not event_stop:
            incoming_len = self.text_lengths.length_of(ref.parts)
            if existing_len > 0 and incoming_len + self._settings.text_shrink_tolerance < existing_len:
                logger.debug(
                    "Skipping shrinking update for %s (%d < %d)", message_id, incoming_len, existing_len,
                )
                return

        role = ref.role or (existing.role if existing is not None else "assistant")

        self._store.update_message_info(session_id, message_id, ref.info)
        for part in ref.parts:
            self._store.add_part(session_id, message_id, normalize_part(part, session_id, message_id), role)

        if role == "assistant" and (
            completed_at is not None or has_completed_status or event_stop or existing_stop
        ):
            self._finalize(
                ref, session_id, message_id, completed_at if completed_at is not None else existing_completed,
                self._directory(props),
            )

    def _finalize(
        self,
        ref: MessageRef,
        session_id: str,
        message_id: str,
        completed_at: Optional[float],
        directory: Optional[str],
    ) -> None:
        record = self.lookup.get(session_id, message_id)
        stamp = completed_at if completed_at is not None else self._scheduler.wall_ms()
        # A replay without its own timestamp keeps the first completion time.
        if record is None or record.completed_at != stamp:
            time_info = dict(as_dict(record.info.get("time")) or {}) if record is not None else {}
            time_info["completed"] = stamp
            self._store.update_message_info(session_id, message_id, {"time": time_info})

        self._store.save_cursor(session_id, message_id, stamp)
        self._store.complete_message(session_id, message_id)
        self.update_session_status(session_id, SessionStatus.idle(), "sse:message.updated.completed")

        message_session = read_str(ref.info, ("sessionID",)) or session_id
        is_active = self._store.current_session_id == session_id
        if not is_active or message_id == self._latest_assistant_id(session_id):
            self._metadata.request(message_session, directory)

        if ref.info.get("summary") is True:
            self._store.set_compaction(message_session, None)

    def _latest_assistant_id(self, session_id: str) -> Optional[str]:
        latest: Optional[str] = None
        for message in self._store.messages(session_id):
            if message.role == "assistant" and (latest is None or message.id > latest):
                latest = message.id
        return latest

    def _apply_user_message(self, ref: MessageRef, session_id: str, message_id: str) -> None:
        self._store.mark_user_message(session_id, self._scheduler.wall_ms())

        parts = ref.parts
        existing = self.lookup.get(session_id, message_id)
        agent = agent_candidate(ref.info)
        created = ref.created_at
        synthetic_only = bool(parts) and all(p.get("synthetic") is True for p in parts)
        mode_switch = synthetic_only and agent in MODE_SWITCH_AGENTS

        if agent and self._should_apply_selection(session_id, message_id, created, mode_switch):
            self._apply_agent_selection(session_id, message_id, agent, created, ref.info)

        if mode_switch and self._store.current_session_id == session_id:
            self._mode_notice(session_id, message_id, agent)

        info = {**ref.info, "userMessageMarker": True, "clientRole": "user"}
        if agent:
            info["mode"] = agent
        self._store.update_message_info(session_id, message_id, info)

        if existing is None and not parts:
            self._hydrate(session_id, message_id)

        for part in parts:
            if part.get("synthetic") is True and not keep_synthetic_part(part):
                continue
            self._store.add_part(session_id, message_id, normalize_part(part, session_id, message_id), "user")

    def _should_apply_selection(
        self, session_id: str, message_id: str, created: Optional[float], mode_switch: bool,
    ) -> bool:
        if mode_switch:
            return True
        last = self._agent_selection.get(session_id)
        if last is None:
            return True
        # Without a timestamp a replay can never override a recorded selection.
        if created is None:
            return False
        last_created, last_message_id = last
        if message_id == last_message_id:
            return True
        return created >= last_created

    def _apply_agent_selection(
        self, session_id: str, message_id: str, agent: str, created: Optional[float], info: dict,
    ) -> None:
        if agent not in self._store.known_agents():
            return

        is_active = self._store.current_session_id == session_id
        self._store.save_agent_selection(session_id, agent)
        self._agent_selection[session_id] = (
            created if created is not None else self._scheduler.wall_ms(),
            message_id,
        )
        if is_active:
            self._store.set_active_agent(agent)

        model = as_dict(info.get("model"))
        provider_id = read_str(model, ("providerID",))
        model_id = read_str(model, ("modelID",))
        if provider_id and model_id:
            variant = read_str(info, ("variant",))
            self._store.save_model_selection(session_id, agent, provider_id, model_id, variant)
            if is_active:
                self._store.set_active_model(provider_id, model_id)

    def _mode_notice(self, session_id: str, message_id: str, agent: str) -> None:
        key = (session_id, message_id, agent)
        if key in self._mode_notices or self._hooks.on_prompt is None:
            return
        self._mode_notices.add(key)
        if agent == "plan":
            prompt = Prompt("mode", session_id, "Plan mode active", "Edits restricted to plan file")
        else:
            prompt = Prompt("mode", session_id, "Build mode active", "You can now edit files")
        self._hooks.on_prompt(prompt)

    def _hydrate(self, session_id: str, message_id: str) -> None:
        key = (session_id, message_id)
        if key in self._hydrated:
            return
        self._hydrated.add(key)

        async def _fetch() -> None:
            try:
                messages = await self._backend.fetch_messages(session_id, self._settings.hydration_limit)
            except Exception as e:
                logger.warning("Failed to hydrate user message %s: %s", message_id, e)
                return
            self._store.sync_messages(session_id, messages)
            self.lookup.forget_session(session_id)

        self._scheduler.spawn(_fetch())

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _on_session_upsert(self, props: dict) -> None:
        upsert = session_upsert(props)
        if upsert is None:
            return
        session_id = upsert.session["id"]
        self._store.set_compaction(session_id, upsert.compacting)
        self._store.upsert_session(upsert.session)

    def _on_session_deleted(self, props: dict) -> None:
        session_id = read_str(as_dict(props.get("info")), ("id",)) or read_str(props, ("sessionID", "id"))
        if not session_id:
            return
        self._stall.forget_session(session_id)
        self._metadata.forget_session(session_id)
        self.forget_session(session_id)
        self._store.remove_session(session_id)

    def _on_session_abort(self, props: dict) -> None:
        session_id = read_str(props, ("sessionID",))
        message_id = read_str(props, ("messageID",))
        if session_id:
            self.update_session_status(session_id, SessionStatus.idle(), "sse:session.abort")
        if session_id and message_id:
            self._store.complete_message(session_id, message_id)

    # ------------------------------------------------------------------
    # Permission / question requests
    # ------------------------------------------------------------------

    def _on_permission_asked(self, props: dict) -> None:
        if not isinstance(props.get("sessionID"), str):
            return
        request = dict(props)
        self._store.add_permission(request)
        self._prompt_when_elsewhere("permission", request, self._store.has_permission, "Permission required")

    def _on_permission_replied(self, props: dict) -> None:
        session_id = read_str(props, ("sessionID",))
        request_id = read_str(props, ("requestID", "permissionID", "id"))
        if session_id and request_id:
            self._store.remove_permission(session_id, request_id)

    def _on_question_asked(self, props: dict) -> None:
        if not isinstance(props.get("sessionID"), str):
            return
        request = dict(props)
        self._store.add_question(request)
        self._prompt_when_elsewhere("question", request, self._store.has_question, "Input needed")

    def _on_question_resolved(self, props: dict) -> None:
        session_id = read_str(props, ("sessionID",))
        request_id = read_str(props, ("requestID",))
        if session_id and request_id:
            self._store.remove_question(session_id, request_id)

    def _prompt_when_elsewhere(
        self,
        kind: str,
        request: dict,
        is_pending: Callable[[str, str], bool],
        title: str,
    ) -> None:
        session_id = request["sessionID"]
        request_id = str(request.get("id"))
        key = (kind, session_id, request_id)
        if key in self._prompted:
            return

        def _check() -> None:
            if key in self._prompted:
                return
            if self._store.current_session_id == session_id:
                return
            if not is_pending(session_id, request_id):
                return
            self._prompted.add(key)

            session = self._store.get_session(session_id)
            session_title = (session or {}).get("title") or "Session"
            if self._hooks.on_prompt is not None:
                self._hooks.on_prompt(Prompt(kind, session_id, title, session_title, request_id))

        self._scheduler.call_later(0, _check)

    # ------------------------------------------------------------------
    # Notifications / todos
    # ------------------------------------------------------------------

    def _on_notification(self, props: dict) -> None:
        title = props.get("title") if isinstance(props.get("title"), str) else ""
        body = props.get("body") if isinstance(props.get("body"), str) else ""
        tag = props.get("tag") if isinstance(props.get("tag"), str) else None

        if bool(props.get("requireHidden")) and self._env.visible:
            return
        if self._env.native_channel_active and bool(props.get("desktopStdoutActive")):
            return
        if not self._env.notifications_enabled:
            return

        notifier = self._hooks.notifier
        if notifier is not None and title:
            notifier.notify(title, body, tag)

    def _on_todo_updated(self, props: dict) -> None:
        session_id = read_str(props, ("sessionID",))
        todos = props.get("todos")
        if session_id and isinstance(todos, list) and self._hooks.on_todos is not None:
            self._hooks.on_todos(session_id, todos)
