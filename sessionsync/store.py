"""The boundary between the sync core and the application's state.

``SessionStore`` is the local, UI-facing state the dispatcher mutates.
``Backend`` is the remote side: history fetches, health probes and the other
calls the core makes outside the event stream. ``MemoryStore`` is a plain
in-process implementation of the store used by the CLI monitor and tests.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from sessionsync.events import AttentionState, MessageRecord, SessionStatus


class SessionStore(Protocol):
    current_session_id: Optional[str]

    # Messages
    def get_message(self, session_id: str, message_id: str) -> Optional[MessageRecord]: ...
    def messages(self, session_id: str) -> list[MessageRecord]: ...
    def add_part(self, session_id: str, message_id: str, part: dict, role: str) -> None: ...
    def update_message_info(self, session_id: str, message_id: str, info: dict) -> None: ...
    def complete_message(self, session_id: str, message_id: str) -> None: ...
    def sync_messages(self, session_id: str, messages: list[dict]) -> None: ...
    def save_cursor(self, session_id: str, message_id: str, completed_at: float) -> None: ...

    # Sessions
    def get_session(self, session_id: str) -> Optional[dict]: ...
    def upsert_session(self, session: dict) -> None: ...
    def remove_session(self, session_id: str) -> None: ...
    def replace_sessions(self, sessions: list[dict]) -> None: ...
    def apply_session_metadata(self, session_id: str, patch: dict) -> None: ...
    def set_compaction(self, session_id: str, timestamp: Optional[float]) -> None: ...

    # Status
    def get_status(self, session_id: str) -> Optional[SessionStatus]: ...
    def statuses(self) -> dict[str, SessionStatus]: ...
    def set_status(
        self,
        session_id: str,
        status: SessionStatus,
        attention: Optional[AttentionState] = None,
    ) -> None: ...
    def get_attention(self, session_id: str) -> Optional[AttentionState]: ...

    # Session memory
    def trimmed_head(self, session_id: str) -> Optional[str]: ...
    def streaming_cooldown_until(self, session_id: str) -> Optional[float]: ...
    def mark_user_message(self, session_id: str, at: float) -> None: ...

    # Requests
    def add_permission(self, request: dict) -> None: ...
    def remove_permission(self, session_id: str, request_id: str) -> None: ...
    def has_permission(self, session_id: str, request_id: str) -> bool: ...
    def add_question(self, request: dict) -> None: ...
    def remove_question(self, session_id: str, request_id: str) -> None: ...
    def has_question(self, session_id: str, request_id: str) -> bool: ...

    # Agent / model selection
    def known_agents(self) -> list[str]: ...
    def save_agent_selection(self, session_id: str, agent: str) -> None: ...
    def save_model_selection(
        self, session_id: str, agent: str, provider_id: str, model_id: str,
        variant: Optional[str] = None,
    ) -> None: ...
    def set_active_agent(self, agent: str) -> None: ...
    def set_active_model(self, provider_id: str, model_id: str) -> None: ...


class Backend(Protocol):
    async def fetch_messages(self, session_id: str, limit: int) -> list[dict]: ...
    async def fetch_sessions(self) -> list[dict]: ...
    async def fetch_session(self, session_id: str, directory: Optional[str] = None) -> Optional[dict]: ...
    async def check_health(self) -> bool: ...
    async def check_connection(self) -> None: ...
    async def poll_session_status(self) -> None: ...
    async def refresh_capabilities(self, directory: Optional[str]) -> None: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

@dataclass
class SessionMemory:
    trimmed_head: Optional[str] = None
    streaming_cooldown_until: Optional[float] = None
    last_user_message_at: Optional[float] = None
    cursor: Optional[tuple[str, float]] = None


@dataclass
class AgentSelection:
    agent: Optional[str] = None
    models: dict[str, tuple[str, str, Optional[str]]] = field(default_factory=dict)


class MemoryStore:
    """Dict-backed SessionStore.

    Parts lists are replaced rather than mutated so identity-keyed caches see
    every change.
    """

    def __init__(self, agents: Optional[list[str]] = None):
        self.current_session_id: Optional[str] = None
        self.sessions: dict[str, dict] = {}
        self.compaction: dict[str, Optional[float]] = {}
        self.message_records: dict[str, dict[str, MessageRecord]] = defaultdict(dict)
        self.status_records: dict[str, SessionStatus] = {}
        self.attention: dict[str, AttentionState] = {}
        self.memory: dict[str, SessionMemory] = defaultdict(SessionMemory)
        self.permissions: dict[str, dict[str, dict]] = defaultdict(dict)
        self.questions: dict[str, dict[str, dict]] = defaultdict(dict)
        self.agents: list[str] = list(agents or [])
        self.selections: dict[str, AgentSelection] = defaultdict(AgentSelection)
        self.active_agent: Optional[str] = None
        self.active_model: Optional[tuple[str, str]] = None

    # -- Messages -----------------------------------------------------------

    def get_message(self, session_id: str, message_id: str) -> Optional[MessageRecord]:
        return self.message_records.get(session_id, {}).get(message_id)

    def messages(self, session_id: str) -> list[MessageRecord]:
        return sorted(self.message_records.get(session_id, {}).values(), key=lambda m: m.id)

    def _ensure_message(self, session_id: str, message_id: str, role: str) -> MessageRecord:
        records = self.message_records[session_id]
        record = records.get(message_id)
        if record is None:
            record = MessageRecord(id=message_id, role=role, info={"id": message_id, "role": role})
            records[message_id] = record
        return record

    def add_part(self, session_id: str, message_id: str, part: dict, role: str) -> None:
        record = self._ensure_message(session_id, message_id, role)
        parts = list(record.parts)
        part_id = part.get("id")
        for index, existing in enumerate(parts):
            if part_id is not None and existing.get("id") == part_id:
                parts[index] = {**existing, **part}
                break
        else:
            parts.append(dict(part))
        record.parts = parts

    def update_message_info(self, session_id: str, message_id: str, info: dict) -> None:
        role = info.get("role") if isinstance(info.get("role"), str) else "assistant"
        record = self._ensure_message(session_id, message_id, role)
        merged = {**record.info, **{k: v for k, v in info.items() if k != "parts"}}
        merged["id"] = message_id
        record.info = merged
        record.role = merged.get("role", record.role)

    def complete_message(self, session_id: str, message_id: str) -> None:
        record = self.get_message(session_id, message_id)
        if record is not None:
            record.streaming = False

    def sync_messages(self, session_id: str, messages: list[dict]) -> None:
        records = self.message_records[session_id]
        for entry in messages:
            info = entry.get("info") if isinstance(entry.get("info"), dict) else entry
            message_id = info.get("id")
            if not isinstance(message_id, str):
                continue
            role = info.get("role") if isinstance(info.get("role"), str) else "assistant"
            record = records.get(message_id)
            if record is None:
                record = MessageRecord(id=message_id, role=role)
                records[message_id] = record
            record.info = {k: v for k, v in info.items() if k != "parts"}
            record.role = role
            parts = entry.get("parts")
            if isinstance(parts, list):
                record.parts = [dict(p) for p in parts if isinstance(p, dict)]
            record.streaming = record.completed_at is None and role == "assistant"

    def save_cursor(self, session_id: str, message_id: str, completed_at: float) -> None:
        self.memory[session_id].cursor = (message_id, completed_at)

    # -- Sessions -----------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[dict]:
        return self.sessions.get(session_id)

    def upsert_session(self, session: dict) -> None:
        session_id = session["id"]
        self.sessions[session_id] = {**self.sessions.get(session_id, {}), **session}

    def remove_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)
        self.message_records.pop(session_id, None)
        self.status_records.pop(session_id, None)
        self.attention.pop(session_id, None)
        self.compaction.pop(session_id, None)
        self.memory.pop(session_id, None)
        self.permissions.pop(session_id, None)
        self.questions.pop(session_id, None)
        self.selections.pop(session_id, None)

    def replace_sessions(self, sessions: list[dict]) -> None:
        self.sessions = {s["id"]: dict(s) for s in sessions if isinstance(s.get("id"), str)}

    def apply_session_metadata(self, session_id: str, patch: dict) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        self.sessions[session_id] = {**session, **patch}

    def set_compaction(self, session_id: str, timestamp: Optional[float]) -> None:
        self.compaction[session_id] = timestamp

    # -- Status -------------------------------------------------------------

    def get_status(self, session_id: str) -> Optional[SessionStatus]:
        return self.status_records.get(session_id)

    def statuses(self) -> dict[str, SessionStatus]:
        return dict(self.status_records)

    def set_status(
        self,
        session_id: str,
        status: SessionStatus,
        attention: Optional[AttentionState] = None,
    ) -> None:
        self.status_records[session_id] = status
        if attention is not None:
            self.attention[session_id] = attention

    def get_attention(self, session_id: str) -> Optional[AttentionState]:
        return self.attention.get(session_id)

    # -- Session memory -----------------------------------------------------

    def trimmed_head(self, session_id: str) -> Optional[str]:
        memory = self.memory.get(session_id)
        return memory.trimmed_head if memory else None

    def set_trimmed_head(self, session_id: str, message_id: Optional[str]) -> None:
        self.memory[session_id].trimmed_head = message_id

    def streaming_cooldown_until(self, session_id: str) -> Optional[float]:
        memory = self.memory.get(session_id)
        return memory.streaming_cooldown_until if memory else None

    def set_streaming_cooldown(self, session_id: str, until: Optional[float]) -> None:
        self.memory[session_id].streaming_cooldown_until = until

    def mark_user_message(self, session_id: str, at: float) -> None:
        memory = self.memory.get(session_id)
        if memory is not None:
            memory.last_user_message_at = at

    # -- Requests -----------------------------------------------------------

    def add_permission(self, request: dict) -> None:
        self.permissions[request["sessionID"]][str(request.get("id"))] = request

    def remove_permission(self, session_id: str, request_id: str) -> None:
        self.permissions.get(session_id, {}).pop(request_id, None)

    def has_permission(self, session_id: str, request_id: str) -> bool:
        return request_id in self.permissions.get(session_id, {})

    def add_question(self, request: dict) -> None:
        self.questions[request["sessionID"]][str(request.get("id"))] = request

    def remove_question(self, session_id: str, request_id: str) -> None:
        self.questions.get(session_id, {}).pop(request_id, None)

    def has_question(self, session_id: str, request_id: str) -> bool:
        return request_id in self.questions.get(session_id, {})

    # -- Agent / model selection -------------------------------------------

    def known_agents(self) -> list[str]:
        return list(self.agents)

    def save_agent_selection(self, session_id: str, agent: str) -> None:
        self.selections[session_id].agent = agent

    def save_model_selection(
        self, session_id: str, agent: str, provider_id: str, model_id: str,
        variant: Optional[str] = None,
    ) -> None:
        self.selections[session_id].models[agent] = (provider_id, model_id, variant)

    def set_active_agent(self, agent: str) -> None:
        self.active_agent = agent

    def set_active_model(self, provider_id: str, model_id: str) -> None:
        self.active_model = (provider_id, model_id)

    def agent_for(self, session_id: str) -> Optional[str]:
        selection = self.selections.get(session_id)
        return selection.agent if selection else None

    def summary(self) -> dict[str, Any]:
        return {
            "sessions": len(self.sessions),
            "messages": sum(len(v) for v in self.message_records.values()),
            "busy": sum(1 for s in self.status_records.values() if s.type.active),
        }


class LocalBackend:
    """Backend answered from a MemoryStore, for feeds with no server behind them."""

    def __init__(self, store: MemoryStore):
        self.store = store
        self.health_checks = 0

    async def fetch_messages(self, session_id: str, limit: int) -> list[dict]:
        records = self.store.messages(session_id)[-limit:]
        return [{"info": dict(r.info), "parts": list(r.parts)} for r in records]

    async def fetch_sessions(self) -> list[dict]:
        return list(self.store.sessions.values())

    async def fetch_session(self, session_id: str, directory: Optional[str] = None) -> Optional[dict]:
        return self.store.get_session(session_id)

    async def check_health(self) -> bool:
        self.health_checks += 1
        return True

    async def check_connection(self) -> None:
        return None

    async def poll_session_status(self) -> None:
        return None

    async def refresh_capabilities(self, directory: Optional[str]) -> None:
        return None
