"""Event and state model for sessionsync."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class StreamStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    PAUSED = "paused"
    OFFLINE = "offline"
    ERROR = "error"


class SessionState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    RETRY = "retry"

    @property
    def active(self) -> bool:
        return self is not SessionState.IDLE


class EventType(str, Enum):
    # Connection / server lifecycle
    SERVER_CONNECTED = "server.connected"
    INSTANCE_DISPOSED = "server.instance.disposed"
    GLOBAL_DISPOSED = "global.disposed"
    TOOLS_CHANGED = "mcp.tools.changed"

    # Status
    SESSION_STATUS = "session.status"
    DERIVED_STATUS = "client:session-status"

    # Messages
    PART_UPDATED = "message.part.updated"
    MESSAGE_UPDATED = "message.updated"

    # Sessions
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    SESSION_DELETED = "session.deleted"
    SESSION_ABORT = "session.abort"
    SESSION_ERROR = "session.error"

    # Requests
    PERMISSION_ASKED = "permission.asked"
    PERMISSION_REPLIED = "permission.replied"
    QUESTION_ASKED = "question.asked"
    QUESTION_REPLIED = "question.replied"
    QUESTION_REJECTED = "question.rejected"

    # Misc
    NOTIFICATION = "client:notification"
    TODO_UPDATED = "todo.updated"

    # Meta
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> "EventType":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# Events that must not be read as evidence of fresh session metadata
NON_METADATA_EVENTS = frozenset({EventType.SESSION_ABORT, EventType.SESSION_ERROR})


@dataclass(slots=True)
class StreamEvent:
    """A decoded inbound event.

    ``raw_type`` keeps the wire name so unknown types can still be logged.
    """
    type: EventType
    properties: dict[str, Any]
    raw_type: str = ""


@dataclass
class StreamConnectionState:
    """Process-wide view of the realtime channel."""
    status: StreamStatus = StreamStatus.IDLE
    hint: Optional[str] = None
    reconnect_attempts: int = 0
    last_event_at: float = 0.0

    def reset(self, now: float = 0.0) -> None:
        self.status = StreamStatus.IDLE
        self.hint = None
        self.reconnect_attempts = 0
        self.last_event_at = now


@dataclass(frozen=True)
class SessionStatus:
    type: SessionState = SessionState.IDLE
    attempt: Optional[int] = None
    message: Optional[str] = None
    next: Optional[float] = None
    confirmed_at: Optional[float] = None

    @classmethod
    def busy(cls) -> "SessionStatus":
        return cls(SessionState.BUSY)

    @classmethod
    def idle(cls) -> "SessionStatus":
        return cls(SessionState.IDLE)


@dataclass(frozen=True)
class AttentionState:
    needs_attention: bool
    last_status_change_at: float
    status: SessionState
    last_user_message_at: Optional[float] = None
    is_viewed: bool = False


@dataclass
class MessageRecord:
    """A locally held message: the server's info dict plus its parts."""
    id: str
    role: str = "assistant"
    info: dict[str, Any] = field(default_factory=dict)
    parts: list[dict[str, Any]] = field(default_factory=list)
    streaming: bool = True

    @property
    def finish(self) -> Optional[str]:
        value = self.info.get("finish")
        return value if isinstance(value, str) else None

    @property
    def completed_at(self) -> Optional[float]:
        time_info = self.info.get("time")
        if isinstance(time_info, dict):
            completed = time_info.get("completed")
            if isinstance(completed, (int, float)) and not isinstance(completed, bool):
                return completed
        return None

    @property
    def created_at(self) -> Optional[float]:
        time_info = self.info.get("time")
        if isinstance(time_info, dict):
            created = time_info.get("created")
            if isinstance(created, (int, float)) and not isinstance(created, bool):
                return created
        return None


@dataclass(frozen=True)
class Prompt:
    """An actionable, user-facing nudge (e.g. "switch to session X")."""
    kind: str
    session_id: str
    title: str
    description: str = ""
    request_id: Optional[str] = None


@dataclass(frozen=True)
class Notice:
    title: str
    body: str = ""
    tag: Optional[str] = None
