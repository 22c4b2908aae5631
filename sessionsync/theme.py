"""sessionsync theme - colors, icons and rendering."""

from datetime import datetime
from typing import Optional

from rich.text import Text

from sessionsync.events import EventType, SessionState, SessionStatus, StreamEvent, StreamStatus
from sessionsync.payloads import read_str, resolve_message, resolve_part

# ---------------------------------------------------------------------------
# Colors
# ---------------------------------------------------------------------------

ACCENT = "#818cf8"              # Indigo (for UI chrome)
TEXT_DIM = "#94a3b8"
SYSTEM_PRIMARY = "#64748b"      # Slate
SYSTEM_DIM = "#475569"
SEPARATOR = "dim #3a3a5c"

STATUS_STYLE: dict[StreamStatus, str] = {
    StreamStatus.IDLE: SYSTEM_PRIMARY,
    StreamStatus.CONNECTING: "#fbbf24",
    StreamStatus.CONNECTED: "#4ade80",
    StreamStatus.RECONNECTING: "#f97316",
    StreamStatus.PAUSED: "#60a5fa",
    StreamStatus.OFFLINE: "#ef4444",
    StreamStatus.ERROR: "#ef4444",
}

SESSION_STYLE: dict[SessionState, str] = {
    SessionState.IDLE: SYSTEM_PRIMARY,
    SessionState.BUSY: "#a78bfa",
    SessionState.RETRY: "#f97316",
}

EVENT_STYLE: dict[EventType, str] = {
    EventType.SESSION_STATUS: "#a78bfa",
    EventType.DERIVED_STATUS: "#a78bfa",
    EventType.PART_UPDATED: "#e2e8f0",
    EventType.MESSAGE_UPDATED: "#22d3ee",
    EventType.SESSION_ABORT: "#ef4444",
    EventType.SESSION_ERROR: "#ef4444",
    EventType.PERMISSION_ASKED: "#fbbf24",
    EventType.QUESTION_ASKED: "#fbbf24",
    EventType.NOTIFICATION: "#c084fc",
    EventType.TODO_UPDATED: "#34d399",
}

# ---------------------------------------------------------------------------
# Icons
# ---------------------------------------------------------------------------

STATUS_ICONS: dict[StreamStatus, str] = {
    StreamStatus.IDLE: "..",
    StreamStatus.CONNECTING: "->",
    StreamStatus.CONNECTED: "OK",
    StreamStatus.RECONNECTING: "~~",
    StreamStatus.PAUSED: "||",
    StreamStatus.OFFLINE: "xx",
    StreamStatus.ERROR: "!!",
}

EVENT_ICONS: dict[EventType, str] = {
    EventType.SERVER_CONNECTED: "::",
    EventType.INSTANCE_DISPOSED: "::",
    EventType.GLOBAL_DISPOSED: "::",
    EventType.TOOLS_CHANGED: "{}",
    EventType.SESSION_STATUS: "<>",
    EventType.DERIVED_STATUS: "<>",
    EventType.PART_UPDATED: ">>",
    EventType.MESSAGE_UPDATED: "[]",
    EventType.SESSION_CREATED: "+ ",
    EventType.SESSION_UPDATED: "~ ",
    EventType.SESSION_DELETED: "- ",
    EventType.SESSION_ABORT: "!!",
    EventType.SESSION_ERROR: "!!",
    EventType.PERMISSION_ASKED: "??",
    EventType.PERMISSION_REPLIED: "OK",
    EventType.QUESTION_ASKED: "??",
    EventType.QUESTION_REPLIED: "OK",
    EventType.QUESTION_REJECTED: "xx",
    EventType.NOTIFICATION: "**",
    EventType.TODO_UPDATED: "[]",
    EventType.UNKNOWN: "  ",
}

# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def short_id(value: Optional[str], width: int = 8) -> str:
    if not value:
        return "-"
    _, _, suffix = value.partition("_")
    return (suffix or value)[-width:]


def describe_event(event: StreamEvent) -> tuple[Optional[str], str]:
    """The session an event concerns and a one-line summary of it."""
    props = event.properties

    if event.type is EventType.PART_UPDATED:
        ref = resolve_part(props)
        if ref is None:
            return None, ""
        text = ref.part.get("text") or ref.part.get("tool") or ref.part.get("type") or ""
        return ref.session_id, str(text).replace("\n", " ")[-80:]

    if event.type is EventType.MESSAGE_UPDATED:
        ref = resolve_message(props)
        label = ref.role or "message"
        if ref.finish:
            label += f" ({ref.finish})"
        return ref.session_id, f"{label} {short_id(ref.message_id)}"

    if event.type in (EventType.SESSION_STATUS, EventType.DERIVED_STATUS):
        status = props.get("status")
        if isinstance(status, dict):
            status = status.get("type")
        return read_str(props, ("sessionID", "sessionId")), str(status or "")

    session = props.get("info") if isinstance(props.get("info"), dict) else props
    session_id = read_str(props, ("sessionID",)) or read_str(session, ("id",))
    title = read_str(props, ("title",)) or read_str(session, ("title",)) or ""
    return session_id, title


def render_event(event: StreamEvent, when: Optional[datetime] = None) -> Text:
    """Render an applied StreamEvent as a styled Rich Text line."""
    icon = EVENT_ICONS.get(event.type, "  ")
    content_color = EVENT_STYLE.get(event.type, TEXT_DIM)
    ts = (when or datetime.now()).strftime("%H:%M:%S")
    session_id, summary = describe_event(event)

    line = Text()
    line.append(f" {ts} ", style=f"dim {SYSTEM_DIM}")
    line.append(" | ", style=SEPARATOR)
    line.append(icon, style=f"bold {content_color}")
    line.append(f" {short_id(session_id):8s}", style=f"bold {ACCENT}")
    line.append(" | ", style=SEPARATOR)
    line.append(f"{(event.raw_type or event.type.value):22s}", style=SYSTEM_PRIMARY)
    line.append("  ")
    line.append(summary, style=content_color)
    return line


def render_status(status: StreamStatus, hint: Optional[str] = None) -> Text:
    """Render a connection status, e.g. ``OK connected`` or ``~~ reconnecting (Retrying (2))``."""
    color = STATUS_STYLE.get(status, TEXT_DIM)
    line = Text()
    line.append(STATUS_ICONS.get(status, "  "), style=f"bold {color}")
    line.append(f" {status.value}", style=f"bold {color}")
    if hint:
        line.append(f"  {hint}", style=f"italic {TEXT_DIM}")
    return line


def render_session(session: dict, status: Optional[SessionStatus]) -> Text:
    state = status.type if status else SessionState.IDLE
    color = SESSION_STYLE.get(state, TEXT_DIM)
    title = session.get("title") or short_id(session.get("id"))

    line = Text()
    line.append("● " if state.active else "○ ", style=color)
    line.append(str(title)[:28], style="bold #e2e8f0" if state.active else TEXT_DIM)
    if state is SessionState.RETRY and status is not None and status.attempt:
        line.append(f" retry {status.attempt}", style=color)
    return line
