"""Decoding of raw stream payloads.

Servers have shipped several shapes for the same logical fields over time
(``sessionID`` vs ``sessionId``, a status string vs a nested status object,
the message under ``info`` or inline). All of that permissiveness lives here
so the dispatcher only ever sees resolved values.

Also contains the line decoders used by feed sources: SSE framing and JSONL.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sessionsync.events import EventType, SessionState, SessionStatus, StreamEvent

logger = logging.getLogger(__name__)

SESSION_ID_KEYS = ("sessionID", "sessionId")
MESSAGE_ID_KEYS = ("messageID", "messageId")

# Synthetic user parts worth keeping in the transcript
KEPT_SYNTHETIC_PREFIXES = (
    "User has requested to enter plan mode",
    "The plan at ",
)

MODE_SWITCH_AGENTS = frozenset({"plan", "build"})
COMPLETED_STATUSES = frozenset({"completed", "complete"})


# ---------------------------------------------------------------------------
# Field readers
# ---------------------------------------------------------------------------

def as_dict(value: Any) -> Optional[dict]:
    return value if isinstance(value, dict) else None


def read_str(obj: Any, keys: tuple[str, ...] | list[str]) -> Optional[str]:
    """First non-empty string among ``keys``."""
    if not isinstance(obj, dict):
        return None
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def read_number(obj: Any, key: str) -> Optional[float]:
    if not isinstance(obj, dict):
        return None
    value = obj.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


# ---------------------------------------------------------------------------
# Event envelope
# ---------------------------------------------------------------------------

def decode_event(raw: Any) -> Optional[StreamEvent]:
    """Normalize a raw ``{type, properties[, directory]}`` envelope.

    Some transports wrap the event as ``{"directory": ..., "payload": {...}}``.
    A non-global directory is folded into the properties.
    """
    if not isinstance(raw, dict):
        return None

    payload = as_dict(raw.get("payload")) or raw
    raw_type = payload.get("type")
    if not isinstance(raw_type, str):
        raw_type = ""

    properties = dict(as_dict(payload.get("properties")) or {})
    directory = raw.get("directory")
    if isinstance(directory, str) and directory and directory != "global":
        properties["directory"] = directory

    return StreamEvent(type=EventType.parse(raw_type), properties=properties, raw_type=raw_type)


# ---------------------------------------------------------------------------
# Session payloads
# ---------------------------------------------------------------------------

def session_metadata_patch(props: dict) -> Optional[tuple[str, dict]]:
    """Title/summary carried by a session-shaped sub-object, if any."""
    session = as_dict(props.get("session")) or as_dict(props.get("sessionInfo"))
    if session is None:
        return None

    session_id = read_str(session, ("id", "sessionID")) or read_str(props, ("sessionID", "id"))
    if not session_id:
        return None

    patch: dict[str, Any] = {}
    title = session.get("title")
    if not isinstance(title, str):
        title = props.get("title")
    if isinstance(title, str):
        patch["title"] = title

    summary = as_dict(session.get("summary")) or as_dict(props.get("summary"))
    if summary is not None:
        patch["summary"] = summary

    if not patch:
        return None
    return session_id, patch


@dataclass(frozen=True)
class SessionUpsert:
    session: dict
    compacting: Optional[float]


def session_upsert(props: dict) -> Optional[SessionUpsert]:
    candidate = (
        as_dict(props.get("info"))
        or as_dict(props.get("sessionInfo"))
        or as_dict(props.get("session"))
        or props
    )
    session_id = read_str(candidate, ("id", "sessionID")) or read_str(props, ("sessionID", "id"))
    if not session_id:
        return None

    time_source = as_dict(candidate.get("time")) or as_dict(props.get("time"))
    compacting = read_number(time_source, "compacting") if time_source else None

    directory = read_str(candidate, ("directory",)) or read_str(props, ("directory",))
    session = dict(candidate)
    session["id"] = session_id
    if directory:
        session["directory"] = directory
    return SessionUpsert(session=session, compacting=compacting)


# ---------------------------------------------------------------------------
# Status payloads
# ---------------------------------------------------------------------------

def _status_type(props: dict) -> Optional[str]:
    raw = props.get("status")
    if isinstance(raw, str):
        return raw
    status_obj = as_dict(raw)
    if status_obj is not None:
        for key in ("type", "status"):
            value = status_obj.get(key)
            if isinstance(value, str):
                return value
    for key in ("type", "phase", "state"):
        value = props.get(key)
        if isinstance(value, str):
            return value
    return None


def _first_value(sources: list[Optional[dict]], key: str, kind: type | tuple) -> Any:
    for source in sources:
        if source is None:
            continue
        value = source.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, kind):
            return value
    return None


def build_status(status_type: str, sources: list[Optional[dict]]) -> SessionStatus:
    if status_type == "busy":
        return SessionStatus.busy()
    if status_type == "retry":
        return SessionStatus(
            SessionState.RETRY,
            attempt=_first_value(sources, "attempt", (int, float)),
            message=_first_value(sources, "message", str),
            next=_first_value(sources, "next", (int, float)),
        )
    return SessionStatus.idle()


def parse_session_status(props: dict) -> Optional[tuple[str, SessionStatus]]:
    session_id = read_str(props, SESSION_ID_KEYS)
    status_type = _status_type(props)
    if not session_id or not status_type:
        return None
    sources = [as_dict(props.get("status")), props, as_dict(props.get("metadata"))]
    return session_id, build_status(status_type, sources)


@dataclass(frozen=True)
class DerivedStatus:
    session_id: str
    status: SessionStatus
    raw_status: str
    needs_attention: bool
    timestamp: Optional[float]


def parse_derived_status(props: dict) -> Optional[DerivedStatus]:
    session_id = read_str(props, ("sessionId", "sessionID"))
    raw_status = props.get("status")
    if not session_id or not isinstance(raw_status, str) or not raw_status:
        return None
    status = build_status(raw_status, [as_dict(props.get("metadata"))])
    needs_attention = props.get("needsAttention")
    return DerivedStatus(
        session_id=session_id,
        status=status,
        raw_status=raw_status,
        needs_attention=needs_attention if isinstance(needs_attention, bool) else False,
        timestamp=read_number(props, "timestamp"),
    )


# ---------------------------------------------------------------------------
# Message payloads
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PartRef:
    part: dict
    session_id: Optional[str]
    message_id: Optional[str]
    role: Optional[str]


def resolve_part(props: dict) -> Optional[PartRef]:
    part = as_dict(props.get("part"))
    if part is None:
        return None
    info = as_dict(props.get("info")) or props
    session_id = (
        read_str(part, SESSION_ID_KEYS)
        or read_str(info, SESSION_ID_KEYS)
        or read_str(props, SESSION_ID_KEYS)
    )
    message_id = (
        read_str(part, MESSAGE_ID_KEYS)
        or read_str(info, MESSAGE_ID_KEYS + ("id",))
        or read_str(props, MESSAGE_ID_KEYS)
    )
    role = info.get("role")
    return PartRef(
        part=part,
        session_id=session_id,
        message_id=message_id,
        role=role if isinstance(role, str) else None,
    )


@dataclass(frozen=True)
class MessageRef:
    info: dict
    session_id: Optional[str]
    message_id: Optional[str]
    parts: list

    @property
    def role(self) -> Optional[str]:
        role = self.info.get("role")
        return role if isinstance(role, str) else None

    @property
    def finish(self) -> Optional[str]:
        finish = self.info.get("finish")
        return finish if isinstance(finish, str) else None

    @property
    def completed_at(self) -> Optional[float]:
        completed = read_number(as_dict(self.info.get("time")), "completed")
        if completed is None or completed != completed or completed in (float("inf"), float("-inf")):
            return None
        return completed

    @property
    def created_at(self) -> Optional[float]:
        return read_number(as_dict(self.info.get("time")), "created")

    @property
    def has_completed_status(self) -> bool:
        status = self.info.get("status")
        return isinstance(status, str) and status.lower() in COMPLETED_STATUSES


def resolve_message(props: dict) -> MessageRef:
    info = as_dict(props.get("info")) or props
    session_id = read_str(info, SESSION_ID_KEYS) or read_str(props, SESSION_ID_KEYS)
    message_id = read_str(info, MESSAGE_ID_KEYS + ("id",)) or read_str(props, MESSAGE_ID_KEYS)
    raw_parts = props.get("parts") or info.get("parts")
    parts = [p for p in raw_parts if isinstance(p, dict)] if isinstance(raw_parts, list) else []
    return MessageRef(info=info, session_id=session_id, message_id=message_id, parts=parts)


def normalize_part(part: dict, session_id: str, message_id: str) -> dict:
    enriched = dict(part)
    enriched["type"] = part.get("type") or "text"
    enriched["sessionID"] = part.get("sessionID") or session_id
    enriched["messageID"] = part.get("messageID") or message_id
    return enriched


def keep_synthetic_part(part: dict) -> bool:
    text = part.get("text")
    stripped = text.strip() if isinstance(text, str) else ""
    return stripped.startswith(KEPT_SYNTHETIC_PREFIXES)


def agent_candidate(info: dict) -> str:
    for key in ("agent", "mode"):
        value = info.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def is_streaming_part(part: dict) -> bool:
    """Whether an assistant part looks like work still in progress."""
    part_type = part.get("type") or "text"
    time_info = as_dict(part.get("time"))
    has_ended = read_number(time_info, "end") is not None

    if part_type == "tool":
        state = as_dict(part.get("state"))
        return bool(state) and state.get("status") in ("running", "pending")
    if part_type == "reasoning":
        return not has_ended
    if part_type == "text":
        text = part.get("text")
        return isinstance(text, str) and bool(text.strip()) and not has_ended
    if part_type == "step-start":
        return True
    return False


# ---------------------------------------------------------------------------
# Line decoders
# ---------------------------------------------------------------------------

class BaseDecoder:
    """Turns raw text lines into event envelopes."""

    def decode_line(self, line: str) -> Optional[dict]:
        raise NotImplementedError


def _load_json(data: str) -> Optional[dict]:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed event payload: %s", data[:80])
        return None
    return payload if isinstance(payload, dict) else None


class SSEDecoder(BaseDecoder):
    """Server-sent events framing.

    Format: ``event: <type>\\ndata: <json>\\n\\n``. When the JSON body has no
    ``type`` the SSE event name is used.
    """

    def __init__(self):
        self._event_type: Optional[str] = None
        self._data_lines: list[str] = []

    def decode_line(self, line: str) -> Optional[dict]:
        line = line.rstrip("\r\n")

        if line.startswith(":"):
            return None
        if line.startswith("event:"):
            self._event_type = line[6:].strip()
            return None
        if line.startswith("data:"):
            self._data_lines.append(line[5:].lstrip(" "))
            return None
        if line == "":
            if not self._data_lines:
                self._event_type = None
                return None
            data = "\n".join(self._data_lines)
            event_type = self._event_type
            self._event_type = None
            self._data_lines = []
            payload = _load_json(data)
            if payload is None:
                return None
            if event_type and "type" not in payload and "payload" not in payload:
                payload = {"type": event_type, "properties": payload}
            return payload
        return None


class JSONLDecoder(BaseDecoder):
    """One JSON envelope per line."""

    def decode_line(self, line: str) -> Optional[dict]:
        line = line.strip()
        if not line:
            return None
        return _load_json(line)


class AutoDecoder(BaseDecoder):
    """Pick SSE or JSONL from the first non-empty line."""

    def __init__(self):
        self._delegate: Optional[BaseDecoder] = None

    def decode_line(self, line: str) -> Optional[dict]:
        if self._delegate is None:
            stripped = line.strip()
            if not stripped:
                return None
            if stripped.startswith(("event:", "data:", ":")):
                self._delegate = SSEDecoder()
            else:
                self._delegate = JSONLDecoder()
        return self._delegate.decode_line(line)

    @property
    def detected_format(self) -> Optional[str]:
        if isinstance(self._delegate, SSEDecoder):
            return "sse"
        elif isinstance(self._delegate, JSONLDecoder):
            return "jsonl"
        return None


def create_decoder(fmt: str) -> BaseDecoder:
    """Create a decoder for the given feed format."""
    if fmt == "sse":
        return SSEDecoder()
    elif fmt == "jsonl":
        return JSONLDecoder()
    else:
        return AutoDecoder()
