"""Small memo tables used by the dispatcher on its hot path."""

from collections import OrderedDict
from typing import Any, Callable, Optional, Sequence

from sessionsync.events import MessageRecord

_TEXT_CACHE_MAX = 512


def part_text(part: Any) -> Optional[str]:
    if not isinstance(part, dict):
        return None
    text = part.get("text")
    if text is None:
        text = part.get("content")
    return text if isinstance(text, str) else None


class TextLengthCache:
    """Total text length of a parts list, memoized by list identity.

    Stores treat parts lists as immutable snapshots, so a new list object is
    what signals new content. Entries keep a reference to their list so an
    ``id()`` is never reused while it is cached.
    """

    def __init__(self, maxsize: int = _TEXT_CACHE_MAX):
        self._entries: OrderedDict[int, tuple[Sequence[Any], int]] = OrderedDict()
        self._maxsize = maxsize

    def length_of(self, parts: Optional[Sequence[Any]]) -> int:
        if not parts or not isinstance(parts, (list, tuple)):
            return 0

        key = id(parts)
        entry = self._entries.get(key)
        if entry is not None and entry[0] is parts:
            self._entries.move_to_end(key)
            return entry[1]

        length = 0
        for part in parts:
            if isinstance(part, dict) and part.get("type") == "text":
                text = part_text(part)
                if text is not None:
                    length += len(text)

        self._entries[key] = (parts, length)
        self._entries.move_to_end(key)
        while len(self._entries) > self._maxsize:
            self._entries.popitem(last=False)
        return length

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class MessageLookup:
    """Read-through cache of (session, message) -> MessageRecord.

    Only hits are cached; a miss is re-read from the store next time because
    the record may be created by the very next event.
    """

    def __init__(self, read: Callable[[str, str], Optional[MessageRecord]]):
        self._read = read
        self._cache: dict[tuple[str, str], MessageRecord] = {}

    def get(self, session_id: str, message_id: str) -> Optional[MessageRecord]:
        key = (session_id, message_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        record = self._read(session_id, message_id)
        if record is not None:
            self._cache[key] = record
        return record

    def forget_session(self, session_id: str) -> None:
        for key in [k for k in self._cache if k[0] == session_id]:
            del self._cache[key]

    def clear(self) -> None:
        self._cache.clear()
