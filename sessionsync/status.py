"""Connection status publishing with duplicate suppression."""

import logging
from typing import Callable, Optional

from sessionsync.events import StreamConnectionState, StreamStatus

logger = logging.getLogger(__name__)

StatusSink = Callable[[StreamStatus, Optional[str]], None]

_PREFIXES: dict[StreamStatus, str] = {
    StreamStatus.IDLE: "[IDLE]",
    StreamStatus.CONNECTING: "[CONNECT]",
    StreamStatus.CONNECTED: "[CONNECTED]",
    StreamStatus.RECONNECTING: "[RECONNECT]",
    StreamStatus.PAUSED: "[PAUSED]",
    StreamStatus.OFFLINE: "[OFFLINE]",
    StreamStatus.ERROR: "[ERROR]",
}


class StatusPublisher:
    """Writes status into the shared connection state and forwards it once."""

    def __init__(self, state: StreamConnectionState, sink: Optional[StatusSink] = None):
        self._state = state
        self._sink = sink
        self._last: Optional[tuple[StreamStatus, Optional[str]]] = None

    def publish(self, status: StreamStatus, hint: Optional[str] = None) -> bool:
        """Returns False when ``(status, hint)`` repeats the last publication."""
        current = (status, hint)
        if self._last == current:
            return False
        self._last = current

        self._state.status = status
        self._state.hint = hint

        if hint:
            logger.debug("%s stream %s: %s", _PREFIXES[status], status.value, hint)
        else:
            logger.debug("%s stream %s", _PREFIXES[status], status.value)

        if self._sink is not None:
            try:
                self._sink(status, hint)
            except Exception:
                logger.warning("Status sink failed", exc_info=True)
        return True

    def reset(self) -> None:
        self._last = None
