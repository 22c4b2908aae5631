"""Per-session watchdog for sessions that report busy but stream nothing.

Status and message content arrive on independent channels. A busy status
with no message traffic behind it usually means an update was lost, so after
a short grace period the session is resynced and the stream reconnected.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from sessionsync.config import SyncSettings
from sessionsync.events import SessionState
from sessionsync.store import SessionStore
from sessionsync.timers import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

RecoverCallback = Callable[[str], None]


class StallDetector:
    def __init__(
        self,
        scheduler: Scheduler,
        store: SessionStore,
        settings: SyncSettings,
        recover: Optional[RecoverCallback] = None,
    ):
        self._scheduler = scheduler
        self._store = store
        self._settings = settings
        self.recover = recover
        self._timers: dict[str, TimerHandle] = {}
        self._last_message_at: dict[str, float] = {}
        self._last_recovery_at: dict[str, float] = {}

    def on_status_change(self, session_id: str, previous: SessionState, current: SessionState) -> None:
        if current is SessionState.IDLE:
            self.disarm(session_id)
            return
        if previous is SessionState.IDLE:
            self._arm(session_id)

    def note_message(self, session_id: str) -> None:
        """Message evidence for the session: record it and disarm."""
        self._last_message_at[session_id] = self._scheduler.now()
        self.disarm(session_id)

    def disarm(self, session_id: str) -> None:
        handle = self._timers.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    def forget_session(self, session_id: str) -> None:
        self.disarm(session_id)
        self._last_message_at.pop(session_id, None)
        self._last_recovery_at.pop(session_id, None)

    def is_armed(self, session_id: str) -> bool:
        return session_id in self._timers

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _arm(self, session_id: str) -> None:
        self.disarm(session_id)
        armed_at = self._scheduler.now()
        self._timers[session_id] = self._scheduler.call_later(
            self._settings.stall_timeout,
            lambda: self._fire(session_id, armed_at),
        )

    def _fire(self, session_id: str, armed_at: float) -> None:
        self._timers.pop(session_id, None)

        current = self._store.get_status(session_id)
        if current is None or not current.type.active:
            return

        now = self._scheduler.now()
        last_recovery = self._last_recovery_at.get(session_id)
        if last_recovery is not None and now - last_recovery < self._settings.stall_recovery_cooldown:
            return

        last_message = self._last_message_at.get(session_id)
        if last_message is not None and last_message >= armed_at:
            return

        self._last_recovery_at[session_id] = now
        logger.info("Session %s busy with no message events, recovering", session_id)
        if self.recover is not None:
            self.recover(session_id)
