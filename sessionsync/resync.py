"""Full-state refetch: serialized, debounced, never raising to callers."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sessionsync.config import SyncSettings
from sessionsync.store import Backend, SessionStore
from sessionsync.timers import Scheduler

logger = logging.getLogger(__name__)


class ResyncCoordinator:
    """At most one resync in flight process-wide, spaced by a debounce."""

    def __init__(
        self,
        scheduler: Scheduler,
        store: SessionStore,
        backend: Backend,
        settings: SyncSettings,
        on_reloaded: Optional[Callable[[str], None]] = None,
    ):
        self._scheduler = scheduler
        self._store = store
        self._backend = backend
        self._settings = settings
        self._on_reloaded = on_reloaded
        self._in_flight: Optional[asyncio.Future] = None
        self._last_completed_at: Optional[float] = None
        self.fetch_count = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    def resync(self, session_id: Optional[str], reason: str, limit: Optional[int] = None) -> Awaitable[None]:
        if not session_id:
            return self._scheduler.resolved()
        if self._in_flight is not None:
            return self._in_flight
        if (
            self._last_completed_at is not None
            and self._scheduler.now() - self._last_completed_at < self._settings.resync_debounce
        ):
            return self._scheduler.resolved()

        task = self._scheduler.spawn(self._reload(session_id, reason, limit or self._settings.message_limit))
        self._in_flight = task
        return task

    async def _reload(self, session_id: str, reason: str, limit: int) -> None:
        self.fetch_count += 1
        try:
            messages = await self._backend.fetch_messages(session_id, limit)
            self._store.sync_messages(session_id, messages)
            if self._on_reloaded is not None:
                self._on_reloaded(session_id)
        except Exception as e:
            logger.warning("Failed to resync messages (%s): %s", reason, e)
        finally:
            self._in_flight = None
            self._last_completed_at = self._scheduler.now()

    def soft_resync(self, session_id: Optional[str], reason: str, limit: Optional[int] = None) -> Awaitable[None]:
        """Resync, waiting out a streaming cooldown first (bounded)."""
        if not session_id:
            return self._scheduler.resolved()

        cooldown_until = self._store.streaming_cooldown_until(session_id)
        now = self._scheduler.now()
        if cooldown_until is not None and cooldown_until > now:
            delay = min(self._settings.soft_resync_max_delay, max(0.0, cooldown_until - now))
            return self._scheduler.spawn(self._delayed(delay, session_id, reason, limit))

        return self.resync(session_id, reason, limit)

    async def _delayed(self, delay: float, session_id: str, reason: str, limit: Optional[int]) -> None:
        await self._scheduler.sleep(delay)
        await self.resync(session_id, reason, limit)

    async def bootstrap(self, reason: str) -> None:
        """Reload the session list and the active session's messages."""
        logger.info("Bootstrapping state: %s", reason)

        async def _load_sessions() -> None:
            sessions = await self._backend.fetch_sessions()
            self._store.replace_sessions(sessions)

        try:
            await asyncio.gather(
                _load_sessions(),
                self.resync(self._store.current_session_id, reason, self._settings.message_limit),
            )
        except Exception as e:
            logger.warning("Bootstrap failed (%s): %s", reason, e)


class MetadataRefresher:
    """Refetch a session's title/summary, at most once per interval."""

    def __init__(
        self,
        scheduler: Scheduler,
        store: SessionStore,
        backend: Backend,
        settings: SyncSettings,
    ):
        self._scheduler = scheduler
        self._store = store
        self._backend = backend
        self._settings = settings
        self._last_request_at: dict[str, float] = {}

    def request(self, session_id: Optional[str], directory: Optional[str] = None) -> bool:
        if not session_id:
            return False

        now = self._scheduler.now()
        last = self._last_request_at.get(session_id)
        if last is not None and now - last < self._settings.metadata_refresh_interval:
            return False
        self._last_request_at[session_id] = now

        self._scheduler.call_later(
            self._settings.metadata_refresh_delay,
            lambda: self._scheduler.spawn(self._refresh(session_id, directory)),
        )
        return True

    def forget_session(self, session_id: str) -> None:
        self._last_request_at.pop(session_id, None)

    def _resolve_directory(self, session_id: str, override: Optional[str]) -> Optional[str]:
        if override and override.strip():
            return override.strip()
        session = self._store.get_session(session_id)
        directory = session.get("directory") if session else None
        if isinstance(directory, str) and directory.strip():
            return directory.strip()
        return None

    async def _refresh(self, session_id: str, directory: Optional[str]) -> None:
        try:
            session = await self._backend.fetch_session(
                session_id, self._resolve_directory(session_id, directory)
            )
        except Exception as e:
            logger.warning("Failed to refresh session metadata: %s", e)
            return
        if not session:
            return

        patch: dict = {}
        title = session.get("title")
        if isinstance(title, str) and title:
            patch["title"] = title
        if session.get("summary") is not None:
            patch["summary"] = session["summary"]
        if patch:
            self._store.apply_session_metadata(session_id, patch)
