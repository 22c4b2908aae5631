"""Connection lifecycle for the session event stream.

The manager owns the whole sync context: connection state, the status
publisher, resync coordinator, stall detector and dispatcher. The stream is
held only while the environment is visible and online. Otherwise it is
parked as ``paused``/``offline`` with a pending-resume flag, and the next
environment signal brings it back.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Awaitable, Callable, Optional, Protocol

from sessionsync.config import DEFAULT_SETTINGS, SyncSettings, backoff_delay
from sessionsync.dispatcher import Environment, EventDispatcher, SyncHooks
from sessionsync.events import StreamConnectionState, StreamStatus
from sessionsync.resync import MetadataRefresher, ResyncCoordinator
from sessionsync.stall import StallDetector
from sessionsync.status import StatusPublisher
from sessionsync.store import Backend, SessionStore
from sessionsync.timers import Scheduler, TimerHandle, cancel

__all__ = ["ConnectionManager", "Environment", "SyncHooks", "Transport"]

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class Transport(Protocol):
    def subscribe(
        self,
        on_event: Callable[[Any], None],
        on_error: Callable[[BaseException], None],
        on_open: Callable[[], None],
    ) -> Unsubscribe: ...


class ConnectionManager:
    def __init__(
        self,
        transport: Transport,
        store: SessionStore,
        backend: Backend,
        *,
        settings: SyncSettings = DEFAULT_SETTINGS,
        scheduler: Optional[Scheduler] = None,
        environment: Optional[Environment] = None,
        hooks: Optional[SyncHooks] = None,
        jitter: Optional[Callable[[], float]] = None,
    ):
        self.transport = transport
        self.store = store
        self.backend = backend
        self.settings = settings
        self.scheduler = scheduler or Scheduler()
        self.environment = environment or Environment()
        self.hooks = hooks or SyncHooks()
        self.state = StreamConnectionState(last_event_at=self.scheduler.now())

        self.publisher = StatusPublisher(self.state, self.hooks.on_status)
        self.resync = ResyncCoordinator(
            self.scheduler, store, backend, settings, on_reloaded=self._on_reloaded,
        )
        self.metadata = MetadataRefresher(self.scheduler, store, backend, settings)
        self.stall = StallDetector(self.scheduler, store, settings, recover=self._recover_stalled)
        self.dispatcher = EventDispatcher(
            scheduler=self.scheduler,
            store=store,
            backend=backend,
            state=self.state,
            settings=settings,
            resync=self.resync,
            metadata=self.metadata,
            stall=self.stall,
            environment=self.environment,
            hooks=self.hooks,
        )

        self._jitter = jitter or (lambda: random.random() * settings.reconnect_jitter)
        self._unsubscribe: Optional[Unsubscribe] = None
        self._generation = 0
        self._reconnect_timer: Optional[TimerHandle] = None
        self._start_timer: Optional[TimerHandle] = None
        self._watchdog_timer: Optional[TimerHandle] = None
        self._pending_resume = False
        self._stopping = False
        self._closed = False

        self.last_reconnect_delay: Optional[float] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def status(self) -> StreamStatus:
        return self.state.status

    @property
    def pending_resume(self) -> bool:
        return self._pending_resume

    @property
    def subscribed(self) -> bool:
        return self._unsubscribe is not None

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_timer is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Start the stream shortly and begin the staleness watchdog."""
        self._closed = False
        cancel(self._start_timer)
        self._start_timer = self.scheduler.call_later(
            self.settings.start_delay, lambda: self.start(reset_attempts=True),
        )
        self._schedule_watchdog()

    def close(self) -> None:
        self._closed = True
        cancel(self._start_timer)
        cancel(self._watchdog_timer)
        self._start_timer = None
        self._watchdog_timer = None
        self.stall.cancel_all()
        self.dispatcher.reset()
        self._pending_resume = False
        self.stop_stream()
        self.publisher.publish(StreamStatus.IDLE)

    def start(self, reset_attempts: bool = False) -> None:
        self._start_timer = None
        if not self.environment.holdable:
            self._pending_resume = True
            self._publish_held()
            return

        if reset_attempts:
            self.state.reconnect_attempts = 0

        self.stop_stream()
        self.state.last_event_at = self.scheduler.now()
        self.publisher.publish(StreamStatus.CONNECTING)
        logger.debug("Starting event stream")

        self._generation += 1
        generation = self._generation

        def on_event(raw: Any) -> None:
            if generation == self._generation:
                self.dispatcher.handle(raw)

        def on_error(error: BaseException) -> None:
            if generation == self._generation:
                self._on_error(error)

        def on_open() -> None:
            if generation == self._generation:
                self._on_open()

        try:
            self._unsubscribe = self.transport.subscribe(on_event, on_error, on_open)
        except Exception as e:
            logger.warning("Error during subscription: %s", e)
            self._on_error(e)

    def stop_stream(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        try:
            cancel(self._reconnect_timer)
            self._reconnect_timer = None

            unsubscribe, self._unsubscribe = self._unsubscribe, None
            if unsubscribe is not None:
                self._generation += 1
                try:
                    unsubscribe()
                except Exception as e:
                    logger.warning("Error during unsubscribe: %s", e)
        finally:
            self._stopping = False

    def _on_open(self) -> None:
        should_bootstrap = self._pending_resume
        self.state.reconnect_attempts = 0
        self._pending_resume = False
        self.state.last_event_at = self.scheduler.now()
        self.publisher.publish(StreamStatus.CONNECTED)

        self._background(self.backend.check_connection(), "Connection check")
        self._poll_status()

        if should_bootstrap:
            self.scheduler.spawn(self.resync.bootstrap("stream_reconnected"))
            return

        session_id = self.store.current_session_id
        if session_id:
            self.scheduler.spawn(self._refresh_session(session_id, "stream_reconnected"))

    def _on_error(self, error: BaseException) -> None:
        logger.warning("Event stream error: %s", error)
        self.schedule_reconnect()

    def schedule_reconnect(self, hint: Optional[str] = None) -> None:
        if self._closed:
            return

        if not self.environment.holdable:
            self._pending_resume = True
            self.stop_stream()
            self._publish_held()
            return

        if self._reconnect_timer is not None:
            return

        attempt = self.state.reconnect_attempts + 1
        self.state.reconnect_attempts = attempt
        self.publisher.publish(StreamStatus.RECONNECTING, hint or f"Retrying ({attempt})")

        delay = backoff_delay(attempt) + self._jitter()
        self.last_reconnect_delay = delay
        logger.debug("Reconnect attempt %d in %.2fs", attempt, delay)
        self._reconnect_timer = self.scheduler.call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_timer = None
        self.start(reset_attempts=False)

    def _publish_held(self) -> None:
        if not self.environment.online:
            self.publisher.publish(StreamStatus.OFFLINE, "Waiting for network")
        else:
            self.publisher.publish(StreamStatus.PAUSED, "Paused while hidden")

    # ------------------------------------------------------------------
    # Environment signals
    # ------------------------------------------------------------------

    def on_visibility_change(self, visible: bool) -> None:
        self.environment.visible = visible
        # Hidden alone keeps the stream; hosts toggle visibility briefly
        # during window transitions.
        if not visible:
            return
        self._resume("visibility_restore")

    def on_focus(self) -> None:
        if not self.environment.visible:
            return
        self._resume("window_focus")

    def on_online(self) -> None:
        self.environment.online = True
        self.maybe_bootstrap_if_stale("network_restored")
        if not (self._pending_resume or self._unsubscribe is None):
            return
        if not self.environment.holdable:
            self._pending_resume = True
            self._publish_held()
            return
        self._poll_status()
        self.publisher.publish(StreamStatus.CONNECTING, "Network restored")
        self.start(reset_attempts=True)

    def on_offline(self) -> None:
        self.environment.online = False
        self._pending_resume = True
        self.publisher.publish(StreamStatus.OFFLINE, "Waiting for network")
        self.stop_stream()

    def on_page_hide(self) -> None:
        self._pending_resume = True
        self.stop_stream()
        self.publisher.publish(StreamStatus.PAUSED, "Paused while hidden")

    def on_page_show(self, persisted: bool = False) -> None:
        # A page restored from cache has lost its stream.
        self._pending_resume = self._pending_resume or persisted
        if not self.environment.visible:
            return
        session_id = self.store.current_session_id
        if session_id:
            self.resync.soft_resync(session_id, "page_show")
            self.metadata.request(session_id)
        self._poll_status()
        self.start(reset_attempts=True)

    def _resume(self, reason: str) -> None:
        stalled = self.scheduler.now() - self.state.last_event_at > self.settings.stream_stale_after
        self.maybe_bootstrap_if_stale(reason)
        self._poll_status()

        if stalled:
            logger.info("Resuming (%s) with stalled stream, reconnecting", reason)
            self._pending_resume = True

        if not (self._pending_resume or self._unsubscribe is None):
            return

        logger.info("Resuming stream (%s)", reason)
        session_id = self.store.current_session_id
        if session_id:
            self.resync.soft_resync(session_id, reason)
            self.metadata.request(session_id)
        self.publisher.publish(StreamStatus.CONNECTING, "Resuming stream")
        self.start(reset_attempts=True)

    def maybe_bootstrap_if_stale(self, reason: str) -> bool:
        now = self.scheduler.now()
        if now - self.state.last_event_at <= self.settings.bootstrap_stale_after:
            return False
        self.state.last_event_at = now
        self.scheduler.spawn(self.resync.bootstrap(reason))
        return True

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    def _schedule_watchdog(self) -> None:
        cancel(self._watchdog_timer)
        self._watchdog_timer = self.scheduler.call_later(
            self.settings.watchdog_interval, self._watchdog_tick,
        )

    def _watchdog_tick(self) -> None:
        self._schedule_watchdog()
        if not self.environment.holdable:
            return

        if any(status.type.active for status in self.store.statuses().values()):
            self._poll_status()

        if self.scheduler.now() - self.state.last_event_at > self.settings.stream_stale_after:
            self.scheduler.spawn(self._probe_and_reconnect())

    async def _probe_and_reconnect(self) -> None:
        try:
            healthy = await self.backend.check_health()
            if not healthy:
                logger.info("Health check failed for silent stream")
        except Exception as e:
            logger.warning("Health check after stale stream failed: %s", e)
        # Reconnect either way; a healthy server with a silent stream is
        # still a stalled stream.
        logger.info("Refreshing stalled stream")
        self.schedule_reconnect("Refreshing stalled stream")

    # ------------------------------------------------------------------
    # Recovery helpers
    # ------------------------------------------------------------------

    def _recover_stalled(self, session_id: str) -> None:
        self.resync.soft_resync(session_id, "status_stall")
        self.schedule_reconnect("No message events after busy status")

    def _on_reloaded(self, session_id: str) -> None:
        self.dispatcher.invalidate(session_id)

    async def _refresh_session(self, session_id: str, reason: str) -> None:
        await self.resync.soft_resync(session_id, reason)
        self.metadata.request(session_id)

    def _poll_status(self) -> None:
        self._background(self.backend.poll_session_status(), "Session status poll")

    def _background(self, awaitable: Awaitable[Any], what: str) -> None:
        async def _run() -> None:
            try:
                await awaitable
            except Exception as e:
                logger.warning("%s failed: %s", what, e)

        self.scheduler.spawn(_run())
