"""Shared fixtures: a hand-driven clock, a fake backend and a fake transport."""

import asyncio
from typing import Any, Callable, Optional

import pytest

from sessionsync.connection import ConnectionManager, SyncHooks
from sessionsync.events import Notice, Prompt, StreamStatus
from sessionsync.store import MemoryStore
from sessionsync.timers import Scheduler


# ---------------------------------------------------------------------------
# Manual scheduler
# ---------------------------------------------------------------------------

class ManualTimer:
    def __init__(self, when: float, seq: int, callback: Callable[[], Any]):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Virtual clock. Timers only fire from ``advance()``."""

    def __init__(self, start: float = 1000.0, wall_start_ms: int = 1_700_000_000_000):
        super().__init__()
        self._now = start
        self._wall_offset = wall_start_ms - int(start * 1000)
        self._timers: list[ManualTimer] = []
        self._seq = 0

    def now(self) -> float:
        return self._now

    def wall_ms(self) -> int:
        return self._wall_offset + int(self._now * 1000)

    def call_later(self, delay: float, callback: Callable[[], Any]) -> ManualTimer:
        self._seq += 1
        timer = ManualTimer(self._now + max(0.0, delay), self._seq, callback)
        self._timers.append(timer)
        return timer

    @property
    def pending_timers(self) -> list[ManualTimer]:
        return [t for t in self._timers if not t.cancelled]

    async def settle(self) -> None:
        """Let spawned tasks run until they block."""
        for _ in range(10):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        await self.settle()
        while True:
            self._timers = [t for t in self._timers if not t.cancelled]
            due = [t for t in self._timers if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.seq))
            self._timers.remove(timer)
            self._now = max(self._now, timer.when)
            timer.callback()
            await self.settle()
        self._now = target
        await self.settle()


# ---------------------------------------------------------------------------
# Fake backend
# ---------------------------------------------------------------------------

class FakeBackend:
    def __init__(self):
        self.messages: dict[str, list[dict]] = {}
        self.sessions: list[dict] = []
        self.session_details: dict[str, dict] = {}
        self.healthy = True
        self.fail_fetch = False
        self.fetch_gate: Optional[asyncio.Event] = None
        self.calls: list[tuple] = []

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def fetch_messages(self, session_id: str, limit: int) -> list[dict]:
        self.calls.append(("fetch_messages", session_id, limit))
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fail_fetch:
            raise RuntimeError("fetch failed")
        return list(self.messages.get(session_id, []))

    async def fetch_sessions(self) -> list[dict]:
        self.calls.append(("fetch_sessions",))
        return list(self.sessions)

    async def fetch_session(self, session_id: str, directory: Optional[str] = None) -> Optional[dict]:
        self.calls.append(("fetch_session", session_id, directory))
        return self.session_details.get(session_id)

    async def check_health(self) -> bool:
        self.calls.append(("check_health",))
        return self.healthy

    async def check_connection(self) -> None:
        self.calls.append(("check_connection",))

    async def poll_session_status(self) -> None:
        self.calls.append(("poll_session_status",))

    async def refresh_capabilities(self, directory: Optional[str]) -> None:
        self.calls.append(("refresh_capabilities", directory))


# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------

class FakeSubscription:
    def __init__(self, on_event, on_error, on_open):
        self.on_event = on_event
        self.on_error = on_error
        self.on_open = on_open
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def emit(self, event_type: str, **properties: Any) -> None:
        self.on_event({"type": event_type, "properties": properties})

    def fail(self, error: Optional[BaseException] = None) -> None:
        self.on_error(error or ConnectionError("stream dropped"))


class FakeTransport:
    def __init__(self, auto_open: bool = True):
        self.auto_open = auto_open
        self.subscriptions: list[FakeSubscription] = []

    def subscribe(self, on_event, on_error, on_open):
        subscription = FakeSubscription(on_event, on_error, on_open)
        self.subscriptions.append(subscription)
        if self.auto_open:
            on_open()
        return subscription.close

    @property
    def current(self) -> FakeSubscription:
        return self.subscriptions[-1]


# ---------------------------------------------------------------------------
# Hook recorder
# ---------------------------------------------------------------------------

class FakeNotifier:
    def __init__(self):
        self.sent: list[Notice] = []

    def notify(self, title: str, body: str = "", tag: Optional[str] = None) -> None:
        self.sent.append(Notice(title, body, tag))


class Recorder:
    def __init__(self):
        self.statuses: list[tuple[StreamStatus, Optional[str]]] = []
        self.prompts: list[Prompt] = []
        self.todos: list[tuple[str, list]] = []
        self.notifier = FakeNotifier()

    def hooks(self) -> SyncHooks:
        return SyncHooks(
            on_status=lambda status, hint: self.statuses.append((status, hint)),
            on_prompt=self.prompts.append,
            on_todos=lambda session_id, todos: self.todos.append((session_id, todos)),
            notifier=self.notifier,
        )

    @property
    def status_names(self) -> list[str]:
        return [status.value for status, _ in self.statuses]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def store():
    return MemoryStore(agents=["build", "plan"])


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def manager(transport, store, backend, scheduler, recorder):
    return ConnectionManager(
        transport, store, backend,
        scheduler=scheduler,
        hooks=recorder.hooks(),
        jitter=lambda: 0.0,
    )


@pytest.fixture
def dispatcher(manager):
    return manager.dispatcher
