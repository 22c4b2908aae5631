"""sessionsync monitor built with Textual, plus the headless runner."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from rich.console import Console
from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, ScrollableContainer, Vertical
from textual.reactive import reactive
from textual.widgets import RichLog, Static

from sessionsync.config import DEFAULT_SETTINGS, SyncSettings
from sessionsync.connection import ConnectionManager, Environment, SyncHooks
from sessionsync.events import Prompt, StreamEvent, StreamStatus
from sessionsync.feeds import FeedTransport, feed_factory
from sessionsync.notify import ConsoleNotifier, Notifier, native_notifier
from sessionsync.store import LocalBackend, MemoryStore
from sessionsync.theme import ACCENT, SYSTEM_DIM, render_event, render_session, render_status, short_id

logger = logging.getLogger(__name__)

BG_DARK = "#0f0f17"
BG_PANEL = "#13131f"
BG_BAR = "#1a1a2e"
SEPARATOR_COLOR = "#2a2a3c"

DEFAULT_AGENTS = ["build", "plan"]


def build_manager(
    source: tuple[str, Any],
    hooks: SyncHooks,
    settings: SyncSettings = DEFAULT_SETTINGS,
    session_id: Optional[str] = None,
    environment: Optional[Environment] = None,
) -> ConnectionManager:
    """Wire a feed source into a ConnectionManager over an in-memory store."""
    kind, config = source
    store = MemoryStore(agents=DEFAULT_AGENTS)
    store.current_session_id = session_id
    transport = FeedTransport(feed_factory(kind, config), name=kind)
    logger.debug("Reading events from %s feed", kind)
    return ConnectionManager(
        transport, store, LocalBackend(store),
        settings=settings, environment=environment, hooks=hooks,
    )


def _pick_notifier(fallback: Notifier) -> tuple[Notifier, bool]:
    native = native_notifier()
    if native is not None:
        return native, True
    return fallback, False


# ---------------------------------------------------------------------------
# Sidebar
# ---------------------------------------------------------------------------

class SessionSidebar(Vertical):
    """Sidebar listing known sessions and their status."""

    DEFAULT_CSS = f"""
    SessionSidebar {{
        width: 34;
        background: {BG_PANEL};
        border-right: solid {SEPARATOR_COLOR};
    }}
    SessionSidebar.-hidden {{
        display: none;
    }}
    #sidebar-header {{
        height: 1;
        background: {BG_BAR};
        color: {ACCENT};
        text-style: bold;
        padding: 0 1;
    }}
    #session-list {{
        height: 1fr;
        overflow-y: auto;
        padding: 0 1;
    }}
    """

    def compose(self) -> ComposeResult:
        yield Static(" SESSIONS", id="sidebar-header")
        with ScrollableContainer():
            yield Static("", id="session-list")

    def refresh_sessions(self, store: MemoryStore) -> None:
        body = Text()
        for session_id, session in sorted(store.sessions.items()):
            if body:
                body.append("\n")
            body.append_text(render_session(session, store.get_status(session_id)))
        if not body:
            body.append("No sessions yet", style=f"dim {SYSTEM_DIM}")
        self.query_one("#session-list", Static).update(body)


# ---------------------------------------------------------------------------
# Status bar
# ---------------------------------------------------------------------------

class StatusBar(Static):
    """Bottom status bar showing connection state and controls."""

    stream_status = reactive(StreamStatus.IDLE)
    hint = reactive("")
    event_count = reactive(0)
    visible = reactive(True)
    online = reactive(True)

    def render(self) -> Text:
        bar = Text(" ")
        bar.append_text(render_status(self.stream_status, self.hint or None))
        bar.append(" | ", style=f"dim {SEPARATOR_COLOR}")
        bar.append(f"events:{self.event_count}", style=f"dim {SYSTEM_DIM}")
        bar.append(" | ", style=f"dim {SEPARATOR_COLOR}")

        bar.append("[v]", style=f"bold {ACCENT}")
        bar.append("shown " if self.visible else "hidden ", style=f"dim {SYSTEM_DIM}")
        bar.append("[n]", style=f"bold {ACCENT}")
        bar.append("online " if self.online else "offline ", style=f"dim {SYSTEM_DIM}")
        bar.append("[r]", style=f"bold {ACCENT}")
        bar.append("reconnect ", style=f"dim {SYSTEM_DIM}")
        bar.append("[s]", style=f"bold {ACCENT}")
        bar.append("side ", style=f"dim {SYSTEM_DIM}")
        bar.append("[q]", style=f"bold {ACCENT}")
        bar.append("quit", style=f"dim {SYSTEM_DIM}")
        return bar


# ---------------------------------------------------------------------------
# Main application
# ---------------------------------------------------------------------------

class SessionSyncApp(App):
    """Live view of a reconciled session event stream."""

    TITLE = "sessionsync"

    CSS = f"""
    Screen {{
        background: {BG_DARK};
    }}

    #main-container {{
        height: 1fr;
    }}

    #stream-log {{
        background: {BG_DARK};
        scrollbar-color: #4a4a6a;
        scrollbar-background: {BG_BAR};
        border: none;
        padding: 0 0;
    }}

    StatusBar {{
        dock: bottom;
        height: 1;
        background: {BG_BAR};
        color: #94a3b8;
        padding: 0 0;
    }}
    """

    BINDINGS = [
        Binding("v", "toggle_visibility", "Visibility", show=False),
        Binding("n", "toggle_network", "Network", show=False),
        Binding("r", "reconnect", "Reconnect", show=False),
        Binding("s", "toggle_sidebar", "Sidebar", show=False),
        Binding("c", "clear_log", "Clear", show=False),
        Binding("q", "quit", "Quit", show=False),
    ]

    event_count = reactive(0)

    def __init__(
        self,
        source: tuple[str, Any] = ("demo", None),
        settings: SyncSettings = DEFAULT_SETTINGS,
        session_id: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.source = source
        self.settings = settings
        self.session_id = session_id
        self.manager: Optional[ConnectionManager] = None

    def compose(self) -> ComposeResult:
        with Horizontal(id="main-container"):
            yield SessionSidebar()
            yield RichLog(
                id="stream-log",
                highlight=False,
                markup=False,
                auto_scroll=True,
                wrap=True,
                max_lines=10_000,
            )
        yield StatusBar()

    def on_mount(self) -> None:
        notifier, native = _pick_notifier(_ToastNotifier(self))
        hooks = SyncHooks(
            on_status=self._on_stream_status,
            on_prompt=self._on_prompt,
            on_todos=self._on_todos,
            on_event=self._on_event,
            notifier=notifier,
        )
        environment = Environment(native_channel_active=native)
        self.manager = build_manager(
            self.source, hooks, self.settings, self.session_id, environment,
        )
        self.manager.open()

    async def on_unmount(self) -> None:
        if self.manager is not None:
            self.manager.close()
            self.manager.scheduler.cancel_all()

    # --- Sync hooks ---

    def _on_stream_status(self, status: StreamStatus, hint: Optional[str]) -> None:
        line = Text(" ")
        line.append_text(render_status(status, hint))
        try:
            bar = self.query_one(StatusBar)
            bar.stream_status = status
            bar.hint = hint or ""
            self.query_one("#stream-log", RichLog).write(line)
        except Exception:
            # Widgets are gone once the app is shutting down.
            pass

    def _on_event(self, event: StreamEvent) -> None:
        self.event_count += 1
        self.query_one(StatusBar).event_count = self.event_count
        self.query_one("#stream-log", RichLog).write(render_event(event))
        if self.manager is not None:
            self.query_one(SessionSidebar).refresh_sessions(self.manager.store)

    def _on_prompt(self, prompt: Prompt) -> None:
        message = prompt.description or short_id(prompt.session_id)
        self.notify(message, title=prompt.title, severity="warning" if prompt.kind != "mode" else "information")

    def _on_todos(self, session_id: str, todos: list) -> None:
        done = sum(1 for todo in todos if isinstance(todo, dict) and todo.get("status") == "completed")
        line = Text(f" todos {short_id(session_id)}: {done}/{len(todos)} done", style=f"dim {SYSTEM_DIM}")
        self.query_one("#stream-log", RichLog).write(line)

    # --- Environment signals ---

    def on_app_focus(self) -> None:
        if self.manager is not None:
            self.manager.on_focus()

    def _sync_environment(self) -> None:
        if self.manager is None:
            return
        bar = self.query_one(StatusBar)
        bar.visible = self.manager.environment.visible
        bar.online = self.manager.environment.online

    # --- Actions ---

    def action_toggle_visibility(self) -> None:
        if self.manager is None:
            return
        self.manager.on_visibility_change(not self.manager.environment.visible)
        self._sync_environment()

    def action_toggle_network(self) -> None:
        if self.manager is None:
            return
        if self.manager.environment.online:
            self.manager.on_offline()
        else:
            self.manager.on_online()
        self._sync_environment()

    def action_reconnect(self) -> None:
        if self.manager is not None:
            self.manager.schedule_reconnect("Manual reconnect")

    def action_toggle_sidebar(self) -> None:
        self.query_one(SessionSidebar).toggle_class("-hidden")

    def action_clear_log(self) -> None:
        self.query_one("#stream-log", RichLog).clear()
        self.event_count = 0
        self.query_one(StatusBar).event_count = 0


class _ToastNotifier:
    """Out-of-band notifications shown as Textual toasts."""

    def __init__(self, app: App):
        self._app = app

    def notify(self, title: str, body: str = "", tag: Optional[str] = None) -> None:
        self._app.notify(body or title, title=title if body else "")


# ---------------------------------------------------------------------------
# Headless runner
# ---------------------------------------------------------------------------

async def run_headless(
    source: tuple[str, Any],
    settings: SyncSettings = DEFAULT_SETTINGS,
    session_id: Optional[str] = None,
    console: Optional[Console] = None,
) -> None:
    """Run the sync core without a UI, printing transitions with rich."""
    console = console or Console()
    notifier, native = _pick_notifier(ConsoleNotifier(console))

    def on_status(status: StreamStatus, hint: Optional[str]) -> None:
        console.print(render_status(status, hint))

    def on_prompt(prompt: Prompt) -> None:
        notifier.notify(prompt.title, prompt.description, f"{prompt.kind}:{prompt.session_id}")

    hooks = SyncHooks(
        on_status=on_status,
        on_prompt=on_prompt,
        on_event=lambda event: console.print(render_event(event)),
        notifier=notifier,
    )
    manager = build_manager(source, hooks, settings, session_id, Environment(native_channel_active=native))
    manager.open()
    try:
        await asyncio.Event().wait()
    finally:
        manager.close()
        manager.scheduler.cancel_all()
