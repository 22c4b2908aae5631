"""User-facing notification sinks.

Native macOS notifications go through ``rumps`` when it is installed
(``pip install 'sessionsync[toolbar]'``); everywhere else notifications are
printed to the console with ``rich``.
"""

import sys
import time
from collections import deque
from typing import Callable, Optional, Protocol

from rich.console import Console
from rich.text import Text

try:
    import rumps
except ImportError:
    rumps = None

from sessionsync.events import Notice

_NOTIFY_COOLDOWN_SEC = 5.0
_SENT_HISTORY = 200


class Notifier(Protocol):
    def notify(self, title: str, body: str = "", tag: Optional[str] = None) -> None: ...


class _Throttle:
    """Drops repeats of the same tag inside the cooldown window."""

    def __init__(self, cooldown: float, clock: Callable[[], float]):
        self.cooldown = cooldown
        self._clock = clock
        self._last: dict[str, float] = {}

    def allow(self, tag: Optional[str]) -> bool:
        if not tag:
            return True
        now = self._clock()
        last = self._last.get(tag)
        if last is not None and now - last < self.cooldown:
            return False
        self._last = {k: t for k, t in self._last.items() if now - t < self.cooldown}
        self._last[tag] = now
        return True


class ConsoleNotifier:
    """Print notifications as a styled console line."""

    def __init__(
        self,
        console: Optional[Console] = None,
        cooldown: float = _NOTIFY_COOLDOWN_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.console = console or Console(stderr=True)
        self._throttle = _Throttle(cooldown, clock)
        self.sent: deque[Notice] = deque(maxlen=_SENT_HISTORY)

    def notify(self, title: str, body: str = "", tag: Optional[str] = None) -> None:
        if not self._throttle.allow(tag):
            return
        self.sent.append(Notice(title, body, tag))

        line = Text()
        line.append(" !! ", style="bold #fbbf24")
        line.append(title, style="bold #e2e8f0")
        if body:
            line.append("  ")
            line.append(body[:120], style="#94a3b8")
        self.console.print(line)


class MacNotifier:
    """Native notification center via rumps."""

    def __init__(self, cooldown: float = _NOTIFY_COOLDOWN_SEC, clock: Callable[[], float] = time.monotonic):
        if rumps is None:
            raise RuntimeError("native notifications require: pip install 'sessionsync[toolbar]'")
        self._throttle = _Throttle(cooldown, clock)

    def notify(self, title: str, body: str = "", tag: Optional[str] = None) -> None:
        if not self._throttle.allow(tag):
            return
        rumps.notification(
            title="sessionsync",
            subtitle=title,
            message=(body or "")[:120],
        )


def native_notifier() -> Optional[MacNotifier]:
    """The OS notification channel for this environment, if there is one."""
    if sys.platform != "darwin" or rumps is None:
        return None
    return MacNotifier()
