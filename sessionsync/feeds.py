"""Event feed sources for sessionsync.

Each source is an async generator that yields raw ``{"type", "properties"}``
event dicts. ``FeedTransport`` turns a source into the subscribe/unsubscribe
capability the connection manager consumes.
"""

import asyncio
import logging
import sys
from typing import Any, AsyncGenerator, Callable, Optional

from sessionsync.payloads import create_decoder

logger = logging.getLogger(__name__)

RawEvent = dict[str, Any]
FeedFactory = Callable[[], AsyncGenerator[RawEvent, None]]


class FeedClosed(Exception):
    """A finite feed ran out of events."""


# Yielded by a source once it is established but before it has data.
# Sources that never yield it count as open on their first event.
FEED_OPEN: RawEvent = {"type": "feed.open", "properties": {}}


# ---------------------------------------------------------------------------
# Demo feed
# ---------------------------------------------------------------------------

DEMO_SESSION = "ses_demo00000001"
DEMO_OTHER_SESSION = "ses_demo00000002"


def _event(event_type: str, **properties: Any) -> RawEvent:
    return {"type": event_type, "properties": properties}


def _status(session_id: str, status_type: str) -> RawEvent:
    return _event("session.status", sessionID=session_id, status={"type": status_type})


def _text_part(session_id: str, message_id: str, part_id: str, text: str, done: bool = False) -> RawEvent:
    part: dict[str, Any] = {
        "id": part_id,
        "type": "text",
        "text": text,
        "sessionID": session_id,
        "messageID": message_id,
        "time": {"start": 0},
    }
    if done:
        part["time"]["end"] = 1
    return _event("message.part.updated", part=part)


def _message(session_id: str, message_id: str, role: str, **info: Any) -> RawEvent:
    return _event(
        "message.updated",
        info={"id": message_id, "sessionID": session_id, "role": role, **info},
    )


def demo_script(cycle: int) -> list[tuple[float, RawEvent]]:
    """One scripted exchange: a prompt, a streamed reply and its completion."""
    user_id = f"msg_demo{cycle:04d}0001"
    reply_id = f"msg_demo{cycle:04d}0002"
    part_id = f"prt_demo{cycle:04d}0001"
    sid = DEMO_SESSION
    reply = "Refactoring the auth module: split token validation, added rate limiting."

    script: list[tuple[float, RawEvent]] = [
        (0.4, _event("server.connected")),
        (0.3, _event("session.updated", info={"id": sid, "title": "Refactor auth module", "directory": "/demo"})),
        (0.5, _message(sid, user_id, "user", agent="build", time={"created": 1000 + cycle},
                       model={"providerID": "demo", "modelID": "demo-model"})),
        (0.3, _status(sid, "busy")),
        (0.4, _message(sid, reply_id, "assistant", time={"created": 1001 + cycle})),
    ]
    words = reply.split(" ")
    for count in range(4, len(words) + 1, 4):
        script.append((0.3, _text_part(sid, reply_id, part_id, " ".join(words[:count]))))
    script.extend([
        (0.3, _text_part(sid, reply_id, part_id, reply, done=True)),
        (0.2, _message(sid, reply_id, "assistant", finish="stop",
                       time={"created": 1001 + cycle, "completed": 2000 + cycle})),
        (0.2, _status(sid, "idle")),
        (0.6, _event("permission.asked", id=f"per_demo{cycle:04d}", sessionID=DEMO_OTHER_SESSION,
                     permission="bash", patterns=["npm run build"])),
        (0.5, _event("permission.replied", sessionID=DEMO_OTHER_SESSION, requestID=f"per_demo{cycle:04d}")),
        (0.4, _event("todo.updated", sessionID=sid, todos=[
            {"id": "1", "content": "Split token validation", "status": "completed"},
            {"id": "2", "content": "Add rate limiting", "status": "completed"},
        ])),
    ])
    return script


async def demo_feed() -> AsyncGenerator[RawEvent, None]:
    """Yield simulated session events with realistic timing."""
    cycle = 1
    while True:
        for delay, event in demo_script(cycle):
            await asyncio.sleep(delay)
            yield event
        cycle += 1
        await asyncio.sleep(3.0)


# ---------------------------------------------------------------------------
# Stdin feed
# ---------------------------------------------------------------------------

async def stdin_feed(fmt: str) -> AsyncGenerator[RawEvent, None]:
    """Read events from stdin (piped data)."""
    decoder = create_decoder(fmt)
    loop = asyncio.get_running_loop()

    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        event = decoder.decode_line(line)
        if event:
            yield event


# ---------------------------------------------------------------------------
# File feed
# ---------------------------------------------------------------------------

async def file_feed(fmt: str, path: str) -> AsyncGenerator[RawEvent, None]:
    """Tail a file and yield events as new lines appear."""
    decoder = create_decoder(fmt)

    with open(path, "r") as f:
        f.seek(0, 2)
        yield FEED_OPEN
        while True:
            line = f.readline()
            if not line:
                await asyncio.sleep(0.1)
                continue
            event = decoder.decode_line(line)
            if event:
                yield event


# ---------------------------------------------------------------------------
# Subprocess exec feed
# ---------------------------------------------------------------------------

async def _drain_stderr(proc: asyncio.subprocess.Process) -> str:
    """Read stderr in background to prevent pipe deadlocks."""
    if proc.stderr:
        data = await proc.stderr.read()
        return data.decode(errors="replace").strip()
    return ""


async def exec_feed(fmt: str, cmd: str) -> AsyncGenerator[RawEvent, None]:
    """Run a command as subprocess and yield events from its stdout."""
    if not cmd or not cmd.strip():
        raise ValueError("Empty command")

    decoder = create_decoder(fmt)
    proc = await asyncio.create_subprocess_shell(
        cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        stdin=asyncio.subprocess.DEVNULL,
    )
    stderr_task = asyncio.ensure_future(_drain_stderr(proc))

    try:
        if proc.stdout:
            async for raw_line in proc.stdout:
                event = decoder.decode_line(raw_line.decode(errors="replace"))
                if event:
                    yield event
    except (asyncio.CancelledError, GeneratorExit):
        # Unsubscribed mid-stream: don't leave the child running.
        if proc.returncode is None:
            proc.kill()
        stderr_task.cancel()
        raise

    exit_code = await proc.wait()
    stderr_text = await stderr_task

    if exit_code != 0 and stderr_text:
        logger.warning("Process stderr: %s", stderr_text[:200])
    logger.debug("Process exited (%s)", exit_code)


# ---------------------------------------------------------------------------
# Transport adapter
# ---------------------------------------------------------------------------

class FeedTransport:
    """Subscribe capability over an async event source.

    Each subscription opens a fresh source from ``factory``. ``on_open``
    fires once the source is established (``FEED_OPEN`` or its first
    event), so a source that fails straight away never reports open.
    Ending the source reports ``FeedClosed`` through ``on_error``; the
    feed never retries on its own.
    """

    def __init__(self, factory: FeedFactory, name: str = "feed"):
        self.factory = factory
        self.name = name
        self.subscriptions = 0

    def subscribe(
        self,
        on_event: Callable[[RawEvent], None],
        on_error: Callable[[BaseException], None],
        on_open: Callable[[], None],
    ) -> Callable[[], None]:
        self.subscriptions += 1
        task: Optional[asyncio.Task] = None

        async def _pump() -> None:
            opened = False
            try:
                async for event in self.factory():
                    if not opened:
                        opened = True
                        on_open()
                    if event is not FEED_OPEN:
                        on_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                on_error(e)
                return
            on_error(FeedClosed(f"{self.name} ended"))

        task = asyncio.ensure_future(_pump())

        def unsubscribe() -> None:
            if task is not None and not task.done():
                task.cancel()

        return unsubscribe


def feed_factory(kind: str, config: Any = None) -> FeedFactory:
    """Source factory for a CLI source name (``demo``, ``stdin``, ``file``, ``exec``)."""
    if kind == "demo":
        return demo_feed
    if kind == "stdin":
        return lambda: stdin_feed(config or "auto")
    if kind == "file":
        return lambda: file_feed(config["format"], config["path"])
    if kind == "exec":
        return lambda: exec_feed(config["format"], config["cmd"])
    raise ValueError(f"Unknown feed: {kind}")
