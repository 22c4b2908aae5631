"""Tests for sessionsync feed sources and the feed transport."""

import asyncio
import json
import os
import tempfile

import pytest

from sessionsync.feeds import (
    DEMO_SESSION,
    FEED_OPEN,
    FeedClosed,
    FeedTransport,
    demo_feed,
    demo_script,
    exec_feed,
    feed_factory,
    file_feed,
)
from sessionsync.payloads import decode_event


def test_demo_script_is_a_complete_exchange():
    """A demo cycle should stream a reply and then complete it."""
    events = [event for _, event in demo_script(1)]
    types = [event["type"] for event in events]

    assert types[0] == "server.connected"
    assert types.count("message.part.updated") >= 2
    assert "permission.asked" in types
    assert types[-1] == "todo.updated"

    finished = [
        e for e in events
        if e["type"] == "message.updated" and e["properties"]["info"].get("finish") == "stop"
    ]
    assert len(finished) == 1
    assert finished[0]["properties"]["info"]["sessionID"] == DEMO_SESSION


def test_demo_script_ids_sort_by_cycle():
    """Later cycles should produce lexicographically later message ids."""
    first = {e["properties"]["info"]["id"] for _, e in demo_script(1) if e["type"] == "message.updated"}
    second = {e["properties"]["info"]["id"] for _, e in demo_script(2) if e["type"] == "message.updated"}
    assert max(first) < min(second)


def test_demo_events_decode():
    for _, raw in demo_script(3):
        assert decode_event(raw) is not None


@pytest.mark.asyncio
async def test_demo_feed_yields_events():
    events = []
    async for event in demo_feed():
        events.append(event)
        if len(events) >= 3:
            break

    assert [e["type"] for e in events] == ["server.connected", "session.updated", "message.updated"]


@pytest.mark.asyncio
async def test_file_feed_reads_new_lines():
    """file_feed should pick up lines appended after it starts."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".jsonl", delete=False) as f:
        f.write(json.dumps({"type": "session.status", "properties": {"sessionID": "ses_old"}}) + "\n")
        path = f.name

    try:
        events = []

        async def collect():
            async for event in file_feed("jsonl", path):
                if event is not FEED_OPEN:
                    events.append(event)
                if len(events) >= 1:
                    break

        task = asyncio.create_task(collect())
        await asyncio.sleep(0.3)

        with open(path, "a") as f:
            f.write(json.dumps({"type": "session.deleted", "properties": {"sessionID": "ses_new"}}) + "\n")

        await asyncio.wait_for(task, timeout=2.0)
        assert [e["properties"]["sessionID"] for e in events] == ["ses_new"]
    finally:
        os.unlink(path)


@pytest.mark.asyncio
async def test_file_feed_signals_open_before_data():
    with tempfile.NamedTemporaryFile(mode="w", suffix=".jsonl", delete=False) as f:
        path = f.name

    try:
        source = file_feed("jsonl", path)
        assert await source.__anext__() is FEED_OPEN
        await source.aclose()
    finally:
        os.unlink(path)


@pytest.mark.asyncio
async def test_file_feed_missing_file_raises():
    with pytest.raises(FileNotFoundError):
        async for _ in file_feed("jsonl", "/nonexistent/sessionsync/events.jsonl"):
            pass


@pytest.mark.asyncio
async def test_exec_feed_empty_command():
    with pytest.raises(ValueError, match="Empty"):
        async for _ in exec_feed("auto", "  "):
            pass


@pytest.mark.asyncio
async def test_exec_feed_runs_command():
    """exec_feed should decode the subprocess's stdout."""
    cmd = "printf 'event: server.connected\\ndata: {}\\n\\n'"
    events = [event async for event in exec_feed("sse", cmd)]
    assert events == [{"type": "server.connected", "properties": {}}]


@pytest.mark.asyncio
async def test_exec_feed_nonzero_exit_ends_quietly():
    events = [event async for event in exec_feed("auto", "echo boom >&2; exit 42")]
    assert events == []


# ---------------------------------------------------------------------------
# FeedTransport
# ---------------------------------------------------------------------------

class _Callbacks:
    def __init__(self):
        self.opened = 0
        self.events = []
        self.errors = []

    def on_open(self):
        self.opened += 1

    def subscribe(self, transport):
        return transport.subscribe(self.events.append, self.errors.append, self.on_open)


async def _settle():
    for _ in range(10):
        await asyncio.sleep(0)


class TestFeedTransport:
    @pytest.mark.asyncio
    async def test_finite_feed_reports_closed(self):
        async def source():
            yield {"type": "server.connected", "properties": {}}
            yield {"type": "todo.updated", "properties": {}}

        transport = FeedTransport(source, name="test")
        callbacks = _Callbacks()
        callbacks.subscribe(transport)
        await _settle()

        assert callbacks.opened == 1
        assert [e["type"] for e in callbacks.events] == ["server.connected", "todo.updated"]
        assert len(callbacks.errors) == 1
        assert isinstance(callbacks.errors[0], FeedClosed)
        assert transport.subscriptions == 1

    @pytest.mark.asyncio
    async def test_source_error_reported(self):
        async def source():
            yield {"type": "server.connected", "properties": {}}
            raise ConnectionResetError("peer went away")

        callbacks = _Callbacks()
        callbacks.subscribe(FeedTransport(source))
        await _settle()

        assert len(callbacks.events) == 1
        assert isinstance(callbacks.errors[0], ConnectionResetError)

    @pytest.mark.asyncio
    async def test_failing_source_never_opens(self):
        async def source():
            raise ConnectionRefusedError("refused")
            yield

        callbacks = _Callbacks()
        callbacks.subscribe(FeedTransport(source))
        await _settle()

        assert callbacks.opened == 0
        assert callbacks.events == []
        assert isinstance(callbacks.errors[0], ConnectionRefusedError)

    @pytest.mark.asyncio
    async def test_ended_without_events_never_opens(self):
        async def source():
            return
            yield

        callbacks = _Callbacks()
        callbacks.subscribe(FeedTransport(source, name="empty"))
        await _settle()

        assert callbacks.opened == 0
        assert isinstance(callbacks.errors[0], FeedClosed)

    @pytest.mark.asyncio
    async def test_open_marker_opens_without_event(self):
        gate = asyncio.Event()

        async def source():
            yield FEED_OPEN
            await gate.wait()
            yield {"type": "server.connected", "properties": {}}

        callbacks = _Callbacks()
        unsubscribe = callbacks.subscribe(FeedTransport(source))
        await _settle()

        assert callbacks.opened == 1
        assert callbacks.events == []

        gate.set()
        await _settle()
        assert callbacks.opened == 1
        assert [e["type"] for e in callbacks.events] == ["server.connected"]
        unsubscribe()

    @pytest.mark.asyncio
    async def test_unsubscribe_is_silent(self):
        gate = asyncio.Event()

        async def source():
            yield {"type": "server.connected", "properties": {}}
            await gate.wait()
            yield {"type": "todo.updated", "properties": {}}

        callbacks = _Callbacks()
        unsubscribe = callbacks.subscribe(FeedTransport(source))
        await _settle()
        unsubscribe()
        gate.set()
        await _settle()

        assert len(callbacks.events) == 1
        assert callbacks.errors == []
        unsubscribe()

    @pytest.mark.asyncio
    async def test_each_subscription_opens_new_source(self):
        opened = []

        async def source():
            opened.append(True)
            yield {"type": "server.connected", "properties": {}}

        transport = FeedTransport(source)
        _Callbacks().subscribe(transport)
        _Callbacks().subscribe(transport)
        await _settle()

        assert len(opened) == 2
        assert transport.subscriptions == 2


class TestFeedFactory:
    def test_demo(self):
        assert feed_factory("demo") is demo_feed

    def test_stdin(self):
        assert callable(feed_factory("stdin", "jsonl"))

    def test_file_and_exec(self):
        assert callable(feed_factory("file", {"format": "jsonl", "path": "/tmp/events.jsonl"}))
        assert callable(feed_factory("exec", {"format": "sse", "cmd": "true"}))

    def test_unknown(self):
        with pytest.raises(ValueError):
            feed_factory("carrier-pigeon")
