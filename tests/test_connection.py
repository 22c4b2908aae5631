"""Tests for the connection lifecycle."""

import pytest

from sessionsync.connection import ConnectionManager
from sessionsync.events import SessionState, SessionStatus, StreamStatus
from sessionsync.feeds import FeedTransport

SID = "ses_0000000001"


async def _connect(manager, scheduler):
    manager.open()
    await scheduler.advance(0.1)


class TestStart:
    @pytest.mark.asyncio
    async def test_open_connects_after_start_delay(self, manager, scheduler, transport, backend, recorder):
        manager.open()
        assert transport.subscriptions == []

        await scheduler.advance(0.1)
        assert len(transport.subscriptions) == 1
        assert manager.status is StreamStatus.CONNECTED
        assert recorder.status_names == ["connecting", "connected"]
        assert backend.count("check_connection") == 1
        assert backend.count("poll_session_status") == 1

    @pytest.mark.asyncio
    async def test_open_resyncs_current_session(self, manager, scheduler, store, backend):
        store.current_session_id = SID
        await _connect(manager, scheduler)
        await scheduler.advance(0.1)

        assert ("fetch_messages", SID, 200) in backend.calls
        assert ("fetch_session", SID, None) in backend.calls

    @pytest.mark.asyncio
    async def test_events_reach_dispatcher(self, manager, scheduler, store, transport):
        await _connect(manager, scheduler)
        transport.current.emit("session.status", sessionID=SID, status="busy")
        assert store.get_status(SID).type is SessionState.BUSY

    @pytest.mark.asyncio
    async def test_start_while_hidden_is_held(self, manager, scheduler, transport, recorder):
        manager.environment.visible = False
        await _connect(manager, scheduler)

        assert transport.subscriptions == []
        assert manager.pending_resume
        assert recorder.statuses[-1] == (StreamStatus.PAUSED, "Paused while hidden")

    @pytest.mark.asyncio
    async def test_subscribe_failure_schedules_reconnect(self, store, backend, scheduler, recorder):
        class BrokenTransport:
            def subscribe(self, on_event, on_error, on_open):
                raise OSError("refused")

        manager = ConnectionManager(
            BrokenTransport(), store, backend, scheduler=scheduler, hooks=recorder.hooks(), jitter=lambda: 0.0,
        )
        await _connect(manager, scheduler)

        assert manager.status is StreamStatus.RECONNECTING
        assert manager.reconnect_scheduled
        assert manager.last_reconnect_delay == 1.0

    @pytest.mark.asyncio
    async def test_close(self, manager, scheduler, transport, recorder):
        await _connect(manager, scheduler)
        subscription = transport.current
        manager.close()

        assert subscription.closed
        assert not manager.subscribed
        assert recorder.statuses[-1] == (StreamStatus.IDLE, None)

        manager.schedule_reconnect()
        assert not manager.reconnect_scheduled
        assert scheduler.pending_timers == []


class TestReconnect:
    @pytest.mark.asyncio
    async def test_backoff_sequence(self, manager, scheduler, transport, recorder):
        transport.auto_open = False
        await _connect(manager, scheduler)

        delays = []
        for _ in range(5):
            transport.current.fail()
            delays.append(manager.last_reconnect_delay)
            await scheduler.advance(manager.last_reconnect_delay)

        assert delays == [1.0, 2.0, 4.0, 2.0, 4.0]
        assert len(transport.subscriptions) == 6
        assert (StreamStatus.RECONNECTING, "Retrying (5)") in recorder.statuses

        transport.current.on_open()
        assert manager.status is StreamStatus.CONNECTED
        assert manager.state.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_refused_feed_backs_off_without_connecting(self, store, backend, scheduler, recorder):
        async def refused():
            raise ConnectionRefusedError("refused")
            yield

        manager = ConnectionManager(
            FeedTransport(refused, name="refused"), store, backend,
            scheduler=scheduler, hooks=recorder.hooks(), jitter=lambda: 0.0,
        )
        await _connect(manager, scheduler)

        delays = []
        for _ in range(5):
            delays.append(manager.last_reconnect_delay)
            await scheduler.advance(manager.last_reconnect_delay)

        assert delays == [1.0, 2.0, 4.0, 2.0, 4.0]
        assert "connected" not in recorder.status_names
        assert backend.count("check_connection") == 0
        manager.close()

    @pytest.mark.asyncio
    async def test_backoff_caps(self, manager, scheduler, transport):
        transport.auto_open = False
        await _connect(manager, scheduler)
        manager.state.reconnect_attempts = 10

        transport.current.fail()
        assert manager.last_reconnect_delay == 32.0

    @pytest.mark.asyncio
    async def test_jitter_added(self, store, backend, scheduler, transport):
        transport.auto_open = False
        manager = ConnectionManager(transport, store, backend, scheduler=scheduler, jitter=lambda: 0.2)
        await _connect(manager, scheduler)
        transport.current.fail()
        assert manager.last_reconnect_delay == pytest.approx(1.2)

    @pytest.mark.asyncio
    async def test_single_pending_reconnect(self, manager, scheduler, transport):
        await _connect(manager, scheduler)
        transport.current.fail()
        transport.current.fail()
        manager.schedule_reconnect("again")

        assert manager.state.reconnect_attempts == 1
        await scheduler.advance(1.0)
        assert len(transport.subscriptions) == 2

    @pytest.mark.asyncio
    async def test_stale_subscription_ignored(self, manager, scheduler, store, transport):
        await _connect(manager, scheduler)
        old = transport.current
        old.fail()
        await scheduler.advance(1.0)

        assert old.closed
        old.emit("session.status", sessionID=SID, status="busy")
        old.fail()
        assert store.get_status(SID) is None
        assert not manager.reconnect_scheduled

    @pytest.mark.asyncio
    async def test_reconnect_while_offline_is_held(self, manager, scheduler, transport, recorder):
        await _connect(manager, scheduler)
        manager.environment.online = False
        transport.current.fail()

        assert not manager.reconnect_scheduled
        assert manager.pending_resume
        assert recorder.statuses[-1] == (StreamStatus.OFFLINE, "Waiting for network")


class TestStallRecovery:
    @pytest.mark.asyncio
    async def test_busy_without_messages_recovers(self, manager, scheduler, transport, backend, recorder):
        await _connect(manager, scheduler)
        transport.current.emit("session.status", sessionID=SID, status={"type": "busy"})

        await scheduler.advance(2.0)
        assert backend.calls.count(("fetch_messages", SID, 200)) == 1
        assert recorder.statuses[-1] == (StreamStatus.RECONNECTING, "No message events after busy status")

    @pytest.mark.asyncio
    async def test_message_before_timeout_cancels(self, manager, scheduler, transport, backend):
        await _connect(manager, scheduler)
        transport.current.emit("session.status", sessionID=SID, status={"type": "busy"})
        await scheduler.advance(1.0)
        transport.current.emit("message.part.updated", part={
            "id": "prt_1", "type": "text", "text": "hi", "sessionID": SID, "messageID": "msg_0000000001",
        })

        await scheduler.advance(5.0)
        assert backend.count("fetch_messages") == 0
        assert manager.status is StreamStatus.CONNECTED


class TestEnvironment:
    @pytest.mark.asyncio
    async def test_pause_and_resume(self, manager, scheduler, transport, backend, recorder):
        await _connect(manager, scheduler)
        first = transport.current

        manager.on_visibility_change(False)
        assert manager.subscribed
        assert manager.status is StreamStatus.CONNECTED

        manager.on_offline()
        assert manager.status is StreamStatus.OFFLINE
        assert first.closed

        manager.on_online()
        assert manager.status is StreamStatus.PAUSED
        assert len(transport.subscriptions) == 1

        manager.on_visibility_change(True)
        await scheduler.settle()
        assert len(transport.subscriptions) == 2
        assert manager.status is StreamStatus.CONNECTED
        assert (StreamStatus.CONNECTING, "Resuming stream") in recorder.statuses
        # A resumed stream reloads everything it may have missed.
        assert backend.count("fetch_sessions") == 1

    @pytest.mark.asyncio
    async def test_online_restarts_stream(self, manager, scheduler, transport, recorder):
        await _connect(manager, scheduler)
        manager.on_offline()
        manager.on_online()

        assert len(transport.subscriptions) == 2
        assert (StreamStatus.CONNECTING, "Network restored") in recorder.statuses
        assert manager.status is StreamStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_focus_with_live_stream_is_a_no_op(self, manager, scheduler, transport):
        await _connect(manager, scheduler)
        await scheduler.advance(5.0)
        manager.on_focus()
        assert len(transport.subscriptions) == 1

    @pytest.mark.asyncio
    async def test_focus_while_hidden_ignored(self, manager, scheduler, transport):
        await _connect(manager, scheduler)
        manager.environment.visible = False
        manager.on_focus()
        assert len(transport.subscriptions) == 1

    @pytest.mark.asyncio
    async def test_focus_after_silence_reconnects(self, manager, scheduler, transport, backend):
        await _connect(manager, scheduler)
        await scheduler.advance(46.0)

        manager.on_focus()
        await scheduler.settle()
        assert len(transport.subscriptions) == 2
        assert backend.count("fetch_sessions") >= 1

    @pytest.mark.asyncio
    async def test_page_hide_and_show(self, manager, scheduler, transport, recorder):
        await _connect(manager, scheduler)
        manager.on_page_hide()
        assert transport.current.closed
        assert recorder.statuses[-1] == (StreamStatus.PAUSED, "Paused while hidden")

        manager.on_page_show(persisted=True)
        assert len(transport.subscriptions) == 2
        assert manager.status is StreamStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_offline_cancels_pending_reconnect(self, manager, scheduler, transport):
        await _connect(manager, scheduler)
        transport.current.fail()
        assert manager.reconnect_scheduled

        manager.on_offline()
        assert not manager.reconnect_scheduled
        await scheduler.advance(5.0)
        assert len(transport.subscriptions) == 1


class TestStaleness:
    @pytest.mark.asyncio
    async def test_bootstrap_if_stale(self, manager, scheduler, backend):
        assert not manager.maybe_bootstrap_if_stale("test")

        await scheduler.advance(26.0)
        assert manager.maybe_bootstrap_if_stale("test")
        assert not manager.maybe_bootstrap_if_stale("test")
        await scheduler.settle()
        assert backend.count("fetch_sessions") == 1

    @pytest.mark.asyncio
    async def test_watchdog_probes_silent_stream(self, manager, scheduler, backend, recorder):
        await _connect(manager, scheduler)

        await scheduler.advance(40.0)
        assert backend.count("check_health") == 0

        await scheduler.advance(10.0)
        assert backend.count("check_health") == 1
        assert manager.reconnect_scheduled
        assert recorder.statuses[-1] == (StreamStatus.RECONNECTING, "Refreshing stalled stream")

    @pytest.mark.asyncio
    async def test_watchdog_probe_failure_still_reconnects(self, manager, scheduler, backend):
        async def broken():
            raise ConnectionError("down")

        backend.check_health = broken
        await _connect(manager, scheduler)
        await scheduler.advance(50.0)
        assert manager.reconnect_scheduled

    @pytest.mark.asyncio
    async def test_watchdog_polls_while_busy(self, manager, scheduler, store, backend):
        await _connect(manager, scheduler)
        store.set_status(SID, SessionStatus(SessionState.RETRY))
        polls = backend.count("poll_session_status")

        await scheduler.advance(10.0)
        assert backend.count("poll_session_status") == polls + 1

    @pytest.mark.asyncio
    async def test_watchdog_idle_while_hidden(self, manager, scheduler, backend):
        await _connect(manager, scheduler)
        manager.environment.visible = False
        await scheduler.advance(60.0)
        assert backend.count("check_health") == 0
