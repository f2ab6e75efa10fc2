"""Tests for the sync orchestrator.

Covers:
- Session transitions (login / register / restore / logout)
- Single-slot cycle guard (AlreadyInProgress)
- One refresh-and-retry on a rejected access token, then AuthExpired
- Periodic timer: single timer, fixed ticks, survives failures, stop semantics
- dispose() idempotence
- Account switch: pull cursor reset, stale cycles leave a new session alone
- Pending change count in status, first sync right after login
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from notesync.client.cycle import CycleOutcome, MemoryChangeStore, SyncChange
from notesync.client.gateway import AccessTokenRejected, SyncGatewayClient
from notesync.client.orchestrator import SyncConfig, SyncOrchestrator
from notesync.client.session_store import MemorySessionStore, SyncSession
from notesync.constants import BridgeEvent, ErrorKind, SyncOperation, SyncState
from notesync.errors import InvalidCredentials, InvalidRefreshToken, NetworkOrTimeout

LOGIN_BODY = {
    "user": {"id": 1, "email": "alice@example.com"},
    "accessToken": "at-1",
    "refreshToken": "rt-1",
}


class FakeCycle:
    """Scripted stand-in for HttpSyncCycle."""

    def __init__(self, *outcomes, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls: list[str] = []

    async def run(self, access_token: str) -> CycleOutcome:
        self.calls.append(access_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return CycleOutcome(pulled=1, pushed=2)


def _make_orchestrator(cycle=None, interval: float = 180.0, store=None, **kwargs):
    gateway = AsyncMock(spec=SyncGatewayClient)
    gateway.login.return_value = dict(LOGIN_BODY)
    gateway.register.return_value = dict(LOGIN_BODY)
    gateway.refresh.return_value = "at-2"
    kwargs.setdefault("start_periodic_on_login", False)

    orchestrator = SyncOrchestrator(
        SyncConfig(server_url="http://test", interval_seconds=interval),
        gateway=gateway,
        session_store=store or MemorySessionStore(device_id="device-1"),
        cycle=cycle or FakeCycle(),
        device_name="Test Box",
        **kwargs,
    )
    events: list[tuple[BridgeEvent, dict]] = []
    orchestrator.subscribe(lambda event, payload: events.append((event, payload)))
    return orchestrator, gateway, events


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class TestSession:
    """login / register / restore / logout transitions."""

    @pytest.mark.asyncio
    async def test_starts_disconnected(self):
        orchestrator, _, _ = _make_orchestrator()
        status = await orchestrator.get_status()
        assert status.state == SyncState.DISCONNECTED
        assert status.is_authenticated is False
        assert status.is_running is False

    @pytest.mark.asyncio
    async def test_login_moves_to_idle_and_persists(self):
        store = MemorySessionStore(device_id="device-1")
        orchestrator, gateway, events = _make_orchestrator(store=store)

        result = await orchestrator.login("alice@example.com", "password123")

        assert result == {"userId": 1, "email": "alice@example.com"}
        gateway.login.assert_awaited_once_with("alice@example.com", "password123", "device-1", "Test Box")
        assert orchestrator.state == SyncState.IDLE
        assert store.load().refresh_token == "rt-1"
        assert (BridgeEvent.AUTH_STATE_CHANGED, {"isAuthenticated": True, "email": "alice@example.com"}) in events

    @pytest.mark.asyncio
    async def test_login_failure_stays_disconnected(self):
        orchestrator, gateway, events = _make_orchestrator()
        gateway.login.side_effect = InvalidCredentials()

        with pytest.raises(InvalidCredentials):
            await orchestrator.login("alice@example.com", "nope")

        assert orchestrator.state == SyncState.DISCONNECTED
        assert events == []

    @pytest.mark.asyncio
    async def test_register_behaves_like_login(self):
        orchestrator, gateway, _ = _make_orchestrator()
        await orchestrator.register("alice@example.com", "password123")
        gateway.register.assert_awaited_once()
        assert (await orchestrator.get_status()).user_email == "alice@example.com"

    @pytest.mark.asyncio
    async def test_login_starts_periodic_when_enabled(self):
        orchestrator, _, _ = _make_orchestrator(start_periodic_on_login=True)
        await orchestrator.login("alice@example.com", "password123")
        assert (await orchestrator.get_status()).periodic_enabled is True
        await orchestrator.dispose()

    @pytest.mark.asyncio
    async def test_login_runs_first_sync_without_waiting_for_timer(self):
        cycle = FakeCycle()
        orchestrator, _, _ = _make_orchestrator(cycle, start_periodic_on_login=True)

        await orchestrator.login("alice@example.com", "password123")
        assert (await orchestrator.get_status()).is_running is True

        await orchestrator.dispose()
        assert cycle.calls == ["at-1"]
        assert (await orchestrator.get_status()).last_sync_at is not None

    @pytest.mark.asyncio
    async def test_restore_picks_up_saved_session(self):
        store = MemorySessionStore(device_id="device-1")
        store.save(SyncSession(user_id=1, email="alice@example.com", access_token="a", refresh_token="r"))
        orchestrator, _, _ = _make_orchestrator(store=store)

        assert await orchestrator.restore() is True
        assert orchestrator.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_restore_without_session(self):
        orchestrator, _, _ = _make_orchestrator()
        assert await orchestrator.restore() is False
        assert orchestrator.state == SyncState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_logout_revokes_and_clears(self):
        store = MemorySessionStore(device_id="device-1")
        orchestrator, gateway, events = _make_orchestrator(store=store)
        await orchestrator.login("alice@example.com", "password123")

        await orchestrator.logout()

        gateway.logout.assert_awaited_once_with("rt-1")
        assert orchestrator.state == SyncState.DISCONNECTED
        assert store.load() is None
        assert store.device_id() == "device-1"
        assert events[-1] == (BridgeEvent.AUTH_STATE_CHANGED, {"isAuthenticated": False, "email": None})

    @pytest.mark.asyncio
    async def test_logout_clears_locally_when_server_unreachable(self):
        orchestrator, gateway, _ = _make_orchestrator()
        gateway.logout.side_effect = NetworkOrTimeout()
        await orchestrator.login("alice@example.com", "password123")

        await orchestrator.logout()

        assert (await orchestrator.get_status()).is_authenticated is False

    @pytest.mark.asyncio
    async def test_logout_resets_pull_cursor(self):
        changes = MemoryChangeStore(cursor=5000)
        orchestrator, _, _ = _make_orchestrator(change_store=changes)
        await orchestrator.login("alice@example.com", "password123")

        await orchestrator.logout()

        assert changes.cursor is None

    @pytest.mark.asyncio
    async def test_status_reports_pending_changes(self):
        changes = MemoryChangeStore()
        changes.record(SyncChange("note", "n1", SyncOperation.CREATE, 1000))
        changes.record(SyncChange("note", "n2", SyncOperation.UPDATE, 2000))
        orchestrator, _, _ = _make_orchestrator(change_store=changes)

        status = await orchestrator.get_status()

        assert status.pending_changes == 2
        assert status.to_dict()["pendingChanges"] == 2


# ---------------------------------------------------------------------------
# Manual sync
# ---------------------------------------------------------------------------


class TestManualSync:
    """manual_sync() results, guard and status bookkeeping."""

    @pytest.mark.asyncio
    async def test_requires_login(self):
        orchestrator, _, _ = _make_orchestrator()
        result = await orchestrator.manual_sync()
        assert result.success is False
        assert result.error_kind == ErrorKind.AUTH_EXPIRED

    @pytest.mark.asyncio
    async def test_success_records_status(self):
        cycle = FakeCycle()
        orchestrator, _, events = _make_orchestrator(cycle)
        await orchestrator.login("alice@example.com", "password123")

        result = await orchestrator.manual_sync()

        assert result.success is True
        assert (result.pulled, result.pushed) == (1, 2)
        assert cycle.calls == ["at-1"]
        status = await orchestrator.get_status()
        assert status.state == SyncState.IDLE
        assert status.last_sync_at is not None
        assert status.last_error is None

        names = [e for e, _ in events]
        assert names[-3:] == [
            BridgeEvent.SYNC_STATUS_CHANGED,
            BridgeEvent.SYNC_COMPLETED,
            BridgeEvent.SYNC_STATUS_CHANGED,
        ]

    @pytest.mark.asyncio
    async def test_second_call_while_running_is_rejected(self):
        cycle = FakeCycle(delay=0.05)
        orchestrator, _, _ = _make_orchestrator(cycle)
        await orchestrator.login("alice@example.com", "password123")

        first = asyncio.create_task(orchestrator.manual_sync())
        await asyncio.sleep(0)
        assert (await orchestrator.get_status()).state == SyncState.SYNCING
        assert (await orchestrator.get_status()).is_running is True

        second = await orchestrator.manual_sync()
        assert second.success is False
        assert second.error_kind == ErrorKind.ALREADY_IN_PROGRESS

        assert (await first).success is True
        assert len(cycle.calls) == 1
        assert (await orchestrator.get_status()).is_running is False

    @pytest.mark.asyncio
    async def test_network_failure_keeps_session(self):
        orchestrator, _, events = _make_orchestrator(FakeCycle(NetworkOrTimeout("Request timed out")))
        await orchestrator.login("alice@example.com", "password123")

        result = await orchestrator.manual_sync()

        assert result.error_kind == ErrorKind.NETWORK_OR_TIMEOUT
        status = await orchestrator.get_status()
        assert status.state == SyncState.IDLE
        assert status.is_authenticated is True
        assert status.last_error == "Request timed out"
        assert (BridgeEvent.SYNC_ERROR, {"error": "Request timed out", "kind": "network_or_timeout"}) in events

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_internal_error(self):
        orchestrator, _, _ = _make_orchestrator(FakeCycle(RuntimeError("disk full")))
        await orchestrator.login("alice@example.com", "password123")

        result = await orchestrator.manual_sync()

        assert result.error_kind == ErrorKind.INTERNAL_ERROR
        assert orchestrator.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_break_sync(self):
        orchestrator, _, _ = _make_orchestrator()

        def broken(event, payload):
            raise RuntimeError("listener bug")

        orchestrator.subscribe(broken)
        await orchestrator.login("alice@example.com", "password123")
        assert (await orchestrator.manual_sync()).success is True


# ---------------------------------------------------------------------------
# Token refresh during a cycle
# ---------------------------------------------------------------------------


class TestRefreshDuringSync:
    """A rejected access token is refreshed once, then the session expires."""

    @pytest.mark.asyncio
    async def test_refresh_then_retry_succeeds(self):
        store = MemorySessionStore(device_id="device-1")
        cycle = FakeCycle(AccessTokenRejected(403), CycleOutcome(pulled=5))
        orchestrator, gateway, _ = _make_orchestrator(cycle, store=store)
        await orchestrator.login("alice@example.com", "password123")

        result = await orchestrator.manual_sync()

        assert result.success is True
        assert result.pulled == 5
        gateway.refresh.assert_awaited_once_with("rt-1")
        assert cycle.calls == ["at-1", "at-2"]
        assert store.load().access_token == "at-2"

    @pytest.mark.asyncio
    async def test_refresh_rejected_expires_session(self):
        cycle = FakeCycle(AccessTokenRejected(403))
        orchestrator, gateway, events = _make_orchestrator(cycle, interval=60)
        gateway.refresh.side_effect = InvalidRefreshToken()
        await orchestrator.login("alice@example.com", "password123")
        orchestrator.start_periodic_sync()

        result = await orchestrator.manual_sync()

        assert result.success is False
        assert result.error_kind == ErrorKind.AUTH_EXPIRED
        status = await orchestrator.get_status()
        assert status.state == SyncState.DISCONNECTED
        assert status.is_authenticated is False
        assert status.periodic_enabled is False
        assert (BridgeEvent.AUTH_STATE_CHANGED, {"isAuthenticated": False, "email": None}) in events

    @pytest.mark.asyncio
    async def test_second_rejection_expires_session(self):
        cycle = FakeCycle(AccessTokenRejected(403), AccessTokenRejected(401))
        orchestrator, gateway, _ = _make_orchestrator(cycle)
        await orchestrator.login("alice@example.com", "password123")

        result = await orchestrator.manual_sync()

        assert result.error_kind == ErrorKind.AUTH_EXPIRED
        assert gateway.refresh.await_count == 1
        assert orchestrator.state == SyncState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_refresh_network_failure_is_not_auth_expiry(self):
        orchestrator, gateway, _ = _make_orchestrator(FakeCycle(AccessTokenRejected(403)))
        gateway.refresh.side_effect = NetworkOrTimeout()
        await orchestrator.login("alice@example.com", "password123")

        result = await orchestrator.manual_sync()

        assert result.error_kind == ErrorKind.NETWORK_OR_TIMEOUT
        assert (await orchestrator.get_status()).is_authenticated is True

    @pytest.mark.asyncio
    async def test_stale_cycle_does_not_sign_out_new_session(self):
        """A cycle from before logout + login must not end the newer session."""
        cycle = FakeCycle(AccessTokenRejected(403), delay=0.05)
        orchestrator, gateway, _ = _make_orchestrator(cycle)
        gateway.refresh.side_effect = InvalidRefreshToken()
        await orchestrator.login("alice@example.com", "password123")

        running = asyncio.create_task(orchestrator.manual_sync())
        await asyncio.sleep(0)
        await orchestrator.logout()
        gateway.login.return_value = {
            "user": {"id": 2, "email": "bob@example.com"},
            "accessToken": "bob-at",
            "refreshToken": "bob-rt",
        }
        await orchestrator.login("bob@example.com", "password123")
        orchestrator.start_periodic_sync()

        result = await running

        assert result.error_kind == ErrorKind.AUTH_EXPIRED
        gateway.refresh.assert_awaited_once_with("rt-1")
        status = await orchestrator.get_status()
        assert status.is_authenticated is True
        assert status.user_email == "bob@example.com"
        assert status.state == SyncState.IDLE
        assert status.periodic_enabled is True
        assert status.last_error is None
        await orchestrator.dispose()


# ---------------------------------------------------------------------------
# Periodic timer
# ---------------------------------------------------------------------------


class TestPeriodicSync:
    """start/stop semantics of the periodic timer."""

    @pytest.mark.asyncio
    async def test_double_start_keeps_single_timer(self):
        cycle = FakeCycle()
        orchestrator, _, _ = _make_orchestrator(cycle, interval=0.2)
        await orchestrator.login("alice@example.com", "password123")

        orchestrator.start_periodic_sync()
        timer = orchestrator._periodic_task
        orchestrator.start_periodic_sync()
        assert orchestrator._periodic_task is timer

        await asyncio.sleep(0.7)
        orchestrator.stop_periodic_sync()

        assert len(cycle.calls) == 3
        await orchestrator.dispose()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        orchestrator, _, _ = _make_orchestrator(interval=0.1)
        await orchestrator.login("alice@example.com", "password123")
        orchestrator.start_periodic_sync()

        orchestrator.stop_periodic_sync()
        orchestrator.stop_periodic_sync()

        assert (await orchestrator.get_status()).periodic_enabled is False

    @pytest.mark.asyncio
    async def test_timer_survives_failed_cycles(self):
        cycle = FakeCycle(NetworkOrTimeout(), NetworkOrTimeout(), NetworkOrTimeout())
        orchestrator, _, _ = _make_orchestrator(cycle, interval=0.05)
        await orchestrator.login("alice@example.com", "password123")

        orchestrator.start_periodic_sync()
        await asyncio.sleep(0.3)
        orchestrator.stop_periodic_sync()

        assert len(cycle.calls) >= 4
        assert (await orchestrator.get_status()).last_error is None
        await orchestrator.dispose()

    @pytest.mark.asyncio
    async def test_tick_during_running_cycle_is_skipped(self):
        cycle = FakeCycle(delay=0.25)
        orchestrator, _, _ = _make_orchestrator(cycle, interval=0.05)
        await orchestrator.login("alice@example.com", "password123")

        orchestrator.start_periodic_sync()
        await asyncio.sleep(0.2)
        orchestrator.stop_periodic_sync()

        assert len(cycle.calls) == 1
        await orchestrator.dispose()

    @pytest.mark.asyncio
    async def test_stop_does_not_abort_running_cycle(self):
        cycle = FakeCycle(delay=0.1)
        orchestrator, _, _ = _make_orchestrator(cycle, interval=0.05)
        await orchestrator.login("alice@example.com", "password123")

        orchestrator.start_periodic_sync()
        await asyncio.sleep(0.08)
        assert (await orchestrator.get_status()).is_running is True
        orchestrator.stop_periodic_sync()

        await asyncio.sleep(0.15)
        status = await orchestrator.get_status()
        assert status.is_running is False
        assert status.last_sync_at is not None


# ---------------------------------------------------------------------------
# Reporting and teardown
# ---------------------------------------------------------------------------


class TestConfigAndDispose:
    @pytest.mark.asyncio
    async def test_get_config(self):
        orchestrator, _, _ = _make_orchestrator(interval=42)
        config = orchestrator.get_config()
        assert config.to_dict() == {"serverUrl": "http://test", "intervalSeconds": 42}

    @pytest.mark.asyncio
    async def test_dispose_twice(self):
        orchestrator, gateway, _ = _make_orchestrator(interval=0.1)
        await orchestrator.login("alice@example.com", "password123")
        orchestrator.start_periodic_sync()

        await orchestrator.dispose()
        await orchestrator.dispose()

        gateway.close.assert_awaited_once()
        assert (await orchestrator.get_status()).periodic_enabled is False
        orchestrator.start_periodic_sync()
        assert (await orchestrator.get_status()).periodic_enabled is False

    @pytest.mark.asyncio
    async def test_dispose_waits_for_in_flight_cycle(self):
        cycle = FakeCycle(delay=0.05)
        orchestrator, _, _ = _make_orchestrator(cycle)
        await orchestrator.login("alice@example.com", "password123")

        running = asyncio.create_task(orchestrator.manual_sync())
        await asyncio.sleep(0)
        await orchestrator.dispose()

        assert cycle.calls == ["at-1"]
        assert (await orchestrator.get_status()).last_sync_at is not None
        assert (await running).success is True
