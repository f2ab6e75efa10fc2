"""Sync orchestrator: session state, sync cycles and the periodic timer.

State machine::

    DISCONNECTED --login/register/restore--> IDLE
    IDLE --manual_sync / periodic tick--> SYNCING --done--> IDLE
    SYNCING --auth expired--> DISCONNECTED
    any --logout--> DISCONNECTED

At most one cycle runs at a time. A cycle that has started always runs to
completion: stopping the timer or disposing the orchestrator never cancels
it midway.
"""

from __future__ import annotations

import asyncio
import logging
import platform
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from notesync.client.cycle import ChangeStore, CycleOutcome, HttpSyncCycle, MemoryChangeStore
from notesync.client.gateway import AccessTokenRejected, SyncGatewayClient
from notesync.client.session_store import (
    JsonFileSessionStore,
    MemorySessionStore,
    SessionStore,
    SyncSession,
)
from notesync.config import Settings, get_settings
from notesync.constants import BridgeEvent, ErrorKind, SyncState
from notesync.errors import (
    AlreadyInProgress,
    AuthExpired,
    InternalError,
    InvalidRefreshToken,
    NoteSyncError,
)

logger = logging.getLogger(__name__)

Listener = Callable[[BridgeEvent, dict[str, Any]], None]


@dataclass(frozen=True)
class SyncConfig:
    server_url: str
    interval_seconds: float

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SyncConfig:
        settings = settings or get_settings()
        return cls(server_url=settings.SYNC_SERVER_URL, interval_seconds=settings.SYNC_INTERVAL_SECONDS)

    def to_dict(self) -> dict[str, Any]:
        return {"serverUrl": self.server_url, "intervalSeconds": self.interval_seconds}


@dataclass
class SyncStatus:
    state: SyncState
    is_running: bool
    is_authenticated: bool
    last_sync_at: datetime | None = None
    last_error: str | None = None
    periodic_enabled: bool = False
    user_email: str | None = None
    pending_changes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": str(self.state),
            "isRunning": self.is_running,
            "isAuthenticated": self.is_authenticated,
            "lastSyncAt": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "lastError": self.last_error,
            "periodicEnabled": self.periodic_enabled,
            "userEmail": self.user_email,
            "pendingChanges": self.pending_changes,
        }


@dataclass
class SyncResult:
    success: bool
    pulled: int = 0
    pushed: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None
    finished_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def failed(cls, error: NoteSyncError) -> SyncResult:
        return cls(success=False, error=error.message, error_kind=error.kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "pulled": self.pulled,
            "pushed": self.pushed,
            "error": self.error,
            "errorKind": str(self.error_kind) if self.error_kind else None,
            "finishedAt": self.finished_at.isoformat(),
        }


class SyncOrchestrator:
    """Owns the client session and drives sync cycles.

    Args:
        config: Server URL and periodic interval.
        gateway: HTTP client; built from *config* when omitted.
        session_store: Token persistence; ``SYNC_SESSION_FILE`` or in-memory when omitted.
        change_store: Local change source for the default cycle; also reports
            the pending count and is reset on logout.
        cycle: Anything with ``async run(access_token) -> CycleOutcome``.
        device_name: Name reported to the server on login/register.
        start_periodic_on_login: Start the timer after login/register/restore;
            login and register also run one cycle straight away.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        gateway: SyncGatewayClient | None = None,
        session_store: SessionStore | None = None,
        change_store: ChangeStore | None = None,
        cycle: Any = None,
        device_name: str | None = None,
        start_periodic_on_login: bool = True,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._config = config or SyncConfig.from_settings(settings)
        self._gateway = gateway or SyncGatewayClient(
            self._config.server_url,
            timeout=settings.SYNC_REQUEST_TIMEOUT_SECONDS,
        )
        if session_store is None:
            session_store = (
                JsonFileSessionStore(settings.SYNC_SESSION_FILE)
                if settings.SYNC_SESSION_FILE
                else MemorySessionStore()
            )
        self._store = session_store
        self._changes = change_store or MemoryChangeStore()
        self._cycle = cycle or HttpSyncCycle(
            self._gateway,
            self._changes,
            pull_limit=settings.SYNC_PULL_LIMIT,
        )
        self._device_name = device_name or platform.node() or None
        self._start_periodic_on_login = start_periodic_on_login

        self._session: SyncSession | None = None
        self._state = SyncState.DISCONNECTED
        self._last_sync_at: datetime | None = None
        self._last_error: str | None = None
        self._in_flight: asyncio.Task[SyncResult] | None = None
        self._periodic_task: asyncio.Task[None] | None = None
        self._listeners: list[Listener] = []
        self._disposed = False

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: BridgeEvent, payload: dict[str, Any] | None = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload or {})
            except Exception:
                logger.exception("Listener failed for event %s", event)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def device_id(self) -> str:
        return self._store.device_id()

    async def login(self, email: str, password: str) -> dict[str, Any]:
        """Log in on the server and become IDLE.

        Raises:
            InvalidCredentials, ValidationError, NetworkOrTimeout, InternalError
        """
        data = await self._gateway.login(email, password, self.device_id, self._device_name)
        return self._begin_session(data)

    async def register(self, email: str, password: str) -> dict[str, Any]:
        """Create an account, then behave exactly like a successful login.

        Raises:
            Conflict, ValidationError, NetworkOrTimeout, InternalError
        """
        data = await self._gateway.register(email, password, self.device_id, self._device_name)
        return self._begin_session(data)

    def _begin_session(self, data: dict[str, Any]) -> dict[str, Any]:
        user = data.get("user") or {}
        self._session = SyncSession(
            user_id=int(user.get("id", 0)),
            email=str(user.get("email", "")),
            access_token=data["accessToken"],
            refresh_token=data["refreshToken"],
        )
        self._store.save(self._session)
        self._last_error = None
        if self._state is SyncState.DISCONNECTED:
            self._state = SyncState.IDLE

        logger.info("Signed in as %s (device %s)", self._session.email, self.device_id)
        self._notify(BridgeEvent.AUTH_STATE_CHANGED, {"isAuthenticated": True, "email": self._session.email})
        if self._start_periodic_on_login:
            self.start_periodic_sync()
            if not self._is_busy() and not self._disposed:
                # First cycle now rather than one interval later.
                self._start_cycle()
        return {"userId": self._session.user_id, "email": self._session.email}

    async def restore(self) -> bool:
        """Pick up a session persisted by an earlier run. Returns ``True`` if found."""
        session = self._store.load()
        if session is None:
            return False

        self._session = session
        self._state = SyncState.IDLE
        logger.info("Restored session for %s", session.email)
        self._notify(BridgeEvent.AUTH_STATE_CHANGED, {"isAuthenticated": True, "email": session.email})
        if self._start_periodic_on_login:
            self.start_periodic_sync()
        return True

    async def logout(self) -> None:
        """Revoke the refresh token on the server (best effort) and forget the session.

        Local state is cleared even when the server cannot be reached.
        """
        session = self._session
        self.stop_periodic_sync()
        if session is not None:
            try:
                await self._gateway.logout(session.refresh_token)
            except NoteSyncError as exc:
                logger.warning("Server logout failed, clearing local session anyway: %s", exc.message)
        await self._end_session()

    async def _end_session(self) -> None:
        self._session = None
        self._store.clear()
        await self._changes.reset()
        if self._in_flight is None:
            self._state = SyncState.DISCONNECTED
        self._notify(BridgeEvent.AUTH_STATE_CHANGED, {"isAuthenticated": False, "email": None})

    # ------------------------------------------------------------------
    # Sync cycles
    # ------------------------------------------------------------------

    def _is_busy(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def _start_cycle(self) -> asyncio.Task[SyncResult]:
        self._state = SyncState.SYNCING
        self._in_flight = asyncio.get_running_loop().create_task(self._run_cycle())
        return self._in_flight

    async def manual_sync(self) -> SyncResult:
        """Run one sync cycle now and return its result.

        Never raises for sync failures: they come back as a failed
        :class:`SyncResult` and are recorded as ``last_error``.
        """
        if self._is_busy():
            return SyncResult.failed(AlreadyInProgress())
        if self._session is None:
            return SyncResult.failed(AuthExpired("Not logged in"))
        if self._disposed:
            return SyncResult.failed(InternalError("Sync orchestrator has been disposed"))

        task = self._start_cycle()
        return await asyncio.shield(task)

    async def _run_cycle(self) -> SyncResult:
        started_with = self._session
        self._notify(BridgeEvent.SYNC_STATUS_CHANGED, {"isRunning": True})
        try:
            result = await self._cycle_with_refresh()
        except Exception:
            logger.exception("Sync cycle crashed")
            result = SyncResult.failed(InternalError())
        finally:
            self._in_flight = None
            self._state = SyncState.IDLE if self._session is not None else SyncState.DISCONNECTED

        if result.success:
            self._last_sync_at = result.finished_at
            self._last_error = None
            self._notify(
                BridgeEvent.SYNC_COMPLETED,
                {"pulled": result.pulled, "pushed": result.pushed, "timestamp": result.finished_at.isoformat()},
            )
        else:
            # A failure from before a re-login says nothing about the new session.
            if self._session is None or self._session is started_with:
                self._last_error = result.error
            self._notify(BridgeEvent.SYNC_ERROR, {"error": result.error, "kind": str(result.error_kind)})

        self._notify(BridgeEvent.SYNC_STATUS_CHANGED, {"isRunning": False})
        return result

    async def _cycle_with_refresh(self) -> SyncResult:
        session = self._session
        if session is None:
            return SyncResult.failed(AuthExpired("Not logged in"))

        try:
            try:
                outcome = await self._cycle.run(session.access_token)
            except AccessTokenRejected:
                logger.info("Access token rejected, refreshing once")
                try:
                    session.access_token = await self._gateway.refresh(session.refresh_token)
                except InvalidRefreshToken:
                    return await self._auth_expired(session)
                if self._session is session:
                    self._store.save(session)
                try:
                    outcome = await self._cycle.run(session.access_token)
                except AccessTokenRejected:
                    return await self._auth_expired(session)
        except NoteSyncError as exc:
            logger.warning("Sync cycle failed (%s): %s", exc.kind, exc.message)
            return SyncResult.failed(exc)

        return self._succeeded(outcome)

    def _succeeded(self, outcome: CycleOutcome) -> SyncResult:
        return SyncResult(success=True, pulled=outcome.pulled, pushed=outcome.pushed)

    async def _auth_expired(self, session: SyncSession) -> SyncResult:
        # A newer login may have replaced the session this cycle started with.
        if self._session is session:
            logger.warning("Session expired, signing out")
            self.stop_periodic_sync()
            await self._end_session()
        else:
            logger.info("Stale session expired during sync; current session kept")
        return SyncResult.failed(AuthExpired())

    # ------------------------------------------------------------------
    # Periodic timer
    # ------------------------------------------------------------------

    def start_periodic_sync(self) -> None:
        """Start the periodic timer. Calling it again while running does nothing."""
        if self._disposed or self._periodic_task is not None:
            return
        self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_loop())
        logger.info("Periodic sync started (every %.0fs)", self._config.interval_seconds)

    def stop_periodic_sync(self) -> None:
        """Stop the timer. An in-flight cycle still runs to completion."""
        task, self._periodic_task = self._periodic_task, None
        if task is not None:
            task.cancel()
            logger.info("Periodic sync stopped")

    async def _periodic_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self._config.interval_seconds
        while True:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            next_tick += self._config.interval_seconds

            if self._is_busy():
                logger.debug("Periodic tick skipped: sync already running")
                continue
            if self._session is None:
                continue
            # Fire and forget; the result is recorded in status.
            self._start_cycle()

    # ------------------------------------------------------------------
    # Reporting and teardown
    # ------------------------------------------------------------------

    async def get_status(self) -> SyncStatus:
        pending = await self._changes.pending_changes()
        return SyncStatus(
            state=self._state,
            is_running=self._is_busy(),
            is_authenticated=self._session is not None,
            last_sync_at=self._last_sync_at,
            last_error=self._last_error,
            periodic_enabled=self._periodic_task is not None,
            user_email=self._session.email if self._session else None,
            pending_changes=len(pending),
        )

    def get_config(self) -> SyncConfig:
        return self._config

    async def dispose(self) -> None:
        """Stop the timer, wait for any in-flight cycle and close the HTTP client.

        Safe to call more than once.
        """
        if self._disposed:
            return
        self._disposed = True
        self.stop_periodic_sync()

        in_flight = self._in_flight
        if in_flight is not None and not in_flight.done():
            await asyncio.shield(in_flight)

        self._listeners.clear()
        await self._gateway.close()
        logger.info("Sync orchestrator disposed")
