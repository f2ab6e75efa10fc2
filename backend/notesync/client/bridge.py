"""Bridge between a UI process and the sync orchestrator.

Every operation resolves to an envelope and never raises::

    {"success": True, "data": ...}
    {"success": False, "error": "..."}

Orchestrator events are forwarded to a bounded ``asyncio.Queue`` (``events``,
oldest dropped when full) and to any callbacks registered with
:meth:`ControlSurfaceBridge.subscribe`.
Event names are camelCase on this side, e.g. ``authStateChanged``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from notesync.client.orchestrator import SyncOrchestrator
from notesync.constants import BridgeEvent
from notesync.errors import InternalError, NoteSyncError

logger = logging.getLogger(__name__)

EVENT_NAMES: dict[BridgeEvent, str] = {
    BridgeEvent.AUTH_STATE_CHANGED: "authStateChanged",
    BridgeEvent.SYNC_STATUS_CHANGED: "syncStatusChanged",
    BridgeEvent.SYNC_COMPLETED: "syncCompleted",
    BridgeEvent.SYNC_ERROR: "syncError",
}

EVENT_QUEUE_SIZE = 100

EventCallback = Callable[[str, dict[str, Any]], None]


def ok(data: Any = None) -> dict[str, Any]:
    envelope: dict[str, Any] = {"success": True}
    if data is not None:
        envelope["data"] = data
    return envelope


def fail(error: str) -> dict[str, Any]:
    return {"success": False, "error": error}


class ControlSurfaceBridge:
    """Envelope-normalized facade over :class:`SyncOrchestrator`."""

    def __init__(self, orchestrator: SyncOrchestrator, event_queue_size: int = EVENT_QUEUE_SIZE) -> None:
        self._orchestrator = orchestrator
        self.events: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=event_queue_size)
        self._callbacks: list[EventCallback] = []
        self._unsubscribe = orchestrator.subscribe(self._forward)
        self._closed = False

        self._channels: dict[str, Callable[..., Awaitable[dict[str, Any]]]] = {
            "sync:login": self.login,
            "sync:register": self.register,
            "sync:logout": self.logout,
            "sync:manual": self.manual_sync,
            "sync:status": self.get_status,
            "sync:config": self.get_config,
            "sync:start-periodic": self.start_periodic_sync,
            "sync:stop-periodic": self.stop_periodic_sync,
        }

    # --- events ---

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def _forward(self, event: BridgeEvent, payload: dict[str, Any]) -> None:
        name = EVENT_NAMES[event]
        self._enqueue({"event": name, "payload": payload})
        for callback in list(self._callbacks):
            try:
                callback(name, payload)
            except Exception:
                logger.exception("Bridge callback failed for %s", name)

    def _enqueue(self, item: dict[str, Any]) -> None:
        # Nobody may be draining the queue; drop the oldest event when full.
        if self.events.full():
            self.events.get_nowait()
        self.events.put_nowait(item)

    # --- envelope ---

    async def _call(self, name: str, operation: Callable[[], Awaitable[Any]]) -> dict[str, Any]:
        try:
            data = await operation()
        except NoteSyncError as exc:
            logger.info("%s failed (%s): %s", name, exc.kind, exc.message)
            return fail(exc.message)
        except Exception:
            logger.exception("%s failed unexpectedly", name)
            return fail(InternalError().message)
        return ok(data)

    # --- operations ---

    async def login(self, email: str, password: str) -> dict[str, Any]:
        return await self._call("login", lambda: self._orchestrator.login(email, password))

    async def register(self, email: str, password: str) -> dict[str, Any]:
        return await self._call("register", lambda: self._orchestrator.register(email, password))

    async def logout(self) -> dict[str, Any]:
        return await self._call("logout", self._orchestrator.logout)

    async def manual_sync(self) -> dict[str, Any]:
        try:
            result = await self._orchestrator.manual_sync()
        except Exception:
            logger.exception("manual_sync failed unexpectedly")
            return fail(InternalError().message)
        if not result.success:
            return fail(result.error or "Sync failed")
        return ok(result.to_dict())

    async def get_status(self) -> dict[str, Any]:
        async def status() -> dict[str, Any]:
            return (await self._orchestrator.get_status()).to_dict()

        return await self._call("get_status", status)

    async def get_config(self) -> dict[str, Any]:
        async def config() -> dict[str, Any]:
            return self._orchestrator.get_config().to_dict()

        return await self._call("get_config", config)

    async def start_periodic_sync(self) -> dict[str, Any]:
        async def start() -> None:
            self._orchestrator.start_periodic_sync()

        return await self._call("start_periodic_sync", start)

    async def stop_periodic_sync(self) -> dict[str, Any]:
        async def stop() -> None:
            self._orchestrator.stop_periodic_sync()

        return await self._call("stop_periodic_sync", stop)

    async def handle(self, channel: str, *args: Any) -> dict[str, Any]:
        """Dispatch a UI request by channel name, e.g. ``handle("sync:login", email, pw)``."""
        handler = self._channels.get(channel)
        if handler is None:
            return fail(f"Unknown channel: {channel}")
        try:
            return await handler(*args)
        except TypeError as exc:
            return fail(f"Bad arguments for {channel}: {exc}")

    async def close(self) -> None:
        """Detach from the orchestrator and dispose it. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        await self._orchestrator.dispose()
