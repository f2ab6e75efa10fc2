"""One sync cycle: pull remote changes, then push local ones.

Local data lives behind :class:`ChangeStore`; the cycle only moves change
records between that store and the relay. Conflict resolution, if any, is
the store's business in ``apply_remote``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from notesync.client.gateway import SyncGatewayClient
from notesync.constants import SyncOperation
from notesync.errors import InternalError
from notesync.utils.datetime_utils import now_ms

logger = logging.getLogger(__name__)


@dataclass
class SyncChange:
    entity_type: str
    entity_id: str
    operation: SyncOperation
    timestamp: int = field(default_factory=now_ms)
    data: dict[str, Any] | None = None

    def to_wire(self) -> dict:
        return {
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "operation": str(self.operation),
            "dataJson": self.data,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_wire(cls, data: dict) -> SyncChange:
        return cls(
            entity_type=data["entityType"],
            entity_id=data["entityId"],
            operation=SyncOperation(data["operation"]),
            timestamp=int(data["timestamp"]),
            data=data.get("dataJson"),
        )


@dataclass
class CycleOutcome:
    pulled: int = 0
    pushed: int = 0


class ChangeStore(ABC):
    """Local side of the sync: outgoing changes and a pull cursor."""

    @abstractmethod
    async def pending_changes(self) -> list[SyncChange]: ...

    @abstractmethod
    async def mark_synced(self, changes: list[SyncChange]) -> None: ...

    @abstractmethod
    async def apply_remote(self, changes: list[SyncChange]) -> None: ...

    @abstractmethod
    async def get_cursor(self) -> int | None: ...

    @abstractmethod
    async def set_cursor(self, timestamp: int) -> None: ...

    @abstractmethod
    async def reset(self) -> None:
        """Forget the pull cursor so the next account starts from scratch."""


@dataclass
class MemoryChangeStore(ChangeStore):
    """In-process store, used by tests and as the default."""

    pending: list[SyncChange] = field(default_factory=list)
    applied: list[SyncChange] = field(default_factory=list)
    cursor: int | None = None

    def record(self, change: SyncChange) -> None:
        self.pending.append(change)

    async def pending_changes(self) -> list[SyncChange]:
        return list(self.pending)

    async def mark_synced(self, changes: list[SyncChange]) -> None:
        synced = {id(c) for c in changes}
        self.pending = [c for c in self.pending if id(c) not in synced]

    async def apply_remote(self, changes: list[SyncChange]) -> None:
        self.applied.extend(changes)

    async def get_cursor(self) -> int | None:
        return self.cursor

    async def set_cursor(self, timestamp: int) -> None:
        self.cursor = timestamp

    async def reset(self) -> None:
        self.cursor = None


class HttpSyncCycle:
    """Pull-then-push against the relay's ``/api/sync`` endpoints.

    A rejected access token propagates as
    :class:`~notesync.client.gateway.AccessTokenRejected`; network failures as
    :class:`~notesync.errors.NetworkOrTimeout`.
    """

    def __init__(
        self,
        gateway: SyncGatewayClient,
        store: ChangeStore,
        pull_limit: int = 1000,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._pull_limit = pull_limit

    async def run(self, access_token: str) -> CycleOutcome:
        pulled = await self._pull(access_token)
        pushed = await self._push(access_token)
        logger.info("Sync cycle finished: pulled=%d, pushed=%d", pulled, pushed)
        return CycleOutcome(pulled=pulled, pushed=pushed)

    async def _pull(self, access_token: str) -> int:
        total = 0
        while True:
            params: dict[str, int] = {"limit": self._pull_limit}
            cursor = await self._store.get_cursor()
            if cursor is not None:
                params["since"] = cursor

            body = await self._gateway.request(
                "GET", "/api/sync/changes", access_token, params=params
            )
            try:
                changes = [SyncChange.from_wire(c) for c in body.get("changes", [])]
            except (KeyError, TypeError, ValueError) as exc:
                raise InternalError(f"Malformed change from server: {exc}") from exc

            if changes:
                await self._store.apply_remote(changes)
                await self._store.set_cursor(int(body.get("lastTimestamp", changes[-1].timestamp)))
                total += len(changes)

            if not changes or not body.get("hasMore"):
                return total

    async def _push(self, access_token: str) -> int:
        changes = await self._store.pending_changes()
        if not changes:
            return 0

        body = await self._gateway.request(
            "POST",
            "/api/sync/push",
            access_token,
            json={"changes": [c.to_wire() for c in changes]},
        )
        await self._store.mark_synced(changes)
        return int(body.get("applied", len(changes)))
