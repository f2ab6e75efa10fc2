"""Client-side persistence of the signed-in session and the device id.

The device id is generated once (uuid4) and survives logout, so the same
machine keeps mapping to the same server-side device row.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class SyncSession:
    user_id: int
    email: str
    access_token: str
    refresh_token: str

    @classmethod
    def from_dict(cls, data: dict) -> SyncSession:
        return cls(
            user_id=int(data["user_id"]),
            email=str(data["email"]),
            access_token=str(data["access_token"]),
            refresh_token=str(data["refresh_token"]),
        )


class SessionStore(ABC):
    """Where the client keeps its tokens between runs."""

    @abstractmethod
    def load(self) -> SyncSession | None: ...

    @abstractmethod
    def save(self, session: SyncSession) -> None: ...

    @abstractmethod
    def clear(self) -> None: ...

    @abstractmethod
    def device_id(self) -> str:
        """Return this installation's device id, creating it on first use."""


class MemorySessionStore(SessionStore):
    def __init__(self, device_id: str | None = None) -> None:
        self._device_id = device_id
        self._session: SyncSession | None = None

    def load(self) -> SyncSession | None:
        return self._session

    def save(self, session: SyncSession) -> None:
        self._session = session

    def clear(self) -> None:
        self._session = None

    def device_id(self) -> str:
        if self._device_id is None:
            self._device_id = str(uuid.uuid4())
        return self._device_id


class JsonFileSessionStore(SessionStore):
    """Session store backed by a single JSON file.

    Layout: ``{"device_id": "...", "session": {...} | null}``. Writes go to a
    sibling temp file first and are moved into place.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)

    def _read(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Session file %s is unreadable, starting fresh", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp, self._path)

    def load(self) -> SyncSession | None:
        raw = self._read().get("session")
        if not raw:
            return None
        try:
            return SyncSession.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding malformed session in %s", self._path)
            return None

    def save(self, session: SyncSession) -> None:
        data = self._read()
        data["device_id"] = data.get("device_id") or str(uuid.uuid4())
        data["session"] = asdict(session)
        self._write(data)

    def clear(self) -> None:
        data = self._read()
        if data.get("session") is None:
            return
        data["session"] = None
        self._write(data)

    def device_id(self) -> str:
        data = self._read()
        device_id = data.get("device_id")
        if not device_id:
            device_id = str(uuid.uuid4())
            data["device_id"] = device_id
            self._write(data)
        return device_id
