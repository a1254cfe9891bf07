"""Session registry: one session per (camera, purpose)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import asyncio
import enum
import logging
import pathlib
import threading
import time


log = logging.getLogger(__name__)


# ===========================================================================
# Errors
# ===========================================================================


class StreamError(Exception):
    """Base class for stream session failures."""


class AlreadyActive(StreamError):
    """A session already exists for the requested camera and purpose."""


class NotFound(StreamError):
    """No running session for the requested camera and purpose."""


class SpawnFailure(StreamError):
    """ffmpeg could not be launched."""


class ProcessRuntimeError(StreamError):
    """ffmpeg failed after it was launched."""


class FilesystemError(StreamError):
    """Output directory could not be created or removed."""


# ===========================================================================
# Session
# ===========================================================================


class Purpose(str, enum.Enum):
    LIVE = "live"
    RECORDING = "recording"


class SessionState(str, enum.Enum):
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.STOPPED, SessionState.ERROR)


SessionKey = tuple[str, Purpose]


@dataclass(slots=True, eq=False)
class Session:
    camera_id: str
    purpose: Purpose
    output_path: pathlib.Path
    state: SessionState = SessionState.STARTING
    started_at: float = field(default_factory=time.time)
    started_monotonic: float = field(default_factory=time.monotonic)
    last_error: str | None = None
    stop_requested: bool = False
    handle: Any = field(default=None, repr=False)
    # Set once the session leaves STARTING
    settled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    # Set once the session is removed from the registry
    closed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def key(self) -> SessionKey:
        return (self.camera_id, self.purpose)

    def elapsed(self) -> float:
        """Seconds since the session was created (monotonic, never negative)."""
        return max(0.0, time.monotonic() - self.started_monotonic)

    def describe(self) -> dict[str, Any]:
        return {
            "camera_id": self.camera_id,
            "purpose": self.purpose.value,
            "state": self.state.value,
            "output_path": str(self.output_path),
            "started_at": self.started_at,
        }


# ===========================================================================
# Registry
# ===========================================================================


class SessionRegistry:
    """Thread-safe map of (camera_id, purpose) -> Session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[SessionKey, Session] = {}

    def acquire(self, camera_id: str, purpose: Purpose, output_path: pathlib.Path) -> Session:
        """Create and register a new session, or raise AlreadyActive."""
        key = (camera_id, Purpose(purpose))
        with self._lock:
            existing = self._sessions.get(key)
            if existing is not None:
                raise AlreadyActive(
                    f"{key[1].value} session for camera {camera_id} is already "
                    f"{existing.state.value}"
                )
            session = Session(camera_id=camera_id, purpose=key[1], output_path=output_path)
            self._sessions[key] = session
        log.debug("Registered %s session for %s", key[1].value, camera_id)
        return session

    def release(
        self,
        camera_id: str,
        purpose: Purpose,
        session: Session | None = None,
    ) -> bool:
        """Remove a session. Returns False if absent (or a different session holds the key)."""
        key = (camera_id, Purpose(purpose))
        with self._lock:
            current = self._sessions.get(key)
            if current is None:
                return False
            if session is not None and current is not session:
                return False
            del self._sessions[key]
        current.closed.set()
        log.debug("Released %s session for %s", key[1].value, camera_id)
        return True

    def get(self, camera_id: str, purpose: Purpose) -> Session | None:
        with self._lock:
            return self._sessions.get((camera_id, Purpose(purpose)))

    def list_all(self) -> list[Session]:
        """Snapshot of all sessions, oldest first."""
        with self._lock:
            sessions = list(self._sessions.values())
        return sorted(sessions, key=lambda s: s.started_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        try:
            normalized = (key[0], Purpose(key[1]))
        except ValueError:
            return False
        with self._lock:
            return normalized in self._sessions
