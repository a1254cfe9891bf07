"""Stream session lifecycle: live HLS and recordings per camera."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import asyncio
import contextlib
import logging
import pathlib

from stream_command import LiveOptions, get_ready_timeout, get_settings, get_stop_grace
from stream_dirs import DirectoryManager
from stream_process import EventKind, ProcessEvent, ProcessSupervisor, TerminateMode
from stream_registry import (
    FilesystemError,
    NotFound,
    ProcessRuntimeError,
    Purpose,
    Session,
    SessionRegistry,
    SessionState,
)
from stream_status import StatusEvent, StatusPublisher


log = logging.getLogger(__name__)

# Timing constants
_KILL_WAIT_SEC = 5.0

# Live output has nothing to finalize; recordings must flush the MP4 index
_STOP_MODE: dict[Purpose, TerminateMode] = {
    Purpose.LIVE: TerminateMode.FORCED,
    Purpose.RECORDING: TerminateMode.GRACEFUL,
}

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.STARTING: frozenset(
        {SessionState.ACTIVE, SessionState.STOPPING, SessionState.STOPPED, SessionState.ERROR}
    ),
    SessionState.ACTIVE: frozenset(
        {SessionState.STOPPING, SessionState.STOPPED, SessionState.ERROR}
    ),
    SessionState.STOPPING: frozenset({SessionState.STOPPED}),
}


class StreamSessionManager:
    """Starts and stops ffmpeg sessions, at most one per (camera, purpose).

    State changes are applied by one driver task per session, fed by the
    supervisor's events, plus the explicit stop path. Every change is
    published to the StatusPublisher passed in.
    """

    def __init__(
        self,
        publisher: StatusPublisher,
        dirs: DirectoryManager | None = None,
        registry: SessionRegistry | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self.publisher = publisher
        self.dirs = dirs or DirectoryManager.from_settings()
        self.registry = registry or SessionRegistry()
        self.supervisor = supervisor or ProcessSupervisor()
        self._drivers: set[asyncio.Task[None]] = set()

    # =======================================================================
    # State Machine
    # =======================================================================

    def _transition(
        self,
        session: Session,
        state: SessionState,
        error: str | None = None,
    ) -> bool:
        """Move session to state and publish. Returns False if the move isn't allowed."""
        if state not in _TRANSITIONS.get(session.state, frozenset()):
            log.debug(
                "Ignoring %s -> %s for %s/%s",
                session.state.value,
                state.value,
                session.camera_id,
                session.purpose.value,
            )
            return False
        session.state = state
        if state is SessionState.ERROR:
            session.last_error = error or "unknown error"
        session.settled.set()
        error = session.last_error if state is SessionState.ERROR else None
        self.publisher.publish(StatusEvent(session.camera_id, session.purpose, state, error))
        return True

    def _spawn_driver(self, session: Session) -> None:
        task = asyncio.create_task(self._drive(session))
        self._drivers.add(task)
        task.add_done_callback(self._drivers.discard)

    async def _drive(self, session: Session) -> None:
        handle = session.handle
        try:
            while True:
                event = await handle.events.get()
                if event.kind is EventKind.SPAWNED:
                    continue
                if event.kind is EventKind.READY:
                    if self._transition(session, SessionState.ACTIVE):
                        log.info(
                            "%s session for %s is active",
                            session.purpose.value.capitalize(),
                            session.camera_id,
                        )
                elif event.kind is EventKind.FATAL:
                    if self._transition(session, SessionState.ERROR, event.detail):
                        log.error(
                            "ffmpeg:%s fatal error: %s",
                            handle.label,
                            event.detail,
                        )
                        self.supervisor.terminate(handle, _STOP_MODE[session.purpose])
                elif event.kind is EventKind.EXITED:
                    self._finish(session, event)
                    return
        finally:
            # Normally already released by _finish
            if self.registry.release(session.camera_id, session.purpose, session):
                log.warning(
                    "Released %s/%s without exit event",
                    session.camera_id,
                    session.purpose.value,
                )

    def _finish(self, session: Session, event: ProcessEvent) -> None:
        if session.state is SessionState.STOPPING:
            self._transition(session, SessionState.STOPPED)
        elif session.state in (SessionState.STARTING, SessionState.ACTIVE):
            label = session.handle.label
            if event.returncode == 0:
                log.warning("ffmpeg:%s exited on its own", label)
                self._transition(session, SessionState.STOPPED)
            else:
                detail = event.detail or f"ffmpeg exited with code {event.returncode}"
                log.error("ffmpeg:%s failed (exit %s): %s", label, event.returncode, detail)
                self._transition(session, SessionState.ERROR, detail)
        if session.purpose is Purpose.LIVE:
            self._purge_quietly(session.camera_id)
        self.registry.release(session.camera_id, session.purpose, session)
        session.settled.set()

    def _purge_quietly(self, camera_id: str) -> None:
        try:
            self.dirs.purge_live_output(camera_id)
        except FilesystemError as e:
            log.warning("Live output cleanup failed for %s: %s", camera_id, e)

    # =======================================================================
    # Start
    # =======================================================================

    async def _start(
        self,
        camera_id: str,
        purpose: Purpose,
        source_uri: str,
        output_path: pathlib.Path,
        options: LiveOptions | None = None,
    ) -> Session:
        if not source_uri:
            raise ValueError(f"No source URI for camera {camera_id}")
        ready_timeout = get_ready_timeout()

        session = self.registry.acquire(camera_id, purpose, output_path)
        self.publisher.publish(StatusEvent(camera_id, purpose, SessionState.STARTING))
        log.info("Starting %s session for camera %s", purpose.value, camera_id)
        try:
            if purpose is Purpose.LIVE:
                # Stale playlist would fake readiness
                self.dirs.purge_live_output(camera_id)
            self.dirs.ensure(output_path.parent)
            handle = await self.supervisor.spawn(
                session, source_uri, options, ready_timeout=ready_timeout
            )
        except BaseException as e:
            if session.state is SessionState.STOPPING:
                # Stopped while spawning; the stop still needs its terminal event
                self._transition(session, SessionState.STOPPED)
            else:
                self._transition(session, SessionState.ERROR, str(e) or type(e).__name__)
            if purpose is Purpose.LIVE:
                self._purge_quietly(camera_id)
            self.registry.release(camera_id, purpose, session)
            raise

        session.handle = handle
        self._spawn_driver(session)
        if session.stop_requested:
            # Stopped while spawning
            self.supervisor.terminate(handle, _STOP_MODE[purpose])
            return session

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(session.settled.wait(), timeout=ready_timeout)

        if session.state is SessionState.ERROR or (
            session.state is SessionState.STOPPED and not session.stop_requested
        ):
            raise ProcessRuntimeError(
                f"ffmpeg for {camera_id} failed to start: {session.last_error or 'exited early'}"
            )
        if session.state is SessionState.STARTING:
            # Weak readiness: report success, ffmpeg may still be connecting
            log.warning(
                "%s session for %s not ready after %.1fs, may still be starting",
                purpose.value.capitalize(),
                camera_id,
                ready_timeout,
            )
        return session

    def hls_url(self, camera_id: str) -> str:
        base = str(get_settings().get("hls_base_url", "/hls")).rstrip("/")
        return f"{base}/{camera_id}/{self.dirs.playlist_path(camera_id).name}"

    async def start_live(
        self,
        camera_id: str,
        source_uri: str,
        options: LiveOptions | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Start live HLS for a camera. Raises AlreadyActive, SpawnFailure, FilesystemError."""
        if not isinstance(options, LiveOptions):
            options = LiveOptions.from_dict(options)
        playlist_path = self.dirs.playlist_path(camera_id)
        session = await self._start(camera_id, Purpose.LIVE, source_uri, playlist_path, options)
        return {
            "camera_id": camera_id,
            "hls_url": self.hls_url(camera_id),
            "playlist_path": str(playlist_path),
            "state": session.state.value,
        }

    async def start_recording(self, camera_id: str, source_uri: str) -> dict[str, Any]:
        """Start an MP4 recording. Raises AlreadyActive, SpawnFailure, FilesystemError."""
        output_path = self.dirs.recording_path(camera_id)
        session = await self._start(camera_id, Purpose.RECORDING, source_uri, output_path)
        return {
            "camera_id": camera_id,
            "output_path": str(output_path),
            "filename": output_path.name,
            "state": session.state.value,
        }

    # =======================================================================
    # Stop
    # =======================================================================

    def _begin_stop(self, camera_id: str, purpose: Purpose) -> Session:
        session = self.registry.get(camera_id, purpose)
        if session is None or session.stop_requested or session.state.is_terminal:
            raise NotFound(f"No active {purpose.value} session for camera {camera_id}")
        session.stop_requested = True
        self._transition(session, SessionState.STOPPING)
        if session.handle is not None:
            self.supervisor.terminate(session.handle, _STOP_MODE[purpose])
        return session

    def stop_live(self, camera_id: str) -> dict[str, Any]:
        """Kill live ffmpeg and remove its HLS output. Does not wait for exit."""
        self._begin_stop(camera_id, Purpose.LIVE)
        self.dirs.purge_live_output(camera_id)
        log.info("Stopped live session for %s", camera_id)
        return {"camera_id": camera_id, "stopped": True}

    def stop_recording(self, camera_id: str) -> dict[str, Any]:
        """Ask recording ffmpeg to finalize and exit. Does not wait for exit."""
        session = self._begin_stop(camera_id, Purpose.RECORDING)
        duration = round(session.elapsed(), 3)
        log.info("Stopped recording for %s, duration: %.1fs", camera_id, duration)
        return {
            "camera_id": camera_id,
            "output_path": str(session.output_path),
            "duration_seconds": duration,
        }

    async def _wait_closed(self, sessions: Iterable[Session], timeout: float) -> list[Session]:
        """Wait for sessions to leave the registry. Returns those still present."""
        pending = [s for s in sessions if not s.closed.is_set()]
        if not pending:
            return []
        waiters = [asyncio.create_task(s.closed.wait()) for s in pending]
        try:
            await asyncio.wait(waiters, timeout=timeout)
        finally:
            for w in waiters:
                w.cancel()
        return [s for s in pending if not s.closed.is_set()]

    async def stop_all(self, timeout: float | None = None) -> None:
        """Stop every session, waiting up to timeout before force-killing stragglers."""
        grace = get_stop_grace() if timeout is None else timeout
        sessions = self.registry.list_all()
        if not sessions:
            return
        log.info("Stopping all %d sessions", len(sessions))
        for session in sessions:
            try:
                if session.purpose is Purpose.LIVE:
                    self.stop_live(session.camera_id)
                else:
                    self.stop_recording(session.camera_id)
            except NotFound:
                pass  # already stopping or exited
            except FilesystemError as e:
                log.warning("Stop %s/%s: %s", session.camera_id, session.purpose.value, e)

        pending = await self._wait_closed(sessions, grace)
        for session in pending:
            log.warning(
                "%s/%s did not exit within %.1fs, killing",
                session.camera_id,
                session.purpose.value,
                grace,
            )
            if session.handle is not None:
                self.supervisor.terminate(session.handle, TerminateMode.FORCED)

        for session in await self._wait_closed(pending, _KILL_WAIT_SEC):
            log.error("Abandoning %s/%s after kill", session.camera_id, session.purpose.value)
            self.registry.release(session.camera_id, session.purpose, session)

    async def shutdown(self) -> None:
        """Stop everything and cancel background tasks."""
        await self.stop_all()
        for task in list(self._drivers):
            task.cancel()
        await self.supervisor.close()

    # =======================================================================
    # Query
    # =======================================================================

    def list_active(self) -> list[dict[str, Any]]:
        return [s.describe() for s in self.registry.list_all()]

    def get_status(self, camera_id: str) -> dict[str, Any]:
        live = self.registry.get(camera_id, Purpose.LIVE)
        recording = self.registry.get(camera_id, Purpose.RECORDING)
        return {
            "camera_id": camera_id,
            "live": live.state.value if live else None,
            "recording": recording.state.value if recording else None,
        }
