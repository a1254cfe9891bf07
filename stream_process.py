"""FFmpeg process supervision: spawn, lifecycle events, termination."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any

import asyncio
import contextlib
import enum
import logging
import pathlib
import signal

from stream_command import LiveOptions, build_live_cmd, build_recording_cmd
from stream_registry import Purpose, Session, SpawnFailure


log = logging.getLogger(__name__)

# Timing constants
_POLL_INTERVAL_SEC = 0.2
_SLOW_POLL_INTERVAL_SEC = 1.0  # after the readiness wait has elapsed

# stderr lines kept for error reporting
_STDERR_TAIL_LINES = 20

_FATAL_MARKERS = ("fatal", "aborting", "conversion failed")


class TerminateMode(str, enum.Enum):
    GRACEFUL = "graceful"  # SIGINT: ffmpeg flushes and finalizes output
    FORCED = "forced"  # SIGKILL


class EventKind(str, enum.Enum):
    SPAWNED = "spawned"
    READY = "ready"
    FATAL = "fatal"
    EXITED = "exited"


@dataclass(slots=True, frozen=True)
class ProcessEvent:
    kind: EventKind
    returncode: int | None = None
    detail: str = ""


@dataclass(slots=True, eq=False)
class ProcessHandle:
    """Ownership of one ffmpeg process. EXITED is always the last event queued."""

    process: Any
    cmd: list[str]
    label: str
    events: asyncio.Queue[ProcessEvent] = field(default_factory=asyncio.Queue)
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=_STDERR_TAIL_LINES))
    signals: list[TerminateMode] = field(default_factory=list)

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def error_detail(self) -> str:
        return "\n".join(list(self.stderr_tail)[-10:])


def _is_process_alive(proc: Any) -> bool:
    """Check if process is still running."""
    if proc is None:
        return False
    if hasattr(proc, "returncode"):
        return proc.returncode is None
    return False


def _is_fatal_line(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _FATAL_MARKERS)


async def _create_process(cmd: list[str]) -> Any:
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


class ProcessSupervisor:
    """Spawns one ffmpeg per session and turns its lifecycle into ProcessEvents."""

    def __init__(self) -> None:
        self._background_tasks: set[asyncio.Task[None]] = set()

    def _spawn_background_task(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def build_cmd(
        self,
        session: Session,
        source_uri: str,
        options: LiveOptions | None = None,
    ) -> list[str]:
        if session.purpose is Purpose.LIVE:
            return build_live_cmd(source_uri, session.output_path.parent, options)
        return build_recording_cmd(source_uri, session.output_path)

    async def spawn(
        self,
        session: Session,
        source_uri: str,
        options: LiveOptions | None = None,
        ready_timeout: float = 3.0,
    ) -> ProcessHandle:
        """Launch ffmpeg for the session. Raises SpawnFailure if it can't be started."""
        cmd = self.build_cmd(session, source_uri, options)
        label = f"{session.camera_id}/{session.purpose.value}"
        log.info("Starting ffmpeg %s: %s", label, " ".join(cmd))
        try:
            process = await _create_process(cmd)
        except OSError as e:
            log.error("ffmpeg:%s failed to launch: %s", label, e)
            raise SpawnFailure(f"Cannot launch ffmpeg for {label}: {e}") from e

        handle = ProcessHandle(process=process, cmd=cmd, label=label)
        handle.events.put_nowait(ProcessEvent(EventKind.SPAWNED))
        log.info("Started ffmpeg pid=%s for %s", handle.pid, label)

        # Live is ready once the playlist exists; recording once the process survives a poll
        artifact = session.output_path if session.purpose is Purpose.LIVE else None
        self._spawn_background_task(self._watch_ready(handle, artifact, ready_timeout))
        self._spawn_background_task(self._monitor(handle))
        return handle

    # -----------------------------------------------------------------------
    # Monitoring
    # -----------------------------------------------------------------------

    async def _watch_ready(
        self,
        handle: ProcessHandle,
        artifact: pathlib.Path | None,
        timeout_sec: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_sec
        interval = _POLL_INTERVAL_SEC
        overdue = False
        while True:
            if artifact is None:
                await asyncio.sleep(interval)
            if not _is_process_alive(handle.process) or handle.exited.is_set():
                return
            if artifact is None or artifact.exists():
                handle.events.put_nowait(ProcessEvent(EventKind.READY))
                return
            if not overdue and loop.time() >= deadline:
                # Slow source: keep watching until the playlist shows up or ffmpeg exits
                log.warning(
                    "ffmpeg:%s produced no %s after %.1fs, still starting",
                    handle.label,
                    artifact.name,
                    timeout_sec,
                )
                overdue = True
                interval = _SLOW_POLL_INTERVAL_SEC
            await asyncio.sleep(interval)

    async def _read_stderr(self, handle: ProcessHandle) -> None:
        stderr = handle.process.stderr
        if stderr is None:
            return
        reported = False
        while True:
            line = await stderr.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if not text:
                continue
            handle.stderr_tail.append(text)
            is_fatal = _is_fatal_line(text)
            # -loglevel error: every line is a problem, fatal ones end the session
            level = logging.ERROR if is_fatal else logging.WARNING
            log.log(level, "ffmpeg:%s %s", handle.label, text)
            if is_fatal and not reported:
                reported = True
                handle.events.put_nowait(ProcessEvent(EventKind.FATAL, detail=text))

    async def _monitor(self, handle: ProcessHandle) -> None:
        try:
            await self._read_stderr(handle)
        except (OSError, ValueError) as e:
            log.debug("ffmpeg:%s stderr closed: %s", handle.label, e)
        returncode = await handle.process.wait()
        level = logging.INFO if returncode == 0 else logging.WARNING
        log.log(level, "ffmpeg:%s exited with code %s", handle.label, returncode)
        handle.events.put_nowait(
            ProcessEvent(EventKind.EXITED, returncode=returncode, detail=handle.error_detail())
        )
        handle.exited.set()

    # -----------------------------------------------------------------------
    # Termination
    # -----------------------------------------------------------------------

    def terminate(self, handle: ProcessHandle, mode: TerminateMode) -> bool:
        """Signal the process. Returns False if it had already exited."""
        proc = handle.process
        if not _is_process_alive(proc):
            return False
        try:
            if mode is TerminateMode.GRACEFUL:
                proc.send_signal(signal.SIGINT)
            else:
                proc.kill()
        except (ProcessLookupError, OSError):
            return False
        handle.signals.append(mode)
        log.info("Sent %s stop to ffmpeg pid=%s for %s", mode.value, handle.pid, handle.label)
        return True

    async def wait_exit(self, handle: ProcessHandle, timeout: float | None = None) -> bool:
        """Wait for the process to exit. Returns False on timeout."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(handle.exited.wait(), timeout=timeout)
        return handle.exited.is_set()

    async def close(self) -> None:
        """Cancel monitoring tasks (after all processes are gone)."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
