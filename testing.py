"""Test utilities: fake ffmpeg processes and the pytest entry point."""

from __future__ import annotations

from typing import Any

import asyncio
import pathlib
import signal
import sys
import warnings


# Suppress unawaited coroutine warnings from AsyncMock in tests.
warnings.filterwarnings("ignore", message="coroutine.*was never awaited")


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process.

    Signals are recorded; by default SIGINT/SIGKILL make it exit at once.
    Create inside a running event loop.
    """

    def __init__(self, pid: int = 4242, exit_on_signal: bool = True) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.signals: list[int] = []
        self.exit_on_signal = exit_on_signal
        self.stderr = asyncio.StreamReader()
        self._exited = asyncio.Event()

    def write_stderr(self, text: str) -> None:
        self.stderr.feed_data(text.encode() + b"\n")

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stderr.feed_eof()
        self._exited.set()

    def send_signal(self, sig: int) -> None:
        if self.returncode is not None:
            raise ProcessLookupError("No such process")
        self.signals.append(sig)
        if self.exit_on_signal:
            # ffmpeg exits 255 after finalizing on SIGINT
            self.exit(255 if sig == signal.SIGINT else -sig)

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        if self.returncode is not None:
            raise ProcessLookupError("No such process")
        self.signals.append(signal.SIGKILL)
        self.exit(-signal.SIGKILL)

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


class FakeSpawner:
    """Replacement for stream_process._create_process.

    With write_playlist=True, live commands get their playlist written at
    spawn so readiness is observed on the first poll.
    """

    def __init__(
        self,
        write_playlist: bool = True,
        exit_on_signal: bool = True,
        error: Exception | None = None,
    ) -> None:
        self.write_playlist = write_playlist
        self.exit_on_signal = exit_on_signal
        self.error = error
        self.commands: list[list[str]] = []
        self.processes: list[FakeProcess] = []

    async def __call__(self, cmd: list[str]) -> Any:
        if self.error is not None:
            raise self.error
        self.commands.append(list(cmd))
        proc = FakeProcess(pid=1000 + len(self.processes), exit_on_signal=self.exit_on_signal)
        self.processes.append(proc)
        output = pathlib.Path(cmd[-1])
        if self.write_playlist and output.suffix == ".m3u8":
            output.write_text("#EXTM3U\n#EXT-X-VERSION:3\n")
        return proc

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )
