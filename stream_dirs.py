"""Filesystem layout for live HLS output and recordings."""

from __future__ import annotations

from datetime import UTC, datetime

import logging
import pathlib
import re
import shutil

from stream_command import PLAYLIST_NAME, SEGMENT_PATTERN, get_settings
from stream_registry import FilesystemError


log = logging.getLogger(__name__)

_CAMERA_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def validate_camera_id(camera_id: str) -> str:
    """Reject ids that could escape the output roots."""
    if not camera_id or camera_id in (".", "..") or not _CAMERA_ID_RE.match(camera_id):
        raise ValueError(f"Invalid camera id: {camera_id!r}")
    return camera_id


def recording_timestamp(now: datetime) -> str:
    """ISO-8601 UTC timestamp with ':' and '.' replaced by '-'.

    e.g. 2024-03-05T14:07:09.123Z -> 2024-03-05T14-07-09-123Z
    """
    now = now.astimezone(UTC)
    iso = f"{now:%Y-%m-%dT%H:%M:%S}.{now.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


class DirectoryManager:
    """Owns <hls-root>/<camera>/ and <recording-root>/ paths."""

    def __init__(self, hls_root: pathlib.Path | str, recording_root: pathlib.Path | str) -> None:
        self.hls_root = pathlib.Path(hls_root)
        self.recording_root = pathlib.Path(recording_root)

    @classmethod
    def from_settings(cls) -> DirectoryManager:
        settings = get_settings()
        return cls(
            settings.get("hls_dir", "/tmp/hls"),
            settings.get("recordings_dir", "/tmp/recordings"),
        )

    # -----------------------------------------------------------------------
    # Paths
    # -----------------------------------------------------------------------

    def live_dir(self, camera_id: str) -> pathlib.Path:
        return self.hls_root / validate_camera_id(camera_id)

    def playlist_path(self, camera_id: str) -> pathlib.Path:
        return self.live_dir(camera_id) / PLAYLIST_NAME

    def segment_pattern(self, camera_id: str) -> pathlib.Path:
        return self.live_dir(camera_id) / SEGMENT_PATTERN

    def recording_path(self, camera_id: str, now: datetime | None = None) -> pathlib.Path:
        stamp = recording_timestamp(now or datetime.now(UTC))
        return self.recording_root / f"{validate_camera_id(camera_id)}_{stamp}.mp4"

    # -----------------------------------------------------------------------
    # Create / remove
    # -----------------------------------------------------------------------

    def ensure(self, path: pathlib.Path) -> None:
        """Create directory and parents; no-op if it exists."""
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Cannot create directory {path}: {e}") from e

    def ensure_roots(self) -> None:
        self.ensure(self.hls_root)
        self.ensure(self.recording_root)

    def purge_live_output(self, camera_id: str) -> bool:
        """Remove the camera's live directory tree. Returns False if it didn't exist."""
        live_dir = self.live_dir(camera_id)
        if not live_dir.exists():
            return False
        try:
            shutil.rmtree(live_dir)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise FilesystemError(f"Cannot remove live output {live_dir}: {e}") from e
        log.debug("Removed live output for %s", camera_id)
        return True

    def cleanup_orphaned_live_dirs(self) -> int:
        """Remove live dirs left over from a previous run. Call before any session starts."""
        if not self.hls_root.is_dir():
            return 0
        removed = 0
        for d in self.hls_root.iterdir():
            if not d.is_dir():
                continue
            try:
                shutil.rmtree(d)
                removed += 1
            except OSError as e:
                log.warning("Failed to remove orphaned live dir %s: %s", d, e)
        if removed:
            log.info("Startup cleanup: removed %d orphaned live dirs", removed)
        return removed
