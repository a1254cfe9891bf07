"""FFmpeg command building for live HLS and MP4 recording."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from typing import Any

import logging
import pathlib


log = logging.getLogger(__name__)

# Segment file naming
PLAYLIST_NAME = "index.m3u8"
SEG_PREFIX = "segment_"  # Segment files are named segment_000.ts, segment_001.ts, etc.
SEGMENT_PATTERN = f"{SEG_PREFIX}%03d.ts"

# Defaults when settings are missing
_DEFAULT_HLS_TIME_SEC = 2
_DEFAULT_HLS_LIST_SIZE = 5
_DEFAULT_READY_TIMEOUT_SEC = 3.0
_DEFAULT_STOP_GRACE_SEC = 10.0

# Input probing for RTSP sources (5 MB / 5 sec)
_PROBE_SIZE = "5000000"
_ANALYZE_DURATION = "5000000"

# Module state
_load_settings: Callable[[], dict[str, Any]] = dict


def init(load_settings: Callable[[], dict[str, Any]]) -> None:
    """Initialize module with settings loader."""
    global _load_settings
    _load_settings = load_settings


def get_settings() -> dict[str, Any]:
    """Get current settings."""
    return _load_settings()


def get_ffmpeg_path() -> str:
    return get_settings().get("ffmpeg_path") or "ffmpeg"


def get_hls_time() -> int:
    """Get HLS segment duration in seconds."""
    return int(get_settings().get("hls_time", _DEFAULT_HLS_TIME_SEC))


def get_hls_list_size() -> int:
    """Get number of segments kept in the live playlist."""
    return max(1, int(get_settings().get("hls_list_size", _DEFAULT_HLS_LIST_SIZE)))


def get_ready_timeout() -> float:
    """Get how long start waits for the first output before returning."""
    return float(get_settings().get("ready_timeout_secs", _DEFAULT_READY_TIMEOUT_SEC))


def get_stop_grace() -> float:
    """Get how long stop_all waits for exits before force-killing."""
    return float(get_settings().get("stop_grace_secs", _DEFAULT_STOP_GRACE_SEC))


# ===========================================================================
# Live Options
# ===========================================================================


@dataclass(slots=True, frozen=True)
class LiveOptions:
    """Caller-tunable encoder settings for live streams."""

    codec: str = "libx264"
    preset: str = "ultrafast"
    bitrate: str = "2M"
    maxrate: str = "2M"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> LiveOptions:
        """Build from request options. Raises ValueError for unknown or empty keys."""
        if not data:
            return cls()
        allowed = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - allowed)
        if unknown:
            raise ValueError(f"Unsupported live options: {', '.join(unknown)}")
        values: dict[str, str] = {}
        for key, value in data.items():
            if value is None:
                continue
            text = str(value).strip()
            if not text or text.startswith("-"):
                raise ValueError(f"Invalid value for {key}: {value!r}")
            values[key] = text
        if values:
            log.debug("Live option overrides: %s", values)
        return cls(**values)


# ===========================================================================
# Commands
# ===========================================================================


def _input_args(source_uri: str, low_latency: bool) -> list[str]:
    args = [
        "-rtsp_transport",
        "tcp",
        "-analyzeduration",
        _ANALYZE_DURATION,
        "-probesize",
        _PROBE_SIZE,
    ]
    if low_latency:
        args.extend(["-fflags", "nobuffer"])
    args.extend(["-i", source_uri])
    return args


def build_live_cmd(
    source_uri: str,
    output_dir: pathlib.Path,
    options: LiveOptions | None = None,
) -> list[str]:
    """Build ffmpeg command for a rolling live HLS playlist."""
    opts = options or LiveOptions()
    cmd = [get_ffmpeg_path(), "-hide_banner", "-loglevel", "error", "-y"]
    cmd.extend(_input_args(source_uri, low_latency=True))

    # Video: constant GOP so every segment starts on a keyframe
    cmd.extend(
        [
            "-c:v",
            opts.codec,
            "-preset",
            opts.preset,
            "-tune",
            "zerolatency",
            "-g",
            "30",
            "-sc_threshold",
            "0",
            "-b:v",
            opts.bitrate,
            "-maxrate",
            opts.maxrate,
            "-bufsize",
            "4M",
        ]
    )
    cmd.extend(["-c:a", "aac", "-b:a", "128k", "-ar", "44100"])

    # HLS output args
    cmd.extend(
        [
            "-f",
            "hls",
            "-hls_time",
            str(get_hls_time()),
            "-hls_list_size",
            str(get_hls_list_size()),
            "-hls_flags",
            "delete_segments+append_list",
            "-hls_segment_filename",
            str(output_dir / SEGMENT_PATTERN),
            str(output_dir / PLAYLIST_NAME),
        ]
    )
    return cmd


def build_recording_cmd(source_uri: str, output_path: pathlib.Path) -> list[str]:
    """Build ffmpeg command for an MP4 recording (video passthrough)."""
    cmd = [get_ffmpeg_path(), "-hide_banner", "-loglevel", "error", "-y"]
    cmd.extend(_input_args(source_uri, low_latency=False))
    # faststart moves the moov atom to the front; needs a clean exit to finalize
    cmd.extend(["-c:v", "copy", "-c:a", "aac", "-movflags", "+faststart", str(output_path)])
    return cmd
