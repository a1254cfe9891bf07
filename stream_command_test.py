"""Tests for ffmpeg command generation."""

from pathlib import Path
from unittest.mock import patch

import pytest

from stream_command import (
    LiveOptions,
    build_live_cmd,
    build_recording_cmd,
    get_hls_list_size,
    get_ready_timeout,
    get_stop_grace,
)


def _arg(cmd: list[str], flag: str) -> str:
    return cmd[cmd.index(flag) + 1]


# =============================================================================
# Live Command Tests
# =============================================================================


class TestBuildLiveCmd:
    def test_defaults(self):
        with patch("stream_command.get_settings", return_value={}):
            cmd = build_live_cmd("rtsp://cam/stream", Path("/hls/cam1"))
        assert cmd[0] == "ffmpeg"
        assert _arg(cmd, "-rtsp_transport") == "tcp"
        assert _arg(cmd, "-i") == "rtsp://cam/stream"
        assert _arg(cmd, "-fflags") == "nobuffer"
        assert _arg(cmd, "-c:v") == "libx264"
        assert _arg(cmd, "-preset") == "ultrafast"
        assert _arg(cmd, "-tune") == "zerolatency"
        assert _arg(cmd, "-b:v") == "2M"
        assert _arg(cmd, "-c:a") == "aac"
        assert _arg(cmd, "-f") == "hls"
        assert _arg(cmd, "-hls_time") == "2"
        assert _arg(cmd, "-hls_list_size") == "5"
        assert _arg(cmd, "-hls_flags") == "delete_segments+append_list"
        assert _arg(cmd, "-hls_segment_filename") == "/hls/cam1/segment_%03d.ts"
        assert cmd[-1] == "/hls/cam1/index.m3u8"

    def test_input_options_precede_input(self):
        with patch("stream_command.get_settings", return_value={}):
            cmd = build_live_cmd("rtsp://cam/stream", Path("/hls/cam1"))
        assert cmd.index("-rtsp_transport") < cmd.index("-i")
        assert cmd.index("-probesize") < cmd.index("-i")
        assert cmd.index("-c:v") > cmd.index("-i")

    def test_settings_control_segments(self):
        settings = {"hls_time": 4, "hls_list_size": 8, "ffmpeg_path": "/opt/ffmpeg"}
        with patch("stream_command.get_settings", return_value=settings):
            cmd = build_live_cmd("rtsp://cam/stream", Path("/hls/cam1"))
        assert cmd[0] == "/opt/ffmpeg"
        assert _arg(cmd, "-hls_time") == "4"
        assert _arg(cmd, "-hls_list_size") == "8"

    def test_options_applied(self):
        opts = LiveOptions(codec="libx265", preset="veryfast", bitrate="1M", maxrate="1500k")
        with patch("stream_command.get_settings", return_value={}):
            cmd = build_live_cmd("rtsp://cam/stream", Path("/hls/cam1"), opts)
        assert _arg(cmd, "-c:v") == "libx265"
        assert _arg(cmd, "-preset") == "veryfast"
        assert _arg(cmd, "-b:v") == "1M"
        assert _arg(cmd, "-maxrate") == "1500k"

    def test_list_size_at_least_one(self):
        with patch("stream_command.get_settings", return_value={"hls_list_size": 0}):
            assert get_hls_list_size() == 1


# =============================================================================
# Recording Command Tests
# =============================================================================


class TestBuildRecordingCmd:
    def test_passthrough_video(self):
        with patch("stream_command.get_settings", return_value={}):
            cmd = build_recording_cmd("rtsp://cam/stream", Path("/rec/cam1_x.mp4"))
        assert _arg(cmd, "-rtsp_transport") == "tcp"
        assert _arg(cmd, "-c:v") == "copy"
        assert _arg(cmd, "-c:a") == "aac"
        assert _arg(cmd, "-movflags") == "+faststart"
        assert cmd[-1] == "/rec/cam1_x.mp4"
        assert "-f" not in cmd
        assert "nobuffer" not in cmd


# =============================================================================
# Options / Settings Tests
# =============================================================================


class TestLiveOptions:
    def test_empty_gives_defaults(self):
        assert LiveOptions.from_dict(None) == LiveOptions()
        assert LiveOptions.from_dict({}) == LiveOptions()

    def test_known_keys(self):
        opts = LiveOptions.from_dict({"bitrate": "3M", "preset": "fast"})
        assert opts.bitrate == "3M"
        assert opts.preset == "fast"
        assert opts.codec == "libx264"

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="Unsupported live options: vf"):
            LiveOptions.from_dict({"vf": "scale=1:1"})

    @pytest.mark.parametrize("value", ["", "   ", "-vf"])
    def test_bad_values_rejected(self, value):
        with pytest.raises(ValueError, match="Invalid value"):
            LiveOptions.from_dict({"codec": value})

    def test_timeouts_from_settings(self):
        settings = {"ready_timeout_secs": 1.5, "stop_grace_secs": 4}
        with patch("stream_command.get_settings", return_value=settings):
            assert get_ready_timeout() == 1.5
            assert get_stop_grace() == 4.0

    def test_timeouts_default(self):
        with patch("stream_command.get_settings", return_value={}):
            assert get_ready_timeout() == 3.0
            assert get_stop_grace() == 10.0


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
