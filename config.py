"""Server settings: JSON file merged over defaults, with environment overrides."""

from __future__ import annotations

from typing import Any

import json
import logging
import os
import pathlib


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = APP_DIR / ".cache"
SERVER_SETTINGS_FILE = CACHE_DIR / "server_settings.json"

DEFAULT_SETTINGS: dict[str, Any] = {
    "hls_dir": "/tmp/hls",
    "recordings_dir": "/tmp/recordings",
    "hls_base_url": "/hls",
    "hls_time": 2,
    "hls_list_size": 5,
    "ready_timeout_secs": 3.0,
    "stop_grace_secs": 10.0,
    "ffmpeg_path": "ffmpeg",
    "log_level": "INFO",
    "cameras": {},
}

# Keys settable through save_settings(); anything else is rejected
UPDATABLE_SETTINGS = frozenset(
    {
        "hls_base_url",
        "hls_time",
        "hls_list_size",
        "ready_timeout_secs",
        "stop_grace_secs",
        "log_level",
        "cameras",
    }
)

# env var -> (setting, converter)
_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "HLS_PATH": ("hls_dir", str),
    "RECORDING_PATH": ("recordings_dir", str),
    "HLS_BASE_URL": ("hls_base_url", str),
    "FFMPEG_HLS_TIME": ("hls_time", int),
    "FFMPEG_HLS_LIST_SIZE": ("hls_list_size", int),
    "LOG_LEVEL": ("log_level", str),
}


def _read_settings_file() -> dict[str, Any]:
    if not SERVER_SETTINGS_FILE.exists():
        return {}
    try:
        data = json.loads(SERVER_SETTINGS_FILE.read_text())
    except (OSError, json.JSONDecodeError) as e:
        log.warning("Ignoring unreadable settings file %s: %s", SERVER_SETTINGS_FILE, e)
        return {}
    return data if isinstance(data, dict) else {}


def load_settings() -> dict[str, Any]:
    """Get current settings (defaults < settings file < environment)."""
    settings = {**DEFAULT_SETTINGS, **_read_settings_file()}
    for env_name, (key, convert) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if not raw:
            continue
        try:
            settings[key] = convert(raw)
        except ValueError:
            log.warning("Ignoring invalid %s=%r", env_name, raw)
    return settings


def save_settings(updates: dict[str, Any]) -> dict[str, Any]:
    """Persist allow-listed settings. Raises ValueError for unknown keys."""
    unknown = sorted(set(updates) - UPDATABLE_SETTINGS)
    if unknown:
        raise ValueError(f"Settings not updatable: {', '.join(unknown)}")
    stored = _read_settings_file()
    stored.update(updates)
    CACHE_DIR.mkdir(parents=True, exist_ok=True)
    SERVER_SETTINGS_FILE.write_text(json.dumps(stored, indent=2))
    return load_settings()
