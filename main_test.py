"""Tests for main.py - FastAPI routes."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import json

import pytest

from fastapi.testclient import TestClient

import config
from main import create_app
from stream_dirs import DirectoryManager
from stream_session import StreamSessionManager
from stream_status import StatusPublisher
from testing import FakeSpawner


@pytest.fixture
def settings(tmp_path: Path) -> dict:
    return {
        "hls_dir": str(tmp_path / "hls"),
        "recordings_dir": str(tmp_path / "recordings"),
        "hls_base_url": "/hls",
        "ready_timeout_secs": 0.5,
        "stop_grace_secs": 0.5,
        "cameras": {
            "cam1": {"name": "Front door", "rtsp_url": "rtsp://10.0.0.5/stream1"},
            "cam2": {"name": "Garage"},
        },
    }


@pytest.fixture
def spawner():
    spawner = FakeSpawner()
    with (
        patch("stream_process._create_process", spawner),
        patch("stream_process._POLL_INTERVAL_SEC", 0.01),
    ):
        yield spawner


@pytest.fixture
def manager(tmp_path: Path) -> StreamSessionManager:
    dirs = DirectoryManager(tmp_path / "hls", tmp_path / "recordings")
    return StreamSessionManager(StatusPublisher(), dirs=dirs)


@pytest.fixture
def client(settings, spawner, manager):
    app = create_app(manager=manager, load_settings=lambda: settings)
    with TestClient(app) as client:
        yield client


class TestStartup:
    def test_output_roots_created_on_startup_only(self, settings, manager, tmp_path):
        app = create_app(manager=manager, load_settings=lambda: settings)
        assert not (tmp_path / "hls").exists()
        assert not (tmp_path / "recordings").exists()
        with TestClient(app):
            assert (tmp_path / "hls").is_dir()
            assert (tmp_path / "recordings").is_dir()


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["uptime"] >= 0


class TestLiveStream:
    def test_start_configured_camera(self, client, spawner):
        response = client.post("/api/stream/start/cam1")
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["hls_url"] == "/hls/cam1/index.m3u8"
        assert data["state"] == "active"
        assert "rtsp://10.0.0.5/stream1" in spawner.commands[0]

    def test_source_override(self, client, spawner):
        response = client.post(
            "/api/stream/start/cam9", json={"source_uri": "rtsp://10.0.0.9/live"}
        )
        assert response.status_code == 200
        assert "rtsp://10.0.0.9/live" in spawner.commands[0]

    def test_unknown_camera(self, client, spawner):
        response = client.post("/api/stream/start/nope")
        assert response.status_code == 404
        assert spawner.commands == []

    def test_camera_without_rtsp_url(self, client):
        response = client.post("/api/stream/start/cam2")
        assert response.status_code == 400
        assert "RTSP URL" in response.json()["detail"]

    def test_duplicate_start_conflicts(self, client, spawner):
        assert client.post("/api/stream/start/cam1").status_code == 200
        response = client.post("/api/stream/start/cam1")
        assert response.status_code == 409
        assert response.json()["success"] is False
        assert len(spawner.processes) == 1

    def test_bad_options_rejected(self, client, spawner):
        response = client.post("/api/stream/start/cam1", json={"options": {"vf": "scale=1"}})
        assert response.status_code == 400
        assert spawner.commands == []

    def test_options_applied(self, client, spawner):
        response = client.post("/api/stream/start/cam1", json={"options": {"bitrate": "4M"}})
        assert response.status_code == 200
        cmd = spawner.commands[0]
        assert cmd[cmd.index("-b:v") + 1] == "4M"

    def test_spawn_failure_is_bad_gateway(self, client, spawner):
        spawner.error = FileNotFoundError("ffmpeg")
        response = client.post("/api/stream/start/cam1")
        assert response.status_code == 502
        assert client.get("/api/stream/status").json()["count"] == 0

    def test_stop(self, client, tmp_path):
        client.post("/api/stream/start/cam1")
        response = client.post("/api/stream/stop/cam1")
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert not (tmp_path / "hls" / "cam1").exists()

    def test_stop_not_running(self, client):
        response = client.post("/api/stream/stop/cam1")
        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": "No active live session for camera cam1",
        }

    def test_status(self, client):
        client.post("/api/stream/start/cam1")
        data = client.get("/api/stream/status").json()
        assert data["count"] == 1
        assert data["active_streams"][0]["camera_id"] == "cam1"
        assert data["active_streams"][0]["purpose"] == "live"

        camera = client.get("/api/stream/status/cam1").json()
        assert camera["live"] == "active"
        assert camera["recording"] is None

    def test_stop_all(self, client, manager):
        client.post("/api/stream/start/cam1")
        client.post("/api/recordings/start/cam1")
        response = client.post("/api/stream/stop-all")
        assert response.status_code == 200
        assert len(manager.registry) == 0

    def test_start_all_reports_each_camera(self, client, settings, spawner):
        settings["cameras"]["cam3"] = {"name": "Yard", "rtsp_url": "rtsp://10.0.0.7/stream1"}
        assert client.post("/api/stream/start/cam3").status_code == 200

        response = client.post("/api/stream/start-all")
        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Started 1/2 streams"
        assert [r["camera_id"] for r in data["results"]] == ["cam1", "cam3"]
        assert data["results"][0] == {"camera_id": "cam1", "success": True}
        assert data["results"][1]["success"] is False
        assert "already" in data["results"][1]["error"]
        assert len(spawner.processes) == 2

    def test_start_all_without_cameras(self, client, settings, spawner):
        settings["cameras"] = {}
        data = client.post("/api/stream/start-all").json()
        assert data["message"] == "Started 0/0 streams"
        assert data["results"] == []
        assert spawner.commands == []

    def test_playlist_served(self, client, tmp_path):
        client.post("/api/stream/start/cam1")
        response = client.get("/hls/cam1/index.m3u8")
        assert response.status_code == 200
        assert response.text.startswith("#EXTM3U")


class TestRecordings:
    def test_start_and_stop(self, client, tmp_path):
        started = client.post("/api/recordings/start/cam1")
        assert started.status_code == 200
        data = started.json()
        assert data["filename"].startswith("cam1_")
        assert Path(data["output_path"]).parent == tmp_path / "recordings"

        stopped = client.post("/api/recordings/stop/cam1")
        assert stopped.status_code == 200
        assert stopped.json()["output_path"] == data["output_path"]
        assert stopped.json()["duration_seconds"] >= 0

    def test_stop_not_recording(self, client):
        assert client.post("/api/recordings/stop/cam1").status_code == 404

    def test_invalid_camera_id(self, client):
        response = client.post(
            "/api/recordings/start/bad id", json={"source_uri": "rtsp://x/y"}
        )
        assert response.status_code == 400


class TestSettings:
    @pytest.fixture
    def settings_file(self, tmp_path, monkeypatch):
        path = tmp_path / "server_settings.json"
        monkeypatch.setattr(config, "CACHE_DIR", tmp_path)
        monkeypatch.setattr(config, "SERVER_SETTINGS_FILE", path)
        for env_name in config._ENV_OVERRIDES:
            monkeypatch.delenv(env_name, raising=False)
        return path

    def test_get(self, client):
        data = client.get("/api/settings").json()
        assert data["hls_base_url"] == "/hls"
        assert "cam1" in data["cameras"]

    def test_update(self, client, settings_file):
        response = client.post("/api/settings", json={"hls_list_size": 8})
        assert response.status_code == 200
        assert response.json()["hls_list_size"] == 8
        assert json.loads(settings_file.read_text()) == {"hls_list_size": 8}

    def test_update_rejects_paths(self, client, settings_file):
        response = client.post("/api/settings", json={"hls_dir": "/etc"})
        assert response.status_code == 400
        assert not settings_file.exists()


class TestStatusFeed:
    def test_connected_then_status_events(self, client):
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connected"
            client.post("/api/stream/start/cam1")
            starting = ws.receive_json()
            active = ws.receive_json()

        assert starting["type"] == "stream_status"
        assert starting["cameraId"] == "cam1"
        assert starting["purpose"] == "live"
        assert starting["status"] == "starting"
        assert active["status"] == "active"
        assert active["timestamp"].endswith("Z")

    def test_disconnect_unsubscribes(self, client, manager):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert manager.publisher.subscriber_count == 1
        assert manager.publisher.subscriber_count == 0


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
