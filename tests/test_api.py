import os
import time

import pytest
from fastapi.testclient import TestClient

from export_server.main import create_app

API_KEY = "test-key"
HEADERS = {"X-API-Key": API_KEY}
VIDEO = ("recording.webm", b"\x1a\x45\xdf\xa3video", "video/webm")
AUDIO = ("voice.mp3", b"ID3audio", "audio/mpeg")


@pytest.fixture
def app(make_settings):
    return create_app(make_settings(max_file_size_mb=1, allowed_origins="http://localhost:5173"))


@pytest.fixture
def client(app):
    return TestClient(app)


def _temp_files(app):
    return sorted(app.state.service.temp_dir.iterdir())


def test_health_needs_no_key(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["ffmpeg"] is True
    assert body["version"] == "1.0.0"
    assert body["timestamp"].endswith("Z")


def test_progress_unknown_id(client):
    resp = client.get("/progress/unknown-id", headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json() == {"error": "Conversion not found"}


def test_progress_reads_registry(app, client):
    app.state.service.registry.create("job-1")
    app.state.service.registry.update("job-1", 42)
    resp = client.get("/progress/job-1", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json() == {"progress": 42, "status": "processing"}


@pytest.mark.parametrize("headers", [{}, {"X-API-Key": "wrong"}])
def test_endpoints_require_api_key(client, headers):
    assert client.get("/progress/any", headers=headers).status_code == 401
    resp = client.post("/convert", headers=headers, files={"video": VIDEO})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid API key"}


def test_convert_requires_video(app, client):
    resp = client.post("/convert", headers=HEADERS, files={"audio": AUDIO})
    assert resp.status_code == 400
    assert resp.json() == {"error": "No video file provided"}
    assert len(app.state.service.registry) == 0
    assert _temp_files(app) == []


def test_convert_with_audio_streams_result_and_cleans_up(app, client, args_file):
    resp = client.post(
        "/convert",
        headers=HEADERS,
        files={"video": VIDEO, "audio": AUDIO},
        data={"quality": "high", "fps": "30", "filename": "my clip.mp4"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "video/mp4"
    assert resp.headers["content-disposition"] == 'attachment; filename="my clip.mp4"'
    assert resp.headers["content-length"] == str(len(resp.content))
    assert resp.content == b"fake-mp4" * 1000

    joined = " ".join(args_file.read_text().splitlines())
    assert "-b:v 10000k" in joined
    assert "-preset slow" in joined
    assert "-r 30" in joined
    assert "-map 0:v:0 -map 1:a:0" in joined

    assert _temp_files(app) == []
    assert len(app.state.service.registry) == 0


def test_convert_video_only_disables_audio(app, client, args_file):
    resp = client.post("/convert", headers=HEADERS, files={"video": VIDEO})
    assert resp.status_code == 200
    assert resp.headers["content-disposition"] == 'attachment; filename="export.mp4"'
    args = args_file.read_text().splitlines()
    assert "-an" in args
    assert "-map" not in args
    assert _temp_files(app) == []


def test_convert_engine_failure(app, client, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "fail")
    resp = client.post("/convert", headers=HEADERS, files={"video": VIDEO, "audio": AUDIO})
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Conversion failed"
    assert "code 1" in body["details"]
    assert len(app.state.service.registry) == 0
    assert _temp_files(app) == []


def test_convert_engine_missing(make_settings, tmp_path):
    app = create_app(make_settings(ffmpeg_bin=str(tmp_path / "missing-ffmpeg")))
    resp = TestClient(app).post("/convert", headers=HEADERS, files={"video": VIDEO})
    assert resp.status_code == 500
    assert resp.json()["error"] == "Conversion failed"
    assert len(app.state.service.registry) == 0
    assert _temp_files(app) == []


def test_convert_rejects_large_upload(app, client):
    big = ("big.webm", b"x" * (1024 * 1024 + 1), "video/webm")
    resp = client.post("/convert", headers=HEADERS, files={"video": big})
    assert resp.status_code == 413
    assert resp.json() == {"error": "File too large", "details": "Upload exceeds 1MB"}
    assert _temp_files(app) == []
    assert len(app.state.service.registry) == 0


def test_convert_rejects_oversized_request_before_reading_body(app, client, monkeypatch):
    from starlette.requests import Request

    async def form_not_expected(self, *args, **kwargs):
        raise AssertionError("multipart body was parsed")

    monkeypatch.setattr(Request, "form", form_not_expected)
    big = ("big.webm", b"x" * (20 * 1024 * 1024), "video/webm")
    resp = client.post("/convert", headers=HEADERS, files={"video": big})
    assert resp.status_code == 413
    assert resp.json() == {"error": "File too large", "details": "Request exceeds 3MB"}
    assert _temp_files(app) == []
    assert len(app.state.service.registry) == 0


def test_cors_preflight_allows_configured_origin(client):
    resp = client.options(
        "/convert",
        headers={
            "Origin": "http://localhost:5173",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "X-API-Key",
        },
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "http://localhost:5173"


def test_lifespan_runs_startup_sweep(make_settings):
    app = create_app(make_settings(reaper_interval_seconds=3600, reaper_max_age_seconds=60))
    stale = app.state.service.temp_dir / "orphan.webm"
    stale.write_bytes(b"x")
    old = time.time() - 3600
    os.utime(stale, (old, old))

    with TestClient(app) as client:
        deadline = time.time() + 5
        while stale.exists() and time.time() < deadline:
            time.sleep(0.05)
        assert client.get("/health").status_code == 200
    assert not stale.exists()
