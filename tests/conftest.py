import os
import shlex
import sys
import tempfile
from pathlib import Path

import pytest

# Keep the module-level app's temp dir out of the working tree
os.environ.setdefault("TEMP_DIR", tempfile.mkdtemp(prefix="export-server-tests-"))

from export_server.config import Settings  # noqa: E402


FAKE_FFMPEG = Path(__file__).parent / "fake_ffmpeg.py"
API_KEY = "test-key"


@pytest.fixture
def fake_engine() -> str:
    return shlex.join([sys.executable, str(FAKE_FFMPEG)])


@pytest.fixture
def make_settings(tmp_path, fake_engine):
    def _make(**overrides) -> Settings:
        values = {
            "api_key": API_KEY,
            "temp_dir": str(tmp_path / "temp"),
            "ffmpeg_bin": fake_engine,
            "reaper_interval_seconds": 0,
            "engine_timeout_seconds": 30,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def args_file(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "ffmpeg-args.txt"
    monkeypatch.setenv("FAKE_FFMPEG_ARGS_FILE", str(path))
    return path
