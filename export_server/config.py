import os
import shlex
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv, find_dotenv

# Load environment variables from .env if present (for local runs)
load_dotenv(find_dotenv(usecwd=True))


VERSION = "1.0.0"


def _default_temp_dir() -> str:
    """Keep temp files next to the working tree unless TEMP_DIR says otherwise."""
    return str(Path.cwd() / "temp")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def __init__(self, **overrides) -> None:
        self.api_key: str = os.getenv("API_KEY", "your-secret-api-key")
        self.host: str = os.getenv("HOST", "0.0.0.0")
        self.port: int = _int_env("PORT", 3001)
        self.max_file_size_mb: int = _int_env("MAX_FILE_SIZE_MB", 500)
        self.allowed_origins: str = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000")
        self.temp_dir: str = os.getenv("TEMP_DIR", _default_temp_dir())
        self.ffmpeg_bin: str = os.getenv("FFMPEG_BIN", "ffmpeg")
        self.engine_timeout_seconds: int = _int_env("ENGINE_TIMEOUT_SECONDS", 60 * 60)
        self.max_concurrent_jobs: int = _int_env("MAX_CONCURRENT_JOBS", 2)
        self.max_queued_jobs: int = _int_env("MAX_QUEUED_JOBS", 8)
        self.reaper_interval_seconds: int = _int_env("REAPER_INTERVAL_SECONDS", 15 * 60)
        self.reaper_max_age_seconds: int = _int_env("REAPER_MAX_AGE_SECONDS", 60 * 60)
        self.progress_grace_seconds: int = _int_env("PROGRESS_GRACE_SECONDS", 0)
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise TypeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @property
    def origins(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def engine_command(self) -> List[str]:
        return shlex.split(self.ffmpeg_bin)

    @property
    def engine_timeout(self) -> Optional[float]:
        return float(self.engine_timeout_seconds) if self.engine_timeout_seconds > 0 else None

    def temp_path(self) -> Path:
        path = Path(self.temp_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path


settings = Settings()
