import asyncio
import re
import time
import uuid
from pathlib import Path
from typing import BinaryIO, List, Optional, Union

from starlette.concurrency import run_in_threadpool

from export_server.errors import UploadTooLargeError
from export_server.utils.logging import get_logger


logger = get_logger(__name__)

PathLike = Union[str, Path]

COPY_CHUNK_SIZE = 1024 * 1024
DEFAULT_UPLOAD_SUFFIX = ".webm"
_SAFE_SUFFIX_RE = re.compile(r"^\.[A-Za-z0-9]{1,10}$")


def cleanup(*paths: Optional[PathLike]) -> int:
    """Best-effort delete of every given path. Returns how many were removed.

    Missing files are skipped and failures are logged, never raised, so one bad
    path does not stop the others.
    """
    removed = 0
    for raw in paths:
        if raw is None:
            continue
        path = Path(raw)
        if not path.exists():
            continue
        try:
            path.unlink()
            removed += 1
            logger.info("Cleaned up: %s", path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Failed to cleanup %s: %s", path, exc)
    return removed


class TempFiles:
    """The temp files owned by one job, released together exactly once.

    Used as a context manager around request handling: leaving the block
    releases the files unless ownership was handed off (to the response that
    streams the result), in which case the new owner calls release().
    """

    def __init__(self, *paths: Optional[PathLike]) -> None:
        self._paths: List[Path] = [Path(p) for p in paths if p is not None]
        self._released = False
        self._handed_off = False

    @property
    def paths(self) -> List[Path]:
        return list(self._paths)

    @property
    def released(self) -> bool:
        return self._released

    def track(self, path: PathLike) -> Path:
        path = Path(path)
        if self._released:
            # Too late to own it; drop it right away
            cleanup(path)
        elif path not in self._paths:
            self._paths.append(path)
        return path

    def hand_off(self) -> "TempFiles":
        self._handed_off = True
        return self

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        cleanup(*self._paths)

    def __enter__(self) -> "TempFiles":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None or not self._handed_off:
            self.release()


def upload_suffix(filename: Optional[str]) -> str:
    suffix = Path(filename or "").suffix
    return suffix if _SAFE_SUFFIX_RE.match(suffix) else DEFAULT_UPLOAD_SUFFIX


def _copy_limited(src: BinaryIO, dest: Path, limit: Optional[int]) -> int:
    written = 0
    with open(dest, "wb") as fout:
        while True:
            chunk = src.read(COPY_CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if limit is not None and written > limit:
                raise UploadTooLargeError(f"Upload exceeds {limit // (1024 * 1024)}MB")
            fout.write(chunk)
    return written


async def save_upload(src: BinaryIO, filename: Optional[str], temp_dir: Path, files: TempFiles, limit: Optional[int] = None) -> Path:
    """Persist an uploaded stream as ``<uuid><ext>`` inside ``temp_dir``.

    The destination is tracked by ``files`` before any byte is written, so a
    partial file is released with the rest of the job.
    """
    dest = files.track(temp_dir / f"{uuid.uuid4().hex}{upload_suffix(filename)}")
    size = await run_in_threadpool(_copy_limited, src, dest, limit)
    logger.info("Saved upload %s (%d bytes) to %s", filename or "<unnamed>", size, dest)
    return dest


def reap_stale_files(directory: PathLike, max_age_seconds: float, now: Optional[float] = None) -> List[Path]:
    """Delete regular files in ``directory`` not modified for ``max_age_seconds``.

    Per-file errors are logged and skipped.
    """
    base = Path(directory)
    if not base.is_dir():
        return []
    cutoff = (time.time() if now is None else now) - max_age_seconds
    removed: List[Path] = []
    try:
        entries = list(base.iterdir())
    except OSError as exc:
        logger.warning("Failed to scan %s: %s", base, exc)
        return removed
    for path in entries:
        try:
            if not path.is_file() or path.stat().st_mtime >= cutoff:
                continue
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Failed to reap %s: %s", path, exc)
            continue
        removed.append(path)
        logger.info("Cleaned up old file: %s", path.name)
    return removed


async def run_reaper(directory: PathLike, interval_seconds: float, max_age_seconds: float) -> None:
    """Sweep ``directory`` forever, once per ``interval_seconds``."""
    while True:
        try:
            await run_in_threadpool(reap_stale_files, directory, max_age_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Periodic temp cleanup failed: %s", exc)
        await asyncio.sleep(interval_seconds)

