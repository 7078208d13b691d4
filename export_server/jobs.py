"""
In-memory job bookkeeping: job records, the progress registry and the
admission pool that bounds concurrent engine runs.
"""

import asyncio
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from export_server.errors import ServerBusyError

DEFAULT_QUALITY = "high"
DEFAULT_FPS = 30
DEFAULT_FILENAME = "export.mp4"


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class ConversionOptions:
    quality: str = DEFAULT_QUALITY
    fps: int = DEFAULT_FPS
    filename: str = DEFAULT_FILENAME

    @classmethod
    def from_form(
        cls,
        quality: Optional[str] = None,
        fps: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> "ConversionOptions":
        """Build options from raw form values, falling back to defaults for
        missing or unusable values."""
        try:
            parsed_fps = int(str(fps).strip()) if fps is not None else DEFAULT_FPS
        except ValueError:
            parsed_fps = DEFAULT_FPS
        if parsed_fps <= 0:
            parsed_fps = DEFAULT_FPS
        return cls(
            quality=quality or DEFAULT_QUALITY,
            fps=parsed_fps,
            filename=(filename or "").strip() or DEFAULT_FILENAME,
        )


@dataclass
class Job:
    """
    One accepted conversion request and the temp files it owns.

    Attributes:
        id: Unique job identifier, also the stem of the output file name.
        video_path: Uploaded video track.
        output_path: Where the engine writes the transcoded file.
        options: Client supplied conversion options.
        audio_path: Optional separate audio track.
        duration: Input length in seconds, once the engine reported it.
    """
    id: str
    video_path: Path
    output_path: Path
    options: ConversionOptions = field(default_factory=ConversionOptions)
    audio_path: Optional[Path] = None
    duration: Optional[float] = None


@dataclass(frozen=True)
class JobProgress:
    progress: float = 0.0
    status: JobStatus = JobStatus.PROCESSING

    def to_dict(self) -> Dict:
        return {"progress": self.progress, "status": self.status.value}


class JobRegistry:
    """
    Thread-safe map of job id to the latest :class:`JobProgress` snapshot.

    The lock only guards dictionary access, so readers never wait on job work.
    Snapshots are immutable and replaced wholesale on every update.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, JobProgress] = {}
        self._lock = threading.Lock()

    def create(self, job_id: str) -> JobProgress:
        snapshot = JobProgress()
        with self._lock:
            self._jobs[job_id] = snapshot
        return snapshot

    def update(self, job_id: str, progress: float, status: JobStatus = JobStatus.PROCESSING) -> Optional[JobProgress]:
        """Overwrite a job's snapshot.

        Ignored for unknown ids so output arriving after removal cannot bring a
        job back. While processing, progress never moves backwards.
        """
        progress = max(0.0, min(float(progress), 100.0))
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                return None
            if status == JobStatus.PROCESSING and current.status == JobStatus.PROCESSING:
                progress = max(progress, current.progress)
            snapshot = JobProgress(progress=progress, status=status)
            self._jobs[job_id] = snapshot
            return snapshot

    def get(self, job_id: str) -> Optional[JobProgress]:
        with self._lock:
            return self._jobs.get(job_id)

    def remove(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


class EnginePool:
    """Admission control for engine runs.

    At most ``max_running`` runs hold a slot; up to ``max_waiting`` more wait
    for one. Anything beyond that is rejected with :class:`ServerBusyError`.
    """

    def __init__(self, max_running: int, max_waiting: int = 0) -> None:
        if max_running < 1:
            raise ValueError("max_running must be at least 1")
        self.max_running = max_running
        self.max_waiting = max(0, max_waiting)
        self._running = 0
        self._waiting = 0
        self._condition: Optional[asyncio.Condition] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> int:
        return self._running

    @property
    def waiting(self) -> int:
        return self._waiting

    def _cond(self) -> asyncio.Condition:
        # Bound lazily to the loop that serves requests
        loop = asyncio.get_running_loop()
        if self._condition is None or self._loop is not loop:
            self._condition = asyncio.Condition()
            self._loop = loop
        return self._condition

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        cond = self._cond()
        async with cond:
            if self._running >= self.max_running:
                if self._waiting >= self.max_waiting:
                    raise ServerBusyError(
                        f"{self._running} conversions running and {self._waiting} queued"
                    )
                self._waiting += 1
                try:
                    await cond.wait_for(lambda: self._running < self.max_running)
                finally:
                    self._waiting -= 1
            self._running += 1
        try:
            yield
        finally:
            async with cond:
                self._running -= 1
                cond.notify_all()
