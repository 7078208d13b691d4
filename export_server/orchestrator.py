"""
Conversion orchestration: job lifecycle, engine runs and result delivery.

A single :class:`ConversionService` is created at startup and handed to the
HTTP layer. It owns the job registry and the engine pool; every job's temp
files travel with it as a :class:`TempFiles` so that each way out of a
conversion releases them.
"""

import asyncio
import re
import uuid
from pathlib import Path
from typing import AsyncIterator, Optional
from urllib.parse import quote

from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse

from export_server.config import Settings
from export_server.errors import EngineSpawnError, StreamDeliveryError
from export_server.jobs import ConversionOptions, EnginePool, Job, JobProgress, JobRegistry, JobStatus
from export_server.utils.logging import get_logger, job_extra
from export_server.utils.media import build_convert_command, run_engine
from export_server.utils.progress import ProgressTracker
from export_server.utils.storage import TempFiles


logger = get_logger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024
_UNSAFE_FILENAME_RE = re.compile(r'["\\\x00-\x1f\x7f]')


def content_disposition(filename: str) -> str:
    name = _UNSAFE_FILENAME_RE.sub("", filename).strip() or "export.mp4"
    try:
        name.encode("latin-1")
    except UnicodeEncodeError:
        fallback = name.encode("ascii", errors="ignore").decode("ascii").strip() or "export.mp4"
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(name)}"
    return f'attachment; filename="{name}"'


class ConversionService:
    def __init__(
        self,
        settings: Settings,
        registry: Optional[JobRegistry] = None,
        pool: Optional[EnginePool] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or JobRegistry()
        self.pool = pool or EnginePool(settings.max_concurrent_jobs, settings.max_queued_jobs)
        self.temp_dir = settings.temp_path()

    def new_job(self, video_path: Path, audio_path: Optional[Path], options: ConversionOptions, files: TempFiles) -> Job:
        job_id = uuid.uuid4().hex
        output_path = files.track(self.temp_dir / f"{job_id}.mp4")
        return Job(id=job_id, video_path=video_path, audio_path=audio_path, output_path=output_path, options=options)

    def progress(self, job_id: str) -> Optional[JobProgress]:
        return self.registry.get(job_id)

    async def convert(self, job: Job) -> None:
        """Run the engine for ``job`` and mark it complete.

        Progress is written to the registry as the engine reports it. On any
        failure the exception propagates; a job whose engine never started is
        dropped from the registry right away.
        """
        extra = job_extra(job.id)
        self.registry.create(job.id)
        tracker = ProgressTracker()

        def on_progress(line: str) -> None:
            percent = tracker.feed_progress(line)
            if percent is None:
                return
            snapshot = self.registry.update(job.id, percent)
            if snapshot is not None:
                logger.debug("Progress: %.1f%%", snapshot.progress, extra=extra)

        cmd = build_convert_command(
            job.video_path,
            job.audio_path,
            job.output_path,
            job.options,
            engine=self.settings.engine_command,
        )
        logger.info(
            "Starting conversion video=%s audio=%s quality=%s fps=%d",
            job.video_path,
            job.audio_path or "none",
            job.options.quality,
            job.options.fps,
            extra=extra,
        )
        try:
            async with self.pool.slot():
                await run_engine(cmd, on_progress, tracker.feed_diagnostic, timeout=self.settings.engine_timeout)
        except EngineSpawnError as exc:
            logger.error("Engine could not start: %s", exc, extra=extra)
            self.registry.remove(job.id)
            raise
        finally:
            job.duration = tracker.duration

        self.registry.update(job.id, 100, JobStatus.COMPLETE)
        logger.info("Conversion complete", extra=extra)

    async def process(self, job: Job, files: TempFiles) -> StreamingResponse:
        """Convert ``job`` and return the response that delivers it.

        On success the response takes over ``files``; on failure they are
        released here and the job is retired before the error propagates.
        """
        try:
            await self.convert(job)
            response = self.stream_result(job, files)
        except BaseException as exc:
            if not isinstance(exc, asyncio.CancelledError):
                logger.error("Conversion error: %s", exc, extra=job_extra(job.id))
            files.release()
            self.retire(job.id, JobStatus.FAILED)
            raise
        files.hand_off()
        return response

    def retire(self, job_id: str, status: JobStatus) -> None:
        """Drop a finished job, optionally leaving its final state visible for
        a grace period."""
        grace = self.settings.progress_grace_seconds
        current = self.registry.get(job_id)
        if grace <= 0 or current is None:
            self.registry.remove(job_id)
            return
        self.registry.update(job_id, current.progress, status)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.registry.remove(job_id)
            return
        loop.call_later(grace, self.registry.remove, job_id)

    def stream_result(self, job: Job, files: TempFiles) -> StreamingResponse:
        extra = job_extra(job.id)
        try:
            size = job.output_path.stat().st_size
        except OSError as exc:
            raise StreamDeliveryError(f"Output file unavailable: {exc}") from exc

        done = False

        def finish() -> None:
            nonlocal done
            if done:
                return
            done = True
            files.release()
            self.retire(job.id, JobStatus.COMPLETE)

        async def finish_on_loop() -> None:
            # Runs on the event loop so the grace-period removal can be scheduled
            finish()

        async def body() -> AsyncIterator[bytes]:
            sent = 0
            try:
                with open(job.output_path, "rb") as fh:
                    while True:
                        chunk = await run_in_threadpool(fh.read, STREAM_CHUNK_SIZE)
                        if not chunk:
                            break
                        sent += len(chunk)
                        yield chunk
            except OSError as exc:
                logger.error("Stream error: %s", exc, extra=extra)
            finally:
                if sent < size:
                    logger.warning("Incomplete delivery: sent %d of %d bytes", sent, size, extra=extra)
                finish()

        headers = {
            "Content-Length": str(size),
            "Content-Disposition": content_disposition(job.options.filename),
        }
        return StreamingResponse(
            body(),
            media_type="video/mp4",
            headers=headers,
            background=BackgroundTask(finish_on_loop),
        )
