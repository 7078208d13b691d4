import asyncio
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Sequence

from export_server.errors import EngineExitError, EngineSpawnError, EngineTimeoutError
from export_server.jobs import ConversionOptions
from export_server.utils.logging import get_logger


logger = get_logger(__name__)

LineHandler = Callable[[str], None]

AUDIO_SAMPLE_RATE = "44100"
READ_CHUNK_SIZE = 4096
STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class QualityPreset:
    video_bitrate: str
    audio_bitrate: str
    preset: str


QUALITY_PRESETS: Dict[str, QualityPreset] = {
    "low": QualityPreset(video_bitrate="2000k", audio_bitrate="128k", preset="veryfast"),
    "medium": QualityPreset(video_bitrate="5000k", audio_bitrate="192k", preset="medium"),
    "high": QualityPreset(video_bitrate="10000k", audio_bitrate="256k", preset="slow"),
}


def get_preset(quality: str) -> QualityPreset:
    return QUALITY_PRESETS.get(quality, QUALITY_PRESETS["high"])


def build_convert_command(
    video: Path,
    audio: Optional[Path],
    out_video: Path,
    options: ConversionOptions,
    engine: Sequence[str] = ("ffmpeg",),
) -> List[str]:
    preset = get_preset(options.quality)
    cmd: List[str] = [
        *engine,
        "-y",
        "-i",
        str(video),
    ]
    if audio is not None:
        cmd += ["-i", str(audio)]
    cmd += [
        "-c:v",
        "libx264",
        "-b:v",
        preset.video_bitrate,
        "-preset",
        preset.preset,
        "-profile:v",
        "high",
        "-level",
        "4.1",
        "-pix_fmt",
        "yuv420p",
        "-movflags",
        "+faststart",
        "-r",
        str(options.fps),
    ]
    if audio is not None:
        # Video from the first input, audio from the separate track
        cmd += [
            "-c:a",
            "aac",
            "-b:a",
            preset.audio_bitrate,
            "-ar",
            AUDIO_SAMPLE_RATE,
            "-map",
            "0:v:0",
            "-map",
            "1:a:0",
            "-shortest",
        ]
    else:
        cmd += ["-an"]
    cmd += ["-progress", "pipe:1", str(out_video)]
    return cmd


async def _pump_stream(stream: Optional[asyncio.StreamReader], on_line: LineHandler) -> None:
    """Feed every line of ``stream`` to ``on_line``.

    ffmpeg terminates its stats lines with ``\\r``, so lines are split on both
    ``\\r`` and ``\\n`` instead of relying on readline().
    """
    if stream is None:
        return
    buffer = ""
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        buffer += chunk.decode("utf-8", errors="ignore")
        lines = buffer.replace("\r", "\n").split("\n")
        buffer = lines.pop()
        for line in lines:
            if line:
                on_line(line)
    if buffer:
        on_line(buffer)


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


async def run_engine(
    cmd: List[str],
    on_stdout: LineHandler,
    on_stderr: LineHandler,
    timeout: Optional[float] = None,
) -> int:
    """Run the engine without blocking the event loop.

    Returns 0 on success. Raises EngineSpawnError if the process cannot be
    started, EngineTimeoutError if it outlives ``timeout`` and EngineExitError
    for any other nonzero exit. The process is killed if the caller is
    cancelled.
    """
    logger.info("run_engine %s", " ".join(cmd))
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise EngineSpawnError(f"Failed to start {cmd[0]}: {exc}") from exc

    tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    def _on_stderr(line: str) -> None:
        tail.append(line)
        on_stderr(line)

    async def _communicate() -> int:
        await asyncio.gather(_pump_stream(proc.stdout, on_stdout), _pump_stream(proc.stderr, _on_stderr))
        return await proc.wait()

    try:
        return_code = await asyncio.wait_for(_communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Engine timed out after %s seconds: %s", timeout, " ".join(cmd[:10]))
        await _terminate(proc)
        raise EngineTimeoutError(timeout or 0)
    except BaseException:
        # Cancelled or a handler blew up: never leave the engine running
        await _terminate(proc)
        raise

    if return_code != 0:
        details = f"FFmpeg exited with code {return_code}"
        if tail:
            details = f"{details}: {tail[-1]}"
        raise EngineExitError(return_code, details)
    return return_code
