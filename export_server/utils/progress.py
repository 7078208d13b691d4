"""Translate ffmpeg's text output into progress signals.

ffmpeg announces each input's length on stderr (``Duration: 00:01:02.50``) and,
when started with ``-progress pipe:1``, writes ``key=value`` blocks to stdout
that include the elapsed output time in microseconds. Everything engine
specific lives in this module; callers only see :class:`DurationSignal`,
:class:`ElapsedSignal` and percentages.
"""
import re
from dataclasses import dataclass
from typing import Optional, Union

MAX_RUNNING_PERCENT = 99.0

_DURATION_RE = re.compile(r"Duration: (\d{2}):(\d{2}):(\d{2}\.\d{2})")
_ELAPSED_RE = re.compile(r"out_time_(?:ms|us)=(\d+)")


@dataclass(frozen=True)
class DurationSignal:
    seconds: float


@dataclass(frozen=True)
class ElapsedSignal:
    microseconds: int


Signal = Union[DurationSignal, ElapsedSignal]


def parse_duration(line: str) -> Optional[float]:
    match = _DURATION_RE.search(line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_elapsed(line: str) -> Optional[int]:
    # ffmpeg reports out_time_ms in microseconds as well
    match = _ELAPSED_RE.search(line)
    if not match:
        return None
    return int(match.group(1))


def compute_percent(elapsed_us: int, duration_s: Optional[float]) -> Optional[float]:
    """Percent of ``duration_s`` covered by ``elapsed_us``, capped below 100.

    Returns None when the duration is unknown; 100 is reserved for a confirmed
    successful exit.
    """
    if not duration_s or duration_s <= 0:
        return None
    percent = (max(elapsed_us, 0) / 1_000_000) / duration_s * 100
    return min(percent, MAX_RUNNING_PERCENT)


class FfmpegProgressParser:
    def parse(self, line: str) -> Optional[Signal]:
        duration = parse_duration(line)
        if duration is not None:
            return DurationSignal(duration)
        elapsed = parse_elapsed(line)
        if elapsed is not None:
            return ElapsedSignal(elapsed)
        return None


class ProgressTracker:
    """Per-run state: caches the first announced duration and converts
    elapsed markers into percentages."""

    def __init__(self, parser: Optional[FfmpegProgressParser] = None) -> None:
        self.parser = parser or FfmpegProgressParser()
        self.duration: Optional[float] = None

    def feed_diagnostic(self, line: str) -> None:
        if self.duration is not None:
            return
        signal = self.parser.parse(line)
        if isinstance(signal, DurationSignal):
            self.duration = signal.seconds

    def feed_progress(self, line: str) -> Optional[float]:
        signal = self.parser.parse(line)
        if not isinstance(signal, ElapsedSignal):
            return None
        return compute_percent(signal.microseconds, self.duration)
