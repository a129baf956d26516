import sys
import time
from collections.abc import Callable
from typing import TextIO

from shared.constants import THROUGHPUT_SMOOTHING

# Smallest interval used as a rate denominator (s)
_MIN_INTERVAL_S = 1e-3


class ThroughputMeter:
    """Exponentially weighted throughput of completed tiles.

    Each completion contributes an instantaneous rate measured over the time
    since the previous completion; ``alpha`` weights the newest sample.
    """

    def __init__(
        self,
        alpha: float = THROUGHPUT_SMOOTHING,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not 0 < alpha <= 1:
            msg = f'alpha must be in (0, 1], got {alpha}'
            raise ValueError(msg)
        self.alpha = alpha
        self._clock = clock
        self._last = clock()
        self.bytes_per_second = 0.0
        self.tiles_per_second = 0.0
        self.samples = 0

    def restart(self) -> None:
        """Forget the idle gap, e.g. after a resume; averages are kept."""
        self._last = self._clock()

    def record(self, nbytes: int) -> None:
        now = self._clock()
        dt = max(_MIN_INTERVAL_S, now - self._last)
        self._last = now
        bps = nbytes / dt
        tps = 1.0 / dt
        if self.samples == 0:
            self.bytes_per_second = bps
            self.tiles_per_second = tps
        else:
            a = self.alpha
            self.bytes_per_second = a * bps + (1 - a) * self.bytes_per_second
            self.tiles_per_second = a * tps + (1 - a) * self.tiles_per_second
        self.samples += 1

    def eta_seconds(self, remaining: int) -> float | None:
        """Seconds until ``remaining`` tiles are done; None while there is no rate."""
        if self.tiles_per_second <= 0:
            return None
        return max(0, remaining) / self.tiles_per_second


def format_eta(remaining: float | None) -> str:
    if remaining is None or remaining == float('inf'):
        return '--:--'
    m, s = divmod(int(remaining), 60)
    h, m = divmod(m, 60)
    if h > 0:
        return f'{h:02d}:{m:02d}:{s:02d}'
    return f'{m:02d}:{s:02d}'


def format_bytes(n: float) -> str:
    for unit in ('B', 'KB', 'MB', 'GB'):
        if abs(n) < 1024:
            return f'{n:.0f}{unit}' if unit == 'B' else f'{n:.1f}{unit}'
        n /= 1024
    return f'{n:.1f}TB'


class ConsoleProgress:
    """Single-line progress bar for a download session."""

    def __init__(
        self,
        total: int,
        label: str = 'Progress',
        stream: TextIO | None = None,
    ) -> None:
        self.total = max(1, int(total))
        self.done = 0
        self.label = label
        self._stream = stream or sys.stderr

    def render(
        self,
        done: int,
        *,
        failed: int = 0,
        bytes_per_second: float = 0.0,
        eta_seconds: float | None = None,
    ) -> str:
        self.done = min(self.total, max(self.done, done))
        bar_len = 30
        filled = int(bar_len * self.done / self.total)
        bar = '█' * filled + '░' * (bar_len - filled)
        msg = (
            f'{self.label}: [{bar}] {self.done}/{self.total}'
            f' | failed {failed} | {format_bytes(bytes_per_second)}/s | ETA'
            f' {format_eta(eta_seconds)}'
        )
        self._stream.write('\r' + msg)
        self._stream.flush()
        return msg

    def close(self) -> None:
        self._stream.write('\n')
        self._stream.flush()
