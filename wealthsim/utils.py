import math
import time
from typing import Optional, Sequence

import numpy as np

from wealthsim import config as cfg


def to_monthly_rate(annual_percent: float) -> float:
    """Geometric monthly rate: (1 + p/100)^(1/12) - 1."""
    return (1 + annual_percent / 100) ** (1 / cfg.MONTHS_PER_YEAR) - 1


def to_monthly_volatility(annual_volatility: float) -> float:
    """Annual volatility (fraction) scaled to one month."""
    return annual_volatility / math.sqrt(cfg.MONTHS_PER_YEAR)


def percentile(values: Sequence[float], p: float) -> float:
    """Linear-interpolated percentile; 0 for an empty sample."""
    if len(values) == 0:
        return 0.0
    return float(np.percentile(np.asarray(values, dtype=float), p))


def median_or_none(values: Sequence[float]) -> Optional[float]:
    if len(values) == 0:
        return None
    return percentile(values, 50)


def clamp(value: float, minimum: float, maximum: float) -> float:
    return min(max(value, minimum), maximum)


def round_half_up(value: float, digits: int = 0) -> float:
    """Round halves up (62.5 -> 63) where round() would round to even."""
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


def fmt_elapsed(seconds):
    """Format elapsed seconds as human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    m, s = divmod(seconds, 60)
    return f"{int(m)}m {s:.1f}s"


def format_eta(eta_seconds: Optional[float]) -> str:
    if eta_seconds is None or not math.isfinite(eta_seconds) or eta_seconds < 0:
        return ''
    if eta_seconds < 1:
        return '< 1 s'
    if eta_seconds < 60:
        return f"{round(eta_seconds)} s"
    minutes, seconds = divmod(int(round(eta_seconds)), 60)
    if minutes < 60:
        return f"{minutes}:{seconds:02d} min"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}:{minutes:02d} h"


class EtaTracker:
    """
    Remaining-time estimate from an exponentially smoothed throughput.

    No estimate is given before `min_samples` updates and `min_elapsed`
    seconds. Updates closer than `min_delta` seconds to the last sample are
    skipped and leave the reference point where it is, so frequent polling
    still adds up to throughput samples.
    """

    def __init__(self, alpha: float = cfg.ETA_ALPHA, min_samples: int = cfg.ETA_MIN_SAMPLES,
                 min_elapsed: float = cfg.ETA_MIN_ELAPSED_SECONDS,
                 min_delta: float = cfg.ETA_MIN_DELTA_SECONDS, clock=time.monotonic):
        self.alpha = alpha
        self.min_samples = min_samples
        self.min_elapsed = min_elapsed
        self.min_delta = min_delta
        self._clock = clock
        self.total = 0
        self.start_time = None
        self.last_time = None
        self.last_completed = 0
        self.throughput = 0.0
        self.samples = 0
        self.stopped = False

    def start(self, total: int):
        self.total = total
        self.start_time = self.last_time = self._clock()
        self.last_completed = 0
        self.throughput = 0.0
        self.samples = 0
        self.stopped = False

    def update(self, completed: int):
        if self.stopped:
            return
        now = self._clock()
        if self.start_time is None:
            self.start_time = self.last_time = now
        delta_completed = completed - self.last_completed
        delta_time = now - self.last_time
        if delta_completed <= 0 or delta_time < self.min_delta:
            return
        instant = delta_completed / delta_time
        if self.throughput == 0:
            self.throughput = instant
        else:
            self.throughput = self.alpha * instant + (1 - self.alpha) * self.throughput
        self.last_completed = completed
        self.last_time = now
        self.samples += 1

    def eta_seconds(self) -> Optional[float]:
        if self.stopped or self.start_time is None or self.total <= 0 or self.throughput <= 0:
            return None
        if self.samples < self.min_samples or self._clock() - self.start_time < self.min_elapsed:
            return None
        remaining = max(0, self.total - self.last_completed)
        return remaining / self.throughput

    def stop(self):
        self.stopped = True
