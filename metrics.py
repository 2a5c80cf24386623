import math
import statistics
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from utils import PixelBuffer, as_pixel_view


@dataclass
class EquivalenceResult:
    max_abs_diff: int = 0
    mean_abs_diff: float = 0.0
    mismatched_channels: int = 0
    alpha_preserved: bool = True
    within_epsilon: bool = True
    epsilon: int = 1
    pixel_count: int = 0
    psnr_db: Optional[float] = None


@dataclass
class TimingStats:
    count: int
    total_ms: float
    mean_ms: float
    median_ms: float
    min_ms: float
    max_ms: float
    stdev_ms: float


def _rgba(buffer) -> np.ndarray:
    return as_pixel_view(buffer).reshape(-1, 4)


def calculate_psnr(a, b) -> Optional[float]:
    """Peak signal-to-noise ratio over the RGB channels. None for identical inputs."""
    diff = _rgba(a)[:, :3].astype(np.float64) - _rgba(b)[:, :3].astype(np.float64)
    if diff.size == 0:
        return None
    mse = float(np.mean(diff * diff))
    if mse == 0.0:
        return None
    return 10.0 * math.log10(255.0 * 255.0 / mse)


def compare_pixel_buffers(a, b, epsilon: int = 1, original: Optional[PixelBuffer] = None) -> EquivalenceResult:
    """Compare two RGBA buffers of the same shape channel by channel.

    ``alpha_preserved`` checks that both outputs carry identical alpha, and
    when ``original`` is given, that it is the input's alpha.
    Raises ValueError when the buffers differ in length.
    """
    qa, qb = _rgba(a), _rgba(b)
    if qa.shape != qb.shape:
        raise ValueError(f'buffers differ in size: {qa.shape[0]} vs {qb.shape[0]} pixels')

    alpha_ok = bool(np.array_equal(qa[:, 3], qb[:, 3]))
    if original is not None:
        alpha_ok = alpha_ok and bool(np.array_equal(qa[:, 3], _rgba(original)[:, 3]))

    if qa.shape[0] == 0:
        return EquivalenceResult(alpha_preserved=alpha_ok, epsilon=epsilon)

    diff = np.abs(qa[:, :3].astype(np.int16) - qb[:, :3].astype(np.int16))
    max_diff = int(diff.max())
    return EquivalenceResult(
        max_abs_diff=max_diff,
        mean_abs_diff=float(diff.mean()),
        mismatched_channels=int(np.count_nonzero(diff)),
        alpha_preserved=alpha_ok,
        within_epsilon=max_diff <= epsilon,
        epsilon=epsilon,
        pixel_count=int(qa.shape[0]),
        psnr_db=calculate_psnr(a, b),
    )


def timing_statistics(times_ms: Sequence[float]) -> Optional[TimingStats]:
    vals: List[float] = [float(t) for t in times_ms if t is not None and not math.isnan(t)]
    if not vals:
        return None
    return TimingStats(
        count=len(vals),
        total_ms=sum(vals),
        mean_ms=statistics.mean(vals),
        median_ms=statistics.median(vals),
        min_ms=min(vals),
        max_ms=max(vals),
        stdev_ms=statistics.pstdev(vals) if len(vals) > 1 else 0.0,
    )
