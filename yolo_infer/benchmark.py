from __future__ import annotations

import statistics
import time
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
from tqdm import tqdm

from .pipeline import Detector
from .types import ModelKind


@dataclass(frozen=True)
class TimingSummary:
    n: int
    mean_ms: float
    p50_ms: float
    p90_ms: float
    p95_ms: float


def _percentile(sorted_values: List[float], q: float) -> float:
    if not sorted_values:
        raise ValueError("No values provided.")
    if q < 0.0 or q > 100.0:
        raise ValueError("q must be in [0, 100].")
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    pos = (q / 100.0) * (len(sorted_values) - 1)
    lo = int(np.floor(pos))
    hi = int(np.ceil(pos))
    if lo == hi:
        return float(sorted_values[lo])
    t = pos - lo
    return float(sorted_values[lo] * (1.0 - t) + sorted_values[hi] * t)


def summarize_seconds(values_s: Sequence[float]) -> TimingSummary:
    ms_sorted = sorted(v * 1000.0 for v in values_s)
    if not ms_sorted:
        return TimingSummary(n=0, mean_ms=0.0, p50_ms=0.0, p90_ms=0.0, p95_ms=0.0)
    return TimingSummary(
        n=len(ms_sorted),
        mean_ms=float(statistics.fmean(ms_sorted)),
        p50_ms=_percentile(ms_sorted, 50),
        p90_ms=_percentile(ms_sorted, 90),
        p95_ms=_percentile(ms_sorted, 95),
    )


def benchmark_batch(
    detector: Detector,
    images: Sequence[np.ndarray],
    *,
    runs: int = 50,
    warmup: int = 5,
    conf_threshold: float = 0.25,
    nms_threshold: float = 0.45,
    model_kind: ModelKind = ModelKind.YOLO,
    num_keypoints: int = 0,
    progress: bool = True,
) -> TimingSummary:
    """
    Time repeated detect_batch calls over the same images (end to end per batch).

    Warmup calls are not timed. A failed call stops the run with its typed error.
    """

    if runs < 1:
        raise ValueError("runs must be >= 1")
    if warmup < 0:
        raise ValueError("warmup must be >= 0")

    def once() -> float:
        t0 = time.perf_counter()
        outcome = detector.detect_batch(images, conf_threshold, nms_threshold, model_kind, num_keypoints)
        t1 = time.perf_counter()
        outcome.unwrap().release()
        return t1 - t0

    for _ in range(warmup):
        once()

    iterator = tqdm(range(runs), unit="batch", disable=not progress)
    return summarize_seconds([once() for _ in iterator])
