# digistore/infra/timings.py
"""
In-process latency samples for external calls and fulfillment steps.

Recording is a deque append on the event loop thread; statistics are only
computed when `/api/admin/timings` asks for them.
"""
from __future__ import annotations
import statistics
import time
from collections import deque
from typing import Deque, Dict, List

# keep memory bounded on long-running workers
MAX_SAMPLES_PER_KIND = 10_000

_SAMPLES: Dict[str, Deque[float]] = {}


def record_timing(kind: str, seconds: float) -> None:
    samples = _SAMPLES.get(kind)
    if samples is None or samples.maxlen != MAX_SAMPLES_PER_KIND:
        samples = deque(samples or (), maxlen=MAX_SAMPLES_PER_KIND)
        _SAMPLES[kind] = samples
    samples.append(float(seconds))


class timeit:
    """Time the enclosed block under `kind`, including when it raises.

        async with timeit("panel.post"):
            await client.create(...)
    """
    __slots__ = ("kind", "_started")

    def __init__(self, kind: str):
        self.kind = kind
        self._started = 0.0

    async def __aenter__(self):
        self._started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        # a slow timeout is the interesting case
        record_timing(self.kind, time.perf_counter() - self._started)


def _p95(values: List[float]) -> float:
    ordered = sorted(values)
    return ordered[min(len(ordered) - 1, int(0.95 * len(ordered)))]


def aggregates() -> List[Dict[str, float]]:
    """One record per kind, in seconds: kind, n, mean, std, p95, max."""
    out = []
    for kind in sorted(_SAMPLES):
        values = list(_SAMPLES[kind])
        if not values:
            continue
        out.append({
            "kind": kind,
            "n": len(values),
            "mean": statistics.fmean(values),
            "std": statistics.stdev(values) if len(values) > 1 else 0.0,
            "p95": _p95(values),
            "max": max(values),
        })
    return out


def reset() -> None:
    _SAMPLES.clear()
