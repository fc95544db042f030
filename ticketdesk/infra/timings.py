from __future__ import annotations
import statistics
import time
from typing import Dict, List


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def _mean_std(values: List[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


class Timings:
    """
    Per-kind call durations, reported on the admin system stats page.

    Hot path is append only; one list per kind, no locks, single-threaded
    event loop. Each list keeps the latest `keep` samples.
    """

    def __init__(self, keep: int = 1000) -> None:
        self.keep = keep
        self._timings: Dict[str, List[float]] = {}

    def record(self, kind: str, value: float) -> None:
        lst = self._timings.get(kind)
        if lst is None:
            lst = []
            self._timings[kind] = lst
        lst.append(float(value))
        if len(lst) > self.keep:
            del lst[: len(lst) - self.keep]

    def timeit(self, kind: str) -> "timeit":
        return timeit(self, kind)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        out = {}
        for kind, vals in sorted(self._timings.items()):
            mean, std = _mean_std(vals)
            out[kind] = {
                "n": len(vals),
                "mean_ms": round(mean * 1000, 3),
                "std_ms": round(std * 1000, 3),
                "max_ms": round(max(vals) * 1000, 3) if vals else 0.0,
            }
        return out

    def clear(self) -> None:
        self._timings.clear()


class timeit:
    """async usage:
        async with timings.timeit("email.ticket_email"):
            await fn()
    """
    __slots__ = ("_timings", "_kind", "_t0")

    def __init__(self, timings: Timings, kind: str):
        self._timings = timings
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._timings.record(self._kind, now_ts() - self._t0)
