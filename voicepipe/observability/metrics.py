"""
voicepipe.observability.metrics — Pipeline counters, gauges and latency histograms.

Names are dotted by component: capture.*, stream.*, playback.*.
A snapshot can be appended to a JSONL file for offline inspection.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from pathlib import Path
from typing import Any, Optional

import numpy as np

logger = logging.getLogger(__name__)


class LatencyHistogram:
    """Bounded window of recent observations, summarized on demand."""

    def __init__(self, name: str, max_size: int = 1000):
        self.name = name
        self.max_size = max_size
        self._values: deque[float] = deque(maxlen=max_size)

    def observe(self, value: float):
        self._values.append(float(value))

    @property
    def samples(self) -> list[float]:
        return list(self._values)

    @property
    def count(self) -> int:
        return len(self._values)

    def percentile(self, p: float) -> float:
        """p-th percentile (0-100), linearly interpolated. 0.0 when empty."""
        if not self._values:
            return 0.0
        return float(np.percentile(np.fromiter(self._values, dtype=np.float64), p))

    def summary(self) -> dict[str, float]:
        if not self._values:
            return {"count": 0, "mean": 0.0, "p50": 0.0, "p95": 0.0, "p99": 0.0, "max": 0.0}
        arr = np.fromiter(self._values, dtype=np.float64)
        p50, p95, p99 = np.percentile(arr, [50, 95, 99])
        return {
            "count": int(arr.size),
            "mean": round(float(arr.mean()), 2),
            "p50": round(float(p50), 2),
            "p95": round(float(p95), 2),
            "p99": round(float(p99), 2),
            "max": round(float(arr.max()), 2),
        }


class MetricsRegistry:
    """In-memory metrics shared by the capture session, channel and playback queue.

    Only touched from the event loop, so no locks are needed.
    """

    def __init__(
        self,
        output_path: Optional[str] = None,
        max_histogram_size: int = 1000,
        enabled: bool = True,
    ):
        self.output_path = output_path
        self.max_histogram_size = max_histogram_size
        self.enabled = enabled

        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, LatencyHistogram] = {}

    # ── Recording ─────────────────────────────────────────────────────────

    def counter(self, name: str, value: float = 1.0):
        if self.enabled:
            self._counters[name] = self._counters.get(name, 0.0) + value

    def gauge(self, name: str, value: float):
        if self.enabled:
            self._gauges[name] = float(value)

    def histogram(self, name: str, value: float):
        if not self.enabled:
            return
        hist = self._histograms.get(name)
        if hist is None:
            hist = self._histograms[name] = LatencyHistogram(name, self.max_histogram_size)
        hist.observe(value)

    # ── Queries ───────────────────────────────────────────────────────────

    def get_counter(self, name: str) -> float:
        return self._counters.get(name, 0.0)

    def get_gauge(self, name: str) -> float:
        return self._gauges.get(name, 0.0)

    def get_histogram(self, name: str) -> Optional[LatencyHistogram]:
        return self._histograms.get(name)

    def snapshot(self) -> dict[str, Any]:
        return {
            "timestamp": time.time(),
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": {name: h.summary() for name, h in self._histograms.items()},
        }

    # ── Persistence ───────────────────────────────────────────────────────

    async def flush(self):
        """Append the current snapshot to the JSONL output, if configured."""
        if not self.enabled or not self.output_path:
            return
        line = json.dumps(self.snapshot(), default=str)
        await asyncio.get_running_loop().run_in_executor(None, self._write_line, line)
        logger.debug("Metrics flushed to %s", self.output_path)

    def _write_line(self, line: str):
        path = Path(self.output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
