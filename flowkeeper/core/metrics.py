# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Metrics — In-memory counters for pool and access observability.

Counters used by the service:
  pool_hit / pool_miss / pool_build_failed
  pool_evicted / pool_invalidated / pool_closed
  access_granted / access_denied:<kind>
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any, Dict, List

_MAX_SAMPLES = 500


class Metrics:
    """Process-local metrics collector."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = {}
        self._samples: Dict[str, List[float]] = defaultdict(list)
        self._start_time = time.time()

    def inc(self, name: str, amount: int = 1) -> None:
        self._counters[name] += amount

    def get_counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def set_gauge(self, name: str, value: float) -> None:
        self._gauges[name] = value

    def get_gauge(self, name: str) -> float:
        return self._gauges.get(name, 0.0)

    def observe(self, name: str, value_ms: float) -> None:
        """Record a latency sample; only the most recent samples are kept."""
        samples = self._samples[name]
        samples.append(value_ms)
        if len(samples) > _MAX_SAMPLES:
            del samples[: len(samples) - _MAX_SAMPLES]

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._samples.clear()

    def snapshot(self) -> Dict[str, Any]:
        """Export all metrics as a dict."""
        latency = {}
        for name, values in self._samples.items():
            if values:
                latency[name] = {
                    "count": len(values),
                    "avg_ms": round(sum(values) / len(values), 2),
                    "max_ms": round(max(values), 2),
                }
        return {
            "uptime_seconds": round(time.time() - self._start_time, 1),
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "latency": latency,
        }


# Global singleton
keeper_metrics = Metrics()
