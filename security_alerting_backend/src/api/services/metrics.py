from __future__ import annotations

import bisect
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Dict[str, Any]) -> LabelKey:
    return tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


@dataclass
class _HistogramSeries:
    buckets: Sequence[float]
    counts: List[int]
    count: int = 0
    sum: float = 0.0


@dataclass
class MetricsRegistry:
    """
    In-process labelled counters and histograms.

    Exposition to a scraper is handled outside this service; snapshot() feeds
    the admin stats endpoint.
    """

    _counters: Dict[str, Dict[LabelKey, float]] = field(default_factory=dict)
    _histograms: Dict[str, Dict[LabelKey, _HistogramSeries]] = field(default_factory=dict)
    _buckets: Dict[str, Sequence[float]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def register_histogram(self, name: str, buckets: Sequence[float]) -> None:
        self._buckets[name] = sorted(float(b) for b in buckets)

    def inc(self, name: str, labels: Dict[str, Any] | None = None, value: float = 1.0) -> None:
        key = _label_key(labels or {})
        with self._lock:
            series = self._counters.setdefault(name, {})
            series[key] = series.get(key, 0.0) + float(value)

    def observe(self, name: str, value: float, labels: Dict[str, Any] | None = None) -> None:
        key = _label_key(labels or {})
        buckets = self._buckets.get(name) or (float("inf"),)
        with self._lock:
            series = self._histograms.setdefault(name, {})
            hist = series.get(key)
            if hist is None:
                hist = _HistogramSeries(buckets=buckets, counts=[0] * len(buckets))
                series[key] = hist
            idx = bisect.bisect_left(list(buckets), float(value))
            for i in range(idx, len(buckets)):
                hist.counts[i] += 1
            hist.count += 1
            hist.sum += float(value)

    def counter_value(self, name: str, labels: Dict[str, Any] | None = None) -> float:
        with self._lock:
            return float((self._counters.get(name) or {}).get(_label_key(labels or {}), 0.0))

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            counters = {
                name: [{"labels": dict(k), "value": v} for k, v in series.items()]
                for name, series in self._counters.items()
            }
            histograms = {
                name: [
                    {
                        "labels": dict(k),
                        "count": h.count,
                        "sum": h.sum,
                        "buckets": {str(b): c for b, c in zip(h.buckets, h.counts)},
                    }
                    for k, h in series.items()
                ]
                for name, series in self._histograms.items()
            }
        return {"counters": counters, "histograms": histograms}


SECURITY_ALERTS_TOTAL = "security_alerts_total"
RATE_LIMIT_BLOCKS_TOTAL = "rate_limit_blocks_total"
RATE_LIMIT_RESET_TIME_SECONDS = "rate_limit_reset_time_seconds"
NOTIFICATION_FAILURES_TOTAL = "alert_notification_failures_total"


# PUBLIC_INTERFACE
def build_metrics_registry() -> MetricsRegistry:
    """Registry with the histograms this service observes pre-registered."""
    registry = MetricsRegistry()
    registry.register_histogram(RATE_LIMIT_RESET_TIME_SECONDS, [60, 300, 900, 1800, 3600, float("inf")])
    return registry
