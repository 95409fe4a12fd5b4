"""
Pipeline metrics collection.

This module handles:
- Labelled counters, gauges and timings
- Provider, cache, validation, quota and collection recording helpers
- Per-label breakdowns for the status report
- Periodic export to the log
"""

import threading
import logging
from typing import Dict, Any, Optional, List, Tuple
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from collections import defaultdict, deque

logger = logging.getLogger(__name__)

Labels = Tuple[Tuple[str, str], ...]

RECENT_POINTS = 1000


def _labels(tags: Optional[Dict[str, str]]) -> Labels:
    return tuple(sorted((tags or {}).items()))


def _matches(labels: Labels, tags: Dict[str, str]) -> bool:
    present = dict(labels)
    return all(present.get(key) == value for key, value in tags.items())


@dataclass
class MetricPoint:
    """A single recorded value."""
    timestamp: datetime
    value: float
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class MetricSummary:
    """Running summary of a timing metric."""
    count: int = 0
    sum: float = 0.0
    min: float = float('inf')
    max: float = float('-inf')

    @property
    def avg(self) -> float:
        return self.sum / self.count if self.count else 0.0

    def update(self, value: float):
        self.count += 1
        self.sum += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)


class MetricsCollector:
    """
    Collects pipeline metrics as labelled series.

    Every counter and gauge is kept per distinct tag set, so totals can be
    read for a whole metric or broken down by one label (provider, category,
    severity).

    Features:
    - Labelled counters and gauges
    - Timings with percentiles over the last 1000 samples
    - Bounded recent points per metric
    - Thread-safe recording
    - Periodic export to the log on a daemon thread
    """

    def __init__(self, export_interval: int = 60):
        self.counters: Dict[str, Dict[Labels, int]] = defaultdict(lambda: defaultdict(int))
        self.gauges: Dict[str, Dict[Labels, float]] = defaultdict(dict)
        self.timings: Dict[str, deque] = defaultdict(lambda: deque(maxlen=RECENT_POINTS))
        self.summaries: Dict[str, MetricSummary] = defaultdict(MetricSummary)
        self.recent_points: Dict[str, deque] = defaultdict(lambda: deque(maxlen=RECENT_POINTS))
        self._last_gauge: Dict[str, float] = {}

        self.lock = threading.RLock()

        self.export_interval = export_interval
        self._export_thread: Optional[threading.Thread] = None
        self._export_stop = threading.Event()

        logger.info("Initialized MetricsCollector")

    def increment(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """
        Increment a counter series.

        Args:
            name: Metric name
            value: Amount to add
            tags: Labels identifying the series
        """
        with self.lock:
            self.counters[name][_labels(tags)] += value
            self._record_point(name, value, tags)

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        with self.lock:
            self.gauges[name][_labels(tags)] = value
            self._last_gauge[name] = value
            self._record_point(name, value, tags)

    def record_timing(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        """Record a duration in seconds. Timings are aggregated across labels."""
        with self.lock:
            self.timings[name].append(value)
            self.summaries[name].update(value)
            self._record_point(name, value, tags)

    def _record_point(self, name: str, value: float, tags: Optional[Dict[str, str]]):
        self.recent_points[name].append(MetricPoint(datetime.now(), value, dict(tags or {})))

    # Recording helpers used across the pipeline

    def record_provider_call(self, provider: str, endpoint: str, duration: float, success: bool):
        """Record one upstream request attempt."""
        tags = {"provider": provider, "endpoint": endpoint}
        self.increment("provider_calls_total", tags=tags)
        self.record_timing("provider_duration_seconds", duration, tags=tags)
        if not success:
            self.increment("provider_failures_total", tags=tags)

    def record_rate_limited(self, provider: str):
        self.increment("rate_limited_total", tags={"provider": provider})

    def record_cache_hit(self, tags: Optional[Dict[str, str]] = None):
        self.increment("cache_hits", tags=tags)

    def record_cache_miss(self, tags: Optional[Dict[str, str]] = None):
        self.increment("cache_misses", tags=tags)

    def record_error(self, component: str, error_type: str):
        self.increment("errors_total", tags={"component": component, "error_type": error_type})

    def record_validation(self, kind: str, valid: bool, confidence: float):
        """Record one validation decision and the confidence it produced."""
        tags = {"kind": kind}
        self.increment("validation_total", tags=tags)
        if not valid:
            self.increment("validation_rejections", tags=tags)
        self.set_gauge("validation_confidence", confidence, tags=tags)

    def record_collection(self, category: str, duration: float, success: bool):
        """Record one orchestrator iteration."""
        tags = {"category": category}
        self.increment("collections_total", tags=tags)
        self.record_timing("collection_duration_seconds", duration, tags=tags)
        if not success:
            self.increment("collections_failed", tags=tags)

    def record_estimate(self, provider: str):
        self.increment("estimates_total", tags={"provider": provider})

    def record_anomaly(self, asset_id: str, severity: str):
        self.increment("anomalies_total", tags={"asset": asset_id, "severity": severity})

    # Readers

    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> int:
        """
        Total of a counter.

        Args:
            name: Metric name
            tags: Only sum series carrying these labels; all series when omitted

        Returns:
            Summed count, 0 for an unknown metric
        """
        with self.lock:
            series = self.counters.get(name, {})
            return sum(
                count for labels, count in series.items()
                if not tags or _matches(labels, tags)
            )

    def get_gauge(self, name: str, tags: Optional[Dict[str, str]] = None) -> float:
        """Gauge value for a label set, or the last value set under any labels."""
        with self.lock:
            if tags is None:
                return self._last_gauge.get(name, 0.0)
            return self.gauges.get(name, {}).get(_labels(tags), 0.0)

    def get_breakdown(self, name: str, label: str) -> Dict[str, int]:
        """
        Counter totals grouped by one label.

        Series without the label are left out.
        """
        breakdown: Dict[str, int] = defaultdict(int)
        with self.lock:
            for labels, count in self.counters.get(name, {}).items():
                value = dict(labels).get(label)
                if value is not None:
                    breakdown[value] += count
        return dict(breakdown)

    def get_timing_stats(self, name: str) -> Dict[str, float]:
        with self.lock:
            samples = sorted(self.timings.get(name, ()))
        if not samples:
            return {}

        return {
            "count": len(samples),
            "min": samples[0],
            "max": samples[-1],
            "avg": sum(samples) / len(samples),
            "p50": _percentile(samples, 0.5),
            "p95": _percentile(samples, 0.95),
            "p99": _percentile(samples, 0.99)
        }

    def get_recent_metrics(self, name: str, since: Optional[datetime] = None) -> List[MetricPoint]:
        """Points recorded for a metric since a time (default: the last hour)."""
        if since is None:
            since = datetime.now() - timedelta(hours=1)

        with self.lock:
            return [p for p in self.recent_points.get(name, ()) if p.timestamp >= since]

    def get_all_metrics(self) -> Dict[str, Any]:
        """Totals per metric name, for export and the status report."""
        with self.lock:
            return {
                "counters": {name: self.get_counter(name) for name in self.counters},
                "gauges": dict(self._last_gauge),
                "timings": {name: self.get_timing_stats(name) for name in self.timings},
                "summaries": {
                    name: {
                        "count": summary.count,
                        "sum": summary.sum,
                        "min": summary.min,
                        "max": summary.max,
                        "avg": summary.avg
                    }
                    for name, summary in self.summaries.items()
                }
            }

    def reset(self):
        with self.lock:
            self.counters.clear()
            self.gauges.clear()
            self._last_gauge.clear()
            self.timings.clear()
            self.summaries.clear()
            self.recent_points.clear()

        logger.info("Reset all metrics")

    def start_export_timer(self):
        """Start exporting to the log every ``export_interval`` seconds. Idempotent."""
        if self._export_thread is not None and self._export_thread.is_alive():
            return

        self._export_stop.clear()

        def export_loop():
            while not self._export_stop.wait(self.export_interval):
                self._export_metrics()

        self._export_thread = threading.Thread(target=export_loop, daemon=True)
        self._export_thread.start()
        logger.info("Started metrics export timer")

    def stop_export_timer(self):
        if self._export_thread is None:
            return
        self._export_stop.set()
        self._export_thread.join(timeout=1.0)
        self._export_thread = None
        logger.info("Stopped metrics export timer")

    def _export_metrics(self):
        logger.info(f"Pipeline metrics: {self.get_all_metrics()['counters']}")


def _percentile(sorted_values: List[float], p: float) -> float:
    """Linear interpolation between closest ranks."""
    n = len(sorted_values)
    k = (n - 1) * p
    low = int(k)
    if low + 1 < n:
        return sorted_values[low] + (k - low) * (sorted_values[low + 1] - sorted_values[low])
    return sorted_values[low]
