"""
Ensemble anomaly detection over rolling metric history.

This module handles:
- Statistical (z-score) detection
- Pattern (moving average deviation) detection
- Cross-metric correlation detection
- Weighted ensemble combination and severity bucketing
- Multi-metric systemic analysis per asset
- Anomaly statistics over a time window
"""

import math
import asyncio
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

import numpy as np

from .history import DEFAULT_CAPACITY, HistoryStore
from .models import AnomalyDetectionResult, AnomalyType, Severity
from .monitoring.metrics import MetricsCollector
from .storage import MetricStore
from .utils import clamp, to_float

logger = logging.getLogger(__name__)

MIN_DATA_POINTS = 30
ANOMALY_THRESHOLD = 0.7

Z_SCORE_THRESHOLD = 3.0
TAIL_PROBABILITY_THRESHOLD = 0.001
PATTERN_WINDOW = 10
PATTERN_DEVIATION_THRESHOLD = 0.5
CORRELATION_STRENGTH = 0.7
CORRELATION_DEVIATION_THRESHOLD = 0.3

DETECTOR_WEIGHTS = {
    AnomalyType.STATISTICAL: 0.4,
    AnomalyType.PATTERN: 0.3,
    AnomalyType.CORRELATION: 0.3,
}

TYPE_PRIORITY = [
    AnomalyType.STATISTICAL,
    AnomalyType.CORRELATION,
    AnomalyType.PATTERN,
    AnomalyType.VOLUME,
    AnomalyType.PRICE,
]

STREAM_BATCH_SIZE = 10

# Stored category fields fed into detector history, renamed to metric names
TRACKED_FIELDS = {
    "price": {"price": "price", "volume_24h": "volume", "market_cap": "market_cap"},
    "onchain": {"mvrv": "mvrv", "nupl": "nupl", "sopr": "sopr", "active_addresses": "active_addresses"},
    "technical": {"rsi": "rsi"},
    "derivatives": {"funding_rate": "funding_rate", "open_interest": "open_interest"},
}


@dataclass
class DetectorOutput:
    """Output of one detector that ran (abstaining detectors produce none)."""
    detector: AnomalyType
    is_anomaly: bool
    score: float
    confidence: float
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SystemicAnomalyReport:
    """Asset-level verdict over several metrics."""
    asset_id: str
    overall_anomaly: bool
    overall_score: float
    individual_results: Dict[str, AnomalyDetectionResult]
    systemic_issues: List[str]
    systemic_severity: float
    timestamp: datetime


def severity_for(score: float) -> Severity:
    """Bucket an anomaly score into a severity level."""
    if score < 0.3:
        return Severity.LOW
    if score < 0.6:
        return Severity.MEDIUM
    if score < 0.8:
        return Severity.HIGH
    return Severity.CRITICAL


def combine_scores(outputs: Iterable[DetectorOutput]) -> float:
    """
    Weighted mean of detector scores over the detectors that ran.

    Returns:
        Combined score in [0, 1]; 0 when no detector ran
    """
    weighted = 0.0
    total_weight = 0.0
    for output in outputs:
        weight = DETECTOR_WEIGHTS.get(output.detector, 0.1)
        weighted += clamp(output.score) * weight
        total_weight += weight
    if total_weight == 0:
        return 0.0
    return clamp(weighted / total_weight)


def two_tailed_probability(z_score: float) -> float:
    """P(|Z| >= z) under the standard normal."""
    return math.erfc(abs(z_score) / math.sqrt(2))


def _to_epoch(timestamp: Union[datetime, float, None]) -> float:
    if timestamp is None:
        return datetime.now().timestamp()
    if isinstance(timestamp, datetime):
        return timestamp.timestamp()
    return float(timestamp)


class AnomalyDetector:
    """
    Combines statistical, pattern and correlation detectors per metric.

    Features:
    - Bounded rolling history per (asset, metric)
    - Abstains below the minimum history size
    - Weighted ensemble with severity buckets
    - Systemic pass across an asset's metrics
    - Window statistics over detected anomalies
    """

    def __init__(
        self,
        history: Optional[HistoryStore] = None,
        metrics: Optional[MetricsCollector] = None,
        max_records: int = DEFAULT_CAPACITY
    ):
        self.history = history or HistoryStore(DEFAULT_CAPACITY)
        self.metrics = metrics
        self.anomalies: deque = deque(maxlen=max_records)
        self.detections = 0

        logger.info("Initialized AnomalyDetector")

    def observe(self, asset_id: str, metric: str, value: Any, timestamp=None) -> bool:
        """Push an accepted value into rolling history."""
        value = to_float(value)
        if value is None:
            return False
        return self.history.record(asset_id, metric, value, _to_epoch(timestamp))

    def detect(
        self,
        asset_id: str,
        metric: str,
        value: Any,
        timestamp: Union[datetime, float, None] = None
    ) -> AnomalyDetectionResult:
        """
        Run the ensemble for one observation, then add it to history.

        Args:
            asset_id: Asset identifier
            metric: Metric name
            value: Observed value
            timestamp: Observation time

        Returns:
            AnomalyDetectionResult; abstaining results have score 0 and confidence 0
        """
        result = self._evaluate(asset_id, metric, value, timestamp)
        self.observe(asset_id, metric, value, timestamp)
        self._track(result)
        return result

    def _evaluate(
        self,
        asset_id: str,
        metric: str,
        value: Any,
        timestamp,
        peers: Optional[Dict[str, float]] = None
    ) -> AnomalyDetectionResult:
        epoch = _to_epoch(timestamp)
        stamp = datetime.fromtimestamp(epoch)
        current = to_float(value)

        buffer = self.history.get(asset_id, metric)
        baseline = buffer.values_before(epoch) if buffer is not None else np.array([])

        if current is None or len(baseline) < MIN_DATA_POINTS:
            return AnomalyDetectionResult(
                is_anomaly=False,
                anomaly_score=0.0,
                anomaly_type=AnomalyType.STATISTICAL,
                confidence=0.0,
                severity=Severity.LOW,
                timestamp=stamp,
                metrics={"reason": "insufficient_history", "history_points": len(baseline)},
                asset_id=asset_id,
                metric_name=metric
            )

        outputs = [
            output for output in (
                self._statistical(current, baseline),
                self._pattern(current, baseline),
                self._correlation(asset_id, metric, current, epoch, peers or {}),
            )
            if output is not None
        ]

        score = combine_scores(outputs)
        ran = {output.detector for output in outputs}
        flagged = {output.detector for output in outputs if output.is_anomaly}
        primary = next(
            (t for t in TYPE_PRIORITY if t in (flagged or ran)),
            AnomalyType.STATISTICAL
        )

        diagnostics: Dict[str, Any] = {"detectors": sorted(t.value for t in ran)}
        for output in outputs:
            diagnostics.update(output.details)

        return AnomalyDetectionResult(
            is_anomaly=score > ANOMALY_THRESHOLD,
            anomaly_score=score,
            anomaly_type=primary,
            confidence=max((output.confidence for output in outputs), default=0.0),
            severity=severity_for(score),
            timestamp=stamp,
            metrics=diagnostics,
            asset_id=asset_id,
            metric_name=metric
        )

    def _statistical(self, current: float, baseline: np.ndarray) -> Optional[DetectorOutput]:
        mean = float(np.mean(baseline))
        std = float(np.std(baseline))
        if std == 0:
            return None

        z_score = abs(current - mean) / std
        probability = two_tailed_probability(z_score)
        return DetectorOutput(
            detector=AnomalyType.STATISTICAL,
            is_anomaly=z_score > Z_SCORE_THRESHOLD or probability < TAIL_PROBABILITY_THRESHOLD,
            score=min(z_score / 5, 1.0),
            confidence=min(z_score / 2, 1.0),
            details={"z_score": z_score, "tail_probability": probability, "mean": mean, "std": std}
        )

    def _pattern(self, current: float, baseline: np.ndarray) -> Optional[DetectorOutput]:
        window = baseline[-min(PATTERN_WINDOW, len(baseline)):]
        moving_average = float(np.mean(window))
        if moving_average == 0:
            return None

        deviation = abs(current - moving_average) / abs(moving_average)
        return DetectorOutput(
            detector=AnomalyType.PATTERN,
            is_anomaly=deviation > PATTERN_DEVIATION_THRESHOLD,
            score=min(deviation, 1.0),
            confidence=min(deviation * 2, 1.0),
            details={"moving_average": moving_average, "pattern_deviation": deviation}
        )

    def _correlation(
        self,
        asset_id: str,
        metric: str,
        current: float,
        epoch: float,
        peers: Dict[str, float]
    ) -> Optional[DetectorOutput]:
        own = self.history.get(asset_id, metric).values_before(epoch)
        max_deviation = None
        partners = {}

        for other in self.history.metrics_for(asset_id):
            if other == metric:
                continue
            related_buffer = self.history.get(asset_id, other)
            if other in peers:
                anchor = peers[other]
            else:
                latest = related_buffer.latest()
                if latest is None:
                    continue
                anchor = latest[1]
            related = related_buffer.values_before(epoch)

            n = min(len(own), len(related))
            if n < MIN_DATA_POINTS:
                continue
            x, y = related[-n:], own[-n:]
            if np.std(x) == 0 or np.std(y) == 0:
                continue

            rho = float(np.corrcoef(x, y)[0, 1])
            if not math.isfinite(rho) or abs(rho) <= CORRELATION_STRENGTH:
                continue

            # Project this metric from the related metric's current value
            slope, intercept = np.polyfit(x, y, 1)
            expected = float(slope * anchor + intercept)
            if expected == 0:
                continue

            deviation = abs(current - expected) / abs(expected)
            partners[other] = {"rho": rho, "expected": expected, "deviation": deviation}
            max_deviation = deviation if max_deviation is None else max(max_deviation, deviation)

        if max_deviation is None:
            return None

        return DetectorOutput(
            detector=AnomalyType.CORRELATION,
            is_anomaly=max_deviation > CORRELATION_DEVIATION_THRESHOLD,
            score=min(max_deviation, 1.0),
            confidence=min(max_deviation * 3, 1.0),
            details={"correlation_deviation": max_deviation, "correlated_with": partners}
        )

    def detect_multi(
        self,
        asset_id: str,
        metrics: Dict[str, Any],
        timestamp: Union[datetime, float, None] = None
    ) -> SystemicAnomalyReport:
        """
        Detect anomalies across several metrics of one asset.

        Every metric is evaluated against history before any of the new
        points is recorded, so correlation baselines stay aligned.

        Args:
            asset_id: Asset identifier
            metrics: Latest value per metric name; missing values are skipped
            timestamp: Observation time

        Returns:
            SystemicAnomalyReport
        """
        epoch = _to_epoch(timestamp)
        present = {name: to_float(value) for name, value in metrics.items()}
        present = {name: value for name, value in present.items() if value is not None}

        individual = {
            name: self._evaluate(asset_id, name, value, epoch, peers=present)
            for name, value in present.items()
        }
        for name, value in present.items():
            self.observe(asset_id, name, value, epoch)
        for result in individual.values():
            self._track(result)

        issues, systemic = self._systemic_issues(individual)
        anomaly_scores = [r.anomaly_score for r in individual.values() if r.is_anomaly]
        if anomaly_scores:
            average = sum(anomaly_scores) / len(anomaly_scores)
            overall = 0.6 * average + 0.4 * max(max(anomaly_scores), systemic)
        else:
            overall = systemic

        report = SystemicAnomalyReport(
            asset_id=asset_id,
            overall_anomaly=overall > ANOMALY_THRESHOLD,
            overall_score=overall,
            individual_results=individual,
            systemic_issues=issues,
            systemic_severity=systemic,
            timestamp=datetime.fromtimestamp(epoch)
        )

        if report.overall_anomaly:
            logger.warning(
                f"Systemic anomaly for {asset_id}: score {overall:.2f}, issues {issues}"
            )
        return report

    def _systemic_issues(self, individual: Dict[str, AnomalyDetectionResult]):
        issues = []
        severity = 0.0
        if not individual:
            return issues, severity

        flagged = [r for r in individual.values() if r.is_anomaly]
        if len(flagged) / len(individual) > 0.5:
            issues.append("Multiple metrics showing anomalous behavior")
            severity += 0.8

        high = [r for r in flagged if r.severity in (Severity.HIGH, Severity.CRITICAL)]
        if high:
            issues.append(f"{len(high)} high-severity anomalies detected")
            severity += 0.6

        price = individual.get("price")
        volume = individual.get("volume")
        if price and volume and price.is_anomaly and volume.is_anomaly:
            issues.append("Price and volume both anomalous, possible manipulation")
            severity += 0.7

        return issues, min(severity, 1.0)

    async def detect_stream(self, points: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Process a stream of observations in batches.

        Args:
            points: Dicts with asset_id, metric, value and optional timestamp

        Returns:
            Anomalies found and a processing summary
        """
        anomalies = []
        processed = 0
        high_severity = 0

        for start in range(0, len(points), STREAM_BATCH_SIZE):
            for point in points[start:start + STREAM_BATCH_SIZE]:
                result = self.detect(
                    point["asset_id"], point["metric"], point["value"], point.get("timestamp")
                )
                processed += 1
                if result.is_anomaly:
                    anomalies.append(result)
                    if result.severity in (Severity.HIGH, Severity.CRITICAL):
                        high_severity += 1
            # Yield to the loop between batches
            await asyncio.sleep(0)

        return {
            "anomalies": anomalies,
            "summary": {
                "total_processed": processed,
                "anomalies_detected": len(anomalies),
                "high_severity_anomalies": high_severity,
            }
        }

    async def seed_from_store(
        self,
        store: MetricStore,
        asset_ids: Iterable[str],
        window: timedelta = timedelta(days=7)
    ) -> int:
        """
        Load rolling history from persisted validated snapshots.

        Returns:
            Number of points loaded
        """
        loaded = 0
        for asset_id in asset_ids:
            for category, fields in TRACKED_FIELDS.items():
                for record in await store.query_range(category, asset_id, window):
                    values = record.values
                    for source_field, metric in fields.items():
                        if self.observe(asset_id, metric, values.get(source_field), record.timestamp):
                            loaded += 1
        logger.info(f"Seeded anomaly history with {loaded} points")
        return loaded

    def _track(self, result: AnomalyDetectionResult):
        self.detections += 1
        if result.is_anomaly:
            self.anomalies.append(result)
            if self.metrics:
                self.metrics.record_anomaly(result.asset_id or "unknown", result.severity.value)

    def get_anomaly_summary(self, asset_id: str, window: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        """Anomaly counts for one asset within a time window."""
        since = datetime.now() - window
        found = [a for a in self.anomalies if a.asset_id == asset_id and a.timestamp >= since]
        return {
            "asset_id": asset_id,
            "total_anomalies": len(found),
            "by_severity": dict(Counter(a.severity.value for a in found)),
            "by_type": dict(Counter(a.anomaly_type.value for a in found)),
        }

    def get_anomaly_statistics(self, window: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        """Anomaly counts across all assets within a time window."""
        since = datetime.now() - window
        found = [a for a in self.anomalies if a.timestamp >= since]
        by_asset = Counter(a.asset_id for a in found)
        return {
            "total_anomalies": len(found),
            "by_severity": dict(Counter(a.severity.value for a in found)),
            "by_type": dict(Counter(a.anomaly_type.value for a in found)),
            "top_assets": [
                {"asset_id": asset_id, "count": count}
                for asset_id, count in by_asset.most_common(5)
            ],
        }

    def get_system_stats(self) -> Dict[str, Any]:
        return {
            "history_series": len(self.history),
            "detections": self.detections,
            "tracked_anomalies": len(self.anomalies),
            "anomaly_threshold": ANOMALY_THRESHOLD,
            "min_data_points": MIN_DATA_POINTS,
        }
