"""Tests for the ensemble anomaly detector."""

from datetime import datetime, timedelta

import pytest

from chainsight.anomaly import (
    ANOMALY_THRESHOLD, MIN_DATA_POINTS, AnomalyDetector, DetectorOutput, combine_scores,
    severity_for,
)
from chainsight.models import AnomalyType, Severity
from chainsight.storage import InMemoryMetricStore

HOUR = 3600.0
BASE = datetime.now().timestamp() - 60 * HOUR


def fill(detector, metric, values, asset_id="bitcoin"):
    for i, value in enumerate(values):
        detector.observe(asset_id, metric, value, BASE + i * HOUR)
    return BASE + len(values) * HOUR


def alternating(low, high, n=40):
    return [low if i % 2 == 0 else high for i in range(n)]


@pytest.fixture
def detector():
    return AnomalyDetector()


def test_abstains_below_minimum_history(detector):
    at = fill(detector, "price", alternating(99, 101, MIN_DATA_POINTS - 1))

    result = detector.detect("bitcoin", "price", 10_000, at)

    assert not result.is_anomaly
    assert result.anomaly_score == 0.0
    assert result.confidence == 0.0
    assert result.metrics["reason"] == "insufficient_history"


def test_spike_is_flagged_critical(detector):
    at = fill(detector, "price", alternating(99, 101))

    result = detector.detect("bitcoin", "price", 200, at)

    assert result.is_anomaly
    assert result.anomaly_score == pytest.approx(1.0)
    assert result.severity is Severity.CRITICAL
    assert result.anomaly_type is AnomalyType.STATISTICAL
    assert result.metrics["z_score"] == pytest.approx(100.0)


def test_ordinary_value_is_not_flagged(detector):
    at = fill(detector, "price", alternating(99, 101))

    result = detector.detect("bitcoin", "price", 100.5, at)

    assert not result.is_anomaly
    assert result.anomaly_score < 0.1
    assert result.severity is Severity.LOW


@pytest.mark.parametrize("value", [0, 50, 98, 100, 103, 110, 150, 1e6])
def test_score_is_bounded_and_decides_the_flag(detector, value):
    at = fill(detector, "price", alternating(99, 101))

    result = detector.detect("bitcoin", "price", value, at)

    assert 0.0 <= result.anomaly_score <= 1.0
    assert result.is_anomaly == (result.anomaly_score > ANOMALY_THRESHOLD)


def test_flat_history_leaves_the_pattern_detector(detector):
    at = fill(detector, "mvrv", [2.0] * 40)

    result = detector.detect("bitcoin", "mvrv", 6.0, at)

    assert result.metrics["detectors"] == ["pattern"]
    assert result.anomaly_type is AnomalyType.PATTERN
    assert result.is_anomaly


def test_detect_appends_to_history(detector):
    at = fill(detector, "price", alternating(99, 101))
    detector.detect("bitcoin", "price", 100, at)

    assert len(detector.history.get("bitcoin", "price")) == 41


def test_correlated_metric_contributes(detector):
    fill(detector, "price", alternating(99, 101))
    at = fill(detector, "volume", alternating(990, 1010))

    report = detector.detect_multi("bitcoin", {"price": 101, "volume": 1010}, at)

    price = report.individual_results["price"]
    assert "correlation" in price.metrics["detectors"]
    assert price.metrics["correlated_with"]["volume"]["deviation"] == pytest.approx(0.0, abs=1e-6)
    assert not report.overall_anomaly


def test_price_and_volume_spikes_are_systemic(detector):
    fill(detector, "price", alternating(99, 101))
    at = fill(detector, "volume", [990, 1000, 1010] * 13 + [1000])

    report = detector.detect_multi("bitcoin", {"price": 500, "volume": 9000, "rsi": None}, at)

    assert set(report.individual_results) == {"price", "volume"}
    assert report.overall_anomaly
    assert report.overall_score == pytest.approx(1.0)
    assert "Multiple metrics showing anomalous behavior" in report.systemic_issues
    assert any("manipulation" in issue for issue in report.systemic_issues)
    assert report.systemic_severity == 1.0


def test_multi_detection_without_anomalies_scores_systemic_severity(detector):
    fill(detector, "price", alternating(99, 101))
    at = fill(detector, "volume", [990, 1000, 1010] * 13 + [1000])

    report = detector.detect_multi("bitcoin", {"price": 100, "volume": 1000}, at)

    assert not report.overall_anomaly
    assert report.overall_score == report.systemic_severity == 0.0
    assert report.systemic_issues == []


@pytest.mark.asyncio
async def test_detect_stream_summarises_batches(detector):
    points = [
        {"asset_id": "bitcoin", "metric": "price", "value": v, "timestamp": BASE + i * HOUR}
        for i, v in enumerate(alternating(99, 101) + [300])
    ]

    outcome = await detector.detect_stream(points)

    summary = outcome["summary"]
    assert summary["total_processed"] == 41
    assert summary["anomalies_detected"] == 1
    assert summary["high_severity_anomalies"] == 1
    assert outcome["anomalies"][0].anomaly_score > ANOMALY_THRESHOLD


@pytest.mark.asyncio
async def test_seed_from_store_loads_tracked_fields(detector):
    store = InMemoryMetricStore()
    now = datetime.now()
    for hours in range(5, 0, -1):
        await store.save(
            "price", "bitcoin",
            {"price": 65000.0 + hours, "volume_24h": 3e10, "provider": "coingecko"},
            now - timedelta(hours=hours)
        )
    await store.save("onchain", "bitcoin", {"mvrv": 1.8}, now - timedelta(hours=1))

    loaded = await detector.seed_from_store(store, ["bitcoin", "ethereum"])

    assert loaded == 11
    assert len(detector.history.get("bitcoin", "volume")) == 5
    assert len(detector.history.get("bitcoin", "mvrv")) == 1


def test_anomaly_summary_and_statistics(detector):
    at = fill(detector, "price", alternating(99, 101))
    detector.detect("bitcoin", "price", 500, at)
    detector.detect("bitcoin", "price", 100, at + HOUR)

    summary = detector.get_anomaly_summary("bitcoin")
    statistics = detector.get_anomaly_statistics(timedelta(days=3))

    assert summary["total_anomalies"] == 1
    assert summary["by_severity"] == {"critical": 1}
    assert statistics["top_assets"] == [{"asset_id": "bitcoin", "count": 1}]
    assert detector.get_anomaly_summary("ethereum")["total_anomalies"] == 0
    assert detector.get_system_stats()["detections"] == 2


def test_combine_scores_ignores_abstaining_detectors():
    assert combine_scores([]) == 0.0
    only_pattern = [DetectorOutput(AnomalyType.PATTERN, True, 0.9, 1.0)]
    assert combine_scores(only_pattern) == pytest.approx(0.9)

    mixed = [
        DetectorOutput(AnomalyType.STATISTICAL, True, 1.0, 1.0),
        DetectorOutput(AnomalyType.PATTERN, False, 0.0, 0.0),
    ]
    assert combine_scores(mixed) == pytest.approx(0.4 / 0.7)


@pytest.mark.parametrize("score, severity", [
    (0.0, Severity.LOW),
    (0.29, Severity.LOW),
    (0.3, Severity.MEDIUM),
    (0.6, Severity.HIGH),
    (0.8, Severity.CRITICAL),
    (1.0, Severity.CRITICAL),
])
def test_severity_buckets(score, severity):
    assert severity_for(score) is severity
