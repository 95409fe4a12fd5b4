"""Tests for the pipeline metrics collector."""

from datetime import datetime, timedelta

import pytest

from chainsight.monitoring.metrics import MetricsCollector


@pytest.fixture
def metrics():
    return MetricsCollector()


def test_counters_and_gauges(metrics):
    metrics.record_cache_hit()
    metrics.record_cache_hit()
    metrics.record_cache_miss()
    metrics.record_validation("price", valid=False, confidence=0.0)

    assert metrics.get_counter("cache_hits") == 2
    assert metrics.get_counter("cache_misses") == 1
    assert metrics.get_counter("validation_rejections") == 1
    assert metrics.get_gauge("validation_confidence") == 0.0
    assert metrics.get_counter("never_recorded") == 0


def test_provider_calls_and_failures(metrics):
    metrics.record_provider_call("glassnode", "/market/mvrv", 0.2, success=True)
    metrics.record_provider_call("glassnode", "/market/mvrv", 0.4, success=False)

    assert metrics.get_counter("provider_calls_total") == 2
    assert metrics.get_counter("provider_failures_total") == 1
    stats = metrics.get_timing_stats("provider_duration_seconds")
    assert stats["count"] == 2
    assert stats["p50"] == pytest.approx(0.3)
    assert stats["max"] == 0.4


def test_timing_stats_of_unknown_metric(metrics):
    assert metrics.get_timing_stats("collection_duration_seconds") == {}


def test_recent_points_keep_tags(metrics):
    metrics.record_collection("price", 1.5, success=False)

    points = metrics.get_recent_metrics("collections_failed")

    assert len(points) == 1
    assert points[0].tags == {"category": "price"}
    assert metrics.get_recent_metrics("collections_failed", since=datetime.now() + timedelta(minutes=1)) == []


def test_all_metrics_and_reset(metrics):
    metrics.record_anomaly("bitcoin", "critical")
    metrics.record_collection("onchain", 2.0, success=True)

    snapshot = metrics.get_all_metrics()
    assert snapshot["counters"]["anomalies_total"] == 1
    assert snapshot["summaries"]["collection_duration_seconds"]["avg"] == 2.0

    metrics.reset()

    assert metrics.get_all_metrics()["counters"] == {}


def test_labelled_series(metrics):
    metrics.record_rate_limited("glassnode")
    metrics.record_rate_limited("glassnode")
    metrics.record_rate_limited("artemis")
    metrics.increment("quota_granted")

    assert metrics.get_counter("rate_limited_total") == 3
    assert metrics.get_counter("rate_limited_total", {"provider": "artemis"}) == 1
    assert metrics.get_breakdown("rate_limited_total", "provider") == {"glassnode": 2, "artemis": 1}
    assert metrics.get_breakdown("quota_granted", "provider") == {}


def test_gauges_per_label(metrics):
    metrics.record_validation("price", valid=True, confidence=0.95)
    metrics.record_validation("onchain", valid=True, confidence=0.3)

    assert metrics.get_gauge("validation_confidence", {"kind": "price"}) == 0.95
    assert metrics.get_gauge("validation_confidence") == 0.3


def test_export_timer_starts_once_and_stops(metrics):
    metrics.start_export_timer()
    thread = metrics._export_thread
    metrics.start_export_timer()

    assert metrics._export_thread is thread
    metrics.stop_export_timer()
    assert metrics._export_thread is None
    assert not thread.is_alive()
