"""Tests for pipeline alert rules."""

from datetime import datetime

import pytest

from chainsight.config import MonitoringConfig
from chainsight.monitoring.alerts import AlertManager, AlertRule, AlertSeverity
from tests._provider_helpers import FakeDateClock


def healthy_status():
    return {
        "stats": {"total_collections": 40, "failed_collections": 0, "success_rate": 1.0},
        "providers": {
            "glassnode": {"remaining_quota": 80, "estimate_only": False},
            "token_terminal": {"remaining_quota": 0, "estimate_only": True},
        },
        "health": {"stale_price": False},
        "anomalies": {"by_severity": {"critical": 0}},
    }


@pytest.fixture
def manager():
    return AlertManager(MonitoringConfig(alert_channels=["log"]))


def test_healthy_status_raises_nothing(manager):
    assert manager.evaluate_rules(healthy_status()) == []


def test_failure_rate_rule(manager):
    status = healthy_status()
    status["stats"].update(failed_collections=4, success_rate=0.9)

    alerts = manager.evaluate_rules(status)

    assert [a.name for a in alerts] == ["high_failure_rate"]
    assert alerts[0].severity is AlertSeverity.ERROR
    assert "90.0%" in alerts[0].message


def test_failure_rate_needs_enough_runs(manager):
    status = healthy_status()
    status["stats"].update(total_collections=3, failed_collections=2, success_rate=0.33)

    assert manager.evaluate_rules(status) == []


def test_quota_rule_ignores_estimate_only_providers(manager):
    status = healthy_status()
    status["providers"]["glassnode"]["remaining_quota"] = 4

    alerts = manager.evaluate_rules(status)

    assert [a.name for a in alerts] == ["quota_nearly_exhausted"]
    assert alerts[0].message.endswith("glassnode")


def test_stale_price_and_critical_anomaly(manager):
    status = healthy_status()
    status["health"]["stale_price"] = True
    status["anomalies"]["by_severity"]["critical"] = 2

    alerts = manager.evaluate_rules(status)

    assert {a.name for a in alerts} == {"stale_price_data", "critical_anomaly"}
    critical = next(a for a in alerts if a.name == "critical_anomaly")
    assert critical.severity is AlertSeverity.CRITICAL
    assert critical.message.startswith("2 critical anomalies")


def test_active_alert_is_not_repeated_and_resolves(manager):
    status = healthy_status()
    status["health"]["stale_price"] = True

    first = manager.evaluate_rules(status)
    second = manager.evaluate_rules(status)
    assert len(first) == 1 and second == []
    assert [a.name for a in manager.get_active_alerts()] == ["stale_price_data"]

    manager.evaluate_rules(healthy_status())

    assert manager.get_active_alerts() == []
    assert first[0].resolved
    assert first[0].resolved_at is not None
    assert len(manager.get_alert_history()) == 1


def test_cooldown_suppresses_a_flapping_rule(manager):
    stale = healthy_status()
    stale["health"]["stale_price"] = True

    manager.evaluate_rules(stale)
    manager.evaluate_rules(healthy_status())

    assert manager.evaluate_rules(stale) == []


def test_disabled_alerts():
    manager = AlertManager(MonitoringConfig(enable_alerts=False))
    status = healthy_status()
    status["health"]["stale_price"] = True

    assert manager.evaluate_rules(status) == []


def test_broken_rule_is_skipped(manager):
    manager.add_rule(AlertRule(
        name="broken",
        condition=lambda s: s["missing"]["key"] > 0,
        severity=AlertSeverity.INFO,
        message=lambda s: "never",
    ))
    status = healthy_status()
    status["health"]["stale_price"] = True

    alerts = manager.evaluate_rules(status)

    assert [a.name for a in alerts] == ["stale_price_data"]


def test_custom_channel_receives_alerts():
    received = []
    manager = AlertManager(MonitoringConfig(alert_channels=["log", "hook", "unknown"]))
    manager.add_notification_channel("hook", received.append)
    status = healthy_status()
    status["health"]["stale_price"] = True

    manager.evaluate_rules(status)

    assert [a.name for a in received] == ["stale_price_data"]


def test_removed_rule_no_longer_fires(manager):
    manager.remove_rule("stale_price_data")
    status = healthy_status()
    status["health"]["stale_price"] = True

    assert manager.evaluate_rules(status) == []


def test_rule_fires_again_after_cooldown():
    clock = FakeDateClock(datetime(2024, 3, 1, 12, 0))
    manager = AlertManager(MonitoringConfig(), clock=clock)
    stale = healthy_status()
    stale["health"]["stale_price"] = True

    manager.evaluate_rules(stale)
    clock.advance(minutes=1)
    manager.evaluate_rules(healthy_status())
    clock.advance(minutes=5)

    assert [a.name for a in manager.evaluate_rules(stale)] == ["stale_price_data"]


def test_alert_summary():
    clock = FakeDateClock(datetime(2024, 3, 1, 12, 0))
    manager = AlertManager(MonitoringConfig(), clock=clock)
    status = healthy_status()
    status["health"]["stale_price"] = True
    status["anomalies"]["by_severity"]["critical"] = 1

    manager.evaluate_rules(status)
    clock.advance(days=2)
    manager.evaluate_rules(healthy_status())

    assert manager.get_alert_summary() == {"active": [], "last_24h": 0, "by_severity": {}}
    assert len(manager.get_alert_history(since=datetime(2024, 3, 1))) == 2
