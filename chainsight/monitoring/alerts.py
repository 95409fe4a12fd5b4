"""
Alert rules over the orchestrator status.

This module handles:
- Pipeline health rules (failure rate, quota, stale prices, critical anomalies)
- Notification through named channels
- Per-rule cooldown
- Automatic resolution once a condition clears
"""

import threading
import logging
from collections import Counter, deque
from typing import Dict, List, Any, Optional, Callable
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from enum import Enum

from ..config import MonitoringConfig

logger = logging.getLogger(__name__)

Status = Dict[str, Any]

ALERT_HISTORY_SIZE = 500
LOW_QUOTA_THRESHOLD = 10


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class Alert:
    """A raised alert. Resolved in place when its rule stops matching."""
    name: str
    severity: AlertSeverity
    message: str
    timestamp: datetime
    tags: Dict[str, str] = field(default_factory=dict)
    resolved: bool = False
    resolved_at: Optional[datetime] = None


@dataclass
class AlertRule:
    """
    A condition on the status dict.

    ``message`` is only called when ``condition`` holds, so it may index
    into the status without guarding.
    """
    name: str
    condition: Callable[[Status], bool]
    severity: AlertSeverity
    message: Callable[[Status], str]
    tags: Dict[str, str] = field(default_factory=dict)
    cooldown: int = 300  # seconds
    last_triggered: Optional[datetime] = None


def low_quota_providers(status: Status, threshold: int = LOW_QUOTA_THRESHOLD) -> List[str]:
    """Keyed providers whose remaining day budget is under ``threshold``."""
    return sorted(
        name for name, stats in status.get("providers", {}).items()
        if not stats.get("estimate_only") and stats.get("remaining_quota", threshold) < threshold
    )


def _stats(status: Status) -> Dict[str, Any]:
    return status.get("stats", {})


def _critical_anomalies(status: Status) -> int:
    return status.get("anomalies", {}).get("by_severity", {}).get("critical", 0)


def default_rules() -> List[AlertRule]:
    return [
        AlertRule(
            name="high_failure_rate",
            condition=lambda s: (
                _stats(s).get("total_collections", 0) >= 10
                and _stats(s).get("success_rate", 1.0) < 0.95
            ),
            severity=AlertSeverity.ERROR,
            message=lambda s: (
                f"Collection success rate {s['stats']['success_rate']:.1%} "
                f"({s['stats']['failed_collections']} failed)"
            ),
            tags={"component": "collector"}
        ),
        AlertRule(
            name="quota_nearly_exhausted",
            condition=lambda s: bool(low_quota_providers(s)),
            severity=AlertSeverity.WARNING,
            message=lambda s: f"Daily quota nearly exhausted: {', '.join(low_quota_providers(s))}",
            tags={"component": "rate_limiter"}
        ),
        AlertRule(
            name="stale_price_data",
            condition=lambda s: bool(s.get("health", {}).get("stale_price")),
            severity=AlertSeverity.WARNING,
            message=lambda s: "Price data is stale",
            tags={"component": "collector"}
        ),
        AlertRule(
            name="critical_anomaly",
            condition=lambda s: _critical_anomalies(s) > 0,
            severity=AlertSeverity.CRITICAL,
            message=lambda s: f"{_critical_anomalies(s)} critical anomalies in the last hour",
            tags={"component": "anomaly"},
            cooldown=900
        ),
    ]


class AlertManager:
    """
    Evaluates alert rules against status snapshots.

    A rule raises at most one active alert. It cannot raise again until the
    alert resolves and its cooldown has passed.

    Features:
    - Pipeline health rules out of the box
    - log, console and custom notification channels
    - Bounded alert history
    """

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.config = config or MonitoringConfig()
        self.clock = clock

        self.rules: Dict[str, AlertRule] = {rule.name: rule for rule in default_rules()}
        self.active_alerts: Dict[str, Alert] = {}
        self.alert_history: deque = deque(maxlen=ALERT_HISTORY_SIZE)

        self.channels: Dict[str, Callable[[Alert], None]] = {
            "log": self._log_notification,
            "console": self._console_notification
        }

        self.lock = threading.RLock()

        logger.info(f"Initialized AlertManager with {len(self.rules)} rules")

    def add_rule(self, rule: AlertRule):
        with self.lock:
            self.rules[rule.name] = rule
        logger.info(f"Added alert rule: {rule.name}")

    def remove_rule(self, name: str):
        with self.lock:
            if self.rules.pop(name, None) is not None:
                self.active_alerts.pop(name, None)
                logger.info(f"Removed alert rule: {name}")

    def evaluate_rules(self, status: Status) -> List[Alert]:
        """
        Evaluate every rule against one status snapshot.

        Rules that fail to evaluate are logged and skipped.

        Args:
            status: Orchestrator status dict

        Returns:
            Alerts newly raised by this evaluation
        """
        if not self.config.enable_alerts:
            return []

        now = self.clock()
        raised = []
        with self.lock:
            for name, rule in self.rules.items():
                try:
                    triggered = rule.condition(status)
                except (KeyError, TypeError, ValueError, ZeroDivisionError) as e:
                    logger.error(f"Error evaluating alert rule {name}: {str(e)}")
                    continue

                if not triggered:
                    if name in self.active_alerts:
                        self._resolve(name, now)
                    continue

                if name in self.active_alerts or self._cooling_down(rule, now):
                    continue

                alert = Alert(
                    name=name,
                    severity=rule.severity,
                    message=rule.message(status),
                    timestamp=now,
                    tags=dict(rule.tags)
                )
                rule.last_triggered = now
                self.active_alerts[name] = alert
                self.alert_history.append(alert)
                raised.append(alert)

        for alert in raised:
            self._send_notification(alert)
        return raised

    @staticmethod
    def _cooling_down(rule: AlertRule, now: datetime) -> bool:
        return (
            rule.last_triggered is not None
            and (now - rule.last_triggered).total_seconds() < rule.cooldown
        )

    def _resolve(self, name: str, now: datetime):
        alert = self.active_alerts.pop(name)
        alert.resolved = True
        alert.resolved_at = now
        logger.info(f"Alert resolved: {name}")

    def resolve_alert(self, name: str):
        """Resolve an active alert by hand."""
        with self.lock:
            if name in self.active_alerts:
                self._resolve(name, self.clock())

    def get_active_alerts(self) -> List[Alert]:
        with self.lock:
            return list(self.active_alerts.values())

    def get_alert_history(self, since: Optional[datetime] = None) -> List[Alert]:
        """Alerts raised since a time (default: the last 7 days)."""
        if since is None:
            since = self.clock() - timedelta(days=7)

        with self.lock:
            return [a for a in self.alert_history if a.timestamp >= since]

    def get_alert_summary(self) -> Dict[str, Any]:
        """Active alert names and counts of recent alerts by severity."""
        recent = self.get_alert_history(self.clock() - timedelta(hours=24))
        with self.lock:
            active = sorted(self.active_alerts)
        return {
            "active": active,
            "last_24h": len(recent),
            "by_severity": dict(Counter(a.severity.value for a in recent)),
        }

    def add_notification_channel(self, name: str, callback: Callable[[Alert], None]):
        self.channels[name] = callback
        logger.info(f"Added notification channel: {name}")

    def _send_notification(self, alert: Alert):
        for channel_name in self.config.alert_channels:
            channel = self.channels.get(channel_name)
            if channel is None:
                logger.warning(f"Unknown alert channel: {channel_name}")
                continue
            try:
                channel(alert)
            except Exception as e:
                logger.error(f"Error sending notification via {channel_name}: {str(e)}")

    def _log_notification(self, alert: Alert):
        log_method = {
            AlertSeverity.INFO: logger.info,
            AlertSeverity.WARNING: logger.warning,
            AlertSeverity.ERROR: logger.error,
            AlertSeverity.CRITICAL: logger.critical
        }[alert.severity]

        log_method(f"ALERT [{alert.severity.value.upper()}] {alert.name}: {alert.message}")

    def _console_notification(self, alert: Alert):
        tags = " ".join(f"{key}={value}" for key, value in sorted(alert.tags.items()))
        print(
            f"[{alert.timestamp:%Y-%m-%d %H:%M:%S}] {alert.severity.value.upper():<8} "
            f"{alert.name}: {alert.message} {tags}".rstrip()
        )
