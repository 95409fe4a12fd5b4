"""
Monitoring subpackage for the chainsight pipeline.

This package handles:
- Performance metrics collection
- Alert management
"""

from .metrics import MetricsCollector
from .alerts import Alert, AlertManager, AlertRule, AlertSeverity

__all__ = ["MetricsCollector", "AlertManager", "AlertRule", "Alert", "AlertSeverity"]
