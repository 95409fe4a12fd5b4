"""
chainsight: On-chain Analytics Collection Pipeline

This package is responsible for:
- Collecting price, on-chain, sentiment and derivatives metrics from external providers
- Enforcing per-provider request quotas and caching responses
- Validating every payload before it is stored
- Detecting anomalies over rolling metric history
- Generating rule-based trading signals
- Monitoring pipeline health
"""

from .collector import CollectionOrchestrator
from .cache_manager import CacheManager
from .rate_limiter import QuotaGovernor
from .validators import ValidationGate
from .anomaly import AnomalyDetector
from .signals import SignalEngine, SignalService
from .scheduler import Scheduler
from .config import Config
from .monitoring.metrics import MetricsCollector
from .monitoring.alerts import AlertManager

__version__ = "1.0.0"
__all__ = [
    "CollectionOrchestrator",
    "CacheManager",
    "QuotaGovernor",
    "ValidationGate",
    "AnomalyDetector",
    "SignalEngine",
    "SignalService",
    "Scheduler",
    "Config",
    "MetricsCollector",
    "AlertManager",
]
