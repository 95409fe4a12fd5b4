"""
Shared data model for the chainsight pipeline.

This module defines:
- Validation results and data provenance
- Provider results and metric snapshots
- Anomaly detection results
- Trading signals
- Tracked assets
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class DataSource(Enum):
    """Where a validated value came from."""
    API = "api"
    FALLBACK = "fallback"
    CALCULATED = "calculated"


class Provenance(Enum):
    """How a metric snapshot was obtained."""
    LIVE = "live"
    CACHED = "cached"
    ESTIMATED = "estimated"


class MetricKind(Enum):
    """Validation specializations."""
    PRICE = "price"
    ONCHAIN = "onchain"
    TECHNICAL = "technical"
    DERIVATIVE = "derivative"
    SENTIMENT = "sentiment"


class AnomalyType(Enum):
    STATISTICAL = "statistical"
    PATTERN = "pattern"
    CORRELATION = "correlation"
    VOLUME = "volume"
    PRICE = "price"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SignalType(Enum):
    STRONG_BUY = "STRONG_BUY"
    BUY = "BUY"
    HOLD = "HOLD"
    SELL = "SELL"
    STRONG_SELL = "STRONG_SELL"


class RiskLevel(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one raw payload. Never mutated after creation."""
    is_valid: bool
    value: Any
    confidence: float
    source: DataSource
    timestamp: datetime
    error: Optional[str] = None


@dataclass
class MetricSnapshot:
    """A set of metrics for one asset produced by one provider."""
    provider: str
    asset_id: str
    metrics: Dict[str, Any]
    quality_score: float
    provenance: Provenance
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_estimated(self) -> bool:
        return self.provenance is Provenance.ESTIMATED

    def to_payload(self) -> Dict[str, Any]:
        """Flatten into the payload shape accepted by the validation gate."""
        payload = dict(self.metrics)
        payload["source"] = self.provider
        payload["quality_score"] = self.quality_score
        payload["provenance"] = self.provenance.value
        return payload


class ResultStatus(Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"
    UNAVAILABLE = "unavailable"


@dataclass
class ProviderResult:
    """
    Result of a provider call.

    Rate limiting is reported through ``status`` rather than an exception so
    callers can tell throttling apart from genuine upstream faults.
    """
    status: ResultStatus
    data: Any = None
    cached: bool = False
    error: Optional[str] = None
    remaining_quota: int = 0

    @property
    def success(self) -> bool:
        return self.status is ResultStatus.OK

    @property
    def rate_limited(self) -> bool:
        return self.status is ResultStatus.RATE_LIMITED

    @classmethod
    def ok(cls, data: Any, cached: bool = False, remaining_quota: int = 0) -> 'ProviderResult':
        return cls(ResultStatus.OK, data=data, cached=cached, remaining_quota=remaining_quota)

    @classmethod
    def throttled(cls, provider: str) -> 'ProviderResult':
        return cls(ResultStatus.RATE_LIMITED, error=f"Rate limit exceeded for {provider}")

    @classmethod
    def failed(cls, error: str, remaining_quota: int = 0) -> 'ProviderResult':
        return cls(ResultStatus.ERROR, error=error, remaining_quota=remaining_quota)

    @classmethod
    def unavailable(cls, reason: str) -> 'ProviderResult':
        return cls(ResultStatus.UNAVAILABLE, error=reason)


@dataclass
class AnomalyDetectionResult:
    """Ensemble verdict for a single metric observation."""
    is_anomaly: bool
    anomaly_score: float
    anomaly_type: AnomalyType
    confidence: float
    severity: Severity
    timestamp: datetime
    metrics: Dict[str, Any] = field(default_factory=dict)
    asset_id: Optional[str] = None
    metric_name: Optional[str] = None


@dataclass
class TradingSignal:
    """Rule-based recommendation. Recomputed on every evaluation."""
    signal: SignalType
    confidence: int
    reasoning: str
    risk_level: RiskLevel
    conditions: Dict[str, Any]
    triggers: List[str]
    timestamp: datetime = field(default_factory=datetime.now)
    narrative: Any = None


@dataclass(frozen=True)
class Asset:
    """A tracked cryptocurrency."""
    symbol: str
    name: str
    external_id: str
    rank: int
