"""
Validation gate for raw metric payloads.

This module handles:
- Synthetic data detection
- Shape checks on required numeric fields
- Plausible range checks per metric kind
- Confidence assignment
- Per-asset data quality assessment
"""

import re
import time
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .config import Config, ValidationConfig
from .models import DataSource, MetricKind, ValidationResult
from .monitoring.metrics import MetricsCollector
from .utils import to_float

logger = logging.getLogger(__name__)

MOCK_DATA_ERROR = "Mock data detected"

# Marker words must stand alone ("test_feed" matches, "latest" does not)
MOCK_PATTERN = re.compile(r"(?<![a-z])(mock|test|sample|demo|fake)(?![a-z])", re.IGNORECASE)

IDENTIFIER_FIELDS = ("source", "id", "asset_id", "provider", "name")

BASE_CONFIDENCE = {
    MetricKind.PRICE: 0.95,
    MetricKind.ONCHAIN: 0.85,
    MetricKind.TECHNICAL: 0.90,
    MetricKind.DERIVATIVE: 0.80,
    MetricKind.SENTIMENT: 0.85,
}

OUT_OF_BAND_CONFIDENCE = 0.3

# Numeric fields per kind; a payload needs every ``required`` field, or at
# least one ``any_of`` field
NUMERIC_FIELDS = {
    MetricKind.PRICE: {
        "required": ("price",),
        "any_of": (),
        "optional": ("market_cap", "volume_24h", "price_change_24h"),
    },
    MetricKind.ONCHAIN: {
        "required": (),
        "any_of": (
            "mvrv", "nupl", "sopr", "nvt", "active_addresses", "daily_active_addresses",
            "transaction_count", "transaction_volume", "realized_cap",
            "monthly_active_users", "revenue",
        ),
        "optional": (
            "new_addresses", "weekly_active_addresses", "monthly_active_addresses",
            "average_transaction_value", "whale_holdings", "exchange_inflow",
            "exchange_outflow", "cross_chain_inflow", "cross_chain_outflow",
            "net_cross_chain_flow", "revenue_per_user", "market_cap_to_revenue",
            "user_growth", "revenue_growth", "protocol_revenue", "treasury_assets",
            "user_retention", "user_acquisition_cost",
        ),
    },
    MetricKind.TECHNICAL: {
        "required": (),
        "any_of": ("rsi", "ma_20", "ma_50", "ma_200", "macd"),
        "optional": ("macd_signal", "bollinger_upper", "bollinger_middle", "bollinger_lower"),
    },
    MetricKind.DERIVATIVE: {
        "required": (),
        "any_of": ("funding_rate", "open_interest"),
        "optional": ("liquidation_volume", "put_call_ratio"),
    },
    MetricKind.SENTIMENT: {
        "required": (),
        "any_of": ("fear_greed", "social_sentiment", "news_sentiment"),
        "optional": (),
    },
}


class ValidationGate:
    """
    Accepts or rejects raw metric payloads.

    Rules run in order and the first failing rule wins:
    synthetic fingerprint, shape, plausible range, accept.

    Features:
    - One specialization per metric kind
    - Hard rejection for out-of-band prices
    - Soft down-weighting for out-of-band on-chain activity
    - Validation metrics
    """

    def __init__(
        self,
        config: Optional[Union[Config, ValidationConfig]] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        if isinstance(config, Config):
            config = config.validation
        self.config = config or ValidationConfig()
        self.metrics = metrics
        self.clock = clock

        self.validated = 0
        self.rejected = 0

        logger.info("Initialized ValidationGate")

    def validate(
        self,
        kind: Union[MetricKind, str],
        payload: Dict[str, Any],
        source: DataSource = DataSource.API,
        asset_id: Optional[str] = None
    ) -> ValidationResult:
        """
        Validate one raw payload.

        Args:
            kind: Metric kind (price, onchain, technical, derivative, sentiment)
            payload: Raw payload keyed by field name
            source: Where the payload came from
            asset_id: Asset the payload describes, used for expected bands

        Returns:
            A new ValidationResult
        """
        kind = MetricKind(kind)
        start_time = time.time()
        if isinstance(payload, dict):
            asset_id = asset_id or payload.get("asset_id")

        if not isinstance(payload, dict):
            result = self._reject(None, source, "Payload must be a mapping")
        elif self._is_mock(payload):
            result = self._reject(payload, source, MOCK_DATA_ERROR)
        else:
            values, error = self._check_shape(kind, payload, source)
            if error:
                result = self._reject(payload, source, error)
            else:
                result = self._check_range(kind, values, source, asset_id)

        self.validated += 1
        if not result.is_valid:
            self.rejected += 1
            logger.warning(f"Rejected {kind.value} payload for {asset_id}: {result.error}")

        if self.metrics:
            self.metrics.record_validation(kind.value, result.is_valid, result.confidence)
            self.metrics.record_timing("validation_duration_seconds", time.time() - start_time)

        return result

    def _reject(self, value: Any, source: DataSource, error: str) -> ValidationResult:
        return ValidationResult(
            is_valid=False,
            value=value,
            confidence=0.0,
            source=source,
            timestamp=self.clock(),
            error=error
        )

    def _is_mock(self, payload: Dict[str, Any]) -> bool:
        """Check identifiers and metadata for synthetic-data markers."""
        for field_name in IDENTIFIER_FIELDS:
            value = payload.get(field_name)
            if isinstance(value, str) and MOCK_PATTERN.search(value):
                return True

        metadata = payload.get("metadata")
        if isinstance(metadata, dict):
            for value in metadata.values():
                if isinstance(value, str) and MOCK_PATTERN.search(value):
                    return True
            if metadata.get("is_mock") is True:
                return True

        # Values no real market produces
        price = to_float(payload.get("price"))
        if price is not None and price > self.config.max_plausible_price:
            return True
        market_cap = to_float(payload.get("market_cap"))
        if market_cap is not None and market_cap > self.config.max_plausible_market_cap:
            return True
        volume = to_float(payload.get("volume_24h"))
        if volume is not None and volume > self.config.max_plausible_volume:
            return True

        return False

    def _check_shape(
        self,
        kind: MetricKind,
        payload: Dict[str, Any],
        source: DataSource
    ) -> Tuple[Dict[str, float], Optional[str]]:
        fields = NUMERIC_FIELDS[kind]
        values: Dict[str, float] = {}

        for name in fields["required"]:
            value = to_float(payload.get(name))
            if value is None:
                return values, f"Missing or non-numeric required field: {name}"
            values[name] = value

        for name in fields["any_of"] + fields["optional"]:
            if payload.get(name) is None:
                continue
            value = to_float(payload[name])
            if value is None:
                return values, f"Field {name} must be numeric"
            values[name] = value

        if fields["any_of"] and not any(name in values for name in fields["any_of"]):
            return values, f"No {kind.value} metrics present"

        quality = to_float(payload.get("quality_score"))
        if source is DataSource.API and quality is not None:
            if quality < self.config.min_live_quality:
                return values, (
                    f"Insufficient live coverage: quality score {quality:.0f} "
                    f"below {self.config.min_live_quality:.0f}"
                )

        return values, None

    def _check_range(
        self,
        kind: MetricKind,
        values: Dict[str, float],
        source: DataSource,
        asset_id: Optional[str]
    ) -> ValidationResult:
        checker = {
            MetricKind.PRICE: self._price_range,
            MetricKind.ONCHAIN: self._onchain_range,
            MetricKind.TECHNICAL: self._technical_range,
            MetricKind.DERIVATIVE: self._derivative_range,
            MetricKind.SENTIMENT: self._sentiment_range,
        }[kind]

        error, confidence, soft_error = checker(values, asset_id)
        if error:
            return self._reject(values, source, error)

        return ValidationResult(
            is_valid=True,
            value=values,
            confidence=confidence,
            source=source,
            timestamp=self.clock(),
            error=soft_error
        )

    def _price_range(self, values: Dict[str, float], asset_id: Optional[str]):
        price = values["price"]
        if price <= 0:
            return "Price must be positive", 0.0, None

        band = self.config.price_bands.get(asset_id) if asset_id else None
        if band and not band[0] <= price <= band[1]:
            return f"Price out of expected range for {asset_id}", 0.0, None

        for name in ("market_cap", "volume_24h"):
            if values.get(name, 0.0) < 0:
                return f"{name} must be non-negative", 0.0, None

        return None, BASE_CONFIDENCE[MetricKind.PRICE], None

    def _onchain_range(self, values: Dict[str, float], asset_id: Optional[str]):
        for name in ("active_addresses", "daily_active_addresses", "transaction_count",
                     "transaction_volume", "mvrv", "sopr", "nvt"):
            if values.get(name, 0.0) < 0:
                return f"{name} must be non-negative", 0.0, None

        if values.get("nupl", 0.0) > 1:
            return "NUPL cannot exceed 1", 0.0, None

        active = values.get("active_addresses", values.get("daily_active_addresses"))
        band = self.config.active_address_bands.get(asset_id) if asset_id else None
        if band and active is not None and not band[0] <= active <= band[1]:
            return None, OUT_OF_BAND_CONFIDENCE, "Active addresses out of expected range"

        return None, BASE_CONFIDENCE[MetricKind.ONCHAIN], None

    def _technical_range(self, values: Dict[str, float], asset_id: Optional[str]):
        rsi = values.get("rsi")
        if rsi is not None and not 0 <= rsi <= 100:
            return "RSI must be between 0 and 100", 0.0, None

        for name in ("ma_20", "ma_50", "ma_200", "bollinger_middle"):
            if values.get(name, 0.0) < 0:
                return f"{name} must be non-negative", 0.0, None

        return None, BASE_CONFIDENCE[MetricKind.TECHNICAL], None

    def _derivative_range(self, values: Dict[str, float], asset_id: Optional[str]):
        funding_rate = values.get("funding_rate")
        if funding_rate is not None and not -0.1 <= funding_rate <= 0.1:
            return "Funding rate must be between -0.1 and 0.1", 0.0, None

        if values.get("open_interest", 0.0) < 0:
            return "Open interest must be non-negative", 0.0, None

        return None, BASE_CONFIDENCE[MetricKind.DERIVATIVE], None

    def _sentiment_range(self, values: Dict[str, float], asset_id: Optional[str]):
        fear_greed = values.get("fear_greed")
        if fear_greed is not None and not 0 <= fear_greed <= 100:
            return "Fear & Greed must be between 0 and 100", 0.0, None

        for name in ("social_sentiment", "news_sentiment"):
            value = values.get(name)
            if value is not None and not 0 <= value <= 1:
                return f"{name} must be between 0 and 1", 0.0, None

        return None, BASE_CONFIDENCE[MetricKind.SENTIMENT], None

    def get_metrics(self) -> Dict[str, Any]:
        """Get validation counters."""
        return {
            "validated": self.validated,
            "rejected": self.rejected,
            "rejection_rate": self.rejected / self.validated * 100 if self.validated else 0.0
        }


@dataclass
class DataQualityScore:
    """Freshness and coverage of the data held for one asset."""
    overall: float
    completeness: float
    timeliness: float
    accuracy: float
    consistency: float
    issues: List[str]


# (category, freshness window in hours)
QUALITY_WINDOWS = (("price", 48), ("onchain", 72), ("technical", 24))


def assess_data_quality(
    latest: Dict[str, Optional[datetime]],
    recent_price_times: Iterable[datetime] = (),
    now: Optional[datetime] = None
) -> DataQualityScore:
    """
    Score the data held for one asset.

    Args:
        latest: Timestamp of the latest record per category (None if absent)
        recent_price_times: Price record timestamps from the last week
        now: Reference time

    Returns:
        DataQualityScore with components in [0, 1] and overall in [0, 100]
    """
    now = now or datetime.now()
    issues = []

    present = [category for category, _ in QUALITY_WINDOWS if latest.get(category)]
    completeness = len(present) / len(QUALITY_WINDOWS)

    timeliness = 0.0
    for category, window_hours in QUALITY_WINDOWS:
        stamp = latest.get(category)
        if stamp is None:
            issues.append(f"No {category} data")
            continue
        age_hours = (now - stamp).total_seconds() / 3600
        freshness = max(0.0, 1 - age_hours / window_hours)
        if freshness == 0.0:
            issues.append(f"{category} data older than {window_hours}h")
        timeliness += freshness
    timeliness /= len(QUALITY_WINDOWS)

    accuracy = 0.8
    price_at, onchain_at = latest.get("price"), latest.get("onchain")
    if price_at and onchain_at and abs(price_at - onchain_at) < timedelta(hours=24):
        accuracy += 0.1

    consistency = 0.8
    week_ago = now - timedelta(days=7)
    if sum(1 for stamp in recent_price_times if stamp >= week_ago) >= 7:
        consistency += 0.1

    overall = (
        completeness * 0.3 + timeliness * 0.3 + accuracy * 0.25 + consistency * 0.15
    ) * 100

    return DataQualityScore(
        overall=round(overall, 2),
        completeness=completeness,
        timeliness=timeliness,
        accuracy=accuracy,
        consistency=consistency,
        issues=issues
    )
