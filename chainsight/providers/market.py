"""
Public market data providers.

This module handles:
- Spot price, market cap and volume from CoinGecko
- The Fear & Greed index from Alternative.me
- Funding rate and open interest from Binance USD-M futures
"""

import logging
from typing import Any, Dict, Optional, Tuple

from ..models import Asset, MetricKind, MetricSnapshot
from .base import (
    Fundamentals, MetricProvider, MetricSpec, coverage_quality, snapshot_provenance,
)
from .schemas import BinanceOpenInterest, BinancePremiumIndex, CoinGeckoPrice, FearGreedReading

logger = logging.getLogger(__name__)

MINUTE = 60

# Market-wide metrics are stored under this pseudo asset
MARKET_ASSET = Asset(symbol="MARKET", name="Crypto market", external_id="market", rank=0)


class CoinGeckoProvider(MetricProvider):
    """
    Spot market data for the price category.

    Estimates carry forward the last fundamentals seen for the asset.
    """

    PROVIDER_ID = "coingecko"
    KIND = MetricKind.PRICE
    ESTIMATE_QUALITY = 50.0

    METRICS = {
        "price": MetricSpec(
            "/simple/price",
            4 * MINUTE,
            {
                "vs_currencies": "usd",
                "include_market_cap": "true",
                "include_24hr_vol": "true",
                "include_24hr_change": "true",
            }
        ),
    }

    PENALTIES = {"market_cap": 10, "volume_24h": 10, "price_change_24h": 10}

    def _headers(self) -> Dict[str, str]:
        if self.provider_config.api_key:
            return {"x-cg-demo-api-key": self.provider_config.api_key}
        return {}

    def params_for(self, asset: Asset, metric: str, window_days: int) -> Tuple[str, Dict[str, Any]]:
        spec = self.METRICS[metric]
        return spec.endpoint, dict(spec.params, ids=asset.external_id)

    def parse_metric(self, metric: str, raw: Any, asset: Asset) -> Any:
        return vars(CoinGeckoPrice.from_payload(raw, asset.external_id))

    async def fetch_snapshot(self, asset: Asset, priority: int = 1) -> MetricSnapshot:
        values, all_cached = await self._gather_metrics(asset, ["price"], priority)
        metrics = dict(values["price"])
        return MetricSnapshot(
            provider=self.PROVIDER_ID,
            asset_id=asset.external_id,
            metrics=metrics,
            quality_score=coverage_quality(metrics, self.PENALTIES),
            provenance=snapshot_provenance(all_cached)
        )

    def estimate(self, asset: Asset, fundamentals: Fundamentals) -> MetricSnapshot:
        metrics = {
            name: fundamentals.get(name)
            for name in ("price", "market_cap", "volume_24h")
            if fundamentals.get(name) is not None
        }
        metrics["price_change_24h"] = 0.0
        return self._estimated(asset, metrics)


class AlternativeMeProvider(MetricProvider):
    """Crypto Fear & Greed index. One reading for the whole market."""

    PROVIDER_ID = "alternative_me"
    KIND = MetricKind.SENTIMENT
    ESTIMATE_QUALITY = 50.0
    NEUTRAL_READING = 50.0

    METRICS = {
        "fear_greed": MetricSpec("/fng/", 60 * MINUTE, {"limit": 1}),
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.last_reading: Optional[float] = None

    def parse_metric(self, metric: str, raw: Any, asset: Asset) -> Any:
        reading = FearGreedReading.from_payload(raw)
        return {"fear_greed": reading.value, "classification": reading.classification}

    async def fetch_snapshot(self, asset: Asset = MARKET_ASSET, priority: int = 1) -> MetricSnapshot:
        values, all_cached = await self._gather_metrics(asset, ["fear_greed"], priority)
        reading = values["fear_greed"]
        self.last_reading = reading["fear_greed"]
        return MetricSnapshot(
            provider=self.PROVIDER_ID,
            asset_id=asset.external_id,
            metrics={"fear_greed": reading["fear_greed"], "classification": reading["classification"]},
            quality_score=100.0,
            provenance=snapshot_provenance(all_cached)
        )

    def estimate(self, asset: Asset, fundamentals: Fundamentals) -> MetricSnapshot:
        value = fundamentals.get("fear_greed", self.last_reading)
        if value is None:
            value = self.NEUTRAL_READING
        return self._estimated(asset, {"fear_greed": value})


class BinanceFuturesProvider(MetricProvider):
    """
    Derivatives positioning from the public Binance USD-M futures API.

    Open interest is reported in contracts of the perpetual ``<SYMBOL>USDT``.
    """

    PROVIDER_ID = "binance_futures"
    KIND = MetricKind.DERIVATIVE
    ESTIMATE_QUALITY = 50.0
    # Binance's default funding rate per 8h interval
    BASELINE_FUNDING_RATE = 0.0001

    METRICS = {
        "funding_rate": MetricSpec("/premiumIndex", 15 * MINUTE),
        "open_interest": MetricSpec("/openInterest", 15 * MINUTE),
    }

    PENALTIES = {"funding_rate": 20, "open_interest": 10}

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.last_known: Dict[str, Dict[str, float]] = {}

    @staticmethod
    def symbol_for(asset: Asset) -> str:
        return f"{asset.symbol.upper()}USDT"

    def params_for(self, asset: Asset, metric: str, window_days: int) -> Tuple[str, Dict[str, Any]]:
        return self.METRICS[metric].endpoint, {"symbol": self.symbol_for(asset)}

    def parse_metric(self, metric: str, raw: Any, asset: Asset) -> Any:
        if metric == "funding_rate":
            return BinancePremiumIndex.from_payload(raw).funding_rate
        return BinanceOpenInterest.from_payload(raw).open_interest

    async def fetch_snapshot(self, asset: Asset, priority: int = 1) -> MetricSnapshot:
        values, all_cached = await self._gather_metrics(asset, list(self.METRICS), priority)
        metrics = {name: values.get(name) for name in self.METRICS}
        self.last_known[asset.external_id] = {k: v for k, v in metrics.items() if v is not None}
        return MetricSnapshot(
            provider=self.PROVIDER_ID,
            asset_id=asset.external_id,
            metrics=metrics,
            quality_score=coverage_quality(metrics, self.PENALTIES),
            provenance=snapshot_provenance(all_cached)
        )

    def estimate(self, asset: Asset, fundamentals: Fundamentals) -> MetricSnapshot:
        known = self.last_known.get(asset.external_id, {})
        metrics = {"funding_rate": known.get("funding_rate", self.BASELINE_FUNDING_RATE)}
        if "open_interest" in known:
            metrics["open_interest"] = known["open_interest"]
        return self._estimated(asset, metrics)
