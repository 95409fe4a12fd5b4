"""
Glassnode on-chain metrics provider.

This module handles:
- MVRV, NUPL, SOPR and NVT series
- HODL waves and supply distribution
- Comprehensive snapshots with coverage-based quality scores
- Market-cap based estimates when the API is unavailable
"""

import time
import logging
from typing import Any, Dict, Tuple

from ..models import Asset, MetricKind, MetricSnapshot
from .base import (
    HOUR, Fundamentals, MetricProvider, MetricSpec, coverage_quality, snapshot_provenance,
)
from .schemas import GlassnodeBreakdown, GlassnodeSeries

logger = logging.getLogger(__name__)

SERIES_METRICS = ("mvrv", "nupl", "sopr", "nvt")
BREAKDOWN_METRICS = ("hodl_waves", "supply_distribution")

# Missing-metric penalties; the remaining score is also scaled by coverage
QUALITY_PENALTIES = {
    "mvrv": 15,
    "nupl": 15,
    "sopr": 10,
    "nvt": 10,
    "hodl_waves": 15,
    "supply_distribution": 15,
}

TYPICAL_HODL_WAVES = [15, 12, 18, 20, 15, 10, 7, 3]
TYPICAL_SUPPLY_DISTRIBUTION = {"whales": 35, "sharks": 25, "fish": 20, "shrimp": 20}


def estimate_mvrv(price: float) -> float:
    """Long-run average MVRV adjusted by distance from a $50k baseline."""
    return 2.5 + abs(price - 50000) / 50000 * 2


def estimate_nupl(mvrv: float) -> float:
    if mvrv < 1:
        return -0.2
    if mvrv < 2:
        return 0.1
    if mvrv < 3:
        return 0.4
    if mvrv < 4:
        return 0.6
    return 0.8


def estimate_sopr(nupl: float) -> float:
    return 1 + nupl * 0.1


def estimate_nvt(market_cap: float) -> float:
    if market_cap < 1e9:
        return 50
    if market_cap < 1e10:
        return 30
    if market_cap < 1e11:
        return 20
    return 15


class GlassnodeProvider(MetricProvider):
    """
    Glassnode adapter (free tier: 100 requests/day, 10/minute).

    Only assets Glassnode indexes are fetched live; everything else is
    estimated.
    """

    PROVIDER_ID = "glassnode"
    KIND = MetricKind.ONCHAIN
    ESTIMATE_QUALITY = 55.0

    METRICS = {
        "mvrv": MetricSpec("/market/mvrv", 6 * HOUR),
        "nupl": MetricSpec("/indicators/net_unrealized_profit_loss", 6 * HOUR),
        "sopr": MetricSpec("/indicators/sopr", 6 * HOUR),
        "nvt": MetricSpec("/indicators/nvt", 6 * HOUR),
        "hodl_waves": MetricSpec("/supply/hodl_waves", 12 * HOUR),
        "supply_distribution": MetricSpec("/distribution/balance_distribution", 12 * HOUR),
    }

    ASSET_MAP = {"BTC": "BTC", "ETH": "ETH"}

    def _headers(self) -> Dict[str, str]:
        return {}

    def _auth_params(self) -> Dict[str, Any]:
        return {"api_key": self.provider_config.api_key}

    def supports(self, asset: Asset) -> bool:
        return asset.symbol.upper() in self.ASSET_MAP

    def params_for(self, asset: Asset, metric: str, window_days: int) -> Tuple[str, Dict[str, Any]]:
        now = int(time.time())
        return self.METRICS[metric].endpoint, {
            "a": self.ASSET_MAP[asset.symbol.upper()],
            "i": "24h",
            "s": now - window_days * 24 * 60 * 60,
            "u": now,
        }

    def parse_metric(self, metric: str, raw: Any, asset: Asset) -> Any:
        if metric in SERIES_METRICS:
            return GlassnodeSeries.from_payload(raw).latest
        breakdown = GlassnodeBreakdown.from_payload(raw)
        if not breakdown.bands:
            return None
        if metric == "hodl_waves":
            return breakdown.hodl_waves()
        return breakdown.supply_distribution()

    async def fetch_snapshot(self, asset: Asset, priority: int = 1) -> MetricSnapshot:
        """
        Comprehensive on-chain snapshot for one asset.

        Args:
            asset: Tracked asset
            priority: Job priority passed to the quota governor

        Returns:
            MetricSnapshot scored by which of the six metrics arrived
        """
        values, all_cached = await self._gather_metrics(asset, list(self.METRICS), priority)

        metrics = {name: values.get(name) for name in SERIES_METRICS}
        metrics["hodl_waves"] = values.get("hodl_waves")
        metrics["supply_distribution"] = values.get("supply_distribution")
        if values.get("supply_distribution"):
            metrics["whale_holdings"] = values["supply_distribution"].get("whales")

        quality = coverage_quality(values, QUALITY_PENALTIES, expected_points=len(QUALITY_PENALTIES))
        return MetricSnapshot(
            provider=self.PROVIDER_ID,
            asset_id=asset.external_id,
            metrics=metrics,
            quality_score=quality,
            provenance=snapshot_provenance(all_cached)
        )

    def estimate(self, asset: Asset, fundamentals: Fundamentals) -> MetricSnapshot:
        market_cap = float(fundamentals.get("market_cap") or 0.0)
        price = float(fundamentals.get("price") or 0.0)

        mvrv = estimate_mvrv(price)
        nupl = estimate_nupl(mvrv)
        return self._estimated(asset, {
            "mvrv": mvrv,
            "nupl": nupl,
            "sopr": estimate_sopr(nupl),
            "nvt": estimate_nvt(market_cap),
            "hodl_waves": list(TYPICAL_HODL_WAVES),
            "supply_distribution": dict(TYPICAL_SUPPLY_DISTRIBUTION),
            "whale_holdings": TYPICAL_SUPPLY_DISTRIBUTION["whales"],
            "realized_cap": market_cap * 0.7,
            "thermocap": market_cap * 0.1,
            "average_dormancy": 120,
            "coin_days_destroyed": market_cap * 0.05,
        })
