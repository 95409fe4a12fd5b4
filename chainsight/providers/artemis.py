"""
Artemis chain activity provider.

This module handles:
- Active addresses and transaction activity per chain
- Cross-chain flows and user behaviour
- Quality scoring for missing or stale activity data
- Market-cap based estimates
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Tuple

from ..exceptions import ProviderError, RateLimitedError
from ..models import Asset, MetricKind, MetricSnapshot
from .base import HOUR, Fundamentals, MetricProvider, MetricSpec, snapshot_provenance
from .schemas import ArtemisChainMetrics, ArtemisFlows, ArtemisUserBehavior

logger = logging.getLogger(__name__)

CRITICAL_METRICS = ("daily_active_addresses", "transaction_count")
MISSING_CRITICAL_PENALTY = 25
STALE_PENALTY = 15
STALE_AFTER = timedelta(hours=12)


def estimate_daily_active_addresses(market_cap: float) -> float:
    if market_cap < 1e6:
        return 500
    if market_cap < 1e7:
        return 2000
    if market_cap < 1e8:
        return 10000
    if market_cap < 1e9:
        return 50000
    if market_cap < 1e10:
        return 200000
    return 1000000


def activity_quality(metrics: ArtemisChainMetrics, now: datetime) -> float:
    score = 100.0
    for name in CRITICAL_METRICS:
        if not getattr(metrics, name):
            score -= MISSING_CRITICAL_PENALTY
    if metrics.updated_at and now - metrics.updated_at > STALE_AFTER:
        score -= STALE_PENALTY
    return max(0.0, score)


class ArtemisProvider(MetricProvider):
    """
    Artemis adapter (1000 requests/day, 60/minute).

    Chain metrics decide the quality score; flows and user behaviour are
    attached when they arrive and skipped otherwise.
    """

    PROVIDER_ID = "artemis"
    KIND = MetricKind.ONCHAIN
    ESTIMATE_QUALITY = 60.0

    METRICS = {
        "chain_metrics": MetricSpec("/chains/{chain_id}/metrics", 2 * HOUR),
        "cross_chain_flows": MetricSpec("/chains/{chain_id}/cross-chain-flows", 3 * HOUR),
        "user_behavior": MetricSpec("/chains/{chain_id}/user-behavior", 4 * HOUR),
    }

    CHAIN_MAP = {
        "ETH": "ethereum",
        "BTC": "bitcoin",
        "BNB": "binance-smart-chain",
        "MATIC": "polygon",
        "AVAX": "avalanche",
        "SOL": "solana",
        "ADA": "cardano",
        "DOT": "polkadot",
    }

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def supports(self, asset: Asset) -> bool:
        return asset.symbol.upper() in self.CHAIN_MAP

    def params_for(self, asset: Asset, metric: str, window_days: int) -> Tuple[str, Dict[str, Any]]:
        endpoint = self.METRICS[metric].endpoint.format(
            chain_id=self.CHAIN_MAP[asset.symbol.upper()]
        )
        return endpoint, {"days": str(window_days)}

    def parse_metric(self, metric: str, raw: Any, asset: Asset) -> Any:
        if metric == "chain_metrics":
            return ArtemisChainMetrics.from_payload(raw).to_dict()
        if metric == "cross_chain_flows":
            return vars(ArtemisFlows.from_payload(raw))
        return vars(ArtemisUserBehavior.from_payload(raw))

    async def fetch_snapshot(self, asset: Asset, priority: int = 1) -> MetricSnapshot:
        chain = await self.get_metric(asset, "chain_metrics", priority=priority)
        if chain.rate_limited:
            raise RateLimitedError(self.PROVIDER_ID)
        if not chain.success:
            raise ProviderError(self.PROVIDER_ID, chain.error or "no chain metrics")

        data = dict(chain.data)
        updated_at = data.pop("updated_at", None)
        activity = ArtemisChainMetrics(
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            **data
        )

        metrics = dict(data)
        metrics["active_addresses"] = data.get("daily_active_addresses")
        all_cached = chain.cached

        flows = await self.get_metric(asset, "cross_chain_flows", priority=priority)
        if flows.success:
            metrics["cross_chain_inflow"] = flows.data.get("inflow")
            metrics["cross_chain_outflow"] = flows.data.get("outflow")
            metrics["net_cross_chain_flow"] = flows.data.get("net_flow")
            all_cached = all_cached and flows.cached

        behavior = await self.get_metric(asset, "user_behavior", priority=priority)
        if behavior.success:
            metrics.update(behavior.data)
            all_cached = all_cached and behavior.cached

        return MetricSnapshot(
            provider=self.PROVIDER_ID,
            asset_id=asset.external_id,
            metrics=metrics,
            quality_score=activity_quality(activity, self.now()),
            provenance=snapshot_provenance(all_cached)
        )

    def estimate(self, asset: Asset, fundamentals: Fundamentals) -> MetricSnapshot:
        market_cap = float(fundamentals.get("market_cap") or 0.0)
        daily = estimate_daily_active_addresses(market_cap)

        return self._estimated(asset, {
            "daily_active_addresses": daily,
            "active_addresses": daily,
            "weekly_active_addresses": daily * 0.7,
            "monthly_active_addresses": daily * 0.4,
            "new_addresses": daily * 0.1,
            "transaction_count": daily * 2.5,
            "average_transaction_value": market_cap / (daily * 365),
            "cross_chain_inflow": market_cap * 0.02,
            "cross_chain_outflow": market_cap * 0.018,
            "net_cross_chain_flow": market_cap * 0.002,
            "user_retention": 65.5,
            "user_acquisition_cost": 50,
        })
