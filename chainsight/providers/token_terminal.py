"""
Token Terminal protocol fundamentals provider.

This module handles:
- Project metrics (users, revenue, valuation ratios, treasury)
- Top project listings and historical series
- Quality scoring for missing or stale fundamentals
- Market-cap based estimates
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

from ..cache_manager import make_cache_key
from ..exceptions import ProviderError, RateLimitedError
from ..models import Asset, MetricKind, MetricSnapshot, ProviderResult
from .base import HOUR, Fundamentals, MetricProvider, MetricSpec, snapshot_provenance
from .schemas import TokenTerminalMetrics, TokenTerminalProject

logger = logging.getLogger(__name__)

CRITICAL_METRICS = ("monthly_active_users", "revenue")
MISSING_CRITICAL_PENALTY = 20
STALE_PENALTY = 10
STALE_AFTER = timedelta(hours=24)


def estimate_monthly_active_users(market_cap: float) -> float:
    if market_cap < 1e6:
        return 1000
    if market_cap < 1e7:
        return 5000
    if market_cap < 1e8:
        return 25000
    if market_cap < 1e9:
        return 150000
    return 1000000


def estimate_monthly_revenue(market_cap: float) -> float:
    """Monthly revenue at an industry-average price/sales ratio of 15."""
    return market_cap / 15 / 12


def fundamentals_quality(metrics: TokenTerminalMetrics, now: datetime) -> float:
    score = 100.0
    for name in CRITICAL_METRICS:
        if not getattr(metrics, name):
            score -= MISSING_CRITICAL_PENALTY
    if metrics.updated_at and now - metrics.updated_at > STALE_AFTER:
        score -= STALE_PENALTY
    return max(0.0, score)


class TokenTerminalProvider(MetricProvider):
    """
    Token Terminal adapter (free tier: 100 requests/day, 10/minute).
    """

    PROVIDER_ID = "token_terminal"
    KIND = MetricKind.ONCHAIN
    ESTIMATE_QUALITY = 65.0

    METRICS = {
        "project_metrics": MetricSpec("/projects/{project_id}/metrics", 6 * HOUR),
        "historical_metrics": MetricSpec("/projects/{project_id}/historical_metrics", 24 * HOUR),
    }
    PROJECTS_TTL = 12 * HOUR

    PROJECT_MAP = {
        "BTC": "bitcoin",
        "ETH": "ethereum",
        "BNB": "binance-coin",
        "SOL": "solana",
        "ADA": "cardano",
        "XRP": "ripple",
        "DOT": "polkadot",
        "DOGE": "dogecoin",
        "AVAX": "avalanche",
        "MATIC": "polygon",
        "LINK": "chainlink",
        "UNI": "uniswap",
        "AAVE": "aave",
        "COMP": "compound",
        "CRV": "curve-dao-token",
        "SUSHI": "sushi",
        "YFI": "yearn-finance",
    }

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def supports(self, asset: Asset) -> bool:
        return asset.symbol.upper() in self.PROJECT_MAP

    def params_for(self, asset: Asset, metric: str, window_days: int) -> Tuple[str, Dict[str, Any]]:
        endpoint = self.METRICS[metric].endpoint.format(
            project_id=self.PROJECT_MAP[asset.symbol.upper()]
        )
        params = {"days": str(window_days)} if metric == "historical_metrics" else {}
        return endpoint, params

    def parse_metric(self, metric: str, raw: Any, asset: Asset) -> Any:
        if metric == "project_metrics":
            return TokenTerminalMetrics.from_payload(raw).to_dict()
        items = raw.get("data") if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            items = []
        return [TokenTerminalMetrics.from_payload(item).to_dict() for item in items]

    async def fetch_snapshot(self, asset: Asset, priority: int = 1) -> MetricSnapshot:
        result = await self.get_metric(asset, "project_metrics", priority=priority)
        if result.rate_limited:
            raise RateLimitedError(self.PROVIDER_ID)
        if not result.success:
            raise ProviderError(self.PROVIDER_ID, result.error or "no project metrics")

        data = dict(result.data)
        updated_at = data.pop("updated_at", None)
        metrics = TokenTerminalMetrics(
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            **data
        )
        return MetricSnapshot(
            provider=self.PROVIDER_ID,
            asset_id=asset.external_id,
            metrics=data,
            quality_score=fundamentals_quality(metrics, self.now()),
            provenance=snapshot_provenance(result.cached)
        )

    async def get_historical(self, asset: Asset, days: int = 30, priority: int = 4) -> ProviderResult:
        """Daily fundamentals over the last ``days`` days."""
        return await self.get_metric(asset, "historical_metrics", window_days=days, priority=priority)

    async def get_top_projects(self, priority: int = 4) -> ProviderResult:
        """Projects listed by Token Terminal, cached for 12 hours."""
        if self.estimate_only:
            return ProviderResult.unavailable(f"{self.PROVIDER_ID} is in estimate-only mode")

        async def fetch() -> List[Dict[str, Any]]:
            raw = await self._request("/projects", {}, priority)
            return [vars(project) for project in TokenTerminalProject.list_from_payload(raw)]

        key = make_cache_key(self.PROVIDER_ID, "projects", "all")
        try:
            data, cached = await self.cache.get_or_fetch(key, self.PROJECTS_TTL, fetch)
        except RateLimitedError:
            return ProviderResult.throttled(self.PROVIDER_ID)
        except ProviderError as e:
            return ProviderResult.failed(str(e), self.remaining_quota())
        return ProviderResult.ok(data, cached=cached, remaining_quota=self.remaining_quota())

    def estimate(self, asset: Asset, fundamentals: Fundamentals) -> MetricSnapshot:
        market_cap = float(fundamentals.get("market_cap") or 0.0)
        users = estimate_monthly_active_users(market_cap)
        revenue = estimate_monthly_revenue(market_cap)

        return self._estimated(asset, {
            "monthly_active_users": users,
            "revenue": revenue,
            "revenue_per_user": revenue / users if users > 0 else 0.0,
            "market_cap_to_revenue": market_cap / revenue if revenue > 0 else 0.0,
            "user_growth": 5.2,
            "revenue_growth": 8.7,
            "protocol_revenue": revenue * 0.7,
            "treasury_assets": market_cap * 0.15,
        })
