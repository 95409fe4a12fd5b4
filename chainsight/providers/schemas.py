"""
Response schemas for the external providers.

Each provider response is mapped onto its own dataclass by an explicit
``from_payload`` function. Anything that does not fit raises SchemaError.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..exceptions import SchemaError
from ..utils import to_float


def _number(provider: str, data: Dict[str, Any], key: str, required: bool = False) -> Optional[float]:
    value = to_float(data.get(key))
    if value is None and required:
        raise SchemaError(provider, f"missing numeric field '{key}'")
    return value


def _unwrap(provider: str, payload: Any) -> Dict[str, Any]:
    """Accept either a bare object or one wrapped in a ``data`` envelope."""
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        payload = payload["data"]
    if not isinstance(payload, dict):
        raise SchemaError(provider, f"expected an object, got {type(payload).__name__}")
    return payload


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        # Seconds or milliseconds since the epoch
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return None


# Glassnode

@dataclass
class GlassnodePoint:
    t: datetime
    v: float


@dataclass
class GlassnodeSeries:
    """A ``[{"t": epoch, "v": value}, ...]`` time series."""
    points: List[GlassnodePoint]

    @classmethod
    def from_payload(cls, payload: Any) -> 'GlassnodeSeries':
        if not isinstance(payload, list):
            raise SchemaError("glassnode", "time series must be a list")
        points = []
        for item in payload:
            if not isinstance(item, dict) or "t" not in item:
                raise SchemaError("glassnode", "time series item needs 't' and 'v'")
            value = to_float(item.get("v"))
            if value is None:
                continue
            points.append(GlassnodePoint(t=_timestamp(item["t"]), v=value))
        return cls(points=points)

    @property
    def latest(self) -> Optional[float]:
        return self.points[-1].v if self.points else None


@dataclass
class GlassnodeBreakdown:
    """Latest ``{"t": epoch, "o": {band: share}}`` entry of a breakdown series."""
    bands: Dict[str, float]

    @classmethod
    def from_payload(cls, payload: Any) -> 'GlassnodeBreakdown':
        if not isinstance(payload, list):
            raise SchemaError("glassnode", "breakdown must be a list")
        if not payload:
            return cls(bands={})
        latest = payload[-1]
        if not isinstance(latest, dict) or not isinstance(latest.get("o"), dict):
            raise SchemaError("glassnode", "breakdown item needs an 'o' object")
        bands = {}
        for band, share in latest["o"].items():
            value = to_float(share)
            if value is not None:
                bands[band] = value
        return cls(bands=bands)

    def hodl_waves(self) -> List[float]:
        """Age bands from youngest to oldest, at most eight."""
        return list(self.bands.values())[:8]

    def supply_distribution(self) -> Dict[str, float]:
        return {
            "whales": self.bands.get(">1%", 0.0),
            "sharks": self.bands.get("0.1%-1%", 0.0),
            "fish": self.bands.get("0.01%-0.1%", 0.0),
            "shrimp": self.bands.get("<0.01%", 0.0),
        }


# Token Terminal

@dataclass
class TokenTerminalMetrics:
    monthly_active_users: Optional[float] = None
    revenue: Optional[float] = None
    revenue_per_user: Optional[float] = None
    market_cap_to_revenue: Optional[float] = None
    user_growth: Optional[float] = None
    revenue_growth: Optional[float] = None
    protocol_revenue: Optional[float] = None
    treasury_assets: Optional[float] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Any) -> 'TokenTerminalMetrics':
        data = _unwrap("token_terminal", payload)
        return cls(
            monthly_active_users=_number("token_terminal", data, "monthly_active_users"),
            revenue=_number("token_terminal", data, "revenue"),
            revenue_per_user=_number("token_terminal", data, "revenue_per_user"),
            market_cap_to_revenue=_number("token_terminal", data, "market_cap_to_revenue"),
            user_growth=_number("token_terminal", data, "user_growth"),
            revenue_growth=_number("token_terminal", data, "revenue_growth"),
            protocol_revenue=_number("token_terminal", data, "protocol_revenue"),
            treasury_assets=_number("token_terminal", data, "treasury_assets"),
            updated_at=_timestamp(data.get("timestamp") or data.get("updated_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


@dataclass
class TokenTerminalProject:
    project_id: str
    name: str
    market_cap: Optional[float] = None
    revenue: Optional[float] = None

    @classmethod
    def list_from_payload(cls, payload: Any) -> List['TokenTerminalProject']:
        items = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise SchemaError("token_terminal", "project list must be a list")
        projects = []
        for item in items:
            if not isinstance(item, dict) or not item.get("project_id"):
                raise SchemaError("token_terminal", "project entry needs a 'project_id'")
            projects.append(cls(
                project_id=str(item["project_id"]),
                name=str(item.get("name", item["project_id"])),
                market_cap=_number("token_terminal", item, "market_cap"),
                revenue=_number("token_terminal", item, "revenue"),
            ))
        return projects


# Artemis

@dataclass
class ArtemisChainMetrics:
    daily_active_addresses: Optional[float] = None
    weekly_active_addresses: Optional[float] = None
    monthly_active_addresses: Optional[float] = None
    new_addresses: Optional[float] = None
    transaction_count: Optional[float] = None
    average_transaction_value: Optional[float] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Any) -> 'ArtemisChainMetrics':
        data = _unwrap("artemis", payload)
        return cls(
            daily_active_addresses=_number("artemis", data, "daily_active_addresses"),
            weekly_active_addresses=_number("artemis", data, "weekly_active_addresses"),
            monthly_active_addresses=_number("artemis", data, "monthly_active_addresses"),
            new_addresses=_number("artemis", data, "new_addresses"),
            transaction_count=_number("artemis", data, "transaction_count"),
            average_transaction_value=_number("artemis", data, "average_transaction_value"),
            updated_at=_timestamp(data.get("timestamp") or data.get("updated_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


@dataclass
class ArtemisFlows:
    inflow: Optional[float] = None
    outflow: Optional[float] = None
    net_flow: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Any) -> 'ArtemisFlows':
        data = _unwrap("artemis", payload)
        inflow = _number("artemis", data, "inflow")
        outflow = _number("artemis", data, "outflow")
        net_flow = _number("artemis", data, "net_flow")
        if net_flow is None and inflow is not None and outflow is not None:
            net_flow = inflow - outflow
        return cls(inflow=inflow, outflow=outflow, net_flow=net_flow)


@dataclass
class ArtemisUserBehavior:
    user_retention: Optional[float] = None
    user_acquisition_cost: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Any) -> 'ArtemisUserBehavior':
        data = _unwrap("artemis", payload)
        return cls(
            user_retention=_number("artemis", data, "user_retention"),
            user_acquisition_cost=_number("artemis", data, "user_acquisition_cost"),
        )


# Market data

@dataclass
class CoinGeckoPrice:
    """One coin from ``/simple/price`` with market cap, volume and change."""
    price: float
    market_cap: Optional[float] = None
    volume_24h: Optional[float] = None
    price_change_24h: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Any, coin_id: str) -> 'CoinGeckoPrice':
        if not isinstance(payload, dict) or not isinstance(payload.get(coin_id), dict):
            raise SchemaError("coingecko", f"no price entry for {coin_id}")
        data = payload[coin_id]
        return cls(
            price=_number("coingecko", data, "usd", required=True),
            market_cap=_number("coingecko", data, "usd_market_cap"),
            volume_24h=_number("coingecko", data, "usd_24h_vol"),
            price_change_24h=_number("coingecko", data, "usd_24h_change"),
        )


@dataclass
class FearGreedReading:
    value: float
    classification: str
    timestamp: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Any) -> 'FearGreedReading':
        items = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(items, list) or not items or not isinstance(items[0], dict):
            raise SchemaError("alternative_me", "expected a non-empty 'data' list")
        latest = items[0]
        return cls(
            value=_number("alternative_me", latest, "value", required=True),
            classification=str(latest.get("value_classification", "")),
            timestamp=_timestamp(to_float(latest.get("timestamp"))),
        )


@dataclass
class BinancePremiumIndex:
    symbol: str
    mark_price: Optional[float]
    funding_rate: float

    @classmethod
    def from_payload(cls, payload: Any) -> 'BinancePremiumIndex':
        if not isinstance(payload, dict) or "symbol" not in payload:
            raise SchemaError("binance_futures", "premium index needs a 'symbol'")
        return cls(
            symbol=str(payload["symbol"]),
            mark_price=_number("binance_futures", payload, "markPrice"),
            funding_rate=_number("binance_futures", payload, "lastFundingRate", required=True),
        )


@dataclass
class BinanceOpenInterest:
    symbol: str
    open_interest: float

    @classmethod
    def from_payload(cls, payload: Any) -> 'BinanceOpenInterest':
        if not isinstance(payload, dict) or "symbol" not in payload:
            raise SchemaError("binance_futures", "open interest needs a 'symbol'")
        return cls(
            symbol=str(payload["symbol"]),
            open_interest=_number("binance_futures", payload, "openInterest", required=True),
        )
