"""Fakes and canned upstream payloads shared by the test modules."""

from datetime import datetime, timedelta

from chainsight.exceptions import ProviderError
from chainsight.models import Asset

BTC = Asset(symbol="BTC", name="Bitcoin", external_id="bitcoin", rank=1)
ETH = Asset(symbol="ETH", name="Ethereum", external_id="ethereum", rank=2)
SOL = Asset(symbol="SOL", name="Solana", external_id="solana", rank=4)
PEPE = Asset(symbol="PEPE", name="Pepe", external_id="pepe", rank=40)

KEYED_PROVIDERS = ("glassnode", "token_terminal", "artemis")


class FakeClock:
    """Epoch-seconds clock advanced by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeDateClock:
    """datetime clock advanced by hand."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


class ScriptedResponses:
    """
    Replacement for ``MetricProvider._fetch_json``.

    Routes are matched by endpoint suffix. A route maps to a payload, a
    callable taking the query params, or an exception to raise.
    """

    def __init__(self, provider_id: str, routes: dict):
        self.provider_id = provider_id
        self.routes = dict(routes)
        self.calls = []

    async def __call__(self, endpoint: str, params: dict):
        self.calls.append((endpoint, dict(params)))
        for suffix, response in self.routes.items():
            if endpoint.endswith(suffix):
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(params)
                return response
        raise ProviderError(self.provider_id, f"HTTP 404 for {endpoint}", 404)

    def count(self, suffix: str) -> int:
        return sum(1 for endpoint, _ in self.calls if endpoint.endswith(suffix))


def script(provider, routes: dict) -> ScriptedResponses:
    """Swap a provider's network seam for canned responses."""
    fake = ScriptedResponses(provider.PROVIDER_ID, routes)
    provider._fetch_json = fake
    return fake


# Canned upstream payloads

def glassnode_series(value: float):
    return [{"t": 1_699_900_000, "v": value * 0.98}, {"t": 1_700_000_000, "v": value}]


GLASSNODE_BREAKDOWN = [{
    "t": 1_700_000_000,
    "o": {">1%": 40.0, "0.1%-1%": 25.0, "0.01%-0.1%": 20.0, "<0.01%": 15.0},
}]

GLASSNODE_ROUTES = {
    "/market/mvrv": glassnode_series(1.8),
    "/net_unrealized_profit_loss": glassnode_series(0.45),
    "/indicators/sopr": glassnode_series(1.02),
    "/indicators/nvt": glassnode_series(22.0),
    "/supply/hodl_waves": GLASSNODE_BREAKDOWN,
    "/distribution/balance_distribution": GLASSNODE_BREAKDOWN,
}

COINGECKO_PRICES = {
    "bitcoin": 65000.0,
    "ethereum": 3400.0,
    "binancecoin": 580.0,
    "solana": 150.0,
    "pepe": 0.00001,
}


def coingecko_price(params):
    coin_id = params["ids"]
    price = COINGECKO_PRICES[coin_id]
    return {coin_id: {
        "usd": price,
        "usd_market_cap": price * 19_000_000,
        "usd_24h_vol": price * 400_000,
        "usd_24h_change": 1.5,
    }}


COINGECKO_ROUTES = {"/simple/price": coingecko_price}

FEAR_GREED_ROUTES = {
    "/fng/": {"data": [{"value": "45", "value_classification": "Fear", "timestamp": "1700000000"}]},
}

BINANCE_ROUTES = {
    "/premiumIndex": lambda params: {
        "symbol": params["symbol"], "markPrice": "65000.0", "lastFundingRate": "0.00010000",
    },
    "/openInterest": lambda params: {"symbol": params["symbol"], "openInterest": "85000.500"},
}

TOKEN_TERMINAL_ROUTES = {
    "/metrics": {"data": {
        "monthly_active_users": 820000,
        "revenue": 54000000,
        "revenue_per_user": 65.8,
        "market_cap_to_revenue": 22.1,
        "user_growth": 3.1,
        "revenue_growth": 4.4,
    }},
}

ARTEMIS_ROUTES = {
    "/metrics": {
        "daily_active_addresses": 910000,
        "weekly_active_addresses": 2400000,
        "transaction_count": 1150000,
    },
    "/cross-chain-flows": {"inflow": 1.2e8, "outflow": 0.9e8},
    "/user-behavior": {"user_retention": 61.0, "user_acquisition_cost": 42.0},
}

PROVIDER_ROUTES = {
    "coingecko": COINGECKO_ROUTES,
    "glassnode": GLASSNODE_ROUTES,
    "alternative_me": FEAR_GREED_ROUTES,
    "binance_futures": BINANCE_ROUTES,
    "token_terminal": TOKEN_TERMINAL_ROUTES,
    "artemis": ARTEMIS_ROUTES,
}


