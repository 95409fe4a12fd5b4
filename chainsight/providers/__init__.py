"""External metric providers."""

from .base import CollectedSnapshot, CollectionReport, MetricProvider, MetricSpec
from .glassnode import GlassnodeProvider
from .token_terminal import TokenTerminalProvider
from .artemis import ArtemisProvider
from .market import (
    MARKET_ASSET, AlternativeMeProvider, BinanceFuturesProvider, CoinGeckoProvider,
)

__all__ = [
    'MetricProvider',
    'MetricSpec',
    'CollectedSnapshot',
    'CollectionReport',
    'GlassnodeProvider',
    'TokenTerminalProvider',
    'ArtemisProvider',
    'CoinGeckoProvider',
    'AlternativeMeProvider',
    'BinanceFuturesProvider',
    'MARKET_ASSET',
]
