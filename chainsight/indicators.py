"""
Technical indicators computed from stored price history.

Indicators whose lookback exceeds the available history are omitted from
the result rather than extrapolated.
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

MIN_PRICE_POINTS = 15
RSI_PERIOD = 14


def rsi(prices: pd.Series, period: int = RSI_PERIOD) -> Optional[float]:
    """Relative Strength Index over simple average gains and losses."""
    if len(prices) < period + 1:
        return None

    deltas = prices.diff().iloc[-period:]
    avg_gain = deltas.clip(lower=0).mean()
    avg_loss = -deltas.clip(upper=0).mean()

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return float(100 - 100 / (1 + rs))


def moving_average(prices: pd.Series, period: int) -> Optional[float]:
    if len(prices) < period:
        return None
    return float(prices.iloc[-period:].mean())


def macd(prices: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> Optional[Dict[str, float]]:
    """MACD line (fast EMA minus slow EMA) and its signal line."""
    if len(prices) < slow:
        return None

    fast_ema = prices.ewm(span=fast, adjust=False).mean()
    slow_ema = prices.ewm(span=slow, adjust=False).mean()
    line = fast_ema - slow_ema
    signal_line = line.ewm(span=signal, adjust=False).mean()
    return {"macd": float(line.iloc[-1]), "macd_signal": float(signal_line.iloc[-1])}


def bollinger_bands(prices: pd.Series, period: int = 20, std_dev: float = 2.0) -> Optional[Dict[str, float]]:
    if len(prices) < period:
        return None

    window = prices.iloc[-period:]
    middle = window.mean()
    # Population standard deviation
    spread = float(np.std(window.to_numpy())) * std_dev
    return {
        "bollinger_upper": float(middle + spread),
        "bollinger_middle": float(middle),
        "bollinger_lower": float(middle - spread),
    }


def compute_indicators(prices: pd.Series) -> Optional[Dict[str, float]]:
    """
    Compute the technical indicator set for one asset.

    Args:
        prices: Price series in chronological order

    Returns:
        Indicator values keyed by field name, or None if history is too short
    """
    prices = pd.Series(prices, dtype=float).dropna()
    if len(prices) < MIN_PRICE_POINTS:
        logger.debug(f"Not enough price history for indicators ({len(prices)} points)")
        return None

    indicators: Dict[str, float] = {"rsi": rsi(prices)}
    for period in (20, 50, 200):
        value = moving_average(prices, period)
        if value is not None:
            indicators[f"ma_{period}"] = value

    for extra in (macd(prices), bollinger_bands(prices)):
        if extra:
            indicators.update(extra)

    return indicators


def volume_trend(current: float, previous: Optional[float]) -> Optional[str]:
    """Classify a volume change as increasing, stable or decreasing. None without a previous point."""
    if previous is None or previous <= 0:
        return None
    if current > previous * 1.05:
        return "increasing"
    if current > previous * 0.95:
        return "stable"
    return "decreasing"
