"""Tests for technical indicators over price history."""

import pandas as pd
import pytest

from chainsight.indicators import (
    bollinger_bands, compute_indicators, macd, moving_average, rsi, volume_trend,
)


def test_rsi_of_a_rising_series_is_100():
    assert rsi(pd.Series(range(1, 20), dtype=float)) == 100.0


def test_rsi_of_a_flat_series_is_neutral():
    assert rsi(pd.Series([10.0] * 20)) == 50.0


def test_rsi_balanced_moves():
    prices = pd.Series([100.0 + (1 if i % 2 else -1) for i in range(15)])

    assert rsi(prices) == pytest.approx(50.0)


def test_rsi_needs_period_plus_one_points():
    assert rsi(pd.Series([1.0] * 14)) is None


def test_moving_average_uses_the_latest_window():
    prices = pd.Series([1.0, 2.0, 3.0, 4.0])

    assert moving_average(prices, 2) == 3.5
    assert moving_average(prices, 5) is None


def test_macd_needs_the_slow_window():
    assert macd(pd.Series([1.0] * 25)) is None
    result = macd(pd.Series([1.0] * 30))
    assert result["macd"] == pytest.approx(0.0)
    assert result["macd_signal"] == pytest.approx(0.0)


def test_bollinger_bands_of_a_flat_series_collapse():
    bands = bollinger_bands(pd.Series([5.0] * 20))

    assert bands == {"bollinger_upper": 5.0, "bollinger_middle": 5.0, "bollinger_lower": 5.0}


def test_short_history_gives_no_indicators():
    assert compute_indicators(pd.Series([1.0] * 14)) is None


def test_indicators_are_omitted_when_history_is_too_short():
    prices = pd.Series([100.0 + i for i in range(30)])

    indicators = compute_indicators(prices)

    assert set(indicators) == {
        "rsi", "ma_20", "macd", "macd_signal",
        "bollinger_upper", "bollinger_middle", "bollinger_lower",
    }
    assert 0 <= indicators["rsi"] <= 100


def test_missing_prices_are_dropped():
    prices = pd.Series([100.0, None] * 10)

    assert compute_indicators(prices) is None


@pytest.mark.parametrize("current, previous, trend", [
    (110.0, 100.0, "increasing"),
    (101.0, 100.0, "stable"),
    (90.0, 100.0, "decreasing"),
    (100.0, None, None),
    (100.0, 0.0, None),
])
def test_volume_trend(current, previous, trend):
    assert volume_trend(current, previous) == trend
