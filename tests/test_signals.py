"""Tests for the rule-based signal engine and the signal service."""

import asyncio

import pytest

from chainsight.exceptions import NarrativeError
from chainsight.models import RiskLevel, SignalType
from chainsight.narrative import NarrativeProvider, StructuredNarrative
from chainsight.signals import (
    MarketSnapshot, SignalEngine, SignalService, STABLE_MARKET_TRIGGER, analyze_signal,
)


@pytest.fixture
def engine():
    return SignalEngine()


def test_all_buy_conditions_give_strong_buy(engine):
    signal = engine.evaluate(MarketSnapshot(mvrv=0.8, fear_greed=15, funding_rate=-0.01, sopr=0.98))

    assert signal.signal is SignalType.STRONG_BUY
    assert signal.confidence == 100
    assert signal.risk_level is RiskLevel.LOW
    assert signal.triggers == ["MVRV < 1", "Fear & Greed < 20", "Funding Rate âm", "SOPR gần 1"]


def test_buy_is_deterministic(engine):
    snapshot = MarketSnapshot(mvrv=0.9, fear_greed=15, funding_rate=-0.005, sopr=1.5)

    first = engine.evaluate(snapshot)
    second = engine.evaluate(snapshot)

    assert first.signal is second.signal is SignalType.BUY
    assert first.confidence == second.confidence == 80
    assert first.triggers == second.triggers
    assert first.risk_level is RiskLevel.MEDIUM


def test_sell_conditions(engine):
    signal = engine.evaluate({"mvrv": 2.5, "fear_greed": 85, "funding_rate": 0.02, "rsi": 75})

    assert signal.signal is SignalType.STRONG_SELL
    assert signal.confidence == 100
    assert signal.triggers == ["MVRV > 2", "Fear & Greed > 80", "Funding Rate dương cao", "RSI > 70"]


def test_partial_sell_below_threshold_is_not_a_sell(engine):
    signal = engine.evaluate({"mvrv": 2.5, "fear_greed": 85, "rsi": 50})

    assert signal.signal is SignalType.HOLD
    assert signal.confidence == 50


def test_stable_market_hold(engine):
    signal = engine.evaluate(MarketSnapshot(mvrv=1.2, nupl=0.5, volume_trend="increasing"))

    assert signal.signal is SignalType.HOLD
    assert signal.confidence == 100
    assert signal.triggers == [STABLE_MARKET_TRIGGER]
    assert signal.risk_level is RiskLevel.LOW


def test_neutral_hold_when_nothing_matches(engine):
    signal = engine.evaluate(MarketSnapshot(mvrv=1.8))

    assert signal.signal is SignalType.HOLD
    assert signal.confidence == 50
    assert signal.triggers == []
    assert signal.risk_level is RiskLevel.MEDIUM


def test_no_inputs_means_insufficient_data(engine):
    signal = engine.evaluate(MarketSnapshot())

    assert signal.signal is SignalType.HOLD
    assert signal.confidence == 0
    assert signal.reasoning.startswith("Insufficient data")


def test_extreme_conditions_raise_risk(engine):
    signal = engine.evaluate(MarketSnapshot(mvrv=0.8, fear_greed=5, funding_rate=-0.01, sopr=1.0))

    assert signal.signal is SignalType.STRONG_BUY
    assert signal.conditions["extreme_detected"] is True
    assert signal.risk_level is RiskLevel.MEDIUM
    assert "Extreme" in signal.reasoning


@pytest.mark.parametrize("snapshot", [
    MarketSnapshot(fear_greed=95),
    MarketSnapshot(funding_rate=-0.06),
    MarketSnapshot(rsi=15),
    MarketSnapshot(social_sentiment=0.95),
])
def test_detect_extremes(engine, snapshot):
    assert engine.detect_extremes(snapshot)


def test_volume_trend_is_derived_from_transaction_volume(engine):
    signal = engine.evaluate({"mvrv": 1.2, "transaction_volume": 120, "previous_transaction_volume": 100})

    assert signal.conditions["volume_trend"] == "increasing"


def test_from_dict_accepts_fear_greed_index_alias():
    snapshot = MarketSnapshot.from_dict({"fear_greed_index": 12, "provider": "glassnode"})

    assert snapshot.fear_greed == 12


def test_update_thresholds_changes_rules(engine):
    engine.update_thresholds(buy_mvrv=1.5)

    signal = engine.evaluate(MarketSnapshot(mvrv=1.2, fear_greed=15, funding_rate=-0.01))
    assert signal.signal is SignalType.BUY
    assert "MVRV < 1.5" in signal.triggers

    with pytest.raises(ValueError):
        engine.update_thresholds(not_a_threshold=1)


def test_analysis_of_a_buy(engine):
    signal = engine.evaluate(MarketSnapshot(mvrv=0.7, fear_greed=12, funding_rate=-0.01, sopr=1.0))

    analysis = analyze_signal(signal)

    assert "Low valuation" in analysis.risk_factors
    assert "Extreme fear" in analysis.risk_factors
    assert analysis.entry_points.startswith("Scale in")
    assert analysis.exit_points == "No exit recommended"


class StubNarrative(NarrativeProvider):
    def __init__(self, reply=None, error=None, delay=0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.contexts = []

    async def analyze(self, context):
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.reply


@pytest.mark.asyncio
async def test_service_attaches_narrative():
    reply = StructuredNarrative("BUY", 70, "Undervalued")
    narrative = StubNarrative(reply=reply)
    service = SignalService(narrative=narrative)

    signal = await service.generate("bitcoin", MarketSnapshot(mvrv=0.8, fear_greed=15, funding_rate=-0.01))

    assert signal.narrative is reply
    assert narrative.contexts[0]["rule_signal"] == "BUY"
    assert narrative.contexts[0]["asset_id"] == "bitcoin"


@pytest.mark.asyncio
async def test_narrative_failure_keeps_rule_signal():
    service = SignalService(narrative=StubNarrative(error=NarrativeError("HTTP 500")))

    signal = await service.generate("bitcoin", MarketSnapshot(mvrv=0.8, fear_greed=15, funding_rate=-0.01))

    assert signal.signal is SignalType.BUY
    assert signal.narrative is None
    assert service.narrative_failures == 1


@pytest.mark.asyncio
async def test_narrative_timeout_keeps_rule_signal():
    service = SignalService(narrative=StubNarrative(delay=1.0), narrative_timeout=0.05)

    signal = await service.generate("bitcoin", MarketSnapshot(mvrv=1.8))

    assert signal.signal is SignalType.HOLD
    assert signal.narrative is None
    assert service.narrative_failures == 1


@pytest.mark.asyncio
async def test_unexpected_narrative_error_keeps_rule_signal():
    service = SignalService(narrative=StubNarrative(error=RuntimeError("boom")))

    signal = await service.generate("bitcoin", MarketSnapshot(mvrv=1.8))

    assert signal.signal is SignalType.HOLD
    assert signal.narrative is None
    assert service.narrative_failures == 1


def test_single_volume_point_has_no_trend(engine):
    signal = engine.evaluate({"mvrv": 1.2, "nupl": 0.5, "transaction_volume": 120})

    assert signal.conditions["volume_trend"] is None
    assert signal.confidence == 80
