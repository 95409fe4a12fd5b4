"""
Rule-based trading signal engine.

This module handles:
- Weighted BUY, SELL and HOLD rule sets
- Extreme market condition detection
- Signal analysis (recommendation, timeframe, risk factors)
- Narrative enrichment with rule-only fallback
"""

import asyncio
import logging
from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, List, Optional, Tuple, Union

from .indicators import volume_trend as classify_volume
from .models import RiskLevel, SignalType, TradingSignal
from .narrative import NarrativeProvider
from .exceptions import NarrativeError

logger = logging.getLogger(__name__)

STRONG_THRESHOLD = 0.95
ACTION_THRESHOLD = 0.8
HOLD_THRESHOLD = 0.7
NEUTRAL_CONFIDENCE = 50
STABLE_MARKET_TRIGGER = "Thị trường ổn định"

CORE_FIELDS = ("mvrv", "fear_greed", "funding_rate", "sopr", "rsi", "nupl")


@dataclass
class SignalThresholds:
    """Tunable rule thresholds."""
    buy_mvrv: float = 1.0
    buy_fear_greed: float = 20.0
    buy_funding_rate: float = 0.0
    buy_sopr_band: float = 0.1
    sell_mvrv: float = 2.0
    sell_fear_greed: float = 80.0
    sell_funding_rate: float = 0.01
    sell_rsi: float = 70.0
    hold_mvrv_range: Tuple[float, float] = (1.0, 1.5)
    hold_nupl_range: Tuple[float, float] = (0.3, 0.7)


@dataclass
class MarketSnapshot:
    """Latest validated inputs for one asset. Any field may be missing."""
    mvrv: Optional[float] = None
    fear_greed: Optional[float] = None
    funding_rate: Optional[float] = None
    sopr: Optional[float] = None
    rsi: Optional[float] = None
    nupl: Optional[float] = None
    volume_trend: Optional[str] = None
    transaction_volume: Optional[float] = None
    previous_transaction_volume: Optional[float] = None
    open_interest: Optional[float] = None
    social_sentiment: float = 0.5
    news_sentiment: float = 0.5

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MarketSnapshot':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and v is not None}
        if "fear_greed" not in values and data.get("fear_greed_index") is not None:
            values["fear_greed"] = data["fear_greed_index"]
        return cls(**values)

    def resolved_volume_trend(self) -> Optional[str]:
        if self.volume_trend:
            return self.volume_trend
        if self.transaction_volume is None:
            return None
        return classify_volume(self.transaction_volume, self.previous_transaction_volume)


def _lt(value: Optional[float], threshold: float) -> bool:
    return value is not None and value < threshold


def _gt(value: Optional[float], threshold: float) -> bool:
    return value is not None and value > threshold


def _within(value: Optional[float], bounds: Tuple[float, float]) -> bool:
    return value is not None and bounds[0] <= value <= bounds[1]


def _raise_risk(level: RiskLevel) -> RiskLevel:
    return RiskLevel.MEDIUM if level is RiskLevel.LOW else RiskLevel.HIGH


class SignalEngine:
    """
    Deterministic evaluator turning a metric snapshot into a trading signal.

    Rules are checked in order BUY, SELL, HOLD; the first rule set whose
    score clears its threshold decides the signal.
    """

    def __init__(self, thresholds: Optional[SignalThresholds] = None):
        self.thresholds = thresholds or SignalThresholds()

    def update_thresholds(self, **changes):
        """Replace individual thresholds by name."""
        current = asdict(self.thresholds)
        unknown = set(changes) - set(current)
        if unknown:
            raise ValueError(f"Unknown signal thresholds: {sorted(unknown)}")
        current.update(changes)
        self.thresholds = SignalThresholds(**current)
        logger.info(f"Updated signal thresholds: {changes}")

    def detect_extremes(self, snapshot: MarketSnapshot) -> bool:
        """True if sentiment, funding, RSI or social/news mood is at an extreme."""
        fear_greed = snapshot.fear_greed
        if fear_greed is not None and (fear_greed <= 10 or fear_greed >= 90):
            return True
        if snapshot.funding_rate is not None and abs(snapshot.funding_rate) > 0.05:
            return True
        if snapshot.rsi is not None and (snapshot.rsi >= 80 or snapshot.rsi <= 20):
            return True
        for sentiment in (snapshot.social_sentiment, snapshot.news_sentiment):
            if sentiment >= 0.9 or sentiment <= 0.1:
                return True
        return False

    def _buy_conditions(self, s: MarketSnapshot) -> List[Tuple[bool, float, str]]:
        t = self.thresholds
        return [
            (_lt(s.mvrv, t.buy_mvrv), 0.3, f"MVRV < {t.buy_mvrv:g}"),
            (_lt(s.fear_greed, t.buy_fear_greed), 0.25, f"Fear & Greed < {t.buy_fear_greed:g}"),
            (_lt(s.funding_rate, t.buy_funding_rate), 0.25, "Funding Rate âm"),
            (s.sopr is not None and abs(s.sopr - 1) < t.buy_sopr_band, 0.2, "SOPR gần 1"),
        ]

    def _sell_conditions(self, s: MarketSnapshot) -> List[Tuple[bool, float, str]]:
        t = self.thresholds
        return [
            (_gt(s.mvrv, t.sell_mvrv), 0.3, f"MVRV > {t.sell_mvrv:g}"),
            (_gt(s.fear_greed, t.sell_fear_greed), 0.25, f"Fear & Greed > {t.sell_fear_greed:g}"),
            (_gt(s.funding_rate, t.sell_funding_rate), 0.25, "Funding Rate dương cao"),
            (_gt(s.rsi, t.sell_rsi), 0.2, f"RSI > {t.sell_rsi:g}"),
        ]

    @staticmethod
    def _score(conditions: List[Tuple[bool, float, str]]) -> Tuple[float, List[str]]:
        matched = [(weight, name) for hit, weight, name in conditions if hit]
        return round(sum(weight for weight, _ in matched), 6), [name for _, name in matched]

    def evaluate(self, snapshot: Union[MarketSnapshot, Dict[str, Any]]) -> TradingSignal:
        """
        Evaluate the rule sets against a snapshot.

        Args:
            snapshot: MarketSnapshot or a dict with the same field names

        Returns:
            A freshly built TradingSignal
        """
        if isinstance(snapshot, dict):
            snapshot = MarketSnapshot.from_dict(snapshot)

        trend = snapshot.resolved_volume_trend()
        extreme = self.detect_extremes(snapshot)
        conditions = {
            "mvrv": snapshot.mvrv,
            "fear_greed": snapshot.fear_greed,
            "funding_rate": snapshot.funding_rate,
            "sopr": snapshot.sopr,
            "rsi": snapshot.rsi,
            "nupl": snapshot.nupl,
            "volume_trend": trend,
            "extreme_detected": extreme,
        }

        if all(getattr(snapshot, name) is None for name in CORE_FIELDS):
            return TradingSignal(
                signal=SignalType.HOLD,
                confidence=0,
                reasoning="Insufficient data: no validated metrics available for this asset.",
                risk_level=RiskLevel.HIGH if extreme else RiskLevel.MEDIUM,
                conditions=conditions,
                triggers=[]
            )

        buy_score, buy_triggers = self._score(self._buy_conditions(snapshot))
        sell_score, sell_triggers = self._score(self._sell_conditions(snapshot))

        t = self.thresholds
        hold_score = round(
            (0.4 if _within(snapshot.mvrv, t.hold_mvrv_range) else 0.0)
            + (0.3 if _within(snapshot.nupl, t.hold_nupl_range) else 0.0)
            + (0.2 if trend == "increasing" else 0.0)
            + (0.1 if not extreme else 0.0),
            6
        )

        if buy_score >= ACTION_THRESHOLD:
            strong = buy_score >= STRONG_THRESHOLD
            signal = SignalType.STRONG_BUY if strong else SignalType.BUY
            confidence = round(buy_score * 100)
            risk = RiskLevel.LOW if strong else RiskLevel.MEDIUM
            triggers = buy_triggers
            reasoning = (
                f"Buy signal: {', '.join(triggers)}. Valuation is low, sentiment is fearful "
                f"and derivatives positioning is negative."
            )
        elif sell_score >= ACTION_THRESHOLD:
            strong = sell_score >= STRONG_THRESHOLD
            signal = SignalType.STRONG_SELL if strong else SignalType.SELL
            confidence = round(sell_score * 100)
            risk = RiskLevel.LOW if strong else RiskLevel.MEDIUM
            triggers = sell_triggers
            reasoning = (
                f"Sell signal: {', '.join(triggers)}. Valuation is high, sentiment is greedy "
                f"and momentum is overbought."
            )
        elif hold_score >= HOLD_THRESHOLD:
            signal = SignalType.HOLD
            confidence = round(hold_score * 100)
            risk = RiskLevel.LOW
            triggers = [STABLE_MARKET_TRIGGER]
            reasoning = "Hold signal: MVRV and NUPL are stable, on-chain volume is rising."
        else:
            signal = SignalType.HOLD
            confidence = NEUTRAL_CONFIDENCE
            risk = RiskLevel.MEDIUM
            triggers = []
            reasoning = "Neutral: neither buy nor sell conditions are met. Keep monitoring."

        if extreme:
            risk = _raise_risk(risk)
            reasoning += " Extreme market conditions detected."

        return TradingSignal(
            signal=signal,
            confidence=confidence,
            reasoning=reasoning,
            risk_level=risk,
            conditions=conditions,
            triggers=triggers
        )


@dataclass
class SignalAnalysis:
    recommendation: str
    timeframe: str
    risk_factors: List[str]
    entry_points: str
    exit_points: str
    stop_loss: str
    take_profit: str


RECOMMENDATIONS = {
    SignalType.STRONG_BUY: ("Strong buy: accumulate a long-term position with high allocation",
                            "Long term (1-3 months)"),
    SignalType.BUY: ("Buy: start accumulating with moderate allocation", "Medium term (2-4 weeks)"),
    SignalType.HOLD: ("Hold: keep current positions and keep watching", "Short term (daily monitoring)"),
    SignalType.SELL: ("Sell: reduce exposure and take partial profit", "Short term (1-2 weeks)"),
    SignalType.STRONG_SELL: ("Strong sell: take full profit and move to stablecoins", "Immediately"),
}


def analyze_signal(signal: TradingSignal) -> SignalAnalysis:
    """Expand a signal into actionable guidance."""
    c = signal.conditions
    factors = []
    mvrv, fear_greed = c.get("mvrv"), c.get("fear_greed")
    funding_rate, rsi = c.get("funding_rate"), c.get("rsi")

    if mvrv is not None and mvrv > 2.5:
        factors.append("High valuation")
    if mvrv is not None and mvrv < 0.8:
        factors.append("Low valuation")
    if fear_greed is not None and fear_greed <= 15:
        factors.append("Extreme fear")
    if fear_greed is not None and fear_greed >= 85:
        factors.append("Extreme greed")
    if funding_rate is not None and abs(funding_rate) > 0.05:
        factors.append("Extreme funding rate")
    if rsi is not None and rsi >= 80:
        factors.append("Overbought")
    if rsi is not None and rsi <= 20:
        factors.append("Oversold")
    if c.get("extreme_detected"):
        factors.append("Extreme conditions detected")

    buying = signal.signal in (SignalType.BUY, SignalType.STRONG_BUY)
    selling = signal.signal in (SignalType.SELL, SignalType.STRONG_SELL)
    recommendation, timeframe = RECOMMENDATIONS[signal.signal]

    return SignalAnalysis(
        recommendation=recommendation,
        timeframe=timeframe,
        risk_factors=factors,
        entry_points=(
            f"Scale in while MVRV < {mvrv:.2f} and Fear & Greed < {fear_greed:g}"
            if buying and mvrv is not None and fear_greed is not None
            else "No entry recommended"
        ),
        exit_points=(
            f"Take profit while MVRV > {mvrv:.2f} and Fear & Greed > {fear_greed:g}"
            if selling and mvrv is not None and fear_greed is not None
            else "No exit recommended"
        ),
        stop_loss="Technical support or -15% from entry" if buying else "Not applicable",
        take_profit="Technical resistance or +25% from entry" if buying else "Not applicable",
    )


class SignalService:
    """
    Produces signals and attaches narrative analysis when it is available.

    The narrative call has its own timeout; any failure leaves the rule-only
    signal in place.
    """

    def __init__(
        self,
        engine: Optional[SignalEngine] = None,
        narrative: Optional[NarrativeProvider] = None,
        narrative_timeout: float = 20.0
    ):
        self.engine = engine or SignalEngine()
        self.narrative = narrative
        self.narrative_timeout = narrative_timeout
        self.narrative_failures = 0

    async def generate(self, asset_id: str, snapshot: MarketSnapshot) -> TradingSignal:
        signal = self.engine.evaluate(snapshot)
        if self.narrative is None:
            return signal

        context = {
            "asset_id": asset_id,
            "snapshot": dict(asdict(snapshot), volume_trend=signal.conditions.get("volume_trend")),
            "rule_signal": signal.signal.value,
            "rule_confidence": signal.confidence,
            "triggers": signal.triggers,
        }
        try:
            signal.narrative = await asyncio.wait_for(
                self.narrative.analyze(context), timeout=self.narrative_timeout
            )
        except asyncio.TimeoutError:
            self.narrative_failures += 1
            logger.warning(f"Narrative analysis timed out for {asset_id}, using rule-only signal")
        except NarrativeError as e:
            self.narrative_failures += 1
            logger.warning(f"Narrative analysis failed for {asset_id}: {str(e)}")
        except Exception as e:
            self.narrative_failures += 1
            logger.error(f"Unexpected narrative error for {asset_id}: {type(e).__name__}: {str(e)}")
        return signal
