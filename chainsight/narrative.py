"""
Narrative market analysis from a language model.

This module handles:
- The narrative provider contract
- Prompt construction from a metric snapshot
- Chat-completions calls over aiohttp
- Parsing replies into structured or free-text narratives
"""

import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import aiohttp

from .config import Config
from .exceptions import NarrativeError, NarrativeUnavailableError
from .rate_limiter import QuotaGovernor
from .utils import retry

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert cryptocurrency analyst providing professional trading advice. "
    "Always be specific, data-driven, and risk-aware."
)

RECOMMENDATIONS = ("STRONG_BUY", "BUY", "HOLD", "SELL", "STRONG_SELL")

FENCE_PATTERN = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


@dataclass
class StructuredNarrative:
    """Reply that matched the requested JSON structure."""
    recommendation: str
    confidence: int
    reasoning: str
    risk_factors: List[str] = field(default_factory=list)


@dataclass
class UnstructuredNarrative:
    """Free-text reply kept verbatim."""
    raw_text: str

    @property
    def recommendation(self) -> str:
        """Best-effort keyword reading of the free text."""
        text = self.raw_text.lower()
        if any(word in text for word in ("buy", "accumulat", "mua")):
            return "BUY"
        if any(word in text for word in ("sell", "take profit", "bán")):
            return "SELL"
        return "HOLD"


Narrative = Union[StructuredNarrative, UnstructuredNarrative]


def _fmt(value: Any, spec: str = ".2f") -> str:
    if value is None:
        return "N/A"
    try:
        return format(value, spec)
    except (TypeError, ValueError):
        return str(value)


def build_prompt(context: Dict[str, Any]) -> str:
    """
    Build the analysis prompt for one asset.

    Args:
        context: asset_id, snapshot values, the rule signal and its triggers

    Returns:
        Prompt text
    """
    s = context.get("snapshot", {})
    triggers = ", ".join(context.get("triggers") or []) or "none"
    return (
        f"Analyze the following market data for {context.get('asset_id')} "
        f"and provide a trading recommendation.\n\n"
        f"On-chain metrics:\n"
        f"- MVRV ratio: {_fmt(s.get('mvrv'))}\n"
        f"- NUPL: {_fmt(s.get('nupl'))}\n"
        f"- SOPR: {_fmt(s.get('sopr'))}\n"
        f"- Transaction volume trend: {s.get('volume_trend') or 'N/A'}\n\n"
        f"Technical:\n"
        f"- RSI: {_fmt(s.get('rsi'), '.1f')}\n\n"
        f"Sentiment:\n"
        f"- Fear & Greed index: {_fmt(s.get('fear_greed'), '.0f')}\n"
        f"- Social sentiment: {_fmt(s.get('social_sentiment'))}\n"
        f"- News sentiment: {_fmt(s.get('news_sentiment'))}\n\n"
        f"Derivatives:\n"
        f"- Funding rate: {_fmt(s.get('funding_rate'), '.4%')}\n"
        f"- Open interest: {_fmt(s.get('open_interest'), ',.0f')}\n\n"
        f"Current rule-based signal: {context.get('rule_signal')} "
        f"({context.get('rule_confidence')}% confidence), triggers: {triggers}\n\n"
        f"Reply with a JSON object with the keys recommendation "
        f"(one of {', '.join(RECOMMENDATIONS)}), confidence (0-100), reasoning "
        f"and risk_factors (a list of strings)."
    )


def parse_reply(text: str) -> Narrative:
    """Parse a model reply, falling back to free text when it is not the expected JSON."""
    candidate = text.strip()
    fenced = FENCE_PATTERN.search(candidate)
    if fenced:
        candidate = fenced.group(1)

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return UnstructuredNarrative(raw_text=text)

    if not isinstance(data, dict):
        return UnstructuredNarrative(raw_text=text)

    recommendation = str(data.get("recommendation", "")).upper().replace(" ", "_")
    if recommendation not in RECOMMENDATIONS:
        return UnstructuredNarrative(raw_text=text)

    try:
        confidence = int(round(float(data.get("confidence", 50))))
    except (TypeError, ValueError):
        confidence = 50

    risk_factors = data.get("risk_factors") or []
    if not isinstance(risk_factors, list):
        risk_factors = [str(risk_factors)]

    return StructuredNarrative(
        recommendation=recommendation,
        confidence=max(0, min(100, confidence)),
        reasoning=str(data.get("reasoning", "")),
        risk_factors=[str(factor) for factor in risk_factors]
    )


class NarrativeProvider(ABC):
    """Produces a narrative analysis for an analysis context."""

    @abstractmethod
    async def analyze(self, context: Dict[str, Any]) -> Narrative:
        ...

    async def close(self):
        return None


class LLMNarrativeProvider(NarrativeProvider):
    """
    Narrative provider backed by an OpenAI-compatible chat completions API.

    Features:
    - Shared aiohttp session
    - Quota governed through the ``narrative`` provider budget
    - Structured JSON replies with free-text fallback
    """

    PROVIDER_ID = "narrative"

    def __init__(self, config: Config, governor: Optional[QuotaGovernor] = None):
        self.config = config
        self.provider_config = config.provider(self.PROVIDER_ID)
        self.model = config.narrative_model
        self.governor = governor

        self.session = None
        self.session_lock = asyncio.Lock()

        self.request_count = 0
        self.error_count = 0

        logger.info(f"Initialized LLMNarrativeProvider with model {self.model}")

    @property
    def available(self) -> bool:
        return self.provider_config.enabled and bool(self.provider_config.api_key)

    async def get_session(self) -> aiohttp.ClientSession:
        async with self.session_lock:
            if self.session is None or self.session.closed:
                timeout = aiohttp.ClientTimeout(total=self.provider_config.timeout)
                headers = {
                    "Authorization": f"Bearer {self.provider_config.api_key}",
                    "Content-Type": "application/json",
                }
                self.session = aiohttp.ClientSession(timeout=timeout, headers=headers)
            return self.session

    async def close(self):
        async with self.session_lock:
            if self.session and not self.session.closed:
                await self.session.close()
                self.session = None

    async def _complete(self, prompt: str) -> str:
        """Single chat completion call returning the reply text."""
        session = await self.get_session()
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.7,
            "max_tokens": 1000,
        }
        url = f"{self.provider_config.base_url.rstrip('/')}/chat/completions"

        try:
            async with session.post(url, json=body) as response:
                if response.status >= 500:
                    raise NarrativeUnavailableError(f"Narrative API returned HTTP {response.status}")
                if response.status != 200:
                    raise NarrativeError(f"Narrative API returned HTTP {response.status}")
                data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise NarrativeUnavailableError("Narrative request timed out") from e
        except aiohttp.ClientError as e:
            raise NarrativeUnavailableError(f"Narrative request failed: {str(e)}") from e
        except ValueError as e:
            raise NarrativeError("Narrative reply is not valid JSON") from e

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise NarrativeError("Narrative reply has no message content") from e

    async def analyze(self, context: Dict[str, Any]) -> Narrative:
        """
        Ask the model for an analysis of one asset.

        Args:
            context: Analysis context built by the signal service

        Returns:
            StructuredNarrative or UnstructuredNarrative

        Raises:
            NarrativeError: provider disabled, throttled or failed
        """
        if not self.available:
            raise NarrativeError("Narrative provider is not configured")

        prompt = build_prompt(context)
        rate_limit = self.config.rate_limit

        # Transport faults and 5xx replies are retried; quota is spent per attempt
        @retry(
            max_attempts=rate_limit.retry_attempts,
            delay=rate_limit.retry_base_delay,
            backoff_factor=2.0,
            exceptions=(NarrativeUnavailableError,)
        )
        async def attempt() -> str:
            if self.governor and not self.governor.try_acquire(self.PROVIDER_ID, priority=5):
                raise NarrativeError("Narrative provider quota exhausted")

            self.request_count += 1
            try:
                return await self._complete(prompt)
            except NarrativeError:
                self.error_count += 1
                raise

        start_time = time.time()
        text = await attempt()

        narrative = parse_reply(text)
        logger.debug(
            f"Narrative for {context.get('asset_id')} in {time.time() - start_time:.2f}s "
            f"({type(narrative).__name__})"
        )
        return narrative
