"""
Shared contract for external metric providers.

This module handles:
- API session management
- Cache, quota and network ordering for every metric request
- Retries with exponential backoff
- Estimate fallback and provenance tagging
- Batch collection over tracked assets
"""

import asyncio
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from ..cache_manager import CacheManager, make_cache_key
from ..config import Config
from ..exceptions import ProviderError, RateLimitedError, SchemaError
from ..models import (
    Asset, DataSource, MetricKind, MetricSnapshot, Provenance, ProviderResult,
    ValidationResult,
)
from ..monitoring.metrics import MetricsCollector
from ..rate_limiter import QuotaGovernor, get_governor
from ..utils import retry
from ..validators import ValidationGate

logger = logging.getLogger(__name__)

HOUR = 60 * 60

Fundamentals = Dict[str, Any]


@dataclass
class MetricSpec:
    """Endpoint and cache lifetime of one provider metric."""
    endpoint: str
    ttl: float
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CollectedSnapshot:
    """A snapshot together with the verdict of the validation gate."""
    snapshot: MetricSnapshot
    validation: ValidationResult


@dataclass
class CollectionReport:
    """Outcome of one ``collect_all`` pass."""
    provider: str
    results: Dict[str, CollectedSnapshot] = field(default_factory=dict)
    live: int = 0
    cached: int = 0
    estimated: int = 0
    rate_limited: int = 0
    errors: int = 0
    failed_assets: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "assets": len(self.results),
            "live": self.live,
            "cached": self.cached,
            "estimated": self.estimated,
            "rate_limited": self.rate_limited,
            "errors": self.errors,
            "failed_assets": list(self.failed_assets),
        }


class MetricProvider(ABC):
    """
    Base class for one external data source.

    Every request goes cache first, then quota, then network. Throttling is
    reported as a rate-limited result and never retried within a pass.

    Features:
    - Shared aiohttp session per provider instance
    - Provider-specific TTLs per metric
    - Quality scoring of live snapshots
    - Estimate fallback with a lower quality score
    """

    PROVIDER_ID = ""
    KIND = MetricKind.ONCHAIN
    METRICS: Dict[str, MetricSpec] = {}
    ESTIMATE_QUALITY = 60.0

    def __init__(
        self,
        config: Config,
        governor: Optional[QuotaGovernor] = None,
        cache: Optional[CacheManager] = None,
        validator: Optional[ValidationGate] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config
        self.provider_config = config.provider(self.PROVIDER_ID)
        self.governor = governor or get_governor(config)
        self.cache = cache or CacheManager.from_config(config, metrics)
        self.validator = validator or ValidationGate(config, metrics)
        self.metrics = metrics

        self.governor.register(
            self.PROVIDER_ID,
            self.provider_config.day_limit,
            self.provider_config.minute_limit
        )

        # Session management
        self.session = None
        self.session_lock = asyncio.Lock()

        # Performance tracking
        self.request_count = 0
        self.error_count = 0
        self.quality_scores: Dict[str, float] = {}

        if self.estimate_only:
            logger.warning(f"{self.PROVIDER_ID} has no API key, running in estimate-only mode")
        logger.info(f"Initialized {type(self).__name__}")

    @property
    def estimate_only(self) -> bool:
        return not self.provider_config.enabled or self.provider_config.estimate_only

    async def get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session with proper configuration."""
        async with self.session_lock:
            if self.session is None or self.session.closed:
                connector = aiohttp.TCPConnector(limit=10, ttl_dns_cache=300)
                timeout = aiohttp.ClientTimeout(total=self.provider_config.timeout)
                self.session = aiohttp.ClientSession(
                    connector=connector,
                    timeout=timeout,
                    headers=self._headers()
                )
                logger.debug(f"Created new aiohttp session for {self.PROVIDER_ID}")
            return self.session

    async def close(self):
        """Close the aiohttp session and cleanup resources."""
        async with self.session_lock:
            if self.session and not self.session.closed:
                await self.session.close()
                self.session = None
                logger.debug(f"Closed aiohttp session for {self.PROVIDER_ID}")

    def _headers(self) -> Dict[str, str]:
        if self.provider_config.api_key:
            return {"Authorization": f"Bearer {self.provider_config.api_key}"}
        return {}

    def _auth_params(self) -> Dict[str, Any]:
        return {}

    async def _fetch_json(self, endpoint: str, params: Dict[str, Any]) -> Any:
        """
        Issue one HTTP GET and decode the JSON body.

        Args:
            endpoint: Path relative to the provider base URL
            params: Query parameters

        Returns:
            Decoded JSON body

        Raises:
            ProviderError: network failure, timeout, HTTP error or bad JSON
        """
        session = await self.get_session()
        url = f"{self.provider_config.base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        try:
            async with session.get(url, params={**self._auth_params(), **params}) as response:
                if response.status == 429:
                    raise ProviderError(self.PROVIDER_ID, "Upstream rate limit (HTTP 429)", 429)
                if response.status >= 400:
                    raise ProviderError(
                        self.PROVIDER_ID, f"HTTP {response.status} for {endpoint}", response.status
                    )
                return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ProviderError(self.PROVIDER_ID, f"Timeout calling {endpoint}") from e
        except aiohttp.ClientError as e:
            raise ProviderError(self.PROVIDER_ID, f"Request to {endpoint} failed: {str(e)}") from e
        except ValueError as e:
            raise ProviderError(self.PROVIDER_ID, f"Invalid JSON from {endpoint}") from e

    async def _request(self, endpoint: str, params: Dict[str, Any], priority: int = 1) -> Any:
        """Quota-checked network call with retries. Quota is spent per attempt."""
        rate_limit = self.config.rate_limit

        @retry(
            max_attempts=rate_limit.retry_attempts,
            delay=rate_limit.retry_base_delay,
            backoff_factor=2.0,
            exceptions=(ProviderError,),
            giveup=(RateLimitedError, SchemaError)
        )
        async def attempt():
            if not self.governor.try_acquire(self.PROVIDER_ID, priority):
                raise RateLimitedError(self.PROVIDER_ID)

            start_time = time.time()
            self.request_count += 1
            try:
                data = await self._fetch_json(endpoint, params)
            except ProviderError:
                self.error_count += 1
                if self.metrics:
                    self.metrics.record_provider_call(
                        self.PROVIDER_ID, endpoint, time.time() - start_time, False
                    )
                raise

            if self.metrics:
                self.metrics.record_provider_call(
                    self.PROVIDER_ID, endpoint, time.time() - start_time, True
                )
            return data

        return await attempt()

    def supports(self, asset: Asset) -> bool:
        """Whether the provider has live data for this asset."""
        return True

    def params_for(self, asset: Asset, metric: str, window_days: int) -> Tuple[str, Dict[str, Any]]:
        """Endpoint and query parameters for one metric request."""
        spec = self.METRICS[metric]
        return spec.endpoint, dict(spec.params)

    def parse_metric(self, metric: str, raw: Any, asset: Asset) -> Any:
        """Map a raw response onto this provider's schema. Raises SchemaError."""
        return raw

    async def get_metric(
        self,
        asset: Asset,
        metric: str,
        window_days: int = 30,
        priority: int = 1
    ) -> ProviderResult:
        """
        Get one metric for one asset.

        Args:
            asset: Tracked asset
            metric: Metric name from ``METRICS``
            window_days: Lookback window in days
            priority: Job priority passed to the quota governor

        Returns:
            ProviderResult; rate limiting and upstream faults are distinct statuses
        """
        if metric not in self.METRICS:
            return ProviderResult.failed(f"Unknown {self.PROVIDER_ID} metric: {metric}")
        if self.estimate_only:
            return ProviderResult.unavailable(f"{self.PROVIDER_ID} is in estimate-only mode")
        if not self.supports(asset):
            return ProviderResult.unavailable(f"{self.PROVIDER_ID} does not cover {asset.symbol}")

        key = make_cache_key(self.PROVIDER_ID, metric, asset.symbol, window_days)
        endpoint, params = self.params_for(asset, metric, window_days)

        async def fetch():
            raw = await self._request(endpoint, params, priority)
            return self.parse_metric(metric, raw, asset)

        try:
            data, cached = await self.cache.get_or_fetch(key, self.METRICS[metric].ttl, fetch)
        except RateLimitedError:
            return ProviderResult.throttled(self.PROVIDER_ID)
        except ProviderError as e:
            if self.metrics:
                self.metrics.record_error(self.PROVIDER_ID, type(e).__name__)
            logger.error(f"{self.PROVIDER_ID} {metric} for {asset.symbol} failed: {str(e)}")
            return ProviderResult.failed(str(e), self.remaining_quota())

        return ProviderResult.ok(data, cached=cached, remaining_quota=self.remaining_quota())

    async def _gather_metrics(
        self,
        asset: Asset,
        names: List[str],
        priority: int
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Fetch several metrics, keeping the ones that succeeded.

        Stops at the first throttled metric.

        Returns:
            (values by metric name, all-from-cache flag)

        Raises:
            RateLimitedError: every metric was throttled
            ProviderError: nothing succeeded
        """
        results = {}
        for name in names:
            results[name] = await self.get_metric(asset, name, priority=priority)
            if results[name].rate_limited:
                # The rest of this asset waits for the next tick
                break

        values = {
            name: result.data for name, result in results.items()
            if result.success and result.data is not None
        }
        if not values:
            if all(result.rate_limited for result in results.values()):
                raise RateLimitedError(self.PROVIDER_ID)
            errors = "; ".join(r.error for r in results.values() if r.error)
            raise ProviderError(self.PROVIDER_ID, errors or "no metrics returned")

        all_cached = all(results[name].cached for name in values)
        return values, all_cached

    @abstractmethod
    async def fetch_snapshot(self, asset: Asset, priority: int = 1) -> MetricSnapshot:
        """Live (or cached) snapshot for one asset. Raises on total failure."""

    @abstractmethod
    def estimate(self, asset: Asset, fundamentals: Fundamentals) -> MetricSnapshot:
        """Best-effort snapshot derived from known market cap and price."""

    def _estimated(self, asset: Asset, metrics: Dict[str, Any]) -> MetricSnapshot:
        if self.metrics:
            self.metrics.record_estimate(self.PROVIDER_ID)
        return MetricSnapshot(
            provider=self.PROVIDER_ID,
            asset_id=asset.external_id,
            metrics=metrics,
            quality_score=self.ESTIMATE_QUALITY,
            provenance=Provenance.ESTIMATED
        )

    def _validate(self, snapshot: MetricSnapshot) -> ValidationResult:
        source = DataSource.FALLBACK if snapshot.is_estimated else DataSource.API
        return self.validator.validate(
            self.KIND, snapshot.to_payload(), source=source, asset_id=snapshot.asset_id
        )

    async def collect(
        self,
        asset: Asset,
        fundamentals: Optional[Fundamentals] = None,
        priority: int = 1
    ) -> Tuple[CollectedSnapshot, Optional[str]]:
        """
        Collect one asset, falling back to ``estimate`` on failure or rejection.

        Returns:
            (collected snapshot, failure kind) where failure kind is None,
            "rate_limited" or "error"
        """
        fundamentals = fundamentals or {}
        failure = None

        if not self.estimate_only and self.supports(asset):
            try:
                snapshot = await self.fetch_snapshot(asset, priority)
            except RateLimitedError:
                failure = "rate_limited"
                logger.warning(f"{self.PROVIDER_ID} throttled for {asset.symbol}, using estimate")
            except ProviderError as e:
                failure = "error"
                logger.warning(f"{self.PROVIDER_ID} failed for {asset.symbol}, using estimate: {str(e)}")
            else:
                self.quality_scores[asset.external_id] = snapshot.quality_score
                validation = self._validate(snapshot)
                if validation.is_valid:
                    return CollectedSnapshot(snapshot, validation), None
                logger.warning(
                    f"{self.PROVIDER_ID} data for {asset.symbol} rejected ({validation.error}), "
                    f"using estimate"
                )

        snapshot = self.estimate(asset, fundamentals)
        return CollectedSnapshot(snapshot, self._validate(snapshot)), failure

    async def collect_all(
        self,
        assets: List[Asset],
        fundamentals_lookup: Optional[Callable[[Asset], Fundamentals]] = None,
        priority: int = 1
    ) -> CollectionReport:
        """
        Collect every tracked asset; one asset's failure never aborts the batch.

        Args:
            assets: Tracked assets, already bounded by the caller
            fundamentals_lookup: Known market cap and price per asset for estimates
            priority: Job priority passed to the quota governor

        Returns:
            CollectionReport with per-asset results and provenance counts
        """
        report = CollectionReport(provider=self.PROVIDER_ID)
        semaphore = asyncio.Semaphore(self.config.rate_limit.max_asset_concurrency)

        async def run(asset: Asset):
            async with semaphore:
                fundamentals = fundamentals_lookup(asset) if fundamentals_lookup else {}
                return await self.collect(asset, fundamentals, priority)

        outcomes = await asyncio.gather(*(run(asset) for asset in assets), return_exceptions=True)

        for asset, outcome in zip(assets, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                report.errors += 1
                report.failed_assets.append(asset.external_id)
                logger.error(f"{self.PROVIDER_ID} collection failed for {asset.symbol}: {str(outcome)}")
                continue

            collected, failure = outcome
            report.results[asset.external_id] = collected
            provenance = collected.snapshot.provenance
            if provenance is Provenance.ESTIMATED:
                report.estimated += 1
            elif provenance is Provenance.CACHED:
                report.cached += 1
            else:
                report.live += 1
            if failure == "rate_limited":
                report.rate_limited += 1
            elif failure == "error":
                report.errors += 1

        logger.info(
            f"{self.PROVIDER_ID} collected {len(report.results)}/{len(assets)} assets "
            f"({report.live} live, {report.cached} cached, {report.estimated} estimated)"
        )
        return report

    def remaining_quota(self) -> int:
        return self.governor.remaining_quota(self.PROVIDER_ID)

    def get_stats(self) -> Dict[str, Any]:
        """Provider usage and data quality statistics."""
        return {
            "provider": self.PROVIDER_ID,
            "estimate_only": self.estimate_only,
            "remaining_quota": self.remaining_quota(),
            "cache_size": self.cache.size(),
            "request_count": self.request_count,
            "error_count": self.error_count,
            "quality_scores": dict(self.quality_scores),
        }


def coverage_quality(
    values: Dict[str, Any],
    penalties: Dict[str, float],
    expected_points: Optional[int] = None
) -> float:
    """
    Score a live snapshot: 100 minus the penalty of every missing field,
    optionally scaled by how many of the expected data points arrived.
    """
    score = 100.0
    for name, penalty in penalties.items():
        if values.get(name) is None:
            score -= penalty
    if expected_points:
        present = sum(1 for name in penalties if values.get(name) is not None)
        score *= present / expected_points
    return max(0.0, min(100.0, score))


def snapshot_provenance(all_cached: bool) -> Provenance:
    return Provenance.CACHED if all_cached else Provenance.LIVE
