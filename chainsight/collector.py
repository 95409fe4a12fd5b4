"""
Collection orchestrator.

This module handles:
- Lifecycle of the collection pipeline (start, stop, reconfigure)
- One periodic job per metric category
- Persisting validated snapshots with provenance
- Technical indicators and volume trends from stored price history
- Anomaly detection and signal generation over stored snapshots
- Status, health and data quality reporting
"""

import asyncio
import time
import logging
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from .anomaly import TRACKED_FIELDS, AnomalyDetector
from .cache_manager import CacheManager
from .config import CATEGORIES, DEFAULT_PRIORITIES, Config
from .exceptions import StorageUnavailableError
from .indicators import compute_indicators, volume_trend
from .models import Asset, DataSource, MetricKind, Provenance, TradingSignal
from .monitoring.alerts import AlertManager
from .monitoring.metrics import MetricsCollector
from .narrative import LLMNarrativeProvider, NarrativeProvider
from .providers import (
    MARKET_ASSET, AlternativeMeProvider, ArtemisProvider, BinanceFuturesProvider,
    CoinGeckoProvider, CollectedSnapshot, CollectionReport, GlassnodeProvider,
    MetricProvider, TokenTerminalProvider,
)
from .rate_limiter import QuotaGovernor, get_governor
from .scheduler import PeriodicJob, Scheduler
from .signals import MarketSnapshot, SignalService
from .storage import (
    DEFAULT_ASSETS, AssetRegistry, InMemoryAssetRegistry, InMemoryMetricStore, MetricStore,
    StoredRecord, records_to_frame,
)
from .validators import ValidationGate, assess_data_quality

logger = logging.getLogger(__name__)

# Category served by each external provider
CATEGORY_PROVIDERS = {
    "price": CoinGeckoProvider.PROVIDER_ID,
    "onchain": GlassnodeProvider.PROVIDER_ID,
    "sentiment": AlternativeMeProvider.PROVIDER_ID,
    "derivatives": BinanceFuturesProvider.PROVIDER_ID,
    "token_terminal": TokenTerminalProvider.PROVIDER_ID,
    "artemis": ArtemisProvider.PROVIDER_ID,
}

PROVIDER_CLASSES = [
    CoinGeckoProvider,
    GlassnodeProvider,
    AlternativeMeProvider,
    BinanceFuturesProvider,
    TokenTerminalProvider,
    ArtemisProvider,
]

# Categories that read what the collection categories stored
DERIVED_CATEGORIES = ("anomaly", "signal")

PRICE_HISTORY_WINDOW = timedelta(days=30)
VOLUME_WINDOW = timedelta(days=2)
QUALITY_HISTORY_WINDOW = timedelta(days=7)
LOW_QUOTA = 10

CACHE_CLEANUP_JOB = "cache_cleanup"


@dataclass
class CollectionStats:
    """Counters per collection category."""
    total_collections: int = 0
    failed_collections: int = 0
    last_collection: Dict[str, Optional[datetime]] = field(
        default_factory=lambda: {category: None for category in CATEGORIES}
    )
    runs: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, int] = field(default_factory=dict)
    reports: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if self.total_collections == 0:
            return 1.0
        return (self.total_collections - self.failed_collections) / self.total_collections

    def record(self, category: str, success: bool, when: datetime):
        self.total_collections += 1
        self.runs[category] = self.runs.get(category, 0) + 1
        if success:
            self.last_collection[category] = when
        else:
            self.failed_collections += 1
            self.failures[category] = self.failures.get(category, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_collections": self.total_collections,
            "failed_collections": self.failed_collections,
            "success_rate": self.success_rate,
            "last_collection": {
                category: stamp.isoformat() if stamp else None
                for category, stamp in self.last_collection.items()
            },
            "runs": dict(self.runs),
            "failures": dict(self.failures),
            "reports": dict(self.reports),
        }


class CollectionOrchestrator:
    """
    Drives periodic collection for every tracked asset.

    Each category runs as its own scheduler job. Provider and validation
    failures are recovered inside the providers; a category run only counts
    as failed when its handler raises.

    Features:
    - Idempotent start with default asset seeding and one full pass
    - Graceful stop that lets in-flight runs finish
    - Live enable, disable and interval changes per category
    - Derived health score and per-asset data quality
    - Alert rules evaluated after every run
    """

    def __init__(
        self,
        config: Config,
        store: MetricStore,
        registry: AssetRegistry,
        providers: Dict[str, MetricProvider],
        validator: ValidationGate,
        detector: AnomalyDetector,
        signal_service: SignalService,
        scheduler: Optional[Scheduler] = None,
        alerts: Optional[AlertManager] = None,
        metrics: Optional[MetricsCollector] = None,
        cache: Optional[CacheManager] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.config = config
        self.store = store
        self.registry = registry
        self.providers = providers
        self.validator = validator
        self.detector = detector
        self.signal_service = signal_service
        self.scheduler = scheduler or Scheduler(config.rate_limit.max_concurrent_jobs)
        self.alerts = alerts
        self.metrics = metrics
        self.cache = cache
        self.clock = clock

        self.stats = CollectionStats()
        self.is_running = False
        self._start_lock = asyncio.Lock()
        # Newest record timestamp already fed to the detector, per (asset, category)
        self._anomaly_marks: Dict[tuple, datetime] = {}

        self._handlers = {
            "price": partial(self._collect_provider, "price"),
            "technical": self._collect_technical,
            "onchain": partial(self._collect_provider, "onchain"),
            "sentiment": self._collect_sentiment,
            "derivatives": partial(self._collect_provider, "derivatives"),
            "volume": self._collect_volume,
            "token_terminal": partial(self._collect_provider, "token_terminal"),
            "artemis": partial(self._collect_provider, "artemis"),
            "anomaly": self._run_anomaly_detection,
            "signal": self._run_signal_generation,
        }

        logger.info("Initialized CollectionOrchestrator")

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: Optional[MetricStore] = None,
        registry: Optional[AssetRegistry] = None,
        governor: Optional[QuotaGovernor] = None,
        narrative: Optional[NarrativeProvider] = None
    ) -> 'CollectionOrchestrator':
        """Wire every service from one configuration."""
        metrics = MetricsCollector(config.monitoring.metrics_interval)
        governor = governor or get_governor(config)
        cache = CacheManager.from_config(config, metrics)
        validator = ValidationGate(config, metrics)

        providers = {
            provider_class.PROVIDER_ID: provider_class(config, governor, cache, validator, metrics)
            for provider_class in PROVIDER_CLASSES
        }

        if narrative is None and config.provider("narrative").api_key:
            narrative = LLMNarrativeProvider(config, governor)

        return cls(
            config=config,
            store=store or InMemoryMetricStore(),
            registry=registry or InMemoryAssetRegistry(),
            providers=providers,
            validator=validator,
            detector=AnomalyDetector(metrics=metrics),
            signal_service=SignalService(
                narrative=narrative,
                narrative_timeout=config.collection.narrative_timeout
            ),
            alerts=AlertManager(config.monitoring),
            metrics=metrics,
            cache=cache
        )

    async def start(self):
        """
        Start collection.

        Seeds the default assets into an empty registry, arms one job per
        enabled category and runs one full pass before returning. Calling
        start on a running orchestrator does nothing.

        Raises:
            StorageUnavailableError: the metric store cannot be reached
        """
        async with self._start_lock:
            if self.is_running:
                logger.info("Collection orchestrator already running")
                return

            try:
                await self.store.ping()
            except StorageUnavailableError as e:
                logger.critical(f"Metric store unavailable, not starting: {str(e)}")
                raise

            if not await self.registry.list_assets():
                for asset in DEFAULT_ASSETS:
                    await self.registry.add(asset)
                logger.info(f"Seeded {len(DEFAULT_ASSETS)} default assets")

            assets = await self._tracked_assets()
            await self.detector.seed_from_store(self.store, [a.external_id for a in assets])

            for category in CATEGORIES:
                if self._job_enabled(category) and category not in self.scheduler.jobs:
                    self.scheduler.add_job(self._job_for(category))
            if self.cache is not None and CACHE_CLEANUP_JOB not in self.scheduler.jobs:
                self.scheduler.add_job(PeriodicJob(
                    CACHE_CLEANUP_JOB,
                    self.config.cache.cleanup_interval_minutes * 60,
                    self.cache.cleanup_expired,
                    priority=5
                ))

            if self.metrics and self.config.monitoring.enable_metrics:
                self.metrics.start_export_timer()

            self.is_running = True
            logger.info("Collection orchestrator started, running initial collection")

            await self.collect_all()
            self.scheduler.start()

    async def stop(self):
        """Disarm every job, wait for running iterations and close provider sessions."""
        if not self.is_running:
            return

        await self.scheduler.stop()
        for provider in self.providers.values():
            await provider.close()
        if self.signal_service.narrative is not None:
            await self.signal_service.narrative.close()
        if self.metrics is not None:
            self.metrics.stop_export_timer()

        self.is_running = False
        logger.info("Collection orchestrator stopped")

    async def collect_all(self):
        """One full pass: collection categories concurrently, then anomaly and signal."""
        enabled = [c for c in CATEGORIES if self._job_enabled(c) and c in self.scheduler.jobs]
        collection = [c for c in enabled if c not in DERIVED_CATEGORIES]
        derived = [c for c in enabled if c in DERIVED_CATEGORIES]

        await asyncio.gather(*(self.scheduler.run_now(category) for category in collection))
        for category in derived:
            await self.scheduler.run_now(category)

        logger.info(
            f"Full collection pass finished: {self.stats.total_collections} total, "
            f"{self.stats.failed_collections} failed"
        )

    async def reconfigure(
        self,
        category: str,
        enabled: Optional[bool] = None,
        interval_minutes: Optional[int] = None
    ):
        """
        Change one category's schedule.

        Args:
            category: Collection category
            enabled: Enable or disable the category
            interval_minutes: New interval in minutes
        """
        if category not in CATEGORIES:
            raise ValueError(f"Unknown collection category: {category}")
        if interval_minutes is not None and interval_minutes <= 0:
            raise ValueError(f"Interval for {category} must be positive")

        job_config = self.config.collection.jobs[category]
        if enabled is not None:
            job_config.enabled = enabled
        if interval_minutes is not None:
            job_config.interval_minutes = interval_minutes

        scheduled = category in self.scheduler.jobs
        if not job_config.enabled and scheduled:
            await self.scheduler.remove_job(category)
        elif job_config.enabled and not scheduled and self.is_running:
            self.scheduler.add_job(self._job_for(category))
        elif job_config.enabled and scheduled and interval_minutes is not None:
            await self.scheduler.reschedule(category, interval_minutes * 60)

        logger.info(
            f"Reconfigured {category}: enabled={job_config.enabled}, "
            f"interval={job_config.interval_minutes}m"
        )

    def _job_enabled(self, category: str) -> bool:
        job_config = self.config.collection.jobs.get(category)
        return bool(job_config and job_config.enabled)

    def _job_for(self, category: str) -> PeriodicJob:
        return PeriodicJob(
            name=category,
            interval_seconds=self.config.collection.jobs[category].interval_minutes * 60,
            action=partial(self._run_category, category),
            priority=DEFAULT_PRIORITIES[category]
        )

    async def _run_category(self, category: str):
        """Run one category iteration and record it in the stats."""
        start_time = time.time()
        success = False
        try:
            await self._handlers[category]()
            success = True
        finally:
            self.stats.record(category, success, self.clock())
            if self.metrics:
                self.metrics.record_collection(category, time.time() - start_time, success)
            if self.alerts is not None:
                self.alerts.evaluate_rules(await self.get_status())

    async def _tracked_assets(self) -> List[Asset]:
        return await self.registry.list_assets(limit=self.config.collection.tracked_asset_limit)

    async def _fundamentals(self, assets: List[Asset]) -> Dict[str, Dict[str, Any]]:
        """Latest stored price record per asset, used by provider estimates."""
        fundamentals = {}
        for asset in assets:
            record = await self.store.query_latest("price", asset.external_id)
            fundamentals[asset.external_id] = record.values if record else {}
        return fundamentals

    async def _collect_provider(self, category: str) -> CollectionReport:
        provider = self.providers[CATEGORY_PROVIDERS[category]]
        assets = await self._tracked_assets()
        fundamentals = await self._fundamentals(assets)

        report = await provider.collect_all(
            assets,
            lambda asset: fundamentals.get(asset.external_id, {}),
            DEFAULT_PRIORITIES[category]
        )
        for asset_id, collected in report.results.items():
            await self._ingest(category, asset_id, collected)

        self.stats.reports[category] = report.to_dict()
        return report

    async def _collect_sentiment(self) -> CollectionReport:
        provider = self.providers[CATEGORY_PROVIDERS["sentiment"]]
        report = await provider.collect_all([MARKET_ASSET], priority=DEFAULT_PRIORITIES["sentiment"])
        for asset_id, collected in report.results.items():
            await self._ingest("sentiment", asset_id, collected)

        self.stats.reports["sentiment"] = report.to_dict()
        return report

    async def _ingest(
        self,
        category: str,
        asset_id: str,
        collected: CollectedSnapshot
    ) -> Optional[StoredRecord]:
        """Persist an accepted snapshot; rejected payloads are never stored."""
        validation = collected.validation
        snapshot = collected.snapshot
        if not validation.is_valid:
            logger.warning(f"Discarding {category} data for {asset_id}: {validation.error}")
            return None

        value = dict(
            validation.value,
            provider=snapshot.provider,
            provenance=snapshot.provenance.value,
            quality_score=snapshot.quality_score
        )
        return await self.store.save(
            category, asset_id, replace(validation, value=value), snapshot.timestamp
        )

    async def _collect_technical(self):
        computed = 0
        for asset in await self._tracked_assets():
            records = await self.store.query_range("price", asset.external_id, PRICE_HISTORY_WINDOW)
            frame = records_to_frame(records)
            if frame.empty or "price" not in frame:
                continue

            indicators = compute_indicators(frame["price"])
            if indicators is None:
                continue

            validation = self.validator.validate(
                MetricKind.TECHNICAL, indicators,
                source=DataSource.CALCULATED, asset_id=asset.external_id
            )
            if not validation.is_valid:
                logger.warning(f"Technical data rejected for {asset.symbol}: {validation.error}")
                continue

            value = dict(validation.value, provenance="calculated")
            await self.store.save("technical", asset.external_id, replace(validation, value=value))
            computed += 1

        logger.info(f"Technical indicators computed for {computed} assets")

    async def _collect_volume(self):
        analysed = 0
        for asset in await self._tracked_assets():
            values: Dict[str, Any] = {}

            records = await self.store.query_range("price", asset.external_id, VOLUME_WINDOW)
            volumes = [r.values.get("volume_24h") for r in records]
            volumes = [v for v in volumes if v is not None]
            if volumes:
                current = volumes[-1]
                previous = volumes[-2] if len(volumes) > 1 else None
                values.update(
                    volume_24h=current,
                    previous_volume_24h=previous,
                    volume_change_pct=(current - previous) / previous * 100 if previous else None,
                    exchange_volume_trend=volume_trend(current, previous),
                )

            # On-chain activity only counts when it was observed, not estimated
            records = await self.store.query_range("artemis", asset.external_id, VOLUME_WINDOW)
            activity = [
                r.values.get("transaction_count") for r in records
                if r.values.get("provenance") != Provenance.ESTIMATED.value
            ]
            activity = [v for v in activity if v is not None]
            if activity:
                values.update(
                    transaction_volume=activity[-1],
                    previous_transaction_volume=activity[-2] if len(activity) > 1 else None,
                )

            if not values:
                continue
            await self.store.save("volume", asset.external_id, values)
            analysed += 1

        logger.info(f"Volume trends updated for {analysed} assets")

    async def _run_anomaly_detection(self):
        flagged = 0
        for asset in await self._tracked_assets():
            metrics = {}
            stamps = []
            for category, fields in TRACKED_FIELDS.items():
                record = await self.store.query_latest(category, asset.external_id)
                mark = (asset.external_id, category)
                if record is None or self._anomaly_marks.get(mark) == record.timestamp:
                    continue
                self._anomaly_marks[mark] = record.timestamp
                stamps.append(record.timestamp)
                values = record.values
                for source_field, metric in fields.items():
                    if values.get(source_field) is not None:
                        metrics[metric] = values[source_field]

            if not metrics:
                continue

            report = self.detector.detect_multi(asset.external_id, metrics, max(stamps))
            await self.store.save("anomaly", asset.external_id, {
                "overall_anomaly": report.overall_anomaly,
                "overall_score": report.overall_score,
                "systemic_issues": report.systemic_issues,
                "systemic_severity": report.systemic_severity,
                "anomalous_metrics": [
                    name for name, result in report.individual_results.items() if result.is_anomaly
                ],
            }, report.timestamp)
            if report.overall_anomaly:
                flagged += 1

        logger.info(f"Anomaly detection finished, {flagged} assets flagged")

    async def _signal_inputs(self, asset_id: str) -> Dict[str, Any]:
        inputs: Dict[str, Any] = {}
        for category in ("onchain", "technical", "derivatives", "volume"):
            record = await self.store.query_latest(category, asset_id)
            if record is not None:
                inputs.update(record.values)

        sentiment = await self.store.query_latest("sentiment", MARKET_ASSET.external_id)
        if sentiment is not None:
            inputs["fear_greed"] = sentiment.values.get("fear_greed")
        return inputs

    async def _run_signal_generation(self):
        for asset in await self._tracked_assets():
            snapshot = MarketSnapshot.from_dict(await self._signal_inputs(asset.external_id))
            signal = await self.signal_service.generate(asset.external_id, snapshot)
            await self.store.save("signal", asset.external_id, signal, signal.timestamp)
            logger.info(
                f"Signal for {asset.symbol}: {signal.signal.value} "
                f"({signal.confidence}% confidence, {signal.risk_level.value} risk)"
            )

    async def get_latest_signal(self, asset_id: str) -> Optional[TradingSignal]:
        record = await self.store.query_latest("signal", asset_id)
        return record.payload if record else None

    def get_anomaly_summary(self, asset_id: str, window: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        return self.detector.get_anomaly_summary(asset_id, window)

    def get_provider_stats(self, provider: str) -> Dict[str, Any]:
        """
        Usage statistics of one provider.

        Raises:
            KeyError: unknown provider id
        """
        return self.providers[provider].get_stats()

    def _price_stale_after(self) -> timedelta:
        interval = self.config.collection.jobs["price"].interval_minutes
        return timedelta(minutes=max(5, 2 * interval))

    def get_health(self) -> Dict[str, Any]:
        """Health score derived from the current stats; never stored."""
        score = 100
        issues = []

        success_rate = self.stats.success_rate
        if success_rate < 0.95:
            score -= 20
            issues.append("Low collection success rate")
        elif success_rate < 0.98:
            score -= 10
            issues.append("Reduced collection success rate")

        last_price = self.stats.last_collection.get("price")
        stale_price = (
            last_price is not None
            and self.clock() - last_price > self._price_stale_after()
        )
        if stale_price:
            score -= 15
            issues.append("Price data not fresh")

        low_quota = [
            name for name, provider in self.providers.items()
            if not provider.estimate_only and provider.remaining_quota() < LOW_QUOTA
        ]
        if low_quota:
            score -= 10
            issues.append(f"Quota nearly exhausted: {', '.join(sorted(low_quota))}")

        if score >= 90:
            overall = "excellent"
        elif score >= 75:
            overall = "good"
        elif score >= 60:
            overall = "fair"
        else:
            overall = "poor"

        return {
            "overall": overall,
            "score": max(0, score),
            "issues": issues,
            "stale_price": stale_price,
        }

    async def get_data_quality(self, asset_id: str):
        """Freshness and coverage of the stored data for one asset."""
        latest = {}
        for category in ("price", "onchain", "technical"):
            record = await self.store.query_latest(category, asset_id)
            latest[category] = record.timestamp if record else None
        price_records = await self.store.query_range("price", asset_id, QUALITY_HISTORY_WINDOW)
        return assess_data_quality(latest, [r.timestamp for r in price_records], self.clock())

    async def get_status(self) -> Dict[str, Any]:
        """
        Pipeline status for the dashboard layer.

        Returns:
            Dict with is_running, stats, config, jobs, providers, anomalies,
            health, per-asset data quality and metric breakdowns
        """
        data_quality = {}
        for asset in await self._tracked_assets():
            data_quality[asset.external_id] = asdict(await self.get_data_quality(asset.external_id))

        return {
            "is_running": self.is_running,
            "stats": self.stats.to_dict(),
            "config": {
                category: {"enabled": job.enabled, "interval_minutes": job.interval_minutes}
                for category, job in self.config.collection.jobs.items()
            },
            "jobs": self.scheduler.get_status(),
            "providers": {name: provider.get_stats() for name, provider in self.providers.items()},
            "anomalies": self.detector.get_anomaly_statistics(timedelta(hours=1)),
            "anomaly_detection": self.detector.get_system_stats(),
            "narrative_failures": self.signal_service.narrative_failures,
            "health": self.get_health(),
            "data_quality": data_quality,
            "metrics": self._metric_breakdowns(),
            "alerts": self.alerts.get_alert_summary() if self.alerts is not None else {},
        }

    def _metric_breakdowns(self) -> Dict[str, Dict[str, int]]:
        if self.metrics is None:
            return {}
        return {
            "provider_failures": self.metrics.get_breakdown("provider_failures_total", "provider"),
            "rate_limited": self.metrics.get_breakdown("rate_limited_total", "provider"),
            "estimates": self.metrics.get_breakdown("estimates_total", "provider"),
            "validation_rejections": self.metrics.get_breakdown("validation_rejections", "kind"),
        }
