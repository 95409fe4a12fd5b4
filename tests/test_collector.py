"""Tests for the collection orchestrator."""

from datetime import datetime

import pytest

from chainsight.collector import CollectionOrchestrator
from chainsight.config import CATEGORIES
from chainsight.exceptions import StorageUnavailableError
from chainsight.models import DataSource, MetricSnapshot, Provenance, TradingSignal, ValidationResult
from chainsight.providers import CollectedSnapshot
from chainsight.rate_limiter import QuotaGovernor
from chainsight.storage import InMemoryAssetRegistry, InMemoryMetricStore
from tests._provider_helpers import BTC, PROVIDER_ROUTES, SOL, script


class UnreachableStore(InMemoryMetricStore):
    async def ping(self):
        raise StorageUnavailableError("connection refused")


def build(config, store=None):
    orchestrator = CollectionOrchestrator.from_config(
        config,
        store=store or InMemoryMetricStore(),
        registry=InMemoryAssetRegistry(),
        governor=QuotaGovernor(config),
    )
    for provider_id, provider in orchestrator.providers.items():
        script(provider, PROVIDER_ROUTES[provider_id])
    return orchestrator


@pytest.fixture
async def orchestrator(config):
    orchestrator = build(config)
    yield orchestrator
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_start_seeds_assets_and_runs_every_category(orchestrator):
    await orchestrator.start()

    assets = await orchestrator.registry.list_assets()
    assert [a.symbol for a in assets] == ["BTC", "ETH", "BNB", "SOL"]
    assert orchestrator.is_running
    for category in CATEGORIES:
        assert orchestrator.stats.runs[category] == 1
    assert orchestrator.stats.failed_collections == 0
    assert set(orchestrator.scheduler.jobs) == set(CATEGORIES) | {"cache_cleanup"}


@pytest.mark.asyncio
async def test_initial_pass_stores_provenance(orchestrator):
    await orchestrator.start()

    price = await orchestrator.store.query_latest("price", "bitcoin")
    sentiment = await orchestrator.store.query_latest("sentiment", "market")

    assert price.values["price"] == 65000.0
    assert price.values["provenance"] == Provenance.LIVE.value
    assert price.values["provider"] == "coingecko"
    assert sentiment.values["fear_greed"] == 45
    assert orchestrator.stats.reports["price"]["live"] == 4


@pytest.mark.asyncio
async def test_signal_is_generated_per_asset(orchestrator):
    await orchestrator.start()

    signal = await orchestrator.get_latest_signal("ethereum")

    assert isinstance(signal, TradingSignal)
    assert await orchestrator.get_latest_signal("dogecoin") is None


@pytest.mark.asyncio
async def test_start_is_idempotent(orchestrator):
    await orchestrator.start()
    await orchestrator.start()

    assert orchestrator.stats.runs["price"] == 1
    assert len(await orchestrator.registry.list_assets()) == 4


@pytest.mark.asyncio
async def test_existing_registry_is_not_reseeded(config):
    orchestrator = build(config)
    await orchestrator.registry.add(SOL)

    await orchestrator.start()
    try:
        assert [a.symbol for a in await orchestrator.registry.list_assets()] == ["SOL"]
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_unreachable_store_is_fatal(config):
    orchestrator = build(config, store=UnreachableStore())

    with pytest.raises(StorageUnavailableError):
        await orchestrator.start()

    assert not orchestrator.is_running
    assert orchestrator.scheduler.jobs == {}


@pytest.mark.asyncio
async def test_disabled_category_is_not_scheduled(config):
    config.collection.jobs["artemis"].enabled = False
    orchestrator = build(config)

    await orchestrator.start()
    try:
        assert "artemis" not in orchestrator.scheduler.jobs
        assert "artemis" not in orchestrator.stats.runs
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_reconfigure(orchestrator):
    await orchestrator.start()

    await orchestrator.reconfigure("volume", enabled=False)
    assert "volume" not in orchestrator.scheduler.jobs

    await orchestrator.reconfigure("volume", enabled=True)
    assert "volume" in orchestrator.scheduler.jobs

    await orchestrator.reconfigure("price", interval_minutes=2)
    assert orchestrator.scheduler.jobs["price"].interval_seconds == 120
    assert orchestrator.config.collection.jobs["price"].interval_minutes == 2


@pytest.mark.asyncio
async def test_reconfigure_rejects_bad_input(orchestrator):
    with pytest.raises(ValueError):
        await orchestrator.reconfigure("weather", enabled=True)
    with pytest.raises(ValueError):
        await orchestrator.reconfigure("price", interval_minutes=0)


@pytest.mark.asyncio
async def test_rejected_payloads_are_not_stored(orchestrator):
    now = datetime.now()
    snapshot = MetricSnapshot("glassnode", "bitcoin", {"mvrv": 1.2}, 40.0, Provenance.LIVE, now)
    rejected = ValidationResult(False, None, 0.0, DataSource.API, now, error="MOCK_DATA_ERROR")

    stored = await orchestrator._ingest("onchain", "bitcoin", CollectedSnapshot(snapshot, rejected))

    assert stored is None
    assert await orchestrator.store.query_latest("onchain", "bitcoin") is None


@pytest.mark.asyncio
async def test_health_and_status(orchestrator):
    await orchestrator.start()

    health = orchestrator.get_health()
    status = await orchestrator.get_status()

    assert set(health) == {"overall", "score", "issues", "stale_price"}
    assert not health["stale_price"]
    assert {
        "is_running", "stats", "config", "jobs", "providers", "anomalies",
        "health", "data_quality",
    } <= set(status)
    assert status["is_running"]
    assert status["stats"]["total_collections"] == len(CATEGORIES)
    assert set(status["data_quality"]) == {"bitcoin", "ethereum", "binancecoin", "solana"}
    assert status["metrics"]["estimates"]["glassnode"] >= 2


@pytest.mark.asyncio
async def test_provider_stats(orchestrator):
    await orchestrator.start()

    stats = orchestrator.get_provider_stats("coingecko")

    assert stats["request_count"] >= 4
    with pytest.raises(KeyError):
        orchestrator.get_provider_stats("nansen")


@pytest.mark.asyncio
async def test_stop_disarms_jobs(orchestrator):
    await orchestrator.start()

    await orchestrator.stop()

    assert not orchestrator.is_running
    assert not orchestrator.scheduler.is_running


@pytest.mark.asyncio
async def test_exchange_volume_does_not_drive_the_onchain_trend(orchestrator):
    await orchestrator.registry.add(BTC)
    await orchestrator.store.save("onchain", "bitcoin", {"mvrv": 1.2, "nupl": 0.5})
    await orchestrator.store.save("price", "bitcoin", {"price": 65000.0, "volume_24h": 1e9})

    await orchestrator._collect_volume()
    await orchestrator._run_signal_generation()

    volume = await orchestrator.store.query_latest("volume", "bitcoin")
    signal = await orchestrator.get_latest_signal("bitcoin")
    assert volume.values["exchange_volume_trend"] is None
    assert "transaction_volume" not in volume.values
    assert signal.conditions["volume_trend"] is None
    assert signal.confidence == 80


@pytest.mark.asyncio
async def test_onchain_trend_uses_observed_activity_only(orchestrator):
    await orchestrator.registry.add(BTC)
    await orchestrator.store.save("onchain", "bitcoin", {"mvrv": 1.2, "nupl": 0.5})
    await orchestrator.store.save("artemis", "bitcoin", {"transaction_count": 1.0e6, "provenance": "live"})
    await orchestrator.store.save("artemis", "bitcoin", {"transaction_count": 1.2e6, "provenance": "live"})
    await orchestrator.store.save("artemis", "bitcoin", {"transaction_count": 9.0e6, "provenance": "estimated"})

    await orchestrator._collect_volume()
    await orchestrator._run_signal_generation()

    volume = await orchestrator.store.query_latest("volume", "bitcoin")
    signal = await orchestrator.get_latest_signal("bitcoin")
    assert volume.values["transaction_volume"] == 1.2e6
    assert volume.values["previous_transaction_volume"] == 1.0e6
    assert signal.conditions["volume_trend"] == "increasing"
    assert signal.confidence == 100
