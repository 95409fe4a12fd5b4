"""Shared fixtures for the chainsight test suite."""

import pytest

from chainsight.cache_manager import CacheManager
from chainsight.config import Config
from chainsight.rate_limiter import QuotaGovernor
from chainsight.validators import ValidationGate

from tests._provider_helpers import KEYED_PROVIDERS, FakeClock


@pytest.fixture
def config():
    config = Config()
    config.rate_limit.retry_attempts = 2
    config.rate_limit.retry_base_delay = 0.01
    config.monitoring.enable_metrics = False
    config.monitoring.alert_channels = ["log"]
    for name in KEYED_PROVIDERS:
        config.providers[name].api_key = "key-0123456789"
    return config


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def governor(config):
    return QuotaGovernor(config)


@pytest.fixture
def cache():
    return CacheManager()


@pytest.fixture
def validator(config):
    return ValidationGate(config)


@pytest.fixture
def provider_kwargs(governor, cache, validator):
    return {"governor": governor, "cache": cache, "validator": validator}
