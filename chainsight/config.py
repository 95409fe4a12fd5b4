"""
Configuration management for the chainsight pipeline.

This module handles:
- Centralized configuration
- Environment variable support
- Per-provider credentials and budgets
- Per-category collection schedules
- Configuration validation
"""

import os
import json
import logging
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


# Collection categories in the order a full pass runs them
CATEGORIES = [
    "price",
    "technical",
    "onchain",
    "sentiment",
    "derivatives",
    "volume",
    "token_terminal",
    "artemis",
    "anomaly",
    "signal",
]

DEFAULT_INTERVALS = {
    "price": 5,
    "technical": 15,
    "onchain": 60,
    "sentiment": 90,
    "derivatives": 30,
    "volume": 60,
    "token_terminal": 360,
    "artemis": 120,
    "anomaly": 15,
    "signal": 30,
}

# Lower number wins when a provider budget is nearly spent
DEFAULT_PRIORITIES = {
    "price": 1,
    "derivatives": 2,
    "onchain": 2,
    "technical": 3,
    "sentiment": 3,
    "volume": 3,
    "token_terminal": 4,
    "artemis": 4,
    "anomaly": 5,
    "signal": 5,
}


@dataclass
class ProviderConfig:
    """External provider configuration."""
    api_key: Optional[str] = None
    base_url: str = ""
    timeout: int = 30
    day_limit: int = 1000
    minute_limit: int = 60
    enabled: bool = True
    requires_key: bool = True

    @property
    def estimate_only(self) -> bool:
        """A keyed provider without a key can only produce estimates."""
        return self.requires_key and not self.api_key


def _default_providers() -> Dict[str, ProviderConfig]:
    return {
        "glassnode": ProviderConfig(
            base_url="https://api.glassnode.com/v1/metrics",
            day_limit=100,
            minute_limit=10,
        ),
        "token_terminal": ProviderConfig(
            base_url="https://api.tokenterminal.com/v2",
            day_limit=100,
            minute_limit=10,
        ),
        "artemis": ProviderConfig(
            base_url="https://api.artemis.xyz/v1",
            day_limit=1000,
            minute_limit=60,
        ),
        "coingecko": ProviderConfig(
            base_url="https://api.coingecko.com/api/v3",
            day_limit=10000,
            minute_limit=30,
            requires_key=False,
        ),
        "alternative_me": ProviderConfig(
            base_url="https://api.alternative.me",
            day_limit=1440,
            minute_limit=60,
            requires_key=False,
        ),
        "binance_futures": ProviderConfig(
            base_url="https://fapi.binance.com/fapi/v1",
            day_limit=100000,
            minute_limit=1200,
            requires_key=False,
        ),
        "narrative": ProviderConfig(
            base_url="https://openrouter.ai/api/v1",
            timeout=20,
            day_limit=100,
            minute_limit=10,
        ),
    }


@dataclass
class CacheConfig:
    """Cache configuration."""
    backend: str = "memory"
    cache_dir: str = "./cache"
    max_size: int = 1000
    default_ttl_seconds: int = 6 * 60 * 60
    cleanup_interval_minutes: int = 60


@dataclass
class RateLimitConfig:
    """Rate limit and concurrency configuration."""
    low_priority_reserve: float = 0.1
    low_priority_threshold: int = 4
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    max_asset_concurrency: int = 2
    max_concurrent_jobs: int = 4


@dataclass
class ValidationConfig:
    """Validation configuration."""
    price_bands: Dict[str, List[float]] = field(default_factory=dict)
    active_address_bands: Dict[str, List[float]] = field(default_factory=dict)
    min_live_quality: float = 70.0
    max_plausible_price: float = 1_000_000.0
    max_plausible_market_cap: float = 1e13
    max_plausible_volume: float = 1e12


@dataclass
class JobConfig:
    """Schedule for one collection category."""
    enabled: bool = True
    interval_minutes: int = 60


def _default_jobs() -> Dict[str, JobConfig]:
    return {
        category: JobConfig(enabled=True, interval_minutes=DEFAULT_INTERVALS[category])
        for category in CATEGORIES
    }


@dataclass
class CollectionConfig:
    """Collection orchestrator configuration."""
    jobs: Dict[str, JobConfig] = field(default_factory=_default_jobs)
    tracked_asset_limit: int = 10
    narrative_timeout: float = 20.0


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    enable_metrics: bool = True
    metrics_interval: int = 60
    enable_alerts: bool = True
    alert_channels: List[str] = field(default_factory=lambda: ["log"])


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_bands(name: str) -> Dict[str, List[float]]:
    raw = os.getenv(name)
    if not raw:
        return {}
    try:
        bands = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"{name} must be a JSON object of [min, max] pairs: {e}")
    return {asset: [float(lo), float(hi)] for asset, (lo, hi) in bands.items()}


@dataclass
class Config:
    """Main configuration class."""
    # External data sources
    providers: Dict[str, ProviderConfig] = field(default_factory=_default_providers)

    # Cache settings
    cache: CacheConfig = field(default_factory=CacheConfig)

    # Rate limiting
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    # Validation
    validation: ValidationConfig = field(default_factory=ValidationConfig)

    # Scheduling
    collection: CollectionConfig = field(default_factory=CollectionConfig)

    # Monitoring
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    narrative_model: str = "openai/gpt-4o-mini"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def provider(self, name: str) -> ProviderConfig:
        """Get a provider section, falling back to an estimate-only default."""
        return self.providers.get(name) or ProviderConfig()

    @classmethod
    def from_env(cls) -> 'Config':
        """Create configuration from environment variables."""
        providers = _default_providers()
        for name, provider in providers.items():
            prefix = name.upper()
            provider.api_key = os.getenv(f"{prefix}_API_KEY", provider.api_key)
            provider.base_url = os.getenv(f"{prefix}_BASE_URL", provider.base_url)
            provider.timeout = int(os.getenv(f"{prefix}_TIMEOUT", str(provider.timeout)))
            provider.day_limit = int(os.getenv(f"{prefix}_DAY_LIMIT", str(provider.day_limit)))
            provider.minute_limit = int(
                os.getenv(f"{prefix}_MINUTE_LIMIT", str(provider.minute_limit))
            )
            provider.enabled = _env_bool(f"{prefix}_ENABLED")

        jobs = _default_jobs()
        for category, job in jobs.items():
            prefix = f"COLLECT_{category.upper()}"
            job.enabled = _env_bool(f"{prefix}_ENABLED")
            job.interval_minutes = int(
                os.getenv(f"{prefix}_INTERVAL", str(job.interval_minutes))
            )

        return cls(
            providers=providers,
            cache=CacheConfig(
                backend=os.getenv("CACHE_BACKEND", "memory"),
                cache_dir=os.getenv("CACHE_DIR", "./cache"),
                max_size=int(os.getenv("CACHE_MAX_SIZE", "1000")),
                default_ttl_seconds=int(os.getenv("CACHE_DEFAULT_TTL", str(6 * 60 * 60))),
                cleanup_interval_minutes=int(os.getenv("CACHE_CLEANUP_INTERVAL", "60"))
            ),
            rate_limit=RateLimitConfig(
                low_priority_reserve=float(os.getenv("LOW_PRIORITY_RESERVE", "0.1")),
                low_priority_threshold=int(os.getenv("LOW_PRIORITY_THRESHOLD", "4")),
                retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "3")),
                retry_base_delay=float(os.getenv("RETRY_DELAY", "1.0")),
                max_asset_concurrency=int(os.getenv("MAX_ASSET_CONCURRENCY", "2")),
                max_concurrent_jobs=int(os.getenv("MAX_CONCURRENT_JOBS", "4"))
            ),
            validation=ValidationConfig(
                price_bands=_env_bands("PRICE_BANDS"),
                active_address_bands=_env_bands("ACTIVE_ADDRESS_BANDS"),
                min_live_quality=float(os.getenv("MIN_LIVE_QUALITY", "70")),
            ),
            collection=CollectionConfig(
                jobs=jobs,
                tracked_asset_limit=int(os.getenv("TRACKED_ASSET_LIMIT", "10")),
                narrative_timeout=float(os.getenv("NARRATIVE_TIMEOUT", "20")),
            ),
            monitoring=MonitoringConfig(
                enable_metrics=_env_bool("ENABLE_METRICS"),
                metrics_interval=int(os.getenv("METRICS_INTERVAL", "60")),
                enable_alerts=_env_bool("ENABLE_ALERTS"),
                alert_channels=os.getenv("ALERT_CHANNELS", "log").split(",")
            ),
            narrative_model=os.getenv("NARRATIVE_MODEL", "openai/gpt-4o-mini"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE")
        )

    @classmethod
    def from_file(cls, file_path: str) -> 'Config':
        """Create configuration from JSON file."""
        with open(file_path, 'r') as f:
            config_data = json.load(f)

        providers = _default_providers()
        for name, section in config_data.get('providers', {}).items():
            providers[name] = ProviderConfig(**section)

        collection_data = dict(config_data.get('collection', {}))
        jobs = _default_jobs()
        for category, section in collection_data.pop('jobs', {}).items():
            jobs[category] = JobConfig(**section)

        nested = ['providers', 'cache', 'rate_limit', 'validation', 'collection', 'monitoring']
        return cls(
            providers=providers,
            cache=CacheConfig(**config_data.get('cache', {})),
            rate_limit=RateLimitConfig(**config_data.get('rate_limit', {})),
            validation=ValidationConfig(**config_data.get('validation', {})),
            collection=CollectionConfig(jobs=jobs, **collection_data),
            monitoring=MonitoringConfig(**config_data.get('monitoring', {})),
            **{k: v for k, v in config_data.items() if k not in nested}
        )

    def to_file(self, file_path: str):
        """Save configuration to JSON file."""
        with open(file_path, 'w') as f:
            json.dump(asdict(self), f, indent=2)

    def validate(self):
        """Validate configuration values."""
        errors = []

        # Validate providers
        for name, provider in self.providers.items():
            if not provider.base_url.startswith(('http://', 'https://')):
                errors.append(f"{name} base URL must start with http:// or https://")
            if not 10 <= provider.timeout <= 30:
                errors.append(f"{name} timeout must be between 10 and 30 seconds")
            if provider.day_limit <= 0 or provider.minute_limit <= 0:
                errors.append(f"{name} request limits must be positive")

        # Validate cache config
        if self.cache.backend not in ("memory", "disk"):
            errors.append("Cache backend must be 'memory' or 'disk'")

        if self.cache.max_size <= 0:
            errors.append("Cache max size must be positive")

        if self.cache.default_ttl_seconds <= 0:
            errors.append("Cache default TTL must be positive")

        # Validate rate limit config
        if not 0 <= self.rate_limit.low_priority_reserve < 1:
            errors.append("Low priority reserve must be in [0, 1)")

        if self.rate_limit.retry_attempts <= 0:
            errors.append("Retry attempts must be positive")

        if self.rate_limit.retry_base_delay <= 0:
            errors.append("Retry delay must be positive")

        if self.rate_limit.max_asset_concurrency <= 0:
            errors.append("Max asset concurrency must be positive")

        if self.rate_limit.max_concurrent_jobs <= 0:
            errors.append("Max concurrent jobs must be positive")

        # Validate validation config
        for label, bands in (("Price", self.validation.price_bands),
                             ("Active address", self.validation.active_address_bands)):
            for asset, band in bands.items():
                if len(band) != 2 or band[0] >= band[1]:
                    errors.append(f"{label} band for {asset} must be [min, max] with min < max")

        if not 0 <= self.validation.min_live_quality <= 100:
            errors.append("Minimum live quality must be between 0 and 100")

        # Validate schedules
        for category, job in self.collection.jobs.items():
            if category not in CATEGORIES:
                errors.append(f"Unknown collection category: {category}")
            if job.interval_minutes <= 0:
                errors.append(f"Interval for {category} must be positive")

        if self.collection.tracked_asset_limit <= 0:
            errors.append("Tracked asset limit must be positive")

        # Validate monitoring config
        if self.monitoring.metrics_interval <= 0:
            errors.append("Metrics interval must be positive")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

        logger.info("Configuration validation passed")

    def setup_logging(self):
        """Set up logging based on configuration."""
        level = getattr(logging, self.log_level.upper())
        logging.basicConfig(level=level)

        # Add file handler if specified
        if self.log_file:
            handler = logging.FileHandler(self.log_file)
            handler.setLevel(level)
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            logging.getLogger().addHandler(handler)

        logger.info(f"Logging configured with level {self.log_level}")
