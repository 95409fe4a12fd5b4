"""
Per-provider request quota governor.

This module handles:
- Day and minute request budgets per provider
- Atomic check-and-increment under concurrent callers
- Priority reserve for low-priority jobs
- Performance monitoring
"""

import time
import threading
import logging
from typing import Any, Callable, Dict, Optional
from dataclasses import dataclass, replace
from datetime import datetime

from .config import Config
from .exceptions import ConfigurationError
from .monitoring.metrics import MetricsCollector

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60
MINUTE_SECONDS = 60


@dataclass
class RateQuota:
    """Request budget and counters for one provider."""
    day_limit: int
    minute_limit: int
    day_count: int = 0
    minute_count: int = 0
    last_day_reset: float = 0.0
    last_minute_reset: float = 0.0

    @property
    def remaining_day(self) -> int:
        return max(0, self.day_limit - self.day_count)

    @property
    def remaining_minute(self) -> int:
        return max(0, self.minute_limit - self.minute_count)


@dataclass
class RateLimitMetrics:
    """Metrics for governor decisions."""
    requests_made: int = 0
    requests_limited: int = 0
    last_limit_time: Optional[datetime] = None


class QuotaGovernor:
    """
    Enforces per-provider request budgets over a day and a minute window.

    Features:
    - Both windows checked and incremented in one critical section
    - Windows reset once per boundary crossing
    - Low-priority callers stop short of the day limit
    - Per-provider metrics
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config
        self.clock = clock
        self.metrics = metrics

        rate_limit = config.rate_limit if config else None
        self.low_priority_reserve = rate_limit.low_priority_reserve if rate_limit else 0.0
        self.low_priority_threshold = rate_limit.low_priority_threshold if rate_limit else 4

        self._quotas: Dict[str, RateQuota] = {}
        self._stats: Dict[str, RateLimitMetrics] = {}
        self.lock = threading.Lock()

        logger.info("Initialized QuotaGovernor")

    def register(self, provider_id: str, day_limit: int, minute_limit: int):
        """
        Register a provider budget, or update its limits if already known.

        Args:
            provider_id: Provider name
            day_limit: Maximum requests per day
            minute_limit: Maximum requests per minute
        """
        with self.lock:
            self._register_locked(provider_id, day_limit, minute_limit)

    def _register_locked(self, provider_id: str, day_limit: int, minute_limit: int) -> RateQuota:
        quota = self._quotas.get(provider_id)
        if quota is None:
            now = self.clock()
            quota = RateQuota(
                day_limit=day_limit,
                minute_limit=minute_limit,
                last_day_reset=now,
                last_minute_reset=now
            )
            self._quotas[provider_id] = quota
            self._stats[provider_id] = RateLimitMetrics()
            logger.info(
                f"Registered quota for {provider_id}: {day_limit}/day, {minute_limit}/min"
            )
        else:
            quota.day_limit = day_limit
            quota.minute_limit = minute_limit
        return quota

    def _quota_for(self, provider_id: str) -> RateQuota:
        quota = self._quotas.get(provider_id)
        if quota is not None:
            return quota

        if self.config and provider_id in self.config.providers:
            provider = self.config.providers[provider_id]
            return self._register_locked(provider_id, provider.day_limit, provider.minute_limit)

        raise ConfigurationError(f"No quota registered for provider {provider_id}")

    def _roll_windows(self, quota: RateQuota, now: float):
        if now - quota.last_day_reset >= DAY_SECONDS:
            quota.day_count = 0
            quota.last_day_reset = now
        if now - quota.last_minute_reset >= MINUTE_SECONDS:
            quota.minute_count = 0
            quota.last_minute_reset = now

    def try_acquire(self, provider_id: str, priority: int = 1) -> bool:
        """
        Consume one request slot if both windows have room.

        Args:
            provider_id: Provider name
            priority: Job priority, 1 is highest. Callers at or above the
                low-priority threshold may not use the reserved tail of the
                day budget.

        Returns:
            True if the request may proceed
        """
        with self.lock:
            quota = self._quota_for(provider_id)
            self._roll_windows(quota, self.clock())

            day_ceiling = quota.day_limit
            if priority >= self.low_priority_threshold and self.low_priority_reserve > 0:
                day_ceiling = int(quota.day_limit * (1 - self.low_priority_reserve))

            stats = self._stats[provider_id]
            if quota.day_count < day_ceiling and quota.minute_count < quota.minute_limit:
                quota.day_count += 1
                quota.minute_count += 1
                stats.requests_made += 1
                granted = True
            else:
                stats.requests_limited += 1
                stats.last_limit_time = datetime.now()
                granted = False

        if self.metrics:
            if granted:
                self.metrics.increment("quota_granted", tags={"provider": provider_id})
            else:
                self.metrics.record_rate_limited(provider_id)

        if not granted:
            logger.warning(f"Quota exhausted for {provider_id} (priority {priority})")
        return granted

    def remaining_quota(self, provider_id: str) -> int:
        """Requests left today for a provider."""
        with self.lock:
            quota = self._quota_for(provider_id)
            self._roll_windows(quota, self.clock())
            return quota.remaining_day

    def get_quota(self, provider_id: str) -> RateQuota:
        """Snapshot of a provider's counters."""
        with self.lock:
            return replace(self._quota_for(provider_id))

    def get_metrics(self) -> Dict[str, Any]:
        """Get governor metrics per provider."""
        with self.lock:
            return {
                provider_id: {
                    "day_count": quota.day_count,
                    "day_limit": quota.day_limit,
                    "minute_count": quota.minute_count,
                    "minute_limit": quota.minute_limit,
                    "remaining_quota": quota.remaining_day,
                    "remaining_minute": quota.remaining_minute,
                    "requests_made": self._stats[provider_id].requests_made,
                    "requests_limited": self._stats[provider_id].requests_limited,
                    "last_limit_time": (
                        self._stats[provider_id].last_limit_time.isoformat()
                        if self._stats[provider_id].last_limit_time else None
                    )
                }
                for provider_id, quota in self._quotas.items()
            }


_default_governor: Optional[QuotaGovernor] = None
_default_lock = threading.Lock()


def get_governor(config: Optional[Config] = None) -> QuotaGovernor:
    """
    Process-wide governor.

    Quota state is global per provider, so every adapter of the same provider
    must share one instance unless a governor is passed in explicitly.
    """
    global _default_governor
    with _default_lock:
        if _default_governor is None:
            _default_governor = QuotaGovernor(config)
        return _default_governor
