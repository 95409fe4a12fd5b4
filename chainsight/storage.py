"""
Persistence and asset registry interfaces.

This module handles:
- The metric store contract (save, latest, range)
- An in-memory metric store
- The tracked asset registry
- Conversion of stored series to pandas frames
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

import pandas as pd

from .models import Asset, ValidationResult

logger = logging.getLogger(__name__)

DEFAULT_ASSETS = [
    Asset(symbol="BTC", name="Bitcoin", external_id="bitcoin", rank=1),
    Asset(symbol="ETH", name="Ethereum", external_id="ethereum", rank=2),
    Asset(symbol="BNB", name="BNB", external_id="binancecoin", rank=3),
    Asset(symbol="SOL", name="Solana", external_id="solana", rank=4),
]


@dataclass(frozen=True)
class StoredRecord:
    """One persisted payload."""
    category: str
    asset_id: str
    payload: Any
    timestamp: datetime

    @property
    def values(self) -> Dict[str, Any]:
        """Payload fields, unwrapping validation results."""
        payload = self.payload
        if isinstance(payload, ValidationResult):
            payload = payload.value
        return payload if isinstance(payload, dict) else {"value": payload}


class MetricStore(ABC):
    """Persistence contract used by the orchestrator and detectors."""

    @abstractmethod
    async def ping(self):
        """Raise StorageUnavailableError if the store cannot be reached."""

    @abstractmethod
    async def save(
        self,
        category: str,
        asset_id: str,
        payload: Any,
        timestamp: Optional[datetime] = None
    ) -> StoredRecord:
        ...

    @abstractmethod
    async def query_latest(self, category: str, asset_id: str) -> Optional[StoredRecord]:
        ...

    @abstractmethod
    async def query_range(
        self,
        category: str,
        asset_id: str,
        window: timedelta
    ) -> List[StoredRecord]:
        ...


class InMemoryMetricStore(MetricStore):
    """
    Process-local metric store.

    Each (category, asset) series is bounded; oldest records are dropped first.
    """

    def __init__(self, max_records: int = 10000, clock: Callable[[], datetime] = datetime.now):
        self.max_records = max_records
        self.clock = clock
        self._series: Dict[tuple, deque] = defaultdict(lambda: deque(maxlen=self.max_records))
        self.lock = asyncio.Lock()

        logger.info("Initialized InMemoryMetricStore")

    async def ping(self):
        return None

    async def save(
        self,
        category: str,
        asset_id: str,
        payload: Any,
        timestamp: Optional[datetime] = None
    ) -> StoredRecord:
        record = StoredRecord(
            category=category,
            asset_id=asset_id,
            payload=payload,
            timestamp=timestamp or self.clock()
        )
        async with self.lock:
            self._series[(category, asset_id)].append(record)
        return record

    async def query_latest(self, category: str, asset_id: str) -> Optional[StoredRecord]:
        series = self._series.get((category, asset_id))
        return series[-1] if series else None

    async def query_range(
        self,
        category: str,
        asset_id: str,
        window: timedelta
    ) -> List[StoredRecord]:
        since = self.clock() - window
        series = self._series.get((category, asset_id), ())
        return [record for record in series if record.timestamp >= since]

    def count(self, category: Optional[str] = None) -> int:
        return sum(
            len(series) for (cat, _), series in self._series.items()
            if category is None or cat == category
        )


def records_to_frame(records: Iterable[StoredRecord]) -> pd.DataFrame:
    """
    Build a time-indexed frame from stored records.

    Args:
        records: Records in any order

    Returns:
        DataFrame indexed by timestamp, one column per payload field
    """
    rows = [dict(record.values, timestamp=record.timestamp) for record in records]
    if not rows:
        return pd.DataFrame()
    frame = pd.DataFrame(rows)
    frame = frame.sort_values("timestamp").set_index("timestamp")
    return frame


class AssetRegistry(ABC):
    """List of tracked assets."""

    @abstractmethod
    async def list_assets(self, limit: Optional[int] = None) -> List[Asset]:
        ...

    @abstractmethod
    async def add(self, asset: Asset):
        ...


class InMemoryAssetRegistry(AssetRegistry):
    """Asset registry held in process memory."""

    def __init__(self, assets: Optional[Iterable[Asset]] = None):
        self._assets: Dict[str, Asset] = {}
        for asset in assets or ():
            self._assets[asset.external_id] = asset

    async def list_assets(self, limit: Optional[int] = None) -> List[Asset]:
        assets = sorted(self._assets.values(), key=lambda a: a.rank)
        return assets[:limit] if limit else assets

    async def add(self, asset: Asset):
        self._assets[asset.external_id] = asset
        logger.info(f"Tracking {asset.symbol} ({asset.external_id})")

    async def get(self, external_id: str) -> Optional[Asset]:
        return self._assets.get(external_id)
