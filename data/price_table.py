"""
Kestrel Price Table

In-memory snapshot of the latest known price and market cap for every
tracked instrument. Refreshes build a complete new snapshot and swap it in
with a single assignment, so readers holding the previous snapshot never
see a half-updated table.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import List, Mapping, Optional

from core.errors import FetchError
from core.models import Instrument
from core.scheduler import Clock, SystemClock
from data.feeder import MarketDataSource
from utils.logger import market_logger as logger


@dataclass(frozen=True)
class PriceSnapshot:
    """Immutable view of the table at one refresh."""
    instruments: Mapping[str, Instrument] = field(default_factory=lambda: MappingProxyType({}))
    fetched_at: Optional[datetime] = None

    def get(self, instrument_id: str) -> Optional[Instrument]:
        return self.instruments.get(instrument_id)

    def price_of(self, instrument_id: str):
        instrument = self.instruments.get(instrument_id)
        return instrument.current_price if instrument is not None else None

    def __len__(self) -> int:
        return len(self.instruments)


class PriceTable:
    """
    Latest market snapshot shared by the ledger, alert monitor and watchlist.

    Only ``refresh`` writes; every other method reads the current snapshot.
    """

    def __init__(self, source: MarketDataSource, timeout: float = 15.0, clock: Optional[Clock] = None):
        self.source = source
        self.timeout = timeout
        self.clock = clock or SystemClock()
        self._snapshot = PriceSnapshot()
        self._refresh_lock = asyncio.Lock()
        self.refresh_count = 0
        self.failure_count = 0
        self.last_error: Optional[str] = None

    @property
    def snapshot(self) -> PriceSnapshot:
        return self._snapshot

    @property
    def last_updated(self) -> Optional[datetime]:
        return self._snapshot.fetched_at

    async def refresh(self) -> PriceSnapshot:
        """
        Fetch the full instrument list and replace the table.

        Returns:
            PriceSnapshot: the newly installed snapshot

        Raises:
            FetchError: the fetch failed or exceeded the timeout; the previous
                snapshot stays in place
        """
        async with self._refresh_lock:
            try:
                instruments = await asyncio.wait_for(self.source.fetch_markets(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                self._record_failure(f"Price refresh timed out after {self.timeout}s")
                raise FetchError(f"Price refresh timed out after {self.timeout}s", cause=e) from e
            except FetchError as e:
                self._record_failure(str(e))
                raise

            table = {}
            for instrument in instruments:
                # First occurrence wins; pages can overlap when ranks shift mid-fetch
                table.setdefault(instrument.id, instrument)

            snapshot = PriceSnapshot(
                instruments=MappingProxyType(table),
                fetched_at=self.clock.now(),
            )
            self._snapshot = snapshot
            self.refresh_count += 1
            self.last_error = None

        logger.market(f"Price table refreshed with {len(snapshot)} instruments")
        return snapshot

    def _record_failure(self, message: str) -> None:
        self.failure_count += 1
        self.last_error = message
        logger.warning(f"Price refresh failed, keeping previous table: {message}")

    def get(self, instrument_id: str) -> Optional[Instrument]:
        """Return the last known snapshot of an instrument, or None if never seen."""
        return self._snapshot.get(instrument_id)

    def lookup(self, query: str) -> List[Instrument]:
        """
        Case-insensitive substring search over name and symbol.

        An empty query returns every instrument, in market-cap order.
        """
        instruments = list(self._snapshot.instruments.values())
        needle = (query or "").strip().lower()
        if not needle:
            return instruments

        return [
            instrument for instrument in instruments
            if needle in instrument.name.lower() or needle in instrument.symbol.lower()
        ]

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, instrument_id: str) -> bool:
        return instrument_id in self._snapshot.instruments
