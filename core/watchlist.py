"""
Kestrel Watchlist

Persisted, ordered list of instrument ids the user follows, capped at a
configurable number of coins.
"""

import asyncio
import json
from typing import List, Optional

from config.settings import Settings, get_settings
from core.errors import InstrumentUnknownError, PersistenceError, WatchlistFullError
from core.models import STATE_VERSION, Instrument
from data.price_table import PriceTable
from utils.logger import core_logger as logger
from utils.redis_store import PersistenceStore


class Watchlist:
    """Followed instruments, oldest first."""

    def __init__(
        self,
        price_table: PriceTable,
        store: PersistenceStore,
        key: Optional[str] = None,
        max_coins: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.price_table = price_table
        self.store = store
        self.key = key or self.settings.watchlist_key
        self.max_coins = max_coins or self.settings.watchlist_max_coins

        self._coins: List[str] = []
        self._lock = asyncio.Lock()
        self.unsaved_changes = False

    @property
    def ids(self) -> List[str]:
        return list(self._coins)

    def contains(self, instrument_id: str) -> bool:
        return instrument_id in self._coins

    def __len__(self) -> int:
        return len(self._coins)

    async def load(self) -> List[str]:
        async with self._lock:
            self._coins = await self._read_coins()
            self.unsaved_changes = False
            logger.info(f"Loaded watchlist with {len(self._coins)} coins")
            return list(self._coins)

    async def _read_coins(self) -> List[str]:
        try:
            raw = await self.store.get(self.key)
        except PersistenceError as e:
            logger.error(f"Could not read watchlist, starting empty: {e}")
            return []

        if raw is None:
            return []

        try:
            document = json.loads(raw.decode("utf-8"))
            if document.get("version") != STATE_VERSION:
                raise ValueError(f"Unsupported watchlist version: {document.get('version')}")
            coins = document["coins"]
            if not isinstance(coins, list) or not all(isinstance(coin, str) for coin in coins):
                raise ValueError("Watchlist coins must be a list of ids")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Saved watchlist is corrupt, starting empty: {e}")
            return []

        # First occurrence wins, capped at the limit
        return list(dict.fromkeys(coins))[: self.max_coins]

    async def save(self) -> bool:
        payload = json.dumps({"version": STATE_VERSION, "coins": self._coins}).encode("utf-8")
        try:
            await self.store.set(self.key, payload)
        except PersistenceError as e:
            self.unsaved_changes = True
            logger.storage(f"Watchlist save failed, will retry on next change: {e}", key=self.key, level="ERROR")
            return False

        self.unsaved_changes = False
        logger.storage(f"Saved watchlist with {len(self._coins)} coins", key=self.key)
        return True

    async def add(self, instrument_id: str) -> List[str]:
        """
        Follow an instrument. Adding one already on the list changes nothing.

        Raises:
            InstrumentUnknownError: instrument not in the price table
            WatchlistFullError: the list already holds max_coins entries
        """
        async with self._lock:
            await self._add(instrument_id)
        return self.ids

    async def remove(self, instrument_id: str) -> bool:
        """Stop following an instrument; returns False if it was not listed."""
        async with self._lock:
            return await self._remove(instrument_id)

    async def toggle(self, instrument_id: str) -> bool:
        """Add if absent, remove if present; returns True when now followed."""
        async with self._lock:
            if instrument_id in self._coins:
                await self._remove(instrument_id)
                return False
            await self._add(instrument_id)
            return True

    # Callers hold _lock

    async def _add(self, instrument_id: str) -> None:
        if instrument_id not in self.price_table:
            raise InstrumentUnknownError(instrument_id)
        if instrument_id in self._coins:
            return
        if len(self._coins) >= self.max_coins:
            raise WatchlistFullError(self.max_coins)

        self._coins.append(instrument_id)
        await self.save()
        logger.info(f"Added {instrument_id} to watchlist")

    async def _remove(self, instrument_id: str) -> bool:
        if instrument_id not in self._coins:
            return False

        self._coins.remove(instrument_id)
        await self.save()
        logger.info(f"Removed {instrument_id} from watchlist")
        return True

    def entries(self) -> List[Instrument]:
        """Followed instruments with current prices, skipping ids not in the table."""
        snapshot = self.price_table.snapshot
        return [
            instrument for instrument in (snapshot.get(coin) for coin in self._coins)
            if instrument is not None
        ]
