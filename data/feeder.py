"""
Kestrel Market Data Feeder

Fetches the tracked coin list with current USD prices from CoinGecko's
``/coins/markets`` endpoint, page by page, in market-cap order.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from config.settings import Settings, get_settings
from core.errors import FetchError
from core.models import Instrument, to_decimal
from utils.logger import market_logger as logger


class MarketDataSource(ABC):
    """Anything that can produce a full instrument list on request."""

    @abstractmethod
    async def fetch_markets(self) -> List[Instrument]:
        """
        Fetch every tracked instrument.

        Raises:
            FetchError: network, HTTP or payload failure
        """
        ...

    async def close(self) -> None:
        return None


def parse_market_record(record: Dict[str, Any]) -> Optional[Instrument]:
    """
    Convert one ``/coins/markets`` record into an Instrument.

    Returns None for records the price table cannot use (missing id or no
    positive price); CoinGecko lists some coins without a current price.
    """
    instrument_id = record.get("id")
    raw_price = record.get("current_price")
    if not instrument_id or raw_price is None:
        return None

    try:
        price = to_decimal(raw_price)
        raw_cap = record.get("market_cap")
        market_cap = to_decimal(raw_cap) if raw_cap is not None else to_decimal(0)
    except ValueError:
        return None

    if price <= 0:
        return None

    return Instrument(
        id=str(instrument_id),
        symbol=str(record.get("symbol") or "").upper(),
        name=str(record.get("name") or instrument_id),
        current_price=price,
        market_cap=max(market_cap, to_decimal(0)),
    )


class CoinGeckoFeeder(MarketDataSource):
    """CoinGecko REST client for the markets listing."""

    def __init__(self, settings: Optional[Settings] = None, session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.market_data_base_url
        self.vs_currency = self.settings.market_vs_currency
        self.per_page = self.settings.market_per_page
        self.page_count = self.settings.market_page_count
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.settings.market_request_timeout)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def _fetch_page(self, page: int) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/coins/markets"
        params = {
            "vs_currency": self.vs_currency,
            "order": "market_cap_desc",
            "per_page": str(self.per_page),
            "page": str(page),
            "sparkline": "false",
        }

        session = self._get_session()
        try:
            async with session.get(url, params=params) as response:
                if response.status != 200:
                    raise FetchError(f"CoinGecko returned HTTP {response.status} for page {page}")
                payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise FetchError(f"CoinGecko request failed for page {page}: {e}", cause=e) from e

        if not isinstance(payload, list):
            raise FetchError(f"Unexpected CoinGecko payload for page {page}: {type(payload).__name__}")
        return payload

    async def fetch_markets(self) -> List[Instrument]:
        instruments: List[Instrument] = []
        skipped = 0

        for page in range(1, self.page_count + 1):
            records = await self._fetch_page(page)
            for record in records:
                instrument = parse_market_record(record) if isinstance(record, dict) else None
                if instrument is None:
                    skipped += 1
                    continue
                instruments.append(instrument)

            # A short page means there is nothing further to request
            if len(records) < self.per_page:
                break

        logger.market(f"Fetched {len(instruments)} instruments ({skipped} skipped)")
        return instruments

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
