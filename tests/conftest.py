"""
Shared fixtures: a static market source, a recording notifier and stores
that can be told to fail.
"""

import asyncio
from dataclasses import replace
from decimal import Decimal
from typing import List, Optional

import pytest

from core.errors import PersistenceError
from core.models import Instrument
from core.scheduler import ManualClock
from data.feeder import MarketDataSource
from data.price_table import PriceTable
from utils.redis_store import MemoryStore
from utils.slack import MessageType, NotificationSink


def make_instrument(instrument_id: str, symbol: str, name: str, price, market_cap="0") -> Instrument:
    return Instrument(
        id=instrument_id,
        symbol=symbol,
        name=name,
        current_price=Decimal(str(price)),
        market_cap=Decimal(str(market_cap)),
    )


class StaticMarketSource(MarketDataSource):
    """Serves a fixed instrument list that tests can reprice or break."""

    def __init__(self, instruments: List[Instrument]):
        self.instruments = list(instruments)
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls = 0
        self.closed = False

    async def fetch_markets(self) -> List[Instrument]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.instruments)

    def set_price(self, instrument_id: str, price) -> None:
        self.instruments = [
            replace(item, current_price=Decimal(str(price))) if item.id == instrument_id else item
            for item in self.instruments
        ]

    def remove(self, instrument_id: str) -> None:
        self.instruments = [item for item in self.instruments if item.id != instrument_id]

    async def close(self) -> None:
        self.closed = True


class RecordingNotifier(NotificationSink):
    def __init__(self):
        self.messages = []

    def notify(self, title: str, message: str, message_type: MessageType = MessageType.INFO) -> None:
        self.messages.append((title, message, message_type))

    @property
    def titles(self) -> List[str]:
        return [title for title, _, _ in self.messages]


class FlakyStore(MemoryStore):
    """In-memory store whose reads or writes can be switched to fail or to yield."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.fail_reads = False
        self.fail_writes = False
        self.yield_on_write = False
        self.set_calls = 0
        self.closed = False

    async def get(self, key: str) -> Optional[bytes]:
        if self.fail_reads:
            raise PersistenceError("store unavailable", key=key)
        return await super().get(key)

    async def set(self, key: str, value: bytes) -> None:
        self.set_calls += 1
        if self.yield_on_write:
            await asyncio.sleep(0)
        if self.fail_writes:
            raise PersistenceError("store unavailable", key=key)
        await super().set(key, value)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def instruments():
    return [
        make_instrument("bitcoin", "BTC", "Bitcoin", "10000", "1200000000000"),
        make_instrument("ethereum", "ETH", "Ethereum", "2500", "300000000000"),
        make_instrument("dogecoin", "DOGE", "Dogecoin", "0.12345678", "17000000000"),
    ]


@pytest.fixture
def market_source(instruments):
    return StaticMarketSource(instruments)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def price_table(market_source, clock):
    return PriceTable(market_source, timeout=1.0, clock=clock)


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()
