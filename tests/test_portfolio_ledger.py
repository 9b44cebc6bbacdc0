"""
Kestrel Portfolio Ledger Tests

Trade execution, balance and holding invariants, valuation and
persistence of the paper-trading ledger.
"""

import asyncio
import json
import random
from decimal import Decimal

import pytest
from loguru import logger

from conftest import make_instrument
from core.errors import (
    ErrorKind,
    InstrumentUnknownError,
    InsufficientFundsError,
    InsufficientHoldingsError,
    InvalidOrderError,
    NoPositionError,
    RejectedOperationError,
)
from core.models import BookKind, LeveragedPosition, SpotPosition, TradeAction
from core.portfolio import PortfolioLedger


class TestPortfolioLedger:
    """Test suite for PortfolioLedger trade execution."""

    @pytest.fixture
    def ledger(self, price_table, store, notifier, clock):
        return PortfolioLedger(
            price_table,
            store,
            notifier=notifier,
            starting_balance=Decimal("100000"),
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_spot_buy_and_partial_sell_scenario(self, ledger, price_table):
        """Buy 2 @ 10000, sell 1, then reject an oversized sell."""
        await price_table.refresh()

        receipt = await ledger.execute_trade(BookKind.SPOT, "bitcoin", "2", TradeAction.BUY)
        assert receipt.resulting_cash_balance == Decimal("80000")
        assert receipt.cost == Decimal("20000")
        assert ledger.position(BookKind.SPOT, "bitcoin") == SpotPosition(Decimal("2"), Decimal("20000"))

        receipt = await ledger.execute_trade(BookKind.SPOT, "bitcoin", "1", TradeAction.SELL)
        assert receipt.resulting_cash_balance == Decimal("90000")
        assert ledger.position(BookKind.SPOT, "bitcoin") == SpotPosition(Decimal("1"), Decimal("10000"))

        before = ledger.state
        with pytest.raises(InsufficientHoldingsError) as exc_info:
            await ledger.execute_trade(BookKind.SPOT, "bitcoin", "5", TradeAction.SELL)

        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_HOLDINGS
        assert ledger.state == before

    @pytest.mark.asyncio
    async def test_buy_exceeding_cash_is_rejected(self, ledger, price_table):
        await price_table.refresh()

        with pytest.raises(InsufficientFundsError):
            await ledger.execute_trade("spot", "bitcoin", "10.5", "buy")

        assert ledger.cash_balance == Decimal("100000")
        assert ledger.position("spot", "bitcoin") is None

    @pytest.mark.asyncio
    async def test_buy_spending_entire_balance(self, ledger, price_table):
        await price_table.refresh()

        receipt = await ledger.execute_trade("spot", "bitcoin", "10", "buy")

        assert receipt.resulting_cash_balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_selling_to_zero_removes_position(self, ledger, price_table):
        await price_table.refresh()
        await ledger.execute_trade("spot", "ethereum", "3", "buy")

        await ledger.execute_trade("spot", "ethereum", "3", "sell")

        assert ledger.position("spot", "ethereum") is None
        assert "ethereum" not in ledger.state.spot
        assert ledger.cash_balance == Decimal("100000")

    @pytest.mark.asyncio
    async def test_sell_without_position(self, ledger, price_table):
        await price_table.refresh()

        with pytest.raises(NoPositionError) as exc_info:
            await ledger.execute_trade("leveraged", "bitcoin", "1", "sell")

        assert exc_info.value.kind == ErrorKind.NO_POSITION

    @pytest.mark.asyncio
    async def test_spot_and_leveraged_books_are_independent(self, ledger, price_table):
        await price_table.refresh()
        await ledger.execute_trade("spot", "bitcoin", "1", "buy")

        with pytest.raises(NoPositionError):
            await ledger.execute_trade("leveraged", "bitcoin", "1", "sell")

    @pytest.mark.asyncio
    async def test_unknown_instrument(self, ledger, price_table):
        await price_table.refresh()

        with pytest.raises(InstrumentUnknownError) as exc_info:
            await ledger.execute_trade("spot", "not-a-coin", "1", "buy")

        assert exc_info.value.kind == ErrorKind.INSTRUMENT_UNKNOWN

    @pytest.mark.asyncio
    async def test_trade_before_first_refresh_is_unknown_instrument(self, ledger):
        with pytest.raises(InstrumentUnknownError):
            await ledger.execute_trade("spot", "bitcoin", "1", "buy")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", ["0", "-1", "abc", "NaN", ""])
    async def test_invalid_quantity(self, ledger, price_table, quantity):
        await price_table.refresh()

        with pytest.raises(InvalidOrderError):
            await ledger.execute_trade("spot", "bitcoin", quantity, "buy")

        assert ledger.trade_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("leverage", [0, -2, 126, 2.5, True])
    async def test_invalid_leverage(self, ledger, price_table, leverage):
        await price_table.refresh()

        with pytest.raises(InvalidOrderError):
            await ledger.execute_trade("leveraged", "bitcoin", "1", "buy", leverage=leverage)

    @pytest.mark.asyncio
    async def test_leveraged_sell_ignores_leverage_argument(self, ledger, price_table):
        await price_table.refresh()
        await ledger.execute_trade("leveraged", "bitcoin", "2", "buy", leverage=5)

        receipt = await ledger.execute_trade("leveraged", "bitcoin", "1", "sell", leverage=200)

        assert receipt.leverage == 5
        assert ledger.position("leveraged", "bitcoin").quantity == Decimal("1")

    @pytest.mark.asyncio
    async def test_oversized_quantity_is_invalid_order(self, ledger, price_table):
        await price_table.refresh()
        before = ledger.state

        with pytest.raises(InvalidOrderError):
            await ledger.execute_trade("spot", "bitcoin", "1e999999", "buy")

        assert ledger.state == before
        assert ledger.trade_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_buys_are_serialized(self, ledger, price_table, store):
        """Five 3-BTC buys against $100,000: only three are affordable."""
        await price_table.refresh()
        store.yield_on_write = True

        results = await asyncio.gather(
            *(ledger.execute_trade("spot", "bitcoin", "3", "buy") for _ in range(5)),
            return_exceptions=True,
        )

        receipts = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, Exception)]
        assert len(receipts) == 3
        assert len(rejected) == 2
        assert all(isinstance(e, InsufficientFundsError) for e in rejected)
        assert sorted(r.resulting_cash_balance for r in receipts) == [
            Decimal("10000"), Decimal("40000"), Decimal("70000")
        ]
        assert ledger.cash_balance == Decimal("10000")
        assert ledger.position("spot", "bitcoin").quantity == Decimal("9")

    @pytest.mark.asyncio
    async def test_rejected_trade_is_logged(self, ledger, price_table):
        await price_table.refresh()
        messages = []
        handler_id = logger.add(messages.append, level="INFO")
        try:
            with pytest.raises(NoPositionError):
                await ledger.execute_trade("spot", "ethereum", "1", "sell")
        finally:
            logger.remove(handler_id)

        trade_records = [m.record for m in messages if m.record["extra"].get("event_type") == "trade"]
        assert len(trade_records) == 1
        assert trade_records[0]["extra"]["instrument"] == "ethereum"
        assert trade_records[0]["extra"]["kind"] == ErrorKind.NO_POSITION.value

    @pytest.mark.asyncio
    async def test_spot_ignores_leverage(self, ledger, price_table):
        await price_table.refresh()

        receipt = await ledger.execute_trade("spot", "bitcoin", "1", "buy", leverage=50)

        assert receipt.leverage == 1
        assert ledger.valuate("spot") == Decimal("10000")

    @pytest.mark.asyncio
    async def test_leveraged_rebuy_overwrites_entry_and_leverage(self, ledger, price_table, market_source):
        await price_table.refresh()
        await ledger.execute_trade("leveraged", "bitcoin", "1", "buy", leverage=5)

        market_source.set_price("bitcoin", "12000")
        await price_table.refresh()
        await ledger.execute_trade("leveraged", "bitcoin", "1", "buy", leverage=2)

        assert ledger.position("leveraged", "bitcoin") == LeveragedPosition(
            quantity=Decimal("2"), entry_price=Decimal("12000"), leverage=2
        )
        # Cash debit is quantity * price regardless of leverage
        assert ledger.cash_balance == Decimal("78000")
        assert ledger.valuate("leveraged") == Decimal("48000")

    @pytest.mark.asyncio
    async def test_leveraged_sell_keeps_entry_price(self, ledger, price_table, market_source):
        await price_table.refresh()
        await ledger.execute_trade("leveraged", "bitcoin", "3", "buy", leverage=10)

        market_source.set_price("bitcoin", "11000")
        await price_table.refresh()
        receipt = await ledger.execute_trade("leveraged", "bitcoin", "1", "sell")

        assert receipt.leverage == 10
        assert receipt.resulting_cash_balance == Decimal("81000")
        position = ledger.position("leveraged", "bitcoin")
        assert position.quantity == Decimal("2")
        assert position.entry_price == Decimal("10000")

    @pytest.mark.asyncio
    async def test_cash_never_negative(self, ledger, price_table):
        """Random trade sequences never leave a negative balance."""
        await price_table.refresh()
        rng = random.Random(7)
        coins = ["bitcoin", "ethereum", "dogecoin"]

        for _ in range(200):
            book = rng.choice(["spot", "leveraged"])
            action = rng.choice(["buy", "sell"])
            quantity = Decimal(rng.randint(1, 400)) / Decimal(100)
            try:
                await ledger.execute_trade(book, rng.choice(coins), quantity, action, leverage=rng.randint(1, 20))
            except RejectedOperationError:
                pass

            assert ledger.cash_balance >= 0
            for positions in (ledger.state.spot, ledger.state.leveraged):
                assert all(position.quantity > 0 for position in positions.values())

    @pytest.mark.asyncio
    async def test_trade_notification(self, ledger, price_table, notifier):
        await price_table.refresh()
        await ledger.execute_trade("spot", "bitcoin", "1", "buy")
        await ledger.execute_trade("spot", "bitcoin", "1", "sell")

        assert notifier.messages[0][:2] == ("Trade Successful", "Buy order executed successfully.")
        assert notifier.messages[1][:2] == ("Trade Successful", "Sell order executed successfully.")

    @pytest.mark.asyncio
    async def test_rejected_trade_does_not_notify(self, ledger, price_table, notifier):
        await price_table.refresh()

        with pytest.raises(InsufficientFundsError):
            await ledger.execute_trade("spot", "bitcoin", "100", "buy")

        assert notifier.messages == []

    @pytest.mark.asyncio
    async def test_sub_cent_amounts_are_exact(self, ledger, price_table):
        await price_table.refresh()

        receipt = await ledger.execute_trade("spot", "dogecoin", "0.1", "buy")

        assert receipt.cost == Decimal("0.012345678")
        assert ledger.cash_balance == Decimal("99999.987654322")


class TestPortfolioValuation:
    """Test suite for valuation, holdings and summary."""

    @pytest.fixture
    def ledger(self, price_table, store, clock):
        return PortfolioLedger(price_table, store, starting_balance="100000", clock=clock)

    @pytest.mark.asyncio
    async def test_valuation_is_repeatable(self, ledger, price_table):
        await price_table.refresh()
        await ledger.execute_trade("spot", "bitcoin", "0.5", "buy")
        await ledger.execute_trade("spot", "dogecoin", "1000", "buy")

        first = ledger.valuate("spot")
        second = ledger.valuate("spot")

        assert first == second == Decimal("5000") + Decimal("123.45678000")

    @pytest.mark.asyncio
    async def test_missing_instrument_contributes_zero(self, ledger, price_table, market_source):
        await price_table.refresh()
        await ledger.execute_trade("spot", "bitcoin", "1", "buy")
        await ledger.execute_trade("spot", "ethereum", "2", "buy")

        market_source.remove("ethereum")
        await price_table.refresh()

        assert ledger.valuate("spot") == Decimal("10000")
        holdings = {holding.instrument_id: holding for holding in ledger.holdings("spot")}
        assert holdings["ethereum"].current_value is None
        assert holdings["ethereum"].unrealized_pnl is None
        assert holdings["bitcoin"].current_value == Decimal("10000")

    @pytest.mark.asyncio
    async def test_empty_books_value_zero(self, ledger, price_table):
        await price_table.refresh()

        assert ledger.valuate("spot") == Decimal("0")
        assert ledger.valuate("leveraged") == Decimal("0")

    @pytest.mark.asyncio
    async def test_holdings_pnl(self, ledger, price_table, market_source):
        await price_table.refresh()
        await ledger.execute_trade("spot", "ethereum", "2", "buy")
        await ledger.execute_trade("leveraged", "bitcoin", "1", "buy", leverage=3)

        market_source.set_price("ethereum", "3000")
        market_source.set_price("bitcoin", "9000")
        await price_table.refresh()

        spot = ledger.holdings("spot")[0]
        assert spot.average_entry_price == Decimal("2500")
        assert spot.current_value == Decimal("6000")
        assert spot.unrealized_pnl == Decimal("1000")
        assert spot.symbol == "ETH"

        leveraged = ledger.holdings("leveraged")[0]
        assert leveraged.leverage == 3
        assert leveraged.current_value == Decimal("27000")
        assert leveraged.unrealized_pnl == Decimal("-3000")

    @pytest.mark.asyncio
    async def test_summary(self, ledger, price_table):
        await price_table.refresh()
        await ledger.execute_trade("spot", "bitcoin", "1", "buy")
        await ledger.execute_trade("leveraged", "ethereum", "2", "buy", leverage=4)

        summary = ledger.summary()

        assert summary["cash_balance"] == Decimal("85000")
        assert summary["spot_value"] == Decimal("10000")
        assert summary["leveraged_value"] == Decimal("20000")
        assert summary["total_equity"] == Decimal("115000")
        assert summary["trade_count"] == 2
        assert summary["unsaved_changes"] is False


class TestPortfolioPersistence:
    """Test suite for ledger load/save behaviour."""

    @pytest.fixture
    def ledger(self, price_table, store, clock):
        return PortfolioLedger(price_table, store, starting_balance="100000", clock=clock)

    @pytest.mark.asyncio
    async def test_round_trip(self, ledger, price_table, store, clock):
        await price_table.refresh()
        await ledger.execute_trade("spot", "dogecoin", "1234.56789", "buy")
        await ledger.execute_trade("spot", "dogecoin", "0.00001", "sell")
        await ledger.execute_trade("leveraged", "ethereum", "0.75", "buy", leverage=20)

        restarted = PortfolioLedger(price_table, store, starting_balance="100000", clock=clock)
        loaded = await restarted.load()

        assert loaded == ledger.state
        assert restarted.cash_balance == ledger.cash_balance

    @pytest.mark.asyncio
    async def test_saved_document_uses_exact_strings(self, ledger, price_table, store):
        await price_table.refresh()
        await ledger.execute_trade("spot", "dogecoin", "0.1", "buy")

        document = json.loads(await store.get("portfolio_state"))

        assert document["version"] == 1
        assert document["cash_balance"] == "99999.987654322"
        assert document["spot"]["dogecoin"] == {"quantity": "0.1", "total_cost_basis": "0.012345678"}

    @pytest.mark.asyncio
    async def test_load_without_saved_state(self, ledger):
        state = await ledger.load()

        assert state.cash_balance == Decimal("100000")
        assert state.spot == {}
        assert state.leveraged == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        b"not json",
        b"[]",
        b'{"version": 99, "cash_balance": "5"}',
        b'{"version": 1, "cash_balance": "-5", "spot": {}, "leveraged": {}}',
        b'{"version": 1, "cash_balance": "5", "spot": {"x": {"quantity": "0", "total_cost_basis": "1"}}}',
        b'{"version": 1, "cash_balance": "5", "leveraged": {"x": {"quantity": "1", "entry_price": "1", "leverage": 0}}}',
    ])
    async def test_corrupt_state_starts_fresh(self, ledger, store, payload):
        await store.set("portfolio_state", payload)

        state = await ledger.load()

        assert state.cash_balance == Decimal("100000")
        assert state.spot == {}

    @pytest.mark.asyncio
    async def test_unreadable_store_starts_fresh(self, ledger, store):
        store.fail_reads = True

        state = await ledger.load()

        assert state.cash_balance == Decimal("100000")

    @pytest.mark.asyncio
    async def test_failed_save_keeps_trade(self, ledger, price_table, store, clock):
        await price_table.refresh()
        store.fail_writes = True

        receipt = await ledger.execute_trade("spot", "bitcoin", "1", "buy")

        assert receipt.resulting_cash_balance == Decimal("90000")
        assert ledger.cash_balance == Decimal("90000")
        assert ledger.unsaved_changes is True
        assert await store.get("portfolio_state") is None

        # Next successful save carries both trades
        store.fail_writes = False
        await ledger.execute_trade("spot", "bitcoin", "1", "buy")
        assert ledger.unsaved_changes is False

        restarted = PortfolioLedger(price_table, store, starting_balance="100000", clock=clock)
        await restarted.load()
        assert restarted.position("spot", "bitcoin").quantity == Decimal("2")

    @pytest.mark.asyncio
    async def test_reset(self, ledger, price_table, store, clock):
        await price_table.refresh()
        await ledger.execute_trade("spot", "bitcoin", "1", "buy")

        state = await ledger.reset()

        assert state.cash_balance == Decimal("100000")
        restarted = PortfolioLedger(price_table, store, starting_balance="100000", clock=clock)
        assert (await restarted.load()).spot == {}

    @pytest.mark.asyncio
    async def test_state_copy_is_detached(self, ledger, price_table):
        await price_table.refresh()
        await ledger.execute_trade("spot", "bitcoin", "1", "buy")

        state = ledger.state
        state.cash_balance = Decimal("0")
        state.spot.clear()

        assert ledger.cash_balance == Decimal("90000")
        assert ledger.position("spot", "bitcoin") is not None


def test_instrument_helper_builds_decimal_prices():
    instrument = make_instrument("x", "X", "Example", 1.5)

    assert instrument.current_price == Decimal("1.5")
