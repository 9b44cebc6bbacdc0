"""
Kestrel Portfolio Ledger

Simulated portfolio with two independent books. The spot book tracks the
cumulative cost basis of each holding; the leveraged book tracks the entry
price and leverage of the latest buy and scales valuation by leverage.
Trades execute at the current price-table price and the full state is
persisted after every successful trade.
"""

import asyncio
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from config.settings import Settings, get_settings
from core.errors import (
    InstrumentUnknownError,
    InsufficientFundsError,
    InsufficientHoldingsError,
    InvalidOrderError,
    NoPositionError,
    PersistenceError,
    RejectedOperationError,
)
from core.models import (
    BookKind,
    Holding,
    LeveragedPosition,
    PortfolioState,
    SpotPosition,
    TradeAction,
    TradeReceipt,
    to_decimal,
)
from core.scheduler import Clock, SystemClock
from data.price_table import PriceSnapshot, PriceTable
from utils.logger import ledger_logger as logger, log_trade
from utils.redis_store import PersistenceStore
from utils.slack import MessageType, NotificationSink

_ZERO = Decimal("0")


class PortfolioLedger:
    """
    Paper-trading ledger.

    Trades are serialized by an asyncio lock, so no two trades interleave
    their read-modify-write of cash and positions. Each trade is applied to
    a copy of the state and swapped in only once every check has passed.
    """

    def __init__(
        self,
        price_table: PriceTable,
        store: PersistenceStore,
        notifier: Optional[NotificationSink] = None,
        starting_balance: Optional[Union[Decimal, str, int]] = None,
        state_key: Optional[str] = None,
        max_leverage: Optional[int] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.price_table = price_table
        self.store = store
        self.notifier = notifier
        self.starting_balance = to_decimal(
            starting_balance if starting_balance is not None else self.settings.initial_capital
        )
        self.state_key = state_key or self.settings.portfolio_state_key
        self.max_leverage = max_leverage or self.settings.max_leverage
        self.clock = clock or SystemClock()

        self._state = PortfolioState.initial(self.starting_balance)
        self._lock = asyncio.Lock()
        self.unsaved_changes = False
        self.trade_count = 0

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def cash_balance(self) -> Decimal:
        return self._state.cash_balance

    @property
    def state(self) -> PortfolioState:
        """Copy of the current state; mutating it does not touch the ledger."""
        return self._state.copy()

    def position(self, book: Union[BookKind, str], instrument_id: str):
        position = self._state.book(BookKind(book)).get(instrument_id)
        return None if position is None else type(position)(**vars(position))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> PortfolioState:
        """
        Restore state from the store.

        Missing, unreadable or corrupt state starts a fresh portfolio with
        the starting balance; it is never fatal.
        """
        async with self._lock:
            self._state = await self._read_state()
            self.unsaved_changes = False
            logger.info(
                f"Portfolio loaded: cash ${self._state.cash_balance:,.2f}, "
                f"{len(self._state.spot)} spot / {len(self._state.leveraged)} leveraged positions"
            )
            return self._state.copy()

    async def _read_state(self) -> PortfolioState:
        try:
            raw = await self.store.get(self.state_key)
        except PersistenceError as e:
            logger.error(f"Could not read portfolio state, starting fresh: {e}")
            return PortfolioState.initial(self.starting_balance)

        if raw is None:
            logger.info("No saved portfolio found, starting with default balance")
            return PortfolioState.initial(self.starting_balance)

        try:
            return PortfolioState.from_dict(json.loads(raw.decode("utf-8")))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Saved portfolio is corrupt, starting fresh: {e}")
            return PortfolioState.initial(self.starting_balance)

    async def save(self) -> bool:
        """
        Persist the current state.

        A failed write is logged and leaves the in-memory state as the source
        of truth; the next successful save carries every pending change.

        Returns:
            bool: True if the state was written
        """
        payload = json.dumps(self._state.to_dict(), sort_keys=True).encode("utf-8")
        try:
            await self.store.set(self.state_key, payload)
        except PersistenceError as e:
            self.unsaved_changes = True
            logger.storage(f"Portfolio save failed, will retry on next change: {e}", key=self.state_key, level="ERROR")
            return False

        self.unsaved_changes = False
        logger.storage("Portfolio saved", key=self.state_key)
        return True

    async def reset(self) -> PortfolioState:
        """Discard all positions and restore the starting balance."""
        async with self._lock:
            self._state = PortfolioState.initial(self.starting_balance)
            await self.save()
            logger.warning(f"Portfolio reset to ${self.starting_balance:,.2f}")
            return self._state.copy()

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def _validate_quantity(self, quantity: Any) -> Decimal:
        try:
            value = to_decimal(quantity)
        except ValueError:
            raise InvalidOrderError("Please enter a valid amount.") from None

        if value <= 0:
            raise InvalidOrderError("Amount must be greater than 0.")
        return value

    def _validate_leverage(self, book: BookKind, leverage: Any) -> int:
        if book == BookKind.SPOT:
            return 1

        if isinstance(leverage, bool) or not isinstance(leverage, int):
            raise InvalidOrderError(f"Leverage must be a whole number, got {leverage!r}")
        if leverage < 1 or leverage > self.max_leverage:
            raise InvalidOrderError(f"Leverage must be between 1 and {self.max_leverage}, got {leverage}")
        return leverage

    async def execute_trade(
        self,
        book: Union[BookKind, str],
        instrument_id: str,
        quantity: Union[Decimal, str, int, float],
        action: Union[TradeAction, str],
        leverage: int = 1,
    ) -> TradeReceipt:
        """
        Execute a simulated trade at the current price.

        Args:
            book: spot or leveraged
            instrument_id: Price table id of the instrument
            quantity: Units to buy or sell, greater than 0
            action: buy or sell
            leverage: Multiplier for leveraged buys; ignored for sells and the spot book

        Returns:
            TradeReceipt: Execution details and the resulting cash balance

        Raises:
            InstrumentUnknownError, InsufficientFundsError, NoPositionError,
            InsufficientHoldingsError, InvalidOrderError: the trade was
                rejected and nothing changed
        """
        book = BookKind(book)
        action = TradeAction(action)
        quantity = self._validate_quantity(quantity)
        # Sells keep the held position's leverage
        if action == TradeAction.BUY:
            leverage = self._validate_leverage(book, leverage)
        else:
            leverage = 1

        async with self._lock:
            try:
                instrument = self.price_table.get(instrument_id)
                if instrument is None:
                    raise InstrumentUnknownError(instrument_id)

                price = instrument.current_price
                # Leverage scales valuation only; the cash debit is always quantity * price
                try:
                    cost = quantity * price
                except ArithmeticError:
                    raise InvalidOrderError(f"Amount {quantity} is too large to trade.") from None

                if action == TradeAction.BUY:
                    new_state = self._apply_buy(book, instrument_id, quantity, price, cost, leverage)
                else:
                    new_state = self._apply_sell(book, instrument_id, quantity, cost)
                    held = self._state.book(book)[instrument_id]
                    leverage = getattr(held, "leverage", 1)
            except RejectedOperationError as e:
                logger.trade(
                    f"Rejected [{book.value}] {action.value} {quantity} {instrument_id}: {e}",
                    instrument=instrument_id,
                    kind=e.kind.value,
                )
                raise

            self._state = new_state
            self.trade_count += 1

            receipt = TradeReceipt(
                action=action,
                book=book,
                instrument_id=instrument_id,
                quantity=quantity,
                price=price,
                cost=cost,
                resulting_cash_balance=new_state.cash_balance,
                executed_at=self.clock.now(),
                leverage=leverage,
            )

            await self.save()

        log_trade(
            book=book.value,
            side=action.value,
            instrument=instrument_id,
            quantity=quantity,
            price=price,
            cash_balance=receipt.resulting_cash_balance,
            leverage=leverage,
        )

        if self.notifier is not None:
            verb = "Buy" if action == TradeAction.BUY else "Sell"
            self.notifier.notify("Trade Successful", f"{verb} order executed successfully.", MessageType.TRADE)

        return receipt

    def _apply_buy(
        self,
        book: BookKind,
        instrument_id: str,
        quantity: Decimal,
        price: Decimal,
        cost: Decimal,
        leverage: int,
    ) -> PortfolioState:
        if cost > self._state.cash_balance:
            raise InsufficientFundsError(cost, self._state.cash_balance)

        state = self._state.copy()
        state.cash_balance -= cost

        if book == BookKind.SPOT:
            position = state.spot.get(instrument_id)
            if position is None:
                state.spot[instrument_id] = SpotPosition(quantity=quantity, total_cost_basis=cost)
            else:
                position.quantity += quantity
                position.total_cost_basis += cost
        else:
            position = state.leveraged.get(instrument_id)
            held = position.quantity if position is not None else _ZERO
            # Latest buy's entry price and leverage replace the previous ones
            state.leveraged[instrument_id] = LeveragedPosition(
                quantity=held + quantity,
                entry_price=price,
                leverage=leverage,
            )

        return state

    def _apply_sell(
        self,
        book: BookKind,
        instrument_id: str,
        quantity: Decimal,
        proceeds: Decimal,
    ) -> PortfolioState:
        current = self._state.book(book).get(instrument_id)
        if current is None:
            raise NoPositionError(instrument_id, book.value)
        if quantity > current.quantity:
            raise InsufficientHoldingsError(instrument_id, quantity, current.quantity)

        state = self._state.copy()
        state.cash_balance += proceeds
        positions = state.book(book)
        position = positions[instrument_id]
        old_quantity = position.quantity
        position.quantity = old_quantity - quantity

        if book == BookKind.SPOT:
            released = (position.total_cost_basis / old_quantity) * quantity
            position.total_cost_basis = max(position.total_cost_basis - released, _ZERO)

        if position.quantity == 0:
            del positions[instrument_id]

        return state

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------

    @staticmethod
    def _position_value(position, snapshot: PriceSnapshot, instrument_id: str) -> Optional[Decimal]:
        price = snapshot.price_of(instrument_id)
        if price is None:
            return None
        return position.quantity * price * getattr(position, "leverage", 1)

    def valuate(self, book: Union[BookKind, str]) -> Decimal:
        """
        Mark a book to the current price table.

        Positions whose instrument is missing from the table contribute 0.
        Reads one snapshot and sums in instrument-id order, so repeated calls
        on unchanged state and prices return identical results.
        """
        snapshot = self.price_table.snapshot
        positions = self._state.book(BookKind(book))

        total = _ZERO
        for instrument_id in sorted(positions):
            value = self._position_value(positions[instrument_id], snapshot, instrument_id)
            if value is not None:
                total += value
        return total

    def holdings(self, book: Union[BookKind, str]) -> List[Holding]:
        """Per-position view with current value and unrealized P&L."""
        book = BookKind(book)
        snapshot = self.price_table.snapshot
        result = []

        for instrument_id, position in self._state.book(book).items():
            instrument = snapshot.get(instrument_id)
            leverage = getattr(position, "leverage", 1)

            if book == BookKind.SPOT:
                entry = position.average_entry_price
            else:
                entry = position.entry_price

            current_price = current_value = pnl = None
            if instrument is not None:
                current_price = instrument.current_price
                current_value = position.quantity * current_price * leverage
                if book == BookKind.SPOT:
                    pnl = current_value - position.total_cost_basis
                else:
                    pnl = (current_price - position.entry_price) * position.quantity * leverage

            result.append(Holding(
                book=book,
                instrument_id=instrument_id,
                name=instrument.name if instrument else instrument_id,
                symbol=instrument.symbol if instrument else "",
                quantity=position.quantity,
                average_entry_price=entry,
                leverage=leverage,
                current_price=current_price,
                current_value=current_value,
                unrealized_pnl=pnl,
            ))

        return result

    def summary(self) -> Dict[str, Any]:
        """Cash, per-book valuation and total equity."""
        spot_value = self.valuate(BookKind.SPOT)
        leveraged_value = self.valuate(BookKind.LEVERAGED)
        return {
            "cash_balance": self.cash_balance,
            "spot_value": spot_value,
            "leveraged_value": leveraged_value,
            "total_equity": self.cash_balance + spot_value + leveraged_value,
            "spot_positions": len(self._state.spot),
            "leveraged_positions": len(self._state.leveraged),
            "trade_count": self.trade_count,
            "unsaved_changes": self.unsaved_changes,
        }
