"""
Kestrel Domain Models

Instruments, ledger positions, portfolio state and alert rules, together
with the dict codecs used to persist them. All money and quantity values
are Decimal; they are written as exact strings so a save/load round trip
reproduces them digit for digit.
"""

from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

STATE_VERSION = 1

_ZERO = Decimal("0")


class BookKind(str, Enum):
    """Position books held by the ledger."""
    SPOT = "spot"
    LEVERAGED = "leveraged"


class TradeAction(str, Enum):
    """Trade directions."""
    BUY = "buy"
    SELL = "sell"


class AlertDirection(str, Enum):
    """Price alert predicates."""
    ABOVE = "Above"
    BELOW = "Below"

    @classmethod
    def parse(cls, value: str) -> "AlertDirection":
        """Accept the canonical value or any casing of it."""
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        raise ValueError(f"Unknown alert direction: {value}")


def to_decimal(value: Any) -> Decimal:
    """
    Convert a JSON scalar to a finite Decimal.

    Floats go through ``str`` so 0.1 stays 0.1 instead of its binary expansion.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError("Boolean is not a number")
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError(f"Not a decimal: {value!r}") from e

    if not result.is_finite():
        raise ValueError(f"Not a finite decimal: {value!r}")
    return result


@dataclass(frozen=True)
class Instrument:
    """Market snapshot of one tradable coin."""
    id: str
    symbol: str
    name: str
    current_price: Decimal
    market_cap: Decimal = _ZERO

    @property
    def display_name(self) -> str:
        return self.name


@dataclass
class SpotPosition:
    """Spot holding; total_cost_basis is cumulative dollars paid, not per unit."""
    quantity: Decimal
    total_cost_basis: Decimal

    @property
    def average_entry_price(self) -> Decimal:
        if self.quantity == 0:
            return _ZERO
        return self.total_cost_basis / self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quantity": str(self.quantity),
            "total_cost_basis": str(self.total_cost_basis),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpotPosition":
        quantity = to_decimal(data["quantity"])
        basis = to_decimal(data["total_cost_basis"])
        if quantity <= 0:
            raise ValueError("Stored spot position has non-positive quantity")
        if basis < 0:
            raise ValueError("Stored spot position has negative cost basis")
        return cls(quantity=quantity, total_cost_basis=basis)


@dataclass
class LeveragedPosition:
    """Leveraged holding; entry_price and leverage belong to the latest buy."""
    quantity: Decimal
    entry_price: Decimal
    leverage: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quantity": str(self.quantity),
            "entry_price": str(self.entry_price),
            "leverage": self.leverage,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LeveragedPosition":
        quantity = to_decimal(data["quantity"])
        entry_price = to_decimal(data["entry_price"])
        leverage = data["leverage"]
        if quantity <= 0:
            raise ValueError("Stored leveraged position has non-positive quantity")
        if entry_price <= 0:
            raise ValueError("Stored leveraged position has non-positive entry price")
        if not isinstance(leverage, int) or isinstance(leverage, bool) or leverage < 1:
            raise ValueError("Stored leveraged position has invalid leverage")
        return cls(quantity=quantity, entry_price=entry_price, leverage=leverage)


@dataclass
class PortfolioState:
    """Cash plus the two position books, keyed by instrument id."""
    cash_balance: Decimal
    spot: Dict[str, SpotPosition] = field(default_factory=dict)
    leveraged: Dict[str, LeveragedPosition] = field(default_factory=dict)

    @classmethod
    def initial(cls, starting_balance: Decimal) -> "PortfolioState":
        return cls(cash_balance=to_decimal(starting_balance))

    def book(self, kind: BookKind) -> Dict[str, Any]:
        return self.spot if kind == BookKind.SPOT else self.leveraged

    def copy(self) -> "PortfolioState":
        return deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "cash_balance": str(self.cash_balance),
            "spot": {key: pos.to_dict() for key, pos in self.spot.items()},
            "leveraged": {key: pos.to_dict() for key, pos in self.leveraged.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortfolioState":
        """
        Rebuild state from its persisted form.

        Raises:
            ValueError, KeyError, TypeError: the document is malformed or
                violates a ledger invariant
        """
        if data.get("version") != STATE_VERSION:
            raise ValueError(f"Unsupported portfolio state version: {data.get('version')}")

        cash = to_decimal(data["cash_balance"])
        if cash < 0:
            raise ValueError("Stored cash balance is negative")

        return cls(
            cash_balance=cash,
            spot={
                str(key): SpotPosition.from_dict(value)
                for key, value in data.get("spot", {}).items()
            },
            leveraged={
                str(key): LeveragedPosition.from_dict(value)
                for key, value in data.get("leveraged", {}).items()
            },
        )


@dataclass(frozen=True)
class TradeReceipt:
    """Outcome of a successful trade."""
    action: TradeAction
    book: BookKind
    instrument_id: str
    quantity: Decimal
    price: Decimal
    cost: Decimal
    resulting_cash_balance: Decimal
    executed_at: datetime
    leverage: int = 1


@dataclass(frozen=True)
class Holding:
    """Read-only view of one position valued against the current price table."""
    book: BookKind
    instrument_id: str
    name: str
    symbol: str
    quantity: Decimal
    average_entry_price: Decimal
    leverage: int = 1
    current_price: Optional[Decimal] = None
    current_value: Optional[Decimal] = None
    unrealized_pnl: Optional[Decimal] = None


@dataclass
class AlertRule:
    """Persisted price threshold; fires once, then stays triggered."""
    id: str
    instrument_id: str
    target_price: Decimal
    direction: AlertDirection
    created_at: datetime
    triggered: bool = False
    coin_name: str = ""
    coin_symbol: str = ""

    def is_satisfied_by(self, price: Decimal) -> bool:
        if self.direction == AlertDirection.ABOVE:
            return price >= self.target_price
        return price <= self.target_price

    def describe(self) -> str:
        label = self.coin_name or self.instrument_id
        if self.coin_symbol:
            label = f"{label} ({self.coin_symbol})"
        return f"{label} {self.direction.value.lower()} {format_usd(self.target_price)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "instrument_id": self.instrument_id,
            "coin_name": self.coin_name,
            "coin_symbol": self.coin_symbol,
            "target_price": str(self.target_price),
            "direction": self.direction.value,
            "created_at": self.created_at.isoformat(),
            "triggered": self.triggered,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlertRule":
        target = to_decimal(data["target_price"])
        if target <= 0:
            raise ValueError("Stored alert rule has non-positive target price")
        triggered = data.get("triggered", False)
        if not isinstance(triggered, bool):
            raise ValueError("Stored alert rule has non-boolean triggered flag")

        return cls(
            id=str(data["id"]),
            instrument_id=str(data["instrument_id"]),
            target_price=target,
            direction=AlertDirection.parse(data["direction"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            triggered=triggered,
            coin_name=str(data.get("coin_name", "")),
            coin_symbol=str(data.get("coin_symbol", "")),
        )

    def snapshot(self) -> "AlertRule":
        return replace(self)


@dataclass(frozen=True)
class FiredRule:
    """A rule that fired during an evaluation pass and the price that fired it."""
    rule: AlertRule
    price: Decimal
    fired_at: datetime


def format_usd(value: Decimal) -> str:
    """Dollar amount with cents, or up to 8 decimals for sub-dollar prices."""
    if value is None:
        return "n/a"
    if abs(value) >= 1 or value == 0:
        return f"${value:,.2f}"
    text = f"{value:.8f}".rstrip("0").rstrip(".")
    return f"${text}"
