from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class TradeType(str, Enum):
    INITIAL = "Initial"
    FREE_ROLL = "Free Roll"
    REDUCED = "Reduced"
    ADDED = "Added"


class TradeSize(str, Enum):
    """Position size bucket, labelled with its share of account risk."""

    QTR = "Qtr 6.25%"
    HALF = "Half 12.50%"
    FULL = "Full 25%"
    DOUBLE = "2X Full 50%"


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _D(v: Any) -> Decimal:
    """
    Convert a numeric-ish value to Decimal safely.

    Never call Decimal(float) directly (binary float artifacts).
    """
    if v is None:
        return Decimal("0")
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def realized_pl(*, entry_price: float, exit_price: float, qty: int, fees: Optional[float] = None) -> float:
    """
    Realized P&L of a fully closed position:

        (exit_price - entry_price) * qty - (fees or 0)
    """
    pl = (_D(exit_price) - _D(entry_price)) * _D(qty) - _D(fees)
    return float(pl)


@dataclass(frozen=True, slots=True)
class LiveTrade:
    """
    An open position in the journal.

    Table: "LiveTrade" (keyed by `id`, unique across the live set).
    """

    id: str
    account_id: str
    symbol: str
    entry_price: float
    trade_type: TradeType
    size: TradeSize
    qty: int
    sl_percentage: float
    entry_date: datetime

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("id is required")
        object.__setattr__(self, "trade_type", TradeType(self.trade_type))
        object.__setattr__(self, "size", TradeSize(self.size))
        object.__setattr__(self, "entry_date", _as_utc(self.entry_date))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "accountId": self.account_id,
            "symbol": self.symbol,
            "entryPrice": self.entry_price,
            "tradeType": self.trade_type.value,
            "size": self.size.value,
            "qty": self.qty,
            "slPercentage": self.sl_percentage,
            "entryDate": self.entry_date.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ClosedTrade:
    """
    A position that has been closed. Replaces the live record with the same id.

    Table: "ClosedTrade".
    """

    id: str
    account_id: str
    symbol: str
    entry_price: float
    exit_price: float
    trade_type: TradeType
    size: TradeSize
    qty: int
    entry_date: datetime
    exit_date: datetime
    realized_pl: float
    fees: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("id is required")
        object.__setattr__(self, "trade_type", TradeType(self.trade_type))
        object.__setattr__(self, "size", TradeSize(self.size))
        object.__setattr__(self, "entry_date", _as_utc(self.entry_date))
        object.__setattr__(self, "exit_date", _as_utc(self.exit_date))

    @classmethod
    def from_live(
        cls,
        live: LiveTrade,
        *,
        exit_price: float,
        fees: Optional[float] = None,
        exit_date: datetime,
    ) -> "ClosedTrade":
        return cls(
            id=live.id,
            account_id=live.account_id,
            symbol=live.symbol,
            entry_price=live.entry_price,
            exit_price=exit_price,
            trade_type=live.trade_type,
            size=live.size,
            qty=live.qty,
            entry_date=live.entry_date,
            exit_date=exit_date,
            fees=fees,
            realized_pl=realized_pl(entry_price=live.entry_price, exit_price=exit_price, qty=live.qty, fees=fees),
        )

    def same_close_terms(self, *, exit_price: float, fees: Optional[float] = None) -> bool:
        """True when a repeated close carries the terms this record was closed with."""
        return _D(exit_price) == _D(self.exit_price) and _D(fees) == _D(self.fees)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "accountId": self.account_id,
            "symbol": self.symbol,
            "entryPrice": self.entry_price,
            "exitPrice": self.exit_price,
            "tradeType": self.trade_type.value,
            "size": self.size.value,
            "qty": self.qty,
            "entryDate": self.entry_date.isoformat(),
            "exitDate": self.exit_date.isoformat(),
            "fees": self.fees,
            "realizedPL": self.realized_pl,
        }
