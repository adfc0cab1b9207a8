"""
Trade-event envelopes (a closed tagged union over four variants).

Wire shape (camelCase JSON):

    {"eventType": "TradeCreated", "eventId": "<hex>", "producedAt": "<iso8601>",
     "trade": {...}}
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tradejournal.ledger.models import LiveTrade, TradeSize, TradeType

EVENT_TYPES: tuple[str, ...] = ("TradeCreated", "TradeUpdated", "TradeDeleted", "TradeClosed")

# Fields a TradeUpdated may carry (accountId and entryDate are immutable).
MUTABLE_FIELDS: tuple[str, ...] = ("symbol", "entry_price", "trade_type", "size", "qty", "sl_percentage")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_event_id() -> str:
    return uuid.uuid4().hex


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class TradeRef(_WireModel):
    id: str = Field(min_length=1)


class LiveTradeRecord(_WireModel):
    """Full live-trade record carried by TradeCreated."""

    id: str = Field(min_length=1)
    account_id: str
    symbol: str
    entry_price: float
    trade_type: TradeType
    size: TradeSize
    qty: int
    sl_percentage: float = Field(
        validation_alias=AliasChoices("slPercentage", "stopLossPercentage", "sl_percentage"),
        serialization_alias="slPercentage",
    )
    entry_date: datetime = Field(default_factory=_utc_now)

    @classmethod
    def from_live_trade(cls, trade: LiveTrade) -> "LiveTradeRecord":
        return cls(
            id=trade.id,
            account_id=trade.account_id,
            symbol=trade.symbol,
            entry_price=trade.entry_price,
            trade_type=trade.trade_type,
            size=trade.size,
            qty=trade.qty,
            sl_percentage=trade.sl_percentage,
            entry_date=trade.entry_date,
        )

    def to_live_trade(self) -> LiveTrade:
        return LiveTrade(
            id=self.id,
            account_id=self.account_id,
            symbol=self.symbol,
            entry_price=self.entry_price,
            trade_type=self.trade_type,
            size=self.size,
            qty=self.qty,
            sl_percentage=self.sl_percentage,
            entry_date=self.entry_date,
        )


class TradeChanges(_WireModel):
    """Id plus a partial set of mutable fields."""

    id: str = Field(min_length=1)
    symbol: Optional[str] = None
    entry_price: Optional[float] = None
    trade_type: Optional[TradeType] = None
    size: Optional[TradeSize] = None
    qty: Optional[int] = None
    sl_percentage: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("slPercentage", "stopLossPercentage", "sl_percentage"),
        serialization_alias="slPercentage",
    )

    def changes(self) -> Dict[str, Any]:
        """Mutable fields that are set, keyed by their snake_case name."""
        out: Dict[str, Any] = {}
        for name in MUTABLE_FIELDS:
            v = getattr(self, name)
            if v is not None:
                out[name] = v
        return out

    def is_empty(self) -> bool:
        return not self.changes()


class TradeCloseRequest(_WireModel):
    id: str = Field(min_length=1)
    exit_price: float
    fees: Optional[float] = None


class _EventBase(_WireModel):
    event_id: str = Field(default_factory=_new_event_id)
    produced_at: datetime = Field(default_factory=_utc_now)

    @property
    def trade_id(self) -> str:
        return self.trade.id  # type: ignore[attr-defined]


class TradeCreated(_EventBase):
    event_type: Literal["TradeCreated"] = "TradeCreated"
    trade: LiveTradeRecord


class TradeUpdated(_EventBase):
    event_type: Literal["TradeUpdated"] = "TradeUpdated"
    trade: TradeChanges


class TradeDeleted(_EventBase):
    event_type: Literal["TradeDeleted"] = "TradeDeleted"
    trade: TradeRef


class TradeClosed(_EventBase):
    event_type: Literal["TradeClosed"] = "TradeClosed"
    trade: TradeCloseRequest


TradeEvent = Union[TradeCreated, TradeUpdated, TradeDeleted, TradeClosed]

EVENT_MODELS: Dict[str, type[_EventBase]] = {
    "TradeCreated": TradeCreated,
    "TradeUpdated": TradeUpdated,
    "TradeDeleted": TradeDeleted,
    "TradeClosed": TradeClosed,
}
