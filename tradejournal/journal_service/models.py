from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tradejournal.ledger.models import TradeSize, TradeType


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LiveTradeCreate(_Body):
    account_id: str
    symbol: str = Field(min_length=1)
    entry_price: float = Field(gt=0)
    trade_type: TradeType
    size: TradeSize
    qty: int = Field(gt=0)
    sl_percentage: float = Field(
        ge=1,
        le=8,
        validation_alias=AliasChoices("slPercentage", "stopLossPercentage", "sl_percentage"),
    )


class LiveTradeUpdate(_Body):
    """Partial update; at least one field must be present."""

    symbol: Optional[str] = Field(default=None, min_length=1)
    entry_price: Optional[float] = Field(default=None, gt=0)
    trade_type: Optional[TradeType] = None
    size: Optional[TradeSize] = None
    qty: Optional[int] = Field(default=None, gt=0)
    sl_percentage: Optional[float] = Field(
        default=None,
        ge=1,
        le=8,
        validation_alias=AliasChoices("slPercentage", "stopLossPercentage", "sl_percentage"),
    )


class TradeCloseBody(_Body):
    exit_price: float = Field(gt=0)
    fees: Optional[float] = Field(default=None, ge=0)
