from datetime import datetime, timedelta, timezone

import pytest

from tradejournal.ledger.models import LiveTrade, TradeSize, TradeType
from tradejournal.persistence.memory_store import InMemoryTradeStore
from tradejournal.persistence.trade_store import TradeNotFoundError

T0 = datetime(2026, 1, 8, tzinfo=timezone.utc)


def _trade(trade_id: str = "t1", *, account_id: str = "a1", entry_date: datetime = T0) -> LiveTrade:
    return LiveTrade(
        id=trade_id,
        account_id=account_id,
        symbol="AAPL",
        entry_price=150.0,
        trade_type=TradeType.INITIAL,
        size=TradeSize.FULL,
        qty=10,
        sl_percentage=4.0,
        entry_date=entry_date,
    )


def test_create_is_idempotent() -> None:
    store = InMemoryTradeStore()
    first = store.create(_trade())
    again = store.create(_trade())
    assert first is again
    assert len(store.list_live("a1")) == 1


def test_update_applies_partial_changes_and_keeps_identity_fields() -> None:
    store = InMemoryTradeStore()
    store.create(_trade())

    updated = store.update("t1", {"qty": 5, "trade_type": "Reduced", "symbol": None})

    assert updated is not None
    assert updated.qty == 5
    assert updated.trade_type is TradeType.REDUCED
    assert updated.symbol == "AAPL"
    assert updated.account_id == "a1"
    assert updated.entry_date == T0


def test_update_and_delete_of_missing_trade_return_none() -> None:
    store = InMemoryTradeStore()
    assert store.update("nope", {"qty": 1}) is None
    assert store.delete("nope") is None


def test_close_replaces_live_with_closed_and_is_repeatable() -> None:
    exit_at = T0 + timedelta(days=1)
    store = InMemoryTradeStore(clock=lambda: exit_at)
    store.create(_trade())

    closed = store.close("t1", 160.0, 5.0)
    again = store.close("t1", 160.0, 5.0)

    assert store.get_live("t1") is None
    assert closed.realized_pl == 95.0
    assert closed.exit_date == exit_at
    assert again == closed


def test_second_close_with_other_terms_keeps_first_close() -> None:
    exit_at = T0 + timedelta(days=1)
    store = InMemoryTradeStore(clock=lambda: exit_at)
    store.create(_trade())
    first = store.close("t1", 160.0, 5.0)

    second = store.close("t1", 100.0)

    assert second == first
    assert store.get_closed("t1") == first
    assert store.get_closed("t1").realized_pl == 95.0


def test_closed_id_is_not_resurrected_by_a_late_create() -> None:
    store = InMemoryTradeStore()
    store.create(_trade())
    store.close("t1", 151.0)

    assert store.create(_trade()) is None
    assert store.get_live("t1") is None


def test_close_of_unknown_trade_raises() -> None:
    with pytest.raises(TradeNotFoundError) as ei:
        InMemoryTradeStore().close("ghost", 1.0)
    assert ei.value.trade_id == "ghost"
    assert isinstance(ei.value, LookupError)


def test_listing_is_scoped_by_account_and_newest_first() -> None:
    store = InMemoryTradeStore()
    store.create(_trade("old", entry_date=T0))
    store.create(_trade("new", entry_date=T0 + timedelta(hours=1)))
    store.create(_trade("other", account_id="a2"))

    assert [t.id for t in store.list_live("a1")] == ["new", "old"]
    assert [t.id for t in store.list_live("a2")] == ["other"]
    assert store.list_closed("a1") == []
