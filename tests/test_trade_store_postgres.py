from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, List

import psycopg
import pytest

from tradejournal.common.retry import RetryPolicy
from tradejournal.ledger.models import LiveTrade, TradeSize, TradeType
from tradejournal.persistence.trade_store import PostgresTradeStore, TradeNotFoundError

ENTRY = datetime(2026, 1, 8, 14, 30, tzinfo=timezone.utc)
EXIT = datetime(2026, 1, 9, 15, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn
        self._rows: List[dict] = []

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def execute(self, query: Any, params: Any = None) -> None:
        self._conn.executed.append((query, params))
        if not self._conn.script:
            raise AssertionError(f"unexpected query: {query!r}")
        result = self._conn.script.pop(0)
        if isinstance(result, Exception):
            raise result
        self._rows = list(result)

    def fetchone(self) -> Any:
        return self._rows.pop(0) if self._rows else None

    def fetchall(self) -> List[dict]:
        rows, self._rows = self._rows, []
        return rows


class FakeConnection:
    """Scripted psycopg connection: each execute() consumes the next result."""

    def __init__(self, script: List[Any]) -> None:
        self.script = script
        self.executed: List[tuple] = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    @contextmanager
    def transaction(self):
        try:
            yield self
        except BaseException:
            self.rollbacks += 1
            raise
        self.commits += 1

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def close(self) -> None:
        self.closed = True


def _live_row(**overrides: Any) -> dict:
    row = {
        "id": "t1",
        "accountId": "a1",
        "symbol": "AAPL",
        "entryPrice": 150.0,
        "tradeType": "Initial",
        "size": "Full 25%",
        "qty": 10,
        "slPercentage": 4.0,
        "entryDate": ENTRY,
    }
    row.update(overrides)
    return row


def _closed_row(**overrides: Any) -> dict:
    row = {
        "id": "t1",
        "accountId": "a1",
        "symbol": "AAPL",
        "entryPrice": 150.0,
        "exitPrice": 160.0,
        "tradeType": "Initial",
        "size": "Full 25%",
        "qty": 10,
        "entryDate": ENTRY,
        "exitDate": EXIT,
        "fees": 5.0,
        "realizedPL": 95.0,
    }
    row.update(overrides)
    return row


def _store(*connections: FakeConnection, sleeps: List[float] | None = None) -> PostgresTradeStore:
    pending = list(connections)
    store = PostgresTradeStore(
        "postgresql://journal@localhost/journal",
        connect=lambda _url: pending.pop(0),
        retry_policy=RetryPolicy(max_attempts=3, base_delay_s=0.5),
        sleep=(sleeps.append if sleeps is not None else (lambda _s: None)),
        clock=lambda: EXIT,
    )
    store.open()
    return store


def _trade() -> LiveTrade:
    return LiveTrade(
        id="t1",
        account_id="a1",
        symbol="AAPL",
        entry_price=150.0,
        trade_type=TradeType.INITIAL,
        size=TradeSize.FULL,
        qty=10,
        sl_percentage=4.0,
        entry_date=ENTRY,
    )


def test_create_inserts_live_row() -> None:
    conn = FakeConnection([[], [_live_row()]])
    store = _store(conn)

    created = store.create(_trade())

    assert created == _trade()
    insert_sql, params = conn.executed[1]
    assert 'INSERT INTO "LiveTrade"' in insert_sql
    assert 'ON CONFLICT ("id") DO NOTHING' in insert_sql
    assert params[:8] == ("t1", "a1", "AAPL", 150.0, "Initial", "Full 25%", 10, 4.0)
    assert conn.commits == 1


def test_duplicate_create_returns_existing_row() -> None:
    conn = FakeConnection([[], [], [_live_row(symbol="AAPL")]])
    store = _store(conn)

    assert store.create(_trade()) == _trade()
    assert conn.executed[2][0].startswith('SELECT * FROM "LiveTrade"')


def test_create_does_not_resurrect_closed_trade() -> None:
    conn = FakeConnection([[{"id": "t1"}]])
    store = _store(conn)

    assert store.create(_trade()) is None
    assert len(conn.executed) == 1


def test_update_sets_only_given_columns() -> None:
    conn = FakeConnection([[_live_row(entryPrice=155.0, size="Half 12.50%")]])
    store = _store(conn)

    updated = store.update("t1", {"entry_price": 155.0, "size": TradeSize.HALF})

    assert updated is not None
    assert updated.entry_price == 155.0
    assert updated.size is TradeSize.HALF
    query, params = conn.executed[0]
    assert "Identifier('entryPrice')" in repr(query)
    assert "Identifier('size')" in repr(query)
    assert "Identifier('symbol')" not in repr(query)
    assert params == [155.0, "Half 12.50%", "t1"]


def test_update_of_missing_trade_is_stale_not_an_error() -> None:
    conn = FakeConnection([[]])
    store = _store(conn)

    assert store.update("gone", {"qty": 3}) is None


def test_update_rejects_immutable_fields() -> None:
    store = _store(FakeConnection([]))
    with pytest.raises(ValueError):
        store.update("t1", {"account_id": "a2"})


def test_delete_missing_trade_returns_none() -> None:
    conn = FakeConnection([[]])
    store = _store(conn)

    assert store.delete("gone") is None
    assert conn.executed[0][0].startswith('DELETE FROM "LiveTrade"')


def test_close_deletes_live_and_upserts_closed_in_one_transaction() -> None:
    conn = FakeConnection([[_live_row()], []])
    store = _store(conn)

    closed = store.close("t1", 160.0, 5.0)

    assert closed.realized_pl == 95.0
    assert closed.exit_date == EXIT
    upsert_sql, params = conn.executed[1]
    assert 'INSERT INTO "ClosedTrade"' in upsert_sql
    assert "ON CONFLICT" in upsert_sql
    assert params[4] == 160.0
    assert params[-1] == 95.0
    assert conn.commits == 1


def test_close_replay_after_live_row_is_gone_returns_stored_record() -> None:
    conn = FakeConnection([[], [_closed_row()]])
    store = _store(conn)

    closed = store.close("t1", 160.0, 5.0)

    assert closed.realized_pl == 95.0
    assert closed.exit_date == EXIT
    assert closed.to_dict()["realizedPL"] == 95.0
    assert len(conn.executed) == 2
    assert conn.commits == 1


def test_close_with_different_terms_never_rewrites_closed_trade(caplog: pytest.LogCaptureFixture) -> None:
    conn = FakeConnection([[], [_closed_row()]])
    store = _store(conn)

    closed = store.close("t1", 100.0, None)

    assert (closed.exit_price, closed.fees, closed.realized_pl) == (160.0, 5.0, 95.0)
    assert not any('INSERT INTO "ClosedTrade"' in str(q) for q, _ in conn.executed)
    [conflict] = [r for r in caplog.records if getattr(r, "event_type", None) == "trade_store.close_conflict"]
    assert conflict.levelname == "WARNING"
    assert conflict.requested_exit_price == 100.0


def test_close_of_unknown_trade_raises_without_retry() -> None:
    conn = FakeConnection([[], []])
    sleeps: List[float] = []
    store = _store(conn, sleeps=sleeps)

    with pytest.raises(TradeNotFoundError):
        store.close("ghost", 1.0)
    assert conn.rollbacks == 1
    assert sleeps == []


def test_transient_error_reconnects_and_retries() -> None:
    broken = FakeConnection([psycopg.OperationalError("server closed the connection unexpectedly")])
    healthy = FakeConnection([[_live_row()]])
    sleeps: List[float] = []
    store = _store(broken, healthy, sleeps=sleeps)

    removed = store.delete("t1")

    assert removed is not None and removed.id == "t1"
    assert broken.closed
    assert sleeps == [0.5]


def test_list_live_and_closed_map_rows() -> None:
    conn = FakeConnection([[_live_row(), _live_row(id="t2")], [_closed_row()]])
    store = _store(conn)

    assert [t.id for t in store.list_live("a1")] == ["t1", "t2"]
    [closed] = store.list_closed("a1")
    assert closed.fees == 5.0
    assert conn.executed[0][1] == ("a1",)


def test_close_connection_closes_shared_handle() -> None:
    conn = FakeConnection([])
    store = _store(conn)
    store.close_connection()
    assert conn.closed
