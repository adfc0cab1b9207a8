"""
Trade Store: durable Live/Closed trade records keyed by trade id.

Every mutation is idempotent so an at-least-once consumer can re-apply the
same envelope after a crash:

- create: a duplicate of a live id is a no-op; a closed id is not resurrected
- update/delete: a missing live trade is a stale mutation (returns None)
- close: delete-live + upsert-closed in one transaction; re-running it after
  the live row is gone returns the stored closed row unchanged (closed
  history is never rewritten, even when the repeated close has other terms)
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

import psycopg
from psycopg import errors as pg_errors
from psycopg import sql
from psycopg.rows import dict_row

from tradejournal.common.logging import log_event
from tradejournal.common.retry import STORE_RETRY, RetryPolicy, retry_with_backoff
from tradejournal.ledger.models import ClosedTrade, LiveTrade

logger = logging.getLogger(__name__)


class TradeNotFoundError(LookupError):
    def __init__(self, trade_id: str) -> None:
        super().__init__(f"trade {trade_id!r} is neither live nor closed")
        self.trade_id = trade_id


class TradeStore(Protocol):
    def open(self) -> None: ...

    def close_connection(self) -> None: ...

    def create(self, trade: LiveTrade) -> Optional[LiveTrade]: ...

    def update(self, trade_id: str, changes: Mapping[str, Any]) -> Optional[LiveTrade]: ...

    def delete(self, trade_id: str) -> Optional[LiveTrade]: ...

    def close(self, trade_id: str, exit_price: float, fees: Optional[float] = None) -> ClosedTrade: ...

    def list_live(self, account_id: str) -> List[LiveTrade]: ...

    def list_closed(self, account_id: str) -> List[ClosedTrade]: ...


# snake_case field -> "LiveTrade" column
UPDATABLE_COLUMNS: Dict[str, str] = {
    "symbol": "symbol",
    "entry_price": "entryPrice",
    "trade_type": "tradeType",
    "size": "size",
    "qty": "qty",
    "sl_percentage": "slPercentage",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _db_value(v: Any) -> Any:
    return getattr(v, "value", v)


def live_from_row(row: Mapping[str, Any]) -> LiveTrade:
    return LiveTrade(
        id=str(row["id"]),
        account_id=str(row["accountId"]),
        symbol=str(row["symbol"]),
        entry_price=float(row["entryPrice"]),
        trade_type=row["tradeType"],
        size=row["size"],
        qty=int(row["qty"]),
        sl_percentage=float(row["slPercentage"]),
        entry_date=row["entryDate"],
    )


def closed_from_row(row: Mapping[str, Any]) -> ClosedTrade:
    fees = row.get("fees")
    return ClosedTrade(
        id=str(row["id"]),
        account_id=str(row["accountId"]),
        symbol=str(row["symbol"]),
        entry_price=float(row["entryPrice"]),
        exit_price=float(row["exitPrice"]),
        trade_type=row["tradeType"],
        size=row["size"],
        qty=int(row["qty"]),
        entry_date=row["entryDate"],
        exit_date=row["exitDate"],
        fees=float(fees) if fees is not None else None,
        realized_pl=float(row["realizedPL"]),
    )


def log_close_replay(prior: ClosedTrade, *, exit_price: float, fees: Optional[float]) -> None:
    if prior.same_close_terms(exit_price=exit_price, fees=fees):
        log_event(logger, "trade_store.close_replayed", trade_id=prior.id)
        return
    # Closed history is immutable; the later terms are dropped.
    log_event(
        logger,
        "trade_store.close_conflict",
        severity="WARNING",
        trade_id=prior.id,
        stored_exit_price=prior.exit_price,
        stored_fees=prior.fees,
        requested_exit_price=exit_price,
        requested_fees=fees,
    )


def is_transient_db_error(exc: BaseException) -> bool:
    return isinstance(
        exc,
        (
            psycopg.OperationalError,
            pg_errors.SerializationFailure,
            pg_errors.DeadlockDetected,
        ),
    )


_INSERT_LIVE = """
INSERT INTO "LiveTrade"
    ("id", "accountId", "symbol", "entryPrice", "tradeType", "size", "qty", "slPercentage", "entryDate", "updatedAt")
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, now())
ON CONFLICT ("id") DO NOTHING
RETURNING *
"""

_UPSERT_CLOSED = """
INSERT INTO "ClosedTrade"
    ("id", "accountId", "symbol", "entryPrice", "exitPrice", "tradeType", "size", "qty",
     "entryDate", "exitDate", "fees", "realizedPL", "updatedAt")
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, now())
ON CONFLICT ("id") DO UPDATE SET
    "exitPrice" = EXCLUDED."exitPrice",
    "fees" = EXCLUDED."fees",
    "realizedPL" = EXCLUDED."realizedPL",
    "updatedAt" = now()
"""


class PostgresTradeStore:
    """
    Trade Store on Postgres (psycopg 3) using the journal's relational schema.

    One connection is shared by the process: `open()` at startup,
    `close_connection()` at shutdown. Each operation runs in its own
    transaction and is retried with `STORE_RETRY` on transient errors; a broken
    connection is replaced before the next attempt.
    """

    def __init__(
        self,
        database_url: str,
        *,
        connect: Optional[Callable[[str], Any]] = None,
        retry_policy: RetryPolicy = STORE_RETRY,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self._database_url = database_url
        self._connect = connect or self._default_connect
        self._retry_policy = retry_policy
        self._sleep = sleep
        self._clock = clock
        self._conn: Any = None

    @staticmethod
    def _default_connect(database_url: str) -> psycopg.Connection:
        return psycopg.connect(database_url, autocommit=True, row_factory=dict_row)

    def open(self) -> None:
        if self._conn is None or getattr(self._conn, "closed", False):
            self._conn = self._connect(self._database_url)
            log_event(logger, "trade_store.opened", backend="postgres")

    def close_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
            log_event(logger, "trade_store.closed", backend="postgres")

    def _connection(self) -> Any:
        if self._conn is None or getattr(self._conn, "closed", False):
            self._conn = self._connect(self._database_url)
        return self._conn

    def _discard_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.close()
        except Exception:
            logger.debug("closing broken connection failed", exc_info=True)

    def _run(self, operation: str, fn: Callable[[Any], Any]) -> Any:
        def _attempt(attempt: int) -> Any:
            conn = self._connection()
            try:
                with conn.transaction():
                    with conn.cursor() as cur:
                        return fn(cur)
            except psycopg.OperationalError:
                self._discard_connection()
                raise

        return retry_with_backoff(
            _attempt,
            policy=self._retry_policy,
            operation=f"trade_store.{operation}",
            is_retryable=is_transient_db_error,
            sleep=self._sleep,
        )

    def create(self, trade: LiveTrade) -> Optional[LiveTrade]:
        def _tx(cur: Any) -> Optional[LiveTrade]:
            cur.execute('SELECT "id" FROM "ClosedTrade" WHERE "id" = %s', (trade.id,))
            if cur.fetchone() is not None:
                log_event(logger, "trade_store.create_skipped_closed", severity="WARNING", trade_id=trade.id)
                return None
            cur.execute(
                _INSERT_LIVE,
                (
                    trade.id,
                    trade.account_id,
                    trade.symbol,
                    trade.entry_price,
                    trade.trade_type.value,
                    trade.size.value,
                    trade.qty,
                    trade.sl_percentage,
                    trade.entry_date,
                ),
            )
            row = cur.fetchone()
            if row is not None:
                return live_from_row(row)
            # Duplicate delivery: keep the existing row.
            cur.execute('SELECT * FROM "LiveTrade" WHERE "id" = %s', (trade.id,))
            existing = cur.fetchone()
            return live_from_row(existing) if existing is not None else None

        return self._run("create", _tx)

    def update(self, trade_id: str, changes: Mapping[str, Any]) -> Optional[LiveTrade]:
        unknown = set(changes) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"not updatable: {sorted(unknown)}")
        items = [(UPDATABLE_COLUMNS[k], _db_value(v)) for k, v in changes.items() if v is not None]

        def _tx(cur: Any) -> Optional[LiveTrade]:
            if not items:
                cur.execute('SELECT * FROM "LiveTrade" WHERE "id" = %s', (trade_id,))
            else:
                assignments = sql.SQL(", ").join(
                    sql.SQL("{} = %s").format(sql.Identifier(col)) for col, _ in items
                )
                query = sql.SQL('UPDATE {} SET {}, "updatedAt" = now() WHERE "id" = %s RETURNING *').format(
                    sql.Identifier("LiveTrade"),
                    assignments,
                )
                cur.execute(query, [v for _, v in items] + [trade_id])
            row = cur.fetchone()
            if row is None:
                log_event(logger, "trade_store.stale_update", severity="WARNING", trade_id=trade_id)
                return None
            return live_from_row(row)

        return self._run("update", _tx)

    def delete(self, trade_id: str) -> Optional[LiveTrade]:
        def _tx(cur: Any) -> Optional[LiveTrade]:
            cur.execute('DELETE FROM "LiveTrade" WHERE "id" = %s RETURNING *', (trade_id,))
            row = cur.fetchone()
            if row is None:
                log_event(logger, "trade_store.stale_delete", severity="WARNING", trade_id=trade_id)
                return None
            return live_from_row(row)

        return self._run("delete", _tx)

    def close(self, trade_id: str, exit_price: float, fees: Optional[float] = None) -> ClosedTrade:
        def _tx(cur: Any) -> ClosedTrade:
            cur.execute('DELETE FROM "LiveTrade" WHERE "id" = %s RETURNING *', (trade_id,))
            row = cur.fetchone()
            if row is None:
                cur.execute('SELECT * FROM "ClosedTrade" WHERE "id" = %s', (trade_id,))
                prior_row = cur.fetchone()
                if prior_row is None:
                    raise TradeNotFoundError(trade_id)
                prior = closed_from_row(prior_row)
                log_close_replay(prior, exit_price=exit_price, fees=fees)
                return prior
            closed = ClosedTrade.from_live(live_from_row(row), exit_price=exit_price, fees=fees, exit_date=self._clock())
            cur.execute(
                _UPSERT_CLOSED,
                (
                    closed.id,
                    closed.account_id,
                    closed.symbol,
                    closed.entry_price,
                    closed.exit_price,
                    closed.trade_type.value,
                    closed.size.value,
                    closed.qty,
                    closed.entry_date,
                    closed.exit_date,
                    closed.fees,
                    closed.realized_pl,
                ),
            )
            return closed

        return self._run("close", _tx)

    def list_live(self, account_id: str) -> List[LiveTrade]:
        def _tx(cur: Any) -> List[LiveTrade]:
            cur.execute('SELECT * FROM "LiveTrade" WHERE "accountId" = %s ORDER BY "entryDate" DESC', (account_id,))
            return [live_from_row(r) for r in cur.fetchall()]

        return self._run("list_live", _tx)

    def list_closed(self, account_id: str) -> List[ClosedTrade]:
        def _tx(cur: Any) -> List[ClosedTrade]:
            cur.execute('SELECT * FROM "ClosedTrade" WHERE "accountId" = %s ORDER BY "exitDate" DESC', (account_id,))
            return [closed_from_row(r) for r in cur.fetchall()]

        return self._run("list_closed", _tx)
