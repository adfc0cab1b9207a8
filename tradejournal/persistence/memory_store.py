from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional

from tradejournal.common.logging import log_event
from tradejournal.ledger.models import ClosedTrade, LiveTrade, TradeSize, TradeType
from tradejournal.persistence.trade_store import UPDATABLE_COLUMNS, TradeNotFoundError, log_close_replay

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryTradeStore:
    """
    Process-local Trade Store with the same idempotency rules as the
    Postgres store. Used for local runs and tests.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._lock = Lock()
        self._clock = clock
        self._live: Dict[str, LiveTrade] = {}
        self._closed: Dict[str, ClosedTrade] = {}
        self.is_open = False

    def open(self) -> None:
        self.is_open = True

    def close_connection(self) -> None:
        self.is_open = False

    def get_live(self, trade_id: str) -> Optional[LiveTrade]:
        with self._lock:
            return self._live.get(trade_id)

    def get_closed(self, trade_id: str) -> Optional[ClosedTrade]:
        with self._lock:
            return self._closed.get(trade_id)

    def create(self, trade: LiveTrade) -> Optional[LiveTrade]:
        with self._lock:
            if trade.id in self._closed:
                log_event(logger, "trade_store.create_skipped_closed", severity="WARNING", trade_id=trade.id)
                return None
            return self._live.setdefault(trade.id, trade)

    def update(self, trade_id: str, changes: Mapping[str, Any]) -> Optional[LiveTrade]:
        unknown = set(changes) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"not updatable: {sorted(unknown)}")
        with self._lock:
            current = self._live.get(trade_id)
            if current is None:
                log_event(logger, "trade_store.stale_update", severity="WARNING", trade_id=trade_id)
                return None
            fields = {k: v for k, v in changes.items() if v is not None}
            if "trade_type" in fields:
                fields["trade_type"] = TradeType(fields["trade_type"])
            if "size" in fields:
                fields["size"] = TradeSize(fields["size"])
            updated = LiveTrade(
                id=current.id,
                account_id=current.account_id,
                symbol=fields.get("symbol", current.symbol),
                entry_price=float(fields.get("entry_price", current.entry_price)),
                trade_type=fields.get("trade_type", current.trade_type),
                size=fields.get("size", current.size),
                qty=int(fields.get("qty", current.qty)),
                sl_percentage=float(fields.get("sl_percentage", current.sl_percentage)),
                entry_date=current.entry_date,
            )
            self._live[trade_id] = updated
            return updated

    def delete(self, trade_id: str) -> Optional[LiveTrade]:
        with self._lock:
            removed = self._live.pop(trade_id, None)
        if removed is None:
            log_event(logger, "trade_store.stale_delete", severity="WARNING", trade_id=trade_id)
        return removed

    def close(self, trade_id: str, exit_price: float, fees: Optional[float] = None) -> ClosedTrade:
        with self._lock:
            live = self._live.pop(trade_id, None)
            if live is None:
                prior = self._closed.get(trade_id)
                if prior is None:
                    raise TradeNotFoundError(trade_id)
                log_close_replay(prior, exit_price=exit_price, fees=fees)
                return prior
            closed = ClosedTrade.from_live(live, exit_price=exit_price, fees=fees, exit_date=self._clock())
            self._closed[trade_id] = closed
            return closed

    def list_live(self, account_id: str) -> List[LiveTrade]:
        with self._lock:
            rows = [t for t in self._live.values() if t.account_id == account_id]
        return sorted(rows, key=lambda t: t.entry_date, reverse=True)

    def list_closed(self, account_id: str) -> List[ClosedTrade]:
        with self._lock:
            rows = [t for t in self._closed.values() if t.account_id == account_id]
        return sorted(rows, key=lambda t: t.exit_date, reverse=True)
