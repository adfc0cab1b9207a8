from tradejournal.common.config import StoreConfig
from tradejournal.persistence.memory_store import InMemoryTradeStore
from tradejournal.persistence.trade_store import PostgresTradeStore, TradeNotFoundError, TradeStore


def build_trade_store(config: StoreConfig) -> TradeStore:
    if config.backend == "memory":
        return InMemoryTradeStore()
    return PostgresTradeStore(str(config.database_url))


__all__ = ["InMemoryTradeStore", "PostgresTradeStore", "TradeNotFoundError", "TradeStore", "build_trade_store"]
