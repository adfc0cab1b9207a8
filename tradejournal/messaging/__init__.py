"""
Trade-event relay: envelope codec, producer and consumer on Google Pub/Sub.
"""

from tradejournal.messaging.codec import decode, encode
from tradejournal.messaging.errors import (
    ApplyError,
    BrokerConnectionError,
    MalformedEnvelopeError,
    PublishError,
    RelayError,
)
from tradejournal.messaging.events import TradeClosed, TradeCreated, TradeDeleted, TradeEvent, TradeUpdated

__all__ = [
    "ApplyError",
    "BrokerConnectionError",
    "MalformedEnvelopeError",
    "PublishError",
    "RelayError",
    "TradeClosed",
    "TradeCreated",
    "TradeDeleted",
    "TradeEvent",
    "TradeUpdated",
    "decode",
    "encode",
]
