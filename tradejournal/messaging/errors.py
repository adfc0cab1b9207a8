"""
Failure taxonomy of the trade-event relay.

Every exhausted retry budget surfaces as one of these; nothing is swallowed.
"""

from __future__ import annotations

from typing import Optional


class RelayError(RuntimeError):
    """Base class for trade-event relay failures."""


class BrokerConnectionError(RelayError, ConnectionError):
    """Broker unreachable after the connect retry budget (fatal at startup)."""


class PublishError(RelayError):
    def __init__(self, message: str, *, topic: str, attempts: int) -> None:
        super().__init__(message)
        self.topic = topic
        self.attempts = int(attempts)


class MalformedEnvelopeError(RelayError, ValueError):
    """Decode-time structural failure of a trade-event envelope."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ApplyError(RelayError):
    def __init__(
        self,
        message: str,
        *,
        event_type: str,
        trade_id: str,
        message_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.event_type = event_type
        self.trade_id = trade_id
        self.message_id = message_id
