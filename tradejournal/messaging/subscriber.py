from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from google.api_core import exceptions as gexc

from tradejournal.common.config import RelayConfig
from tradejournal.common.logging import log_event
from tradejournal.common.retry import CONNECT_RETRY, RetryPolicy, retry_with_backoff
from tradejournal.common.shutdown import SHUTDOWN_EVENT
from tradejournal.messaging.admin import default_subscriber_client, ensure_group_subscription
from tradejournal.messaging.codec import decode
from tradejournal.messaging.errors import ApplyError, BrokerConnectionError, MalformedEnvelopeError
from tradejournal.messaging.events import TradeClosed, TradeCreated, TradeDeleted, TradeEvent, TradeUpdated
from tradejournal.messaging.publisher import RelayProducer
from tradejournal.observability.spans import STATUS_OK, start_span
from tradejournal.persistence.trade_store import TradeNotFoundError, TradeStore

logger = logging.getLogger(__name__)

SubscriberClientFactory = Callable[[RelayConfig], Any]


class EnvelopeState(str, Enum):
    RECEIVED = "received"
    DISPATCHING = "dispatching"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class EnvelopeOutcome:
    message_id: str
    state: EnvelopeState
    event_type: Optional[str] = None
    trade_id: Optional[str] = None
    attempts: int = 0
    reason: Optional[str] = None


class RelayConsumer:
    """
    Applies trade-event envelopes from the trade-events subscription to the
    Trade Store.

    One envelope at a time, run to completion (including its apply retries)
    before the next pull. A message is acked only after it was applied, or
    after a malformed/empty envelope was dead-lettered or skipped. When the
    apply retry budget is exhausted the message is nacked and `ApplyError`
    leaves `run()`; the process is expected to exit and be restarted, and
    Pub/Sub redelivers the message.
    """

    def __init__(
        self,
        config: RelayConfig,
        store: TradeStore,
        *,
        client: Any = None,
        client_factory: Optional[SubscriberClientFactory] = None,
        dead_letter: Optional[RelayProducer] = None,
        connect_policy: RetryPolicy = CONNECT_RETRY,
        sleep: Callable[[float], None] = time.sleep,
        stop_event: threading.Event = SHUTDOWN_EVENT,
        idle_wait_s: float = 1.0,
    ) -> None:
        self.config = config
        self.store = store
        self._client = client
        self._client_factory = client_factory or default_subscriber_client
        self._dead_letter = dead_letter
        self._connect_policy = connect_policy
        self._sleep = sleep
        self._stop_event = stop_event
        self._idle_wait_s = float(idle_wait_s)
        self._subscription_path: Optional[str] = None

    @property
    def subscription_path(self) -> str:
        if self._subscription_path is None:
            raise BrokerConnectionError("consumer is not started")
        return self._subscription_path

    # --- lifecycle ---

    def _subscribe_once(self, attempt: int) -> None:
        with start_span(
            "trade_relay_consumer_connect",
            attempt=attempt,
            topic=self.config.topic,
            group_id=self.config.group_id,
        ) as span:
            if self._client is None:
                self._client = self._client_factory(self.config)
            self._subscription_path = ensure_group_subscription(self._client, self.config)
            span.set_status(STATUS_OK)

    def start(self) -> None:
        """
        Join the consumer group (the shared subscription), creating it with
        message ordering enabled when it does not exist yet.

        Raises:
            BrokerConnectionError: after the connect retry budget is exhausted.
        """
        try:
            retry_with_backoff(
                self._subscribe_once,
                policy=self._connect_policy,
                operation="trade_relay.consumer_connect",
                sleep=self._sleep,
            )
        except Exception as e:
            log_event(
                logger,
                "trade_relay.consumer_connect_failed",
                severity="ERROR",
                group_id=self.config.group_id,
                error=str(e),
            )
            raise BrokerConnectionError(f"could not subscribe consumer group {self.config.group_id!r}: {e}") from e
        log_event(
            logger,
            "trade_relay.consumer_started",
            subscription=self._subscription_path,
            group_id=self.config.group_id,
        )

    def close(self) -> None:
        client = self._client
        if client is None:
            return
        try:
            close = getattr(client, "close", None)
            if callable(close):
                close()
        except Exception:
            logger.debug("subscriber close failed", exc_info=True)
        log_event(logger, "trade_relay.consumer_closed", group_id=self.config.group_id)

    # --- read loop ---

    def run(self) -> None:
        """
        Read loop. Returns when a shutdown was requested (checked between
        envelopes only). Raises `ApplyError` or `BrokerConnectionError`.
        """
        if self._subscription_path is None:
            self.start()
        log_event(logger, "trade_relay.consumer_loop_started", subscription=self._subscription_path)
        while not self._stop_event.is_set():
            outcome = self.poll_once()
            if outcome is None:
                self._stop_event.wait(timeout=self._idle_wait_s)
        log_event(logger, "trade_relay.consumer_loop_stopped", subscription=self._subscription_path)

    def drain(self) -> List[EnvelopeOutcome]:
        """Process envelopes until a pull returns nothing."""
        out: List[EnvelopeOutcome] = []
        while True:
            outcome = self.poll_once()
            if outcome is None:
                return out
            out.append(outcome)

    def _pull_once(self, attempt: int) -> List[Any]:  # noqa: ARG002
        try:
            response = self._client.pull(
                request={"subscription": self.subscription_path, "max_messages": 1},
                timeout=float(self.config.pull_timeout_s),
            )
        except gexc.DeadlineExceeded:
            return []
        return list(getattr(response, "received_messages", []) or [])

    def poll_once(self) -> Optional[EnvelopeOutcome]:
        """Pull and process at most one envelope. Returns None when idle."""
        try:
            received = retry_with_backoff(
                self._pull_once,
                policy=self._connect_policy,
                operation="trade_relay.pull",
                sleep=self._sleep,
            )
        except Exception as e:
            raise BrokerConnectionError(f"pull from {self.subscription_path} failed: {e}") from e
        if not received:
            return None
        return self.handle(received[0])

    # --- per-envelope state machine ---

    def _transition(self, state: EnvelopeState, *, message_id: str, severity: str = "INFO", **fields: Any) -> None:
        log_event(
            logger,
            f"trade_relay.envelope_{state.value}",
            severity=severity,
            envelope_state=state.value,
            message_id=message_id,
            subscription=self._subscription_path,
            **fields,
        )

    def _ack(self, ack_id: str) -> None:
        self._client.acknowledge(request={"subscription": self.subscription_path, "ack_ids": [ack_id]})

    def _nack(self, ack_id: str) -> None:
        self._client.modify_ack_deadline(
            request={"subscription": self.subscription_path, "ack_ids": [ack_id], "ack_deadline_seconds": 0}
        )

    def _dead_letter_or_skip(self, received: Any, message_id: str, err: MalformedEnvelopeError) -> EnvelopeOutcome:
        log_event(
            logger,
            "trade_relay.malformed_envelope",
            severity="ERROR",
            message_id=message_id,
            reason=err.reason,
            dead_letter_topic=self.config.dead_letter_topic,
        )
        if self._dead_letter is not None and self.config.dead_letter_topic:
            # A failing dead-letter publish propagates; the message stays unacked.
            self._dead_letter.publish_raw(
                self.config.dead_letter_topic,
                received.message.data,
                error=err.reason,
                source_message_id=message_id,
                source_subscription=self.subscription_path,
            )
        self._ack(received.ack_id)
        self._transition(EnvelopeState.SKIPPED, message_id=message_id, severity="WARNING", reason=err.reason)
        return EnvelopeOutcome(message_id=message_id, state=EnvelopeState.SKIPPED, reason=err.reason)

    def handle(self, received: Any) -> EnvelopeOutcome:
        message_id = str(getattr(received.message, "message_id", "") or "")
        self._transition(
            EnvelopeState.RECEIVED,
            message_id=message_id,
            delivery_attempt=getattr(received, "delivery_attempt", None),
        )

        try:
            event = decode(received.message.data)
        except MalformedEnvelopeError as e:
            return self._dead_letter_or_skip(received, message_id, e)

        if isinstance(event, TradeUpdated) and event.trade.is_empty():
            reason = "update carries no changes"
            self._ack(received.ack_id)
            self._transition(
                EnvelopeState.SKIPPED,
                message_id=message_id,
                severity="WARNING",
                trade_event_type=event.event_type,
                trade_id=event.trade_id,
                reason=reason,
            )
            return EnvelopeOutcome(
                message_id=message_id,
                state=EnvelopeState.SKIPPED,
                event_type=event.event_type,
                trade_id=event.trade_id,
                reason=reason,
            )

        self._transition(
            EnvelopeState.DISPATCHING,
            message_id=message_id,
            trade_event_type=event.event_type,
            trade_id=event.trade_id,
            trade_event_id=event.event_id,
        )

        attempts = [0]

        def _attempt(attempt: int) -> None:
            attempts[0] = attempt
            with start_span(
                f"trade_relay_apply_{event.event_type}",
                attempt=attempt,
                trade_id=event.trade_id,
                message_id=message_id,
            ) as span:
                self.apply(event)
                span.set_status(STATUS_OK)

        try:
            retry_with_backoff(
                _attempt,
                policy=self.config.apply_retry,
                operation=f"trade_relay.apply.{event.event_type}",
                is_retryable=lambda e: not isinstance(e, TradeNotFoundError),
                sleep=self._sleep,
            )
        except TradeNotFoundError as e:
            # Closing a trade that was never created (or already deleted).
            self._ack(received.ack_id)
            self._transition(
                EnvelopeState.SKIPPED,
                message_id=message_id,
                severity="WARNING",
                trade_event_type=event.event_type,
                trade_id=event.trade_id,
                reason=str(e),
            )
            return EnvelopeOutcome(
                message_id=message_id,
                state=EnvelopeState.SKIPPED,
                event_type=event.event_type,
                trade_id=event.trade_id,
                attempts=attempts[0],
                reason=str(e),
            )
        except Exception as e:
            self._nack(received.ack_id)
            self._transition(
                EnvelopeState.FAILED,
                message_id=message_id,
                severity="ERROR",
                trade_event_type=event.event_type,
                trade_id=event.trade_id,
                attempts=attempts[0],
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ApplyError(
                f"applying {event.event_type} for trade {event.trade_id!r} failed after {attempts[0]} attempts: {e}",
                event_type=event.event_type,
                trade_id=event.trade_id,
                message_id=message_id,
            ) from e

        self._ack(received.ack_id)
        self._transition(
            EnvelopeState.APPLIED,
            message_id=message_id,
            trade_event_type=event.event_type,
            trade_id=event.trade_id,
            attempts=attempts[0],
        )
        return EnvelopeOutcome(
            message_id=message_id,
            state=EnvelopeState.APPLIED,
            event_type=event.event_type,
            trade_id=event.trade_id,
            attempts=attempts[0],
        )

    def apply(self, event: TradeEvent) -> None:
        """Dispatch one envelope to the matching Trade Store operation."""
        if isinstance(event, TradeCreated):
            self.store.create(event.trade.to_live_trade())
        elif isinstance(event, TradeUpdated):
            self.store.update(event.trade.id, event.trade.changes())
        elif isinstance(event, TradeDeleted):
            self.store.delete(event.trade.id)
        elif isinstance(event, TradeClosed):
            self.store.close(event.trade.id, event.trade.exit_price, event.trade.fees)
        else:
            raise TypeError(f"unhandled trade event: {type(event).__name__}")
