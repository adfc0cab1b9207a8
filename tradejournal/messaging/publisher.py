from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from google.api_core import exceptions as gexc

from tradejournal.common.config import RelayConfig
from tradejournal.common.logging import log_event
from tradejournal.common.retry import CONNECT_RETRY, RetryPolicy, retry_with_backoff
from tradejournal.messaging.admin import default_subscriber_client, ensure_group_subscription, ensure_topic
from tradejournal.messaging.codec import encode
from tradejournal.messaging.errors import BrokerConnectionError, PublishError
from tradejournal.messaging.events import TradeEvent
from tradejournal.observability.spans import STATUS_OK, start_span

logger = logging.getLogger(__name__)

PublisherClientFactory = Callable[[RelayConfig], Any]
SubscriberClientFactory = Callable[[RelayConfig], Any]


def default_publisher_client(config: RelayConfig) -> Any:
    """
    Ordering-enabled Pub/Sub PublisherClient.

    `broker_address` (when set) overrides the API endpoint; otherwise the
    library default applies (including PUBSUB_EMULATOR_HOST).
    """
    from google.cloud import pubsub_v1

    client_options = {"api_endpoint": config.broker_address} if config.broker_address else None
    return pubsub_v1.PublisherClient(
        publisher_options=pubsub_v1.types.PublisherOptions(enable_message_ordering=True),
        client_options=client_options,
    )


def _exc_code(exc: BaseException) -> str:
    """
    Best-effort extraction of a stable error code string.
    """
    try:
        code = getattr(exc, "code", None)
        if callable(code):
            code = code()
        if code is None:
            return ""
        return str(getattr(code, "name", code))
    except Exception:
        return ""


def is_retryable_publish_error(exc: BaseException) -> bool:
    # Never retry programming/validation errors.
    if isinstance(exc, (ValueError, TypeError, AttributeError)):
        return False

    code = _exc_code(exc).upper()
    non_retryable_codes = {
        "INVALID_ARGUMENT",
        "PERMISSION_DENIED",
        "UNAUTHENTICATED",
        "FAILED_PRECONDITION",
        "NOT_FOUND",
    }
    if code in non_retryable_codes:
        return False
    if isinstance(exc, (gexc.InvalidArgument, gexc.PermissionDenied, gexc.Unauthenticated, gexc.NotFound)):
        return False

    # Unknown failures are treated as transient.
    return True


class RelayProducer:
    """
    Publishes trade-event envelopes to Google Pub/Sub.

    Lifecycle is explicit: `connect()` once at startup (fatal on failure),
    `publish()` per command, `close()` at shutdown. Each envelope is published
    with ordering key `trade.id` so all events of one trade stay in order.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        client: Any = None,
        client_factory: Optional[PublisherClientFactory] = None,
        subscriber_client: Any = None,
        subscriber_client_factory: Optional[SubscriberClientFactory] = None,
        ensure_group: bool = True,
        connect_policy: RetryPolicy = CONNECT_RETRY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._client = client
        self._client_factory = client_factory or default_publisher_client
        self._subscriber_client = subscriber_client
        self._subscriber_client_factory = subscriber_client_factory or default_subscriber_client
        self._ensure_group = ensure_group
        self._connect_policy = connect_policy
        self._sleep = sleep
        self._connected = False
        self._known_topics: set[str] = set()

    @property
    def connected(self) -> bool:
        return self._connected

    def topic_path(self, topic: str) -> str:
        return str(self._require_client().topic_path(self.config.project_id, topic))

    def _require_client(self) -> Any:
        if self._client is None:
            raise BrokerConnectionError("producer is not connected")
        return self._client

    def _ensure_topic(self, topic: str) -> str:
        path = self.topic_path(topic)
        if path not in self._known_topics:
            ensure_topic(self._client, path)
            self._known_topics.add(path)
        return path

    def _connect_once(self, attempt: int) -> None:
        with start_span("trade_relay_producer_connect", attempt=attempt, topic=self.config.topic) as span:
            if self._client is None:
                self._client = self._client_factory(self.config)
            self._ensure_topic(self.config.topic)
            if self._ensure_group:
                if self._subscriber_client is None:
                    self._subscriber_client = self._subscriber_client_factory(self.config)
                span.set_attribute(
                    "subscription", ensure_group_subscription(self._subscriber_client, self.config)
                )
            span.set_status(STATUS_OK)

    def connect(self) -> None:
        """
        Establish the broker session and make sure the trade-events topic
        exists. Unless `ensure_group=False`, the consumer group subscription is
        created too, so envelopes published before the first consumer starts
        are retained for it.

        Raises:
            BrokerConnectionError: after the connect retry budget is exhausted.
        """
        if self._connected:
            return
        try:
            retry_with_backoff(
                self._connect_once,
                policy=self._connect_policy,
                operation="trade_relay.producer_connect",
                sleep=self._sleep,
            )
        except Exception as e:
            log_event(
                logger,
                "trade_relay.producer_connect_failed",
                severity="ERROR",
                attempts=self._connect_policy.max_attempts,
                error=str(e),
            )
            raise BrokerConnectionError(f"could not connect producer: {e}") from e

        self._connected = True
        log_event(logger, "trade_relay.producer_connected", topic=self.config.topic)

    def _publish_bytes(
        self,
        topic: str,
        data: bytes,
        *,
        ordering_key: str,
        attributes: dict[str, str],
    ) -> str:
        if not self._connected:
            raise BrokerConnectionError("producer is not connected")
        policy = self.config.publish_retry
        timeout_s = float(self.config.publish_timeout_s)
        path = self.topic_path(topic)
        attempts = [0]

        def _attempt(attempt: int) -> str:
            attempts[0] = attempt
            with start_span(f"trade_relay_publish_{topic}", attempt=attempt, ordering_key=ordering_key, **attributes) as span:
                self._ensure_topic(topic)
                try:
                    future = self._client.publish(path, data, ordering_key=ordering_key, **attributes)
                    message_id = str(future.result(timeout=timeout_s))
                except Exception:
                    if ordering_key:
                        # Pub/Sub pauses an ordering key after a failed publish.
                        self._client.resume_publish(path, ordering_key)
                    raise
                span.set_attribute("message_id", message_id)
                span.set_status(STATUS_OK)
                return message_id

        try:
            message_id = retry_with_backoff(
                _attempt,
                policy=policy,
                operation=f"trade_relay.publish.{topic}",
                is_retryable=is_retryable_publish_error,
                sleep=self._sleep,
            )
        except Exception as e:
            log_event(
                logger,
                "trade_relay.publish_failed",
                severity="ERROR",
                topic=path,
                ordering_key=ordering_key,
                attempts=attempts[0],
                error_type=type(e).__name__,
                error_code=_exc_code(e),
                error=str(e),
            )
            raise PublishError(str(e), topic=topic, attempts=attempts[0]) from e

        log_event(
            logger,
            "trade_relay.publish_succeeded",
            topic=path,
            ordering_key=ordering_key,
            message_id=message_id,
            **attributes,
        )
        return message_id

    def publish(self, topic: str, envelope: TradeEvent) -> str:
        """
        Encode `envelope` and publish it to `topic`.

        Returns the broker message id.

        Raises:
            PublishError: when the publish retry budget is exhausted or the
                failure is not retryable. The mutation did not happen.
        """
        return self._publish_bytes(
            topic,
            encode(envelope),
            ordering_key=envelope.trade_id,
            attributes={"trade_event_type": envelope.event_type, "trade_event_id": envelope.event_id},
        )

    def publish_raw(self, topic: str, data: bytes, **attributes: str) -> str:
        """Publish pre-encoded bytes without an ordering key (dead-letter forwarding)."""
        return self._publish_bytes(
            topic,
            bytes(data),
            ordering_key="",
            attributes={str(k): str(v) for k, v in attributes.items()},
        )

    def close(self) -> None:
        """
        Best-effort shutdown for the underlying Pub/Sub client.
        """
        subscriber, self._subscriber_client = self._subscriber_client, None
        if subscriber is not None and subscriber is not self._client:
            try:
                subscriber.close()
            except Exception:
                logger.debug("subscriber admin client close failed", exc_info=True)
        client = self._client
        self._connected = False
        if client is None:
            return
        try:
            stop = getattr(client, "stop", None)
            if callable(stop):
                stop()
        except Exception:
            logger.debug("publisher stop failed", exc_info=True)
        try:
            transport = getattr(client, "transport", None)
            transport_close = getattr(transport, "close", None)
            if callable(transport_close):
                transport_close()
        except Exception:
            logger.debug("publisher transport close failed", exc_info=True)
        log_event(logger, "trade_relay.producer_closed", topic=self.config.topic)
