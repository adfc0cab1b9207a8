"""
Topic/subscription get-or-create shared by the producer and the consumer.

Pub/Sub only delivers a message to subscriptions that exist when it is
published, so the journal API creates the consumer group's subscription at
startup as well; envelopes accepted before the first consumer starts are then
retained for it.
"""

from __future__ import annotations

import logging
from typing import Any

from google.api_core import exceptions as gexc

from tradejournal.common.config import RelayConfig
from tradejournal.common.logging import log_event

logger = logging.getLogger(__name__)


def default_subscriber_client(config: RelayConfig) -> Any:
    from google.cloud import pubsub_v1

    client_options = {"api_endpoint": config.broker_address} if config.broker_address else None
    return pubsub_v1.SubscriberClient(client_options=client_options)


def ensure_topic(publisher: Any, topic_path: str) -> None:
    try:
        publisher.get_topic(request={"topic": topic_path})
    except gexc.NotFound:
        try:
            publisher.create_topic(request={"name": topic_path})
            log_event(logger, "trade_relay.topic_created", topic=topic_path)
        except gexc.AlreadyExists:
            pass


def ensure_group_subscription(subscriber: Any, config: RelayConfig) -> str:
    """
    Make sure the consumer group's subscription on the trade-events topic
    exists, with message ordering enabled. Returns the subscription path.
    """
    sub_path = subscriber.subscription_path(config.project_id, config.group_id)
    topic_path = subscriber.topic_path(config.project_id, config.topic)
    try:
        subscriber.get_subscription(request={"subscription": sub_path})
    except gexc.NotFound:
        try:
            subscriber.create_subscription(
                request={
                    "name": sub_path,
                    "topic": topic_path,
                    "enable_message_ordering": True,
                    "ack_deadline_seconds": int(config.ack_deadline_s),
                }
            )
            log_event(logger, "trade_relay.subscription_created", subscription=sub_path, topic=topic_path)
        except gexc.AlreadyExists:
            pass
    return sub_path
