"""
Relay consumer process.

    python -m tradejournal.consumer.main

Exit codes:
- 0: graceful stop (SIGTERM/SIGINT between envelopes)
- 1: an envelope could not be applied (ApplyError); restart to resume
- 2: the broker could not be reached (BrokerConnectionError)
- 3: any other failure (store unavailable at startup, failed ack, failed
     dead-letter publish, ...); the message in flight is redelivered
"""

from __future__ import annotations

import logging
from typing import Optional

from tradejournal.common.config import (
    RelayConfig,
    StoreConfig,
    load_relay_config,
    load_service_config,
    load_store_config,
)
from tradejournal.common.logging import init_structured_logging, log_event
from tradejournal.common.shutdown import install_signal_handlers_once
from tradejournal.messaging.errors import ApplyError, BrokerConnectionError
from tradejournal.messaging.publisher import RelayProducer
from tradejournal.messaging.subscriber import RelayConsumer
from tradejournal.persistence import TradeStore, build_trade_store

logger = logging.getLogger("tradejournal.consumer")

EXIT_OK = 0
EXIT_APPLY_FAILED = 1
EXIT_BROKER_UNAVAILABLE = 2
EXIT_CRASHED = 3


def run_consumer(
    consumer: RelayConsumer,
    store: TradeStore,
    *,
    dead_letter: Optional[RelayProducer] = None,
) -> int:
    """Run `consumer` until it stops and map the outcome to an exit code."""
    try:
        store.open()
        if dead_letter is not None:
            dead_letter.connect()
        consumer.start()
        consumer.run()
    except ApplyError as e:
        log_event(
            logger,
            "trade_relay.consumer_crashed",
            severity="CRITICAL",
            trade_event_type=e.event_type,
            trade_id=e.trade_id,
            message_id=e.message_id,
            error=str(e),
        )
        return EXIT_APPLY_FAILED
    except BrokerConnectionError as e:
        log_event(logger, "trade_relay.consumer_broker_unavailable", severity="CRITICAL", error=str(e))
        return EXIT_BROKER_UNAVAILABLE
    except Exception as e:
        log_event(
            logger,
            "trade_relay.consumer_crashed",
            severity="CRITICAL",
            error_type=type(e).__name__,
            error=str(e),
            exc_info=True,
        )
        return EXIT_CRASHED
    finally:
        consumer.close()
        if dead_letter is not None:
            dead_letter.close()
        store.close_connection()
    return EXIT_OK


def main(
    *,
    relay_config: Optional[RelayConfig] = None,
    store_config: Optional[StoreConfig] = None,
) -> int:
    svc = load_service_config(default_service="trade-relay-consumer")
    init_structured_logging(service=svc.service_name, env=svc.env, level=svc.log_level)
    # The read loop checks the shutdown event between envelopes.
    install_signal_handlers_once(chain=False)

    relay = relay_config or load_relay_config()
    store = build_trade_store(store_config or load_store_config())
    # The consumer creates its own subscription in start().
    dead_letter = RelayProducer(relay, ensure_group=False) if relay.dead_letter_topic else None
    consumer = RelayConsumer(relay, store, dead_letter=dead_letter)
    return run_consumer(consumer, store, dead_letter=dead_letter)


if __name__ == "__main__":
    raise SystemExit(main())
