from __future__ import annotations

import logging
import threading
from typing import Any, List

import pytest
from google.api_core import exceptions as gexc

from tradejournal.common.config import RelayConfig
from tradejournal.messaging.local import InMemoryBroker
from tradejournal.messaging.publisher import RelayProducer
from tradejournal.messaging.subscriber import RelayConsumer
from tradejournal.persistence.memory_store import InMemoryTradeStore


class FlakyPublishBroker(InMemoryBroker):
    """InMemoryBroker whose first `fail_times` publishes raise `error`."""

    def __init__(self, *, fail_times: int = 0, error: Exception | None = None) -> None:
        super().__init__()
        self.fail_times = fail_times
        self.error = error or gexc.ServiceUnavailable("broker unavailable")
        self.publish_calls = 0

    def publish(self, topic: str, data: bytes, ordering_key: str = "", **attrs: str):  # type: ignore[override]
        self.publish_calls += 1
        if self.publish_calls <= self.fail_times:
            raise self.error
        return super().publish(topic, data, ordering_key=ordering_key, **attrs)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def span_records(caplog: pytest.LogCaptureFixture, name: str) -> List[Any]:
    return [
        r
        for r in caplog.records
        if getattr(r, "event_type", None) == "span.end" and getattr(r, "span_name", None) == name
    ]


@pytest.fixture
def relay_config() -> RelayConfig:
    return RelayConfig(project_id="test-project")


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def store() -> InMemoryTradeStore:
    s = InMemoryTradeStore()
    s.open()
    return s


@pytest.fixture
def producer(relay_config: RelayConfig, broker: InMemoryBroker, sleeper: RecordingSleep) -> RelayProducer:
    p = RelayProducer(relay_config, client=broker, subscriber_client=broker, sleep=sleeper)
    p.connect()
    return p


@pytest.fixture
def stop_event() -> threading.Event:
    return threading.Event()


@pytest.fixture
def consumer(
    relay_config: RelayConfig,
    broker: InMemoryBroker,
    producer: RelayProducer,  # noqa: ARG001 (creates the topic first)
    store: InMemoryTradeStore,
    sleeper: RecordingSleep,
    stop_event: threading.Event,
) -> RelayConsumer:
    c = RelayConsumer(relay_config, store, client=broker, sleep=sleeper, stop_event=stop_event, idle_wait_s=0.0)
    c.start()
    return c


@pytest.fixture
def debug_logs(caplog: pytest.LogCaptureFixture) -> pytest.LogCaptureFixture:
    caplog.set_level(logging.DEBUG)
    return caplog
