
import pytest
from fastapi.testclient import TestClient
from google.api_core import exceptions as gexc

from tests.conftest import FlakyPublishBroker, RecordingSleep
from tradejournal.common.config import RelayConfig, ServiceConfig
from tradejournal.common.retry import RetryPolicy
from tradejournal.journal_service.app import create_app
from tradejournal.messaging.codec import decode
from tradejournal.messaging.errors import BrokerConnectionError
from tradejournal.messaging.events import TradeClosed, TradeCreated, TradeDeleted, TradeUpdated
from tradejournal.messaging.local import InMemoryBroker
from tradejournal.messaging.publisher import RelayProducer
from tradejournal.messaging.subscriber import RelayConsumer
from tradejournal.persistence.memory_store import InMemoryTradeStore

TOPIC_PATH = "projects/test-project/topics/trade-events"

VALID_TRADE = {
    "accountId": "a1",
    "symbol": "AAPL",
    "entryPrice": 150,
    "tradeType": "Initial",
    "size": "Full 25%",
    "qty": 10,
    "slPercentage": 4,
}


def _app(broker: InMemoryBroker, store: InMemoryTradeStore, sleeper: RecordingSleep):
    config = RelayConfig(project_id="test-project")
    producer = RelayProducer(config, client=broker, subscriber_client=broker, sleep=sleeper)
    return create_app(service_config=ServiceConfig(service_name="journal-test"), producer=producer, store=store)


@pytest.fixture
def client(broker: InMemoryBroker, store: InMemoryTradeStore, sleeper: RecordingSleep):
    with TestClient(_app(broker, store, sleeper)) as c:
        yield c


def _published(broker: InMemoryBroker):
    return [decode(m.data) for m in broker.published(TOPIC_PATH)]


def test_create_publishes_trade_created_with_generated_id(client: TestClient, broker: InMemoryBroker) -> None:
    r = client.post("/api/trades/live", json=VALID_TRADE)

    assert r.status_code == 201
    body = r.json()
    assert len(body["id"]) == 32
    assert body["symbol"] == "AAPL"
    assert body["entryDate"]

    [event] = _published(broker)
    assert isinstance(event, TradeCreated)
    assert event.trade.id == body["id"]
    assert broker.published(TOPIC_PATH)[0].ordering_key == body["id"]


@pytest.mark.parametrize(
    "override",
    [
        {"slPercentage": 9},
        {"slPercentage": 0.5},
        {"qty": 0},
        {"qty": 2.5},
        {"entryPrice": 0},
        {"symbol": ""},
        {"size": "Huge"},
        {"tradeType": "Short"},
    ],
)
def test_create_rejects_invalid_input_without_publishing(client: TestClient, broker: InMemoryBroker, override) -> None:
    r = client.post("/api/trades/live", json={**VALID_TRADE, **override})
    assert r.status_code == 422
    assert broker.published(TOPIC_PATH) == []


def test_update_publishes_partial_changes(client: TestClient, broker: InMemoryBroker) -> None:
    r = client.put("/api/trades/live/t1", json={"entryPrice": 151.5, "size": "Half 12.50%"})

    assert r.status_code == 200
    assert r.json() == {"id": "t1", "entryPrice": 151.5, "size": "Half 12.50%"}
    [event] = _published(broker)
    assert isinstance(event, TradeUpdated)
    assert event.trade.changes() == {"entry_price": 151.5, "size": "Half 12.50%"}


def test_empty_update_is_rejected(client: TestClient, broker: InMemoryBroker) -> None:
    r = client.put("/api/trades/live/t1", json={})
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "empty_update"
    assert broker.published(TOPIC_PATH) == []


def test_delete_publishes_trade_deleted(client: TestClient, broker: InMemoryBroker) -> None:
    r = client.delete("/api/trades/live/t1")
    assert r.status_code == 204
    [event] = _published(broker)
    assert isinstance(event, TradeDeleted)
    assert event.trade_id == "t1"


def test_close_publishes_trade_closed(client: TestClient, broker: InMemoryBroker) -> None:
    r = client.post("/api/trades/live/t1/close", json={"exitPrice": 160, "fees": 5})
    assert r.status_code == 200
    assert r.json() == {"message": "Trade closed"}
    [event] = _published(broker)
    assert isinstance(event, TradeClosed)
    assert (event.trade.exit_price, event.trade.fees) == (160.0, 5.0)


def test_close_validates_exit_price_and_fees(client: TestClient) -> None:
    assert client.post("/api/trades/live/t1/close", json={"exitPrice": 0}).status_code == 422
    assert client.post("/api/trades/live/t1/close", json={"exitPrice": 10, "fees": -1}).status_code == 422


def test_publish_failure_is_reported_not_swallowed(store: InMemoryTradeStore, sleeper: RecordingSleep) -> None:
    broker = FlakyPublishBroker(fail_times=99, error=gexc.ServiceUnavailable("broker down"))
    with TestClient(_app(broker, store, sleeper)) as c:
        r = c.post("/api/trades/live", json=VALID_TRADE)

    assert r.status_code == 503
    detail = r.json()["detail"]
    assert detail["error"] == "publish_failed"
    assert "broker down" in detail["message"]
    assert broker.publish_calls == 3


def test_startup_fails_without_broker(store: InMemoryTradeStore) -> None:
    def _factory(_config):
        raise gexc.ServiceUnavailable("connection refused")

    producer = RelayProducer(
        RelayConfig(project_id="test-project"),
        client_factory=_factory,
        connect_policy=RetryPolicy(max_attempts=2, base_delay_s=0.0),
        sleep=lambda _s: None,
    )
    app = create_app(service_config=ServiceConfig(), producer=producer, store=store)
    with pytest.raises(BrokerConnectionError):
        with TestClient(app):
            pass


def test_list_endpoints_read_from_store_after_consumer_applies(
    client: TestClient,
    broker: InMemoryBroker,
    store: InMemoryTradeStore,
    sleeper: RecordingSleep,
) -> None:
    consumer = RelayConsumer(RelayConfig(project_id="test-project"), store, client=broker, sleep=sleeper)
    consumer.start()

    created = client.post("/api/trades/live", json=VALID_TRADE).json()
    consumer.drain()
    live = client.get("/api/trades/live", params={"accountId": "a1"})
    assert live.status_code == 200
    assert [t["id"] for t in live.json()] == [created["id"]]

    client.post(f"/api/trades/live/{created['id']}/close", json={"exitPrice": 160, "fees": 5})
    consumer.drain()
    closed = client.get("/api/trades/closed", params={"accountId": "a1"}).json()
    assert [(t["id"], t["realizedPL"]) for t in closed] == [(created["id"], 95.0)]
    assert client.get("/api/trades/live", params={"accountId": "a1"}).json() == []


def test_list_requires_account_id(client: TestClient) -> None:
    assert client.get("/api/trades/live").status_code == 422


def test_health_endpoints_and_request_id(client: TestClient) -> None:
    assert client.get("/healthz").json() == {"status": "ok", "service": "journal-test"}
    ready = client.get("/readyz", headers={"X-Request-ID": "req-123"})
    assert ready.status_code == 200
    assert ready.headers["X-Request-ID"] == "req-123"


def test_shutdown_closes_producer_and_store(broker: InMemoryBroker, store: InMemoryTradeStore, sleeper: RecordingSleep) -> None:
    app = _app(broker, store, sleeper)
    with TestClient(app):
        assert store.is_open
    assert not store.is_open
    assert not app.state.producer.connected
