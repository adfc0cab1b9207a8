"""
Trade Journal HTTP service.

Composition root for the API process: it owns the relay producer and the
Trade Store handle. The producer must connect at startup; if it cannot, the
service fails to start instead of accepting mutations it cannot deliver.

Run with:
    uvicorn tradejournal.journal_service.app:create_app --factory
or:
    python -m tradejournal.journal_service.app
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Response
from starlette.concurrency import run_in_threadpool

from tradejournal.common.config import (
    RelayConfig,
    ServiceConfig,
    StoreConfig,
    load_relay_config,
    load_service_config,
    load_store_config,
)
from tradejournal.common.logging import init_structured_logging, install_fastapi_request_id_middleware, log_event
from tradejournal.messaging.publisher import RelayProducer
from tradejournal.persistence import TradeStore, build_trade_store

from .routers import trades

logger = logging.getLogger(__name__)


def create_app(
    *,
    service_config: Optional[ServiceConfig] = None,
    relay_config: Optional[RelayConfig] = None,
    store_config: Optional[StoreConfig] = None,
    producer: Optional[RelayProducer] = None,
    store: Optional[TradeStore] = None,
) -> FastAPI:
    svc = service_config or load_service_config()
    relay = relay_config or (producer.config if producer is not None else load_relay_config())
    producer = producer or RelayProducer(relay)
    store = store or build_trade_store(store_config or load_store_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.shutting_down = False
        # BrokerConnectionError here aborts startup.
        await run_in_threadpool(producer.connect)
        await run_in_threadpool(store.open)
        app.state.ready = True
        log_event(logger, "journal_service.started", service=svc.service_name, topic=relay.topic)
        try:
            yield
        finally:
            app.state.shutting_down = True
            app.state.ready = False
            producer.close()
            store.close_connection()
            log_event(logger, "journal_service.stopped", service=svc.service_name)

    app = FastAPI(title="Trade Journal", lifespan=lifespan)
    app.state.service_config = svc
    app.state.producer = producer
    app.state.store = store
    app.state.ready = False
    install_fastapi_request_id_middleware(app, service=svc.service_name)
    app.include_router(trades.router)

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        # Process is alive.
        return {"status": "ok", "service": svc.service_name}

    @app.get("/readyz")
    async def readyz(response: Response) -> dict[str, Any]:
        ready = bool(getattr(app.state, "ready", False)) and producer.connected
        shutting_down = bool(getattr(app.state, "shutting_down", False))
        ok = ready and (not shutting_down)
        response.status_code = 200 if ok else 503
        return {"status": "ok" if ok else "not_ready", "service": svc.service_name}

    return app


def main() -> None:
    import uvicorn

    svc = load_service_config()
    init_structured_logging(service=svc.service_name, env=svc.env, level=svc.log_level)
    uvicorn.run(
        "tradejournal.journal_service.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=svc.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
