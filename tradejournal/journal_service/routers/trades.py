"""
/api/trades: command emitters for trade mutations plus read endpoints.

Mutations are never written here. Each handler validates the body, builds a
trade-event envelope and publishes it; the relay consumer applies it to the
Trade Store. A failed publish is reported to the caller (503), never as a 2xx.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from tradejournal.common.logging import log_event
from tradejournal.messaging.errors import PublishError
from tradejournal.messaging.events import (
    LiveTradeRecord,
    TradeChanges,
    TradeClosed,
    TradeCloseRequest,
    TradeCreated,
    TradeDeleted,
    TradeEvent,
    TradeRef,
    TradeUpdated,
)
from tradejournal.messaging.publisher import RelayProducer
from tradejournal.observability.spans import start_span
from tradejournal.persistence.trade_store import TradeStore

from ..models import LiveTradeCreate, LiveTradeUpdate, TradeCloseBody

router = APIRouter(prefix="/api/trades", tags=["trades"])
logger = logging.getLogger(__name__)


def get_producer(request: Request) -> RelayProducer:
    return request.app.state.producer


def get_store(request: Request) -> TradeStore:
    return request.app.state.store


def _events_topic(producer: RelayProducer) -> str:
    return producer.config.topic


def _emit(producer: RelayProducer, event: TradeEvent) -> str:
    try:
        message_id = producer.publish(_events_topic(producer), event)
    except PublishError as e:
        log_event(
            logger,
            "trades.publish_failed",
            severity="ERROR",
            trade_event_type=event.event_type,
            trade_id=event.trade_id,
            error=str(e),
        )
        raise HTTPException(
            status_code=503,
            detail={"error": "publish_failed", "message": str(e)},
        ) from e
    log_event(
        logger,
        "trades.command_emitted",
        trade_event_type=event.event_type,
        trade_id=event.trade_id,
        message_id=message_id,
    )
    return message_id


@router.post("/live", status_code=201)
def create_live_trade(body: LiveTradeCreate, producer: RelayProducer = Depends(get_producer)) -> Dict[str, Any]:
    with start_span("create_live_trade", account_id=body.account_id, symbol=body.symbol):
        record = LiveTradeRecord(
            id=uuid.uuid4().hex,
            account_id=body.account_id,
            symbol=body.symbol,
            entry_price=body.entry_price,
            trade_type=body.trade_type,
            size=body.size,
            qty=body.qty,
            sl_percentage=body.sl_percentage,
            entry_date=datetime.now(timezone.utc),
        )
        _emit(producer, TradeCreated(trade=record))
        return record.model_dump(mode="json", by_alias=True)


@router.put("/live/{trade_id}")
def update_live_trade(
    trade_id: str,
    body: LiveTradeUpdate,
    producer: RelayProducer = Depends(get_producer),
) -> Dict[str, Any]:
    with start_span("update_live_trade", trade_id=trade_id):
        fields = body.model_dump(exclude_none=True)
        if not fields:
            raise HTTPException(
                status_code=400,
                detail={"error": "empty_update", "message": "Provide at least one field to update."},
            )
        changes = TradeChanges(id=trade_id, **fields)
        _emit(producer, TradeUpdated(trade=changes))
        return changes.model_dump(mode="json", by_alias=True, exclude_none=True)


@router.delete("/live/{trade_id}", status_code=204)
def delete_live_trade(trade_id: str, producer: RelayProducer = Depends(get_producer)) -> Response:
    with start_span("delete_live_trade", trade_id=trade_id):
        _emit(producer, TradeDeleted(trade=TradeRef(id=trade_id)))
        return Response(status_code=204)


@router.post("/live/{trade_id}/close")
def close_live_trade(
    trade_id: str,
    body: TradeCloseBody,
    producer: RelayProducer = Depends(get_producer),
) -> Dict[str, str]:
    with start_span("close_live_trade", trade_id=trade_id):
        request = TradeCloseRequest(id=trade_id, exit_price=body.exit_price, fees=body.fees)
        _emit(producer, TradeClosed(trade=request))
        return {"message": "Trade closed"}


@router.get("/live")
def list_live_trades(
    account_id: str = Query(..., alias="accountId", min_length=1),
    store: TradeStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    with start_span("list_live_trades", account_id=account_id):
        return [t.to_dict() for t in store.list_live(account_id)]


@router.get("/closed")
def list_closed_trades(
    account_id: str = Query(..., alias="accountId", min_length=1),
    store: TradeStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    with start_span("list_closed_trades", account_id=account_id):
        return [t.to_dict() for t in store.list_closed(account_id)]
