"""
Event Codec: trade-event envelope <-> UTF-8 JSON bytes.

`decode` checks the envelope structure first (JSON object, known `eventType`,
`trade.id` present) and then validates the variant's payload. Every failure is
a `MalformedEnvelopeError`; an update that carries no changes still decodes
and is rejected by the consumer's dispatch step.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

from pydantic import BaseModel, ValidationError

from tradejournal.messaging.errors import MalformedEnvelopeError
from tradejournal.messaging.events import EVENT_MODELS, EVENT_TYPES, TradeEvent

# Legacy producers sent the tag under "event".
_TAG_KEYS: tuple[str, ...] = ("eventType", "event_type", "event")


def encode(envelope: BaseModel) -> bytes:
    return envelope.model_dump_json(by_alias=True).encode("utf-8")


def _event_tag(data: Mapping[str, Any]) -> str:
    for k in _TAG_KEYS:
        if k in data:
            tag = data.get(k)
            if not isinstance(tag, str) or not tag:
                raise MalformedEnvelopeError(f"eventType must be a non-empty string (got {tag!r})")
            if tag not in EVENT_TYPES:
                raise MalformedEnvelopeError(f"unknown eventType: {tag!r}")
            return tag
    raise MalformedEnvelopeError("missing eventType")


def _first_error(e: ValidationError) -> str:
    errs = e.errors()
    if not errs:
        return str(e)
    first = errs[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))


def decode_obj(data: Any) -> TradeEvent:
    """Validate an already-parsed JSON value as a trade-event envelope."""
    if not isinstance(data, Mapping):
        raise MalformedEnvelopeError(f"envelope must be a JSON object (got {type(data).__name__})")

    tag = _event_tag(data)

    trade = data.get("trade")
    if not isinstance(trade, Mapping):
        raise MalformedEnvelopeError("missing trade payload")
    trade_id = trade.get("id")
    if not isinstance(trade_id, str) or not trade_id.strip():
        raise MalformedEnvelopeError("missing trade.id")

    body = {k: v for k, v in data.items() if k not in _TAG_KEYS}
    body["eventType"] = tag
    try:
        return EVENT_MODELS[tag].model_validate(body)  # type: ignore[return-value]
    except ValidationError as e:
        raise MalformedEnvelopeError(f"invalid {tag}: {_first_error(e)}") from e


def decode(raw: bytes | str) -> TradeEvent:
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEnvelopeError("envelope is not valid UTF-8") from e
    else:
        text = raw
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedEnvelopeError(f"envelope is not valid JSON: {e.msg}") from e
    return decode_obj(data)
