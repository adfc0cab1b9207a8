from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, List, Mapping, Optional

from google.api_core import exceptions as gexc


@dataclass(frozen=True, slots=True)
class LocalMessage:
    data: bytes
    message_id: str
    ordering_key: str = ""
    attributes: Dict[str, str] = field(default_factory=dict)
    publish_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True, slots=True)
class LocalReceivedMessage:
    ack_id: str
    message: LocalMessage
    delivery_attempt: int = 1


@dataclass(frozen=True, slots=True)
class LocalPullResponse:
    received_messages: List[LocalReceivedMessage]


class _ImmediateFuture:
    def __init__(self, message_id: str) -> None:
        self._message_id = message_id

    def result(self, timeout: Optional[float] = None) -> str:  # noqa: ARG002
        return self._message_id


@dataclass
class _Subscription:
    topic: str
    enable_message_ordering: bool = False
    ack_deadline_seconds: int = 10
    backlog: Deque[LocalMessage] = field(default_factory=deque)
    outstanding: Dict[str, LocalMessage] = field(default_factory=dict)
    attempts: Dict[str, int] = field(default_factory=dict)


class InMemoryBroker:
    """
    In-memory stand-in for the Pub/Sub publisher and subscriber clients.

    Implements only the calls the trade relay makes (topic/subscription admin,
    publish with ordering keys, synchronous pull, ack, nack via a zero ack
    deadline). With message ordering enabled, a message is not handed out
    while an earlier message with the same ordering key is outstanding.

    This is NOT a production transport; it lets the relay run end-to-end in
    tests and local development without Pub/Sub.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._topics: Dict[str, List[LocalMessage]] = {}
        self._subscriptions: Dict[str, _Subscription] = {}
        self._next_id = 0
        self.resumed: List[tuple[str, str]] = []
        self.closed = False

    # --- paths ---

    @staticmethod
    def topic_path(project: str, topic: str) -> str:
        return f"projects/{project}/topics/{topic}"

    @staticmethod
    def subscription_path(project: str, subscription: str) -> str:
        return f"projects/{project}/subscriptions/{subscription}"

    # --- admin ---

    def get_topic(self, request: Mapping[str, Any]) -> Dict[str, str]:
        path = str(request["topic"])
        with self._lock:
            if path not in self._topics:
                raise gexc.NotFound(f"Topic not found: {path}")
        return {"name": path}

    def create_topic(self, request: Mapping[str, Any]) -> Dict[str, str]:
        path = str(request["name"])
        with self._lock:
            if path in self._topics:
                raise gexc.AlreadyExists(f"Topic already exists: {path}")
            self._topics[path] = []
        return {"name": path}

    def get_subscription(self, request: Mapping[str, Any]) -> Dict[str, str]:
        path = str(request["subscription"])
        with self._lock:
            sub = self._subscriptions.get(path)
            if sub is None:
                raise gexc.NotFound(f"Subscription not found: {path}")
            return {"name": path, "topic": sub.topic}

    def create_subscription(self, request: Mapping[str, Any]) -> Dict[str, str]:
        path = str(request["name"])
        topic = str(request["topic"])
        with self._lock:
            if topic not in self._topics:
                raise gexc.NotFound(f"Topic not found: {topic}")
            if path in self._subscriptions:
                raise gexc.AlreadyExists(f"Subscription already exists: {path}")
            self._subscriptions[path] = _Subscription(
                topic=topic,
                enable_message_ordering=bool(request.get("enable_message_ordering", False)),
                ack_deadline_seconds=int(request.get("ack_deadline_seconds", 10)),
            )
        return {"name": path, "topic": topic}

    # --- publisher surface ---

    def publish(self, topic: str, data: bytes, ordering_key: str = "", **attrs: str) -> _ImmediateFuture:
        if not isinstance(data, bytes):
            raise TypeError("data must be bytes")
        with self._lock:
            if topic not in self._topics:
                raise gexc.NotFound(f"Topic not found: {topic}")
            self._next_id += 1
            msg = LocalMessage(
                data=data,
                message_id=str(self._next_id),
                ordering_key=str(ordering_key or ""),
                attributes={str(k): str(v) for k, v in attrs.items()},
            )
            self._topics[topic].append(msg)
            for sub in self._subscriptions.values():
                if sub.topic == topic:
                    sub.backlog.append(msg)
        return _ImmediateFuture(msg.message_id)

    def resume_publish(self, topic: str, ordering_key: str) -> None:
        with self._lock:
            self.resumed.append((topic, ordering_key))

    # --- subscriber surface ---

    def _sub(self, path: str) -> _Subscription:
        sub = self._subscriptions.get(path)
        if sub is None:
            raise gexc.NotFound(f"Subscription not found: {path}")
        return sub

    def pull(self, request: Mapping[str, Any], timeout: Optional[float] = None) -> LocalPullResponse:  # noqa: ARG002
        path = str(request["subscription"])
        max_messages = max(1, int(request.get("max_messages", 1)))
        out: List[LocalReceivedMessage] = []
        with self._lock:
            sub = self._sub(path)
            busy_keys = {m.ordering_key for m in sub.outstanding.values() if m.ordering_key}
            kept: Deque[LocalMessage] = deque()
            while sub.backlog:
                msg = sub.backlog.popleft()
                blocked = sub.enable_message_ordering and msg.ordering_key and msg.ordering_key in busy_keys
                if blocked or len(out) >= max_messages:
                    kept.append(msg)
                    if sub.enable_message_ordering and msg.ordering_key:
                        busy_keys.add(msg.ordering_key)
                    continue
                ack_id = f"{path}:{msg.message_id}:{sub.attempts.get(msg.message_id, 0) + 1}"
                sub.attempts[msg.message_id] = sub.attempts.get(msg.message_id, 0) + 1
                sub.outstanding[ack_id] = msg
                if sub.enable_message_ordering and msg.ordering_key:
                    busy_keys.add(msg.ordering_key)
                out.append(
                    LocalReceivedMessage(ack_id=ack_id, message=msg, delivery_attempt=sub.attempts[msg.message_id])
                )
            sub.backlog = kept
        return LocalPullResponse(received_messages=out)

    def acknowledge(self, request: Mapping[str, Any]) -> None:
        path = str(request["subscription"])
        with self._lock:
            sub = self._sub(path)
            for ack_id in request.get("ack_ids", []):
                sub.outstanding.pop(str(ack_id), None)

    def modify_ack_deadline(self, request: Mapping[str, Any]) -> None:
        path = str(request["subscription"])
        deadline = int(request.get("ack_deadline_seconds", 0))
        with self._lock:
            sub = self._sub(path)
            if deadline > 0:
                return
            # Zero deadline == nack: redeliver ahead of everything queued.
            for ack_id in reversed(list(request.get("ack_ids", []))):
                msg = sub.outstanding.pop(str(ack_id), None)
                if msg is not None:
                    sub.backlog.appendleft(msg)

    def close(self) -> None:
        self.closed = True

    # --- inspection helpers ---

    def published(self, topic: str) -> List[LocalMessage]:
        with self._lock:
            return list(self._topics.get(topic, []))

    def backlog_size(self, subscription: str) -> int:
        with self._lock:
            sub = self._sub(subscription)
            return len(sub.backlog) + len(sub.outstanding)
