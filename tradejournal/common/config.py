"""
Environment-driven configuration for the journal API and the relay consumer.

All settings are loaded from environment variables into frozen dataclasses.
NO SECRETS ARE STORED IN CODE (DATABASE_URL is read at runtime).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

from tradejournal.common.retry import APPLY_RETRY, PUBLISH_RETRY, RetryPolicy

DEFAULT_PROJECT_ID = "local-dev"
DEFAULT_TOPIC = "trade-events"
DEFAULT_GROUP_ID = "trade-group"


def env_str(name: str, *, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip()
    return s if s else default


def env_int(name: str, *, default: int) -> int:
    raw = env_str(name)
    if raw is None:
        return int(default)
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from e


def env_float(name: str, *, default: float) -> float:
    raw = env_str(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number (got {raw!r})") from e


def _policy_from_env(prefix: str, base: RetryPolicy) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=env_int(f"{prefix}_MAX_ATTEMPTS", default=base.max_attempts),
        base_delay_s=env_float(f"{prefix}_BASE_DELAY_S", default=base.base_delay_s),
        factor=base.factor,
    )


@dataclass(frozen=True)
class RelayConfig:
    """Broker settings shared by the producer and the consumer."""

    project_id: str = DEFAULT_PROJECT_ID
    topic: str = DEFAULT_TOPIC
    group_id: str = DEFAULT_GROUP_ID
    broker_address: Optional[str] = None
    dead_letter_topic: Optional[str] = None
    ack_deadline_s: int = 60
    pull_timeout_s: float = 30.0
    publish_timeout_s: float = 10.0
    publish_retry: RetryPolicy = field(default=PUBLISH_RETRY)
    apply_retry: RetryPolicy = field(default=APPLY_RETRY)

    @classmethod
    def from_options(cls, options: Mapping[str, Any], *, base: Optional["RelayConfig"] = None) -> "RelayConfig":
        """
        Build from the recognized option keys: brokerAddress, groupId, topic.

        Unknown keys are ignored; missing keys keep the values of `base`.
        """
        cfg = base or cls()
        updates: dict[str, Any] = {}
        if options.get("brokerAddress"):
            updates["broker_address"] = str(options["brokerAddress"]).strip()
        if options.get("groupId"):
            updates["group_id"] = str(options["groupId"]).strip()
        if options.get("topic"):
            updates["topic"] = str(options["topic"]).strip()
        return replace(cfg, **updates) if updates else cfg


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "postgres"
    database_url: Optional[str] = None

    def __post_init__(self) -> None:
        if self.backend not in {"postgres", "memory"}:
            raise ValueError(f"unsupported store backend: {self.backend!r}")
        if self.backend == "postgres" and not self.database_url:
            raise ValueError("DATABASE_URL is required for the postgres store backend")


@dataclass(frozen=True)
class ServiceConfig:
    service_name: str = "trade-journal"
    env: str = "local"
    log_level: str = "INFO"
    port: int = 6000


def load_relay_config() -> RelayConfig:
    return RelayConfig(
        project_id=env_str("GOOGLE_CLOUD_PROJECT") or env_str("PUBSUB_PROJECT_ID") or DEFAULT_PROJECT_ID,
        topic=env_str("TRADE_EVENTS_TOPIC", default=DEFAULT_TOPIC) or DEFAULT_TOPIC,
        group_id=env_str("TRADE_CONSUMER_GROUP", default=DEFAULT_GROUP_ID) or DEFAULT_GROUP_ID,
        broker_address=env_str("TRADE_BROKER_ADDRESS"),
        dead_letter_topic=env_str("TRADE_DEAD_LETTER_TOPIC"),
        ack_deadline_s=env_int("TRADE_ACK_DEADLINE_S", default=60),
        pull_timeout_s=env_float("TRADE_PULL_TIMEOUT_S", default=30.0),
        publish_timeout_s=env_float("TRADE_PUBLISH_TIMEOUT_S", default=10.0),
        publish_retry=_policy_from_env("TRADE_PUBLISH", PUBLISH_RETRY),
        apply_retry=_policy_from_env("TRADE_APPLY", APPLY_RETRY),
    )


def load_store_config() -> StoreConfig:
    return StoreConfig(
        backend=(env_str("TRADE_STORE_BACKEND", default="postgres") or "postgres").lower(),
        database_url=env_str("DATABASE_URL"),
    )


def load_service_config(*, default_service: str = "trade-journal") -> ServiceConfig:
    return ServiceConfig(
        service_name=env_str("SERVICE_NAME", default=default_service) or default_service,
        env=env_str("ENV", default="local") or "local",
        log_level=(env_str("LOG_LEVEL", default="INFO") or "INFO").upper(),
        port=env_int("PORT", default=6000),
    )
