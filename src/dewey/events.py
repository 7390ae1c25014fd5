"""Change event types and the Redis Streams event bus that carries them."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis

from dewey.paths import canonical
from dewey.telemetry import get_tracer

if TYPE_CHECKING:
    from dewey.settings import RedisSettings

_tracer = get_tracer(__name__)


class EventDecodeError(ValueError):
    """Raised when a change payload lacks a field its routing key requires."""

    def __init__(self, routing_key: str, field_name: str) -> None:
        self.routing_key = routing_key
        self.field_name = field_name
        super().__init__(f"{routing_key} event is missing required field {field_name!r}")


# ---------------------------------------------------------------------------
# Routing keys
# ---------------------------------------------------------------------------


class RoutingKey(StrEnum):
    """Every routing key the repository publishes."""

    COLLECTION_ADD = "collection.add"
    COLLECTION_RM = "collection.rm"
    COLLECTION_MV = "collection.mv"
    COLLECTION_ACL_MOD = "collection.acl.mod"
    COLLECTION_METADATA_ADD = "collection.metadata.add"
    COLLECTION_METADATA_ADDA = "collection.metadata.adda"
    COLLECTION_METADATA_CP = "collection.metadata.cp"
    COLLECTION_METADATA_MOD = "collection.metadata.mod"
    COLLECTION_METADATA_RM = "collection.metadata.rm"
    COLLECTION_METADATA_RMW = "collection.metadata.rmw"
    COLLECTION_METADATA_SET = "collection.metadata.set"
    DATA_OBJECT_ADD = "data-object.add"
    DATA_OBJECT_CP = "data-object.cp"
    DATA_OBJECT_MV = "data-object.mv"
    DATA_OBJECT_RM = "data-object.rm"
    DATA_OBJECT_MOD = "data-object.mod"
    DATA_OBJECT_ACL_MOD = "data-object.acl.mod"
    DATA_OBJECT_SYS_METADATA_MOD = "data-object.sys-metadata.mod"
    DATA_OBJECT_METADATA_ADD = "data-object.metadata.add"
    DATA_OBJECT_METADATA_ADDA = "data-object.metadata.adda"
    DATA_OBJECT_METADATA_ADDW = "data-object.metadata.addw"
    DATA_OBJECT_METADATA_CP = "data-object.metadata.cp"
    DATA_OBJECT_METADATA_MOD = "data-object.metadata.mod"
    DATA_OBJECT_METADATA_RM = "data-object.metadata.rm"
    DATA_OBJECT_METADATA_RMW = "data-object.metadata.rmw"
    DATA_OBJECT_METADATA_SET = "data-object.metadata.set"
    ZONE_MV = "zone.mv"

    @classmethod
    def parse(cls, value: str) -> RoutingKey | None:
        """Return the matching key, or ``None`` for an unrecognized one."""
        try:
            return cls(value)
        except ValueError:
            return None


# Fields a payload must carry beyond its routing key
_REQUIRED_FIELDS: dict[RoutingKey, tuple[str, ...]] = {
    RoutingKey.COLLECTION_MV: ("entity", "new_path"),
    RoutingKey.DATA_OBJECT_MV: ("entity", "new_path"),
    RoutingKey.COLLECTION_METADATA_CP: ("destination",),
    RoutingKey.DATA_OBJECT_METADATA_CP: ("destination",),
    RoutingKey.DATA_OBJECT_METADATA_ADDW: ("pattern",),
    RoutingKey.ZONE_MV: (),
}

_TRUE_STRINGS = frozenset({"true", "yes", "1"})


def _flag(value: Any) -> bool:
    """Read a boolean payload field; string spellings such as ``"false"`` are parsed, not tested for emptiness."""
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


# ---------------------------------------------------------------------------
# Change event
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeEvent:
    """One repository mutation, as delivered by the bus."""

    routing_key: RoutingKey
    entity: str | None = None
    destination: str | None = None
    new_path: str | None = None
    creator: str | None = None
    size: int | None = None
    type: str | None = None
    permission: Any = None
    recursive: bool = False
    pattern: str | None = None

    @property
    def path(self) -> str:
        """The primary subject of the event. Only valid when ``entity`` is set."""
        if self.entity is None:
            raise EventDecodeError(self.routing_key, "entity")
        return self.entity

    @classmethod
    def from_payload(cls, routing_key: RoutingKey, payload: Mapping[str, Any]) -> ChangeEvent:
        """Build an event from a decoded JSON payload.

        Accepts both ``new-path`` and ``newPath`` spellings for the rename
        target.  Path fields are canonicalized.
        """

        def _path(*names: str) -> str | None:
            for name in names:
                value = payload.get(name)
                if value:
                    return canonical(str(value))
            return None

        size = payload.get("size")
        event = cls(
            routing_key=routing_key,
            entity=_path("entity", "path"),
            destination=_path("destination"),
            new_path=_path("new-path", "newPath", "new_path"),
            creator=payload.get("creator") or payload.get("author"),
            size=int(size) if size is not None else None,
            type=payload.get("type"),
            permission=payload.get("permission"),
            recursive=_flag(payload.get("recursive")),
            pattern=payload.get("pattern"),
        )
        for name in _REQUIRED_FIELDS.get(routing_key, ("entity",)):
            if getattr(event, name) is None:
                raise EventDecodeError(routing_key, name)
        return event


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def encode_message(routing_key: str, payload: Mapping[str, Any]) -> dict[bytes, bytes]:
    """Serialize a change message for XADD."""
    return {b"routing_key": routing_key.encode(), b"data": json.dumps(dict(payload)).encode()}


def decode_message(fields: dict[bytes, bytes]) -> tuple[str, dict[str, Any]]:
    """Deserialize a stream entry back into ``(routing_key, payload)``."""
    routing_key = fields.get(b"routing_key", b"").decode()
    raw = fields.get(b"data")
    payload = json.loads(raw) if raw else {}
    return routing_key, payload


# ---------------------------------------------------------------------------
# EventBus: thin wrapper over redis.asyncio
# ---------------------------------------------------------------------------


class EventBus:
    """Thin async wrapper over a Redis Stream of change messages.

    The bus only transports ``(routing_key, payload)`` pairs; acknowledgment
    and redelivery are driven by the consumer.
    """

    def __init__(self, settings: RedisSettings) -> None:
        url = f"redis://{settings.host}:{settings.port}/{settings.db}"
        if settings.password:
            url = f"redis://:{settings.password}@{settings.host}:{settings.port}/{settings.db}"
        self._redis = aioredis.from_url(url, decode_responses=False)
        self._stream = f"{settings.stream_prefix}:{settings.topic}"

    @property
    def stream(self) -> str:
        return self._stream

    async def ping(self) -> bool:
        """Health check. Returns True if Redis is reachable."""
        return await self._redis.ping()

    async def ensure_group(self, group: str) -> None:
        """Idempotently create a consumer group."""
        try:
            await self._redis.xgroup_create(self._stream, group, id="0", mkstream=True)
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def publish(self, routing_key: str, payload: Mapping[str, Any], *, maxlen: int = 100_000) -> bytes:
        """Publish a change message. Returns the message ID."""
        with _tracer.start_as_current_span("eventbus.publish", attributes={"routing_key": routing_key}):
            return await self._redis.xadd(
                self._stream, encode_message(routing_key, payload), maxlen=maxlen, approximate=True
            )

    async def read_batch(
        self,
        group: str,
        consumer: str,
        *,
        count: int = 10,
        block_ms: int = 2000,
        after: bytes | None = None,
    ) -> list[tuple[bytes, dict[bytes, bytes]]]:
        """Pull a batch of messages via XREADGROUP.

        When *after* is given, the consumer's own delivered-but-unacknowledged
        entries with a greater ID are returned instead of new ones (pass
        ``b"0"`` to start from the oldest).
        """
        with _tracer.start_as_current_span("eventbus.read_batch", attributes={"group": group, "consumer": consumer}):
            result: Any = await self._redis.xreadgroup(
                group,
                consumer,
                {self._stream: after if after is not None else ">"},
                count=count,
                block=None if after is not None else block_ms,
            )
            if not result:
                return []
            # result shape: [[stream_key, [(msg_id, fields), ...]]]
            return result[0][1]

    async def ack(self, group: str, *msg_ids: bytes) -> int:
        """Acknowledge messages after successful processing."""
        return await self._redis.xack(self._stream, group, *msg_ids)

    async def close(self) -> None:
        """Close the connection pool."""
        await self._redis.aclose()
