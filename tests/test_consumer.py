"""Tests for the acknowledge-after-success consumer loop, against an in-memory bus."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from dewey.consumer import ChangeConsumer
from dewey.events import encode_message
from dewey.settings import RedisSettings


class FakeBus:
    """In-memory stand-in for ``EventBus`` with a single consumer's pending list."""

    stream = "dewey:indexing"

    def __init__(self) -> None:
        self.new: list[tuple[bytes, dict[bytes, bytes]]] = []
        self.pending: list[tuple[bytes, dict[bytes, bytes]]] = []
        self.acked: list[bytes] = []
        self.groups: list[str] = []
        self._seq = 0

    def add(self, routing_key: str, payload: dict[str, Any]) -> bytes:
        self._seq += 1
        msg_id = f"{self._seq}-0".encode()
        self.new.append((msg_id, encode_message(routing_key, payload)))
        return msg_id

    async def ensure_group(self, group: str) -> None:
        self.groups.append(group)

    async def read_batch(
        self, group: str, consumer: str, *, count: int = 10, block_ms: int = 2000, after: bytes | None = None
    ) -> list[tuple[bytes, dict[bytes, bytes]]]:
        if after is not None:
            seq = int(after.split(b"-")[0])
            return [m for m in self.pending if int(m[0].split(b"-")[0]) > seq][:count]
        batch, self.new = self.new[:count], self.new[count:]
        self.pending.extend(batch)
        if not batch:
            await asyncio.sleep(0)
        return batch

    async def ack(self, group: str, *msg_ids: bytes) -> int:
        self.acked.extend(msg_ids)
        self.pending = [m for m in self.pending if m[0] not in msg_ids]
        return len(msg_ids)


class RecordingDispatcher:
    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.seen: list[tuple[str, dict[str, Any]]] = []
        self.fail_on = fail_on or set()

    async def consume(self, routing_key: str, payload: dict[str, Any]) -> None:
        self.seen.append((routing_key, payload))
        if payload.get("entity") in self.fail_on:
            raise RuntimeError("store unavailable")


@pytest.fixture
def bus() -> FakeBus:
    return FakeBus()


def _consumer(bus: FakeBus, dispatcher: RecordingDispatcher, **overrides: Any) -> ChangeConsumer:
    return ChangeConsumer(bus, dispatcher, RedisSettings(**overrides))  # type: ignore[arg-type]


async def _run_until_drained(consumer: ChangeConsumer, bus: FakeBus) -> None:
    task = asyncio.create_task(consumer.run())
    for _ in range(100):
        await asyncio.sleep(0)
        if not bus.new:
            break
    consumer.stop()
    await asyncio.wait_for(task, timeout=1)


async def test_messages_handled_in_order_and_acked(bus: FakeBus) -> None:
    ids = [bus.add("data-object.add", {"entity": f"/z/f{i}"}) for i in range(5)]
    dispatcher = RecordingDispatcher()
    consumer = _consumer(bus, dispatcher, batch_size=2)

    await _run_until_drained(consumer, bus)

    assert [p["entity"] for _, p in dispatcher.seen] == [f"/z/f{i}" for i in range(5)]
    assert bus.acked == ids
    assert bus.pending == []
    assert consumer.handled == 5
    assert bus.groups == [consumer.group]


async def test_failed_message_stays_pending(bus: FakeBus) -> None:
    ok = bus.add("data-object.add", {"entity": "/z/ok"})
    bad = bus.add("data-object.add", {"entity": "/z/bad"})
    consumer = _consumer(bus, RecordingDispatcher(fail_on={"/z/bad"}))

    await _run_until_drained(consumer, bus)

    assert bus.acked == [ok]
    assert [m[0] for m in bus.pending] == [bad]
    assert (consumer.handled, consumer.failed) == (1, 1)


async def test_pending_replayed_on_start(bus: FakeBus) -> None:
    first = bus.add("collection.add", {"entity": "/z/a"})
    second = bus.add("collection.add", {"entity": "/z/b"})
    # delivered to this consumer by an earlier run that died before acknowledging
    bus.pending, bus.new = bus.new, []
    dispatcher = RecordingDispatcher()
    consumer = _consumer(bus, dispatcher, batch_size=1)

    replayed = await consumer.replay_pending()

    assert replayed == 2
    assert [p["entity"] for _, p in dispatcher.seen] == ["/z/a", "/z/b"]
    assert bus.acked == [first, second]


async def test_replay_skips_past_failures(bus: FakeBus) -> None:
    bus.add("collection.add", {"entity": "/z/bad"})
    good = bus.add("collection.add", {"entity": "/z/good"})
    bus.pending, bus.new = bus.new, []
    consumer = _consumer(bus, RecordingDispatcher(fail_on={"/z/bad"}), batch_size=1)

    assert await consumer.replay_pending() == 2
    assert bus.acked == [good]
    assert len(bus.pending) == 1


async def test_trimmed_entry_is_acked(bus: FakeBus) -> None:
    dispatcher = RecordingDispatcher()
    consumer = _consumer(bus, dispatcher)

    assert await consumer.handle(b"7-0", {}) is True
    assert await consumer.handle(b"8-0", None) is True
    assert dispatcher.seen == []


async def test_cancellation_propagates(bus: FakeBus) -> None:
    class CancellingDispatcher(RecordingDispatcher):
        async def consume(self, routing_key: str, payload: dict[str, Any]) -> None:
            raise asyncio.CancelledError

    consumer = _consumer(bus, CancellingDispatcher())
    with pytest.raises(asyncio.CancelledError):
        await consumer.handle(b"1-0", encode_message("collection.add", {"entity": "/z"}))
    assert consumer.failed == 0
