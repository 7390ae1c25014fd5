"""Bus consumer that feeds change messages to the dispatcher.

Messages are handled one at a time in delivery order.  A message is
acknowledged only after its handler succeeded; a failed one stays in the
group's pending list and is replayed the next time the consumer starts.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from dewey.events import decode_message

if TYPE_CHECKING:
    from dewey.dispatch import Dispatcher
    from dewey.events import EventBus
    from dewey.settings import RedisSettings


class ChangeConsumer:
    """Pull loop: XREADGROUP → dispatch → ACK."""

    def __init__(self, bus: EventBus, dispatcher: Dispatcher, settings: RedisSettings) -> None:
        self.bus = bus
        self.dispatcher = dispatcher
        self.group = settings.group
        self.consumer_name = settings.consumer_name
        self.batch_size = settings.batch_size
        self.block_ms = settings.block_ms
        self.handled = 0
        self.failed = 0
        self._stop = False

    def stop(self) -> None:
        """Signal the consumer to stop after the current batch."""
        self._stop = True

    async def handle(self, msg_id: bytes, fields: dict[bytes, bytes] | None) -> bool:
        """Dispatch one stream entry. Returns ``True`` when it may be acknowledged."""
        if not fields:
            # Entry trimmed from the stream while pending; nothing left to handle.
            logger.debug("{} dropping trimmed message {}", self.consumer_name, msg_id)
            return True
        routing_key, payload = decode_message(fields)
        try:
            await self.dispatcher.consume(routing_key, payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failed += 1
            logger.exception(
                "{} failed to handle {} message {}, leaving it pending", self.consumer_name, routing_key, msg_id
            )
            return False
        self.handled += 1
        return True

    async def _drain(self, messages: list[tuple[bytes, dict[bytes, bytes]]]) -> None:
        acked = [msg_id for msg_id, fields in messages if await self.handle(msg_id, fields)]
        if acked:
            await self.bus.ack(self.group, *acked)

    async def replay_pending(self) -> int:
        """Retry every message this consumer received but never acknowledged."""
        replayed = 0
        last_id = b"0"
        while not self._stop:
            batch = await self.bus.read_batch(self.group, self.consumer_name, count=self.batch_size, after=last_id)
            if not batch:
                break
            replayed += len(batch)
            await self._drain(batch)
            last_id = batch[-1][0]
        if replayed:
            logger.info("{} replayed {} pending message(s)", self.consumer_name, replayed)
        return replayed

    async def run(self) -> None:
        """Main consumer loop. Runs until ``stop()`` is called."""
        await self.bus.ensure_group(self.group)
        logger.info("{} started (group={}, stream={})", self.consumer_name, self.group, self.bus.stream)

        await self.replay_pending()

        while not self._stop:
            messages = await self.bus.read_batch(
                self.group, self.consumer_name, count=self.batch_size, block_ms=self.block_ms
            )
            if messages:
                await self._drain(messages)

        logger.info("{} stopped ({} handled, {} failed)", self.consumer_name, self.handled, self.failed)
