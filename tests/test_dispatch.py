"""Tests for routing-key resolution and the per-event session lifecycle."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from loguru import logger

from dewey import curation
from dewey.dispatch import ROUTES, Skip, resolve
from dewey.events import EventDecodeError, RoutingKey
from dewey.repo import UnknownEntityError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from dewey.dispatch import Dispatcher

    from .conftest import FakeStore, SessionTracker


@pytest.fixture
def warning_log() -> Iterator[list[str]]:
    messages: list[str] = []
    sink_id = logger.add(lambda m: messages.append(m.record["message"]), level="WARNING")
    yield messages
    logger.remove(sink_id)


class TestResolve:
    def test_every_key_is_routed(self) -> None:
        assert set(ROUTES) == set(RoutingKey)

    def test_only_zone_move_is_ignored(self) -> None:
        ignored = [key for key, target in ROUTES.items() if target is Skip.IGNORED]
        assert ignored == [RoutingKey.ZONE_MV]

    def test_unknown_key(self) -> None:
        assert resolve("foo.bar") is Skip.UNRECOGNIZED
        assert resolve("") is Skip.UNRECOGNIZED

    @pytest.mark.parametrize(
        ("routing_key", "handler"),
        [
            ("collection.add", curation.index_collection_handler),
            ("data-object.cp", curation.index_data_object_handler),
            ("collection.mv", curation.rename_collection_handler),
            ("collection.metadata.cp", curation.reindex_coll_dest_metadata_handler),
            ("data-object.metadata.addw", curation.reindex_multiobject_metadata_handler),
            ("data-object.mod", curation.reindex_data_object_handler),
            ("data-object.sys-metadata.mod", curation.update_data_object_sys_meta_handler),
            ("collection.acl.mod", curation.update_collection_acl_handler),
        ],
    )
    def test_handler_table(self, routing_key: str, handler: object) -> None:
        assert resolve(routing_key) is handler


class TestDispatcher:
    async def test_unknown_key_touches_nothing(
        self, dispatcher: Dispatcher, sessions: SessionTracker, store: FakeStore, warning_log: list[str]
    ) -> None:
        await dispatcher.consume("foo.bar", {"entity": "/z/home/a"})

        assert sessions.opened == 0
        assert store.ops == []
        assert sessions.repo.calls == []
        assert len(warning_log) == 1
        assert "foo.bar" in warning_log[0]

    async def test_ignored_key_opens_no_session(
        self, dispatcher: Dispatcher, sessions: SessionTracker, store: FakeStore, warning_log: list[str]
    ) -> None:
        await dispatcher.consume("zone.mv", {})

        assert sessions.opened == 0
        assert store.ops == []
        assert warning_log == []

    async def test_session_released_after_success(self, dispatcher: Dispatcher, sessions: SessionTracker) -> None:
        await dispatcher.consume("collection.add", {"entity": "/z/home/a"})
        assert (sessions.opened, sessions.released) == (1, 1)

    async def test_session_released_after_failure(
        self, dispatcher: Dispatcher, sessions: SessionTracker, store: FakeStore
    ) -> None:
        with pytest.raises(UnknownEntityError):
            await dispatcher.consume("data-object.add", {"entity": "/z/home/a/missing"})

        assert (sessions.opened, sessions.released) == (1, 1)
        assert store.ops == []

    async def test_one_session_per_event(self, dispatcher: Dispatcher, sessions: SessionTracker) -> None:
        for _ in range(3):
            await dispatcher.consume("collection.metadata.set", {"entity": "/z/home/a"})
        assert (sessions.opened, sessions.released) == (3, 3)

    async def test_missing_field_fails_before_session(self, dispatcher: Dispatcher, sessions: SessionTracker) -> None:
        with pytest.raises(EventDecodeError) as excinfo:
            await dispatcher.consume("collection.mv", {"entity": "/z/home/a"})

        assert excinfo.value.field_name == "new_path"
        assert sessions.opened == 0
