"""Routing of change messages to their handlers.

:func:`resolve` maps a routing key to a handler or to one of the two
:class:`Skip` variants.  :class:`Dispatcher` is the single entry point the
event bus calls: it opens a repository session per event and guarantees the
session is released whatever the handler does.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Mapping
from contextlib import AbstractAsyncContextManager
from enum import Enum
from typing import TYPE_CHECKING, Any

from loguru import logger

from dewey import curation
from dewey.curation import Session
from dewey.events import ChangeEvent, RoutingKey
from dewey.indexing import Indexer
from dewey.repo import open_irods_session
from dewey.telemetry import get_metrics, get_tracer

if TYPE_CHECKING:
    from dewey.repo import RepositoryReader
    from dewey.settings import IrodsSettings
    from dewey.store import DocumentStore

_tracer = get_tracer(__name__)

Handler = Callable[[Session, ChangeEvent], Awaitable[None]]
SessionFactory = Callable[["IrodsSettings"], AbstractAsyncContextManager["RepositoryReader"]]


class Skip(Enum):
    """Outcomes of :func:`resolve` that involve no handler."""

    IGNORED = "ignored"  # known key, nothing to index
    UNRECOGNIZED = "unrecognized"  # not a key the repository publishes


ROUTES: dict[RoutingKey, Handler | Skip] = {
    RoutingKey.COLLECTION_ACL_MOD: curation.update_collection_acl_handler,
    RoutingKey.COLLECTION_ADD: curation.index_collection_handler,
    RoutingKey.COLLECTION_METADATA_ADD: curation.reindex_collection_metadata_handler,
    RoutingKey.COLLECTION_METADATA_ADDA: curation.reindex_collection_metadata_handler,
    RoutingKey.COLLECTION_METADATA_CP: curation.reindex_coll_dest_metadata_handler,
    RoutingKey.COLLECTION_METADATA_MOD: curation.reindex_collection_metadata_handler,
    RoutingKey.COLLECTION_METADATA_RM: curation.reindex_collection_metadata_handler,
    RoutingKey.COLLECTION_METADATA_RMW: curation.reindex_collection_metadata_handler,
    RoutingKey.COLLECTION_METADATA_SET: curation.reindex_collection_metadata_handler,
    RoutingKey.COLLECTION_MV: curation.rename_collection_handler,
    RoutingKey.COLLECTION_RM: curation.rm_collection_handler,
    RoutingKey.DATA_OBJECT_ACL_MOD: curation.update_data_object_acl_handler,
    RoutingKey.DATA_OBJECT_ADD: curation.index_data_object_handler,
    RoutingKey.DATA_OBJECT_CP: curation.index_data_object_handler,
    RoutingKey.DATA_OBJECT_METADATA_ADD: curation.reindex_data_object_metadata_handler,
    RoutingKey.DATA_OBJECT_METADATA_ADDA: curation.reindex_data_object_metadata_handler,
    RoutingKey.DATA_OBJECT_METADATA_ADDW: curation.reindex_multiobject_metadata_handler,
    RoutingKey.DATA_OBJECT_METADATA_CP: curation.reindex_obj_dest_metadata_handler,
    RoutingKey.DATA_OBJECT_METADATA_MOD: curation.reindex_data_object_metadata_handler,
    RoutingKey.DATA_OBJECT_METADATA_RM: curation.reindex_data_object_metadata_handler,
    RoutingKey.DATA_OBJECT_METADATA_RMW: curation.reindex_data_object_metadata_handler,
    RoutingKey.DATA_OBJECT_METADATA_SET: curation.reindex_data_object_metadata_handler,
    RoutingKey.DATA_OBJECT_MOD: curation.reindex_data_object_handler,
    RoutingKey.DATA_OBJECT_MV: curation.rename_data_object_handler,
    RoutingKey.DATA_OBJECT_RM: curation.rm_data_object_handler,
    RoutingKey.DATA_OBJECT_SYS_METADATA_MOD: curation.update_data_object_sys_meta_handler,
    RoutingKey.ZONE_MV: Skip.IGNORED,
}


def resolve(routing_key: str) -> Handler | Skip:
    """Return the handler for *routing_key*, or why there is none."""
    key = RoutingKey.parse(routing_key)
    if key is None:
        return Skip.UNRECOGNIZED
    return ROUTES[key]


class Dispatcher:
    """Entry point for change messages delivered by the event bus."""

    def __init__(
        self,
        irods: IrodsSettings,
        store: DocumentStore,
        *,
        open_session: SessionFactory = open_irods_session,
    ) -> None:
        self._irods = irods
        self._indexer = Indexer(store)
        self._open_session = open_session

    async def consume(self, routing_key: str, payload: Mapping[str, Any]) -> None:
        """Handle one change message.

        Unrecognized keys are logged and dropped without touching either
        backend.  Any handler or backend error propagates to the caller.
        """
        logger.trace("received message: routing key = {}, message = {}", routing_key, payload)
        metrics = get_metrics()
        metrics.events_received.add(1, {"routing_key": routing_key})

        handler = resolve(routing_key)
        if handler is Skip.UNRECOGNIZED:
            metrics.events_unrecognized.add(1)
            logger.warning("unknown routing key {} received with message {}", routing_key, payload)
            return
        if handler is Skip.IGNORED:
            logger.debug("ignoring {} message", routing_key)
            return

        event = ChangeEvent.from_payload(RoutingKey(routing_key), payload)
        t0 = time.monotonic()
        with _tracer.start_as_current_span("dispatch.consume", attributes={"routing_key": routing_key}):
            async with self._open_session(self._irods) as repo:
                await handler(Session(repo=repo, indexer=self._indexer), event)
        metrics.event_latency.record(time.monotonic() - t0, {"routing_key": routing_key})
