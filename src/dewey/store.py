"""Async Elasticsearch document store for Dewey.

Collections and data objects live in two indices, ``<prefix>-folder`` and
``<prefix>-file``.  Every document repeats its id in a ``keyword`` field so
whole subtrees can be removed with a prefix query.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from elasticsearch import AsyncElasticsearch
from loguru import logger

from dewey.telemetry import get_metrics, get_tracer

if TYPE_CHECKING:
    from collections.abc import Mapping

    from dewey.settings import ElasticsearchSettings

_tracer = get_tracer(__name__)


class DocType(StrEnum):
    """Store-level grouping a document belongs to."""

    FOLDER = "folder"
    FILE = "file"


class DocumentStore(Protocol):
    """Write operations the handlers need from the index."""

    async def create(self, doc_type: DocType, document: Mapping[str, Any], doc_id: str) -> None:
        """Create a document. Fails if *doc_id* is already present."""
        ...

    async def exists(self, doc_type: DocType, doc_id: str) -> bool: ...

    async def patch(self, doc_type: DocType, doc_id: str, fields: Mapping[str, Any]) -> None:
        """Overwrite the given top-level fields of an existing document."""
        ...

    async def remove(self, doc_type: DocType, doc_id: str) -> None:
        """Remove a document. Removing an absent document is not an error."""
        ...

    async def remove_by_prefix(self, prefix: str) -> None:
        """Remove every document, of any type, whose id starts with *prefix*."""
        ...


_USER_MAPPING: dict[str, Any] = {
    "properties": {
        "username": {"type": "keyword"},
        "zone": {"type": "keyword"},
    }
}

_COMMON_PROPERTIES: dict[str, Any] = {
    "id": {"type": "keyword"},
    "label": {"type": "text", "fields": {"raw": {"type": "keyword"}}},
    "creator": {"type": "keyword"},
    "dateCreated": {"type": "date", "format": "date_hour_minute_second_millis"},
    "dateModified": {"type": "date", "format": "date_hour_minute_second_millis"},
    "userPermissions": {
        "type": "nested",
        "properties": {"permission": {"type": "keyword"}, "user": _USER_MAPPING},
    },
    "metadata": {
        "type": "nested",
        "properties": {
            "attribute": {"type": "keyword"},
            "value": {"type": "text", "fields": {"raw": {"type": "keyword"}}},
            "unit": {"type": "keyword"},
        },
    },
}

INDEX_MAPPINGS: dict[DocType, dict[str, Any]] = {
    DocType.FOLDER: {"properties": _COMMON_PROPERTIES},
    DocType.FILE: {
        "properties": {
            **_COMMON_PROPERTIES,
            "fileSize": {"type": "long"},
            "fileType": {"type": "keyword"},
        }
    },
}


def patch_script(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Build a painless update script that assigns each field from params."""
    source = " ".join(f"ctx._source.{name} = params.{name};" for name in fields)
    return {"source": source, "lang": "painless", "params": dict(fields)}


class ElasticsearchStore:
    """:class:`DocumentStore` backed by ``AsyncElasticsearch``."""

    def __init__(self, settings: ElasticsearchSettings, *, client: AsyncElasticsearch | None = None) -> None:
        self._settings = settings
        self._client = client or AsyncElasticsearch(settings.url, request_timeout=settings.request_timeout_s)

    def index_name(self, doc_type: DocType) -> str:
        return f"{self._settings.index}-{doc_type.value}"

    @property
    def _all_indices(self) -> list[str]:
        return [self.index_name(t) for t in DocType]

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def ensure_indices(self) -> None:
        """Create both indices with their mappings if they are missing."""
        for doc_type, mappings in INDEX_MAPPINGS.items():
            name = self.index_name(doc_type)
            if await self._client.indices.exists(index=name):
                logger.debug("Index {} already exists", name)
                continue
            await self._client.indices.create(index=name, mappings=mappings)
            logger.info("Created index {}", name)

    async def create(self, doc_type: DocType, document: Mapping[str, Any], doc_id: str) -> None:
        with _tracer.start_as_current_span("store.create", attributes={"doc_type": doc_type.value}):
            await self._client.create(index=self.index_name(doc_type), id=doc_id, document=dict(document))
        get_metrics().documents_written.add(1, {"op": "create"})
        logger.debug("Indexed {} {}", doc_type.value, doc_id)

    async def exists(self, doc_type: DocType, doc_id: str) -> bool:
        return bool(await self._client.exists(index=self.index_name(doc_type), id=doc_id))

    async def patch(self, doc_type: DocType, doc_id: str, fields: Mapping[str, Any]) -> None:
        with _tracer.start_as_current_span("store.patch", attributes={"doc_type": doc_type.value}):
            await self._client.update(index=self.index_name(doc_type), id=doc_id, script=patch_script(fields))
        get_metrics().documents_written.add(1, {"op": "patch"})
        logger.debug("Patched {} {} ({})", doc_type.value, doc_id, ", ".join(fields))

    async def remove(self, doc_type: DocType, doc_id: str) -> None:
        with _tracer.start_as_current_span("store.remove", attributes={"doc_type": doc_type.value}):
            resp = await self._client.options(ignore_status=404).delete(index=self.index_name(doc_type), id=doc_id)
        if resp.get("result") == "deleted":
            get_metrics().documents_written.add(1, {"op": "remove"})
            logger.debug("Removed {} {}", doc_type.value, doc_id)
        else:
            logger.debug("{} {} was not indexed, nothing to remove", doc_type.value, doc_id)

    async def remove_by_prefix(self, prefix: str) -> None:
        with _tracer.start_as_current_span("store.remove_by_prefix"):
            # delete_by_query only sees documents already refreshed into search
            await self._client.indices.refresh(index=self._all_indices, ignore_unavailable=True)
            resp = await self._client.delete_by_query(
                index=self._all_indices,
                query={"prefix": {"id": prefix}},
                conflicts="proceed",
                refresh=self._settings.refresh_on_delete,
                ignore_unavailable=True,
            )
        deleted = int(resp.get("deleted", 0))
        get_metrics().documents_written.add(deleted, {"op": "remove"})
        logger.debug("Removed {} document(s) under {}", deleted, prefix)

    async def close(self) -> None:
        await self._client.close()
