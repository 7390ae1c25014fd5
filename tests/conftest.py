"""Shared test fixtures for Dewey.

Handlers are exercised against an in-memory repository tree and an
in-memory document store that enforce the same contracts as iRODS and
Elasticsearch: creating an existing id and patching a missing one fail.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pytest

from dewey.curation import Session
from dewey.dispatch import Dispatcher
from dewey.indexing import Indexer
from dewey.paths import parent_path
from dewey.repo import RawAclEntry, RawMetadata, UnknownEntityError
from dewey.settings import DeweySettings, IrodsSettings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from dewey.store import DocType

# 2024-01-02T03:04:05.006 UTC
BASE_MS = 1704164645006


class DuplicateDocumentError(Exception):
    pass


class MissingDocumentError(Exception):
    pass


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------


@dataclass
class Node:
    kind: str  # "collection" | "data-object"
    created_ms: int = BASE_MS
    modified_ms: int = BASE_MS
    acl: list[RawAclEntry] = field(default_factory=list)
    metadata: list[RawMetadata] = field(default_factory=list)
    size: int = 0
    type: str | None = None


class FakeRepository:
    """Path-keyed repository tree implementing ``RepositoryReader``."""

    def __init__(self) -> None:
        self.nodes: dict[str, Node] = {}
        self.calls: list[tuple[str, str]] = []

    def add_collection(self, path: str, **kwargs: Any) -> Node:
        kwargs.setdefault("acl", [RawAclEntry("own", "rods", "z")])
        node = Node(kind="collection", **kwargs)
        self.nodes[path] = node
        return node

    def add_data_object(self, path: str, **kwargs: Any) -> Node:
        kwargs.setdefault("acl", [RawAclEntry("own", "rods", "z")])
        node = Node(kind="data-object", **kwargs)
        self.nodes[path] = node
        return node

    def remove(self, path: str) -> None:
        for p in [p for p in self.nodes if p == path or p.startswith(path + "/")]:
            del self.nodes[p]

    def move(self, old: str, new: str) -> None:
        moved = {p: n for p, n in self.nodes.items() if p == old or p.startswith(old + "/")}
        for p in moved:
            del self.nodes[p]
        for p, n in moved.items():
            self.nodes[new + p[len(old) :]] = n

    def _node(self, path: str) -> Node:
        try:
            return self.nodes[path]
        except KeyError:
            raise UnknownEntityError(path) from None

    def _children(self, path: str, kind: str) -> list[str]:
        return sorted(p for p, n in self.nodes.items() if n.kind == kind and p != path and parent_path(p) == path)

    async def exists(self, path: str) -> bool:
        self.calls.append(("exists", path))
        return path in self.nodes

    async def acl_of(self, path: str) -> list[RawAclEntry]:
        self.calls.append(("acl_of", path))
        return list(self._node(path).acl)

    async def created_date(self, path: str) -> str:
        return str(self._node(path).created_ms)

    async def modified_date(self, path: str) -> str:
        return str(self._node(path).modified_ms)

    async def metadata_of(self, path: str) -> list[RawMetadata]:
        self.calls.append(("metadata_of", path))
        return list(self._node(path).metadata)

    async def collections_in(self, path: str) -> list[str]:
        self._node(path)
        return self._children(path, "collection")

    async def data_objects_in(self, path: str) -> list[str]:
        self._node(path)
        return self._children(path, "data-object")

    async def data_object_size(self, path: str) -> int:
        return self._node(path).size

    async def data_object_type(self, path: str) -> str | None:
        return self._node(path).type


# ---------------------------------------------------------------------------
# In-memory document store
# ---------------------------------------------------------------------------


class FakeStore:
    """Dict-backed ``DocumentStore`` that records every mutation."""

    def __init__(self) -> None:
        self.docs: dict[tuple[str, str], dict[str, Any]] = {}
        self.ops: list[tuple[str, ...]] = []

    def get(self, doc_type: DocType | str, doc_id: str) -> dict[str, Any] | None:
        return self.docs.get((str(doc_type), doc_id))

    def ids(self, doc_type: DocType | str) -> set[str]:
        return {i for t, i in self.docs if t == str(doc_type)}

    async def create(self, doc_type: DocType, document: Mapping[str, Any], doc_id: str) -> None:
        key = (str(doc_type), doc_id)
        if key in self.docs:
            raise DuplicateDocumentError(doc_id)
        self.docs[key] = dict(document)
        self.ops.append(("create", str(doc_type), doc_id))

    async def exists(self, doc_type: DocType, doc_id: str) -> bool:
        return (str(doc_type), doc_id) in self.docs

    async def patch(self, doc_type: DocType, doc_id: str, fields: Mapping[str, Any]) -> None:
        key = (str(doc_type), doc_id)
        if key not in self.docs:
            raise MissingDocumentError(doc_id)
        self.docs[key].update(fields)
        self.ops.append(("patch", str(doc_type), doc_id, *sorted(fields)))

    async def remove(self, doc_type: DocType, doc_id: str) -> None:
        self.docs.pop((str(doc_type), doc_id), None)
        self.ops.append(("remove", str(doc_type), doc_id))

    async def remove_by_prefix(self, prefix: str) -> None:
        for key in [k for k in self.docs if k[1].startswith(prefix)]:
            del self.docs[key]
        self.ops.append(("remove_by_prefix", prefix))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def repo() -> FakeRepository:
    """A small zone: /z, /z/home, /z/home/a."""
    r = FakeRepository()
    r.add_collection("/z")
    r.add_collection("/z/home")
    r.add_collection("/z/home/a", created_ms=BASE_MS - 5000, modified_ms=BASE_MS - 5000)
    return r


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def session(repo: FakeRepository, store: FakeStore) -> Session:
    return Session(repo=repo, indexer=Indexer(store))


@dataclass
class SessionTracker:
    """Session factory that counts how often a session was opened and released."""

    repo: FakeRepository
    opened: int = 0
    released: int = 0

    @asynccontextmanager
    async def __call__(self, settings: IrodsSettings) -> AsyncIterator[FakeRepository]:
        self.opened += 1
        try:
            yield self.repo
        finally:
            self.released += 1


@pytest.fixture
def sessions(repo: FakeRepository) -> SessionTracker:
    return SessionTracker(repo)


@pytest.fixture
def dispatcher(sessions: SessionTracker, store: FakeStore) -> Dispatcher:
    return Dispatcher(IrodsSettings(), store, open_session=sessions)


@pytest.fixture
def settings() -> DeweySettings:
    return DeweySettings()
