"""Read access to the iRODS data store.

Handlers only see the :class:`RepositoryReader` protocol.  The concrete
:class:`IrodsRepository` wraps a python-irodsclient session; since that
client is blocking, every call is pushed to a worker thread.
"""

from __future__ import annotations

import asyncio
import datetime
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from irods.exception import CollectionDoesNotExist, DataObjectDoesNotExist
from irods.session import iRODSSession
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from dewey.settings import IrodsSettings


class UnknownEntityError(LookupError):
    """Raised when a path is neither a collection nor a data object."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"No collection or data object at {path}")


@dataclass(frozen=True)
class RawAclEntry:
    """An access grant as the repository reports it."""

    access_name: str
    user_name: str
    user_zone: str


@dataclass(frozen=True)
class RawMetadata:
    """An AVU as the repository reports it."""

    attribute: str
    value: str
    unit: str | None = None


class RepositoryReader(Protocol):
    """Read operations the handlers need from a repository session."""

    async def exists(self, path: str) -> bool: ...

    async def acl_of(self, path: str) -> list[RawAclEntry]: ...

    async def created_date(self, path: str) -> str:
        """Creation time as an epoch-milliseconds string."""
        ...

    async def modified_date(self, path: str) -> str:
        """Last modification time as an epoch-milliseconds string."""
        ...

    async def metadata_of(self, path: str) -> list[RawMetadata]: ...

    async def collections_in(self, path: str) -> list[str]:
        """Absolute paths of the direct child collections of *path*."""
        ...

    async def data_objects_in(self, path: str) -> list[str]:
        """Absolute paths of the direct child data objects of *path*."""
        ...

    async def data_object_size(self, path: str) -> int: ...

    async def data_object_type(self, path: str) -> str | None: ...


def _epoch_ms(value: datetime.datetime) -> str:
    """Render a client timestamp as epoch milliseconds. Naive values are UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.UTC)
    return str(int(value.timestamp()) * 1000)


class IrodsRepository:
    """:class:`RepositoryReader` over a live ``iRODSSession``."""

    def __init__(self, session: iRODSSession) -> None:
        self._session = session

    def _entity(self, path: str) -> Any:
        try:
            return self._session.collections.get(path)
        except CollectionDoesNotExist:
            pass
        try:
            return self._session.data_objects.get(path)
        except DataObjectDoesNotExist as exc:
            raise UnknownEntityError(path) from exc

    def _exists(self, path: str) -> bool:
        return self._session.collections.exists(path) or self._session.data_objects.exists(path)

    def _acl_of(self, path: str) -> list[RawAclEntry]:
        entity = self._entity(path)
        return [
            RawAclEntry(access_name=a.access_name, user_name=a.user_name, user_zone=a.user_zone)
            for a in self._session.acls.get(entity)
        ]

    def _metadata_of(self, path: str) -> list[RawMetadata]:
        return [RawMetadata(m.name, m.value, m.units) for m in self._entity(path).metadata.items()]

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._exists, path)

    async def acl_of(self, path: str) -> list[RawAclEntry]:
        return await asyncio.to_thread(self._acl_of, path)

    async def created_date(self, path: str) -> str:
        entity = await asyncio.to_thread(self._entity, path)
        return _epoch_ms(entity.create_time)

    async def modified_date(self, path: str) -> str:
        entity = await asyncio.to_thread(self._entity, path)
        return _epoch_ms(entity.modify_time)

    async def metadata_of(self, path: str) -> list[RawMetadata]:
        return await asyncio.to_thread(self._metadata_of, path)

    async def collections_in(self, path: str) -> list[str]:
        coll = await asyncio.to_thread(self._session.collections.get, path)
        return [c.path for c in await asyncio.to_thread(lambda: coll.subcollections)]

    async def data_objects_in(self, path: str) -> list[str]:
        coll = await asyncio.to_thread(self._session.collections.get, path)
        return [o.path for o in await asyncio.to_thread(lambda: coll.data_objects)]

    async def data_object_size(self, path: str) -> int:
        obj = await asyncio.to_thread(self._session.data_objects.get, path)
        return int(obj.size)

    async def data_object_type(self, path: str) -> str | None:
        obj = await asyncio.to_thread(self._session.data_objects.get, path)
        return getattr(obj, "type", None) or None


@asynccontextmanager
async def open_irods_session(settings: IrodsSettings) -> AsyncIterator[RepositoryReader]:
    """Open a repository session for the duration of one event.

    The underlying connection pool is released on every exit path.
    """
    session = iRODSSession(
        host=settings.host,
        port=settings.port,
        user=settings.user,
        password=settings.password,
        zone=settings.zone,
    )
    logger.trace("Opened iRODS session {}@{}:{}", settings.user, settings.host, settings.port)
    try:
        yield IrodsRepository(session)
    finally:
        await asyncio.to_thread(session.cleanup)
        logger.trace("Released iRODS session")
