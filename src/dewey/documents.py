"""Index document shapes and the builders that assemble them from repository state."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from dewey.paths import basename

if TYPE_CHECKING:
    from dewey.repo import RawAclEntry, RawMetadata, RepositoryReader


class Permission(StrEnum):
    """Access levels kept in the index. Anything weaker is dropped."""

    OWN = "own"
    WRITE = "write"
    READ = "read"


# Repository access names → indexed permission (iRODS spells these differently across versions)
_ACCESS_NAMES: dict[str, Permission] = {
    "own": Permission.OWN,
    "write": Permission.WRITE,
    "modify object": Permission.WRITE,
    "modify_object": Permission.WRITE,
    "read": Permission.READ,
    "read object": Permission.READ,
    "read_object": Permission.READ,
}


@dataclass(frozen=True)
class AclEntry:
    permission: Permission
    username: str
    zone: str

    def to_source(self) -> dict[str, Any]:
        return {"permission": self.permission.value, "user": {"username": self.username, "zone": self.zone}}


@dataclass(frozen=True)
class MetadataTriple:
    attribute: str
    value: str
    unit: str

    def to_source(self) -> dict[str, str]:
        return {"attribute": self.attribute, "value": self.value, "unit": self.unit}


@dataclass(frozen=True)
class CollectionDocument:
    """Index document for a collection. ``id`` is the canonical path."""

    id: str
    user_permissions: list[AclEntry] = field(default_factory=list)
    creator: str | None = None
    date_created: str | None = None
    date_modified: str | None = None
    metadata: list[MetadataTriple] = field(default_factory=list)

    @property
    def label(self) -> str:
        return basename(self.id)

    def to_source(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userPermissions": [entry.to_source() for entry in self.user_permissions],
            "creator": self.creator,
            "dateCreated": self.date_created,
            "dateModified": self.date_modified,
            "label": self.label,
            "metadata": [triple.to_source() for triple in self.metadata],
        }


@dataclass(frozen=True)
class DataObjectDocument(CollectionDocument):
    """Index document for a data object."""

    file_size: int | None = None
    file_type: str | None = None

    def to_source(self) -> dict[str, Any]:
        source = super().to_source()
        source["fileSize"] = self.file_size
        source["fileType"] = self.file_type
        return source


# ---------------------------------------------------------------------------
# Field formatting
# ---------------------------------------------------------------------------


def format_time(epoch_ms: str) -> str:
    """Render an epoch-milliseconds string as ``YYYY-MM-DDTHH:MM:SS.mmm`` (UTC)."""
    millis = int(epoch_ms)
    seconds, ms = divmod(millis, 1000)
    moment = datetime.datetime.fromtimestamp(seconds, tz=datetime.UTC)
    return f"{moment:%Y-%m-%dT%H:%M:%S}.{ms:03d}"


def format_acl(raw: list[RawAclEntry]) -> list[AclEntry]:
    """Convert repository grants, dropping access levels the index does not track."""
    entries: list[AclEntry] = []
    for grant in raw:
        permission = _ACCESS_NAMES.get(grant.access_name.lower())
        if permission is not None:
            entries.append(AclEntry(permission=permission, username=grant.user_name, zone=grant.user_zone))
    return entries


def format_metadata(raw: list[RawMetadata]) -> list[MetadataTriple]:
    return [MetadataTriple(attribute=m.attribute, value=m.value, unit=m.unit or "") for m in raw]


# ---------------------------------------------------------------------------
# Field readers
# ---------------------------------------------------------------------------


async def read_acl(repo: RepositoryReader, path: str) -> list[AclEntry]:
    return format_acl(await repo.acl_of(path))


async def read_metadata(repo: RepositoryReader, path: str) -> list[MetadataTriple]:
    return format_metadata(await repo.metadata_of(path))


async def read_date_created(repo: RepositoryReader, path: str) -> str:
    return format_time(await repo.created_date(path))


async def read_date_modified(repo: RepositoryReader, path: str) -> str:
    return format_time(await repo.modified_date(path))


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


async def build_collection_doc(repo: RepositoryReader, path: str, *, creator: str | None = None) -> CollectionDocument:
    """Assemble a collection document from the current repository state."""
    return CollectionDocument(
        id=path,
        user_permissions=await read_acl(repo, path),
        creator=creator,
        date_created=await read_date_created(repo, path),
        date_modified=await read_date_modified(repo, path),
        metadata=await read_metadata(repo, path),
    )


async def build_data_object_doc(
    repo: RepositoryReader,
    path: str,
    *,
    creator: str | None = None,
    file_size: int | None = None,
    file_type: str | None = None,
) -> DataObjectDocument:
    """Assemble a data object document.

    ``creator``, ``file_size`` and ``file_type`` come from the triggering
    event.  When the event carries no size or type (crawls, metadata and
    permission fallbacks) they are read from the repository instead.
    """
    base = await build_collection_doc(repo, path, creator=creator)
    if file_size is None:
        file_size = await repo.data_object_size(path)
    if file_type is None:
        file_type = await repo.data_object_type(path)
    return DataObjectDocument(
        id=base.id,
        user_permissions=base.user_permissions,
        creator=base.creator,
        date_created=base.date_created,
        date_modified=base.date_modified,
        metadata=base.metadata,
        file_size=file_size,
        file_type=file_type,
    )
