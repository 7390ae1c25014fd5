"""Change handlers that keep the index consistent with the repository.

Every handler takes the per-event :class:`Session` and the decoded
:class:`~dewey.events.ChangeEvent`.  Handlers that may run before, after or
instead of the event that created an entity follow the same shape: patch
the document when it is indexed, otherwise build it whole from the current
repository state.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from dewey.paths import basename, parent_path, sql_glob_to_regex
from dewey.store import DocType

if TYPE_CHECKING:
    from collections.abc import Iterator

    from dewey.events import ChangeEvent
    from dewey.indexing import Indexer
    from dewey.repo import RepositoryReader


@dataclass(frozen=True)
class Session:
    """What a handler works with for the lifetime of one event."""

    repo: RepositoryReader
    indexer: Indexer


EntityOp = Callable[[Session, str], Awaitable[object]]


# ---------------------------------------------------------------------------
# Subtree crawl
# ---------------------------------------------------------------------------


async def crawl_collection(session: Session, coll_path: str, coll_op: EntityOp, obj_op: EntityOp) -> None:
    """Apply *obj_op* / *coll_op* to every data object and collection below *coll_path*.

    Depth-first and pre-order: a collection's data objects are visited
    first, then each child collection gets *coll_op* before its own subtree
    is walked.  *coll_path* itself is not visited.  Runs on an explicit stack
    so tree depth is bounded only by the repository's path length limit.
    """
    repo = session.repo
    for obj in await repo.data_objects_in(coll_path):
        await obj_op(session, obj)

    stack: list[Iterator[str]] = [iter(await repo.collections_in(coll_path))]
    while stack:
        coll = next(stack[-1], None)
        if coll is None:
            stack.pop()
            continue
        await coll_op(session, coll)
        for obj in await repo.data_objects_in(coll):
            await obj_op(session, obj)
        stack.append(iter(await repo.collections_in(coll)))


# ---------------------------------------------------------------------------
# Shared steps
# ---------------------------------------------------------------------------


async def _index_collection(session: Session, path: str) -> None:
    await session.indexer.index_collection(session.repo, path)


async def _index_data_object(session: Session, path: str) -> None:
    await session.indexer.index_data_object(session.repo, path)


async def reindex_collection_metadata(session: Session, path: str) -> None:
    if await session.indexer.entity_indexed(DocType.FOLDER, path):
        await session.indexer.update_metadata(session.repo, DocType.FOLDER, path)
    else:
        await _index_collection(session, path)


async def reindex_data_object_metadata(session: Session, path: str) -> None:
    if await session.indexer.entity_indexed(DocType.FILE, path):
        await session.indexer.update_metadata(session.repo, DocType.FILE, path)
    else:
        await _index_data_object(session, path)


async def update_collection_acl(session: Session, path: str) -> None:
    if await session.indexer.entity_indexed(DocType.FOLDER, path):
        await session.indexer.update_acl(session.repo, DocType.FOLDER, path)
    else:
        await _index_collection(session, path)


async def update_data_object_acl(session: Session, path: str) -> None:
    if await session.indexer.entity_indexed(DocType.FILE, path):
        await session.indexer.update_acl(session.repo, DocType.FILE, path)
    else:
        await _index_data_object(session, path)


async def _rename_entry(
    session: Session, doc_type: DocType, old_path: str, new_path: str, index_entity: EntityOp
) -> None:
    await session.indexer.remove_entity(doc_type, old_path)
    await index_entity(session, new_path)
    await session.indexer.update_parent_modify_time(session.repo, old_path)
    if parent_path(old_path) != parent_path(new_path):
        await session.indexer.update_parent_modify_time(session.repo, new_path)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def index_collection_handler(session: Session, event: ChangeEvent) -> None:
    doc = await session.indexer.index_collection(session.repo, event.path, creator=event.creator)
    await session.indexer.update_parent_modify_time(session.repo, event.path, doc.date_created)


async def index_data_object_handler(session: Session, event: ChangeEvent) -> None:
    doc = await session.indexer.index_data_object(
        session.repo, event.path, creator=event.creator, file_size=event.size, file_type=event.type
    )
    await session.indexer.update_parent_modify_time(session.repo, event.path, doc.date_created)


async def rm_collection_handler(session: Session, event: ChangeEvent) -> None:
    # Descendant documents are left in place; see DESIGN.md.
    await session.indexer.remove_entity(DocType.FOLDER, event.path)
    await session.indexer.update_parent_modify_time(session.repo, event.path)


async def rm_data_object_handler(session: Session, event: ChangeEvent) -> None:
    await session.indexer.remove_entity(DocType.FILE, event.path)
    await session.indexer.update_parent_modify_time(session.repo, event.path)


async def rename_collection_handler(session: Session, event: ChangeEvent) -> None:
    old_path, new_path = event.path, event.new_path
    assert new_path is not None
    await _rename_entry(session, DocType.FOLDER, old_path, new_path, _index_collection)
    await session.indexer.remove_subtree(old_path)
    await crawl_collection(session, new_path, _index_collection, _index_data_object)
    logger.info("Reindexed subtree {} (was {})", new_path, old_path)


async def rename_data_object_handler(session: Session, event: ChangeEvent) -> None:
    assert event.new_path is not None
    await _rename_entry(session, DocType.FILE, event.path, event.new_path, _index_data_object)


async def reindex_collection_metadata_handler(session: Session, event: ChangeEvent) -> None:
    await reindex_collection_metadata(session, event.path)


async def reindex_coll_dest_metadata_handler(session: Session, event: ChangeEvent) -> None:
    assert event.destination is not None
    await reindex_collection_metadata(session, event.destination)


async def reindex_data_object_metadata_handler(session: Session, event: ChangeEvent) -> None:
    await reindex_data_object_metadata(session, event.path)


async def reindex_obj_dest_metadata_handler(session: Session, event: ChangeEvent) -> None:
    assert event.destination is not None
    await reindex_data_object_metadata(session, event.destination)


async def reindex_multiobject_metadata_handler(session: Session, event: ChangeEvent) -> None:
    """Reindex metadata of the data objects directly inside a collection whose names match a LIKE pattern."""
    assert event.pattern is not None
    coll_path = parent_path(event.pattern)
    obj_pattern = sql_glob_to_regex(basename(event.pattern))
    matched = 0
    for obj in await session.repo.data_objects_in(coll_path):
        if obj_pattern.match(basename(obj)):
            await reindex_data_object_metadata(session, obj)
            matched += 1
    logger.debug("{} data object(s) in {} matched {}", matched, coll_path, event.pattern)


async def reindex_data_object_handler(session: Session, event: ChangeEvent) -> None:
    path = event.path
    if await session.indexer.entity_indexed(DocType.FILE, path):
        await session.indexer.update_data_object(session.repo, path, event.size)
    else:
        await session.indexer.index_data_object(session.repo, path, file_size=event.size, file_type=event.type)


async def update_data_object_sys_meta_handler(session: Session, event: ChangeEvent) -> None:
    path = event.path
    if await session.indexer.entity_indexed(DocType.FILE, path):
        await session.indexer.update_data_object(
            session.repo,
            path,
            await session.repo.data_object_size(path),
            await session.repo.data_object_type(path),
        )
    else:
        await _index_data_object(session, path)


async def update_collection_acl_handler(session: Session, event: ChangeEvent) -> None:
    if event.permission is None:
        logger.debug("ACL event for {} carries no permission change", event.path)
        return
    await update_collection_acl(session, event.path)
    if event.recursive:
        await crawl_collection(session, event.path, update_collection_acl, update_data_object_acl)


async def update_data_object_acl_handler(session: Session, event: ChangeEvent) -> None:
    await update_data_object_acl(session, event.path)
