"""Index maintenance primitives shared by the change handlers.

Each method reads what it needs from the repository session it is handed
and writes through the document store.  Nothing here catches backend
errors; a failed write surfaces to the event consumer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from dewey.documents import (
    build_collection_doc,
    build_data_object_doc,
    read_acl,
    read_date_modified,
    read_metadata,
)
from dewey.paths import is_root, parent_path
from dewey.store import DocType

if TYPE_CHECKING:
    from dewey.documents import CollectionDocument, DataObjectDocument
    from dewey.repo import RepositoryReader
    from dewey.store import DocumentStore


class Indexer:
    """Store-bound operations on collection and data object documents."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def entity_indexed(self, doc_type: DocType, path: str) -> bool:
        return await self.store.exists(doc_type, path)

    # -- whole documents ---------------------------------------------------

    async def index_collection(
        self, repo: RepositoryReader, path: str, *, creator: str | None = None
    ) -> CollectionDocument:
        """Create the collection document, or refresh every field if already indexed."""
        doc = await build_collection_doc(repo, path, creator=creator)
        await self._put(DocType.FOLDER, doc)
        return doc

    async def index_data_object(
        self,
        repo: RepositoryReader,
        path: str,
        *,
        creator: str | None = None,
        file_size: int | None = None,
        file_type: str | None = None,
    ) -> DataObjectDocument:
        """Create the data object document, or refresh every field if already indexed."""
        doc = await build_data_object_doc(repo, path, creator=creator, file_size=file_size, file_type=file_type)
        await self._put(DocType.FILE, doc)
        return doc

    async def _put(self, doc_type: DocType, doc: CollectionDocument) -> None:
        source = doc.to_source()
        if await self.store.exists(doc_type, doc.id):
            fields = {k: v for k, v in source.items() if k != "id"}
            await self.store.patch(doc_type, doc.id, fields)
        else:
            await self.store.create(doc_type, source, doc.id)

    # -- field patches -----------------------------------------------------

    async def update_metadata(self, repo: RepositoryReader, doc_type: DocType, path: str) -> None:
        metadata = await read_metadata(repo, path)
        await self.store.patch(doc_type, path, {"metadata": [m.to_source() for m in metadata]})

    async def update_acl(self, repo: RepositoryReader, doc_type: DocType, path: str) -> None:
        acl = await read_acl(repo, path)
        await self.store.patch(doc_type, path, {"userPermissions": [e.to_source() for e in acl]})

    async def update_modify_time(self, doc_type: DocType, path: str, date_modified: str) -> None:
        await self.store.patch(doc_type, path, {"dateModified": date_modified})

    async def update_data_object(
        self,
        repo: RepositoryReader,
        path: str,
        file_size: int | None,
        file_type: str | None = None,
    ) -> None:
        """Refresh ``dateModified`` and ``fileSize`` (and ``fileType`` when given) in place."""
        fields: dict[str, object] = {
            "dateModified": await read_date_modified(repo, path),
            "fileSize": file_size,
        }
        if file_type is not None:
            fields["fileType"] = file_type
        await self.store.patch(DocType.FILE, path, fields)

    # -- removal -----------------------------------------------------------

    async def remove_entity(self, doc_type: DocType, path: str) -> None:
        await self.store.remove(doc_type, path)

    async def remove_subtree(self, path: str) -> None:
        """Remove the documents of every descendant of the collection at *path*."""
        await self.store.remove_by_prefix(path.rstrip("/") + "/")

    # -- cascade -----------------------------------------------------------

    async def update_parent_modify_time(
        self, repo: RepositoryReader, entity_path: str, date_modified: str | None = None
    ) -> None:
        """Stamp the parent collection of *entity_path* as modified.

        The parent receives *date_modified* when given (a child's creation
        time), otherwise its own current modification time.  An unindexed
        parent is indexed in full; a missing parent, or the root's, is left
        alone.
        """
        if is_root(entity_path):
            return
        parent = parent_path(entity_path)
        if not await repo.exists(parent):
            logger.debug("Parent {} of {} is not in the repository", parent, entity_path)
            return
        if await self.entity_indexed(DocType.FOLDER, parent):
            if date_modified is None:
                date_modified = await read_date_modified(repo, parent)
            await self.update_modify_time(DocType.FOLDER, parent, date_modified)
        else:
            await self.index_collection(repo, parent)
