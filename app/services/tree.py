# app/services/tree.py
"""Folder/file tree operations for one owner's document storage.

Folders and files carry a materialized ``path`` that must always equal the
join of their ancestors' names. Renames and moves recompute it for the whole
subtree inside one transaction. Deletes remove file bytes from the blob store
on a best-effort basis first and then remove the metadata rows, which are the
source of truth for what the user sees.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import Settings
from app.core.errors import (
    BlobCleanupFailure,
    BlobNotFound,
    Conflict,
    InvalidMove,
    NotFound,
    PayloadTooLarge,
)
from app.models.file import FileMeta
from app.models.folder import Folder
from app.schemas.documents import clean_name, clean_tags
from app.services.paths import compute_file_path, compute_folder_path, materialize_paths
from app.storage.blob import BlobStore, build_file_key

logger = logging.getLogger(__name__)

# Ids per DELETE statement, well under the bind-parameter limits of SQLite and Postgres
DELETE_BATCH_SIZE = 500


def _batches(ids: List[int]):
    for start in range(0, len(ids), DELETE_BATCH_SIZE):
        yield ids[start:start + DELETE_BATCH_SIZE]


@dataclass
class UploadItem:
    file_name: str
    content: bytes
    content_type: Optional[str] = None


@dataclass
class UploadResult:
    files: List[FileMeta] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class DeletionReport:
    folders_removed: int = 0
    files_removed: int = 0
    # Blob deletes that failed; the metadata is gone regardless
    blob_failures: List[BlobCleanupFailure] = field(default_factory=list)

    @property
    def failed_keys(self) -> List[str]:
        return [failure.key for failure in self.blob_failures]


@dataclass
class Subtree:
    folder_ids: List[int] = field(default_factory=list)  # parents before children
    file_ids: List[int] = field(default_factory=list)
    file_keys: List[str] = field(default_factory=list)


@dataclass
class FolderListing:
    folder: Folder
    file_count: int
    child_count: int


class DocumentTreeService:
    def __init__(self, db: Session, blob_store: BlobStore, settings: Settings):
        self.db = db
        self.blob_store = blob_store
        self.settings = settings

    # --- lookups ---

    def get_folder(self, owner_id: int, folder_id: int, label: str = "Folder") -> Folder:
        folder = (
            self.db.query(Folder)
            .filter(Folder.id == folder_id, Folder.owner_id == owner_id)
            .first()
        )
        if not folder:
            raise NotFound(f"{label} not found")
        return folder

    def get_file(self, owner_id: int, file_id: int) -> FileMeta:
        file = (
            self.db.query(FileMeta)
            .filter(FileMeta.id == file_id, FileMeta.owner_id == owner_id)
            .first()
        )
        if not file:
            raise NotFound("File not found")
        return file

    def list_storage(self, owner_id: int):
        """All folders of the owner with direct counts, plus root-level files."""
        folders = (
            self.db.query(Folder)
            .filter(Folder.owner_id == owner_id)
            .order_by(Folder.name.asc(), Folder.id.asc())
            .all()
        )
        child_counts = dict(
            self.db.query(Folder.parent_id, func.count(Folder.id))
            .filter(Folder.owner_id == owner_id, Folder.parent_id.isnot(None))
            .group_by(Folder.parent_id)
            .all()
        )
        file_counts = dict(
            self.db.query(FileMeta.folder_id, func.count(FileMeta.id))
            .filter(FileMeta.owner_id == owner_id, FileMeta.folder_id.isnot(None))
            .group_by(FileMeta.folder_id)
            .all()
        )
        root_files = (
            self.db.query(FileMeta)
            .filter(FileMeta.owner_id == owner_id, FileMeta.folder_id.is_(None))
            .order_by(FileMeta.file_name.asc())
            .all()
        )
        listings = [
            FolderListing(
                folder=folder,
                file_count=file_counts.get(folder.id, 0),
                child_count=child_counts.get(folder.id, 0),
            )
            for folder in folders
        ]
        return listings, root_files

    # --- sibling uniqueness ---

    def _ensure_folder_name_free(self, owner_id, parent_id, name, exclude_id=None):
        query = self.db.query(Folder.id).filter(
            Folder.owner_id == owner_id, Folder.name == name
        )
        if parent_id is None:
            query = query.filter(Folder.parent_id.is_(None))
        else:
            query = query.filter(Folder.parent_id == parent_id)
        if exclude_id is not None:
            query = query.filter(Folder.id != exclude_id)
        if query.first():
            raise Conflict("A folder with this name already exists in this location")

    def _ensure_file_name_free(self, owner_id, folder_id, file_name, exclude_id=None):
        query = self.db.query(FileMeta.id).filter(
            FileMeta.owner_id == owner_id, FileMeta.file_name == file_name
        )
        if folder_id is None:
            query = query.filter(FileMeta.folder_id.is_(None))
        else:
            query = query.filter(FileMeta.folder_id == folder_id)
        if exclude_id is not None:
            query = query.filter(FileMeta.id != exclude_id)
        if query.first():
            raise Conflict("A file with this name already exists in this location")

    def _commit(self):
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise Conflict("The folder was changed by another request, reload and retry")
        except Exception:
            self.db.rollback()
            raise

    # --- folders ---

    def create_folder(
        self,
        owner_id: int,
        name: str,
        parent_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Folder:
        parent = None
        if parent_id is not None:
            parent = self.get_folder(owner_id, parent_id, label="Parent folder")

        self._ensure_folder_name_free(owner_id, parent_id, name)

        folder = Folder(
            owner_id=owner_id,
            name=name,
            parent_id=parent_id,
            description=description or None,
            path=compute_folder_path(parent.path if parent else None, name),
        )
        self.db.add(folder)
        self._commit()
        self.db.refresh(folder)
        logger.info(f"Created folder {folder.id} at {folder.path} for user {owner_id}")
        return folder

    def update_folder(self, owner_id: int, folder_id: int, changes: dict) -> Folder:
        """Rename, move and/or edit the description of a folder.

        ``changes`` may hold ``name``, ``parent_id`` and ``description``; a key
        that is absent leaves that attribute alone, ``parent_id=None`` moves the
        folder to the root. Every check runs before anything is written.
        """
        folder = self.get_folder(owner_id, folder_id)

        new_name = changes.get("name") or folder.name
        new_parent_id = changes["parent_id"] if "parent_id" in changes else folder.parent_id

        parent = None
        if new_parent_id is not None:
            if new_parent_id == folder.id:
                raise InvalidMove("A folder cannot be moved into itself")
            parent = self.get_folder(owner_id, new_parent_id, label="Parent folder")
            if new_parent_id != folder.parent_id:
                self._ensure_not_descendant(folder, parent)

        if new_name != folder.name or new_parent_id != folder.parent_id:
            self._ensure_folder_name_free(owner_id, new_parent_id, new_name, exclude_id=folder.id)

        old_path = folder.path
        new_path = compute_folder_path(parent.path if parent else None, new_name)

        folder.name = new_name
        folder.parent_id = new_parent_id
        folder.path = new_path
        if "description" in changes:
            folder.description = changes["description"] or None

        cascaded = 0
        if new_path != old_path:
            cascaded = self._cascade_paths(folder)
        self._commit()
        self.db.refresh(folder)

        if new_path != old_path:
            logger.info(
                f"Folder {folder.id} moved {old_path} -> {new_path}, "
                f"{cascaded} descendant path(s) updated"
            )
        return folder

    def _ensure_not_descendant(self, folder: Folder, target: Folder):
        # Walk up from the destination; meeting the folder means a cycle
        current = target
        while current is not None:
            if current.id == folder.id:
                raise InvalidMove("A folder cannot be moved into one of its own subfolders")
            current = current.parent

    def _cascade_paths(self, folder: Folder) -> int:
        """Recompute paths below ``folder`` from its (already updated) path.

        Depth-first over an explicit stack, so tree depth is not limited by the
        interpreter's recursion limit. Returns how many nodes were updated.
        """
        updated = 0
        stack = [folder]
        while stack:
            current = stack.pop()
            for file in (
                self.db.query(FileMeta)
                .filter(FileMeta.folder_id == current.id, FileMeta.owner_id == current.owner_id)
                .all()
            ):
                file.path = compute_file_path(current.path, file.file_name)
                updated += 1
            children = (
                self.db.query(Folder)
                .filter(Folder.parent_id == current.id, Folder.owner_id == current.owner_id)
                .all()
            )
            for child in children:
                child.path = compute_folder_path(current.path, child.name)
                updated += 1
            stack.extend(reversed(children))
        return updated

    def collect_subtree(self, folder: Folder) -> Subtree:
        """Folder ids, file ids and blob keys of ``folder`` and everything under it."""
        subtree = Subtree()
        stack = [folder.id]
        while stack:
            folder_id = stack.pop()
            subtree.folder_ids.append(folder_id)
            for file_id, file_key in (
                self.db.query(FileMeta.id, FileMeta.file_key)
                .filter(FileMeta.folder_id == folder_id, FileMeta.owner_id == folder.owner_id)
                .all()
            ):
                subtree.file_ids.append(file_id)
                subtree.file_keys.append(file_key)
            child_ids = [
                child_id
                for (child_id,) in self.db.query(Folder.id)
                .filter(Folder.parent_id == folder_id, Folder.owner_id == folder.owner_id)
                .order_by(Folder.id)
                .all()
            ]
            stack.extend(reversed(child_ids))
        return subtree

    def delete_folder(self, owner_id: int, folder_id: int) -> DeletionReport:
        folder = self.get_folder(owner_id, folder_id)
        subtree = self.collect_subtree(folder)

        # Every blob delete settles before any metadata is touched
        failures = self._delete_blobs(subtree.file_keys)

        try:
            for batch in _batches(subtree.file_ids):
                self.db.execute(
                    delete(FileMeta).where(FileMeta.id.in_(batch)),
                    execution_options={"synchronize_session": "fetch"},
                )
            # Reversed pre-order puts every child before its parent, so each
            # batch only removes folders whose descendants are already gone
            for batch in _batches(list(reversed(subtree.folder_ids))):
                self.db.execute(
                    delete(Folder).where(Folder.id.in_(batch)),
                    execution_options={"synchronize_session": "fetch"},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            deleted = len(subtree.file_keys) - len(failures)
            logger.error(
                f"Metadata delete of folder {folder_id} failed after {deleted} blob(s) were removed"
            )
            raise

        logger.info(
            f"Deleted folder {folder_id} for user {owner_id}: "
            f"{len(subtree.folder_ids)} folder(s), {len(subtree.file_ids)} file(s), "
            f"{len(failures)} blob cleanup failure(s)"
        )
        return DeletionReport(
            folders_removed=len(subtree.folder_ids),
            files_removed=len(subtree.file_ids),
            blob_failures=failures,
        )

    def _delete_blobs(self, keys: List[str]) -> List[BlobCleanupFailure]:
        """Deletes all keys concurrently; returns the failures, sorted by key."""
        if not keys:
            return []

        failures = []
        workers = max(1, min(self.settings.blob_delete_concurrency, len(keys)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self.blob_store.delete, key): key for key in keys}
            for future in as_completed(futures):
                key = futures[future]
                try:
                    future.result()
                except Exception as e:
                    failure = BlobCleanupFailure(key, e)
                    logger.warning(failure.message)
                    failures.append(failure)
        return sorted(failures, key=lambda failure: failure.key)

    def reconcile_paths(self, owner_id: int) -> int:
        """Rewrite any stored path that drifted from the parent pointers."""
        folders = self.db.query(Folder).filter(Folder.owner_id == owner_id).all()
        files = self.db.query(FileMeta).filter(FileMeta.owner_id == owner_id).all()
        expected = materialize_paths(folders, files)

        fixed = 0
        for folder in folders:
            path = expected[("folder", folder.id)]
            if folder.path != path:
                folder.path = path
                fixed += 1
        for file in files:
            path = expected[("file", file.id)]
            if file.path != path:
                file.path = path
                fixed += 1

        if fixed:
            self._commit()
            logger.warning(f"Repaired {fixed} drifted path(s) for user {owner_id}")
        return fixed

    # --- files ---

    def upload_files(
        self,
        owner_id: int,
        uploads: List[UploadItem],
        folder_id: Optional[int] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> UploadResult:
        """Stores each upload in the blob store, then records its metadata.

        A name collision or a failed upload only skips that file. A blob that
        was stored but whose row could not be written is logged, not removed.
        """
        limit = self.settings.max_upload_size_bytes
        total = sum(len(item.content) for item in uploads)
        if total > limit:
            raise PayloadTooLarge(
                f"Total upload size ({total / (1024 * 1024):.2f}MB) exceeds "
                f"the {limit // (1024 * 1024)}MB limit"
            )

        folder = None
        if folder_id is not None:
            folder = self.get_folder(owner_id, folder_id)
        folder_path = folder.path if folder else None
        tags = clean_tags(tags or [])

        result = UploadResult()
        for item in uploads:
            try:
                file_name = clean_name(item.file_name or "")
                self._ensure_file_name_free(owner_id, folder_id, file_name)
            except ValueError as e:
                result.errors.append(f'Invalid file name "{item.file_name}": {e}')
                continue
            except Conflict:
                result.errors.append(f'File "{item.file_name}" already exists in this location')
                continue

            try:
                key = build_file_key(
                    self.settings.blob_key_prefix, owner_id, folder_path, file_name
                )
                file_key = self.blob_store.put(
                    key, item.content, item.content_type or "application/octet-stream"
                )
            except Exception as e:
                logger.error(f"Error uploading file {file_name}: {e}")
                result.errors.append(f'Failed to upload "{file_name}": {e}')
                continue

            meta = FileMeta(
                owner_id=owner_id,
                file_name=file_name,
                file_key=file_key,
                file_size=len(item.content),
                file_type=item.content_type,
                folder_id=folder_id,
                path=compute_file_path(folder_path, file_name),
                description=description or None,
                tags=tags,
            )
            self.db.add(meta)
            try:
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Blob {file_key} stored but its metadata was not saved: {e}")
                result.errors.append(f'Failed to upload "{file_name}": {e}')
                continue
            self.db.refresh(meta)
            result.files.append(meta)

        logger.info(
            f"Uploaded {len(result.files)} file(s) for user {owner_id} "
            f"with {len(result.errors)} error(s)"
        )
        return result

    def update_file(self, owner_id: int, file_id: int, changes: dict) -> FileMeta:
        """Rename, move, retag or redescribe a file. The blob is never touched."""
        file = self.get_file(owner_id, file_id)

        new_name = changes.get("file_name") or file.file_name
        new_folder_id = changes["folder_id"] if "folder_id" in changes else file.folder_id

        folder = None
        if new_folder_id is not None:
            folder = self.get_folder(owner_id, new_folder_id, label="Target folder")

        if new_name != file.file_name or new_folder_id != file.folder_id:
            self._ensure_file_name_free(owner_id, new_folder_id, new_name, exclude_id=file.id)

        file.file_name = new_name
        file.folder_id = new_folder_id
        file.path = compute_file_path(folder.path if folder else None, new_name)
        if "description" in changes:
            file.description = changes["description"] or None
        if changes.get("tags") is not None:
            file.tags = clean_tags(changes["tags"])

        self._commit()
        self.db.refresh(file)
        return file

    def delete_file(self, owner_id: int, file_id: int) -> DeletionReport:
        file = self.get_file(owner_id, file_id)

        failures = []
        try:
            self.blob_store.delete(file.file_key)
        except Exception as e:
            # The row goes regardless; a leaked blob is the cheaper failure
            failure = BlobCleanupFailure(file.file_key, e)
            logger.warning(failure.message)
            failures.append(failure)

        self.db.delete(file)
        self._commit()
        logger.info(f"Deleted file {file_id} for user {owner_id}")
        return DeletionReport(files_removed=1, blob_failures=failures)

    def download_file(self, owner_id: int, file_id: int):
        """Returns ``(file, bytes)`` and records the access."""
        file = self.get_file(owner_id, file_id)
        try:
            data = self.blob_store.get(file.file_key)
        except BlobNotFound:
            logger.error(f"File data not found for file_key: {file.file_key}")
            raise NotFound("File not found in storage")

        file.download_count = (file.download_count or 0) + 1
        file.last_accessed_at = datetime.utcnow()
        self._commit()
        self.db.refresh(file)
        return file, data
