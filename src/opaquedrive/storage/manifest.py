"""Encrypted manifest: the single document indexing every file and folder.

The manifest is sealed under a master key derived from the account's private
key and stored at one fixed blob key. A ManifestStore is the caller-owned
session around it:

    Locked --initialize/unlock--> Unlocked --lock--> Locked

Every mutation is read-modify-seal-upload of the whole document. Writes are
last-write-wins unless the store is created with ``check_version=True``, in
which case each upload is conditional on the ETag observed at the previous
read or write and a concurrent change raises VersionConflict.
"""
import enum
import logging
import mimetypes
import threading
import uuid

from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional, TypeVar

from opaquedrive.crypto import filecipher
from opaquedrive.crypto.aead import open_sealed, seal
from opaquedrive.crypto.share import encrypt_share_payload
from opaquedrive.storage.blobstore import BlobStore
from opaquedrive.utils.dataModels import MANIFEST_KEY, FileEntry, Folder, Manifest
from opaquedrive.utils.errors import (
    BlobNotFound,
    NotFoundError,
    StateError,
    ValidationError,
)
from opaquedrive.utils.helper import add_copy_suffix, content_key, next_timestamp, now_iso, parse_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(enum.Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


@dataclass(frozen=True)
class CopyProgress:
    completed: int
    total: int
    source_id: str
    new_file_id: Optional[str]  # None when the source id was unknown


class CopyJob:
    """Lazy, resumable copy of several files into one folder.

    Iterating performs one copy per step and yields a CopyProgress after it is
    committed. Stopping early leaves committed copies in place; iterating the
    same job again continues with the files not yet copied.
    """

    def __init__(self, store: "ManifestStore", file_ids: Iterable[str], target_folder_id: Optional[str]):
        self._store = store
        self._file_ids = list(file_ids)
        self._target = target_folder_id
        self._next = 0
        self.new_file_ids: List[str] = []

    @property
    def total(self) -> int:
        return len(self._file_ids)

    @property
    def completed(self) -> int:
        return self._next

    @property
    def done(self) -> bool:
        return self._next >= len(self._file_ids)

    def __iter__(self) -> Iterator[CopyProgress]:
        while self._next < len(self._file_ids):
            source_id = self._file_ids[self._next]
            new_id = self._store._copy_one(source_id, self._target)
            self._next += 1
            if new_id is not None:
                self.new_file_ids.append(new_id)
            yield CopyProgress(self._next, self.total, source_id, new_id)

    def run(self) -> List[str]:
        for _ in self:
            pass
        return self.new_file_ids


class ManifestStore:
    def __init__(self, blob_store: BlobStore, check_version: bool = False):
        self.blob_store = blob_store
        self.check_version = check_version
        self._manifest: Optional[Manifest] = None
        self._master_key: Optional[bytes] = None
        self._etag: Optional[str] = None
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"ManifestStore(state={self.state.value})"

    def __enter__(self) -> "ManifestStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.lock()

    # ---------- state ----------

    @property
    def state(self) -> SessionState:
        if self._manifest is not None and self._master_key is not None:
            return SessionState.UNLOCKED
        return SessionState.LOCKED

    @property
    def is_unlocked(self) -> bool:
        return self.state is SessionState.UNLOCKED

    def _require_unlocked(self) -> Manifest:
        if self._manifest is None or self._master_key is None:
            raise StateError("Manifest is locked")
        return self._manifest

    @property
    def manifest(self) -> Manifest:
        return self._require_unlocked()

    @property
    def master_key(self) -> bytes:
        self._require_unlocked()
        return self._master_key

    def exists(self) -> bool:
        """Whether a manifest blob is present. Transport failures propagate."""
        try:
            self.blob_store.get(MANIFEST_KEY)
        except BlobNotFound:
            return False
        return True

    def initialize(self, master_key: bytes) -> Manifest:
        """Write a fresh empty manifest, replacing any existing one."""
        with self._lock:
            ts = now_iso()
            manifest = Manifest(created_at=ts, updated_at=ts)
            etag = self.blob_store.put(MANIFEST_KEY, seal(master_key, manifest.to_bytes()))
            self._manifest, self._master_key, self._etag = manifest, master_key, etag
            logger.info("Initialized empty manifest")
            return manifest

    def unlock(self, master_key: bytes) -> Manifest:
        """Fetch and open the manifest. AuthenticationFailure means the storage
        belongs to a different key pair, not a transient error."""
        with self._lock:
            manifest, etag = self._fetch(master_key)
            self._manifest, self._master_key, self._etag = manifest, master_key, etag
            logger.info("Unlocked manifest (%d files, %d folders)", len(manifest.files), len(manifest.folders))
            return manifest

    def _fetch(self, master_key: bytes):
        # etag first: a write landing in between makes our next put conflict, not clobber
        etag = self.blob_store.etag(MANIFEST_KEY) if self.check_version else None
        blob = self.blob_store.get(MANIFEST_KEY)
        return Manifest.from_bytes(open_sealed(master_key, blob)), etag

    def sync(self) -> Optional[Manifest]:
        """Re-fetch with the cached key. Never raises: on failure the previous
        manifest is kept and returned (None when locked)."""
        with self._lock:
            if self._master_key is None:
                logger.warning("Cannot sync manifest: not unlocked")
                return None
            try:
                manifest, etag = self._fetch(self._master_key)
            except Exception as e:
                logger.warning("Failed to sync manifest, keeping cached copy: %s", e)
                return self._manifest
            self._manifest, self._etag = manifest, etag
            return manifest

    def lock(self) -> None:
        with self._lock:
            self._manifest = None
            self._master_key = None
            self._etag = None
            logger.info("Manifest locked")

    # ---------- persistence ----------

    def _persist(self, manifest: Manifest) -> None:
        blob = seal(self._master_key, manifest.to_bytes())
        if_match = self._etag if self.check_version else None
        self._etag = self.blob_store.put(MANIFEST_KEY, blob, if_match=if_match)

    def _mutate(self, apply: Callable[[Manifest], T]) -> T:
        """Apply one change, advance updatedAt and upload. On any failure the
        in-memory manifest is restored so it never diverges from storage."""
        with self._lock:
            manifest = self._require_unlocked()
            before = manifest.snapshot()
            try:
                result = apply(manifest)
                manifest.updated_at = next_timestamp(manifest.updated_at)
                self._persist(manifest)
            except Exception:
                self._manifest = before
                raise
            return result

    # ---------- queries ----------

    def _find_file(self, manifest: Manifest, file_id: str) -> FileEntry:
        for f in manifest.files:
            if f.file_id == file_id:
                return f
        raise NotFoundError(f"No such file: {file_id}")

    def _find_folder(self, manifest: Manifest, folder_id: str) -> Folder:
        for f in manifest.folders:
            if f.id == folder_id:
                return f
        raise NotFoundError(f"No such folder: {folder_id}")

    def _check_folder(self, manifest: Manifest, folder_id: Optional[str]) -> None:
        if folder_id is not None:
            self._find_folder(manifest, folder_id)

    @staticmethod
    def _newest_first(files: Iterable[FileEntry]) -> List[FileEntry]:
        return sorted(files, key=lambda f: parse_iso(f.uploaded_at), reverse=True)

    def get_file(self, file_id: str) -> FileEntry:
        return self._find_file(self._require_unlocked(), file_id)

    def get_folder(self, folder_id: str) -> Folder:
        return self._find_folder(self._require_unlocked(), folder_id)

    def list_files(self) -> List[FileEntry]:
        return self._newest_first(self._require_unlocked().files)

    def list_files_in_folder(self, folder_id: Optional[str] = None) -> List[FileEntry]:
        return self._newest_first(f for f in self._require_unlocked().files if f.folder_id == folder_id)

    def favorite_files(self) -> List[FileEntry]:
        return self._newest_first(f for f in self._require_unlocked().files if f.is_favorite)

    def list_folders(self, parent_id: Optional[str] = None) -> List[Folder]:
        return [f for f in self._require_unlocked().folders if f.parent_id == parent_id]

    # ---------- file mutations ----------

    def add_file(self, entry: FileEntry) -> FileEntry:
        def apply(m: Manifest) -> FileEntry:
            if any(f.file_id == entry.file_id for f in m.files):
                raise ValidationError(f"Duplicate file id: {entry.file_id}")
            self._check_folder(m, entry.folder_id)
            m.files.append(entry)
            return entry

        self._mutate(apply)
        logger.debug("Added file %s", entry.file_id)
        return entry

    def remove_file(self, file_id: str) -> None:
        def apply(m: Manifest) -> None:
            self._find_file(m, file_id)
            m.files = [f for f in m.files if f.file_id != file_id]

        self._mutate(apply)
        logger.debug("Removed file %s", file_id)

    def remove_files(self, file_ids: Iterable[str]) -> List[str]:
        ids = set(file_ids)

        def apply(m: Manifest) -> List[str]:
            removed = [f.file_id for f in m.files if f.file_id in ids]
            m.files = [f for f in m.files if f.file_id not in ids]
            return removed

        return self._mutate(apply)

    def rename_file(self, file_id: str, new_name: str) -> None:
        if not new_name:
            raise ValidationError("File name must not be empty")

        def apply(m: Manifest) -> None:
            self._find_file(m, file_id).file_name = new_name

        self._mutate(apply)

    def toggle_favorite(self, file_id: str) -> bool:
        def apply(m: Manifest) -> bool:
            entry = self._find_file(m, file_id)
            entry.is_favorite = not entry.is_favorite
            return entry.is_favorite

        return self._mutate(apply)

    def move_file(self, file_id: str, folder_id: Optional[str] = None) -> None:
        def apply(m: Manifest) -> None:
            self._check_folder(m, folder_id)
            self._find_file(m, file_id).folder_id = folder_id

        self._mutate(apply)

    def move_files(self, file_ids: Iterable[str], folder_id: Optional[str] = None) -> int:
        ids = set(file_ids)

        def apply(m: Manifest) -> int:
            self._check_folder(m, folder_id)
            moved = 0
            for f in m.files:
                if f.file_id in ids:
                    f.folder_id = folder_id
                    moved += 1
            return moved

        return self._mutate(apply)

    # ---------- folder mutations ----------

    def create_folder(self, name: str, parent_id: Optional[str] = None, color: Optional[str] = None) -> Folder:
        if not name:
            raise ValidationError("Folder name must not be empty")

        def apply(m: Manifest) -> Folder:
            self._check_folder(m, parent_id)
            folder = Folder(id=str(uuid.uuid4()), name=name, parent_id=parent_id, created_at=now_iso(), color=color)
            m.folders.append(folder)
            return folder

        return self._mutate(apply)

    def rename_folder(self, folder_id: str, new_name: str) -> None:
        if not new_name:
            raise ValidationError("Folder name must not be empty")

        def apply(m: Manifest) -> None:
            self._find_folder(m, folder_id).name = new_name

        self._mutate(apply)

    def move_folder(self, folder_id: str, new_parent_id: Optional[str] = None) -> None:
        def apply(m: Manifest) -> None:
            folder = self._find_folder(m, folder_id)
            ancestor = new_parent_id
            seen = set()
            while ancestor is not None:
                if ancestor == folder_id:
                    raise ValidationError("A folder cannot be moved into itself or its descendants")
                if ancestor in seen:
                    raise ValidationError(f"Folder hierarchy contains a cycle at {ancestor}")
                seen.add(ancestor)
                ancestor = self._find_folder(m, ancestor).parent_id
            folder.parent_id = new_parent_id

        self._mutate(apply)

    def delete_folder(self, folder_id: str, delete_contents: bool = False) -> List[str]:
        """Remove a folder. Its files go to root, or out of the manifest with
        `delete_contents`; content blobs are left for the caller to purge.
        Child folders move up to the deleted folder's parent.

        Returns the ids of files removed from the manifest.
        """
        def apply(m: Manifest) -> List[str]:
            folder = self._find_folder(m, folder_id)
            deleted: List[str] = []
            if delete_contents:
                deleted = [f.file_id for f in m.files if f.folder_id == folder_id]
                m.files = [f for f in m.files if f.folder_id != folder_id]
            else:
                for f in m.files:
                    if f.folder_id == folder_id:
                        f.folder_id = None
            for child in m.folders:
                if child.parent_id == folder_id:
                    child.parent_id = folder.parent_id
            m.folders = [f for f in m.folders if f.id != folder_id]
            return deleted

        deleted = self._mutate(apply)
        logger.debug("Deleted folder %s (%d files removed)", folder_id, len(deleted))
        return deleted

    # ---------- content ----------

    def copy_files_to_folder(self, file_ids: Iterable[str], target_folder_id: Optional[str] = None) -> CopyJob:
        manifest = self._require_unlocked()
        self._check_folder(manifest, target_folder_id)
        return CopyJob(self, file_ids, target_folder_id)

    def _copy_one(self, source_id: str, target_folder_id: Optional[str]) -> Optional[str]:
        with self._lock:
            manifest = self._require_unlocked()
            try:
                original = self._find_file(manifest, source_id)
            except NotFoundError:
                logger.debug("Skipping unknown file %s in copy", source_id)
                return None

            # ciphertext is copied as-is; the copy keeps the original key and nonce
            data = self.blob_store.get(content_key(source_id))
            new_id = str(uuid.uuid4())
            self.blob_store.put(content_key(new_id), data)

            same_folder = target_folder_id == original.folder_id
            duplicate = FileEntry(
                file_id=new_id,
                file_name=add_copy_suffix(original.file_name) if same_folder else original.file_name,
                size=original.size,
                mime_type=original.mime_type,
                uploaded_at=now_iso(),
                file_key=original.file_key,
                nonce=original.nonce,
                folder_id=target_folder_id,
                is_favorite=original.is_favorite,
            )
            self.add_file(duplicate)
            return new_id

    def upload_file(
        self,
        data: bytes,
        file_name: str,
        mime_type: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> FileEntry:
        """Strip metadata, encrypt under a fresh file key, store, then index."""
        if not file_name:
            raise ValidationError("File name must not be empty")
        manifest = self._require_unlocked()
        self._check_folder(manifest, folder_id)
        if mime_type is None:
            mime_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"

        clean = filecipher.strip_metadata(data, mime_type)
        fk = filecipher.generate_file_key()
        file_id = str(uuid.uuid4())
        self.blob_store.put(content_key(file_id), filecipher.encrypt(clean, fk.key, fk.nonce))

        entry = FileEntry(
            file_id=file_id,
            file_name=file_name,
            size=len(clean),
            mime_type=mime_type,
            uploaded_at=now_iso(),
            file_key=fk.key,
            nonce=fk.nonce,
            folder_id=folder_id,
        )
        return self.add_file(entry)

    def download_file(self, file_id: str) -> bytes:
        entry = self.get_file(file_id)
        return filecipher.decrypt(self.blob_store.get(content_key(file_id)), entry.file_key, entry.nonce)

    def share_file(self, file_id: str, share_password: str) -> str:
        entry = self.get_file(file_id)
        return encrypt_share_payload(entry.file_key, entry.nonce, share_password)
