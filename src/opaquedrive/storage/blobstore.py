import hashlib
import logging
import os

from pathlib import Path
from typing import Optional, Protocol

from opaquedrive.utils.errors import BlobNotFound, TransportError, ValidationError, VersionConflict

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    """Remote object storage as seen by the drive. Implementations never retry."""

    def get(self, key: str) -> bytes:
        """Return the object's bytes; BlobNotFound if absent."""
        ...

    def put(self, key: str, data: bytes, if_match: Optional[str] = None) -> str:
        """Store `data` and return its ETag. With `if_match`, VersionConflict
        unless the current ETag equals it."""
        ...

    def delete(self, key: str) -> None:
        ...

    def etag(self, key: str) -> str:
        ...


class LocalBlobStore:
    """Directory-backed BlobStore.

    Layout:
      root/
        .manifest.enc        # nonce || AES-256-GCM(manifest JSON)
        files/
          <uuid>             # AES-256-GCM(file content), nonce lives in the manifest
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        rel = Path(key)
        if not key or rel.is_absolute() or ".." in rel.parts:
            raise ValidationError(f"Invalid blob key: {key!r}")
        return self.root / rel

    @staticmethod
    def _etag_of(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFound(f"No such blob: {key}") from None
        except OSError as e:
            raise TransportError(f"Failed to read {key}: {e}") from e

    def etag(self, key: str) -> str:
        return self._etag_of(self.get(key))

    def put(self, key: str, data: bytes, if_match: Optional[str] = None) -> str:
        path = self._path(key)
        if if_match is not None:
            try:
                current = self.etag(key)
            except BlobNotFound:
                current = None
            if current != if_match:
                raise VersionConflict(f"{key} changed since it was last read")
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            raise TransportError(f"Failed to write {key}: {e}") from e
        logger.debug("Stored %s (%d bytes)", key, len(data))
        return self._etag_of(data)

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise TransportError(f"Failed to delete {key}: {e}") from e
