import base64
import json
import struct

from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional

from opaquedrive.utils.errors import MalformedManifest

PBKDF2_ITERATIONS = 100_000
PASSWORD_SALT_SIZE = 16
AES_KEY_SIZE = 32  # AES-256
AEAD_NONCE_SIZE = 12
ED25519_KEY_SIZE = 32

MASTER_KEY_SALT = bytes(16)  # fixed all-zero salt, see DESIGN.md
MASTER_KEY_INFO = b"manifest-encryption"

MANIFEST_KEY = ".manifest.enc"
CONTENT_PREFIX = "files/"

MANIFEST_SCHEMA = "opaquedrive.manifest"
MANIFEST_VERSION = 2

SHARE_MAGIC = b"ODS1"
SHARE_VERSION = 1
SHARE_HDR_FMT = ">4sB16s12s"  # magic, ver, salt(16), nonce(12)
SHARE_HDR_SIZE = struct.calcsize(SHARE_HDR_FMT)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@dataclass
class FileEntry:
    file_id: str
    file_name: str
    size: int
    mime_type: Optional[str]
    uploaded_at: str
    file_key: bytes
    nonce: bytes
    folder_id: Optional[str] = None
    is_favorite: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileId": self.file_id,
            "fileName": self.file_name,
            "size": self.size,
            "mimeType": self.mime_type,
            "folderId": self.folder_id,
            "isFavorite": self.is_favorite,
            "uploadedAt": self.uploaded_at,
            "fileKey": _b64(self.file_key),
            "nonce": _b64(self.nonce),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "FileEntry":
        return FileEntry(
            file_id=d["fileId"],
            file_name=d["fileName"],
            size=int(d.get("size", 0)),
            mime_type=d.get("mimeType"),
            uploaded_at=d["uploadedAt"],
            file_key=base64.b64decode(d["fileKey"]),
            nonce=base64.b64decode(d["nonce"]),
            folder_id=d.get("folderId"),
            is_favorite=bool(d.get("isFavorite", False)),
        )


@dataclass
class Folder:
    id: str
    name: str
    created_at: str
    parent_id: Optional[str] = None
    color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "parentId": self.parent_id,
            "createdAt": self.created_at,
            "color": self.color,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Folder":
        return Folder(
            id=d["id"],
            name=d["name"],
            created_at=d["createdAt"],
            parent_id=d.get("parentId"),
            color=d.get("color"),
        )


@dataclass
class Manifest:
    created_at: str
    updated_at: str
    files: List[FileEntry] = field(default_factory=list)
    folders: List[Folder] = field(default_factory=list)
    version: int = MANIFEST_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": MANIFEST_SCHEMA,
            "version": self.version,
            "files": [f.to_dict() for f in self.files],
            "folders": [f.to_dict() for f in self.folders],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    @staticmethod
    def from_bytes(b: bytes) -> "Manifest":
        try:
            obj = json.loads(b.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedManifest(f"Manifest is not valid JSON: {e}") from e
        if not isinstance(obj, dict):
            raise MalformedManifest("Manifest must be a JSON object")
        obj = migrate(obj)
        try:
            return Manifest(
                version=obj["version"],
                files=[FileEntry.from_dict(f) for f in obj["files"]],
                folders=[Folder.from_dict(f) for f in obj["folders"]],
                created_at=obj["createdAt"],
                updated_at=obj["updatedAt"],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedManifest(f"Manifest is missing required fields: {e}") from e

    def snapshot(self) -> "Manifest":
        """Deep copy used to roll back a failed write."""
        return Manifest(
            version=self.version,
            files=[FileEntry(**asdict(f)) for f in self.files],
            folders=[Folder(**asdict(f)) for f in self.folders],
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


def _migrate_v1(obj: Dict[str, Any]) -> Dict[str, Any]:
    # v1 documents were untagged and may predate folders and favorites
    obj = dict(obj)
    obj["schema"] = MANIFEST_SCHEMA
    obj["folders"] = obj.get("folders") or []
    obj["files"] = [dict(f, isFavorite=bool(f.get("isFavorite", False))) for f in obj.get("files") or []]
    obj["version"] = 2
    return obj


MIGRATIONS: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    1: _migrate_v1,
}


def migrate(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Bring a decoded manifest document up to MANIFEST_VERSION."""
    version = obj.get("version", 1)
    if not isinstance(version, int):
        raise MalformedManifest(f"Unsupported manifest version: {version!r}")
    if version > MANIFEST_VERSION:
        raise MalformedManifest(f"Manifest version {version} is newer than supported ({MANIFEST_VERSION})")
    schema = obj.get("schema")
    if schema is not None and schema != MANIFEST_SCHEMA:
        raise MalformedManifest(f"Unknown manifest schema: {schema}")
    while version < MANIFEST_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise MalformedManifest(f"No migration from manifest version {version}")
        obj = step(obj)
        version = obj["version"]
    return obj
