"""
Content-addressed object storage for archived mail.

Objects are addressed by opaque string keys. Message bodies live under a key
derived from their digest:

    blobs/sha256/aa/bb/<hex>

Email metadata (mailboxes, keywords, dates) and mailbox listings are kept as
JSON documents addressed by their own digest, so a change produces a new
version beside the old ones:

    emails/<remote id>/<hex>.json
    mailboxes/<mailbox id>/<hex>.json

All keys are written once.

The filesystem backend lays those keys out under
MAILVAULT_STORAGE_ROOT/<account storage root>/ and keeps in-progress writes
in a tmp/ directory next to them.
"""

from __future__ import annotations

import hashlib
import os
import re
import uuid
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, BinaryIO

from django.conf import settings

if TYPE_CHECKING:
    from .models import Account

BLOB_PREFIX = "blobs"
METADATA_PREFIX = "emails"
MAILBOX_PREFIX = "mailboxes"
TMP_DIR_NAME = "tmp"


class ObjectStoreError(Exception):
    """Raised when the object store cannot complete an operation."""

    pass


class ObjectNotFoundInStoreError(ObjectStoreError):
    """Raised when a key does not exist."""

    pass


class DigestError(Exception):
    """Raised when digest verification fails."""

    pass


def parse_digest(digest: str) -> tuple[str, str]:
    """
    Parse digest string into (algorithm, hex_value).

    Args:
        digest: Digest in format "sha256:<hex>"

    Returns:
        Tuple of (algorithm, hex_value)

    Raises:
        ValueError: If digest format is invalid
    """
    if ":" not in digest:
        raise ValueError(f"Invalid digest format: {digest}")
    algo, hex_value = digest.split(":", 1)
    if algo != "sha256":
        raise ValueError(f"Unsupported digest algorithm: {algo}")
    if len(hex_value) != 64:
        raise ValueError(f"Invalid digest length: {len(hex_value)}")
    return algo, hex_value


def compute_digest(data: bytes | BinaryIO) -> str:
    """
    Compute SHA256 digest of data.

    Args:
        data: Bytes or file-like object to hash

    Returns:
        Digest string in format "sha256:<hex>"
    """
    hasher = hashlib.sha256()
    if isinstance(data, bytes):
        hasher.update(data)
    else:
        for chunk in iter(lambda: data.read(65536), b""):
            hasher.update(chunk)
    return f"sha256:{hasher.hexdigest()}"


def object_key_for(content_key: str) -> str:
    """
    Map a content key to its sharded object key.

    blobs/sha256/aa/bb/<hex>, where aa and bb are the first two bytes
    of the hex digest.
    """
    algo, hex_value = parse_digest(content_key)
    return f"{BLOB_PREFIX}/{algo}/{hex_value[:2]}/{hex_value[2:4]}/{hex_value}"


_SAFE_ID = re.compile(r"[A-Za-z0-9_-]{1,128}")


def safe_name(remote_id: str) -> str:
    """Use a remote id as a key segment, hashing ids that are not URL-safe."""
    if _SAFE_ID.fullmatch(remote_id):
        return remote_id
    return "id-" + hashlib.sha256(remote_id.encode()).hexdigest()


def _document_key(prefix: str, remote_id: str, data: bytes) -> str:
    _, hex_value = parse_digest(compute_digest(data))
    return f"{prefix}/{safe_name(remote_id)}/{hex_value}.json"


def metadata_key_for(remote_id: str, data: bytes) -> str:
    return _document_key(METADATA_PREFIX, remote_id, data)


def mailbox_key_for(mailbox_id: str, data: bytes) -> str:
    return _document_key(MAILBOX_PREFIX, mailbox_id, data)


class ObjectStore:
    """
    Backend-agnostic object store.

    Keys are opaque "/"-separated strings; no filesystem semantics are
    assumed by callers.
    """

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def list(self, prefix: str = "") -> list[str]:
        raise NotImplementedError


class FilesystemObjectStore(ObjectStore):
    """
    Object store on a local directory.

    Writes go to tmp/ first, are fsynced, then renamed into place, so a
    key is either absent or complete. Stored objects are made read-only.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.tmp_dir = self.root / TMP_DIR_NAME

    def _path_for(self, key: str) -> Path:
        pure = PurePosixPath(key)
        if not key or pure.is_absolute() or ".." in pure.parts:
            raise ObjectStoreError(f"Invalid object key: {key!r}")
        if pure.parts[0] == TMP_DIR_NAME:
            raise ObjectStoreError(f"Reserved object key: {key!r}")
        return self.root.joinpath(*pure.parts)

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def put(self, key: str, data: bytes) -> None:
        target = self._path_for(key)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.tmp_dir / f"{uuid.uuid4().hex}.tmp"

        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
                # Ensure data is flushed to disk
                f.flush()
                os.fsync(f.fileno())

            if target.exists():
                # Already stored
                tmp_path.unlink()
                return

            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(tmp_path, target)
            target.chmod(0o444)

        except OSError as e:
            if tmp_path.exists():
                tmp_path.unlink()
            raise ObjectStoreError(f"Failed to write {key}: {e}") from e

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        if not path.is_file():
            raise ObjectNotFoundInStoreError(f"Object not found: {key}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise ObjectStoreError(f"Failed to read {key}: {e}") from e

    def list(self, prefix: str = "") -> list[str]:
        if not self.root.exists():
            return []

        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file():
                continue
            relative = path.relative_to(self.root)
            if relative.parts[0] == TMP_DIR_NAME:
                continue
            key = relative.as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)


def get_object_store(account: Account) -> ObjectStore:
    """Build the configured object store for an account."""
    return FilesystemObjectStore(
        Path(settings.MAILVAULT_STORAGE_ROOT) / account.storage_name
    )


def verify_object(store: ObjectStore, content_key: str) -> bool:
    """
    Check that the object for a content key exists and hashes to it.

    Raises:
        ObjectNotFoundInStoreError: If the object is missing
        DigestError: If the stored bytes do not match the content key
    """
    data = store.get(object_key_for(content_key))
    actual = compute_digest(data)
    if actual != content_key:
        raise DigestError(f"Digest mismatch: expected {content_key}, got {actual}")
    return True
