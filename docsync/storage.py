"""
Document storage backends and the startup capability probe.

Two mutually exclusive strategies:

- NativeFsBackend writes files into a directory the user explicitly
  granted (once, via a picker). The grant is persisted and re-checked
  on startup; every operation fails closed when it is missing or no
  longer usable.
- FallbackBackend persists only metadata records. Raw bytes live in
  process memory and are gone after a restart: documents keep their
  metadata but have no retrievable content until re-uploaded.

select_backend() runs once per session and is not re-evaluated.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional

from .config import SyncConfig
from .kvstore import KeyValueStore
from .protocol import StorageBackend
from .types import utc_now

logger = logging.getLogger(__name__)

HANDLES_NAMESPACE = "handles"
DIRECTORY_HANDLE_KEY = "fs-directory-handle"
FALLBACK_NAMESPACE = "fallback-documents"

# Returns the directory the user picked, or None if they cancelled
DirectoryPicker = Callable[[], Optional[Path]]


def _valid_name(name: str) -> bool:
    return bool(name) and name not in (".", "..") and "/" not in name and "\\" not in name


def _safe_filename(filename: str) -> str:
    cleaned = filename.replace("/", "_").replace("\\", "_").strip()
    return cleaned or "document"


class DirectoryHandle:
    """A user-granted directory. Revocable; permission is re-checked on use."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._revoked = False

    @property
    def name(self) -> str:
        return self.path.name

    def query_permission(self) -> bool:
        """True while the grant is live and the directory is read/writable."""
        if self._revoked:
            return False
        return self.path.is_dir() and os.access(self.path, os.R_OK | os.W_OK | os.X_OK)

    def revoke(self) -> None:
        self._revoked = True

    def __repr__(self) -> str:
        state = "revoked" if self._revoked else "granted"
        return f"DirectoryHandle({str(self.path)!r}, {state})"


class NativeFsBackend:
    """Stores document bytes as files inside a user-granted directory."""

    kind = "native"

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        picker: Optional[DirectoryPicker] = None,
        handle: Optional[DirectoryHandle] = None,
    ):
        self._kv = kv
        self._picker = picker
        self._handle = handle

    def is_supported(self) -> bool:
        """Capability probe: a picker is available or a usable grant exists."""
        return self._picker is not None or self.get_directory_handle() is not None

    def request_directory_access(self) -> Optional[DirectoryHandle]:
        """Ask the user for a directory and persist the grant."""
        if self._picker is None:
            logger.error("Directory access not supported: no picker available")
            return None
        picked = self._picker()
        if picked is None:
            logger.info("Directory selection cancelled")
            return None
        return self.grant(Path(picked))

    def grant(self, path: Path) -> Optional[DirectoryHandle]:
        """Record an explicit grant for `path`. Returns None if unusable."""
        handle = DirectoryHandle(Path(path).expanduser().resolve())
        if not handle.query_permission():
            logger.error("Directory %s is not a writable directory", handle.path)
            return None
        self._handle = handle
        self._kv.set(HANDLES_NAMESPACE, DIRECTORY_HANDLE_KEY, str(handle.path))
        logger.info("Granted storage directory %s", handle.path)
        return handle

    def get_directory_handle(self) -> Optional[DirectoryHandle]:
        """Current handle, restoring a persisted grant if needed."""
        if self._handle is not None:
            return self._handle if self._handle.query_permission() else None

        stored = self._kv.get(HANDLES_NAMESPACE, DIRECTORY_HANDLE_KEY)
        if stored:
            handle = DirectoryHandle(Path(stored))
            if handle.query_permission():
                self._handle = handle
                return handle
            logger.warning("Persisted storage directory %s is no longer accessible", stored)
        return None

    def revoke(self) -> None:
        """Drop the grant (in memory and persisted)."""
        if self._handle is not None:
            self._handle.revoke()
        self._kv.delete(HANDLES_NAMESPACE, DIRECTORY_HANDLE_KEY)

    def storage_ref(self, document_id: str, filename: str) -> str:
        return f"{document_id}_{_safe_filename(filename)}"

    def _require_handle(self, op: str) -> Optional[DirectoryHandle]:
        handle = self.get_directory_handle()
        if handle is None:
            logger.error("Failed to %s: no directory access", op)
        return handle

    def save(
        self,
        data: bytes,
        name: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        if not _valid_name(name):
            logger.error("Failed to save file: invalid name %r", name)
            return False
        handle = self._require_handle("save file")
        if handle is None:
            return False
        try:
            fd, tmp = tempfile.mkstemp(dir=handle.path, prefix=".docsync-", suffix=".part")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, handle.path / name)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.error("Failed to save file %s: %s", name, e)
            return False
        return True

    def read(self, name: str) -> Optional[bytes]:
        if not _valid_name(name):
            return None
        handle = self._require_handle("read file")
        if handle is None:
            return None
        try:
            return (handle.path / name).read_bytes()
        except OSError as e:
            logger.error("Failed to read file %s: %s", name, e)
            return None

    def delete(self, name: str) -> bool:
        if not _valid_name(name):
            return False
        handle = self._require_handle("delete file")
        if handle is None:
            return False
        try:
            (handle.path / name).unlink()
        except OSError as e:
            logger.error("Failed to delete file %s: %s", name, e)
            return False
        return True

    def list(self) -> list[str]:
        handle = self.get_directory_handle()
        if handle is None:
            return []
        try:
            return sorted(
                entry.name for entry in handle.path.iterdir()
                if entry.is_file() and not entry.name.startswith(".docsync-")
            )
        except OSError as e:
            logger.error("Failed to list files: %s", e)
            return []


class FallbackBackend:
    """
    Metadata-only persistence for environments without directory access.

    Metadata records survive restarts; bytes are kept only for the
    lifetime of this object.
    """

    kind = "fallback"

    def __init__(self, kv: KeyValueStore):
        self._kv = kv
        self._content: dict[str, bytes] = {}

    def is_supported(self) -> bool:
        return True

    def storage_ref(self, document_id: str, filename: str) -> str:
        return document_id

    def save(
        self,
        data: bytes,
        name: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        record = {
            "metadata": metadata or {},
            "size": len(data),
            "saved_at": utc_now(),
        }
        try:
            self._kv.set(FALLBACK_NAMESPACE, name, record)
        except Exception as e:
            logger.error("Failed to save file metadata for %s: %s", name, e)
            return False
        self._content[name] = data
        return True

    def read(self, name: str) -> Optional[bytes]:
        data = self._content.get(name)
        if data is None and self.has_metadata(name):
            logger.info("Content for %s is not available in this session; re-upload to restore it", name)
        return data

    def has_metadata(self, name: str) -> bool:
        return self._kv.get(FALLBACK_NAMESPACE, name) is not None

    def get_metadata(self, name: str) -> Optional[dict[str, Any]]:
        return self._kv.get(FALLBACK_NAMESPACE, name)

    def delete(self, name: str) -> bool:
        self._content.pop(name, None)
        try:
            self._kv.delete(FALLBACK_NAMESPACE, name)
        except Exception as e:
            logger.error("Failed to delete file metadata for %s: %s", name, e)
            return False
        return True

    def list(self) -> list[str]:
        return self._kv.keys(FALLBACK_NAMESPACE)


def select_backend(
    config: SyncConfig,
    kv: KeyValueStore,
    picker: Optional[DirectoryPicker] = None,
) -> StorageBackend:
    """
    Choose the storage backend for this session.

    ``storage.backend = "auto"`` probes native capability and falls back
    to metadata-only storage. ``"native"`` requires a usable directory
    grant (raises ValueError otherwise); ``"fallback"`` always uses the
    fallback backend.
    """
    mode = config.storage.backend
    if mode == "fallback":
        return FallbackBackend(kv)

    native = NativeFsBackend(kv, picker=picker)
    if config.storage.directory is not None and native.get_directory_handle() is None:
        native.grant(config.storage.directory)

    handle = native.get_directory_handle()
    if handle is None and picker is not None:
        handle = native.request_directory_access()

    if handle is not None:
        logger.info("Using native file-system storage in %s", handle.path)
        return native
    if mode == "native":
        raise ValueError(
            "Native storage requested but no directory access has been granted. "
            "Run `docsync grant DIRECTORY` or set storage.directory."
        )
    logger.info("Native file-system access unavailable, using fallback storage")
    return FallbackBackend(kv)
