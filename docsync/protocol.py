"""
Protocol definition for document storage backends.

Implemented by:
- NativeFsBackend (files in a user-granted directory)
- FallbackBackend (persisted metadata, in-memory bytes)
"""

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class StorageBackend(Protocol):
    """
    Persists raw file bytes and metadata for uploaded documents.

    Exactly one backend is active per session. Operations never raise
    for storage failures; they return False / None / [] and log.
    """

    kind: str

    def is_supported(self) -> bool: ...

    def storage_ref(self, document_id: str, filename: str) -> str:
        """Locator under which this backend stores a document."""
        ...

    def save(
        self,
        data: bytes,
        name: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool: ...

    def read(self, name: str) -> Optional[bytes]: ...

    def delete(self, name: str) -> bool: ...

    def list(self) -> list[str]: ...
