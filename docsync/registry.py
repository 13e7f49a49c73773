"""
In-memory registry of document records.

Records are kept most-recent-first. Status updates are guarded so that
a stale poll response can never move a record backwards or revive a
record that already reached a terminal status.
"""

import logging
from typing import Iterator, Optional

from .errors import DuplicateDocumentError
from .types import ALL_CATEGORIES, DocumentRecord, DocumentStatus

logger = logging.getLogger(__name__)


class DocumentRegistry:
    """Ordered collection of DocumentRecords, newest first."""

    def __init__(self, records: Optional[list[DocumentRecord]] = None):
        self._records: list[DocumentRecord] = []
        self._by_id: dict[str, DocumentRecord] = {}
        for record in records or []:
            self.append(record)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._by_id

    def __iter__(self) -> Iterator[DocumentRecord]:
        return iter(list(self._records))

    def get(self, document_id: str) -> Optional[DocumentRecord]:
        return self._by_id.get(document_id)

    def insert(self, record: DocumentRecord) -> None:
        """Add a record at the front. Duplicate ids are a caller bug."""
        if record.id in self._by_id:
            raise DuplicateDocumentError(f"Document {record.id!r} is already registered")
        self._records.insert(0, record)
        self._by_id[record.id] = record

    def append(self, record: DocumentRecord) -> None:
        """Add a record at the back (used when loading an ordered list)."""
        if record.id in self._by_id:
            raise DuplicateDocumentError(f"Document {record.id!r} is already registered")
        self._records.append(record)
        self._by_id[record.id] = record

    def remove(self, document_id: str) -> Optional[DocumentRecord]:
        """Remove and return a record, or None if absent."""
        record = self._by_id.pop(document_id, None)
        if record is not None:
            self._records.remove(record)
        return record

    def replace_all(self, records: list[DocumentRecord]) -> None:
        """Swap in a fresh list (e.g. from the service), keeping its order."""
        self._records = []
        self._by_id = {}
        for record in records:
            self.append(record)

    def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        message: Optional[str] = None,
        progress: Optional[int] = None,
    ) -> bool:
        """
        Apply a status change. Returns True if the record changed.

        Ignored when the id is absent, when the record is already
        terminal, or when the update would move a record backwards
        along uploading -> processing -> indexed -> ready.
        """
        record = self._by_id.get(document_id)
        if record is None:
            logger.debug("Status %s for unknown document %s ignored", status.value, document_id)
            return False
        if record.status.is_terminal:
            logger.debug(
                "Status %s for %s ignored: already %s",
                status.value, document_id, record.status.value,
            )
            return False
        if status.rank < record.status.rank:
            logger.debug(
                "Stale status %s for %s ignored: already %s",
                status.value, document_id, record.status.value,
            )
            return False

        record.status = status
        if message is not None:
            record.processing_message = message
        if progress is not None:
            record.progress = progress
        return True

    def set_message(self, document_id: str, message: str) -> None:
        record = self._by_id.get(document_id)
        if record is not None:
            record.processing_message = message

    def non_terminal_ids(self) -> list[str]:
        return [r.id for r in self._records if not r.status.is_terminal]

    def filter(self, category: str = ALL_CATEGORIES, search_term: str = "") -> list[DocumentRecord]:
        """Records matching category AND a case-insensitive name substring."""
        needle = search_term.lower()
        return [
            r for r in self._records
            if (category == ALL_CATEGORIES or r.category == category)
            and (not needle or needle in r.name.lower())
        ]

    def snapshot(self) -> list[dict]:
        return [r.to_dict() for r in self._records]
