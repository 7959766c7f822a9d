"""Protocols for the collaborators the sync engine drives.

The engine owns none of these; callers supply implementations.  Each
method is synchronous from the engine's point of view: it returns only
once the result of the whole call is known.
"""

from __future__ import annotations

from typing import Protocol, Sequence

from .models import ChangePage, ChangeSetSnapshot, Cursor, PushOutcome, Record, RecordID


class ChangeTracker(Protocol):
    """Records local mutations made since the last successful run."""

    def snapshot(self) -> ChangeSetSnapshot:
        """Capture all pending mutations.  Raise on enumeration failure."""
        ...  # pragma: no cover

    def clear(self) -> None:
        """Forget the mutations captured by the last ``snapshot()``.

        Must be idempotent.
        """
        ...  # pragma: no cover


class CursorStore(Protocol):
    """Holds the position of the last fully applied remote change."""

    def current(self) -> Cursor | None:
        """Return the committed cursor (``None`` before the first commit)."""
        ...  # pragma: no cover

    def stage(self, cursor: Cursor | None) -> None:
        """Stage *cursor*; it is not visible via ``current()`` until committed."""
        ...  # pragma: no cover

    def commit(self) -> None:
        """Durably persist the staged cursor."""
        ...  # pragma: no cover


class RemoteStoreClient(Protocol):
    """Batched access to the remote record store."""

    def push(
        self, upserts: Sequence[Record], deletes: Sequence[RecordID]
    ) -> list[PushOutcome]:
        """Save *upserts* and delete *deletes* in one batch.

        Returns one outcome per item.  Raises for transport failures.
        """
        ...  # pragma: no cover

    def fetch_changes(self, since: Cursor | None) -> ChangePage:
        """Return the next page of changes after *since*."""
        ...  # pragma: no cover

    def fetch_current(self, ids: Sequence[RecordID]) -> list[Record]:
        """Return the current server version of each of *ids*."""
        ...  # pragma: no cover


class LocalStore(Protocol):
    """The local replica the engine writes pulled changes into."""

    def upsert(self, record: Record) -> None:
        """Insert or update the local object matching ``record.record_id``."""
        ...  # pragma: no cover

    def delete_by_id(self, record_id: RecordID, entity_type: str) -> None:
        """Delete the local object of *entity_type* named by *record_id*.

        Deleting a missing object is a no-op.
        """
        ...  # pragma: no cover

    def save(self) -> None:
        """Commit pending local writes."""
        ...  # pragma: no cover
