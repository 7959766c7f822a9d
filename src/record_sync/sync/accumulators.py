"""Owned accumulators threaded through the push and pull phases.

Each accumulator is created by the engine for one phase call and keyed by
``RecordID`` values, never by bare record-name strings, so records with
the same name in different entity types cannot collide.
"""

from __future__ import annotations

from typing import Iterable, Iterator

from .models import (
    ChangePage,
    ConflictEntry,
    Cursor,
    OutcomeStatus,
    PushOutcome,
    Record,
    RecordID,
)


class UpsertSet:
    """Ordered ``RecordID -> Record`` mapping of records to push."""

    def __init__(self, records: Iterable[Record] = ()) -> None:
        self._records: dict[RecordID, Record] = {}
        for record in records:
            self._records[record.record_id] = record

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def get(self, record_id: RecordID) -> Record | None:
        return self._records.get(record_id)

    def replace(self, record: Record) -> None:
        """Overwrite (or add) the record with the same ID."""
        self._records[record.record_id] = record

    def ids(self) -> list[RecordID]:
        return list(self._records)

    def records(self) -> list[Record]:
        """Records in insertion order."""
        return list(self._records.values())


class PushLedger:
    """Reduce per-item push outcomes into one result for the phase.

    Args:
        outcomes: Outcomes returned by the remote store.
        expected: Every ID that was part of the push.  IDs with no
            outcome are recorded as rejections.
    """

    def __init__(
        self,
        outcomes: Iterable[PushOutcome],
        expected: Iterable[RecordID],
    ) -> None:
        self.accepted: dict[RecordID, str | None] = {}
        self.conflicted: list[RecordID] = []
        self.rejected: dict[RecordID, str] = {}

        for outcome in outcomes:
            if outcome.status == OutcomeStatus.ACCEPTED:
                self.accepted[outcome.record_id] = outcome.version_tag
            elif outcome.status == OutcomeStatus.CONFLICTED:
                if outcome.record_id not in self.conflicted:
                    self.conflicted.append(outcome.record_id)
            else:
                self.rejected[outcome.record_id] = (
                    outcome.reason or "rejected by remote store"
                )

        reported = (
            set(self.accepted) | set(self.conflicted) | set(self.rejected)
        )
        for record_id in expected:
            if record_id not in reported:
                self.rejected[record_id] = "no outcome reported"

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicted)


class ConflictTable:
    """``RecordID -> (client, server)`` pairs collected during resolution.

    Filled in two steps: client records when the conflict is detected,
    server records once the batched read returns.
    """

    def __init__(self) -> None:
        self._client: dict[RecordID, Record] = {}
        self._server: dict[RecordID, Record] = {}

    def __len__(self) -> int:
        return len(self._client)

    def add_client(self, record: Record) -> None:
        self._client[record.record_id] = record

    def attach_server(self, record: Record) -> bool:
        """Pair *record* with its client version.

        Returns:
            ``False`` if no client record with that ID is pending (the
            record is ignored).
        """
        if record.record_id not in self._client:
            return False
        self._server[record.record_id] = record
        return True

    def ids(self) -> list[RecordID]:
        return list(self._client)

    def missing_server(self) -> list[RecordID]:
        """IDs for which no server record has been attached."""
        return [rid for rid in self._client if rid not in self._server]

    def entries(self) -> Iterator[ConflictEntry]:
        """Yield complete client/server pairs in detection order."""
        for record_id, client in self._client.items():
            server = self._server.get(record_id)
            if server is not None:
                yield ConflictEntry(
                    client_record=client, server_record=server
                )


class PullAccumulator:
    """Combined set of remote changes across all pages of one pull."""

    def __init__(self, start: Cursor | None) -> None:
        self.upserted: list[Record] = []
        self.deleted: list[RecordID] = []
        self.pages = 0
        self.cursor: Cursor | None = start

    def add(self, page: ChangePage) -> None:
        """Append *page* in fetch order and advance the cursor."""
        self.upserted.extend(page.upserted)
        self.deleted.extend(page.deleted)
        self.pages += 1
        if page.next_cursor is not None:
            self.cursor = page.next_cursor
