"""Pydantic models for the record sync engine.

Defines the core data contracts used across all sync modules:

- ``RecordID``: Hashable identity of one remote record.
- ``Record``: Server representation of one entity instance.
- ``ChangeSetSnapshot``: Local mutations captured for one push.
- ``PushOutcome``: Per-item result of a batched push.
- ``ChangePage``: One page of the remote change stream.
- ``ConflictEntry``: Client/server pair for a version mismatch.
- ``SyncReport``: Aggregate results for a successful sync run.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# Opaque position in the remote change stream.  ``None`` means "from the
# beginning".
Cursor = str


class ConflictPolicy(str, Enum):
    """How a version conflict on push is resolved."""

    CLIENT_TELLS_WHICH_WINS = "client-tells-which-wins"
    SERVER_WINS = "server-wins"
    CLIENT_WINS = "client-wins"
    KEEP_BOTH = "keep-both"


class SyncPhase(str, Enum):
    """States of a single sync run."""

    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    PUSHING = "pushing"
    CONFLICT_RESOLVING = "conflict_resolving"
    PULLING = "pulling"
    APPLYING = "applying"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    """Per-item result kinds reported by the remote store."""

    ACCEPTED = "accepted"
    CONFLICTED = "conflicted"
    REJECTED = "rejected"


class RecordID(BaseModel):
    """Identity of a record within its entity type.

    Attributes:
        name: Record name, unique within ``entity_type``.
        entity_type: Entity type the record belongs to.  ``None`` only for
            IDs from a remote delete stream that does not carry a type.
    """

    name: str
    entity_type: str | None = None

    model_config = {"frozen": True}

    def __str__(self) -> str:
        if self.entity_type is None:
            return self.name
        return f"{self.entity_type}/{self.name}"


class Record(BaseModel):
    """Remote-addressable snapshot of one entity instance.

    Attributes:
        record_id: Identity of the record.
        fields: Field name to value mapping.
        version_tag: Opaque server-assigned stamp; changes on every
            server-side write.  ``None`` for records never seen remotely.
    """

    record_id: RecordID
    fields: dict[str, Any] = Field(default_factory=dict)
    version_tag: str | None = None

    model_config = {"frozen": True}

    @property
    def entity_type(self) -> str | None:
        return self.record_id.entity_type

    def with_fields(self, fields: dict[str, Any]) -> Record:
        """Return a copy whose fields are replaced by *fields*."""
        return self.model_copy(update={"fields": dict(fields)})

    def with_version_tag(self, version_tag: str | None) -> Record:
        """Return a copy carrying *version_tag*."""
        return self.model_copy(update={"version_tag": version_tag})


class ChangeSetSnapshot(BaseModel):
    """Point-in-time capture of local mutations pending push.

    Attributes:
        upserts: Locally inserted or updated records.
        deleted_ids: IDs of locally deleted records.
    """

    upserts: tuple[Record, ...] = ()
    deleted_ids: tuple[RecordID, ...] = ()

    model_config = {"frozen": True}

    @property
    def is_empty(self) -> bool:
        return not self.upserts and not self.deleted_ids


class PushOutcome(BaseModel):
    """Result for one item of a batched push.

    Attributes:
        record_id: The pushed record or deleted ID.
        status: Accepted, conflicted, or rejected.
        version_tag: New server stamp when accepted.
        reason: Server-provided explanation when rejected.
    """

    record_id: RecordID
    status: OutcomeStatus
    version_tag: str | None = None
    reason: str | None = None

    model_config = {"frozen": True}

    @classmethod
    def accepted(
        cls, record_id: RecordID, version_tag: str | None = None
    ) -> PushOutcome:
        return cls(
            record_id=record_id,
            status=OutcomeStatus.ACCEPTED,
            version_tag=version_tag,
        )

    @classmethod
    def conflicted(cls, record_id: RecordID) -> PushOutcome:
        return cls(record_id=record_id, status=OutcomeStatus.CONFLICTED)

    @classmethod
    def rejected(cls, record_id: RecordID, reason: str) -> PushOutcome:
        return cls(
            record_id=record_id,
            status=OutcomeStatus.REJECTED,
            reason=reason,
        )


class ChangePage(BaseModel):
    """One page of remote changes since a cursor.

    Attributes:
        upserted: Records inserted or updated remotely.
        deleted: IDs of records deleted remotely.
        next_cursor: Cursor positioned after this page.
        has_more: Whether another page follows.
    """

    upserted: tuple[Record, ...] = ()
    deleted: tuple[RecordID, ...] = ()
    next_cursor: Cursor | None = None
    has_more: bool = False

    model_config = {"frozen": True}


class ConflictEntry(BaseModel):
    """Client and server versions of the same record."""

    client_record: Record
    server_record: Record

    model_config = {"frozen": True}

    @property
    def record_id(self) -> RecordID:
        return self.client_record.record_id


class SyncReport(BaseModel):
    """Aggregate report for a successful sync run.

    Attributes:
        pushed_upserts: Records accepted by the remote store.
        pushed_deletes: Deletes accepted by the remote store.
        conflicts_resolved: Conflicts resolved and re-pushed.
        pages_fetched: Change pages retrieved during pull.
        pulled_upserts: Pulled records written locally.
        pulled_deletes: Pulled deletes applied locally.
        shielded: Pulled changes skipped because the record was pushed
            in the same run.
        cursor: The cursor committed at the end of the run.
        started_at: ISO 8601 timestamp when the run started.
        completed_at: ISO 8601 timestamp when the run completed.
    """

    pushed_upserts: int = 0
    pushed_deletes: int = 0
    conflicts_resolved: int = 0
    pages_fetched: int = 0
    pulled_upserts: int = 0
    pulled_deletes: int = 0
    shielded: int = 0
    cursor: Cursor | None = None
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    def summary(self) -> str:
        """Format a human-readable summary of the sync run.

        Returns:
            Multi-line summary string with counts by phase.
        """
        lines = [
            "Sync report",
            f"  Pushed upserts:     {self.pushed_upserts}",
            f"  Pushed deletes:     {self.pushed_deletes}",
            f"  Conflicts resolved: {self.conflicts_resolved}",
            f"  Pages fetched:      {self.pages_fetched}",
            f"  Pulled upserts:     {self.pulled_upserts}",
            f"  Pulled deletes:     {self.pulled_deletes}",
            f"  Shielded:           {self.shielded}",
            f"  Cursor:             {self.cursor or '-'}",
        ]
        return "\n".join(lines)
