"""Two-way record sync engine.

Public API for reconciling a local replica of structured records with a
remote record store.

Architecture
------------
One run is a single, strictly ordered cycle: snapshot local changes, push
them, resolve version conflicts once, pull remote changes page by page
through an incremental cursor, apply them locally, then commit the cursor
and clear the local change queue.  The cursor and the change queue are
only touched once every earlier phase has succeeded.

Modules:

- ``engine``       -- ``SyncEngine``: orchestrates a full sync cycle.
- ``contracts``    -- Protocols for the change tracker, cursor store,
  remote store client, and local store.
- ``models``       -- ``Record``, ``RecordID``, ``ChangeSetSnapshot``,
  ``PushOutcome``, ``ChangePage``, ``ConflictEntry``, ``SyncReport``.
- ``accumulators`` -- Per-phase accumulators keyed by ``RecordID``.
- ``resolver``     -- Conflict resolution strategies (server-wins,
  client-wins, client-tells-which-wins).
- ``errors``       -- ``SyncError`` taxonomy.
- ``state``        -- ``FileCursorStore``: JSON-file cursor persistence.
- ``reporter``     -- Human-readable and JSON report formatting.

Usage example
-------------
::

    from pathlib import Path
    from record_sync.core.client import RecordStoreClient
    from record_sync.sync import (
        ConflictPolicy, FileCursorStore, SyncEngine, format_sync_report,
    )

    engine = SyncEngine(
        tracker=change_tracker,          # your ChangeTracker
        cursor_store=FileCursorStore(Path(".record_sync"), "notes"),
        remote=RecordStoreClient(config),
        local_store=local_store,         # your LocalStore
        policy=ConflictPolicy.CLIENT_WINS,
        entity_types=["Note", "Folder"],
    )

    report = engine.run()
    print(format_sync_report(report))

``record_sync.runner.build_engine(config, tracker, local_store)`` builds the
same engine from a loaded ``Config``.
"""

from .engine import SyncEngine
from .errors import (
    ApplyError,
    ClearError,
    CommitError,
    LocalSnapshotError,
    PullError,
    PushRejectedError,
    SyncError,
    UnresolvedConflictError,
    UnsupportedPolicyError,
)
from .models import (
    ChangePage,
    ChangeSetSnapshot,
    ConflictEntry,
    ConflictPolicy,
    OutcomeStatus,
    PushOutcome,
    Record,
    RecordID,
    SyncPhase,
    SyncReport,
)
from .reporter import format_failure, format_sync_report, report_to_json
from .resolver import create_resolver, resolve
from .state import FileCursorStore

__all__ = [
    "ApplyError",
    "ChangePage",
    "ChangeSetSnapshot",
    "ClearError",
    "CommitError",
    "ConflictEntry",
    "ConflictPolicy",
    "FileCursorStore",
    "LocalSnapshotError",
    "OutcomeStatus",
    "PullError",
    "PushOutcome",
    "PushRejectedError",
    "Record",
    "RecordID",
    "SyncEngine",
    "SyncError",
    "SyncPhase",
    "SyncReport",
    "UnresolvedConflictError",
    "UnsupportedPolicyError",
    "create_resolver",
    "format_failure",
    "format_sync_report",
    "report_to_json",
    "resolve",
]
