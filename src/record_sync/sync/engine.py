"""Core sync engine that orchestrates one push/pull reconciliation cycle.

The ``SyncEngine`` ties together the change tracker, cursor store, remote
store client, local store, and conflict resolver.  A run:

1. Snapshots local mutations from the change tracker.
2. Pushes the snapshot to the remote store in one batch.
3. On version conflicts, fetches the server records, resolves each pair,
   and re-pushes exactly once.
4. Pulls every page of remote changes since the committed cursor.
5. Applies the combined pulled set to the local store, saving after each
   record.
6. Stages and commits the new cursor, then clears the change tracker.

Error handling is fail-fast: the first failure aborts the run with a
single ``SyncError``.  Nothing already written locally is rolled back,
and the cursor and change tracker are only touched once everything before
them succeeded, so the next run re-pushes and re-pulls the same work.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Sequence

from .accumulators import ConflictTable, PullAccumulator, PushLedger, UpsertSet
from .contracts import ChangeTracker, CursorStore, LocalStore, RemoteStoreClient
from .errors import (
    ApplyError,
    ClearError,
    CommitError,
    LocalSnapshotError,
    PullError,
    PushRejectedError,
    SyncError,
    UnresolvedConflictError,
)
from .models import (
    ChangeSetSnapshot,
    ConflictPolicy,
    Record,
    RecordID,
    SyncPhase,
    SyncReport,
)
from .resolver import ResolutionFn, create_resolver

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[SyncError | None], None]

_TRANSITIONS: dict[SyncPhase, frozenset[SyncPhase]] = {
    SyncPhase.IDLE: frozenset({SyncPhase.SNAPSHOTTING}),
    SyncPhase.SNAPSHOTTING: frozenset({SyncPhase.PUSHING}),
    SyncPhase.PUSHING: frozenset(
        {SyncPhase.CONFLICT_RESOLVING, SyncPhase.PULLING}
    ),
    SyncPhase.CONFLICT_RESOLVING: frozenset({SyncPhase.PUSHING}),
    SyncPhase.PULLING: frozenset({SyncPhase.APPLYING}),
    SyncPhase.APPLYING: frozenset({SyncPhase.COMMITTING}),
    SyncPhase.COMMITTING: frozenset({SyncPhase.DONE}),
    SyncPhase.DONE: frozenset(),
    SyncPhase.FAILED: frozenset(),
}


class SyncEngine:
    """Run one reconciliation cycle between a local replica and a remote store.

    The engine assumes exclusive access to the change tracker, cursor
    store, and local store for the duration of ``run()``.  Concurrent runs
    against the same local store must be serialised by the caller.

    Args:
        tracker: Source of pending local mutations.
        cursor_store: Holder of the remote change-stream position.
        remote: Client for the remote record store.
        local_store: The local replica.
        policy: Conflict policy, fixed for the engine's lifetime.
        resolution_fn: Resolution function for
            ``ConflictPolicy.CLIENT_TELLS_WHICH_WINS``.
        entity_types: Entity types kept in the local store.  Remote deletes
            that carry no entity type are applied to each of them.
        completion: Called with ``None`` on success or the terminal error
            on failure, before ``run()`` returns or raises.
        max_pull_pages: Upper bound on pages fetched in one pull.
            ``None`` means unbounded.

    Raises:
        UnsupportedPolicyError: If *policy* cannot be used as configured.
    """

    def __init__(
        self,
        tracker: ChangeTracker,
        cursor_store: CursorStore,
        remote: RemoteStoreClient,
        local_store: LocalStore,
        policy: ConflictPolicy | str = ConflictPolicy.SERVER_WINS,
        resolution_fn: ResolutionFn | None = None,
        entity_types: Iterable[str] = (),
        completion: CompletionCallback | None = None,
        max_pull_pages: int | None = None,
    ) -> None:
        self.tracker = tracker
        self.cursor_store = cursor_store
        self.remote = remote
        self.local_store = local_store
        self.resolver = create_resolver(policy, resolution_fn)
        self.entity_types = tuple(entity_types)
        self.completion = completion
        self.max_pull_pages = max_pull_pages

        self.phase = SyncPhase.IDLE
        self.failure: SyncError | None = None

    @property
    def policy(self) -> ConflictPolicy:
        return self.resolver.policy

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def run(self) -> SyncReport:
        """Execute the sync cycle once.

        Returns:
            A ``SyncReport`` summarising what was pushed and pulled.

        Raises:
            SyncError: The terminal error of the failed phase.
            RuntimeError: If the engine has already run.
        """
        if self.phase != SyncPhase.IDLE:
            raise RuntimeError(
                f"SyncEngine.run() may only be called once (phase={self.phase.value})"
            )

        logger.info("Sync started (policy=%s)", self.policy.value)
        try:
            report = self._perform_sync()
        except SyncError as exc:
            self.phase = SyncPhase.FAILED
            self.failure = exc
            logger.error("Sync failed: %s", exc)
            self._notify(exc)
            raise

        logger.info(
            "Sync finished: pushed %d/%d, pulled %d/%d over %d page(s)",
            report.pushed_upserts,
            report.pushed_deletes,
            report.pulled_upserts,
            report.pulled_deletes,
            report.pages_fetched,
        )
        self._notify(None)
        return report

    def _perform_sync(self) -> SyncReport:
        started_at = datetime.now(timezone.utc).isoformat()

        snapshot = self._snapshot()
        upserts = UpsertSet(snapshot.upserts)
        deletes = list(snapshot.deleted_ids)

        ledger, conflicts_resolved = self._push_phase(upserts, deletes)
        shield = set(upserts.ids()) | set(deletes)

        pulled = self._pull()

        self._transition(SyncPhase.APPLYING)
        applied_upserts, applied_deletes, shielded = self._apply(
            pulled, shield
        )

        self._finalize(pulled.cursor)

        return SyncReport(
            pushed_upserts=sum(1 for rid in ledger.accepted if rid in upserts),
            pushed_deletes=sum(
                1 for rid in ledger.accepted if rid not in upserts
            ),
            conflicts_resolved=conflicts_resolved,
            pages_fetched=pulled.pages,
            pulled_upserts=applied_upserts,
            pulled_deletes=applied_deletes,
            shielded=shielded,
            cursor=pulled.cursor,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc).isoformat(),
        )

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def _snapshot(self) -> ChangeSetSnapshot:
        self._transition(SyncPhase.SNAPSHOTTING)
        try:
            snapshot = self.tracker.snapshot()
        except Exception as exc:
            raise LocalSnapshotError(
                "Could not enumerate local changes", cause=exc
            ) from exc

        logger.debug(
            "Snapshot: %d upsert(s), %d delete(s)",
            len(snapshot.upserts),
            len(snapshot.deleted_ids),
        )
        return snapshot

    # ------------------------------------------------------------------
    # Push and conflict resolution
    # ------------------------------------------------------------------

    def _push_phase(
        self, upserts: UpsertSet, deletes: list[RecordID]
    ) -> tuple[PushLedger, int]:
        """Push the snapshot, resolving one round of conflicts if needed.

        Mutates *upserts* in place so that afterwards it holds exactly the
        records the remote store accepted.
        """
        self._transition(SyncPhase.PUSHING)
        ledger = self._push(upserts, deletes)
        if not ledger.has_conflicts:
            self._write_back(upserts, ledger)
            return ledger, 0

        self._transition(SyncPhase.CONFLICT_RESOLVING)
        resolved = self._resolve_conflicts(upserts, ledger.conflicted)

        # Records accepted in the first round now carry a new stamp; refresh
        # them so the re-push does not conflict on our own write.
        for record_id, tag in ledger.accepted.items():
            record = upserts.get(record_id)
            if record is not None:
                upserts.replace(record.with_version_tag(tag))
        for record in resolved:
            upserts.replace(record)

        self._transition(SyncPhase.PUSHING)
        logger.info("Re-pushing with %d resolved record(s)", len(resolved))
        retry = self._push(upserts, deletes)
        if retry.has_conflicts:
            raise UnresolvedConflictError(
                f"{len(retry.conflicted)} record(s) still conflicted after "
                f"resolution",
                phase=SyncPhase.PUSHING,
                record_ids=[str(rid) for rid in retry.conflicted],
            )

        self._write_back(upserts, retry)
        return retry, len(resolved)

    def _push(
        self, upserts: UpsertSet, deletes: Sequence[RecordID]
    ) -> PushLedger:
        """Send one batched push and reduce its outcomes.

        Raises:
            PushRejectedError: On transport failure or any rejected item.
        """
        if not len(upserts) and not deletes:
            logger.debug("Nothing to push")
            return PushLedger([], [])

        expected = upserts.ids() + list(deletes)
        try:
            outcomes = self.remote.push(upserts.records(), list(deletes))
        except Exception as exc:
            raise PushRejectedError(
                "Remote store push failed", cause=exc
            ) from exc

        ledger = PushLedger(outcomes, expected)

        # Deletes are unconditional; a conflict on one is a rejection.
        for record_id in list(ledger.conflicted):
            if record_id not in upserts:
                ledger.conflicted.remove(record_id)
                ledger.rejected[record_id] = "conflict reported for delete"

        if ledger.rejected:
            reasons = {
                str(rid): reason for rid, reason in ledger.rejected.items()
            }
            first_id, first_reason = next(iter(reasons.items()))
            raise PushRejectedError(
                f"Remote store rejected {len(reasons)} item(s); "
                f"first: {first_id}: {first_reason}",
                reasons=reasons,
            )

        logger.debug(
            "Push: %d accepted, %d conflicted",
            len(ledger.accepted),
            len(ledger.conflicted),
        )
        return ledger

    def _resolve_conflicts(
        self, upserts: UpsertSet, conflicted: list[RecordID]
    ) -> list[Record]:
        """Fetch server versions of *conflicted* and resolve each pair."""
        table = ConflictTable()
        for record_id in conflicted:
            client_record = upserts.get(record_id)
            if client_record is not None:
                table.add_client(client_record)

        logger.info("Resolving %d conflict(s)", len(table))
        try:
            server_records = self.remote.fetch_current(table.ids())
        except Exception as exc:
            raise UnresolvedConflictError(
                "Could not fetch server records for conflicts",
                cause=exc,
                record_ids=[str(rid) for rid in table.ids()],
            ) from exc

        for record in server_records:
            if not table.attach_server(record):
                logger.warning(
                    "Ignoring unrequested server record %s",
                    record.record_id,
                )

        missing = table.missing_server()
        if missing:
            raise UnresolvedConflictError(
                f"Server did not return {len(missing)} conflicted record(s)",
                record_ids=[str(rid) for rid in missing],
            )

        resolved: list[Record] = []
        for entry in table.entries():
            record = self.resolver.resolve(entry)
            logger.debug(
                "Resolved %s with %s", entry.record_id, self.policy.value
            )
            resolved.append(record)
        return resolved

    def _write_back(self, upserts: UpsertSet, ledger: PushLedger) -> None:
        """Store accepted records locally with their new version tags."""
        for record_id, tag in ledger.accepted.items():
            record = upserts.get(record_id)
            if record is None:
                continue
            stamped = record.with_version_tag(tag)
            upserts.replace(stamped)
            try:
                self.local_store.upsert(stamped)
                self.local_store.save()
            except Exception as exc:
                raise ApplyError(
                    f"Could not store version tag for {record_id}",
                    phase=SyncPhase.PUSHING,
                    cause=exc,
                ) from exc

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def _pull(self) -> PullAccumulator:
        """Fetch every page of remote changes since the committed cursor."""
        self._transition(SyncPhase.PULLING)
        try:
            start = self.cursor_store.current()
        except Exception as exc:
            raise PullError(
                "Could not read committed cursor", cause=exc
            ) from exc

        pulled = PullAccumulator(start)
        while True:
            if (
                self.max_pull_pages is not None
                and pulled.pages >= self.max_pull_pages
            ):
                raise PullError(
                    f"Remote store still reports more changes after "
                    f"{pulled.pages} page(s) (max_pull_pages="
                    f"{self.max_pull_pages})"
                )
            try:
                page = self.remote.fetch_changes(pulled.cursor)
            except Exception as exc:
                raise PullError(
                    f"Fetching change page {pulled.pages + 1} failed",
                    cause=exc,
                ) from exc

            pulled.add(page)
            logger.debug(
                "Page %d: %d upsert(s), %d delete(s), has_more=%s",
                pulled.pages,
                len(page.upserted),
                len(page.deleted),
                page.has_more,
            )
            if not page.has_more:
                return pulled

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _apply(
        self, pulled: PullAccumulator, shield: set[RecordID]
    ) -> tuple[int, int, int]:
        """Apply pulled upserts then deletes, saving after each record.

        Records in *shield* were pushed in this run and are not touched.

        Returns:
            ``(upserts_applied, deletes_applied, shielded)``.
        """
        upserted = 0
        deleted = 0
        shielded = 0

        for record in pulled.upserted:
            if self._is_shielded(record.record_id, shield):
                logger.debug(
                    "Skipping pulled %s: pushed in this run",
                    record.record_id,
                )
                shielded += 1
                continue
            try:
                self.local_store.upsert(record)
                self.local_store.save()
            except Exception as exc:
                raise ApplyError(
                    f"Could not store {record.record_id}", cause=exc
                ) from exc
            upserted += 1

        for record_id in pulled.deleted:
            if self._is_shielded(record_id, shield):
                logger.debug(
                    "Skipping pulled delete of %s: pushed in this run",
                    record_id,
                )
                shielded += 1
                continue
            for entity_type in self._entity_types_for(record_id):
                try:
                    self.local_store.delete_by_id(record_id, entity_type)
                    self.local_store.save()
                except Exception as exc:
                    raise ApplyError(
                        f"Could not delete {record_id} ({entity_type})",
                        cause=exc,
                    ) from exc
            deleted += 1

        return upserted, deleted, shielded

    def _is_shielded(
        self, record_id: RecordID, shield: set[RecordID]
    ) -> bool:
        """Whether *record_id* was pushed in this run.

        An ID without an entity type matches any ID with the same name,
        on either side.
        """
        if record_id in shield:
            return True
        if record_id.entity_type is None:
            return any(rid.name == record_id.name for rid in shield)
        return RecordID(name=record_id.name) in shield

    def _entity_types_for(self, record_id: RecordID) -> tuple[str, ...]:
        if record_id.entity_type is not None:
            return (record_id.entity_type,)
        if not self.entity_types:
            raise ApplyError(
                f"Pulled delete of '{record_id}' carries no entity type and "
                f"no entity types are configured"
            )
        return self.entity_types

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def _finalize(self, cursor: str | None) -> None:
        """Commit the cursor, then clear the change tracker."""
        self._transition(SyncPhase.COMMITTING)
        try:
            self.cursor_store.stage(cursor)
            self.cursor_store.commit()
        except Exception as exc:
            raise CommitError(
                "Could not commit cursor", cause=exc
            ) from exc

        try:
            self.tracker.clear()
        except Exception as exc:
            raise ClearError(
                "Cursor committed but local change queue could not be "
                "cleared",
                cause=exc,
            ) from exc

        self._transition(SyncPhase.DONE)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, phase: SyncPhase) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise RuntimeError(
                f"Illegal sync phase transition: {self.phase.value} -> {phase.value}"
            )
        logger.debug("Phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    def _notify(self, error: SyncError | None) -> None:
        if self.completion is None:
            return
        try:
            self.completion(error)
        except Exception:
            logger.exception("Sync completion callback raised")
