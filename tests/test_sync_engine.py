"""Tests for the core sync engine."""

from __future__ import annotations

from typing import Optional, Sequence

import pytest

from record_sync.sync.engine import SyncEngine
from record_sync.sync.errors import (
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
from record_sync.sync.models import (
    ChangePage,
    ChangeSetSnapshot,
    ConflictPolicy,
    PushOutcome,
    Record,
    RecordID,
    SyncPhase,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _rid(name: str, entity_type: Optional[str] = "Note") -> RecordID:
    return RecordID(name=name, entity_type=entity_type)


def _rec(name: str, tag: Optional[str] = None, **fields) -> Record:
    return Record(record_id=_rid(name), fields=fields, version_tag=tag)


class FakeTracker:
    """Change tracker returning a fixed snapshot."""

    def __init__(
        self,
        snapshot: Optional[ChangeSetSnapshot] = None,
        events: Optional[list] = None,
    ) -> None:
        self._snapshot = snapshot or ChangeSetSnapshot()
        self.events = events if events is not None else []
        self.snapshot_error: Optional[Exception] = None
        self.clear_error: Optional[Exception] = None
        self.snapshot_calls = 0
        self.clear_calls = 0

    def snapshot(self) -> ChangeSetSnapshot:
        self.snapshot_calls += 1
        self.events.append("snapshot")
        if self.snapshot_error:
            raise self.snapshot_error
        return self._snapshot

    def clear(self) -> None:
        self.events.append("clear")
        if self.clear_error:
            raise self.clear_error
        self.clear_calls += 1


class FakeCursorStore:
    """Cursor store with staged/committed values kept in memory."""

    def __init__(
        self, committed: Optional[str] = None, events: Optional[list] = None
    ) -> None:
        self.committed = committed
        self.staged: Optional[str] = None
        self.commit_calls = 0
        self.commit_error: Optional[Exception] = None
        self.events = events if events is not None else []

    def current(self) -> Optional[str]:
        return self.committed

    def stage(self, cursor: Optional[str]) -> None:
        self.events.append("stage")
        self.staged = cursor

    def commit(self) -> None:
        self.events.append("commit")
        if self.commit_error:
            raise self.commit_error
        self.commit_calls += 1
        self.committed = self.staged


class FakeRemoteStore:
    """In-memory remote store with optimistic concurrency on version tags.

    A pushed record conflicts when the server already holds a record with
    that ID and a different version tag.  ``force_conflicts`` maps a push
    call index to IDs reported as conflicted regardless.
    """

    def __init__(
        self,
        records: Optional[dict] = None,
        pages: Optional[list[ChangePage]] = None,
        events: Optional[list] = None,
    ) -> None:
        self.records: dict[RecordID, Record] = dict(records or {})
        self.pages = list(pages or [ChangePage(next_cursor="c1")])
        self.events = events if events is not None else []
        self.push_calls: list[tuple[list[Record], list[RecordID]]] = []
        self.fetch_current_calls: list[list[RecordID]] = []
        self.fetch_changes_calls: list[Optional[str]] = []
        self.force_conflicts: dict[int, set[RecordID]] = {}
        self.reject: dict[RecordID, str] = {}
        self.drop_outcomes: set[RecordID] = set()
        self.push_error: Optional[Exception] = None
        self.fetch_current_error: Optional[Exception] = None
        self.fail_on_page: Optional[int] = None
        self._counter = 100

    def _next_tag(self) -> str:
        self._counter += 1
        return f"t{self._counter}"

    def push(
        self, upserts: Sequence[Record], deletes: Sequence[RecordID]
    ) -> list[PushOutcome]:
        call = len(self.push_calls)
        self.push_calls.append((list(upserts), list(deletes)))
        self.events.append("push")
        if self.push_error:
            raise self.push_error

        forced = self.force_conflicts.get(call, set())
        outcomes = []
        for record in upserts:
            rid = record.record_id
            if rid in self.drop_outcomes:
                continue
            if rid in self.reject:
                outcomes.append(PushOutcome.rejected(rid, self.reject[rid]))
                continue
            server = self.records.get(rid)
            if rid in forced or (
                server is not None
                and server.version_tag != record.version_tag
            ):
                outcomes.append(PushOutcome.conflicted(rid))
                continue
            tag = self._next_tag()
            self.records[rid] = record.with_version_tag(tag)
            outcomes.append(PushOutcome.accepted(rid, tag))
        for rid in deletes:
            if rid in self.drop_outcomes:
                continue
            if rid in forced:
                outcomes.append(PushOutcome.conflicted(rid))
                continue
            self.records.pop(rid, None)
            outcomes.append(PushOutcome.accepted(rid))
        return outcomes

    def fetch_changes(self, since: Optional[str]) -> ChangePage:
        index = len(self.fetch_changes_calls)
        self.fetch_changes_calls.append(since)
        self.events.append("fetch_changes")
        if self.fail_on_page is not None and index + 1 == self.fail_on_page:
            raise ConnectionError("network down")
        return self.pages[index]

    def fetch_current(self, ids: Sequence[RecordID]) -> list[Record]:
        self.fetch_current_calls.append(list(ids))
        self.events.append("fetch_current")
        if self.fetch_current_error:
            raise self.fetch_current_error
        return [self.records[rid] for rid in ids if rid in self.records]


class FakeLocalStore:
    """Local replica keyed by (entity_type, name)."""

    def __init__(self, records: Optional[list[Record]] = None) -> None:
        self.objects: dict[tuple, Record] = {}
        for record in records or []:
            self.objects[self._key(record.record_id)] = record
        self.writes: list[tuple[str, RecordID]] = []
        self.save_calls = 0
        self.fail_on: Optional[RecordID] = None

    @staticmethod
    def _key(record_id: RecordID, entity_type: Optional[str] = None):
        return (entity_type or record_id.entity_type, record_id.name)

    def upsert(self, record: Record) -> None:
        if record.record_id == self.fail_on:
            raise OSError("disk full")
        self.writes.append(("upsert", record.record_id))
        self.objects[self._key(record.record_id)] = record

    def delete_by_id(self, record_id: RecordID, entity_type: str) -> None:
        if record_id == self.fail_on:
            raise OSError("disk full")
        self.writes.append(("delete", record_id))
        self.objects.pop(self._key(record_id, entity_type), None)

    def save(self) -> None:
        self.save_calls += 1

    def get(self, name: str, entity_type: str = "Note") -> Optional[Record]:
        return self.objects.get((entity_type, name))


def _setup_engine(
    snapshot: Optional[ChangeSetSnapshot] = None,
    remote: Optional[FakeRemoteStore] = None,
    local: Optional[FakeLocalStore] = None,
    cursor: Optional[str] = None,
    **kwargs,
) -> tuple[SyncEngine, FakeTracker, FakeCursorStore, FakeRemoteStore, FakeLocalStore]:
    """Create a SyncEngine wired to in-memory fakes sharing one event log."""
    events: list[str] = []
    tracker = FakeTracker(snapshot, events)
    cursor_store = FakeCursorStore(cursor, events)
    remote = remote or FakeRemoteStore()
    remote.events = events
    local = local or FakeLocalStore()
    kwargs.setdefault("entity_types", ["Note"])
    engine = SyncEngine(
        tracker=tracker,
        cursor_store=cursor_store,
        remote=remote,
        local_store=local,
        **kwargs,
    )
    return engine, tracker, cursor_store, remote, local


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestPolicyConfiguration:
    """Unsupported policies are rejected when the engine is built."""

    def test_keep_both_rejected(self) -> None:
        with pytest.raises(UnsupportedPolicyError, match="keep-both"):
            _setup_engine(policy=ConflictPolicy.KEEP_BOTH)

    def test_client_tells_which_wins_requires_function(self) -> None:
        with pytest.raises(UnsupportedPolicyError):
            _setup_engine(policy=ConflictPolicy.CLIENT_TELLS_WHICH_WINS)

    def test_policy_accepts_string(self) -> None:
        engine, *_ = _setup_engine(policy="client-wins")
        assert engine.policy == ConflictPolicy.CLIENT_WINS

    def test_default_policy_is_server_wins(self) -> None:
        engine, *_ = _setup_engine()
        assert engine.policy == ConflictPolicy.SERVER_WINS
        assert engine.phase == SyncPhase.IDLE


# ---------------------------------------------------------------------------
# Snapshot and empty push
# ---------------------------------------------------------------------------


class TestSnapshot:
    def test_snapshot_failure_aborts_before_push(self) -> None:
        engine, tracker, cursor_store, remote, _ = _setup_engine()
        tracker.snapshot_error = RuntimeError("queue unreadable")

        with pytest.raises(LocalSnapshotError) as exc_info:
            engine.run()

        assert exc_info.value.phase == SyncPhase.SNAPSHOTTING
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert remote.push_calls == []
        assert remote.fetch_changes_calls == []
        assert cursor_store.commit_calls == 0

    def test_snapshot_taken_once(self) -> None:
        engine, tracker, *_ = _setup_engine(
            snapshot=ChangeSetSnapshot(upserts=(_rec("a", title="x"),))
        )
        engine.run()
        assert tracker.snapshot_calls == 1

    def test_empty_snapshot_skips_push_and_pulls(self) -> None:
        engine, tracker, cursor_store, remote, _ = _setup_engine()

        report = engine.run()

        assert remote.push_calls == []
        assert remote.fetch_changes_calls == [None]
        assert cursor_store.committed == "c1"
        assert tracker.clear_calls == 1
        assert report.pushed_upserts == 0
        assert report.pushed_deletes == 0


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


class TestPush:
    def test_push_sends_upserts_and_deletes_in_one_batch(self) -> None:
        snapshot = ChangeSetSnapshot(
            upserts=(_rec("a", title="A"), _rec("b", title="B")),
            deleted_ids=(_rid("gone"),),
        )
        engine, _, _, remote, _ = _setup_engine(snapshot=snapshot)

        report = engine.run()

        assert len(remote.push_calls) == 1
        upserts, deletes = remote.push_calls[0]
        assert [r.record_id.name for r in upserts] == ["a", "b"]
        assert deletes == [_rid("gone")]
        assert report.pushed_upserts == 2
        assert report.pushed_deletes == 1

    def test_accepted_version_tags_written_back_locally(self) -> None:
        snapshot = ChangeSetSnapshot(upserts=(_rec("a", title="A"),))
        engine, _, _, remote, local = _setup_engine(snapshot=snapshot)

        engine.run()

        stored = local.get("a")
        assert stored is not None
        assert stored.version_tag == remote.records[_rid("a")].version_tag
        assert stored.fields == {"title": "A"}

    def test_rejected_item_aborts_run(self) -> None:
        snapshot = ChangeSetSnapshot(upserts=(_rec("a"), _rec("b")))
        remote = FakeRemoteStore()
        remote.reject[_rid("b")] = "quota exceeded"
        engine, tracker, cursor_store, remote, _ = _setup_engine(
            snapshot=snapshot, remote=remote
        )

        with pytest.raises(PushRejectedError) as exc_info:
            engine.run()

        assert "quota exceeded" in str(exc_info.value)
        assert exc_info.value.reasons == {"Note/b": "quota exceeded"}
        assert len(remote.push_calls) == 1
        assert remote.fetch_changes_calls == []
        assert cursor_store.commit_calls == 0
        assert tracker.clear_calls == 0

    def test_transport_failure_is_push_rejected(self) -> None:
        snapshot = ChangeSetSnapshot(upserts=(_rec("a"),))
        remote = FakeRemoteStore()
        remote.push_error = TimeoutError("timed out")
        engine, *_ = _setup_engine(snapshot=snapshot, remote=remote)

        with pytest.raises(PushRejectedError) as exc_info:
            engine.run()

        assert isinstance(exc_info.value.__cause__, TimeoutError)
        assert len(remote.push_calls) == 1

    def test_missing_outcome_is_rejection(self) -> None:
        snapshot = ChangeSetSnapshot(upserts=(_rec("a"),))
        remote = FakeRemoteStore()
        remote.drop_outcomes.add(_rid("a"))
        engine, *_ = _setup_engine(snapshot=snapshot, remote=remote)

        with pytest.raises(PushRejectedError, match="no outcome reported"):
            engine.run()

    def test_conflict_on_delete_is_rejection(self) -> None:
        snapshot = ChangeSetSnapshot(deleted_ids=(_rid("gone"),))
        remote = FakeRemoteStore()
        remote.force_conflicts[0] = {_rid("gone")}
        engine, *_ = _setup_engine(snapshot=snapshot, remote=remote)

        with pytest.raises(PushRejectedError):
            engine.run()
        assert remote.fetch_current_calls == []


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class TestConflictRoundTrip:
    def _conflicting_setup(self, **kwargs):
        server = _rec("a", "t1", title="server", color="red")
        remote = FakeRemoteStore(records={server.record_id: server})
        snapshot = ChangeSetSnapshot(
            upserts=(_rec("a", "t0", title="client"),)
        )
        return _setup_engine(snapshot=snapshot, remote=remote, **kwargs)

    def test_single_conflict_fetches_once_and_repushes_once(self) -> None:
        engine, _, _, remote, _ = self._conflicting_setup()

        report = engine.run()

        assert remote.fetch_current_calls == [[_rid("a")]]
        assert len(remote.push_calls) == 2
        assert report.conflicts_resolved == 1
        assert report.pushed_upserts == 1

    def test_server_wins_keeps_server_fields(self) -> None:
        engine, _, _, remote, local = self._conflicting_setup(
            policy=ConflictPolicy.SERVER_WINS
        )

        engine.run()

        repushed = remote.push_calls[1][0][0]
        assert repushed.fields == {"title": "server", "color": "red"}
        assert repushed.version_tag == "t1"
        assert local.get("a").fields == {"title": "server", "color": "red"}

    def test_client_wins_keeps_client_fields_with_server_tag(self) -> None:
        engine, _, _, remote, local = self._conflicting_setup(
            policy=ConflictPolicy.CLIENT_WINS
        )

        engine.run()

        repushed = remote.push_calls[1][0][0]
        assert repushed.fields["title"] == "client"
        assert repushed.version_tag == "t1"
        assert remote.records[_rid("a")].fields["title"] == "client"
        assert local.get("a").fields["title"] == "client"

    def test_client_tells_which_wins_uses_function(self) -> None:
        calls = []

        def pick(client: Record, server: Record) -> Record:
            calls.append((client, server))
            return server.with_fields({"title": "merged by caller"})

        engine, _, _, remote, _ = self._conflicting_setup(
            policy=ConflictPolicy.CLIENT_TELLS_WHICH_WINS,
            resolution_fn=pick,
        )

        engine.run()

        assert len(calls) == 1
        assert calls[0][0].fields == {"title": "client"}
        assert calls[0][1].version_tag == "t1"
        assert remote.records[_rid("a")].fields == {
            "title": "merged by caller"
        }

    def test_resolution_function_returning_other_record_fails(self) -> None:
        engine, _, cursor_store, remote, _ = self._conflicting_setup(
            policy=ConflictPolicy.CLIENT_TELLS_WHICH_WINS,
            resolution_fn=lambda client, server: _rec("other", "t1"),
        )

        with pytest.raises(UnresolvedConflictError):
            engine.run()
        assert len(remote.push_calls) == 1
        assert cursor_store.commit_calls == 0

    def test_resolution_function_returning_nameless_record_fails(
        self,
    ) -> None:
        nameless = Record(record_id=_rid(""), fields={"title": "x"})
        engine, tracker, _, remote, _ = self._conflicting_setup(
            policy=ConflictPolicy.CLIENT_TELLS_WHICH_WINS,
            resolution_fn=lambda client, server: nameless,
        )

        with pytest.raises(UnresolvedConflictError) as exc_info:
            engine.run()
        assert exc_info.value.phase == SyncPhase.CONFLICT_RESOLVING
        assert len(remote.push_calls) == 1
        assert tracker.clear_calls == 0

    def test_second_conflict_is_fatal_without_third_attempt(self) -> None:
        engine, tracker, cursor_store, remote, _ = self._conflicting_setup()
        remote.force_conflicts[1] = {_rid("a")}

        with pytest.raises(UnresolvedConflictError) as exc_info:
            engine.run()

        assert len(remote.push_calls) == 2
        assert len(remote.fetch_current_calls) == 1
        assert exc_info.value.record_ids == ["Note/a"]
        assert remote.fetch_changes_calls == []
        assert cursor_store.commit_calls == 0
        assert tracker.clear_calls == 0

    def test_server_record_missing_is_unresolved(self) -> None:
        engine, _, _, remote, _ = self._conflicting_setup()
        remote.records.clear()
        remote.force_conflicts[0] = {_rid("a")}

        with pytest.raises(UnresolvedConflictError, match="did not return"):
            engine.run()

    def test_fetch_current_failure_is_unresolved(self) -> None:
        engine, _, _, remote, _ = self._conflicting_setup()
        remote.fetch_current_error = ConnectionError("reset")

        with pytest.raises(UnresolvedConflictError) as exc_info:
            engine.run()
        assert isinstance(exc_info.value.cause, ConnectionError)

    def test_repush_merges_resolved_into_original_set(self) -> None:
        server = _rec("a", "t1", title="server")
        remote = FakeRemoteStore(records={server.record_id: server})
        snapshot = ChangeSetSnapshot(
            upserts=(_rec("a", "t0", title="client"), _rec("b", title="B")),
            deleted_ids=(_rid("gone"),),
        )
        engine, _, _, remote, _ = _setup_engine(
            snapshot=snapshot, remote=remote
        )

        engine.run()

        upserts, deletes = remote.push_calls[1]
        by_name = {r.record_id.name: r for r in upserts}
        assert set(by_name) == {"a", "b"}
        assert by_name["a"].fields == {"title": "server"}
        # "b" was accepted in round one; it is re-pushed with its new tag.
        assert by_name["b"].version_tag is not None
        assert deletes == [_rid("gone")]


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


class TestPullPagination:
    def test_pages_combined_and_single_commit(self) -> None:
        p1 = ChangePage(
            upserted=(_rec("x", "s1", v=1),),
            deleted=(_rid("old"),),
            next_cursor="c1",
            has_more=True,
        )
        p2 = ChangePage(
            upserted=(_rec("y", "s2", v=2),),
            next_cursor="c2",
            has_more=False,
        )
        remote = FakeRemoteStore(pages=[p1, p2])
        local = FakeLocalStore([_rec("old", "s0")])
        engine, _, cursor_store, remote, local = _setup_engine(
            remote=remote, local=local, cursor="c0"
        )

        report = engine.run()

        assert remote.fetch_changes_calls == ["c0", "c1"]
        assert local.writes == [
            ("upsert", _rid("x")),
            ("upsert", _rid("y")),
            ("delete", _rid("old")),
        ]
        assert local.get("old") is None
        assert cursor_store.commit_calls == 1
        assert cursor_store.committed == "c2"
        assert report.pages_fetched == 2
        assert report.pulled_upserts == 2
        assert report.pulled_deletes == 1
        assert report.cursor == "c2"

    def test_later_page_overrides_earlier_version(self) -> None:
        p1 = ChangePage(
            upserted=(_rec("x", "s1", v=1),), next_cursor="c1", has_more=True
        )
        p2 = ChangePage(upserted=(_rec("x", "s2", v=2),), next_cursor="c2")
        engine, _, _, _, local = _setup_engine(
            remote=FakeRemoteStore(pages=[p1, p2])
        )

        engine.run()

        assert local.get("x").fields == {"v": 2}

    def test_failure_on_second_page_keeps_cursor(self) -> None:
        p1 = ChangePage(
            upserted=(_rec("x", "s1"),), next_cursor="c1", has_more=True
        )
        remote = FakeRemoteStore(pages=[p1])
        remote.fail_on_page = 2
        engine, tracker, cursor_store, remote, local = _setup_engine(
            remote=remote, cursor="c0"
        )

        with pytest.raises(PullError) as exc_info:
            engine.run()

        assert exc_info.value.phase == SyncPhase.PULLING
        assert remote.fetch_changes_calls == ["c0", "c1"]
        assert cursor_store.committed == "c0"
        assert cursor_store.commit_calls == 0
        assert tracker.clear_calls == 0
        # Pages are applied only once the whole pull succeeded.
        assert local.writes == []

    def test_max_pull_pages_bounds_the_loop(self) -> None:
        pages = [
            ChangePage(next_cursor=f"c{i}", has_more=True) for i in range(5)
        ]
        engine, _, cursor_store, remote, _ = _setup_engine(
            remote=FakeRemoteStore(pages=pages), max_pull_pages=3
        )

        with pytest.raises(PullError, match="max_pull_pages=3"):
            engine.run()
        assert len(remote.fetch_changes_calls) == 3
        assert cursor_store.commit_calls == 0

    def test_page_without_cursor_keeps_previous(self) -> None:
        engine, _, cursor_store, _, _ = _setup_engine(
            remote=FakeRemoteStore(pages=[ChangePage(next_cursor=None)]),
            cursor="c9",
        )
        engine.run()
        assert cursor_store.committed == "c9"


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


class TestApply:
    def test_each_write_is_saved(self) -> None:
        page = ChangePage(
            upserted=(_rec("x", "s1"), _rec("y", "s1")),
            deleted=(_rid("z"),),
            next_cursor="c1",
        )
        engine, _, _, _, local = _setup_engine(
            remote=FakeRemoteStore(pages=[page])
        )
        engine.run()
        assert local.save_calls == 3

    def test_apply_failure_leaves_prefix_and_cursor(self) -> None:
        page = ChangePage(
            upserted=(_rec("x", "s1"), _rec("y", "s1"), _rec("z", "s1")),
            next_cursor="c1",
        )
        local = FakeLocalStore()
        local.fail_on = _rid("y")
        engine, tracker, cursor_store, _, local = _setup_engine(
            remote=FakeRemoteStore(pages=[page]), local=local, cursor="c0"
        )

        with pytest.raises(ApplyError) as exc_info:
            engine.run()

        assert exc_info.value.phase == SyncPhase.APPLYING
        assert local.get("x") is not None
        assert local.get("z") is None
        assert cursor_store.committed == "c0"
        assert tracker.clear_calls == 0

    def test_untyped_delete_applies_to_every_entity_type(self) -> None:
        page = ChangePage(deleted=(_rid("shared", None),), next_cursor="c1")
        local = FakeLocalStore(
            [
                Record(record_id=_rid("shared", "Note")),
                Record(record_id=_rid("shared", "Folder")),
                Record(record_id=_rid("kept", "Folder")),
            ]
        )
        engine, _, _, _, local = _setup_engine(
            remote=FakeRemoteStore(pages=[page]),
            local=local,
            entity_types=["Note", "Folder"],
        )

        report = engine.run()

        assert local.get("shared", "Note") is None
        assert local.get("shared", "Folder") is None
        assert local.get("kept", "Folder") is not None
        assert report.pulled_deletes == 1

    def test_untyped_delete_without_entity_types_fails(self) -> None:
        page = ChangePage(deleted=(_rid("shared", None),), next_cursor="c1")
        engine, *_ = _setup_engine(
            remote=FakeRemoteStore(pages=[page]), entity_types=[]
        )
        with pytest.raises(ApplyError, match="no entity types"):
            engine.run()

    def test_reapplying_same_page_is_idempotent(self) -> None:
        page = ChangePage(
            upserted=(_rec("x", "s1", v=1),),
            deleted=(_rid("gone"),),
            next_cursor="c1",
        )
        local = FakeLocalStore([_rec("gone", "s0")])

        # First run crashes at cursor commit, so the page is fetched again.
        first, _, cursor_store, _, local = _setup_engine(
            remote=FakeRemoteStore(pages=[page]), local=local
        )
        cursor_store.commit_error = OSError("fsync failed")
        with pytest.raises(CommitError):
            first.run()
        after_first = dict(local.objects)

        second, _, cursor_store, _, local = _setup_engine(
            remote=FakeRemoteStore(pages=[page]), local=local
        )
        second.run()

        assert local.objects == after_first
        assert cursor_store.committed == "c1"


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


class TestOrdering:
    def test_phase_order(self) -> None:
        engine, tracker, *_ = _setup_engine(
            snapshot=ChangeSetSnapshot(upserts=(_rec("a"),))
        )
        engine.run()
        assert tracker.events == [
            "snapshot",
            "push",
            "fetch_changes",
            "stage",
            "commit",
            "clear",
        ]

    def test_pulled_value_does_not_overwrite_pushed_record(self) -> None:
        stale = _rec("a", "s0", title="stale server value")
        page = ChangePage(
            upserted=(stale, _rec("b", "s1", title="B")),
            deleted=(_rid("a"),),
            next_cursor="c1",
        )
        snapshot = ChangeSetSnapshot(upserts=(_rec("a", title="local"),))
        engine, _, _, remote, local = _setup_engine(
            snapshot=snapshot, remote=FakeRemoteStore(pages=[page])
        )

        report = engine.run()

        assert local.get("a").fields == {"title": "local"}
        assert local.get("b").fields == {"title": "B"}
        assert report.shielded == 2
        assert report.pulled_upserts == 1
        assert report.pulled_deletes == 0

    def test_untyped_local_delete_shields_typed_pulled_upsert(self) -> None:
        page = ChangePage(
            upserted=(_rec("a", "s9", v="server"), _rec("b", "s9", v="b")),
            next_cursor="c1",
        )
        snapshot = ChangeSetSnapshot(deleted_ids=(_rid("a", None),))
        engine, _, _, remote, local = _setup_engine(
            snapshot=snapshot, remote=FakeRemoteStore(pages=[page])
        )

        report = engine.run()

        assert remote.push_calls[0][1] == [_rid("a", None)]
        assert local.get("a") is None
        assert local.get("b").fields == {"v": "b"}
        assert report.shielded == 1
        assert report.pulled_upserts == 1


# ---------------------------------------------------------------------------
# Finalize
# ---------------------------------------------------------------------------


class TestFinalize:
    def test_commit_failure_keeps_change_queue(self) -> None:
        engine, tracker, cursor_store, *_ = _setup_engine(cursor="c0")
        cursor_store.commit_error = OSError("read-only")

        with pytest.raises(CommitError) as exc_info:
            engine.run()

        assert exc_info.value.phase == SyncPhase.COMMITTING
        assert cursor_store.committed == "c0"
        assert tracker.clear_calls == 0

    def test_clear_failure_after_commit(self) -> None:
        engine, tracker, cursor_store, *_ = _setup_engine()
        tracker.clear_error = RuntimeError("locked")

        with pytest.raises(ClearError):
            engine.run()
        assert cursor_store.committed == "c1"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_success_reaches_done(self) -> None:
        engine, *_ = _setup_engine()
        report = engine.run()
        assert engine.phase == SyncPhase.DONE
        assert engine.failure is None
        assert report.completed_at is not None

    def test_failure_reaches_failed(self) -> None:
        engine, tracker, *_ = _setup_engine()
        tracker.snapshot_error = RuntimeError("boom")
        with pytest.raises(SyncError) as exc_info:
            engine.run()
        assert engine.phase == SyncPhase.FAILED
        assert engine.failure is exc_info.value

    def test_run_only_once(self) -> None:
        engine, *_ = _setup_engine()
        engine.run()
        with pytest.raises(RuntimeError, match="only be called once"):
            engine.run()

    def test_completion_called_with_none_on_success(self) -> None:
        seen = []
        engine, *_ = _setup_engine(completion=seen.append)
        engine.run()
        assert seen == [None]

    def test_completion_called_with_error_on_failure(self) -> None:
        seen = []
        engine, tracker, *_ = _setup_engine(completion=seen.append)
        tracker.snapshot_error = RuntimeError("boom")
        with pytest.raises(LocalSnapshotError):
            engine.run()
        assert len(seen) == 1
        assert isinstance(seen[0], LocalSnapshotError)

    def test_completion_error_does_not_mask_result(self) -> None:
        def broken(error):
            raise ValueError("callback bug")

        engine, *_ = _setup_engine(completion=broken)
        report = engine.run()
        assert report.cursor == "c1"
