"""Tests for conflict resolution."""

from __future__ import annotations

from dataclasses import replace

import pytest

from profilesync.state import CONFLICT_PENDING, CONFLICT_RESOLVED, SyncStateTracker
from profilesync.store.base import EntityStores
from profilesync.sync.domain import MergeEngine
from profilesync.sync.resolver import KEEP_BOTH_SUFFIX, ConflictResolver, duplicate
from profilesync.sync.types import (
    Conflict,
    ConflictResolution,
    ConflictResolutionOption,
    ConflictType,
)
from tests.factories import make_connection, make_host_key, make_key, make_stores

Option = ConflictResolutionOption


def rename_conflict(local_time: int = 100, remote_time: int = 90) -> Conflict:
    base = make_connection("a", name="Prod", modified_at=50)
    local = replace(base, name="Prod-1", modified_at=local_time)
    remote = replace(base, name="Prod-2", modified_at=remote_time)
    return MergeEngine().merge_connections({"a": base}, [local], [remote]).conflicts[0]


class TestAutoResolve:
    """Tests for the timestamp policy."""

    def test_newer_local_keeps_local(self) -> None:
        resolver = ConflictResolver(make_stores())
        resolutions = resolver.auto_resolve([rename_conflict(100, 90)])
        assert [r.resolution for r in resolutions] == [Option.KEEP_LOCAL]

    def test_newer_remote_keeps_remote(self) -> None:
        resolver = ConflictResolver(make_stores())
        resolutions = resolver.auto_resolve([rename_conflict(90, 100)])
        assert [r.resolution for r in resolutions] == [Option.KEEP_REMOTE]

    def test_non_auto_resolvable_conflicts_are_left(self) -> None:
        local = make_key(fingerprint="AA", modified_at=100)
        remote = make_key(fingerprint="BB", modified_at=500)
        conflict = MergeEngine().merge_keys({}, [local], [remote]).conflicts[0]
        resolver = ConflictResolver(make_stores())

        assert resolver.auto_resolve([conflict]) == []
        assert resolver.requires_manual_resolution([conflict]) == [conflict]

    def test_requires_manual_resolution_excludes_decided(self) -> None:
        first, second = rename_conflict(), rename_conflict(90, 100)
        decided = [ConflictResolution(first, Option.KEEP_LOCAL)]

        remaining = ConflictResolver.requires_manual_resolution([first, second], decided)

        assert remaining == [second]


class TestApplyResolutions:
    """Tests for apply_resolutions."""

    def test_keep_remote_field(self) -> None:
        conflict = rename_conflict()
        stores = make_stores(connections=(conflict.local_entity,))

        result = ConflictResolver(stores).apply_resolutions(
            [ConflictResolution(conflict, Option.KEEP_REMOTE)]
        )

        assert result.success_count == 1
        assert stores.connections.get("a").name == "Prod-2"

    def test_keep_local_field(self) -> None:
        conflict = rename_conflict(90, 100)
        stores = make_stores(connections=(conflict.local_entity,))

        ConflictResolver(stores).apply_resolutions(
            [ConflictResolution(conflict, Option.KEEP_LOCAL)]
        )

        assert stores.connections.get("a").name == "Prod-1"

    def test_keep_remote_writes_whole_remote_entity(self) -> None:
        base = make_connection("a", name="Prod", modified_at=50)
        local = replace(base, name="L", port=2222, modified_at=300)
        remote = replace(base, name="R", username="root", modified_at=200)
        conflict = MergeEngine().merge_connections({"a": base}, [local], [remote]).conflicts[0]
        stores = make_stores(connections=(local,))

        ConflictResolver(stores).apply_resolutions(
            [ConflictResolution(conflict, Option.KEEP_REMOTE)]
        )

        assert stores.connections.get("a") == remote

    def test_keep_local_writes_whole_local_entity(self) -> None:
        base = make_connection("a", name="Prod", modified_at=50)
        local = replace(base, name="L", port=2222, modified_at=100)
        remote = replace(base, name="R", username="root", modified_at=200)
        conflict = MergeEngine().merge_connections({"a": base}, [local], [remote]).conflicts[0]
        stores = make_stores(connections=(local,))

        ConflictResolver(stores).apply_resolutions(
            [ConflictResolution(conflict, Option.KEEP_LOCAL)]
        )

        assert stores.connections.get("a") == local

    def test_mixed_field_decisions_start_from_newer_side(self) -> None:
        base = make_connection("a", name="Prod", host="h0", modified_at=50)
        local = replace(base, name="L", host="h1", modified_at=100)
        remote = replace(base, name="R", host="h2", port=2222, modified_at=200)
        by_field = {
            c.field: c
            for c in MergeEngine().merge_connections({"a": base}, [local], [remote]).conflicts
        }
        stores = make_stores(connections=(local,))

        ConflictResolver(stores).apply_resolutions(
            [
                ConflictResolution(by_field["name"], Option.KEEP_LOCAL),
                ConflictResolution(by_field["host"], Option.KEEP_REMOTE),
            ]
        )

        stored = stores.connections.get("a")
        assert stored.name == "L"
        assert stored.host == "h2"
        assert stored.port == 2222

    def test_keep_both_creates_distinct_copy(self) -> None:
        conflict = rename_conflict()
        stores = make_stores(connections=(conflict.local_entity,))

        ConflictResolver(stores).apply_resolutions([ConflictResolution(conflict, Option.KEEP_BOTH)])

        rows = stores.connections.get_all()
        assert len(rows) == 2
        ids = {row.id for row in rows}
        assert len(ids) == 2
        assert "a" in ids
        copy = next(row for row in rows if row.id != "a")
        assert copy.name == "Prod-2" + KEEP_BOTH_SUFFIX
        assert stores.connections.get("a").name == "Prod-1"

    def test_deleted_modified_keep_deletion(self) -> None:
        base = make_connection("c1")
        remote = replace(base, host="new.example.com", modified_at=200)
        conflict = MergeEngine().merge_connections({"c1": base}, [], [remote]).conflicts[0]
        stores = make_stores()

        ConflictResolver(stores).apply_resolutions(
            [ConflictResolution(conflict, Option.KEEP_LOCAL)]
        )

        assert stores.connections.get_all() == []

    def test_deleted_modified_restore_remote(self) -> None:
        base = make_connection("c1")
        remote = replace(base, host="new.example.com", modified_at=200)
        conflict = MergeEngine().merge_connections({"c1": base}, [], [remote]).conflicts[0]
        stores = make_stores()

        ConflictResolver(stores).apply_resolutions(
            [ConflictResolution(conflict, Option.KEEP_REMOTE)]
        )

        assert stores.connections.get("c1") == remote

    def test_fingerprint_keep_remote_replaces_whole_entity(self) -> None:
        local = make_host_key(modified_at=100)
        remote = make_host_key(fingerprint="SHA256:new", public_key="AAAAnew", modified_at=50)
        conflict = MergeEngine().merge_host_keys({}, [local], [remote]).conflicts[0]
        stores = make_stores(host_keys=(local,))

        ConflictResolver(stores).apply_resolutions(
            [ConflictResolution(conflict, Option.KEEP_REMOTE)]
        )

        assert stores.host_keys.get(local.id) == remote

    def test_skip_leaves_store_untouched(self) -> None:
        conflict = rename_conflict()
        stores = make_stores(connections=(conflict.local_entity,))

        ConflictResolver(stores).apply_resolutions([ConflictResolution(conflict, Option.SKIP)])

        assert stores.connections.get("a") == conflict.local_entity

    def test_failure_is_isolated(self) -> None:
        failing = rename_conflict()
        other_base = make_connection("b", name="Other", modified_at=50)
        other = MergeEngine().merge_connections(
            {"b": other_base},
            [replace(other_base, name="L", modified_at=100)],
            [replace(other_base, name="R", modified_at=90)],
        ).conflicts[0]
        stores = make_stores(connections=(failing.local_entity, other.local_entity))
        stores.connections.fail_on.add("a")  # type: ignore[attr-defined]

        result = ConflictResolver(stores).apply_resolutions(
            [
                ConflictResolution(failing, Option.KEEP_REMOTE),
                ConflictResolution(other, Option.KEEP_REMOTE),
            ]
        )

        assert result.total_count == 2
        assert result.success_count == 1
        assert len(result.errors) == 1
        assert stores.connections.get("b").name == "R"

    def test_preference_keep_remote_is_coerced(self, stores: EntityStores) -> None:
        conflict = MergeEngine().merge_preferences(
            None, {"ui": {"maxTabs": 6}}, {"ui": {"maxTabs": "4"}}
        ).conflicts[0]

        ConflictResolver(stores).apply_resolutions([ConflictResolution(conflict, Option.KEEP_REMOTE)])

        assert stores.preferences.get_all() == {"ui": {"maxTabs": 4}}

    def test_preference_keep_both_is_rejected(self, stores: EntityStores) -> None:
        conflict = MergeEngine().merge_preferences(
            None, {"ui": {"maxTabs": 6}}, {"ui": {"maxTabs": 4}}
        ).conflicts[0]

        result = ConflictResolver(stores).apply_resolutions(
            [ConflictResolution(conflict, Option.KEEP_BOTH)]
        )

        assert result.success_count == 0
        assert result.has_errors


class TestStateTracking:
    """Resolutions update the sync state."""

    def test_resolution_records_remote_as_base(self, state: SyncStateTracker) -> None:
        conflict = rename_conflict()
        stores = make_stores(connections=(conflict.local_entity,))

        ConflictResolver(stores, state).apply_resolutions(
            [ConflictResolution(conflict, Option.KEEP_LOCAL)], peer_id="device-b"
        )

        record = state.get_record("device-b", "connection", "a")
        assert record is not None
        assert record.conflict_status == CONFLICT_RESOLVED
        assert record.entity() == conflict.remote_entity

    def test_skip_marks_pending(self, state: SyncStateTracker) -> None:
        conflict = rename_conflict()
        stores = make_stores(connections=(conflict.local_entity,))

        ConflictResolver(stores, state).apply_resolutions(
            [ConflictResolution(conflict, Option.SKIP)], peer_id="device-b"
        )

        assert [r.entity_id for r in state.pending_conflicts()] == ["a"]
        assert state.get_record("device-b", "connection", "a").conflict_status == CONFLICT_PENDING

    def test_deletion_accepted_forgets_the_base(self, state: SyncStateTracker) -> None:
        base = make_connection("c1")
        state.record_synced("device-b", base)
        conflict = MergeEngine().merge_connections({"c1": base}, [base], []).conflicts[0]
        stores = make_stores(connections=(base,))

        ConflictResolver(stores, state).apply_resolutions(
            [ConflictResolution(conflict, Option.KEEP_REMOTE)], peer_id="device-b"
        )

        assert stores.connections.get_all() == []
        assert state.get_record("device-b", "connection", "c1") is None

    def test_without_peer_state_is_untouched(self, state: SyncStateTracker) -> None:
        conflict = rename_conflict()
        stores = make_stores(connections=(conflict.local_entity,))

        ConflictResolver(stores, state).apply_resolutions(
            [ConflictResolution(conflict, Option.KEEP_LOCAL)]
        )

        assert state.list_records() == []


class TestHelpers:
    """Tests for duplicate and the review helpers."""

    def test_duplicate_marks_name(self) -> None:
        original = make_connection(name="Prod")
        copy = duplicate(original)
        assert copy.id != original.id
        assert copy.name == "Prod (remote)"
        assert copy.host == original.host

    def test_duplicate_host_key_keeps_fields(self) -> None:
        original = make_host_key()
        copy = duplicate(original)
        assert copy.id != original.id
        assert copy.hostname == original.hostname

    def test_count_by_type(self) -> None:
        conflicts = [
            rename_conflict(),
            Conflict("preference", "ui.maxTabs", ConflictType.PREFERENCE_DIVERGED),
        ]
        assert ConflictResolver.count_by_type(conflicts) == {"connection": 1, "preference": 1}
        assert set(ConflictResolver.conflicts_by_type(conflicts)) == {"connection", "preference"}

    @pytest.mark.parametrize(
        ("conflict_type", "expected"),
        [
            (ConflictType.FIELD_MODIFIED_BOTH_SIDES, 4),
            (ConflictType.DELETED_MODIFIED, 3),
        ],
    )
    def test_resolution_options(self, conflict_type: ConflictType, expected: int) -> None:
        conflict = Conflict("connection", "a", conflict_type)
        assert len(conflict.resolution_options()) == expected


class TestApplyToAll:
    """Tests for expand_apply_to_all."""

    def test_decision_spreads_to_same_kind(self) -> None:
        first, second = rename_conflict(), rename_conflict(90, 100)
        fingerprint = MergeEngine().merge_keys(
            {}, [make_key(fingerprint="AA")], [make_key(fingerprint="BB")]
        ).conflicts[0]
        decided = [ConflictResolution(first, Option.KEEP_REMOTE, apply_to_all=True)]

        expanded = ConflictResolver.expand_apply_to_all([first, second, fingerprint], decided)

        assert [(r.conflict, r.resolution) for r in expanded] == [
            (first, Option.KEEP_REMOTE),
            (second, Option.KEEP_REMOTE),
        ]

    def test_existing_decisions_take_precedence(self) -> None:
        first, second = rename_conflict(), rename_conflict(90, 100)
        decided = [
            ConflictResolution(first, Option.KEEP_REMOTE, apply_to_all=True),
            ConflictResolution(second, Option.KEEP_LOCAL),
        ]

        expanded = ConflictResolver.expand_apply_to_all([first, second], decided)

        assert expanded == decided

    def test_option_must_be_valid_for_target(self) -> None:
        base = make_connection("c1")
        deletion = MergeEngine().merge_connections({"c1": base}, [base], []).conflicts[0]
        conflict = Conflict(
            "connection", "x", ConflictType.DELETED_MODIFIED, local_entity=make_connection("x")
        )
        decided = [ConflictResolution(deletion, Option.KEEP_BOTH, apply_to_all=True)]

        assert ConflictResolver.expand_apply_to_all([deletion, conflict], decided) == decided

    def test_unflagged_decisions_do_not_spread(self) -> None:
        first, second = rename_conflict(), rename_conflict(90, 100)
        decided = [ConflictResolution(first, Option.KEEP_REMOTE)]

        assert ConflictResolver.expand_apply_to_all([first, second], decided) == decided
