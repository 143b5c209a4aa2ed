"""Tests for the persistent sync state."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from profilesync.state import CONFLICT_PENDING, CONFLICT_RESOLVED, SyncStateTracker
from profilesync.sync.domain import MergeEngine
from profilesync.sync.types import BaseSnapshot, SyncDataPackage, SyncMetadata, entity_hash
from tests.factories import make_connection, make_key, make_package

PEER = "device-b"


class TestRecords:
    """Tests for per-entity records."""

    def test_record_synced(self, state: SyncStateTracker) -> None:
        connection = make_connection(sync_version=3)
        state.record_synced(PEER, connection, timestamp=500)

        record = state.get_record(PEER, "connection", "c1")
        assert record is not None
        assert record.peer_id == PEER
        assert record.last_synced_at == 500
        assert record.sync_version == 3
        assert record.device_id == "device-a"
        assert record.sync_hash == entity_hash(connection)
        assert record.conflict_status is None
        assert record.entity() == connection

    def test_base_snapshot(self, state: SyncStateTracker) -> None:
        state.record_synced(PEER, make_connection())
        state.record_synced(PEER, make_key())

        base = state.base_snapshot(PEER)

        assert base.connections == {"c1": make_connection()}
        assert base.keys == {"k1": make_key()}
        assert base.preferences is None

    def test_mark_pending_keeps_snapshot(self, state: SyncStateTracker) -> None:
        base = make_connection(name="Prod", modified_at=50)
        state.record_synced(PEER, base)
        conflict = MergeEngine().merge_connections(
            {"c1": base},
            [replace(base, name="L", modified_at=100)],
            [replace(base, name="R", modified_at=90)],
        ).conflicts[0]

        state.mark_pending(PEER, conflict)

        record = state.get_record(PEER, "connection", "c1")
        assert record.conflict_status == CONFLICT_PENDING
        assert record.entity() == base
        assert state.base_snapshot(PEER).connections == {"c1": base}

    def test_mark_pending_without_record(self, state: SyncStateTracker) -> None:
        conflict = MergeEngine().merge_keys(
            {}, [make_key(fingerprint="AA")], [make_key(fingerprint="BB")]
        ).conflicts[0]

        state.mark_pending(PEER, conflict)

        assert [r.entity_id for r in state.pending_conflicts()] == ["k1"]
        assert state.base_snapshot(PEER).keys == {}

    def test_mark_resolved(self, state: SyncStateTracker) -> None:
        remote = make_connection(name="R")
        state.mark_resolved(PEER, "connection", "c1", remote, timestamp=10)

        record = state.get_record(PEER, "connection", "c1")
        assert record.conflict_status == CONFLICT_RESOLVED
        assert record.entity() == remote
        assert state.pending_conflicts() == []

    def test_mark_resolved_without_remote_forgets(self, state: SyncStateTracker) -> None:
        state.record_synced(PEER, make_connection())
        state.mark_resolved(PEER, "connection", "c1", None)
        assert state.get_record(PEER, "connection", "c1") is None

    def test_clear_keeps_device_state(self, state: SyncStateTracker) -> None:
        state.record_synced(PEER, make_connection())
        state.set_base_preferences(PEER, {"ui": {"maxTabs": 4}})
        state.set_state("device_id", "abc")

        state.clear()

        assert state.list_records() == []
        assert state.get_base_preferences(PEER) is None
        assert state.get_state("device_id") == "abc"

    def test_survives_reopen(self, tmp_path: Path) -> None:
        first = SyncStateTracker(tmp_path / "state.db")
        first.record_synced(PEER, make_connection())
        first.close()

        second = SyncStateTracker(tmp_path / "state.db")
        try:
            assert second.base_snapshot(PEER).connections == {"c1": make_connection()}
        finally:
            second.close()


class TestPeers:
    """Tests for keeping one base per peer."""

    def test_bases_are_kept_apart(self, state: SyncStateTracker) -> None:
        state.record_synced("device-b", make_connection(name="seen by b"))
        state.record_synced("device-c", make_connection(name="seen by c"))
        state.set_base_preferences("device-b", {"ui": {"maxTabs": 4}})

        assert state.base_snapshot("device-b").connections["c1"].name == "seen by b"
        assert state.base_snapshot("device-c").connections["c1"].name == "seen by c"
        assert state.base_snapshot("device-c").preferences is None
        assert state.base_snapshot("device-d").connections == {}

    def test_remove_only_touches_one_peer(self, state: SyncStateTracker) -> None:
        state.record_synced("device-b", make_connection())
        state.record_synced("device-c", make_connection())

        state.remove("device-b", "connection", "c1")

        assert state.get_record("device-b", "connection", "c1") is None
        assert state.get_record("device-c", "connection", "c1") is not None

    def test_pending_conflicts_span_peers(self, state: SyncStateTracker) -> None:
        conflict = MergeEngine().merge_keys(
            {}, [make_key(fingerprint="AA")], [make_key(fingerprint="BB")]
        ).conflicts[0]
        state.mark_pending("device-b", conflict)
        state.mark_pending("device-c", conflict)

        assert [r.peer_id for r in state.pending_conflicts()] == ["device-b", "device-c"]
        assert [r.peer_id for r in state.pending_conflicts("device-c")] == ["device-c"]

    def test_list_peers(self, state: SyncStateTracker) -> None:
        state.record_synced("device-c", make_connection())
        state.set_base_preferences("device-b", {})
        assert state.list_peers() == ["device-b", "device-c"]

    def test_clear_one_peer(self, state: SyncStateTracker) -> None:
        state.record_synced("device-b", make_connection())
        state.record_synced("device-c", make_connection())
        state.set_base_preferences("device-b", {"ui": {"maxTabs": 4}})

        state.clear("device-b")

        assert [r.peer_id for r in state.list_records()] == ["device-c"]
        assert state.get_base_preferences("device-b") is None


class TestUpdateAfterMerge:
    """Tests for update_after_merge."""

    def test_records_remote_values_and_forgets_deleted(self, state: SyncStateTracker) -> None:
        kept = make_connection("kept", modified_at=100)
        gone = make_connection("gone", modified_at=100)
        state.record_synced(PEER, kept)
        state.record_synced(PEER, gone)
        remote_kept = replace(kept, sync_device_id="device-b")
        local = make_package("device-a", connections=[kept])
        remote = make_package(connections=[remote_kept], preferences={"ui": {"maxTabs": 4}})
        result = MergeEngine().merge_packages(state.base_snapshot(PEER), local, remote)

        state.update_after_merge(PEER, result, remote)

        assert state.base_snapshot(PEER).connections == {"kept": remote_kept}
        assert state.get_base_preferences(PEER) == {"ui": {"maxTabs": 4}}

    def test_other_peers_are_untouched(self, state: SyncStateTracker) -> None:
        local = make_package("device-a", connections=[make_connection()])
        remote = make_package(connections=[make_connection()])
        result = MergeEngine().merge_packages(None, local, remote)

        state.update_after_merge(PEER, result, remote)

        assert state.base_snapshot(PEER).connections == {"c1": make_connection()}
        assert state.base_snapshot("device-c").connections == {}

    def test_local_only_entities_get_no_base(self, state: SyncStateTracker) -> None:
        local = make_package("device-a", connections=[make_connection("mine")])
        remote = make_package()
        result = MergeEngine().merge_packages(None, local, remote)

        state.update_after_merge(PEER, result, remote)

        assert state.base_snapshot(PEER).connections == {}

    def test_skipped_types_keep_their_base(self, state: SyncStateTracker) -> None:
        base = make_connection()
        state.record_synced(PEER, base)
        state.set_base_preferences(PEER, {"ui": {"maxTabs": 10}})
        local = make_package("device-a", connections=[base])
        remote = SyncDataPackage(
            metadata=SyncMetadata(device_id=PEER, collected_types=("key", "theme", "host_key"))
        )
        result = MergeEngine().merge_packages(state.base_snapshot(PEER), local, remote)

        state.update_after_merge(PEER, result, remote)

        assert state.base_snapshot(PEER).connections == {"c1": base}
        assert state.get_base_preferences(PEER) == {"ui": {"maxTabs": 10}}

    def test_pending_conflicts_keep_old_base(self, state: SyncStateTracker) -> None:
        base = make_connection(name="Prod", modified_at=50)
        state.record_synced(PEER, base)
        state.set_base_preferences(PEER, {"ui": {"maxTabs": 10}})
        local = make_package(
            "device-a",
            connections=[replace(base, name="L", modified_at=100)],
            preferences={"ui": {"maxTabs": 6}},
        )
        remote = make_package(
            connections=[replace(base, name="R", modified_at=90)],
            preferences={"ui": {"maxTabs": 4}},
        )
        result = MergeEngine().merge_packages(state.base_snapshot(PEER), local, remote)

        state.update_after_merge(PEER, result, remote, pending=result.conflicts)

        assert state.base_snapshot(PEER).connections == {"c1": base}
        assert state.get_record(PEER, "connection", "c1").conflict_status == CONFLICT_PENDING
        assert state.get_base_preferences(PEER) == {"ui": {"maxTabs": 10}}

    def test_resolved_conflicts_are_left_to_resolver(self, state: SyncStateTracker) -> None:
        base = make_connection(name="Prod", modified_at=50)
        state.record_synced(PEER, base)
        local = make_package("device-a", connections=[replace(base, name="L", modified_at=100)])
        remote = make_package(connections=[replace(base, name="R", modified_at=90)])
        result = MergeEngine().merge_packages(BaseSnapshot(connections={"c1": base}), local, remote)

        state.update_after_merge(PEER, result, remote, pending=[])

        assert state.get_record(PEER, "connection", "c1").entity() == base
