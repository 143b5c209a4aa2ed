"""Tests for writing merge results to the local stores."""

from __future__ import annotations

from dataclasses import replace

from profilesync.sync.applier import SyncDataApplier
from profilesync.sync.domain import MergeEngine
from profilesync.sync.types import BaseSnapshot
from tests.factories import (
    make_connection,
    make_host_key,
    make_key,
    make_package,
    make_stores,
    make_theme,
)


class TestApplyMergeResult:
    """Tests for apply_merge_result."""

    def test_applies_added_updated_and_deleted(self) -> None:
        kept = make_connection("kept", modified_at=100)
        gone = make_connection("gone", modified_at=100)
        stores = make_stores(connections=(kept, gone))
        # "gone" was dropped by both devices since the base
        local = make_package("device-a", connections=[kept])
        remote = make_package(
            "device-b",
            connections=[replace(kept, port=2222, modified_at=200), make_connection("new")],
        )
        base = BaseSnapshot(connections={"kept": kept, "gone": gone})
        result = MergeEngine().merge_packages(base, local, remote)

        outcome = SyncDataApplier(stores).apply_merge_result(result)

        assert outcome.errors == []
        assert outcome.applied_count == 3
        assert sorted(c.id for c in stores.connections.get_all()) == ["kept", "new"]
        assert stores.connections.get("kept").port == 2222

    def test_apply_is_idempotent(self) -> None:
        stores = make_stores()
        remote = make_package(
            connections=[make_connection()],
            keys=[make_key()],
            themes=[make_theme()],
            host_keys=[make_host_key()],
            preferences={"ui": {"maxTabs": 4}},
        )
        result = MergeEngine().merge_packages(None, make_package("device-a"), remote)
        applier = SyncDataApplier(stores)

        applier.apply_merge_result(result)
        snapshot = (
            stores.connections.get_all(),
            stores.keys.get_all(),
            stores.themes.get_all(),
            stores.host_keys.get_all(),
            stores.preferences.get_all(),
        )
        applier.apply_merge_result(result)

        assert snapshot == (
            stores.connections.get_all(),
            stores.keys.get_all(),
            stores.themes.get_all(),
            stores.host_keys.get_all(),
            stores.preferences.get_all(),
        )

    def test_one_failing_write_does_not_stop_others(self) -> None:
        stores = make_stores()
        stores.connections.fail_on.add("c1")  # type: ignore[attr-defined]
        remote = make_package(connections=[make_connection("c1"), make_connection("c2")])
        result = MergeEngine().merge_packages(None, make_package("device-a"), remote)

        outcome = SyncDataApplier(stores).apply_merge_result(result)

        assert outcome.applied_count == 1
        assert len(outcome.errors) == 1
        assert [c.id for c in stores.connections.get_all()] == ["c2"]

    def test_explicit_preferences_override_merged(self) -> None:
        stores = make_stores()
        result = MergeEngine().merge_packages(
            None,
            make_package("device-a", preferences={"ui": {"maxTabs": 6}}),
            make_package(preferences={"ui": {"maxTabs": 4}}),
        )

        SyncDataApplier(stores).apply_merge_result(result, {"ui": {"maxTabs": 6}})

        assert stores.preferences.get_all() == {"ui": {"maxTabs": 6}}

    def test_skipped_preferences_are_not_written(self) -> None:
        stores = make_stores()
        result = MergeEngine().merge_packages(
            None,
            make_package("device-a"),
            make_package(preferences={"ui": {"maxTabs": 4}}),
            include_preferences=False,
        )

        SyncDataApplier(stores).apply_merge_result(result, {"ui": {"maxTabs": 4}})

        assert stores.preferences.get_all() == {}

    def test_unknown_and_invalid_preferences(self) -> None:
        stores = make_stores()
        result = MergeEngine().merge_packages(
            None,
            make_package("device-a"),
            make_package(
                preferences={
                    "ui": {"maxTabs": "lots", "confirmTabClose": "false"},
                    "plugins": {"vim": True},
                }
            ),
        )

        outcome = SyncDataApplier(stores).apply_merge_result(result)

        assert stores.preferences.get_all() == {"ui": {"confirmTabClose": False}}
        assert len(outcome.errors) == 1


class TestApplyAll:
    """Tests for apply_all."""

    def test_writes_whole_package(self) -> None:
        stores = make_stores(connections=(make_connection("c1", name="Old"),))
        package = make_package(
            connections=[make_connection("c1", name="New"), make_connection("c2")],
            keys=[make_key()],
            preferences={"terminal": {"fontSize": "16"}},
        )

        outcome = SyncDataApplier(stores).apply_all(package)

        assert outcome.applied_count == 4
        assert stores.connections.get("c1").name == "New"
        assert len(stores.keys.get_all()) == 1
        assert stores.preferences.get_all() == {"terminal": {"fontSize": 16.0}}
