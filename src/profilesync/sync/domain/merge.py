"""Three-way merge of sync packages.

Given a base (last agreed state), a local and a remote snapshot, the merge
engine decides the outcome of every entity:

    both sides have it     field-level merge, or conflicts when both sides
                           changed the same field to different values
    one side only          addition when there is no base, otherwise a
                           DELETED_MODIFIED conflict for the user to decide
    base only              deletion (both sides dropped it)

Fingerprint-bearing entities (stored keys, host keys) whose fingerprints
differ always produce a conflict that must be decided by the user.

The engine performs no I/O and never mutates its inputs. Ids are visited in
sorted order and ties are broken on (device id, content hash), so the same
inputs always produce the same result, and swapping local and remote
produces the same merged values.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

from profilesync.sync.preferences import PreferenceCoercionError, coerce, get_spec
from profilesync.sync.types import (
    PREFERENCE_ENTITY_TYPE,
    BaseSnapshot,
    CompleteMergeResult,
    Conflict,
    ConflictResolution,
    ConflictResolutionOption,
    ConflictType,
    ConnectionProfile,
    HostKeyEntry,
    MergeResult,
    PreferenceMergeResult,
    Preferences,
    StoredKey,
    SyncableEntity,
    SyncDataPackage,
    ThemeDefinition,
    entity_hash,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=SyncableEntity)

FINGERPRINT_DESCRIPTIONS = {
    "key": "Key fingerprint mismatch - different keys",
    "host_key": "Host key changed - potential MITM attack",
}


class MergeEngine:
    """Pure three-way merge of entities and preferences."""

    # === Entities ===

    def merge_entities(
        self,
        entity_cls: type[T],
        base: Mapping[str, T] | None,
        local: Iterable[T],
        remote: Iterable[T],
    ) -> MergeResult[T]:
        """Merge one entity type.

        Args:
            entity_cls: Entity class, which declares how fields merge.
            base: Last agreed value per id (empty or None on first sync).
            local: Entities stored on this device.
            remote: Entities read from the peer's package.

        Returns:
            MergeResult. Entities involved in a conflict appear in merged
            with their provisional value, but not in added or updated.
        """
        base_map: Mapping[str, T] = base or {}
        local_map = {entity.id: entity for entity in local}
        remote_map = {entity.id: entity for entity in remote}

        merged: list[T] = []
        conflicts: list[Conflict] = []
        deleted: list[str] = []
        added: list[T] = []
        updated: list[T] = []

        for entity_id in sorted(local_map.keys() | remote_map.keys() | base_map.keys()):
            base_entity = base_map.get(entity_id)
            local_entity = local_map.get(entity_id)
            remote_entity = remote_map.get(entity_id)

            if local_entity is not None and remote_entity is not None:
                result, found = self._merge_pair(
                    entity_cls, base_entity, local_entity, remote_entity
                )
            elif local_entity is not None:
                result, found = self._merge_one_sided(
                    entity_cls, base_entity, local_entity, deleted_remotely=True
                )
            elif remote_entity is not None:
                result, found = self._merge_one_sided(
                    entity_cls, base_entity, remote_entity, deleted_remotely=False
                )
            else:
                deleted.append(entity_id)
                continue

            merged.append(result)
            if found:
                conflicts.extend(found)
            elif base_entity is None:
                added.append(result)
            elif result != local_entity:
                updated.append(result)

        logger.debug(
            f"Merged {entity_cls.ENTITY_TYPE}: {len(merged)} merged, {len(added)} added, "
            f"{len(updated)} updated, {len(deleted)} deleted, {len(conflicts)} conflicts"
        )
        return MergeResult(
            merged=tuple(merged),
            conflicts=tuple(conflicts),
            deleted=tuple(deleted),
            added=tuple(added),
            updated=tuple(updated),
        )

    def merge_connections(
        self,
        base: Mapping[str, ConnectionProfile] | None,
        local: Iterable[ConnectionProfile],
        remote: Iterable[ConnectionProfile],
    ) -> MergeResult[ConnectionProfile]:
        return self.merge_entities(ConnectionProfile, base, local, remote)

    def merge_keys(
        self,
        base: Mapping[str, StoredKey] | None,
        local: Iterable[StoredKey],
        remote: Iterable[StoredKey],
    ) -> MergeResult[StoredKey]:
        return self.merge_entities(StoredKey, base, local, remote)

    def merge_themes(
        self,
        base: Mapping[str, ThemeDefinition] | None,
        local: Iterable[ThemeDefinition],
        remote: Iterable[ThemeDefinition],
    ) -> MergeResult[ThemeDefinition]:
        return self.merge_entities(ThemeDefinition, base, local, remote)

    def merge_host_keys(
        self,
        base: Mapping[str, HostKeyEntry] | None,
        local: Iterable[HostKeyEntry],
        remote: Iterable[HostKeyEntry],
    ) -> MergeResult[HostKeyEntry]:
        return self.merge_entities(HostKeyEntry, base, local, remote)

    def _merge_pair(
        self,
        entity_cls: type[T],
        base: T | None,
        local: T,
        remote: T,
    ) -> tuple[T, list[Conflict]]:
        """Merge an entity present on both sides."""
        if local.fingerprint_value != remote.fingerprint_value:
            return local, [self._fingerprint_conflict(base, local, remote)]

        if local == remote:
            return local, []

        newer = self.newer(local, remote)
        if base is None:
            return newer, []

        conflicting = [
            name
            for name in entity_cls.semantic_fields()
            if _changed_on_both_sides(
                getattr(base, name), getattr(local, name), getattr(remote, name)
            )
        ]
        if conflicting:
            # The newer side stands in until every field is decided
            return newer, [
                self._field_conflict(name, base, local, remote, newer) for name in conflicting
            ]
        return self._merge_fields(entity_cls, base, local, remote, newer), []

    def _merge_one_sided(
        self,
        entity_cls: type[T],
        base: T | None,
        present: T,
        deleted_remotely: bool,
    ) -> tuple[T, list[Conflict]]:
        """Merge an entity that only one side still has.

        Without a base the entity is new on that side. With a base the
        other side deleted it, and whether the deletion wins is for the
        user to decide, even if the surviving side never touched it.
        """
        if base is None:
            return present, []
        return present, [self._deleted_modified(entity_cls, base, present, deleted_remotely)]

    def _merge_fields(self, entity_cls: type[T], base: T, local: T, remote: T, newer: T) -> T:
        """Combine two versions field by field.

        Only used when no semantic field conflicts, so each semantic field
        takes the value of the side that changed it.
        """
        values: dict[str, Any] = {"id": local.id}

        for name in entity_cls.semantic_fields():
            local_value = getattr(local, name)
            if local_value == getattr(base, name):
                values[name] = getattr(remote, name)
            else:
                values[name] = local_value

        for name in entity_cls.INTEGRITY_FIELDS:
            values[name] = getattr(newer, name)

        for name in entity_cls.COUNTER_FIELDS:
            base_value = getattr(base, name)
            local_value = getattr(local, name)
            remote_value = getattr(remote, name)
            total = base_value + (local_value - base_value) + (remote_value - base_value)
            values[name] = max(total, local_value, remote_value)

        for name in entity_cls.MAX_FIELDS:
            values[name] = max(getattr(local, name), getattr(remote, name))

        for name in entity_cls.MIN_FIELDS:
            # 0 means unknown
            known = [v for v in (getattr(local, name), getattr(remote, name)) if v]
            values[name] = min(known, default=0)

        values["modified_at"] = max(local.modified_at, remote.modified_at)
        values["sync_version"] = max(local.sync_version, remote.sync_version)
        values["last_synced_at"] = max(local.last_synced_at, remote.last_synced_at)
        values["sync_device_id"] = newer.sync_device_id
        return entity_cls(**values)

    @staticmethod
    def newer(local: T, remote: T) -> T:
        """Pick the side with the greater modified_at.

        Ties go to the lexicographically smaller device id, then to the
        smaller content hash, so both replicas make the same choice.
        """
        return min(
            (local, remote),
            key=lambda e: (-e.modified_at, e.sync_device_id, entity_hash(e)),
        )

    # === Conflicts ===

    def _field_conflict(self, name: str, base: T, local: T, remote: T, merged: T) -> Conflict:
        return Conflict(
            entity_type=local.ENTITY_TYPE,
            entity_id=local.id,
            conflict_type=ConflictType.FIELD_MODIFIED_BOTH_SIDES,
            field=name,
            local_value=getattr(local, name),
            remote_value=getattr(remote, name),
            base_value=getattr(base, name),
            local_timestamp=local.modified_at,
            remote_timestamp=remote.modified_at,
            auto_resolvable=local.modified_at != remote.modified_at,
            description=(
                f"{local.ENTITY_TYPE} '{local.display_name}': "
                f"'{name}' modified on both devices"
            ),
            local_entity=local,
            remote_entity=remote,
            merged_entity=merged,
        )

    def _fingerprint_conflict(self, base: T | None, local: T, remote: T) -> Conflict:
        return Conflict(
            entity_type=local.ENTITY_TYPE,
            entity_id=local.id,
            conflict_type=ConflictType.FIELD_MODIFIED_BOTH_SIDES,
            field=local.FINGERPRINT_FIELD,
            local_value=local.fingerprint_value,
            remote_value=remote.fingerprint_value,
            base_value=base.fingerprint_value if base is not None else None,
            local_timestamp=local.modified_at,
            remote_timestamp=remote.modified_at,
            auto_resolvable=False,
            description=(
                f"{FINGERPRINT_DESCRIPTIONS.get(local.ENTITY_TYPE, 'Fingerprint mismatch')}"
                f" ({local.display_name})"
            ),
            entity_level=True,
            local_entity=local,
            remote_entity=remote,
            merged_entity=local,
        )

    def _deleted_modified(
        self,
        entity_cls: type[T],
        base: T,
        present: T,
        deleted_remotely: bool,
    ) -> Conflict:
        local: T | None
        remote: T | None
        if deleted_remotely:
            local, remote = present, None
            description = "Deleted on remote but modified locally"
        else:
            local, remote = None, present
            description = "Deleted locally but modified on remote"
        return Conflict(
            entity_type=entity_cls.ENTITY_TYPE,
            entity_id=present.id,
            conflict_type=ConflictType.DELETED_MODIFIED,
            local_value=local,
            remote_value=remote,
            base_value=base,
            local_timestamp=local.modified_at if local is not None else 0,
            remote_timestamp=remote.modified_at if remote is not None else 0,
            auto_resolvable=False,
            description=f"{description} ({present.display_name})",
            entity_level=True,
            local_entity=local,
            remote_entity=remote,
            merged_entity=present,
        )

    # === Preferences ===

    def merge_preferences(
        self,
        base: Preferences | None,
        local: Preferences,
        remote: Preferences,
        local_timestamp: int = 0,
        remote_timestamp: int = 0,
    ) -> PreferenceMergeResult:
        """Merge preferences key by key.

        Equal values (after coercion to the declared kind) merge silently
        and a key known to one side only takes that side's value. Any other
        difference is a PREFERENCE_DIVERGED conflict, even when only one side
        changed the key since the base, and the merged value is the remote
        one until resolved. Preference conflicts are always auto-resolvable
        from the two preference timestamps.

        Args:
            base: Preferences at the last agreed state, if known.
            local: Local preferences.
            remote: Remote preferences.
            local_timestamp: Last local preference change.
            remote_timestamp: Last remote preference change.
        """
        merged: Preferences = {}
        conflicts: list[Conflict] = []
        base = base or {}

        for category in sorted(local.keys() | remote.keys()):
            local_values = local.get(category, {})
            remote_values = remote.get(category, {})
            base_values = base.get(category, {})
            values: dict[str, Any] = {}

            for key in sorted(local_values.keys() | remote_values.keys()):
                if key not in remote_values:
                    values[key] = local_values[key]
                    continue
                if key not in local_values:
                    values[key] = remote_values[key]
                    continue

                local_value = local_values[key]
                remote_value = remote_values[key]
                if _same_preference(category, key, local_value, remote_value):
                    values[key] = local_value
                    continue
                values[key] = remote_value
                conflicts.append(
                    Conflict(
                        entity_type=PREFERENCE_ENTITY_TYPE,
                        entity_id=f"{category}.{key}",
                        conflict_type=ConflictType.PREFERENCE_DIVERGED,
                        field=key,
                        local_value=local_value,
                        remote_value=remote_value,
                        base_value=base_values.get(key),
                        local_timestamp=local_timestamp,
                        remote_timestamp=remote_timestamp,
                        auto_resolvable=True,
                        description=f"Preference '{category}.{key}' differs between devices",
                    )
                )

            merged[category] = values

        return PreferenceMergeResult(merged=merged, conflicts=tuple(conflicts))

    # === Packages ===

    def merge_packages(
        self,
        base: BaseSnapshot | None,
        local: SyncDataPackage,
        remote: SyncDataPackage,
        entity_types: Iterable[str] | None = None,
        include_preferences: bool = True,
    ) -> CompleteMergeResult:
        """Merge two complete packages against a base snapshot.

        A type that either package did not collect (disabled in its
        configuration, or unreadable at collection time) is skipped: an
        empty list there means "unknown", not "everything was deleted".

        Args:
            base: Last agreed state (None on first sync with this peer).
            local: Package collected on this device.
            remote: Package downloaded from the peer.
            entity_types: Entity types to merge (default: all).
            include_preferences: Whether to merge preferences.

        Returns:
            CompleteMergeResult with one result per entity type. Types left
            out are listed in its skipped attribute.
        """
        base = base or BaseSnapshot()
        selected = set(entity_types) if entity_types is not None else None
        skipped: list[str] = []

        def merge(entity_type: str, entity_cls: type[T]) -> MergeResult[T]:
            if selected is not None and entity_type not in selected:
                skipped.append(entity_type)
                return MergeResult()
            if not (local.has_collected(entity_type) and remote.has_collected(entity_type)):
                logger.info(f"Skipping {entity_type}: not collected on both devices")
                skipped.append(entity_type)
                return MergeResult()
            return self.merge_entities(
                entity_cls,
                base.entities(entity_type),  # type: ignore[arg-type]
                local.entities(entity_type),  # type: ignore[arg-type]
                remote.entities(entity_type),  # type: ignore[arg-type]
            )

        preferences = PreferenceMergeResult(merged=dict(local.preferences))
        if not include_preferences:
            skipped.append(PREFERENCE_ENTITY_TYPE)
        elif not (
            local.has_collected(PREFERENCE_ENTITY_TYPE)
            and remote.has_collected(PREFERENCE_ENTITY_TYPE)
        ):
            logger.info("Skipping preferences: not collected on both devices")
            skipped.append(PREFERENCE_ENTITY_TYPE)
        else:
            preferences = self.merge_preferences(
                base.preferences,
                local.preferences,
                remote.preferences,
                local_timestamp=_preferences_timestamp(local),
                remote_timestamp=_preferences_timestamp(remote),
            )

        connections = merge("connection", ConnectionProfile)
        keys = merge("key", StoredKey)
        themes = merge("theme", ThemeDefinition)
        host_keys = merge("host_key", HostKeyEntry)
        return CompleteMergeResult(
            connections=connections,
            keys=keys,
            themes=themes,
            host_keys=host_keys,
            preferences=preferences,
            skipped=tuple(skipped),
        )


def resolve_preferences(
    merged: Preferences,
    resolutions: Iterable[ConflictResolution],
    pending: Iterable[Conflict] = (),
) -> Preferences:
    """Apply preference decisions to a merged preference map.

    Args:
        merged: Merged preferences (remote values for diverged keys).
        resolutions: Decisions; non-preference resolutions are ignored.
        pending: Undecided preference conflicts. They keep the local value
            so that nothing changes locally until they are decided.

    Returns:
        A new preference map.
    """
    result: Preferences = {category: dict(values) for category, values in merged.items()}

    def put(conflict: Conflict, value: Any) -> None:
        category, _, key = conflict.entity_id.partition(".")
        result.setdefault(category, {})[key] = value

    for conflict in pending:
        if conflict.is_preference:
            put(conflict, conflict.local_value)

    for resolution in resolutions:
        conflict = resolution.conflict
        if not conflict.is_preference:
            continue
        if resolution.resolution == ConflictResolutionOption.KEEP_REMOTE:
            put(conflict, conflict.remote_value)
        elif resolution.resolution in (
            ConflictResolutionOption.KEEP_LOCAL,
            ConflictResolutionOption.SKIP,
        ):
            put(conflict, conflict.local_value)
    return result


def _changed_on_both_sides(base: Any, local: Any, remote: Any) -> bool:
    return local != base and remote != base and local != remote


def _same_preference(category: str, key: str, first: Any, second: Any) -> bool:
    """Compare two preference values after coercion to the declared kind."""
    if first == second:
        return True
    spec = get_spec(category, key)
    if spec is None:
        return False
    try:
        return bool(coerce(spec, first) == coerce(spec, second))
    except PreferenceCoercionError:
        return False


def _preferences_timestamp(package: SyncDataPackage) -> int:
    if package.metadata is None:
        return 0
    return package.metadata.preferences_modified_at or package.metadata.timestamp
