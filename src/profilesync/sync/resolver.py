"""Conflict resolution.

This module provides:
- ConflictResolver.auto_resolve: timestamp policy for auto-resolvable conflicts
- ConflictResolver.expand_apply_to_all: spreads "apply to all" decisions
- ConflictResolver.apply_resolutions: writes decisions to the local stores
- Grouping helpers for conflict review

Resolutions are grouped per entity so that several field decisions on one
entity end in a single write. Entity-level decisions (deletions, fingerprint
mismatches) are applied before field decisions.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter, defaultdict
from collections.abc import Iterable
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from profilesync.sync.preferences import coerce, get_spec
from profilesync.sync.types import (
    ApplyResolutionsResult,
    Conflict,
    ConflictResolution,
    ConflictResolutionOption,
    ResolutionError,
    SyncableEntity,
)

if TYPE_CHECKING:
    from profilesync.state import SyncStateTracker
    from profilesync.store.base import EntityStore, EntityStores

logger = logging.getLogger(__name__)

KEEP_BOTH_SUFFIX = " (remote)"


class ConflictResolver:
    """Decides and applies conflict resolutions."""

    def __init__(self, stores: EntityStores, state: SyncStateTracker | None = None) -> None:
        """Initialize the resolver.

        Args:
            stores: Local stores to write decisions to.
            state: Sync state to record resolved conflicts in (optional).
        """
        self._stores = stores
        self._state = state

    # === Automatic policy ===

    def auto_resolve(self, conflicts: Iterable[Conflict]) -> list[ConflictResolution]:
        """Decide auto-resolvable conflicts by timestamp.

        The newer side wins. Conflicts that are not auto-resolvable, and
        exact timestamp ties, get no resolution and must be decided by the
        user.
        """
        resolutions = []
        for conflict in conflicts:
            if not conflict.auto_resolvable:
                continue
            if conflict.local_timestamp > conflict.remote_timestamp:
                option = ConflictResolutionOption.KEEP_LOCAL
            elif conflict.local_timestamp < conflict.remote_timestamp:
                option = ConflictResolutionOption.KEEP_REMOTE
            else:
                logger.debug(f"Timestamp tie on {conflict.entity_type} {conflict.entity_id}")
                continue
            resolutions.append(ConflictResolution(conflict=conflict, resolution=option))
        return resolutions

    @staticmethod
    def expand_apply_to_all(
        conflicts: Iterable[Conflict], resolutions: Iterable[ConflictResolution]
    ) -> list[ConflictResolution]:
        """Extend decisions flagged apply_to_all to similar undecided conflicts.

        A flagged decision covers every conflict of the same entity type and
        conflict type that has no decision yet, provided the option is valid
        for it. Earlier decisions take precedence over later ones.

        Args:
            conflicts: All conflicts of the run.
            resolutions: Decisions made so far.

        Returns:
            The decisions, followed by the ones derived from flagged decisions.
        """
        expanded = list(resolutions)
        decided = {id(r.conflict) for r in expanded}
        for resolution in [r for r in expanded if r.apply_to_all]:
            source = resolution.conflict
            for conflict in conflicts:
                if id(conflict) in decided:
                    continue
                if (conflict.entity_type, conflict.conflict_type) != (
                    source.entity_type,
                    source.conflict_type,
                ):
                    continue
                if resolution.resolution not in conflict.resolution_options():
                    continue
                expanded.append(ConflictResolution(conflict, resolution.resolution))
                decided.add(id(conflict))
        return expanded

    @staticmethod
    def requires_manual_resolution(
        conflicts: Iterable[Conflict], resolutions: Iterable[ConflictResolution] = ()
    ) -> list[Conflict]:
        """Conflicts that no resolution covers."""
        decided = {id(r.conflict) for r in resolutions}
        return [c for c in conflicts if id(c) not in decided]

    # === Applying decisions ===

    def apply_resolutions(
        self, resolutions: Iterable[ConflictResolution], peer_id: str | None = None
    ) -> ApplyResolutionsResult:
        """Write decisions to the local stores.

        Failures are isolated per entity: they are logged, recorded in the
        result and the remaining resolutions are still applied.

        Args:
            resolutions: Decisions to apply.
            peer_id: Peer the conflicts were found against. When given (and
                a state tracker is set) the outcome is recorded in the base
                kept for that peer.

        Returns:
            ApplyResolutionsResult counting resolutions applied and failed.
        """
        result = ApplyResolutionsResult()
        groups: dict[tuple[str, str], list[ConflictResolution]] = defaultdict(list)
        for resolution in resolutions:
            conflict = resolution.conflict
            groups[(conflict.entity_type, conflict.entity_id)].append(resolution)

        for (entity_type, entity_id), group in groups.items():
            result.total_count += len(group)
            try:
                if group[0].conflict.is_preference:
                    self._apply_preference(group)
                else:
                    self._apply_entity(entity_type, group, peer_id)
            except Exception as e:
                logger.exception(f"Failed to resolve {entity_type} {entity_id}")
                result.errors.append(f"{entity_type} {entity_id}: {e}")
                continue
            result.success_count += len(group)
            logger.debug(
                f"Resolved {entity_type} {entity_id}: "
                + ", ".join(r.resolution.value for r in group)
            )

        if result.total_count:
            logger.info(
                f"Applied {result.success_count}/{result.total_count} conflict resolutions"
            )
        return result

    def _apply_entity(
        self, entity_type: str, group: list[ConflictResolution], peer_id: str | None
    ) -> None:
        store: EntityStore[Any] = self._stores.for_type(entity_type)
        entity_level = [r for r in group if r.conflict.entity_level]
        field_level = [r for r in group if not r.conflict.entity_level]
        reference = group[0].conflict

        if all(r.resolution == ConflictResolutionOption.SKIP for r in group):
            if self._state is not None and peer_id is not None:
                self._state.mark_pending(peer_id, reference)
            return

        if entity_level:
            decision = entity_level[0]
            self._apply_whole(store, decision.conflict, decision.resolution)
        elif field_level:
            self._apply_fields(store, field_level)

        if self._state is None or peer_id is None:
            return
        if any(r.resolution == ConflictResolutionOption.SKIP for r in group):
            self._state.mark_pending(peer_id, reference)
        else:
            self._state.mark_resolved(
                peer_id, entity_type, reference.entity_id, reference.remote_entity
            )

    def _apply_whole(
        self,
        store: EntityStore[Any],
        conflict: Conflict,
        option: ConflictResolutionOption,
    ) -> None:
        if option == ConflictResolutionOption.SKIP:
            return
        if option == ConflictResolutionOption.KEEP_BOTH:
            self._keep_both(store, conflict)
            return
        chosen = (
            conflict.local_entity
            if option == ConflictResolutionOption.KEEP_LOCAL
            else conflict.remote_entity
        )
        if chosen is None:
            store.delete_by_id(conflict.entity_id)
        else:
            store.upsert(chosen)

    def _apply_fields(self, store: EntityStore[Any], group: list[ConflictResolution]) -> None:
        reference = group[0].conflict
        if any(r.resolution == ConflictResolutionOption.KEEP_BOTH for r in group):
            self._keep_both(store, reference)
            return

        options = {r.resolution for r in group}
        if options == {ConflictResolutionOption.KEEP_LOCAL}:
            self._write_side(store, reference.local_entity, reference)
            return
        if options == {ConflictResolutionOption.KEEP_REMOTE}:
            self._write_side(store, reference.remote_entity, reference)
            return

        # Mixed decisions start from the newer side
        entity = reference.merged_entity or reference.local_entity
        if entity is None:
            raise ResolutionError(f"No entity to resolve for {reference.entity_id}")

        changes: dict[str, Any] = {}
        for resolution in group:
            conflict = resolution.conflict
            if conflict.field is None:
                continue
            if resolution.resolution == ConflictResolutionOption.KEEP_LOCAL:
                changes[conflict.field] = conflict.local_value
            elif resolution.resolution == ConflictResolutionOption.KEEP_REMOTE:
                changes[conflict.field] = conflict.remote_value
            else:
                # Skipped fields keep the local value until decided
                changes[conflict.field] = conflict.local_value
        store.upsert(replace(entity, **changes))

    @staticmethod
    def _write_side(
        store: EntityStore[Any], entity: SyncableEntity | None, conflict: Conflict
    ) -> None:
        if entity is None:
            raise ResolutionError(f"No entity to resolve for {conflict.entity_id}")
        store.upsert(entity)

    @staticmethod
    def _keep_both(store: EntityStore[Any], conflict: Conflict) -> None:
        """Keep local as is and store the remote version under a new id."""
        local, remote = conflict.local_entity, conflict.remote_entity
        if local is None or remote is None:
            raise ResolutionError("Keep both needs an entity on both sides")
        store.upsert(local)
        store.insert(duplicate(remote))

    def _apply_preference(self, group: list[ConflictResolution]) -> None:
        for resolution in group:
            conflict = resolution.conflict
            option = resolution.resolution
            if option == ConflictResolutionOption.SKIP:
                continue
            if option == ConflictResolutionOption.KEEP_BOTH:
                raise ResolutionError("Preferences cannot keep both values")
            category, _, key = conflict.entity_id.partition(".")
            value = (
                conflict.local_value
                if option == ConflictResolutionOption.KEEP_LOCAL
                else conflict.remote_value
            )
            spec = get_spec(category, key)
            if spec is not None:
                value = coerce(spec, value)
            self._stores.preferences.set_value(category, key, value)

    # === Review helpers ===

    @staticmethod
    def conflicts_by_type(conflicts: Iterable[Conflict]) -> dict[str, list[Conflict]]:
        grouped: dict[str, list[Conflict]] = defaultdict(list)
        for conflict in conflicts:
            grouped[conflict.entity_type].append(conflict)
        return dict(grouped)

    @staticmethod
    def count_by_type(conflicts: Iterable[Conflict]) -> dict[str, int]:
        return dict(Counter(conflict.entity_type for conflict in conflicts))


def duplicate(entity: SyncableEntity) -> SyncableEntity:
    """Copy an entity under a fresh id, marking its display name."""
    changes: dict[str, Any] = {"id": str(uuid.uuid4())}
    if entity.DISPLAY_FIELD:
        changes[entity.DISPLAY_FIELD] = f"{getattr(entity, entity.DISPLAY_FIELD)}{KEEP_BOTH_SUFFIX}"
    return replace(entity, **changes)
