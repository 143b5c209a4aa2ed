"""Writes merge results and whole packages to the local stores.

Every write is isolated: a failing item is logged and recorded in the result,
and the remaining items are still written. Each entity type is written inside
the store's batch boundary.

All writes are upserts or deletes by id, so applying the same result twice
leaves the stores in the same state as applying it once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from profilesync.sync.preferences import PreferenceCoercionError, coerce, get_spec
from profilesync.sync.types import (
    ENTITY_TYPES,
    ApplyResult,
    CompleteMergeResult,
    Preferences,
    SyncableEntity,
    SyncDataPackage,
)

if TYPE_CHECKING:
    from profilesync.store.base import EntityStore, EntityStores

logger = logging.getLogger(__name__)


class SyncDataApplier:
    """Applies sync data to the local stores."""

    def __init__(self, stores: EntityStores) -> None:
        self._stores = stores

    def apply_merge_result(
        self,
        result: CompleteMergeResult,
        preferences: Preferences | None = None,
    ) -> ApplyResult:
        """Write a merge result.

        Args:
            result: Merge result; added entities are upserted, updated
                entities updated, deleted ids deleted.
            preferences: Preferences to write (default: the merged
                preferences of result). Pass resolved preferences to honor
                conflict decisions.

        Returns:
            ApplyResult with the number of writes and the failures.
        """
        outcome = ApplyResult()
        for entity_type, merge_result in result.results().items():
            store = self._stores.for_type(entity_type)
            with store.batch():
                for entity in merge_result.added:
                    self._write(outcome, f"insert {entity_type} {entity.id}", store.insert, entity)
                for entity in merge_result.updated:
                    self._write(outcome, f"update {entity_type} {entity.id}", store.upsert, entity)
                for entity_id in merge_result.deleted:
                    self._write(
                        outcome, f"delete {entity_type} {entity_id}", store.delete_by_id, entity_id
                    )

        if result.preferences_merged:
            if preferences is None:
                preferences = result.preferences.merged
            self._apply_preferences(outcome, preferences)

        logger.info(
            f"Applied merge result: {outcome.applied_count} writes, {len(outcome.errors)} errors"
        )
        return outcome

    def apply_all(self, package: SyncDataPackage) -> ApplyResult:
        """Upsert every entity and preference of a package.

        Used for the first sync of an empty device, imports and restores.
        No merge takes place.
        """
        outcome = ApplyResult()
        for entity_type in ENTITY_TYPES:
            self._upsert_all(outcome, entity_type, package.entities(entity_type))
        self._apply_preferences(outcome, package.preferences)

        logger.info(
            f"Applied package: {outcome.applied_count} writes, {len(outcome.errors)} errors"
        )
        return outcome

    def _upsert_all(
        self, outcome: ApplyResult, entity_type: str, entities: Iterable[SyncableEntity]
    ) -> None:
        store: EntityStore[Any] = self._stores.for_type(entity_type)
        with store.batch():
            for entity in entities:
                self._write(outcome, f"insert {entity_type} {entity.id}", store.insert, entity)

    def _apply_preferences(self, outcome: ApplyResult, preferences: Preferences) -> None:
        for category, values in preferences.items():
            for key, value in values.items():
                spec = get_spec(category, key)
                if spec is None:
                    logger.debug(f"Ignoring unknown preference {category}.{key}")
                    continue
                try:
                    coerced = coerce(spec, value)
                except PreferenceCoercionError as e:
                    logger.warning(f"Skipping preference: {e}")
                    outcome.errors.append(str(e))
                    continue
                self._write(
                    outcome,
                    f"set preference {category}.{key}",
                    lambda v, c=category, k=key: self._stores.preferences.set_value(c, k, v),
                    coerced,
                )

    @staticmethod
    def _write(
        outcome: ApplyResult,
        description: str,
        operation: Callable[[Any], Any],
        argument: Any,
    ) -> None:
        try:
            operation(argument)
        except Exception as e:
            logger.exception(f"Failed to {description}")
            outcome.errors.append(f"Failed to {description}: {e}")
        else:
            outcome.applied_count += 1
