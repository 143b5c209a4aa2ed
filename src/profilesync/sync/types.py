"""Data types for the sync pipeline.

This module provides:
- Syncable entities (ConnectionProfile, StoredKey, ThemeDefinition, HostKeyEntry)
- SyncDataPackage: a point-in-time snapshot produced by the collector
- MergeResult / CompleteMergeResult: merge engine output
- Conflict and resolution types
- Result objects of the applier, the resolver and the engine
- Sync exceptions

Entities are immutable. Every entity class declares how its fields take part
in a merge through class attributes:

    COUNTER_FIELDS    monotonic counters, merged as a sum of deltas
    MAX_FIELDS        "last activity" timestamps, merged with max()
    MIN_FIELDS        creation timestamps, merged with min()
    INTEGRITY_FIELDS  key material; a mismatch is never merged automatically
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, ClassVar, Generic, TypeVar

from profilesync.core.crypto import compute_hash
from profilesync.core.types import SyncStage

logger = logging.getLogger(__name__)

FORMAT_VERSION = 2

# Sync bookkeeping, present on every entity
BOOKKEEPING_FIELDS = ("modified_at", "sync_version", "last_synced_at", "sync_device_id")

PREFERENCE_ENTITY_TYPE = "preference"


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class SyncError(Exception):
    """Base exception for sync errors."""


class SyncCancelledError(SyncError):
    """The sync run was cancelled."""


class SyncInProgressError(SyncError):
    """Another sync run holds the run lock."""


class ResolutionError(SyncError):
    """A conflict resolution cannot be applied."""


def to_camel(name: str) -> str:
    """Convert a snake_case field name to its camelCase wire name."""
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _coerce(type_name: str, value: Any) -> Any:
    """Coerce a wire value to a field's declared type.

    Raises:
        ValueError: If the value cannot be represented.
    """
    optional = type_name.endswith("| None")
    base = type_name.split("|")[0].strip()
    if value is None or (optional and value == ""):
        if optional:
            return None
        raise ValueError("null value for required field")
    if base == "str":
        return str(value)
    if base == "bool":
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "1", "yes"):
                return True
            if lowered in ("false", "0", "no"):
                return False
            raise ValueError(f"not a boolean: {value!r}")
        return bool(value)
    if base == "int":
        if isinstance(value, int):
            return int(value)
        return int(float(value))
    if base == "float":
        return float(value)
    return value


T = TypeVar("T", bound="SyncableEntity")


@dataclass(frozen=True)
class SyncableEntity:
    """Base class of all syncable entities.

    Attributes:
        id: Stable, globally unique identifier. Never reused.
        modified_at: Time of the last local mutation (ms since epoch).
        sync_version: Counter bumped by the host on each mutation.
        last_synced_at: Time the entity was last part of a sync run.
        sync_device_id: Device that made the last mutation.
    """

    ENTITY_TYPE: ClassVar[str] = ""
    DISPLAY_FIELD: ClassVar[str | None] = "name"
    COUNTER_FIELDS: ClassVar[tuple[str, ...]] = ()
    MAX_FIELDS: ClassVar[tuple[str, ...]] = ()
    MIN_FIELDS: ClassVar[tuple[str, ...]] = ()
    INTEGRITY_FIELDS: ClassVar[tuple[str, ...]] = ()
    FINGERPRINT_FIELD: ClassVar[str | None] = None
    ID_ALIASES: ClassVar[tuple[str, ...]] = ()

    id: str
    modified_at: int = 0
    sync_version: int = 0
    last_synced_at: int = 0
    sync_device_id: str = ""

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        """All dataclass field names, in declaration order."""
        return tuple(f.name for f in fields(cls))

    @classmethod
    def semantic_fields(cls) -> tuple[str, ...]:
        """Fields compared field-by-field against the base during a merge."""
        special = {
            "id",
            *BOOKKEEPING_FIELDS,
            *cls.COUNTER_FIELDS,
            *cls.MAX_FIELDS,
            *cls.MIN_FIELDS,
            *cls.INTEGRITY_FIELDS,
        }
        return tuple(name for name in cls.field_names() if name not in special)

    @property
    def display_name(self) -> str:
        """Human readable label used in conflict descriptions."""
        if self.DISPLAY_FIELD:
            value = getattr(self, self.DISPLAY_FIELD)
            if value:
                return str(value)
        return self.id

    @property
    def fingerprint_value(self) -> str | None:
        """Fingerprint of the key material, for fingerprint-bearing types."""
        if self.FINGERPRINT_FIELD is None:
            return None
        return getattr(self, self.FINGERPRINT_FIELD)

    def content_equals(self, other: SyncableEntity) -> bool:
        """Compare two entities ignoring when they were last synced."""
        return replace(self, last_synced_at=0) == replace(other, last_synced_at=0)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary with camelCase keys."""
        return {to_camel(f.name): getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls: type[T], data: dict[str, Any]) -> T:
        """Create an entity from a wire dictionary.

        Parsing is permissive: unknown keys are ignored, missing keys take
        their defaults, snake_case keys are accepted, and values are coerced
        to the declared field types. A value that cannot be coerced falls
        back to the field default.

        Raises:
            ValueError: If the dictionary carries no usable id.
        """
        entity_id = data.get("id")
        for alias in cls.ID_ALIASES:
            if entity_id in (None, ""):
                entity_id = data.get(alias)
        if entity_id in (None, ""):
            raise ValueError(f"{cls.ENTITY_TYPE or cls.__name__} without id")

        kwargs: dict[str, Any] = {"id": str(entity_id)}
        for f in fields(cls):
            if f.name == "id":
                continue
            camel = to_camel(f.name)
            if camel in data:
                raw = data[camel]
            elif f.name in data:
                raw = data[f.name]
            else:
                continue
            try:
                kwargs[f.name] = _coerce(str(f.type), raw)
            except (TypeError, ValueError):
                logger.warning(
                    f"Ignoring invalid {f.name}={raw!r} on {cls.ENTITY_TYPE} {entity_id}"
                )
        return cls(**kwargs)


@dataclass(frozen=True)
class ConnectionProfile(SyncableEntity):
    """A saved SSH connection.

    Host and username are display data only; merge identity is the id.
    """

    ENTITY_TYPE: ClassVar[str] = "connection"
    COUNTER_FIELDS: ClassVar[tuple[str, ...]] = ("connection_count",)
    MAX_FIELDS: ClassVar[tuple[str, ...]] = ("last_connected",)
    MIN_FIELDS: ClassVar[tuple[str, ...]] = ("created_at",)

    name: str = ""
    host: str = ""
    port: int = 22
    username: str = ""
    auth_type: str = "PASSWORD"
    key_id: str | None = None
    save_password: bool = False
    terminal_type: str = "xterm-256color"
    encoding: str = "UTF-8"
    compression: bool = True
    keep_alive: bool = True
    connect_timeout: int = 15
    read_timeout: int = 30
    proxy_host: str | None = None
    proxy_port: int | None = None
    proxy_type: str | None = None
    proxy_username: str | None = None
    theme: str = "dracula"
    group_id: str | None = None
    sort_order: int = 0
    created_at: int = 0
    last_connected: int = 0
    connection_count: int = 0
    advanced_settings: str | None = None


@dataclass(frozen=True)
class StoredKey(SyncableEntity):
    """Metadata of a stored SSH key. Private key material is never synced."""

    ENTITY_TYPE: ClassVar[str] = "key"
    MAX_FIELDS: ClassVar[tuple[str, ...]] = ("last_used",)
    MIN_FIELDS: ClassVar[tuple[str, ...]] = ("created_at",)
    INTEGRITY_FIELDS: ClassVar[tuple[str, ...]] = ("fingerprint",)
    FINGERPRINT_FIELD: ClassVar[str | None] = "fingerprint"
    ID_ALIASES: ClassVar[tuple[str, ...]] = ("keyId",)

    name: str = ""
    key_type: str = "RSA"
    comment: str | None = None
    fingerprint: str = ""
    created_at: int = 0
    last_used: int = 0
    requires_passphrase: bool = False
    key_size: int | None = None


@dataclass(frozen=True)
class ThemeDefinition(SyncableEntity):
    """A terminal color theme. Colors are ARGB integers."""

    ENTITY_TYPE: ClassVar[str] = "theme"
    COUNTER_FIELDS: ClassVar[tuple[str, ...]] = ("usage_count",)
    MAX_FIELDS: ClassVar[tuple[str, ...]] = ("last_modified",)
    MIN_FIELDS: ClassVar[tuple[str, ...]] = ("created_at",)
    ID_ALIASES: ClassVar[tuple[str, ...]] = ("themeId",)

    name: str = ""
    author: str | None = None
    version: str = "1.0"
    is_dark: bool = True
    is_built_in: bool = False
    background_color: int = 0
    foreground_color: int = 0
    cursor_color: int = 0
    selection_color: int = 0
    ansi_colors: str = "[]"
    ui_colors: str | None = None
    created_at: int = 0
    last_modified: int = 0
    usage_count: int = 0


@dataclass(frozen=True)
class HostKeyEntry(SyncableEntity):
    """A known host key. The id is "hostname:port"."""

    ENTITY_TYPE: ClassVar[str] = "host_key"
    DISPLAY_FIELD: ClassVar[str | None] = None
    MAX_FIELDS: ClassVar[tuple[str, ...]] = ("last_verified",)
    MIN_FIELDS: ClassVar[tuple[str, ...]] = ("first_seen",)
    INTEGRITY_FIELDS: ClassVar[tuple[str, ...]] = ("fingerprint", "public_key", "key_type")
    FINGERPRINT_FIELD: ClassVar[str | None] = "fingerprint"

    hostname: str = ""
    port: int = 22
    key_type: str = ""
    public_key: str = ""
    fingerprint: str = ""
    first_seen: int = 0
    last_verified: int = 0
    trust_level: str = "UNKNOWN"

    @property
    def display_name(self) -> str:
        if self.hostname:
            return f"{self.hostname}:{self.port}"
        return self.id


ENTITY_CLASSES: dict[str, type[SyncableEntity]] = {
    cls.ENTITY_TYPE: cls
    for cls in (ConnectionProfile, StoredKey, ThemeDefinition, HostKeyEntry)
}
ENTITY_TYPES: tuple[str, ...] = tuple(ENTITY_CLASSES)

# Entity type -> attribute name on packages, snapshots and merge results
PACKAGE_ATTRIBUTES: dict[str, str] = {
    "connection": "connections",
    "key": "keys",
    "theme": "themes",
    "host_key": "host_keys",
}


def entity_hash(entity: SyncableEntity) -> str:
    """SHA-256 of the canonical JSON form of an entity."""
    canonical = json.dumps(entity.to_dict(), sort_keys=True, separators=(",", ":"))
    return compute_hash(canonical.encode("utf-8"))


# Category -> key -> scalar
Preferences = dict[str, dict[str, Any]]


@dataclass(frozen=True)
class SyncItemCounts:
    """Number of items per type in a package."""

    connections: int = 0
    keys: int = 0
    themes: int = 0
    preferences: int = 0
    host_keys: int = 0

    def total(self) -> int:
        return self.connections + self.keys + self.themes + self.preferences + self.host_keys

    def to_dict(self) -> dict[str, int]:
        return {to_camel(f.name): getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncItemCounts:
        return cls(**{f.name: int(data.get(to_camel(f.name), 0) or 0) for f in fields(cls)})


@dataclass(frozen=True)
class SyncMetadata:
    """Description of the device and moment a package was produced.

    Attributes:
        device_id: Stable id of the producing device.
        device_name: Human readable device name.
        timestamp: Collection time (ms since epoch).
        sync_version: Device sync counter at collection time.
        item_counts: Number of items per type.
        preferences_modified_at: Last preference change on the device.
        app_version: Version of profilesync that wrote the package.
        format_version: Package format version.
        collected_types: Entity types (and "preference") the device actually
            read into the package. None means every type. A type missing
            here was disabled or unreadable and says nothing about deletions.
    """

    device_id: str
    device_name: str = ""
    timestamp: int = 0
    sync_version: int = 0
    item_counts: SyncItemCounts = field(default_factory=SyncItemCounts)
    preferences_modified_at: int = 0
    app_version: str = ""
    format_version: int = FORMAT_VERSION
    collected_types: tuple[str, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "timestamp": self.timestamp,
            "syncVersion": self.sync_version,
            "itemCounts": self.item_counts.to_dict(),
            "preferencesModifiedAt": self.preferences_modified_at,
            "appVersion": self.app_version,
            "formatVersion": self.format_version,
            "collectedTypes": (
                list(self.collected_types) if self.collected_types is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncMetadata:
        collected = data.get("collectedTypes")
        return cls(
            device_id=str(data.get("deviceId", "")),
            device_name=str(data.get("deviceName", "")),
            timestamp=int(data.get("timestamp", 0) or 0),
            sync_version=int(data.get("syncVersion", 0) or 0),
            item_counts=SyncItemCounts.from_dict(data.get("itemCounts") or {}),
            preferences_modified_at=int(data.get("preferencesModifiedAt", 0) or 0),
            app_version=str(data.get("appVersion", "")),
            format_version=int(data.get("formatVersion", FORMAT_VERSION) or FORMAT_VERSION),
            collected_types=(
                tuple(str(name) for name in collected) if isinstance(collected, list) else None
            ),
        )


@dataclass(frozen=True)
class SyncDataPackage:
    """Point-in-time snapshot of all syncable data of one device.

    Entity lists are stored as tuples; a package is never modified
    after the collector produced it.
    """

    connections: tuple[ConnectionProfile, ...] = ()
    keys: tuple[StoredKey, ...] = ()
    themes: tuple[ThemeDefinition, ...] = ()
    host_keys: tuple[HostKeyEntry, ...] = ()
    preferences: Preferences = field(default_factory=dict)
    metadata: SyncMetadata | None = None

    def __post_init__(self) -> None:
        for attribute in PACKAGE_ATTRIBUTES.values():
            object.__setattr__(self, attribute, tuple(getattr(self, attribute)))

    def entities(self, entity_type: str) -> tuple[SyncableEntity, ...]:
        """Entities of one type (e.g. "connection")."""
        return getattr(self, PACKAGE_ATTRIBUTES[entity_type])

    @property
    def device_id(self) -> str | None:
        return self.metadata.device_id if self.metadata else None

    def has_collected(self, entity_type: str) -> bool:
        """Whether the producing device actually read this type.

        Packages without metadata, or from writers that do not record
        collected types, are taken as complete.
        """
        if self.metadata is None or self.metadata.collected_types is None:
            return True
        return entity_type in self.metadata.collected_types

    def item_counts(self) -> SyncItemCounts:
        return SyncItemCounts(
            connections=len(self.connections),
            keys=len(self.keys),
            themes=len(self.themes),
            preferences=sum(len(values) for values in self.preferences.values()),
            host_keys=len(self.host_keys),
        )

    def is_empty(self) -> bool:
        return self.item_counts().total() == 0


@dataclass(frozen=True)
class BaseSnapshot:
    """Last state both sync participants agreed on, per entity id."""

    connections: dict[str, ConnectionProfile] = field(default_factory=dict)
    keys: dict[str, StoredKey] = field(default_factory=dict)
    themes: dict[str, ThemeDefinition] = field(default_factory=dict)
    host_keys: dict[str, HostKeyEntry] = field(default_factory=dict)
    preferences: Preferences | None = None

    def entities(self, entity_type: str) -> dict[str, SyncableEntity]:
        return getattr(self, PACKAGE_ATTRIBUTES[entity_type])


class ConflictType(str, Enum):
    """Kind of merge conflict."""

    FIELD_MODIFIED_BOTH_SIDES = "field_modified_both_sides"
    DELETED_MODIFIED = "deleted_modified"
    PREFERENCE_DIVERGED = "preference_diverged"


class ConflictResolutionOption(str, Enum):
    """Decision taken for a conflict."""

    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    KEEP_BOTH = "keep_both"
    SKIP = "skip"


@dataclass(frozen=True)
class Conflict:
    """A merge conflict, with the context needed to review it.

    For field conflicts the *_value attributes hold field values. For
    DELETED_MODIFIED conflicts they hold the entities, with None on the
    side that deleted it. Preference conflicts use "category.key" as
    entity_id.

    Attributes:
        entity_type: "connection", "key", "theme", "host_key" or "preference".
        entity_id: Id of the conflicting entity.
        conflict_type: Kind of conflict.
        field: Conflicting field name, when the conflict is about one field.
        local_value: Local value.
        remote_value: Remote value.
        base_value: Value at the last agreed state, if known.
        local_timestamp: Local modification time.
        remote_timestamp: Remote modification time.
        auto_resolvable: Whether timestamps may decide the outcome.
        description: Human readable summary.
        entity_level: Resolution replaces the whole entity rather than one field.
        local_entity: Local entity, if present.
        remote_entity: Remote entity, if present.
        merged_entity: Provisional merge result pending resolution.
    """

    entity_type: str
    entity_id: str
    conflict_type: ConflictType
    field: str | None = None
    local_value: Any = None
    remote_value: Any = None
    base_value: Any = None
    local_timestamp: int = 0
    remote_timestamp: int = 0
    auto_resolvable: bool = False
    description: str = ""
    entity_level: bool = False
    local_entity: SyncableEntity | None = None
    remote_entity: SyncableEntity | None = None
    merged_entity: SyncableEntity | None = None

    @property
    def is_preference(self) -> bool:
        return self.entity_type == PREFERENCE_ENTITY_TYPE

    def resolution_options(self) -> list[ConflictResolutionOption]:
        """Options a conflict review should offer for this conflict."""
        if self.is_preference or self.conflict_type == ConflictType.DELETED_MODIFIED:
            return [
                ConflictResolutionOption.KEEP_LOCAL,
                ConflictResolutionOption.KEEP_REMOTE,
                ConflictResolutionOption.SKIP,
            ]
        return list(ConflictResolutionOption)


@dataclass(frozen=True)
class ConflictResolution:
    """A decision for one conflict."""

    conflict: Conflict
    resolution: ConflictResolutionOption
    apply_to_all: bool = False


@dataclass(frozen=True)
class MergeResult(Generic[T]):
    """Merge outcome for one entity type.

    Attributes:
        merged: Final (or provisional, when conflicting) value of every surviving entity.
        conflicts: Conflicts found for this type.
        deleted: Ids to delete locally.
        added: Entities that did not exist at the base (upserted locally).
        updated: Entities whose merged value differs from the local value.
    """

    merged: tuple[T, ...] = ()
    conflicts: tuple[Conflict, ...] = ()
    deleted: tuple[str, ...] = ()
    added: tuple[T, ...] = ()
    updated: tuple[T, ...] = ()

    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def is_successful(self) -> bool:
        return not self.conflicts

    @property
    def change_count(self) -> int:
        return len(self.added) + len(self.updated) + len(self.deleted)


@dataclass(frozen=True)
class PreferenceMergeResult:
    """Merge outcome for preferences."""

    merged: Preferences = field(default_factory=dict)
    conflicts: tuple[Conflict, ...] = ()

    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


@dataclass(frozen=True)
class CompleteMergeResult:
    """Merge outcome for a whole package."""

    connections: MergeResult[ConnectionProfile] = field(default_factory=MergeResult)
    keys: MergeResult[StoredKey] = field(default_factory=MergeResult)
    themes: MergeResult[ThemeDefinition] = field(default_factory=MergeResult)
    host_keys: MergeResult[HostKeyEntry] = field(default_factory=MergeResult)
    preferences: PreferenceMergeResult = field(default_factory=PreferenceMergeResult)
    skipped: tuple[str, ...] = ()

    def results(self) -> dict[str, MergeResult[Any]]:
        """Entity type -> merge result."""
        return {
            entity_type: getattr(self, attribute)
            for entity_type, attribute in PACKAGE_ATTRIBUTES.items()
        }

    @property
    def conflicts(self) -> list[Conflict]:
        """All conflicts, entity types first, preferences last."""
        found: list[Conflict] = []
        for result in self.results().values():
            found.extend(result.conflicts)
        found.extend(self.preferences.conflicts)
        return found

    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def preferences_merged(self) -> bool:
        return PREFERENCE_ENTITY_TYPE not in self.skipped

    @property
    def change_count(self) -> int:
        return sum(result.change_count for result in self.results().values())


@dataclass
class ApplyResolutionsResult:
    """Outcome of applying conflict resolutions."""

    success_count: int = 0
    total_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def is_fully_successful(self) -> bool:
        return self.success_count == self.total_count and not self.errors

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


@dataclass
class ApplyResult:
    """Outcome of writing merge results or a package to the local stores."""

    applied_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


@dataclass
class SyncRunResult:
    """Outcome of one sync run.

    Attributes:
        success: True when the run completed, even with pending conflicts.
        message: Human readable summary.
        stage: Stage reached (FAILED for failed runs).
        conflicts: Conflicts left for manual review.
        resolved_count: Conflicts resolved automatically.
        applied_count: Local writes performed.
        item_counts: Counts of the uploaded package.
        peers: Device ids merged in this run.
        errors: Non-fatal errors (skipped peers, failed writes).
        cancelled: The run was cancelled before touching local data.
        needs_reconfiguration: The transport rejected the credentials.
        error: The exception that failed the run, if any.
    """

    success: bool
    message: str = ""
    stage: SyncStage = SyncStage.IDLE
    conflicts: list[Conflict] = field(default_factory=list)
    resolved_count: int = 0
    applied_count: int = 0
    item_counts: SyncItemCounts | None = None
    peers: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False
    needs_reconfiguration: bool = False
    error: Exception | None = None

    def has_conflicts(self) -> bool:
        return bool(self.conflicts)
