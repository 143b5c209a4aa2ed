"""Typed registry of synced preferences.

Preferences travel as loosely typed category -> key -> value maps. Every
known key is declared here with its kind and default; values are coerced
to the declared kind when they cross into a local preference store.
Keys that are not declared are ignored.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from profilesync.sync.types import Preferences


class PreferenceKind(str, Enum):
    """Value kind of a preference."""

    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    STRING = "string"


class PreferenceCoercionError(ValueError):
    """A value cannot be converted to a preference's kind."""


@dataclass(frozen=True)
class PreferenceSpec:
    """Declaration of one synced preference."""

    category: str
    key: str
    kind: PreferenceKind
    default: Any

    @property
    def path(self) -> str:
        return f"{self.category}.{self.key}"


def _specs(category: str, *entries: tuple[str, PreferenceKind, Any]) -> list[PreferenceSpec]:
    return [PreferenceSpec(category, key, kind, default) for key, kind, default in entries]


Kind = PreferenceKind

PREFERENCE_SPECS: tuple[PreferenceSpec, ...] = tuple(
    _specs(
        "general",
        ("autoBackup", Kind.BOOL, True),
        ("backupFrequency", Kind.STRING, "weekly"),
        ("startupBehavior", Kind.STRING, "last_session"),
        ("language", Kind.STRING, "system"),
    )
    + _specs(
        "security",
        ("passwordStorageLevel", Kind.STRING, "encrypted"),
        ("requireBiometric", Kind.BOOL, False),
        ("strictHostKeyChecking", Kind.BOOL, True),
        ("clearClipboardTimeout", Kind.INT, 60),
        ("autoLockEnabled", Kind.BOOL, False),
        ("lockTimeout", Kind.INT, 300),
    )
    + _specs(
        "terminal",
        ("theme", Kind.STRING, "dracula"),
        ("fontSize", Kind.FLOAT, 14.0),
        ("fontFamily", Kind.STRING, "monospace"),
        ("cursorStyle", Kind.STRING, "block"),
        ("cursorBlink", Kind.BOOL, True),
        ("scrollbackLines", Kind.INT, 1000),
        ("terminalBell", Kind.BOOL, True),
    )
    + _specs(
        "ui",
        ("maxTabs", Kind.INT, 10),
        ("confirmTabClose", Kind.BOOL, True),
        ("appTheme", Kind.STRING, "system"),
        ("dynamicColors", Kind.BOOL, True),
    )
    + _specs(
        "connection",
        ("defaultUsername", Kind.STRING, ""),
        ("defaultPort", Kind.INT, 22),
        ("connectTimeout", Kind.INT, 15),
        ("autoReconnect", Kind.BOOL, True),
        ("compression", Kind.BOOL, True),
    )
)

_REGISTRY: dict[tuple[str, str], PreferenceSpec] = {
    (spec.category, spec.key): spec for spec in PREFERENCE_SPECS
}

CATEGORIES: tuple[str, ...] = tuple(dict.fromkeys(spec.category for spec in PREFERENCE_SPECS))


def get_spec(category: str, key: str) -> PreferenceSpec | None:
    """Look up a preference declaration; None for unknown keys."""
    return _REGISTRY.get((category, key))


def coerce(spec: PreferenceSpec, value: Any) -> Any:
    """Convert a wire value to the kind declared by spec.

    Numeric strings become numbers, "true"/"false"/"1"/"0" and numbers
    become booleans, and any scalar becomes a string.

    Raises:
        PreferenceCoercionError: If value cannot be converted.
    """
    if value is None or isinstance(value, (dict, list, tuple)):
        raise PreferenceCoercionError(f"{spec.path}: unsupported value {value!r}")
    try:
        if spec.kind is PreferenceKind.STRING:
            return str(value)
        if spec.kind is PreferenceKind.BOOL:
            if isinstance(value, bool):
                return value
            if isinstance(value, (int, float)):
                return value != 0
            lowered = str(value).strip().lower()
            if lowered in ("true", "1", "yes", "on"):
                return True
            if lowered in ("false", "0", "no", "off"):
                return False
            raise PreferenceCoercionError(f"{spec.path}: not a boolean: {value!r}")
        if spec.kind is PreferenceKind.INT:
            if isinstance(value, bool):
                return int(value)
            return int(float(value))
        return float(value)
    except (TypeError, ValueError) as e:
        if isinstance(e, PreferenceCoercionError):
            raise
        raise PreferenceCoercionError(f"{spec.path}: cannot convert {value!r}") from e


def defaults() -> Preferences:
    """Default value of every declared preference."""
    result: Preferences = {}
    for spec in PREFERENCE_SPECS:
        result.setdefault(spec.category, {})[spec.key] = spec.default
    return result


def flatten(preferences: Preferences) -> dict[str, Any]:
    """Convert a nested map to {"category.key": value}."""
    return {
        f"{category}.{key}": value
        for category, values in preferences.items()
        for key, value in values.items()
    }


def unflatten(items: Iterable[tuple[str, Any]]) -> Preferences:
    """Convert ("category.key", value) pairs back to a nested map."""
    result: Preferences = {}
    for path, value in items:
        category, _, key = path.partition(".")
        result.setdefault(category, {})[key] = value
    return result
