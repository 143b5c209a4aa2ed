"""Tests for the preference registry."""

from __future__ import annotations

from typing import Any

import pytest

from profilesync.sync.preferences import (
    CATEGORIES,
    PreferenceCoercionError,
    PreferenceKind,
    coerce,
    defaults,
    flatten,
    get_spec,
    unflatten,
)


class TestRegistry:
    """Tests for the declared preferences."""

    def test_get_spec(self) -> None:
        spec = get_spec("terminal", "fontSize")
        assert spec is not None
        assert spec.kind is PreferenceKind.FLOAT
        assert spec.path == "terminal.fontSize"

    def test_unknown_key(self) -> None:
        assert get_spec("terminal", "blinkRate") is None
        assert get_spec("plugins", "fontSize") is None

    def test_categories(self) -> None:
        assert CATEGORIES == ("general", "security", "terminal", "ui", "connection")

    def test_defaults_cover_every_category(self) -> None:
        values = defaults()
        assert set(values) == set(CATEGORIES)
        assert values["terminal"]["fontSize"] == 14.0
        assert values["connection"]["defaultPort"] == 22
        assert values["security"]["strictHostKeyChecking"] is True


class TestCoerce:
    """Tests for coerce()."""

    @pytest.mark.parametrize(
        ("category", "key", "value", "expected"),
        [
            ("terminal", "fontSize", "16", 16.0),
            ("terminal", "fontSize", 12, 12.0),
            ("ui", "maxTabs", "3.7", 3),
            ("ui", "maxTabs", True, 1),
            ("ui", "confirmTabClose", "false", False),
            ("ui", "confirmTabClose", " Yes ", True),
            ("ui", "confirmTabClose", 0, False),
            ("general", "language", 5, "5"),
        ],
    )
    def test_converts(self, category: str, key: str, value: Any, expected: Any) -> None:
        spec = get_spec(category, key)
        assert spec is not None
        result = coerce(spec, value)
        assert result == expected
        assert type(result) is type(expected)

    @pytest.mark.parametrize(
        ("category", "key", "value"),
        [
            ("ui", "maxTabs", "lots"),
            ("ui", "confirmTabClose", "maybe"),
            ("terminal", "fontSize", None),
            ("general", "language", {"nested": 1}),
            ("general", "language", [1, 2]),
        ],
    )
    def test_rejects(self, category: str, key: str, value: Any) -> None:
        spec = get_spec(category, key)
        assert spec is not None
        with pytest.raises(PreferenceCoercionError, match=f"{category}.{key}"):
            coerce(spec, value)

    def test_error_is_value_error(self) -> None:
        assert issubclass(PreferenceCoercionError, ValueError)


class TestFlatten:
    """Tests for flatten() and unflatten()."""

    def test_flatten(self) -> None:
        assert flatten({"ui": {"maxTabs": 5}, "terminal": {"theme": "nord"}}) == {
            "ui.maxTabs": 5,
            "terminal.theme": "nord",
        }

    def test_unflatten(self) -> None:
        items = [("ui.maxTabs", 5), ("ui.appTheme", "dark"), ("terminal.theme", "nord")]
        assert unflatten(items) == {
            "ui": {"maxTabs": 5, "appTheme": "dark"},
            "terminal": {"theme": "nord"},
        }

    def test_key_may_contain_dots(self) -> None:
        assert unflatten([("plugins.a.b", 1)]) == {"plugins": {"a.b": 1}}
