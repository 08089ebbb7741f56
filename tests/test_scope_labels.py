from __future__ import annotations

import pytest

from backend.app.scope_labels import (
    build_scope_label_aliases,
    format_county_scope_label,
    normalize_scope_label,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("  tulsa   county ", "Tulsa County"), ("OKLAHOMA", "Oklahoma"), ("", None), (None, None), (5, None)],
)
def test_normalize_scope_label(raw, expected):
    assert normalize_scope_label(raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["Tulsa", "TULSA county", "Tulsa County, Oklahoma", "tulsa county,  oklahoma"],
)
def test_format_county_scope_label(raw):
    assert format_county_scope_label(raw) == "Tulsa County"


def test_format_county_scope_label_rejects_blank():
    assert format_county_scope_label("   ") is None


def test_build_scope_label_aliases():
    assert build_scope_label_aliases("tulsa county") == ["Tulsa County", "Tulsa"]
    assert build_scope_label_aliases("Creek") == ["Creek", "Creek County"]
    assert build_scope_label_aliases(None) == []
