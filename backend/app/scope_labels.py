from __future__ import annotations

import re

STATEWIDE_LABEL = "Oklahoma"

_STATE_SUFFIX_RE = re.compile(r",\s*Oklahoma$", re.IGNORECASE)
_COUNTY_SUFFIX_RE = re.compile(r"\s+County$", re.IGNORECASE)


def _normalize_words(value: str) -> str:
    return " ".join(segment[:1].upper() + segment[1:].lower() for segment in value.split())


def normalize_scope_label(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return _normalize_words(trimmed)


def strip_county_suffix(value: str) -> str:
    return _COUNTY_SUFFIX_RE.sub("", value).strip()


def strip_state_suffix(value: str) -> str:
    return _STATE_SUFFIX_RE.sub("", value).strip()


def format_county_scope_label(value: object) -> str | None:
    """Canonical county label: "TULSA county", "Tulsa" and "Tulsa County, Oklahoma" all give "Tulsa County"."""
    normalized = normalize_scope_label(value)
    if not normalized:
        return None
    base = normalize_scope_label(strip_county_suffix(strip_state_suffix(normalized)))
    if not base:
        return None
    return f"{base} County"


def build_scope_label_aliases(value: object) -> list[str]:
    normalized = normalize_scope_label(value)
    if not normalized:
        return []
    aliases = [normalized]

    formatted = format_county_scope_label(value)
    if formatted and formatted not in aliases:
        aliases.append(formatted)

    base = normalize_scope_label(strip_county_suffix(strip_state_suffix(normalized)))
    if base and base not in aliases:
        aliases.append(base)
    return aliases


NORMALIZED_STATEWIDE_LABEL = normalize_scope_label(STATEWIDE_LABEL) or STATEWIDE_LABEL
