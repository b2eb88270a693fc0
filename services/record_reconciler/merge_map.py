"""
Merge-map building for document placeholders.

Callers accumulated several conventions for sending placeholder values:

- ``placeholders``: ``{"{{PROJECT}}": "...", "{{CONTENT}}": "..."}``
  (hand-curated, authoritative)
- ``mergeFields`` / ``fields`` / ``replacements`` / ``structuredInputs``:
  ``{"PROJECT": "...", "content": "..."}`` (generic field dumps)
- ``record``: a forwarded Airtable record, ``{"id": ..., "fields": {...}}``

Each convention is detected once at the ingress boundary and turned into a
tagged source; the builder then merges the sources in priority order, where
an earlier source always wins and later sources only fill gaps.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from .helpers import coerce, normalize_key

PLACEHOLDER_ALIASES = ("placeholders", "Placeholders")

FIELD_ALIASES = (
    "mergeFields",
    "mergefields",
    "fields",
    "replacements",
    "structuredInputs",
    "structuredinputs",
)


@dataclass(frozen=True)
class DirectPlaceholders:
    """Explicit placeholder map; written unconditionally."""
    values: Mapping


@dataclass(frozen=True)
class FlatFields:
    """Generic field dump; fills keys not set by placeholders."""
    values: Mapping
    alias: str


@dataclass(frozen=True)
class Nested:
    """Fields of a forwarded record; lowest priority."""
    values: Mapping
    record_id: Optional[str] = None


MergeSource = Union[DirectPlaceholders, FlatFields, Nested]


def _first_mapping(raw_body: Mapping, aliases) -> Optional[tuple]:
    # First truthy alias wins, even when a later alias is also present
    for alias in aliases:
        value = raw_body.get(alias)
        if value:
            return (alias, value) if isinstance(value, Mapping) else None
    return None


def _detect_placeholders(raw_body: Mapping) -> Optional[MergeSource]:
    found = _first_mapping(raw_body, PLACEHOLDER_ALIASES)
    return DirectPlaceholders(values=found[1]) if found else None


def _detect_flat_fields(raw_body: Mapping) -> Optional[MergeSource]:
    found = _first_mapping(raw_body, FIELD_ALIASES)
    return FlatFields(values=found[1], alias=found[0]) if found else None


def _detect_nested(raw_body: Mapping) -> Optional[MergeSource]:
    record = raw_body.get("record")
    if not isinstance(record, Mapping):
        return None
    fields = record.get("fields")
    if not isinstance(fields, Mapping) or not fields:
        return None
    record_id = record.get("id")
    return Nested(values=fields, record_id=record_id if isinstance(record_id, str) else None)


# Ordered by priority: earlier detectors produce more authoritative sources
SHAPE_DETECTORS: List[Callable[[Mapping], Optional[MergeSource]]] = [
    _detect_placeholders,
    _detect_flat_fields,
    _detect_nested,
]


def detect_sources(raw_body: Any) -> List[MergeSource]:
    """Resolve a raw request body into its merge sources, in priority order."""
    if not isinstance(raw_body, Mapping):
        return []

    sources = []
    for detector in SHAPE_DETECTORS:
        source = detector(raw_body)
        if source is not None:
            sources.append(source)
    return sources


def merge_sources(sources: List[MergeSource]) -> Dict[str, str]:
    """
    Merge tagged sources into one canonical map.

    The first source is written unconditionally; each later source only
    writes keys that are still missing. Empty keys and values that coerce
    to None are skipped.
    """
    out: Dict[str, str] = {}

    for index, source in enumerate(sources):
        authoritative = index == 0 and isinstance(source, DirectPlaceholders)
        for raw_key, raw_value in source.values.items():
            key = normalize_key(raw_key)
            value = coerce(raw_value)
            if not key or value is None:
                continue
            if authoritative or key not in out:
                out[key] = value

    return out


def build_merge_map(raw_body: Any) -> Dict[str, str]:
    """
    Extract and normalize all placeholder values from a request body.

    Returns a map with UPPERCASE keys (no braces).

    Example:
        >>> build_merge_map({
        ...     "placeholders": {"{{PROJECT}}": "A"},
        ...     "fields": {"PROJECT": "B", "CLIENT": "C"},
        ... })
        {'PROJECT': 'A', 'CLIENT': 'C'}
    """
    return merge_sources(detect_sources(raw_body))


def build_placeholders(merge: Mapping) -> Dict[str, str]:
    """
    Build a ``{{KEY}}`` placeholder map from a merge map.

    Example:
        >>> build_placeholders({"project": "Launch"})
        {'{{PROJECT}}': 'Launch'}
    """
    return {f"{{{{{str(key).upper()}}}}}": value for key, value in merge.items()}


def build_replace_requests(placeholders: Mapping) -> List[Dict[str, Any]]:
    """
    Build Google Docs ``batchUpdate`` replaceAllText requests.

    Args:
        placeholders: Map of ``{{KEY}}`` -> value

    Returns:
        One replaceAllText request per placeholder
    """
    return [
        {
            "replaceAllText": {
                "containsText": {"text": key, "matchCase": True},
                "replaceText": "" if value is None else str(value),
            }
        }
        for key, value in placeholders.items()
    ]


def describe_merge(merge: Mapping) -> Dict[str, Any]:
    """Summarize a merge map for logging without exposing values."""
    return {
        "placeholder_keys": sorted(merge),
        "content_length": len(merge.get("CONTENT") or ""),
        "inline_table_length": len(merge.get("INLINE_TABLE") or ""),
        "has_content": bool(merge.get("CONTENT")),
    }
