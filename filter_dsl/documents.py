"""
Helpers for turning search hits into flat documents and field names.
"""

from typing import Any, Dict, List

METADATA_FIELDS = ('_id', '_index', '_score')


def document_from_hit(hit: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a raw search hit into a document map.

    The ``_source`` body is kept as-is (nested objects stay nested) and the
    hit metadata (``_id``, ``_index`` and a non-null ``_score``) is added
    alongside it.

    Args:
        hit: A single entry of ``hits.hits``

    Returns:
        Document dictionary
    """
    source = hit.get('_source') or {}
    document: Dict[str, Any] = dict(source) if isinstance(source, dict) else {}
    for key in METADATA_FIELDS:
        if hit.get(key) is not None:
            document[key] = hit[key]
    return document


def extract_field_names(document: Dict[str, Any]) -> List[str]:
    """List the dotted paths of every leaf value in a document.

    Nested objects are walked; lists and scalars (including None) are
    leaves and empty objects contribute nothing, so
    ``{"user": {"tags": ["a"], "meta": {}}}`` yields ``["user.tags"]``.

    Args:
        document: Document dictionary

    Returns:
        Sorted field paths
    """
    fields: List[str] = []
    _collect_fields(document, '', fields)
    return sorted(fields)


def _collect_fields(data: Dict[str, Any], prefix: str, fields: List[str]) -> None:
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            _collect_fields(value, path, fields)
        else:
            fields.append(path)
