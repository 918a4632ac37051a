"""
Thread-safe field metadata cache.

Maps field names to FieldMetadata for the currently selected index. The
cache has no TTL or eviction; a new instance is created whenever the index
or session changes.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from .models import FieldMetadata, KEYWORD_TYPE

logger = logging.getLogger(__name__)

DEFAULT_FIELDS: Dict[str, FieldMetadata] = {
    "_id": FieldMetadata(type=KEYWORD_TYPE, searchable=True, aggregatable=True, active=False),
    "_index": FieldMetadata(type=KEYWORD_TYPE, searchable=True, aggregatable=True, active=False),
}


class FieldCache:
    """Concurrent field name to metadata store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._fields: Dict[str, FieldMetadata] = {}

    def get(self, field: str) -> Optional[FieldMetadata]:
        """Get metadata for a field.

        Args:
            field: The field name

        Returns:
            The cached metadata or None if the field is unknown
        """
        with self._lock:
            return self._fields.get(field)

    def set(self, field: str, metadata: FieldMetadata) -> None:
        """Store metadata for a field, replacing any previous entry."""
        with self._lock:
            self._fields[field] = metadata

    def __contains__(self, field: str) -> bool:
        with self._lock:
            return field in self._fields

    def __len__(self) -> int:
        with self._lock:
            return len(self._fields)

    def missing(self, fields: Iterable[str]) -> List[str]:
        """Return the fields that have no cache entry, sorted."""
        with self._lock:
            return sorted(f for f in set(fields) if f not in self._fields)

    def mark_active(self, fields: Iterable[str]) -> None:
        """Flag cached fields as present in fetched documents."""
        with self._lock:
            for name in fields:
                meta = self._fields.get(name)
                if meta is not None:
                    meta.active = True

    def snapshot(self) -> Dict[str, FieldMetadata]:
        """Return a copy of every entry."""
        with self._lock:
            return {name: meta.copy() for name, meta in self._fields.items()}

    def set_defaults(self) -> None:
        """Seed metadata for the built-in document fields."""
        for name, meta in DEFAULT_FIELDS.items():
            self.set(name, meta.copy())

    def populate_from_field_caps(self, response: Dict[str, Any]) -> int:
        """Load entries from a field capabilities response.

        The response has the shape ``{"fields": {name: {type: {...}}}}``.
        When a field is reported under several types the first one in
        response order is kept.

        Args:
            response: Decoded field capabilities body

        Returns:
            Number of fields stored

        Raises:
            ValueError: If the response does not have the expected shape
        """
        fields = response.get("fields") if isinstance(response, dict) else None
        if not isinstance(fields, dict):
            raise ValueError("field capabilities response has no 'fields' object")

        stored = 0
        for name, types in fields.items():
            if not isinstance(types, dict) or not types:
                continue
            type_name, caps = next(iter(types.items()))
            caps = caps if isinstance(caps, dict) else {}
            if len(types) > 1:
                logger.debug(
                    "Field %s reported with types %s, using %s",
                    name, list(types), type_name,
                )
            self.set(name, FieldMetadata(
                type=caps.get("type", type_name),
                searchable=bool(caps.get("searchable", True)),
                aggregatable=bool(caps.get("aggregatable", False)),
                active=False,
            ))
            stored += 1

        logger.debug("Cached metadata for %d fields", stored)
        return stored
