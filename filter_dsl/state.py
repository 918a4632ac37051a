"""
Field selection state for the current index.

Tracks which fields have been discovered in fetched documents, which of
them the operator has selected for display and in what order. A single
lock guards all attributes so that the selected fields always remain a
subset of the discovered ones.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Set

from .documents import extract_field_names
from .fieldcache import FieldCache

logger = logging.getLogger(__name__)


class FieldState:
    """Discovered and selected fields with their display order."""

    def __init__(self, field_cache: Optional[FieldCache] = None):
        """Initialize empty field state.

        Args:
            field_cache: Optional metadata cache whose entries are marked
                active when their field is discovered
        """
        self.field_cache = field_cache
        self._lock = threading.RLock()
        self._discovered: Set[str] = set()
        self._selected: Set[str] = set()
        self._order: List[str] = []
        self._current_filter = ""
        self._filtered: List[str] = []

    def reset(self) -> None:
        """Forget every discovered and selected field."""
        with self._lock:
            self._discovered = set()
            self._selected = set()
            self._order = []
            self._current_filter = ""
            self._filtered = []

    def update_from_documents(self, documents: Iterable[Dict[str, Any]]) -> bool:
        """Replace the discovered fields with those found in a batch.

        Selected fields that no longer appear are dropped. An empty batch,
        or a batch with exactly the current field set, changes nothing; a
        batch of documents without any field clears the discovered fields.

        Args:
            documents: Document dictionaries from one search

        Returns:
            True if the discovered fields changed
        """
        documents = list(documents)
        if not documents:
            return False

        found: Set[str] = set()
        for document in documents:
            found.update(extract_field_names(document))

        with self._lock:
            if found == self._discovered:
                return False

            added = found - self._discovered
            self._discovered = found
            self._selected &= found
            self._order = [f for f in self._order if f in found]
            self._refresh_filtered()

        logger.debug("Discovered %d fields (%d new)", len(found), len(added))

        if self.field_cache is not None:
            self.field_cache.mark_active(found)

        return True

    def select_field(self, field: str) -> bool:
        """Select a discovered field, appending it to the display order.

        Returns:
            True if the field was newly selected
        """
        with self._lock:
            if field not in self._discovered or field in self._selected:
                return False
            self._selected.add(field)
            self._order.append(field)
            self._refresh_filtered()
            return True

    def unselect_field(self, field: str) -> bool:
        """Remove a field from the selection and the display order.

        Returns:
            True if the field was selected before
        """
        with self._lock:
            if field not in self._selected:
                return False
            self._selected.discard(field)
            self._order.remove(field)
            self._refresh_filtered()
            return True

    def toggle_field(self, field: str) -> bool:
        """Flip the selection of a field. Returns the new selection state."""
        with self._lock:
            if field in self._selected:
                self.unselect_field(field)
                return False
            self.select_field(field)
            return field in self._selected

    def move_field(self, field: str, up: bool) -> bool:
        """Swap a selected field with its neighbour in the display order.

        Args:
            field: The selected field to move
            up: Move towards the start of the order if True

        Returns:
            True if the field moved
        """
        with self._lock:
            if field not in self._selected:
                return False

            pos = self._order.index(field)
            new_pos = pos - 1 if up else pos + 1
            if new_pos < 0 or new_pos >= len(self._order):
                return False

            self._order[pos], self._order[new_pos] = self._order[new_pos], self._order[pos]
            return True

    def apply_filter(self, substring: str) -> List[str]:
        """Find unselected fields containing a substring, case-insensitively.

        Args:
            substring: Text to look for; empty matches every unselected field

        Returns:
            Matching fields in lexicographic order
        """
        with self._lock:
            self._current_filter = substring
            self._refresh_filtered()
            return list(self._filtered)

    def _refresh_filtered(self) -> None:
        needle = self._current_filter.lower()
        self._filtered = sorted(
            f for f in self._discovered
            if f not in self._selected and needle in f.lower()
        )

    @property
    def current_filter(self) -> str:
        with self._lock:
            return self._current_filter

    def get_filtered_fields(self) -> List[str]:
        """Result of the last filter, kept current across selection changes."""
        with self._lock:
            return list(self._filtered)

    def get_ordered_selected_fields(self) -> List[str]:
        with self._lock:
            return list(self._order)

    def get_discovered_fields(self) -> List[str]:
        with self._lock:
            return sorted(self._discovered)

    def is_field_selected(self, field: str) -> bool:
        with self._lock:
            return field in self._selected
