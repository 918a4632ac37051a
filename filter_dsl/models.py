"""
Data models and error types for the filter DSL engine.

Defines dataclasses for field metadata and search results, plus the
exception hierarchy raised by the compiler, the timeframe resolver and
the search session.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

NUMERIC_TYPES = frozenset({"long", "integer", "float", "double"})
DATE_TYPE = "date"
BOOLEAN_TYPE = "boolean"
KEYWORD_TYPE = "keyword"


@dataclass
class FieldMetadata:
    """Query-relevant schema for a single field.

    Attributes:
        type: Field type as reported by field capabilities (keyword, long,
            integer, float, double, date, boolean, text, ...)
        searchable: Whether the field can be queried at all
        aggregatable: Whether the field supports aggregations
        active: Whether the field was seen in fetched documents
    """
    type: str = KEYWORD_TYPE
    searchable: bool = True
    aggregatable: bool = True
    active: bool = False

    @property
    def is_numeric(self) -> bool:
        return self.type in NUMERIC_TYPES

    @property
    def is_date(self) -> bool:
        return self.type == DATE_TYPE

    def copy(self) -> "FieldMetadata":
        return FieldMetadata(
            type=self.type,
            searchable=self.searchable,
            aggregatable=self.aggregatable,
            active=self.active,
        )


def default_field_metadata() -> FieldMetadata:
    """Metadata assumed for a field with no cache entry."""
    return FieldMetadata(type=KEYWORD_TYPE, searchable=True, aggregatable=True)


@dataclass
class SearchResult:
    """Result of executing a compiled query.

    Attributes:
        documents: Flattened documents returned by the backend
        total_hits: Total number of matching documents reported
        query: The compiled query that was sent
        attempts: Number of search attempts, including throttled ones
        execution_time_ms: Wall time spent in the search call
        new_fields: Fields that had no metadata before this search
    """
    documents: List[Dict[str, Any]]
    total_hits: int
    query: Dict[str, Any]
    attempts: int = 1
    execution_time_ms: float = 0.0
    new_fields: List[str] = field(default_factory=list)


class ParseError(ValueError):
    """A single filter token that could not be compiled."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"parse error on field '{self.field}': {self.message}"


class QueryBuildError(ValueError):
    """Raised when a query cannot be built.

    Holds every filter failure as ``(position, ParseError)`` pairs so callers
    can report them individually.
    """

    def __init__(self, message: str, errors: Optional[List[Tuple[int, ParseError]]] = None):
        self.errors = errors or []
        super().__init__(message)


class TimeframeError(ValueError):
    """Invalid relative timeframe expression."""


class ConfigError(ValueError):
    """Invalid configuration value."""


class ThrottledError(Exception):
    """The search backend signalled too many requests."""


class SearchError(Exception):
    """A search call failed for a reason other than a bad query."""


class FieldCapsError(Exception):
    """Fetching or decoding field capabilities failed."""


class WaitCancelled(Exception):
    """A rate limiter wait was cancelled or timed out."""
