"""
Filter expression compiler.

Parses operator filter tokens (``field=value``, ``field>=value``, ...) into
Elasticsearch query clauses and combines them, together with an optional
timeframe clause, into a single bool query. Value handling is driven by the
field metadata cache: numeric, date and boolean fields get typed ``term`` or
``range`` clauses, everything else is treated as keyword text.
"""

import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from .fieldcache import FieldCache
from .models import (
    BOOLEAN_TYPE,
    FieldMetadata,
    ParseError,
    QueryBuildError,
    TimeframeError,
    default_field_metadata,
)
from .timeframe import build_time_query, epoch_millis

logger = logging.getLogger(__name__)

FIELD_NAME_PATTERN = re.compile(
    r'^[a-zA-Z][a-zA-Z0-9_-]*(?:\.[a-zA-Z][a-zA-Z0-9_-]*)*$'
)
NUMBER_PATTERN = re.compile(r'^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$')
RFC3339_PATTERN = re.compile(
    r'^(\d{4}-\d{2}-\d{2})T(\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})$'
)

RANGE_OPERATORS = {
    '>': 'gt',
    '>=': 'gte',
    '<': 'lt',
    '<=': 'lte',
}

# Fields with a fixed query shape, matched before any other syntax
ID_PREFIX = '_id='
DEDUP_PREFIX = 'detection_id_dedup='

ESCAPABLE = frozenset('\\*?=')
WILDCARDS = frozenset('*?')
MILLIS_THRESHOLD = 1e12


def is_valid_field_name(field: str) -> bool:
    """Check a field name: dot-separated segments starting with a letter."""
    return bool(FIELD_NAME_PATTERN.match(field))


def unescape_value(value: str) -> str:
    """Resolve backslash escapes in a filter value.

    Only ``\\``, ``*``, ``?`` and ``=`` can be escaped; any other escaped
    character keeps its backslash, and a trailing lone backslash is kept.
    """
    if '\\' not in value:
        return value

    result = []
    escaped = False
    for ch in value:
        if escaped:
            if ch not in ESCAPABLE:
                result.append('\\')
            result.append(ch)
            escaped = False
        elif ch == '\\':
            escaped = True
        else:
            result.append(ch)

    if escaped:
        result.append('\\')

    return ''.join(result)


def has_unescaped_wildcard(value: str) -> bool:
    """Return True if the value contains a ``*`` or ``?`` not preceded by ``\\``."""
    escaped = False
    for ch in value:
        if escaped:
            escaped = False
        elif ch == '\\':
            escaped = True
        elif ch in WILDCARDS:
            return True
    return False


def is_null_value(value: str) -> bool:
    return value.lower() in ('null', 'nil')


def parse_number(value: str) -> Optional[Union[int, float]]:
    """Parse a decimal number, returning None when the text is not one.

    Integral values come back as ``int`` so they serialize as ``21``
    rather than ``21.0``.
    """
    if not NUMBER_PATTERN.match(value):
        return None
    number = float(value)
    if not math.isfinite(number):
        return None
    if number.is_integer():
        return int(number)
    return number


def parse_date(value: str) -> Optional[int]:
    """Parse a date value into epoch milliseconds.

    Accepts a Unix timestamp (values above 1e12 in magnitude are taken as
    milliseconds, anything else as seconds) or an RFC3339 timestamp.

    Args:
        value: The raw value text

    Returns:
        Epoch milliseconds, or None when the value is not a date
    """
    number = parse_number(value)
    if number is not None:
        if abs(number) > MILLIS_THRESHOLD:
            return int(number)
        return int(number * 1000)

    match = RFC3339_PATTERN.match(value)
    if not match:
        return None

    date_part, time_part, fraction, offset = match.groups()
    fraction = (fraction or '.0')[1:7].ljust(6, '0')
    offset = '+00:00' if offset == 'Z' else offset
    try:
        moment = datetime.fromisoformat(f"{date_part}T{time_part}.{fraction}{offset}")
    except ValueError:
        return None
    return epoch_millis(moment.astimezone(timezone.utc))


class FilterParser:
    """Compiles filter tokens against a field metadata cache."""

    def __init__(self, field_cache: Optional[FieldCache] = None):
        """Initialize the parser.

        Args:
            field_cache: Metadata used for type-aware dispatch; fields without
                an entry are treated as searchable keywords
        """
        self.field_cache = field_cache

    def _metadata(self, field: str) -> FieldMetadata:
        meta = self.field_cache.get(field) if self.field_cache is not None else None
        return meta if meta is not None else default_field_metadata()

    def parse(self, filter_text: str) -> Dict[str, Any]:
        """Parse a single filter token into a query clause.

        Args:
            filter_text: Filter token such as ``status=active`` or ``age>=21``

        Returns:
            The query clause

        Raises:
            ParseError: If the token is malformed or does not fit the field type
        """
        text = filter_text.strip()
        if not text:
            raise ParseError("", "empty filter")

        if text.startswith(ID_PREFIX):
            value = text[len(ID_PREFIX):].strip()
            return {'ids': {'values': [value]}}

        if text.startswith(DEDUP_PREFIX):
            value = text[len(DEDUP_PREFIX):].strip()
            return {'term': {'detection_id_dedup': value}}

        clause = self._parse_range(text)
        if clause is not None:
            return clause

        if '=' not in text:
            raise ParseError(text, "invalid filter format, expected 'field=value' or range query")

        field_name, value = text.split('=', 1)
        field_name = field_name.strip()
        value = value.strip()

        if not is_valid_field_name(field_name):
            raise ParseError(field_name, "invalid field name")

        meta = self._metadata(field_name)
        if not meta.searchable:
            raise ParseError(field_name, "field is not searchable")

        if meta.is_numeric:
            return self._numeric_term(field_name, value, meta)
        if meta.is_date:
            return self._date_term(field_name, value)
        if meta.type == BOOLEAN_TYPE:
            return self._boolean_term(field_name, value)
        return self._keyword_clause(field_name, value)

    def _parse_range(self, text: str) -> Optional[Dict[str, Any]]:
        """Parse ``field<op>value`` syntax, or return None if there is no operator."""
        op_start = next((i for i, ch in enumerate(text) if ch in '<>'), -1)
        if op_start == -1:
            return None

        field_name = text[:op_start].strip()
        if not is_valid_field_name(field_name):
            raise ParseError(field_name, "invalid field name in range query")

        op_end = op_start + 1
        if op_end < len(text) and text[op_end] == '=':
            op_end += 1
        operator = text[op_start:op_end]

        value = text[op_end:].strip()
        if not value:
            raise ParseError(field_name, "missing value in range query")

        meta = self._metadata(field_name)
        if not meta.searchable:
            raise ParseError(field_name, "field is not searchable")

        if meta.is_numeric:
            bound: Any = parse_number(value)
            if bound is None:
                raise ParseError(field_name, f"invalid numeric value in range query: {value}")
        elif meta.is_date:
            bound = parse_date(value)
            if bound is None:
                raise ParseError(
                    field_name,
                    f"invalid date value in range query: {value} "
                    "(expected unix timestamp or RFC3339)",
                )
        else:
            raise ParseError(
                field_name,
                f"range query not supported for field of type '{meta.type}'",
            )

        return {'range': {field_name: {RANGE_OPERATORS[operator]: bound}}}

    def _numeric_term(self, field_name: str, value: str, meta: FieldMetadata) -> Dict[str, Any]:
        number = parse_number(value)
        if number is None:
            raise ParseError(field_name, f"invalid numeric value for {meta.type} field: {value}")
        return {'term': {field_name: number}}

    def _date_term(self, field_name: str, value: str) -> Dict[str, Any]:
        millis = parse_date(value)
        if millis is None:
            raise ParseError(
                field_name,
                f"invalid date value: {value} (expected unix timestamp or RFC3339)",
            )
        return {'term': {field_name: millis}}

    def _boolean_term(self, field_name: str, value: str) -> Dict[str, Any]:
        lowered = value.lower()
        if lowered not in ('true', 'false'):
            raise ParseError(field_name, f"invalid boolean value: {value} (expected true or false)")
        return {'term': {field_name: lowered == 'true'}}

    def _keyword_clause(self, field_name: str, value: str) -> Dict[str, Any]:
        if is_null_value(value):
            return {'bool': {'must_not': {'exists': {'field': field_name}}}}

        if value and value[0] in WILDCARDS:
            raise ParseError(field_name, f"wildcard query cannot start with {value[0]}")

        if has_unescaped_wildcard(value):
            return {'wildcard': {field_name: unescape_value(value)}}

        return {'match': {field_name: unescape_value(value)}}


def parse_filter(filter_text: str, field_cache: Optional[FieldCache] = None) -> Dict[str, Any]:
    """Parse one filter token.

    Args:
        filter_text: The filter token
        field_cache: Optional field metadata for type-aware parsing

    Returns:
        The query clause

    Raises:
        ParseError: If the filter is malformed
    """
    return FilterParser(field_cache).parse(filter_text)


def parse_filters(
    filters: List[str],
    field_cache: Optional[FieldCache] = None,
) -> Tuple[List[Dict[str, Any]], List[Tuple[int, ParseError]]]:
    """Parse every filter, collecting clauses and positional errors."""
    parser = FilterParser(field_cache)
    clauses: List[Dict[str, Any]] = []
    errors: List[Tuple[int, ParseError]] = []

    for i, filter_text in enumerate(filters):
        try:
            clauses.append(parser.parse(filter_text))
        except ParseError as e:
            logger.debug("Filter %d rejected: %s", i, e)
            errors.append((i, e))

    return clauses, errors


def build_query(
    filters: List[str],
    size: int,
    timeframe: str = "",
    field_cache: Optional[FieldCache] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Combine filters and a timeframe into one search request body.

    Compilation is all-or-nothing: if any filter fails, no query is
    returned and every failure is reported in one error.

    Args:
        filters: Filter tokens, ANDed in order
        size: Number of documents to request
        timeframe: Optional timeframe expression
        field_cache: Field metadata snapshot
        now: Reference time for the timeframe, defaults to the current
            local time

    Returns:
        ``{"query": ..., "size": size}``

    Raises:
        QueryBuildError: If size is negative or any filter fails to parse
        TimeframeError: If the timeframe is invalid
    """
    if size < 0:
        raise QueryBuildError(f"size must be non-negative, got {size}")

    must: List[Dict[str, Any]] = []

    if timeframe:
        reference = now if now is not None else datetime.now().astimezone()
        try:
            time_clause = build_time_query(timeframe, reference)
        except TimeframeError as e:
            raise TimeframeError(f"error building time query: {e}") from e
        if time_clause is not None:
            must.append(time_clause)

    clauses, errors = parse_filters(filters, field_cache)
    if errors:
        details = "; ".join(f"filter[{i}]: {e}" for i, e in errors)
        raise QueryBuildError(f"failed to parse filters: {details}", errors)

    must.extend(clauses)

    if not must:
        return {'query': {'match_all': {}}, 'size': size}

    return {'query': {'bool': {'must': must}}, 'size': size}
