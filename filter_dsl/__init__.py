"""
Filter DSL Engine Package.

Compiles operator filter expressions into Elasticsearch/OpenSearch queries,
tracks field metadata and display selection, and paces search requests.
"""

from .engine import SearchSession
from .fieldcache import FieldCache
from .models import (
    FieldCapsError,
    FieldMetadata,
    ParseError,
    QueryBuildError,
    SearchError,
    SearchResult,
    ThrottledError,
    TimeframeError,
    WaitCancelled,
)
from .parser import build_query, parse_filter
from .ratelimit import RateLimitConfig, RateLimiter
from .state import FieldState
from .timeframe import build_time_query, parse_timeframe, validate_timeframe

__all__ = [
    'FieldCache',
    'FieldCapsError',
    'FieldMetadata',
    'FieldState',
    'ParseError',
    'QueryBuildError',
    'RateLimitConfig',
    'RateLimiter',
    'SearchError',
    'SearchResult',
    'SearchSession',
    'ThrottledError',
    'TimeframeError',
    'WaitCancelled',
    'build_query',
    'build_time_query',
    'parse_filter',
    'parse_timeframe',
    'validate_timeframe',
]
