"""
Search session.

Ties the compiler, field metadata cache, field selection state and rate
limiter together for one active index: compiles operator input, paces and
retries the search call, and feeds returned documents back into the field
state and metadata cache.
"""

import logging
import threading
import time
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .config import AppConfig
from .documents import extract_field_names
from .fieldcache import FieldCache
from .models import (
    FieldCapsError,
    QueryBuildError,
    SearchError,
    SearchResult,
    ThrottledError,
)
from .parser import build_query
from .ratelimit import RateLimiter
from .state import FieldState

logger = logging.getLogger(__name__)


class SearchBackend(Protocol):
    """The external calls a session depends on."""

    def search(self, index: str, query: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], int]:
        ...

    def scroll_search(
        self, index: str, query: Dict[str, Any], scroll: str = "5m"
    ) -> Tuple[List[Dict[str, Any]], int, Optional[str]]:
        ...

    def scroll(self, scroll_id: str, scroll: str = "5m") -> Tuple[List[Dict[str, Any]], str]:
        ...

    def clear_scroll(self, scroll_id: str) -> None:
        ...

    def field_caps(self, index: str, fields: str = "*") -> Dict[str, Any]:
        ...

    def list_indices(self, pattern: str = "*") -> List[str]:
        ...


class SearchSession:
    """Owns the per-index caches and executes searches against a backend."""

    def __init__(
        self,
        backend: SearchBackend,
        config: Optional[AppConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        index: Optional[str] = None,
    ):
        """Initialize the session.

        Args:
            backend: Search, field capabilities and index listing provider
            config: Application configuration, defaults to AppConfig()
            rate_limiter: Optional limiter, built from config when omitted
            index: Initial index pattern, defaults to search.index_pattern
        """
        self.backend = backend
        self.config = config or AppConfig()
        self.rate_limiter = rate_limiter or RateLimiter(
            self.config.rate_limit.to_rate_limit_config()
        )
        self.index = index or self.config.search.index_pattern
        self._lock = threading.Lock()
        self.field_cache = FieldCache()
        self.field_state = FieldState(self.field_cache)

    def switch_index(self, index: str) -> None:
        """Select a new index, discarding the field cache and state."""
        with self._lock:
            self.index = index
            self.field_cache = FieldCache()
            self.field_state = FieldState(self.field_cache)
        logger.info("Switched to index %s", index)

    def list_indices(self, pattern: str = "*") -> List[str]:
        return self.backend.list_indices(pattern)

    def compile(
        self,
        filters: List[str],
        size: Optional[int] = None,
        timeframe: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Compile operator input against the current field cache.

        ``size`` and ``timeframe`` fall back to the configured defaults when
        None; pass an empty string to search without a timeframe.

        Raises:
            QueryBuildError: If size exceeds search.max_results or a filter
                fails to parse
            TimeframeError: If the timeframe is invalid
        """
        if size is None:
            size = self.config.search.default_num_results
        if size > self.config.search.max_results:
            raise QueryBuildError(
                f"size {size} exceeds max_results {self.config.search.max_results}"
            )
        if timeframe is None:
            timeframe = self.config.search.default_timeframe
        return build_query(filters, size, timeframe, self.field_cache, now)

    def execute(
        self,
        filters: List[str],
        size: Optional[int] = None,
        timeframe: Optional[str] = None,
        index: Optional[str] = None,
        now: Optional[datetime] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> SearchResult:
        """Compile and run a search, retrying while throttled.

        Sizes above search.large_result_limit are collected in batches
        through the scroll API.

        Args:
            filters: Filter tokens
            size: Number of documents to fetch
            timeframe: Timeframe expression
            index: Index to search, defaults to the session index
            now: Reference time for the timeframe
            cancel: Event that aborts a pending rate limiter wait
            timeout: Maximum seconds to wait for each rate limiter slot

        Returns:
            SearchResult with the flattened documents

        Raises:
            QueryBuildError: If the filters do not compile
            TimeframeError: If the timeframe is invalid
            WaitCancelled: If a rate limiter wait is cancelled
            SearchError: If the search fails or retries are exhausted
        """
        query = self.compile(filters, size, timeframe, now)
        target = index or self.index
        start_time = time.time()

        if self.config.search.should_use_scroll(query['size']):
            documents, total, attempts = self._scroll_search(target, query, cancel, timeout)
        else:
            (documents, total), attempts = self._call_with_retries(
                partial(self.backend.search, target, query), cancel, timeout
            )

        elapsed_ms = (time.time() - start_time) * 1000
        new_fields = self._absorb_documents(target, documents)
        return SearchResult(
            documents=documents,
            total_hits=total,
            query=query,
            attempts=attempts,
            execution_time_ms=elapsed_ms,
            new_fields=new_fields,
        )

    def _call_with_retries(
        self,
        request: Callable[[], Any],
        cancel: Optional[threading.Event],
        timeout: Optional[float],
    ) -> Tuple[Any, int]:
        """Run one paced backend request, backing off while throttled.

        Returns:
            Tuple of (request result, number of attempts)
        """
        max_retries = self.config.search.max_retries
        last_error: Optional[Exception] = None

        for attempt in range(1, max_retries + 1):
            self.rate_limiter.wait_for_slot(cancel, timeout)
            try:
                result = request()
            except ThrottledError as e:
                last_error = e
                delay = self.rate_limiter.handle_too_many_requests()
                logger.warning(
                    "Rate limited (attempt %d/%d), retrying in %.2fs",
                    attempt, max_retries, delay,
                )
                continue

            self.rate_limiter.reset()
            return result, attempt

        logger.warning("Giving up after %d throttled attempts", max_retries)
        raise SearchError(f"max retries exceeded: {last_error}")

    def _scroll_search(
        self,
        index: str,
        query: Dict[str, Any],
        cancel: Optional[threading.Event],
        timeout: Optional[float],
    ) -> Tuple[List[Dict[str, Any]], int, int]:
        """Collect up to ``query['size']`` documents in scroll batches.

        The scroll context is always cleared, also when a batch fails.
        """
        settings = self.config.search
        limit = query['size']
        batch_query = dict(query, size=settings.scroll_batch_size)

        (documents, total, scroll_id), attempts = self._call_with_retries(
            partial(self.backend.scroll_search, index, batch_query, settings.scroll_timeout),
            cancel, timeout,
        )
        documents = list(documents)
        logger.debug("Scroll opened on %s (%d of %d hits)", index, len(documents), total)

        try:
            while scroll_id and len(documents) < limit:
                (batch, scroll_id), used = self._call_with_retries(
                    partial(self.backend.scroll, scroll_id, settings.scroll_timeout),
                    cancel, timeout,
                )
                attempts += used
                if not batch:
                    break
                documents.extend(batch)
        finally:
            if scroll_id:
                self._clear_scroll(scroll_id)

        return documents[:limit], total, attempts

    def _clear_scroll(self, scroll_id: str) -> None:
        try:
            self.backend.clear_scroll(scroll_id)
        except (SearchError, ThrottledError) as e:
            logger.error("Failed to clear scroll: %s", e)

    def _absorb_documents(self, index: str, documents: List[Dict[str, Any]]) -> List[str]:
        """Update field state and metadata from a page of documents."""
        field_cache = self.field_cache
        discovered = set()
        for document in documents:
            discovered.update(extract_field_names(document))

        missing = field_cache.missing(discovered)
        if missing:
            try:
                self.refresh_field_metadata(index, missing)
            except FieldCapsError as e:
                logger.error("Failed to load field metadata for %s: %s", index, e)

        self.field_state.update_from_documents(documents)
        return missing

    def refresh_field_metadata(self, index: str, fields: Optional[List[str]] = None) -> bool:
        """Load field capabilities when any of the given fields is uncached.

        With no fields given the capabilities are always fetched. On failure
        the cache keeps whatever entries it already had.

        Args:
            index: Index to describe
            fields: Field names that need metadata

        Returns:
            True if capabilities were fetched

        Raises:
            FieldCapsError: If the fetch or decode fails
        """
        field_cache = self.field_cache
        if fields is not None and not field_cache.missing(fields):
            return False

        try:
            response = self.backend.field_caps(index, "*")
        except (SearchError, ThrottledError) as e:
            raise FieldCapsError(f"field caps error: {e}") from e

        field_cache.set_defaults()
        try:
            field_cache.populate_from_field_caps(response)
        except ValueError as e:
            raise FieldCapsError(f"error decoding field caps: {e}") from e

        logger.debug("Field metadata refreshed for %s (%d entries)", index, len(field_cache))
        return True
