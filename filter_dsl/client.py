"""
OpenSearch-backed search collaborator.

Adapts an ``opensearchpy.OpenSearch`` client to the calls the search
session needs: executing a compiled query (directly or through the scroll
API), fetching field capabilities and listing indices. Throttling responses
(HTTP 429) are surfaced as ThrottledError so the session can back off.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from opensearchpy import OpenSearch
from opensearchpy.exceptions import TransportError

from .config import OpenSearchSettings
from .documents import document_from_hit
from .models import SearchError, ThrottledError

logger = logging.getLogger(__name__)

TOO_MANY_REQUESTS = 429


def _is_throttled(error: TransportError) -> bool:
    status = getattr(error, 'status_code', None)
    return status == TOO_MANY_REQUESTS or '429' in str(status)


def total_hits(response: Dict[str, Any]) -> int:
    """Read ``hits.total``, which is an int or ``{"value": n}`` depending on version."""
    total = response.get('hits', {}).get('total', 0)
    if isinstance(total, dict):
        total = total.get('value', 0)
    try:
        return int(total)
    except (TypeError, ValueError):
        return 0


class OpenSearchBackend:
    """Search, field capabilities and index listing over OpenSearch."""

    def __init__(self, client: OpenSearch):
        self.client = client

    @classmethod
    def from_settings(cls, settings: OpenSearchSettings) -> "OpenSearchBackend":
        """Create a backend from connection settings.

        No request is sent until the first call.
        """
        http_auth = None
        if settings.username:
            http_auth = (settings.username, settings.password)
        client = OpenSearch(
            hosts=[{"host": settings.host, "port": settings.port}],
            use_ssl=settings.use_ssl,
            verify_certs=settings.verify_certs,
            ssl_show_warn=False,
            http_auth=http_auth,
        )
        return cls(client)

    def search(self, index: str, query: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], int]:
        """Run a compiled query.

        Args:
            index: Index name or pattern
            query: Request body produced by build_query

        Returns:
            Tuple of (documents, total hit count)

        Raises:
            ThrottledError: If the cluster rejected the request with 429
            SearchError: For any other transport failure
        """
        try:
            response = self.client.search(index=index, body=query)
        except TransportError as e:
            if _is_throttled(e):
                raise ThrottledError(f"search throttled on {index}: {e}") from e
            raise SearchError(f"search error: {e}") from e

        hits = response.get('hits', {}).get('hits', [])
        documents = [document_from_hit(hit) for hit in hits]
        return documents, total_hits(response)

    def scroll_search(
        self,
        index: str,
        query: Dict[str, Any],
        scroll: str = "5m",
    ) -> Tuple[List[Dict[str, Any]], int, Optional[str]]:
        """Open a scroll context with the first batch of a large search.

        Returns:
            Tuple of (documents, total hit count, scroll id)

        Raises:
            ThrottledError: If the cluster rejected the request with 429
            SearchError: For any other transport failure
        """
        try:
            response = self.client.search(index=index, body=query, scroll=scroll)
        except TransportError as e:
            if _is_throttled(e):
                raise ThrottledError(f"scroll search throttled on {index}: {e}") from e
            raise SearchError(f"initial scroll error: {e}") from e

        hits = response.get('hits', {}).get('hits', [])
        documents = [document_from_hit(hit) for hit in hits]
        return documents, total_hits(response), response.get('_scroll_id')

    def scroll(self, scroll_id: str, scroll: str = "5m") -> Tuple[List[Dict[str, Any]], str]:
        """Fetch the next batch of an open scroll context.

        Returns:
            Tuple of (documents, scroll id for the following batch)
        """
        try:
            response = self.client.scroll(scroll_id=scroll_id, scroll=scroll)
        except TransportError as e:
            if _is_throttled(e):
                raise ThrottledError(f"scroll throttled: {e}") from e
            raise SearchError(f"scroll error: {e}") from e

        hits = response.get('hits', {}).get('hits', [])
        documents = [document_from_hit(hit) for hit in hits]
        return documents, response.get('_scroll_id') or scroll_id

    def clear_scroll(self, scroll_id: str) -> None:
        try:
            self.client.clear_scroll(scroll_id=scroll_id)
        except TransportError as e:
            raise SearchError(f"failed to clear scroll: {e}") from e

    def field_caps(self, index: str, fields: str = "*") -> Dict[str, Any]:
        """Fetch field capabilities for an index."""
        try:
            return self.client.field_caps(index=index, fields=fields)
        except TransportError as e:
            if _is_throttled(e):
                raise ThrottledError(f"field caps throttled on {index}: {e}") from e
            raise SearchError(f"field caps error: {e}") from e

    def list_indices(self, pattern: str = "*") -> List[str]:
        """List visible index names matching a pattern, sorted."""
        try:
            indices = self.client.cat.indices(index=pattern, format="json")
        except TransportError as e:
            raise SearchError(f"failed to list indices: {e}") from e

        names = [
            item.get("index", "")
            for item in indices
            if item.get("index") and not item.get("index", "").startswith(".")
        ]
        return sorted(names)
