"""
FastAPI application for the filter DSL engine.

Provides endpoints for:
- Compiling filter tokens and timeframes into search request bodies
- Validating timeframe expressions
- Running searches through the rate-limited search session
- Managing the discovered/selected field lists of the session
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from .client import OpenSearchBackend
from .config import AppConfig, load_config
from .engine import SearchSession
from .models import (
    QueryBuildError,
    SearchError,
    TimeframeError,
    WaitCancelled,
)
from .parser import build_query, parse_date
from .timeframe import parse_timeframe, validate_timeframe

logger = logging.getLogger(__name__)


# Pydantic models for API requests/responses


class FilterError(BaseModel):
    """A single rejected filter."""
    position: int
    field: str
    message: str


class CompileRequest(BaseModel):
    """Request to compile filters into a query."""
    filters: List[str] = Field(default_factory=list, description="Filter tokens, ANDed in order")
    size: int = Field(20, description="Number of documents to request")
    timeframe: str = Field("", description="Timeframe such as 12h, 7d or week")
    now: Optional[str] = Field(
        None, description="Reference time as unix timestamp or RFC3339, defaults to now"
    )


class CompileResponse(BaseModel):
    """A compiled search request body."""
    query: Dict[str, Any]


class TimeframeRequest(BaseModel):
    """Request to validate a timeframe."""
    timeframe: str


class TimeframeResponse(BaseModel):
    """Timeframe validation result."""
    valid: bool
    duration_seconds: Optional[float] = None
    error: Optional[str] = None


class SearchRequest(CompileRequest):
    """Request to run a search through the session."""
    index: Optional[str] = Field(None, description="Index pattern, defaults to the session index")
    timeout: Optional[float] = Field(None, description="Seconds to wait for a rate limit slot")


class SearchResponse(BaseModel):
    """Documents returned by a search."""
    documents: List[Dict[str, Any]]
    total_hits: int
    attempts: int
    execution_time_ms: float
    selected_fields: List[str]
    new_fields: List[str] = Field(default_factory=list)


class FieldsResponse(BaseModel):
    """Field lists of the current session."""
    discovered: List[str]
    selected: List[str]
    available: List[str]
    filter: str = ""


class FieldAction(BaseModel):
    """Request to select, unselect or move a field."""
    field: str
    up: bool = True


class FieldActionResponse(BaseModel):
    """Outcome of a field action."""
    changed: bool
    selected: List[str]


def parse_reference_time(value: Optional[str]) -> datetime:
    """Parse the optional ``now`` parameter of compile requests.

    The result is in local time so that ``today`` starts at local midnight.

    Raises:
        HTTPException: If the value is not a unix timestamp or RFC3339 time
    """
    if not value:
        return datetime.now().astimezone()
    millis = parse_date(value.strip())
    if millis is None:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid reference time: {value}"
        )
    return datetime.fromtimestamp(millis / 1000).astimezone()


def build_default_session(config: Optional[AppConfig] = None) -> SearchSession:
    """Create a session backed by OpenSearch using the loaded configuration."""
    config = config or load_config()
    backend = OpenSearchBackend.from_settings(config.opensearch)
    return SearchSession(backend, config)


def create_app(session: Optional[SearchSession] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        session: Optional search session (for testing); compile and
            timeframe endpoints work without one

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Filter DSL API",
        description="REST API for compiling operator filters into search queries",
        version="1.0.0"
    )

    def require_session() -> SearchSession:
        if session is None:
            raise HTTPException(
                status_code=503,
                detail="No search session configured"
            )
        return session

    # API Routes

    @app.post("/api/query/compile", response_model=CompileResponse)
    async def compile_query(request: CompileRequest) -> CompileResponse:
        """Compile filters and a timeframe into a search request body.

        Uses the session's field metadata when a session is configured.

        Raises:
            HTTPException: 400 with per-filter details if compilation fails
        """
        now = parse_reference_time(request.now)
        field_cache = session.field_cache if session is not None else None

        try:
            query = build_query(request.filters, request.size, request.timeframe, field_cache, now)
        except QueryBuildError as e:
            raise HTTPException(
                status_code=400,
                detail={
                    "message": str(e),
                    "errors": [
                        FilterError(position=i, field=err.field, message=err.message).model_dump()
                        for i, err in e.errors
                    ],
                }
            )
        except TimeframeError as e:
            raise HTTPException(
                status_code=400,
                detail={"message": str(e), "errors": []}
            )

        return CompileResponse(query=query)

    @app.post("/api/timeframe/validate", response_model=TimeframeResponse)
    async def check_timeframe(request: TimeframeRequest) -> TimeframeResponse:
        """Validate a timeframe and report the duration it covers."""
        try:
            validate_timeframe(request.timeframe)
            duration = parse_timeframe(request.timeframe)
        except TimeframeError as e:
            return TimeframeResponse(valid=False, error=str(e))

        return TimeframeResponse(valid=True, duration_seconds=duration.total_seconds())

    @app.post("/api/search", response_model=SearchResponse)
    def run_search(request: SearchRequest) -> SearchResponse:
        """Run a search and absorb the returned fields into the session.

        Raises:
            HTTPException: 400 for bad input, 429 when throttling persists,
                502 for backend failures, 503 without a session
        """
        active = require_session()
        now = parse_reference_time(request.now)

        try:
            result = active.execute(
                request.filters,
                size=request.size,
                timeframe=request.timeframe,
                index=request.index,
                now=now,
                timeout=request.timeout,
            )
        except (QueryBuildError, TimeframeError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        except WaitCancelled as e:
            raise HTTPException(status_code=429, detail=str(e))
        except SearchError as e:
            status = 429 if "max retries exceeded" in str(e) else 502
            raise HTTPException(status_code=status, detail=str(e))

        return SearchResponse(
            documents=result.documents,
            total_hits=result.total_hits,
            attempts=result.attempts,
            execution_time_ms=result.execution_time_ms,
            selected_fields=active.field_state.get_ordered_selected_fields(),
            new_fields=result.new_fields,
        )

    @app.get("/api/fields", response_model=FieldsResponse)
    async def list_fields(filter: str = Query("", description="Substring to match")) -> FieldsResponse:
        """Get discovered, selected and matching unselected fields."""
        state = require_session().field_state
        available = state.apply_filter(filter)
        return FieldsResponse(
            discovered=state.get_discovered_fields(),
            selected=state.get_ordered_selected_fields(),
            available=available,
            filter=filter,
        )

    @app.post("/api/fields/select", response_model=FieldActionResponse)
    async def select_field(request: FieldAction) -> FieldActionResponse:
        """Select a discovered field for display."""
        state = require_session().field_state
        changed = state.select_field(request.field)
        return FieldActionResponse(changed=changed, selected=state.get_ordered_selected_fields())

    @app.post("/api/fields/unselect", response_model=FieldActionResponse)
    async def unselect_field(request: FieldAction) -> FieldActionResponse:
        """Remove a field from the display selection."""
        state = require_session().field_state
        changed = state.unselect_field(request.field)
        return FieldActionResponse(changed=changed, selected=state.get_ordered_selected_fields())

    @app.post("/api/fields/move", response_model=FieldActionResponse)
    async def move_field(request: FieldAction) -> FieldActionResponse:
        """Move a selected field one position up or down."""
        state = require_session().field_state
        changed = state.move_field(request.field, request.up)
        return FieldActionResponse(changed=changed, selected=state.get_ordered_selected_fields())

    @app.get("/api/indices", response_model=List[str])
    def list_indices(pattern: str = Query("*", description="Index glob")) -> List[str]:
        """List indices matching a glob."""
        active = require_session()
        try:
            return active.list_indices(pattern)
        except SearchError as e:
            raise HTTPException(status_code=502, detail=str(e))

    @app.get("/health")
    async def health_check() -> Dict[str, str]:
        """Health check endpoint.

        Returns:
            Health status
        """
        return {"status": "healthy"}

    return app


def create_default_app() -> FastAPI:
    """App factory for ``uvicorn --factory filter_dsl.api:create_default_app``."""
    return create_app(build_default_session())
