from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from collections import OrderedDict
from typing import Callable, List, Optional, Tuple
import logging
import threading
import time
import uuid

from offer_analytics.config import configure_logging, get_report_registry, settings
from offer_analytics.constants import DATE_PRESETS, FILTER_TYPES, GROUP_BY_OPTIONS, MAX_GROUPINGS, REPORT_COLUMNS
from offer_analytics.exceptions import BackendError, NotFoundError, ReportInputError, ServiceError, error_payload
from offer_analytics.models.schemas import (
    CacheClearResponse,
    CacheStats,
    ColumnToggleRequest,
    ContextUpdate,
    DomainList,
    DrillDownRequest,
    DrillDownView,
    FilterSuggestion,
    GroupingField,
    GroupingUpdate,
    PageRequest,
    ReportContext,
    ReportView,
    RowToggleRequest,
    SavedReportConfig,
    SavedReportCreate,
    SavedReportUpdate,
    SearchRequest,
    SessionCreated,
    SortRequest,
)
from offer_analytics.services.analytics_client import AnalyticsApiClient
from offer_analytics.services.export_service import CSV_MEDIA_TYPE, export_filename
from offer_analytics.services.query_cache_service import get_query_cache, initialize_query_cache
from offer_analytics.services.report_controller import ReportController

logger = logging.getLogger(__name__)

app = FastAPI(title="Offer Analytics API", version="1.0.0")

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://frontend:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# ERROR HANDLERS
# ============================================================================

def _error_response(exc: ServiceError, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_payload(exc, status_code))


@app.exception_handler(ReportInputError)
async def report_input_error_handler(request: Request, exc: ReportInputError):
    return _error_response(exc, 400)


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    return _error_response(exc, 404)


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    return _error_response(exc, 502)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    logger.exception(f"Unhandled service error: {exc.message}")
    return _error_response(exc, 500)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_analytics_client() -> AnalyticsApiClient:
    """Backend client built from settings (overridden in tests)."""
    return AnalyticsApiClient(settings.api_url, token=settings.api_token, timeout=settings.api_timeout)


class SessionStore:
    """
    In-memory report sessions, one controller per session id.

    Sessions idle for longer than `idle_seconds` are dropped, and once
    `max_sessions` is reached the least recently used session makes room for a
    new one. Dropped controllers are closed so their pending searches stop.
    """

    def __init__(self, idle_seconds: float = 3600, max_sessions: int = 500, clock: Callable[[], float] = time.monotonic):
        self.idle_seconds = idle_seconds
        self.max_sessions = max_sessions
        self._clock = clock
        self._sessions: "OrderedDict[str, Tuple[ReportController, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _drop_idle(self, now: float) -> List[ReportController]:
        dropped = []
        if not self.idle_seconds:
            return dropped
        # Oldest first; stop at the first session still in use
        while self._sessions:
            session_id, (controller, last_used) = next(iter(self._sessions.items()))
            if now - last_used <= self.idle_seconds:
                break
            del self._sessions[session_id]
            logger.info(f"Expired idle report session {session_id}")
            dropped.append(controller)
        return dropped

    def create(self, controller: ReportController) -> str:
        session_id = str(uuid.uuid4())
        with self._lock:
            now = self._clock()
            dropped = self._drop_idle(now)
            while self.max_sessions and len(self._sessions) >= self.max_sessions:
                evicted_id, (evicted, _) = self._sessions.popitem(last=False)
                logger.info(f"Evicted least recently used report session {evicted_id}")
                dropped.append(evicted)
            self._sessions[session_id] = (controller, now)
        for stale in dropped:
            stale.close()
        return session_id

    def get(self, session_id: str) -> ReportController:
        with self._lock:
            now = self._clock()
            dropped = self._drop_idle(now)
            entry = self._sessions.get(session_id)
            if entry is not None:
                self._sessions[session_id] = (entry[0], now)
                self._sessions.move_to_end(session_id)
        for stale in dropped:
            stale.close()
        if entry is None:
            raise NotFoundError(f"Session {session_id} not found", code='session_not_found')
        return entry[0]

    def delete(self, session_id: str) -> bool:
        with self._lock:
            entry = self._sessions.pop(session_id, None)
        if entry is None:
            return False
        entry[0].close()
        return True


sessions = SessionStore(idle_seconds=settings.session_idle_seconds, max_sessions=settings.max_sessions)


def get_session(session_id: str) -> ReportController:
    return sessions.get(session_id)


@app.on_event("startup")
async def startup_event():
    """Configure logging and initialize the query cache on application startup"""
    configure_logging(settings.log_level)
    if settings.cache_enabled:
        try:
            logger.info(f"Initializing query cache at {settings.cache_db_path}...")
            initialize_query_cache(
                settings.cache_db_path,
                max_entries=settings.cache_max_entries or None,
                ttl_seconds=settings.cache_ttl_seconds or None
            )
            logger.info("Query cache initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize query cache: {e}")


# ============================================================================
# SERVICE ENDPOINTS
# ============================================================================

@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/settings")
async def get_settings():
    """Current runtime settings (token redacted)"""
    return settings.to_dict()


@app.get("/api/catalogues")
async def get_catalogues():
    """Group-by options, report columns, filter types and date presets"""
    return {
        "group_by_options": GROUP_BY_OPTIONS,
        "max_groupings": MAX_GROUPINGS,
        "columns": REPORT_COLUMNS,
        "filter_types": FILTER_TYPES,
        "date_presets": DATE_PRESETS,
    }


@app.get("/api/domains", response_model=DomainList)
def get_domains(client: AnalyticsApiClient = Depends(get_analytics_client)):
    """Tenants (offers) available to the user, with the default offer"""
    return client.get_domains()


@app.get("/api/filters/suggestions", response_model=List[FilterSuggestion])
def get_filter_suggestions(
    filter_type: str = Query(..., alias="type", description="Filter type key"),
    query: str = Query(..., min_length=1),
    dkey: Optional[str] = Query(None),
    client: AnalyticsApiClient = Depends(get_analytics_client)
):
    """Filter value suggestions for a partially typed value"""
    if filter_type not in {f['key'] for f in FILTER_TYPES}:
        raise ReportInputError(f"Unknown filter type: {filter_type}", code='unknown_filter_type')
    return client.get_approximate(query, filter_type, dkey)


# ============================================================================
# REPORT SESSION ENDPOINTS
# ============================================================================

@app.post("/api/sessions", response_model=SessionCreated)
def create_session(client: AnalyticsApiClient = Depends(get_analytics_client)):
    """Start a report session with the default grouping and today's date range"""
    controller = ReportController(
        client,
        cache=get_query_cache() if settings.cache_enabled else None,
        detail_page_size=settings.detail_page_size,
        search_debounce_ms=settings.search_debounce_ms,
    )
    session_id = sessions.create(controller)
    logger.info(f"Created report session {session_id}")
    return SessionCreated(session_id=session_id)


@app.delete("/api/sessions/{session_id}")
def delete_session(session_id: str):
    if not sessions.delete(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return {"success": True}


@app.post("/api/sessions/{session_id}/domains", response_model=DomainList)
def initialize_domains(controller: ReportController = Depends(get_session)):
    """Load tenants and auto-select the default offer when none is selected"""
    return controller.initialize_domains()


@app.get("/api/sessions/{session_id}/context", response_model=ReportContext)
def get_context(controller: ReportController = Depends(get_session)):
    return controller.context


@app.put("/api/sessions/{session_id}/context", response_model=ReportContext)
def update_context(update: ContextUpdate, controller: ReportController = Depends(get_session)):
    """Change date range, tenant, filters or options (omitted fields are kept)"""
    return controller.apply_context_update(update)


@app.put("/api/sessions/{session_id}/grouping", response_model=List[GroupingField])
def update_grouping(update: GroupingUpdate, controller: ReportController = Depends(get_session)):
    """Replace the grouping; a changed grouping collapses all rows"""
    return controller.set_grouping(update.fields).fields


@app.post("/api/sessions/{session_id}/load", response_model=ReportView)
def load_report(refresh: bool = Query(False), controller: ReportController = Depends(get_session)):
    """Fetch the report; refresh=true bypasses the query cache"""
    return controller.load_report(force=refresh)


@app.get("/api/sessions/{session_id}/report", response_model=ReportView)
def get_report_view(controller: ReportController = Depends(get_session)):
    return controller.view()


@app.post("/api/sessions/{session_id}/rows/toggle", response_model=ReportView)
def toggle_row(request: RowToggleRequest, controller: ReportController = Depends(get_session)):
    controller.toggle_row(request.key)
    return controller.view()


@app.post("/api/sessions/{session_id}/rows/expand-all", response_model=ReportView)
def expand_all(controller: ReportController = Depends(get_session)):
    controller.expand_all()
    return controller.view()


@app.post("/api/sessions/{session_id}/rows/collapse-all", response_model=ReportView)
def collapse_all(controller: ReportController = Depends(get_session)):
    controller.collapse_all()
    return controller.view()


@app.post("/api/sessions/{session_id}/sort", response_model=ReportView)
def sort_report(request: SortRequest, controller: ReportController = Depends(get_session)):
    """Click a column header: same column flips direction, new column sorts ascending"""
    controller.sort_by(request.key)
    return controller.view()


@app.post("/api/sessions/{session_id}/search", response_model=ReportView)
def search_report(request: SearchRequest, controller: ReportController = Depends(get_session)):
    controller.set_search(request.query)
    return controller.view()


@app.post("/api/sessions/{session_id}/columns/toggle", response_model=ReportView)
def toggle_column(request: ColumnToggleRequest, controller: ReportController = Depends(get_session)):
    controller.toggle_column(request.key)
    return controller.view()


def _csv_response(text: str, filename: str) -> Response:
    return Response(
        content=text.encode('utf-8'),
        media_type=CSV_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/sessions/{session_id}/export.csv")
def export_report(controller: ReportController = Depends(get_session)):
    """Visible rows (filtered, sorted, expanded) as a CSV download"""
    return _csv_response(controller.export_csv(), controller.export_filename())


# ============================================================================
# DRILL-DOWN ENDPOINTS
# ============================================================================

@app.post("/api/sessions/{session_id}/drilldown", response_model=DrillDownView)
def open_drilldown(request: DrillDownRequest, controller: ReportController = Depends(get_session)):
    """Open the detail list for a clicked cell (omit row_key for the totals row)"""
    return controller.open_drilldown(request.column, request.row_key)


@app.get("/api/sessions/{session_id}/drilldown", response_model=DrillDownView)
def get_drilldown(controller: ReportController = Depends(get_session)):
    return controller.drilldown.view()


@app.post("/api/sessions/{session_id}/drilldown/page", response_model=DrillDownView)
def drilldown_page(request: PageRequest, controller: ReportController = Depends(get_session)):
    return controller.drilldown.go_to_page(request.page)


@app.post("/api/sessions/{session_id}/drilldown/search", response_model=DrillDownView)
def drilldown_search(
    request: SearchRequest,
    immediate: bool = Query(False, description="Run the search now instead of after the debounce delay"),
    controller: ReportController = Depends(get_session)
):
    """
    Search within the detail list; resets to page 1.

    Keystrokes are debounced: the fetch runs once input pauses, and the
    returned view has `search_pending` set until then. `immediate=true`
    flushes the pending search (Enter key).
    """
    view = controller.drilldown.set_search(request.query)
    if immediate:
        controller.drilldown.flush_search()
        return controller.drilldown.view()
    return view


@app.post("/api/sessions/{session_id}/drilldown/records/{index}/toggle", response_model=DrillDownView)
def drilldown_toggle_record(index: int, controller: ReportController = Depends(get_session)):
    controller.drilldown.toggle_record(index)
    return controller.drilldown.view()


@app.post("/api/sessions/{session_id}/drilldown/retry", response_model=DrillDownView)
def drilldown_retry(controller: ReportController = Depends(get_session)):
    return controller.drilldown.retry()


@app.delete("/api/sessions/{session_id}/drilldown", response_model=DrillDownView)
def close_drilldown(controller: ReportController = Depends(get_session)):
    controller.drilldown.close()
    return controller.drilldown.view()


@app.get("/api/sessions/{session_id}/drilldown/export.csv")
def export_drilldown(controller: ReportController = Depends(get_session)):
    view = controller.drilldown.view()
    return _csv_response(controller.export_drilldown_csv(), export_filename(view.title))


# ============================================================================
# SAVED REPORT ENDPOINTS
# ============================================================================

@app.get("/api/reports", response_model=List[SavedReportConfig])
def list_saved_reports():
    return get_report_registry().list_reports()


@app.post("/api/sessions/{session_id}/reports", response_model=SavedReportConfig)
def save_report(request: SavedReportCreate, controller: ReportController = Depends(get_session)):
    """Save the session's current selections as a named report"""
    return get_report_registry().create_report(
        name=request.name,
        description=request.description,
        config=controller.snapshot_config(),
    )


@app.get("/api/reports/{report_id}", response_model=SavedReportConfig)
def get_saved_report(report_id: str):
    report = get_report_registry().get_report(report_id)
    if not report:
        raise HTTPException(status_code=404, detail=f"Report {report_id} not found")
    return report


@app.put("/api/reports/{report_id}", response_model=SavedReportConfig)
def update_saved_report(report_id: str, request: SavedReportUpdate):
    report = get_report_registry().update_report(report_id, name=request.name, description=request.description)
    if not report:
        raise HTTPException(status_code=404, detail=f"Report {report_id} not found")
    return report


@app.put("/api/sessions/{session_id}/reports/{report_id}", response_model=SavedReportConfig)
def overwrite_saved_report(
    report_id: str,
    request: SavedReportUpdate,
    controller: ReportController = Depends(get_session)
):
    """Replace a saved report's selections with the session's current ones"""
    report = get_report_registry().update_report(
        report_id,
        name=request.name,
        description=request.description,
        config=controller.snapshot_config(),
    )
    if not report:
        raise HTTPException(status_code=404, detail=f"Report {report_id} not found")
    return report


@app.delete("/api/reports/{report_id}")
def delete_saved_report(report_id: str):
    if not get_report_registry().delete_report(report_id):
        raise HTTPException(status_code=404, detail=f"Report {report_id} not found")
    return {"success": True}


@app.post("/api/sessions/{session_id}/reports/{report_id}/apply", response_model=ReportView)
def apply_saved_report(report_id: str, controller: ReportController = Depends(get_session)):
    """Apply a saved report's selections to the session (load separately)"""
    report = get_report_registry().get_report(report_id)
    if not report:
        raise HTTPException(status_code=404, detail=f"Report {report_id} not found")
    controller.apply_config(SavedReportConfig(**report))
    return controller.view()


# ============================================================================
# CACHE MANAGEMENT ENDPOINTS
# ============================================================================

@app.get("/api/cache/stats", response_model=CacheStats)
def get_cache_stats():
    """Get cache statistics"""
    cache = get_query_cache()
    if cache is None:
        raise HTTPException(status_code=503, detail="Cache service not initialized")
    return CacheStats(**cache.get_stats())


@app.post("/api/cache/clear", response_model=CacheClearResponse)
def clear_all_cache():
    """Clear entire cache"""
    cache = get_query_cache()
    if cache is None:
        raise HTTPException(status_code=503, detail="Cache service not initialized")
    count = cache.clear_all()
    return CacheClearResponse(success=True, entries_cleared=count, message="Cleared all cache entries")


@app.post("/api/cache/clear/tenant/{dkey}", response_model=CacheClearResponse)
def clear_cache_by_tenant(dkey: str):
    """Clear cache for one tenant"""
    cache = get_query_cache()
    if cache is None:
        raise HTTPException(status_code=503, detail="Cache service not initialized")
    count = cache.clear_by_tenant(dkey)
    return CacheClearResponse(success=True, entries_cleared=count, message=f"Cleared cache for tenant {dkey}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("offer_analytics.main:app", host="0.0.0.0", port=8000)
