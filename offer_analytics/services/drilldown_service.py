"""
Drill-down resolver - from a clicked metric cell to a paginated detail list.

A click on a visitors/engaged/sales cell collects the grouping values of the
clicked row and all its ancestors into a DrillDownContext. The resolver then
pages through the detail endpoint with that context and, per expanded record,
runs an independent point lookup (action detail preferred, visitor otherwise).

State machine: closed -> loading -> loaded | empty | error. Every fetch goes
through the RequestTracker so a late response for an old page, an old search
or an old context is dropped.
"""
import logging
import math
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from offer_analytics.constants import DETAIL_COLUMNS, DETAIL_PAGE_SIZE, DETAIL_TITLES, DRILLDOWN_TYPES
from offer_analytics.exceptions import DrillDownError, ServiceError
from offer_analytics.models.schemas import (
    DetailColumn,
    DetailStatus,
    DrillDownContext,
    DrillDownStatus,
    DrillDownView,
    GroupingField,
    MetricRow,
    NestedDetailState,
    RequestDescriptor,
)
from offer_analytics.services.metric_service import safe_float
from offer_analytics.services.request_tracker import Debouncer, RequestTracker
from offer_analytics.services.tree_service import PLACEHOLDER_LABEL

logger = logging.getLogger(__name__)

LIST_SLOT = 'drilldown'
DETAIL_SLOT_PREFIX = 'detail:'


def drilldown_type_for(column: str) -> str:
    """Detail type for a clicked column; raises for columns that do not drill."""
    detail_type = DRILLDOWN_TYPES.get(column)
    if detail_type is None:
        raise DrillDownError(f"Column '{column}' does not open a drill-down", code='not_drillable',
                             details={'column': column})
    return detail_type


def is_drillable(row: MetricRow, column: str) -> bool:
    return column in DRILLDOWN_TYPES and safe_float(row.value(column)) > 0


def _grouping_value(row: MetricRow, grouping_field: GroupingField) -> Optional[str]:
    value = row.attributes.get(grouping_field.field)
    if value is not None and value != '':
        return str(value)
    if row.grouping_value and row.grouping_value != PLACEHOLDER_LABEL:
        return row.grouping_value
    return None


def build_drilldown_context(path: Sequence[MetricRow], grouping: Sequence[GroupingField], column: str) -> DrillDownContext:
    """
    Context for a click on `column` of the last row in `path`.

    Args:
        path: Rows from the top level down to the clicked row; empty for the totals row
        grouping: Active grouping fields, in hierarchy order
        column: Clicked column key

    Returns:
        DrillDownContext whose filters hold one value per ancestor level, e.g.
        {"channel": "Google", "subchannel": "Search", "country": "US"}
    """
    detail_type = drilldown_type_for(column)
    if path and not is_drillable(path[-1], column):
        raise DrillDownError(f"Cell '{column}' has no records to drill into", code='empty_cell',
                             details={'column': column, 'row_key': path[-1].key})

    filters: Dict[str, str] = {}
    for row in path:
        if row.depth < 0 or row.depth >= len(grouping):
            continue
        value = _grouping_value(row, grouping[row.depth])
        if value is not None:
            filters[grouping[row.depth].field] = value

    # Backend rows may also carry their ancestors' values directly
    if path:
        for grouping_field in grouping:
            if grouping_field.field not in filters:
                value = path[-1].attributes.get(grouping_field.field)
                if value is not None and value != '':
                    filters[grouping_field.field] = str(value)

    return DrillDownContext(type=detail_type, filters=filters)


# =====================
# Point detail summaries
# =====================

def bot_status(visitor: Optional[Mapping[str, Any]]) -> str:
    visitor = visitor or {}
    if any(visitor.get(flag) in (1, '1', True) for flag in ('is_bot', 'device_is_bot', 'ip_is_bot')):
        return 'Known Bot'
    return 'Not a bot'


def format_timezone_offset(offset: Any) -> str:
    """Minutes from UTC as 'UTC +N'; '-' when unknown."""
    if offset is None or offset == '':
        return '-'
    try:
        minutes = float(offset)
    except (TypeError, ValueError):
        return '-'
    hours = math.floor(abs(minutes) / 60)
    sign = '+' if minutes >= 0 else '-'
    return f"UTC {sign}{hours}"


def summarize_detail(detail: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Display summary for a visitor or action lookup.

    Action lookups return the action with visitor fields inline; visitor
    lookups nest them under `visitor`.
    """
    detail = detail or {}
    visitor = detail if detail.get('visitor_id') else (detail.get('visitor') or {})
    actions = detail.get('actions') or []
    parameters = detail.get('parameters') or []

    total_revenue = detail.get('total_revenue')
    if total_revenue is None:
        total_revenue = visitor.get('revenue')
    return {
        'visitor_id': visitor.get('visitor_id') or detail.get('visitor_id'),
        'bot_status': bot_status(visitor),
        'timezone': format_timezone_offset(visitor.get('timezone_offset')),
        'total_revenue': round(safe_float(total_revenue), 2),
        'action_count': len(actions),
        'parameter_count': len(parameters),
    }


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, Mapping) and 'data' in payload:
        return payload['data']
    return payload


class DrillDownResolver:
    """
    One drill-down panel.

    `client` needs get_analytics_detail(params), get_action_detail(id, dkey)
    and get_visitor_detail(id, dkey).
    """

    def __init__(self, client, tracker: Optional[RequestTracker] = None, page_size: int = DETAIL_PAGE_SIZE,
                 debounce_ms: int = 300, on_change: Optional[Callable[[], None]] = None):
        self.client = client
        self.tracker = tracker or RequestTracker()
        self.page_size = page_size
        self.on_change = on_change
        self._lock = threading.RLock()
        self._debouncer = Debouncer(self.apply_search, delay_ms=debounce_ms)
        self._reset()

    def _reset(self) -> None:
        self.status = DrillDownStatus.CLOSED
        self.context: Optional[DrillDownContext] = None
        self.base_params: Dict[str, Any] = {}
        self.dkey: Optional[str] = None
        self.page = 1
        self.search = ''
        self.records: List[Dict[str, Any]] = []
        self.has_more = False
        self.expanded: Dict[int, NestedDetailState] = {}
        self.error: Optional[str] = None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    # =====================
    # Session
    # =====================

    def open(self, context: DrillDownContext, descriptor: RequestDescriptor) -> DrillDownView:
        """
        Open (or reopen) the panel for `context`.

        Reopening with the same type and filters keeps page and search; a
        different context starts over at page 1 with no search.
        """
        with self._lock:
            same_context = self.context is not None and self.context == context
            if not same_context:
                self._debouncer.cancel()
                self.page = 1
                self.search = ''
            self.expanded = {}
            self.tracker.invalidate_prefix(DETAIL_SLOT_PREFIX)
            self.context = context
            self.base_params = dict(descriptor.params)
            self.dkey = descriptor.params.get('dkey')
            logger.info(f"Opening {context.type} drill-down with filters {context.filters}")
        self._fetch()
        return self.view()

    def close(self) -> None:
        with self._lock:
            self._debouncer.cancel()
            self.tracker.invalidate(LIST_SLOT)
            self.tracker.invalidate_prefix(DETAIL_SLOT_PREFIX)
            self._reset()

    def retry(self) -> DrillDownView:
        if self.context is None:
            raise DrillDownError("No drill-down is open", code='not_open')
        self._fetch()
        return self.view()

    def request_params(self) -> Dict[str, Any]:
        """Params for the current page: report params, then row filters, then paging."""
        if self.context is None:
            raise DrillDownError("No drill-down is open", code='not_open')
        params = {**self.base_params, **self.context.filters}
        params.update({
            'type': self.context.type,
            'limit': self.page_size,
            'offset': self.offset,
        })
        if self.search:
            params['search'] = self.search
        return params

    def _fetch(self) -> None:
        with self._lock:
            params = self.request_params()
            token = self.tracker.begin(LIST_SLOT)
            self.status = DrillDownStatus.LOADING
            self.error = None
            self.expanded = {}
            self.tracker.invalidate_prefix(DETAIL_SLOT_PREFIX)

        try:
            payload = self.client.get_analytics_detail(params)
        except ServiceError as e:
            with self._lock:
                if not self.tracker.is_current(token):
                    return
                logger.error(f"Drill-down fetch failed: {e.message}")
                self.status = DrillDownStatus.ERROR
                self.error = e.message
                self.records = []
                self.has_more = False
            self._notify()
            return

        with self._lock:
            if not self.tracker.is_current(token):
                return
            records = _unwrap(payload) or []
            if not isinstance(records, list):
                records = []
            self.records = [dict(record) for record in records if isinstance(record, Mapping)]
            flag = payload.get('hasMore') if isinstance(payload, Mapping) else None
            self.has_more = bool(flag) if flag is not None else len(self.records) == self.page_size
            self.status = DrillDownStatus.LOADED if self.records else DrillDownStatus.EMPTY
            logger.debug(f"Drill-down page {self.page}: {len(self.records)} records, has_more={self.has_more}")
        self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change()

    # =====================
    # Paging and search
    # =====================

    def go_to_page(self, page: int) -> DrillDownView:
        if page < 1:
            raise DrillDownError(f"Invalid page: {page}", code='invalid_page')
        with self._lock:
            if self.context is None:
                raise DrillDownError("No drill-down is open", code='not_open')
            self.page = page
        self._fetch()
        return self.view()

    def next_page(self) -> DrillDownView:
        if not self.has_more:
            return self.view()
        return self.go_to_page(self.page + 1)

    def prev_page(self) -> DrillDownView:
        if self.page <= 1:
            return self.view()
        return self.go_to_page(self.page - 1)

    def set_search(self, query: str) -> DrillDownView:
        """Debounced search input; the fetch runs once typing pauses."""
        self._debouncer.call(query)
        return self.view()

    def flush_search(self) -> bool:
        return self._debouncer.flush()

    def apply_search(self, query: str) -> DrillDownView:
        """Apply a search immediately: back to page 1, empty query drops the param."""
        with self._lock:
            if self.context is None:
                return self.view()
            self.search = (query or '').strip()
            self.page = 1
        self._fetch()
        return self.view()

    # =====================
    # Nested record detail
    # =====================

    def toggle_record(self, index: int) -> Optional[NestedDetailState]:
        """
        Expand or collapse record `index` of the current page.

        Expanding runs the point lookup; its outcome is stored on the record
        and never changes the list status.
        """
        with self._lock:
            if not (0 <= index < len(self.records)):
                raise DrillDownError(f"No record at index {index}", code='invalid_record')
            slot = f"{DETAIL_SLOT_PREFIX}{index}"
            if index in self.expanded:
                del self.expanded[index]
                self.tracker.invalidate(slot)
                return None

            record = self.records[index]
            if record.get('action_id'):
                lookup, lookup_id = 'action', str(record['action_id'])
            elif record.get('visitor_id'):
                lookup, lookup_id = 'visitor', str(record['visitor_id'])
            else:
                raise DrillDownError("Record has no action or visitor id", code='no_lookup_id')

            state = NestedDetailState(status=DetailStatus.LOADING, lookup=lookup, lookup_id=lookup_id)
            self.expanded[index] = state
            token = self.tracker.begin(slot)
            dkey = self.dkey

        try:
            if lookup == 'action':
                payload = self.client.get_action_detail(lookup_id, dkey)
            else:
                payload = self.client.get_visitor_detail(lookup_id, dkey)
        except ServiceError as e:
            logger.warning(f"{lookup.capitalize()} lookup {lookup_id} failed: {e.message}")
            result = state.model_copy(update={'status': DetailStatus.ERROR, 'error': e.message})
        else:
            detail = _unwrap(payload)
            detail = dict(detail) if isinstance(detail, Mapping) else {}
            result = state.model_copy(update={
                'status': DetailStatus.LOADED,
                'data': detail,
                'summary': summarize_detail(detail),
            })

        with self._lock:
            if not self.tracker.is_current(token) or index not in self.expanded:
                return self.expanded.get(index)
            self.expanded[index] = result
        self._notify()
        return result

    # =====================
    # Output
    # =====================

    def columns(self) -> List[DetailColumn]:
        detail_type = self.context.type if self.context else 'visitors'
        return [DetailColumn(**column) for column in DETAIL_COLUMNS.get(detail_type, DETAIL_COLUMNS['visitors'])]

    def view(self) -> DrillDownView:
        with self._lock:
            return DrillDownView(
                status=self.status,
                title=DETAIL_TITLES.get(self.context.type, 'Details') if self.context else 'Details',
                context=self.context,
                page=self.page,
                page_size=self.page_size,
                offset=self.offset,
                has_more=self.has_more,
                search=self.search,
                records=list(self.records),
                columns=self.columns(),
                expanded=dict(self.expanded),
                error=self.error,
                search_pending=self._debouncer.pending,
            )
