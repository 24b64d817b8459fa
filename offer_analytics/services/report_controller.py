"""
Report controller - single owner of one user's report state.

Holds the report context (date range, tenant, filters, options), the grouping
configuration, the table state (expansion, sort, search, hidden columns), the
last loaded tree and the drill-down panel. Each concern is a small state
machine; the controller wires them together:

    context + grouping -> query params -> backend (via dedup cache)
      -> tree -> [search -> totals -> sort] -> visible rows

The context is an immutable snapshot swapped under a lock, so a request is
always built from one consistent snapshot.
"""
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from offer_analytics.constants import DETAIL_PAGE_SIZE, FILTER_TYPES, REPORT_COLUMNS, get_report_column
from offer_analytics.exceptions import DrillDownError, NotFoundError, ReportInputError, ServiceError
from offer_analytics.models.schemas import (
    ContextUpdate,
    DateRange,
    DomainList,
    DrillDownView,
    FilterSet,
    FilterSuggestion,
    GroupingField,
    ReportColumn,
    ReportContext,
    ReportStatus,
    ReportView,
    SavedReportConfig,
    SortConfig,
    VisibleRow,
)
from offer_analytics.services import query_params
from offer_analytics.services.date_resolver import CUSTOM_PRESET, resolve_date_range
from offer_analytics.services.drilldown_service import (
    DrillDownResolver,
    build_drilldown_context,
    drilldown_type_for,
    is_drillable,
)
from offer_analytics.services.export_service import export_csv, export_filename, visible_rows_to_records
from offer_analytics.services.grouping_service import GroupingConfiguration
from offer_analytics.services.metric_service import compute_totals
from offer_analytics.services.query_cache_service import QueryCacheService
from offer_analytics.services.request_tracker import RequestTracker
from offer_analytics.services.table_state import ExpansionState, SortState, filter_rows, sort_rows
from offer_analytics.services.tree_service import ReportTree, build_tree, find_path, flatten_visible, iter_rows

logger = logging.getLogger(__name__)

REPORT_SLOT = 'report'
DEFAULT_TITLE = 'Analytics Report'


class ReportController:
    """State and operations behind one analytics report screen."""

    def __init__(
        self,
        client,
        cache: Optional[QueryCacheService] = None,
        grouping: Optional[GroupingConfiguration] = None,
        context: Optional[ReportContext] = None,
        detail_page_size: int = DETAIL_PAGE_SIZE,
        search_debounce_ms: int = 300,
    ):
        self.client = client
        self.cache = cache
        self._lock = threading.RLock()
        self._context = context or ReportContext(date_range=resolve_date_range('today'))
        self.grouping = grouping if grouping is not None else GroupingConfiguration.default()
        self.expansion = ExpansionState()
        self.sort = SortState()
        self.search = ''
        self.hidden_columns: set = set()
        self.status = ReportStatus.IDLE
        self.tree: Optional[ReportTree] = None
        self.error: Optional[str] = None
        self.domains = DomainList()
        self.tracker = RequestTracker()
        self.drilldown = DrillDownResolver(
            client,
            tracker=self.tracker,
            page_size=detail_page_size,
            debounce_ms=search_debounce_ms,
        )

    # =====================
    # Context
    # =====================

    @property
    def context(self) -> ReportContext:
        with self._lock:
            return self._context

    def _replace_context(self, **changes) -> ReportContext:
        with self._lock:
            context = self._context.model_copy(update=changes)
            self._context = context
            return context

    def set_date_range(self, start_date: str, end_date: str) -> ReportContext:
        date_range = DateRange(start_date=start_date, end_date=end_date, preset=CUSTOM_PRESET)
        query_params.validate_date_range(date_range)
        return self._replace_context(date_range=date_range)

    def set_date_preset(self, preset: str, reference_date: Optional[datetime] = None) -> ReportContext:
        """Resolve a preset relative to today; 'custom' keeps the current dates."""
        if preset == CUSTOM_PRESET:
            with self._lock:
                current = self._context.date_range
                return self._replace_context(date_range=current.model_copy(update={'preset': CUSTOM_PRESET}))
        return self._replace_context(date_range=resolve_date_range(preset, reference_date))

    def select_domain(self, dkey: Optional[str], domain_name: Optional[str] = None) -> ReportContext:
        if dkey and domain_name is None:
            match = next((domain for domain in self.domains.domains if domain.dkey == dkey), None)
            domain_name = match.name if match else None
        logger.info(f"Selected tenant {dkey or '(none)'}")
        return self._replace_context(dkey=dkey or None, domain_name=domain_name)

    def set_filters(self, filters: FilterSet) -> ReportContext:
        return self._replace_context(filters=filters)

    def set_options(self, use_post_date: Optional[bool] = None, include_bots: Optional[bool] = None,
                    extra: Optional[Dict[str, Any]] = None) -> ReportContext:
        with self._lock:
            options = self._context.options
            changes = {}
            if use_post_date is not None:
                changes['use_post_date'] = use_post_date
            if include_bots is not None:
                changes['include_bots'] = include_bots
            if extra is not None:
                changes['extra'] = dict(extra)
            return self._replace_context(options=options.model_copy(update=changes))

    def set_timezone(self, timezone: Optional[str]) -> ReportContext:
        return self._replace_context(timezone=timezone or None)

    def apply_context_update(self, update: ContextUpdate) -> ReportContext:
        """Apply a partial update as one atomic context swap."""
        with self._lock:
            current = self._context
            changes: Dict[str, Any] = {}

            if update.date_preset and update.date_preset != CUSTOM_PRESET:
                changes['date_range'] = resolve_date_range(update.date_preset)
            elif update.start_date is not None or update.end_date is not None:
                date_range = DateRange(
                    start_date=update.start_date or current.date_range.start_date,
                    end_date=update.end_date or current.date_range.end_date,
                    preset=CUSTOM_PRESET,
                )
                query_params.validate_date_range(date_range)
                changes['date_range'] = date_range

            if update.dkey is not None:
                changes['dkey'] = update.dkey or None
                changes['domain_name'] = update.domain_name
            if update.filters is not None:
                changes['filters'] = update.filters
            if update.timezone is not None:
                changes['timezone'] = update.timezone or None

            option_changes = {}
            if update.use_post_date is not None:
                option_changes['use_post_date'] = update.use_post_date
            if update.include_bots is not None:
                option_changes['include_bots'] = update.include_bots
            if update.extra_options is not None:
                option_changes['extra'] = dict(update.extra_options)
            if option_changes:
                changes['options'] = current.options.model_copy(update=option_changes)

            if 'dkey' in changes and changes['dkey'] and not changes.get('domain_name'):
                match = next((d for d in self.domains.domains if d.dkey == changes['dkey']), None)
                changes['domain_name'] = match.name if match else None

            self._context = current.model_copy(update=changes)
            return self._context

    def initialize_domains(self) -> DomainList:
        """Load the tenant list and select the default offer (else the first) when none is selected."""
        domains = self.client.get_domains()
        with self._lock:
            self.domains = domains
            if self._context.dkey is None:
                selected = domains.default_offer or (domains.domains[0] if domains.domains else None)
                if selected is not None:
                    logger.info(f"Auto-selecting tenant {selected.dkey}")
                    self._context = self._context.model_copy(update={'dkey': selected.dkey, 'domain_name': selected.name})
        return domains

    def suggest_filter_values(self, filter_type: str, query: str) -> List[FilterSuggestion]:
        if filter_type not in {f['key'] for f in FILTER_TYPES}:
            raise ReportInputError(f"Unknown filter type: {filter_type}", code='unknown_filter_type')
        if not query or not query.strip():
            return []
        return self.client.get_approximate(query.strip(), filter_type, self.context.dkey)

    # =====================
    # Grouping
    # =====================

    def set_grouping(self, fields: Union[GroupingConfiguration, Iterable[Union[int, str, GroupingField]]]) -> GroupingConfiguration:
        """Replace the grouping; any real change resets expansion."""
        grouping = fields if isinstance(fields, GroupingConfiguration) else GroupingConfiguration(fields)
        with self._lock:
            if grouping != self.grouping:
                logger.info(f"Grouping changed {self.grouping.field_names} -> {grouping.field_names}, resetting expansion")
                self.expansion.reset()
                self.grouping = grouping
            return self.grouping

    def add_grouping(self, value: Union[int, str, GroupingField]) -> GroupingConfiguration:
        return self.set_grouping(self.grouping.add(value))

    def remove_grouping(self, value: Union[int, str, GroupingField]) -> GroupingConfiguration:
        return self.set_grouping(self.grouping.remove(value))

    def move_grouping(self, from_index: int, to_index: int) -> GroupingConfiguration:
        return self.set_grouping(self.grouping.move(from_index, to_index))

    # =====================
    # Loading
    # =====================

    def load_report(self, force: bool = False) -> ReportView:
        """
        Fetch and rebuild the tree.

        Input errors are raised before any request. Backend errors land in the
        error state. `force` bypasses the dedup cache (refresh/retry).
        """
        with self._lock:
            grouping = self.grouping
            descriptor = query_params.build_from_context(self._context, grouping.fields)
            token = self.tracker.begin(REPORT_SLOT)
            self.status = ReportStatus.LOADING
            self.error = None

        cache_key = QueryCacheService.descriptor_to_cache_key(descriptor)
        payload = None
        if self.cache is not None and not force:
            payload = self.cache.get(cache_key)

        if payload is None:
            try:
                payload = self.client.get_analytics_report(descriptor.params)
            except ServiceError as e:
                with self._lock:
                    if self.tracker.is_current(token):
                        logger.error(f"Report load failed: {e.message}")
                        self.status = ReportStatus.ERROR
                        self.error = e.message
                        self.tree = None
                return self.view()
            if self.cache is not None:
                row_count = len(payload.get('data') or []) if isinstance(payload, dict) else None
                self.cache.set(cache_key, 'report', descriptor, payload, row_count=row_count)

        tree = build_tree(payload, grouping.fields)
        with self._lock:
            if self.tracker.is_current(token):
                self.tree = tree
                self.expansion.prune(tree.rows)
                self.status = ReportStatus.EMPTY if tree.is_empty else ReportStatus.LOADED
                logger.info(f"Report loaded: {len(tree.rows)} top-level rows, hierarchical={tree.is_hierarchical}")
        return self.view()

    def refresh(self) -> ReportView:
        return self.load_report(force=True)

    # =====================
    # Table state
    # =====================

    def toggle_row(self, key: str) -> bool:
        """Expand or collapse a row that has children; returns True when now expanded."""
        with self._lock:
            if self.tree is not None:
                path = find_path(self.tree.rows, key)
                if not path:
                    raise NotFoundError(f"Row not found: {key}", code='row_not_found')
                if not path[-1].has_children:
                    raise ReportInputError(f"Row {key} has no children to expand", code='row_not_expandable')
            return self.expansion.toggle(key)

    def expand_all(self) -> None:
        with self._lock:
            self.expansion.expand_all(self.tree.rows if self.tree else [])

    def collapse_all(self) -> None:
        with self._lock:
            self.expansion.collapse_all()

    def sort_by(self, key: str) -> SortConfig:
        column = get_report_column(key)
        if column is None or not column['sortable']:
            raise ReportInputError(f"Column '{key}' is not sortable", code='invalid_sort_column')
        with self._lock:
            return self.sort.click(key)

    def set_search(self, query: str) -> None:
        with self._lock:
            self.search = query or ''

    def toggle_column(self, key: str) -> bool:
        """Show or hide a column; returns True when it is now visible."""
        if get_report_column(key) is None:
            raise ReportInputError(f"Unknown column: {key}", code='unknown_column')
        if key == 'grouping':
            raise ReportInputError("The grouping column cannot be hidden", code='column_required')
        with self._lock:
            if key in self.hidden_columns:
                self.hidden_columns.discard(key)
                return True
            self.hidden_columns.add(key)
            return False

    # =====================
    # Output
    # =====================

    def title(self) -> str:
        return self.grouping.title(DEFAULT_TITLE)

    def columns(self) -> List[ReportColumn]:
        """Visible columns; the grouping header takes the first grouping label."""
        has_fraud = self.tree is not None and any('fraud' in row.metrics for row in iter_rows(self.tree.rows))
        columns = []
        for column in REPORT_COLUMNS:
            if column['key'] in self.hidden_columns:
                continue
            if column['key'] == 'fraud' and not has_fraud:
                continue
            if column['key'] == 'grouping' and self.grouping.depth:
                column = {**column, 'label': self.grouping.label_at(0)}
            columns.append(ReportColumn(**column))
        return columns

    def view(self) -> ReportView:
        with self._lock:
            columns = self.columns()
            base = dict(
                status=self.status,
                error=self.error,
                title=self.title(),
                columns=columns,
                grouping=self.grouping.fields,
                sort=self.sort.config,
                search=self.search,
                expanded=sorted(self.expansion.expanded),
            )
            if self.tree is None:
                return ReportView(**base)

            rows = filter_rows(self.tree.rows, self.search)
            totals = compute_totals(rows)
            rows = sort_rows(rows, self.sort.key, self.sort.direction)
            visible_rows = [
                VisibleRow(
                    key=row.key,
                    id=row.id,
                    depth=row.depth,
                    level_label=self.grouping.label_at(row.depth),
                    grouping_value=row.grouping_value,
                    values={column.key: row.value(column.key) for column in columns},
                    has_children=row.has_children,
                    expanded=is_expanded,
                )
                for row, is_expanded in flatten_visible(rows, self.expansion.expanded)
            ]
            return ReportView(
                **base,
                rows=rows,
                visible_rows=visible_rows,
                totals=totals,
                row_count=len(rows),
                is_hierarchical=self.tree.is_hierarchical,
            )

    def export_csv(self) -> str:
        """Visible rows (filtered, sorted, expanded) as CSV."""
        view = self.view()
        return export_csv(visible_rows_to_records(view.visible_rows), view.columns)

    def export_filename(self) -> str:
        return export_filename(self.title())

    # =====================
    # Drill-down
    # =====================

    def open_drilldown(self, column: str, row_key: Optional[str] = None) -> DrillDownView:
        """
        Open the detail panel for a clicked cell.

        `row_key` None means the totals row, which drills with no grouping filters.
        """
        drilldown_type_for(column)
        with self._lock:
            if self.tree is None:
                raise DrillDownError("Report is not loaded", code='not_loaded')
            if row_key is None:
                totals = compute_totals(filter_rows(self.tree.rows, self.search))
                if not is_drillable(totals, column):
                    raise DrillDownError(f"Cell '{column}' has no records to drill into", code='empty_cell',
                                         details={'column': column})
                path = []
            else:
                path = find_path(self.tree.rows, row_key)
                if not path:
                    raise NotFoundError(f"Row not found: {row_key}", code='row_not_found')
            drilldown_context = build_drilldown_context(path, self.grouping.fields, column)
            descriptor = query_params.build_from_context(self._context, self.grouping.fields)
        return self.drilldown.open(drilldown_context, descriptor)

    def export_drilldown_csv(self) -> str:
        view = self.drilldown.view()
        return export_csv(view.records, view.columns)

    def close(self) -> None:
        """Tear down pending work (debounced searches, in-flight responses)."""
        self.drilldown.close()
        self.tracker.invalidate(REPORT_SLOT)

    # =====================
    # Saved configurations
    # =====================

    def snapshot_config(self) -> Dict[str, Any]:
        """Current selections in the shape ReportConfigRegistry stores."""
        with self._lock:
            return {
                'grouping': self.grouping.field_names,
                'filters': self._context.filters.model_dump(),
                'options': self._context.options.model_dump(),
                'date_preset': self._context.date_range.preset,
                'sort': self.sort.config.model_dump(),
                'hidden_columns': sorted(self.hidden_columns),
            }

    def apply_config(self, config: SavedReportConfig, reference_date: Optional[datetime] = None) -> None:
        """Re-apply a saved configuration; grouping changes reset expansion as usual."""
        grouping = GroupingConfiguration(config.grouping)
        with self._lock:
            self.set_grouping(grouping)
            self.sort = SortState.from_config(config.sort)
            self.hidden_columns = {key for key in config.hidden_columns if key != 'grouping'}
            changes: Dict[str, Any] = {'filters': config.filters, 'options': config.options}
            if config.date_preset and config.date_preset != CUSTOM_PRESET:
                changes['date_range'] = resolve_date_range(config.date_preset, reference_date)
            self._replace_context(**changes)
        logger.info(f"Applied saved report '{config.name}'")
