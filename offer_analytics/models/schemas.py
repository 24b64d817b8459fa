from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


MatchType = Literal["any", "all"]
SortDirection = Literal["asc", "desc"]
DrillDownType = Literal["visitors", "engaged", "sales"]
ColumnType = Literal["text", "number", "percent", "currency"]


class ReportStatus(str, Enum):
    """Load state of the main report"""
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    EMPTY = "empty"
    ERROR = "error"


class DrillDownStatus(str, Enum):
    """Load state of a drill-down session"""
    CLOSED = "closed"
    LOADING = "loading"
    LOADED = "loaded"
    EMPTY = "empty"
    ERROR = "error"


class DetailStatus(str, Enum):
    """Load state of a nested point-detail lookup"""
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


# =====================
# Report context
# =====================

class GroupingField(BaseModel):
    """One selectable grouping dimension"""
    model_config = ConfigDict(frozen=True)

    id: int
    label: str
    field: str  # Backend grouping key


def _clean_filter_values(filters: Dict[str, List[str]]) -> Dict[str, List[str]]:
    """Strip values, drop blanks and duplicates, keep selection order."""
    cleaned = {}
    for key, values in filters.items():
        seen = []
        for item in values or []:
            item = str(item).strip()
            if item and item not in seen:
                seen.append(item)
        cleaned[key] = seen
    return cleaned


class FilterSet(BaseModel):
    """Selected filter values per filter type, combined with AND ("all") or OR ("any")"""
    model_config = ConfigDict(frozen=True)

    # Format: { "channel": ["Google", "Bing"], "country": ["US"] }
    filters: Dict[str, List[str]] = Field(default_factory=dict)
    match_type: MatchType = "any"

    @field_validator("filters")
    @classmethod
    def clean_values(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        return _clean_filter_values(value)

    def with_value(self, filter_type: str, value: str) -> "FilterSet":
        values = list(self.filters.get(filter_type, []))
        values.append(value)
        return self.model_copy(update={"filters": _clean_filter_values({**self.filters, filter_type: values})})

    def without_value(self, filter_type: str, value: str) -> "FilterSet":
        values = [v for v in self.filters.get(filter_type, []) if v != value]
        return self.model_copy(update={"filters": {**self.filters, filter_type: values}})

    def active_count(self) -> int:
        return sum(len(values) for values in self.filters.values())


class DateRange(BaseModel):
    """Absolute date range (YYYY-MM-DD); preset records how it was chosen"""
    model_config = ConfigDict(frozen=True)

    start_date: str
    end_date: str
    preset: str = "custom"


class ReportOptions(BaseModel):
    """Report toggles sent to the backend as literal booleans"""
    model_config = ConfigDict(frozen=True)

    use_post_date: bool = False
    include_bots: bool = False
    # Opaque pass-through options (e.g. uniqueVisitors), forwarded verbatim
    extra: Dict[str, Union[bool, int, float, str]] = Field(default_factory=dict)


class ReportContext(BaseModel):
    """Immutable snapshot of everything a request is built from"""
    model_config = ConfigDict(frozen=True)

    date_range: DateRange
    dkey: Optional[str] = None
    domain_name: Optional[str] = None
    filters: FilterSet = Field(default_factory=FilterSet)
    options: ReportOptions = Field(default_factory=ReportOptions)
    timezone: Optional[str] = None


class RequestDescriptor(BaseModel):
    """Flat parameter set sent to the reporting backend"""
    model_config = ConfigDict(frozen=True)

    params: Dict[str, Union[bool, int, float, str]]

    def cache_key(self) -> str:
        """Stable key for request de-duplication (same params, same key)."""
        normalized = json.dumps(self.params, sort_keys=True, separators=(",", ":"))
        return hashlib.md5(normalized.encode()).hexdigest()


# =====================
# Metric tree
# =====================

class MetricRow(BaseModel):
    """Single aggregated row at any grouping level"""
    model_config = ConfigDict(frozen=True)

    id: str  # Unique within its sibling set
    key: str  # Slash-joined id path from the root, unique within the tree
    grouping_value: str
    metrics: Dict[str, Union[int, float]]  # visitors, engaged, sales, revenue (+ optional fraud)
    derived: Dict[str, float]  # engage_rate, sales_rate, epc, aov
    children: List["MetricRow"] = Field(default_factory=list)
    depth: int = 0
    attributes: Dict[str, Any] = Field(default_factory=dict)  # Remaining scalar fields from the backend

    @property
    def has_children(self) -> bool:
        return len(self.children) > 0

    def value(self, column_key: str) -> Any:
        """Cell value for a report column (None when the row has no such value)."""
        if column_key == "grouping":
            return self.grouping_value
        if column_key in self.metrics:
            return self.metrics[column_key]
        if column_key in self.derived:
            return self.derived[column_key]
        return None


class TotalsRow(MetricRow):
    """Grand-total row; depth -1 marks it as outside the hierarchy"""
    id: str = "totals"
    key: str = "totals"
    grouping_value: str = "TOTALS"
    depth: int = -1


class ReportColumn(BaseModel):
    key: str
    label: str
    sortable: bool = True
    clickable: bool = False
    type: ColumnType = "number"


class SortConfig(BaseModel):
    """Row sorting configuration for the primary table"""
    key: str = Field("visitors", description="Column key to sort by")
    direction: SortDirection = Field("desc", description="Sort direction")


class VisibleRow(BaseModel):
    """A row as it appears in the rendered table, in display order"""
    key: str
    id: str
    depth: int
    level_label: str  # Grouping field label for this depth (level header)
    grouping_value: str
    values: Dict[str, Any]
    has_children: bool
    expanded: bool


class ReportView(BaseModel):
    """Everything a renderer needs for the primary table"""
    status: ReportStatus
    error: Optional[str] = None
    title: str
    columns: List[ReportColumn]
    grouping: List[GroupingField]
    rows: List[MetricRow] = Field(default_factory=list)  # Top-level rows after search + sort
    visible_rows: List[VisibleRow] = Field(default_factory=list)
    totals: Optional[TotalsRow] = None
    row_count: int = 0
    is_hierarchical: bool = False
    sort: SortConfig
    search: str = ""
    expanded: List[str] = Field(default_factory=list)


# =====================
# Drill-down
# =====================

class DrillDownContext(BaseModel):
    """Detail type plus the grouping filters collected from the clicked row's ancestry"""
    model_config = ConfigDict(frozen=True)

    type: DrillDownType
    filters: Dict[str, str] = Field(default_factory=dict)


class NestedDetailState(BaseModel):
    """Point lookup (action or visitor) for one expanded detail record"""
    status: DetailStatus
    lookup: Literal["action", "visitor"]
    lookup_id: str
    data: Optional[Dict[str, Any]] = None
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class DetailColumn(BaseModel):
    key: str
    label: str
    type: ColumnType = "text"


class DrillDownView(BaseModel):
    """Drill-down panel state"""
    status: DrillDownStatus
    title: str = "Details"
    context: Optional[DrillDownContext] = None
    page: int = 1
    page_size: int = 25
    offset: int = 0
    has_more: bool = False
    search: str = ""
    records: List[Dict[str, Any]] = Field(default_factory=list)
    columns: List[DetailColumn] = Field(default_factory=list)
    expanded: Dict[int, NestedDetailState] = Field(default_factory=dict)
    error: Optional[str] = None
    search_pending: bool = False


# =====================
# Tenants
# =====================

class Domain(BaseModel):
    dkey: str
    name: str


class DomainList(BaseModel):
    domains: List[Domain] = Field(default_factory=list)
    default_offer: Optional[Domain] = None


class FilterSuggestion(BaseModel):
    id: Optional[str] = None
    label: str


# =====================
# Saved report configurations
# =====================

class SavedReportCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class SavedReportUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None


class SavedReportConfig(BaseModel):
    """Persisted report configuration (no data, only the selections)"""
    id: str
    name: str
    description: Optional[str] = None
    grouping: List[str] = Field(default_factory=list)  # Grouping field names, in order
    filters: FilterSet = Field(default_factory=FilterSet)
    options: ReportOptions = Field(default_factory=ReportOptions)
    date_preset: str = "today"
    sort: SortConfig = Field(default_factory=SortConfig)
    hidden_columns: List[str] = Field(default_factory=list)
    created_at: str
    updated_at: str


# =====================
# HTTP request bodies
# =====================

class SessionCreated(BaseModel):
    session_id: str


class ContextUpdate(BaseModel):
    """Partial context change; omitted fields keep their current value"""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    date_preset: Optional[str] = None
    dkey: Optional[str] = None
    domain_name: Optional[str] = None
    filters: Optional[FilterSet] = None
    use_post_date: Optional[bool] = None
    include_bots: Optional[bool] = None
    extra_options: Optional[Dict[str, Union[bool, int, float, str]]] = None
    timezone: Optional[str] = None


class GroupingUpdate(BaseModel):
    fields: List[str] = Field(default_factory=list, description="Grouping field names in hierarchy order")


class SortRequest(BaseModel):
    key: str


class SearchRequest(BaseModel):
    query: str = ""


class ColumnToggleRequest(BaseModel):
    key: str


class RowToggleRequest(BaseModel):
    key: str = Field(..., description="Row key (slash-joined id path)")


class DrillDownRequest(BaseModel):
    column: str = Field(..., description="Clicked metric column (visitors, engaged or sales)")
    row_key: Optional[str] = Field(None, description="Key of the clicked row; omit for the totals row")


class PageRequest(BaseModel):
    page: int = Field(..., ge=1)


class CacheStats(BaseModel):
    total_entries: int
    total_size_bytes: int
    total_size_mb: float
    total_hits: int
    oldest_entry: Optional[str] = None
    newest_entry: Optional[str] = None
    by_tenant: List[Dict[str, Any]] = Field(default_factory=list)


class CacheClearResponse(BaseModel):
    success: bool
    entries_cleared: int
    message: str


MetricRow.model_rebuild()
TotalsRow.model_rebuild()
