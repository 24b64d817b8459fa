"""
Tree builder - turns the reporting backend's result set into a uniform row tree.

The backend answers either with a flat list (one grouping field) or with rows
that already carry a `children` array (several grouping fields, pre-nested by
the backend). Both shapes come out as the same MetricRow tree:

- ids come from the backend when present, otherwise `row-<index>` per level
  (unique within each sibling array, not globally)
- every row gets a `key` (the id path from the root) that is unique in the tree;
  '%' and '/' inside an id are percent-escaped so ids cannot forge a path
- derived metrics are computed here, never taken from the payload

Tree walks are explicit (stack based) so they do not depend on any renderer.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from offer_analytics.constants import BASE_METRIC_KEYS, DERIVED_METRIC_KEYS, OPTIONAL_METRIC_KEYS
from offer_analytics.models.schemas import GroupingField, MetricRow
from offer_analytics.services.metric_service import compute_derived, extract_base_metrics

logger = logging.getLogger(__name__)

KEY_SEPARATOR = '/'
PLACEHOLDER_LABEL = '-'

# Payload fields that are consumed by the builder and not kept as attributes
_RESERVED_FIELDS = {'id', 'grouping', 'children'} | set(BASE_METRIC_KEYS) | set(OPTIONAL_METRIC_KEYS) | set(DERIVED_METRIC_KEYS)


@dataclass
class ReportTree:
    """Normalized report result."""
    rows: List[MetricRow] = field(default_factory=list)
    is_hierarchical: bool = False

    @property
    def is_empty(self) -> bool:
        return len(self.rows) == 0


def _present(value: Any) -> bool:
    return value is not None and value != ''


def resolve_grouping_label(raw: Mapping[str, Any], depth: int, grouping: Sequence[GroupingField]) -> str:
    """
    Display label for a row.

    Order: explicit `grouping` from the backend, the active grouping field's
    value at this depth, a free-text `label`, the `date`, then a placeholder.
    """
    if _present(raw.get('grouping')):
        return str(raw['grouping'])
    if depth < len(grouping):
        value = raw.get(grouping[depth].field)
        if _present(value):
            return str(value)
    for fallback in ('label', 'date'):
        if _present(raw.get(fallback)):
            return str(raw[fallback])
    return PLACEHOLDER_LABEL


def _sibling_id(raw: Mapping[str, Any], index: int, used: Set[str]) -> str:
    candidate = str(raw['id']) if _present(raw.get('id')) else f"row-{index}"
    if candidate in used:
        candidate = f"row-{index}"
    suffix = 1
    unique = candidate
    while unique in used:
        unique = f"{candidate}-{suffix}"
        suffix += 1
    return unique


def key_segment(row_id: str) -> str:
    """Escape an id for use as one key segment."""
    return row_id.replace('%', '%25').replace(KEY_SEPARATOR, '%2F')


def _attributes(raw: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        name: value for name, value in raw.items()
        if name not in _RESERVED_FIELDS and (value is None or isinstance(value, (str, int, float, bool)))
    }


def _build_level(raw_rows: Sequence[Mapping[str, Any]], depth: int, parent_key: Optional[str],
                 grouping: Sequence[GroupingField]) -> List[MetricRow]:
    rows = []
    used: Set[str] = set()
    for index, raw in enumerate(raw_rows):
        if not isinstance(raw, Mapping):
            logger.warning(f"Skipping non-object row at depth {depth}, index {index}: {raw!r}")
            continue
        row_id = _sibling_id(raw, index, used)
        used.add(row_id)
        segment = key_segment(row_id)
        key = segment if parent_key is None else f"{parent_key}{KEY_SEPARATOR}{segment}"

        raw_children = raw.get('children')
        children = []
        if isinstance(raw_children, list) and raw_children:
            children = _build_level(raw_children, depth + 1, key, grouping)

        metrics = extract_base_metrics(raw)
        rows.append(MetricRow(
            id=row_id,
            key=key,
            grouping_value=resolve_grouping_label(raw, depth, grouping),
            metrics=metrics,
            derived=compute_derived(metrics),
            children=children,
            depth=depth,
            attributes=_attributes(raw),
        ))
    return rows


def build_tree(payload: Any, grouping: Sequence[GroupingField] = ()) -> ReportTree:
    """
    Build the row tree from a backend response.

    Args:
        payload: `{"data": [...], "isHierarchical": bool}` or a bare list of rows
        grouping: Active grouping fields, in hierarchy order

    Returns:
        ReportTree with depth-0 rows. The payload is never mutated.
    """
    if isinstance(payload, Mapping):
        raw_rows = payload.get('data') or []
        is_hierarchical = bool(payload.get('isHierarchical', False))
    else:
        raw_rows = payload or []
        is_hierarchical = False

    if not isinstance(raw_rows, list):
        logger.warning(f"Unexpected report payload type {type(raw_rows).__name__}, treating as empty")
        raw_rows = []

    rows = _build_level(raw_rows, 0, None, grouping)
    is_hierarchical = is_hierarchical or any(row.has_children for row in rows)
    return ReportTree(rows=rows, is_hierarchical=is_hierarchical)


# =====================
# Tree walks
# =====================

def iter_rows(rows: Sequence[MetricRow]) -> Iterator[MetricRow]:
    """Pre-order walk over every row in the tree."""
    stack = list(reversed(rows))
    while stack:
        row = stack.pop()
        yield row
        stack.extend(reversed(row.children))


def all_keys(rows: Sequence[MetricRow]) -> Set[str]:
    return {row.key for row in iter_rows(rows)}


def expandable_keys(rows: Sequence[MetricRow]) -> Set[str]:
    """Keys of every row that has at least one child."""
    return {row.key for row in iter_rows(rows) if row.has_children}


def find_path(rows: Sequence[MetricRow], key: str) -> List[MetricRow]:
    """
    Rows from the root down to the row with `key` (inclusive).

    Returns an empty list when the key is not in the tree.
    """
    stack = [(row, [row]) for row in reversed(rows)]
    while stack:
        row, path = stack.pop()
        if row.key == key:
            return path
        # Only descend into rows whose key prefixes the target
        if key.startswith(row.key + KEY_SEPARATOR):
            stack.extend((child, path + [child]) for child in reversed(row.children))
    return []


def find_row(rows: Sequence[MetricRow], key: str) -> Optional[MetricRow]:
    path = find_path(rows, key)
    return path[-1] if path else None


def flatten_visible(rows: Sequence[MetricRow], expanded: Set[str]) -> List[Tuple[MetricRow, bool]]:
    """
    Rows in display order: each row, followed by its children when expanded.

    Returns (row, is_expanded) pairs.
    """
    visible = []
    stack = list(reversed(rows))
    while stack:
        row = stack.pop()
        is_expanded = row.has_children and row.key in expanded
        visible.append((row, is_expanded))
        if is_expanded:
            stack.extend(reversed(row.children))
    return visible
