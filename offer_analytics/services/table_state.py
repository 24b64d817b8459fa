"""
Table state for the primary report: expansion, sorting and search.

All three are plain data with pure transitions. They live independently of the
row tree and are re-applied to every rebuilt tree by matching row keys.
"""
import logging
import unicodedata
from typing import Any, Iterable, List, Optional, Sequence, Set, Tuple

from offer_analytics.models.schemas import MetricRow, SortConfig
from offer_analytics.services.metric_service import safe_float
from offer_analytics.services.tree_service import all_keys, expandable_keys

logger = logging.getLogger(__name__)

# Columns compared as text; everything else is numeric
STRING_SORT_KEYS = {'grouping'}


class ExpansionState:
    """
    Set of expanded row keys.

    Starts empty (fully collapsed). Reset whenever the grouping changes, since
    the keys of one hierarchy mean nothing in another.
    """

    def __init__(self, expanded: Optional[Iterable[str]] = None):
        self._expanded: Set[str] = set(expanded or [])

    @property
    def expanded(self) -> Set[str]:
        return set(self._expanded)

    def is_expanded(self, key: str) -> bool:
        return key in self._expanded

    def toggle(self, key: str) -> bool:
        """Flip membership; returns the new expanded flag."""
        if key in self._expanded:
            self._expanded.discard(key)
            return False
        self._expanded.add(key)
        return True

    def expand_all(self, rows: Sequence[MetricRow]) -> None:
        """Expand every row that has at least one child (full tree walk)."""
        self._expanded = expandable_keys(rows)

    def collapse_all(self) -> None:
        self._expanded = set()

    def reset(self) -> None:
        self._expanded = set()

    def prune(self, rows: Sequence[MetricRow]) -> Set[str]:
        """Drop keys that are not in `rows`; returns the dropped keys."""
        present = all_keys(rows)
        dropped = self._expanded - present
        if dropped:
            logger.debug(f"Dropping {len(dropped)} expanded keys missing from rebuilt tree")
        self._expanded &= present
        return dropped

    def __len__(self) -> int:
        return len(self._expanded)


class SortState:
    """
    Column sort for the rows driving the primary table.

    Clicking the active column flips the direction; clicking another column
    starts ascending.
    """

    def __init__(self, key: str = 'visitors', direction: str = 'desc'):
        if direction not in ('asc', 'desc'):
            raise ValueError(f"Invalid sort direction: {direction}")
        self.key = key
        self.direction = direction

    def click(self, key: str) -> SortConfig:
        if key == self.key:
            self.direction = 'desc' if self.direction == 'asc' else 'asc'
        else:
            self.key = key
            self.direction = 'asc'
        return self.config

    @property
    def config(self) -> SortConfig:
        return SortConfig(key=self.key, direction=self.direction)

    @classmethod
    def from_config(cls, config: SortConfig) -> 'SortState':
        return cls(config.key, config.direction)


def _text_sort_key(value: Any) -> Tuple[str, str]:
    text = unicodedata.normalize('NFKD', str(value))
    return (text.casefold(), text)


def _row_sort_key(row: MetricRow, key: str) -> Tuple[int, Any]:
    value = row.value(key)
    if value is None:
        # Missing values compare as +infinity
        return (1, 0)
    if key in STRING_SORT_KEYS:
        return (0, _text_sort_key(value))
    return (0, safe_float(value))


def sort_rows(rows: Sequence[MetricRow], key: str, direction: str = 'asc') -> List[MetricRow]:
    """
    Stable sort of sibling rows by a column.

    Numeric columns compare numerically, `grouping` compares as text ignoring
    case. Missing values sort last ascending and first descending. Children are
    left in backend order.
    """
    return sorted(rows, key=lambda row: _row_sort_key(row, key), reverse=(direction == 'desc'))


def filter_rows(rows: Sequence[MetricRow], query: str) -> List[MetricRow]:
    """Top-level rows whose grouping label contains `query` (case-insensitive)."""
    needle = (query or '').casefold()
    if not needle:
        return list(rows)
    return [row for row in rows if needle in str(row.grouping_value or '').casefold()]
