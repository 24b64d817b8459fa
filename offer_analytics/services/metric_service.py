"""
Derived metric calculations for report rows and the totals row.

Rates and averages are always recomputed from base counts, never read from the
backend payload. A zero denominator yields 0 (SAFE_DIVIDE semantics); NaN and
infinity never leave this module.
"""
import math
from typing import Any, Dict, Iterable, Mapping, Union

from offer_analytics.constants import BASE_METRIC_KEYS, OPTIONAL_METRIC_KEYS
from offer_analytics.models.schemas import MetricRow, TotalsRow

Number = Union[int, float]


def safe_float(value: Any) -> float:
    """Convert a value to float, replacing None, NaN, infinity and junk with 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(result) or math.isinf(result):
        return 0.0
    return result


def safe_number(value: Any) -> Number:
    """Like safe_float, but keeps integral counts as int."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    result = safe_float(value)
    if isinstance(value, str) and result.is_integer() and '.' not in value:
        return int(result)
    return result


def safe_divide(numerator: Any, denominator: Any) -> float:
    """Division that returns 0 when the denominator is 0."""
    denominator = safe_float(denominator)
    if denominator == 0:
        return 0.0
    return safe_float(safe_float(numerator) / denominator)


def extract_base_metrics(raw: Mapping[str, Any]) -> Dict[str, Number]:
    """
    Pull base metric values out of a backend row.

    Required keys default to 0 when missing; optional keys (fraud) are only
    included when the backend sent them.
    """
    metrics = {key: safe_number(raw.get(key)) for key in BASE_METRIC_KEYS}
    for key in OPTIONAL_METRIC_KEYS:
        if raw.get(key) is not None:
            metrics[key] = safe_number(raw.get(key))
    return metrics


def compute_derived(metrics: Mapping[str, Any]) -> Dict[str, float]:
    """Rates and averages from base counts. Total: defined for every input."""
    visitors = metrics.get('visitors', 0)
    revenue = metrics.get('revenue', 0)
    sales = metrics.get('sales', 0)

    return {
        'engage_rate': safe_divide(safe_float(metrics.get('engaged', 0)) * 100, visitors),
        'sales_rate': safe_divide(safe_float(sales) * 100, visitors),
        'epc': safe_divide(revenue, visitors),
        'aov': safe_divide(revenue, sales),
    }


def sum_base_metrics(rows: Iterable[MetricRow]) -> Dict[str, Number]:
    """Sum base metrics across rows; fraud only when at least one row carries it."""
    totals: Dict[str, Number] = {key: 0 for key in BASE_METRIC_KEYS}
    for row in rows:
        for key in BASE_METRIC_KEYS + OPTIONAL_METRIC_KEYS:
            if key in row.metrics:
                totals[key] = totals.get(key, 0) + row.metrics[key]
    return totals


def compute_totals(rows: Iterable[MetricRow]) -> TotalsRow:
    """
    Grand-total row for the rows currently in view.

    Derived values come from the summed base metrics, not from averaging the
    rows' own rates (which would mis-weight them).
    """
    metrics = sum_base_metrics(rows)
    return TotalsRow(metrics=metrics, derived=compute_derived(metrics))
