"""
CSV export of the rows currently on screen.

Cells are formatted by column type first (currency "$1234.50", percent
"12.35%"), then written with pandas using minimal quoting, so values holding a
comma or a double quote are quoted and inner quotes doubled.
"""
import csv
import re
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from offer_analytics.services.metric_service import safe_float

CSV_MEDIA_TYPE = 'text/csv; charset=utf-8'


def format_cell(value: Any, column_type: str = 'text') -> str:
    """Text for one cell. Currency and percent cells format None as zero; other None cells are empty."""
    if column_type == 'currency':
        return f"${safe_float(value):.2f}"
    if column_type == 'percent':
        return f"{safe_float(value):.2f}%"
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _column_attr(column: Any, name: str, default: Any = None) -> Any:
    if isinstance(column, Mapping):
        return column.get(name, default)
    return getattr(column, name, default)


def export_csv(rows: Sequence[Mapping[str, Any]], columns: Sequence[Any]) -> str:
    """
    Serialize rows to CSV text.

    Args:
        rows: Cell values keyed by column key, in display order
        columns: Column definitions (key, label, type), in display order

    Returns:
        UTF-8 CSV text with a header of column labels and '\\n' line endings
    """
    labels = [str(_column_attr(column, 'label', _column_attr(column, 'key'))) for column in columns]
    data = [
        [format_cell(row.get(_column_attr(column, 'key')), _column_attr(column, 'type', 'text')) for column in columns]
        for row in rows
    ]
    df = pd.DataFrame(data, columns=labels, dtype=object)
    return df.to_csv(index=False, quoting=csv.QUOTE_MINIMAL, lineterminator='\n')


def visible_rows_to_records(visible_rows: Sequence[Any]) -> List[Dict[str, Any]]:
    """Cell dicts for VisibleRow objects (grouping label under 'grouping')."""
    records = []
    for row in visible_rows:
        values = dict(row.values)
        values['grouping'] = row.grouping_value
        records.append(values)
    return records


def export_filename(report_name: str, today: Optional[date] = None) -> str:
    """'<report-name>-YYYY-MM-DD.csv' with the name slugified."""
    today = today or date.today()
    slug = re.sub(r'[^a-z0-9]+', '-', (report_name or '').lower()).strip('-') or 'report'
    return f"{slug}-{today.isoformat()}.csv"
