"""
Query parameter builder for the reporting backend.

Serializes a report context plus the active grouping into a flat, deterministic
parameter set. Anything the backend must never see (inverted date ranges, bad
groupings) is rejected here, before a request exists.
"""
import logging
from datetime import datetime
from typing import Mapping, Optional, Sequence

from offer_analytics.constants import FILTER_TYPES
from offer_analytics.exceptions import ReportInputError
from offer_analytics.models.schemas import (
    DateRange,
    FilterSet,
    GroupingField,
    ReportContext,
    ReportOptions,
    RequestDescriptor,
)
from offer_analytics.services.grouping_service import validate_grouping

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"

# Known filter types first in catalogue order, unknown ones after, sorted
_FILTER_ORDER = [filter_type['key'] for filter_type in FILTER_TYPES]

# Option keys the builder owns; pass-through options may not override them
_RESERVED_PARAMS = {'startDate', 'endDate', 'timezone', 'dkey', 'matchType', 'groupBy', 'usePostDate', 'includeBots'}


def _parse_date(value: str, name: str) -> datetime:
    try:
        return datetime.strptime(value, DATE_FORMAT)
    except (TypeError, ValueError):
        raise ReportInputError(
            f"Invalid {name}: {value!r} (expected YYYY-MM-DD)",
            code='invalid_date',
            details={name: value},
        )


def validate_date_range(date_range: DateRange) -> None:
    start = _parse_date(date_range.start_date, 'start_date')
    end = _parse_date(date_range.end_date, 'end_date')
    if start > end:
        raise ReportInputError(
            f"Start date {date_range.start_date} is after end date {date_range.end_date}",
            code='inverted_date_range',
            details={'start_date': date_range.start_date, 'end_date': date_range.end_date},
        )


def _ordered_filter_keys(filters: Mapping[str, Sequence[str]]):
    known = [key for key in _FILTER_ORDER if key in filters]
    unknown = sorted(key for key in filters if key not in _FILTER_ORDER)
    return known + unknown


def build(
    date_range: DateRange,
    dkey: Optional[str],
    filter_set: FilterSet,
    grouping_fields: Sequence[GroupingField],
    report_options: ReportOptions,
    timezone: Optional[str] = None,
) -> RequestDescriptor:
    """
    Build the report request descriptor.

    Args:
        date_range: Absolute date range
        dkey: Selected tenant key; omitted from the params when not selected
        filter_set: Selected filter values; empty filter types are omitted
        grouping_fields: Active grouping in hierarchy order; omitted when empty
        report_options: Boolean toggles plus opaque pass-through options
        timezone: User timezone name sent alongside the dates

    Returns:
        RequestDescriptor. The same inputs always produce the same params.

    Raises:
        ReportInputError: Malformed or inverted date range
        GroupingConfigError: More than 5 grouping fields or duplicates
    """
    validate_date_range(date_range)
    validate_grouping(grouping_fields)

    params = {
        'startDate': date_range.start_date,
        'endDate': date_range.end_date,
    }
    if timezone:
        params['timezone'] = timezone
    if dkey:
        params['dkey'] = dkey

    for filter_type in _ordered_filter_keys(filter_set.filters):
        values = filter_set.filters[filter_type]
        if values:
            params[filter_type] = ','.join(values)

    params['matchType'] = filter_set.match_type

    if grouping_fields:
        params['groupBy'] = ','.join(grouping_field.field for grouping_field in grouping_fields)

    params['usePostDate'] = report_options.use_post_date
    params['includeBots'] = report_options.include_bots

    for name in sorted(report_options.extra):
        if name in _RESERVED_PARAMS or name in params:
            logger.warning(f"Ignoring pass-through option '{name}' that shadows a built-in parameter")
            continue
        params[name] = report_options.extra[name]

    return RequestDescriptor(params=params)


def build_from_context(context: ReportContext, grouping_fields: Sequence[GroupingField]) -> RequestDescriptor:
    """Build from one immutable context snapshot, so fields never mix across snapshots."""
    return build(
        context.date_range,
        context.dkey,
        context.filters,
        grouping_fields,
        context.options,
        timezone=context.timezone,
    )
