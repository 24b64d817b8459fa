"""
Date resolution service for converting relative date presets to absolute dates.

Presets ("today", "last7days", "lastMonth", ...) are resolved relative to a
reference date into a DateRange with YYYY-MM-DD start and end dates.
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple
from enum import Enum

from offer_analytics.exceptions import ReportInputError
from offer_analytics.models.schemas import DateRange


class RelativeDatePreset(str, Enum):
    """Supported relative date presets."""
    TODAY = "today"
    YESTERDAY = "yesterday"
    LAST_7_DAYS = "last7days"
    LAST_30_DAYS = "last30days"
    THIS_MONTH = "thisMonth"
    LAST_MONTH = "lastMonth"
    THIS_YEAR = "thisYear"


CUSTOM_PRESET = "custom"


class DateResolver:
    """Service for resolving relative date presets to absolute date ranges."""

    @staticmethod
    def resolve_relative_date(preset: str, reference_date: Optional[datetime] = None) -> Tuple[str, str]:
        """
        Resolve a relative date preset to absolute start_date and end_date.

        Args:
            preset: The relative date preset (e.g., "last7days")
            reference_date: Optional reference date (defaults to today)

        Returns:
            Tuple of (start_date, end_date) in YYYY-MM-DD format

        Raises:
            ReportInputError: If preset is not recognized or is "custom"
        """
        if reference_date is None:
            reference_date = datetime.now()

        # Normalize to start of day
        today = reference_date.replace(hour=0, minute=0, second=0, microsecond=0)

        if preset == CUSTOM_PRESET:
            raise ReportInputError(
                "The custom preset has no relative range; supply start and end dates",
                code='custom_preset',
            )
        try:
            preset_enum = RelativeDatePreset(preset)
        except ValueError:
            raise ReportInputError(f"Unknown relative date preset: {preset}", code='unknown_preset')

        if preset_enum == RelativeDatePreset.TODAY:
            start, end = today, today

        elif preset_enum == RelativeDatePreset.YESTERDAY:
            start = end = today - timedelta(days=1)

        # Rolling windows include today
        elif preset_enum == RelativeDatePreset.LAST_7_DAYS:
            start, end = today - timedelta(days=7), today

        elif preset_enum == RelativeDatePreset.LAST_30_DAYS:
            start, end = today - timedelta(days=30), today

        # Month to date
        elif preset_enum == RelativeDatePreset.THIS_MONTH:
            start, end = today.replace(day=1), today

        elif preset_enum == RelativeDatePreset.LAST_MONTH:
            this_month_start = today.replace(day=1)
            end = this_month_start - timedelta(days=1)
            start = end.replace(day=1)

        elif preset_enum == RelativeDatePreset.THIS_YEAR:
            start, end = today.replace(month=1, day=1), today

        else:
            raise ReportInputError(f"Unhandled relative date preset: {preset}", code='unknown_preset')

        return start.strftime("%Y-%m-%d"), end.strftime("%Y-%m-%d")


def resolve_date_range(preset: str, reference_date: Optional[datetime] = None) -> DateRange:
    """Resolve a preset straight into a DateRange that remembers the preset."""
    start_date, end_date = DateResolver.resolve_relative_date(preset, reference_date)
    return DateRange(start_date=start_date, end_date=end_date, preset=preset)
