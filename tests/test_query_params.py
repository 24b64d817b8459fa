import pytest

from offer_analytics.constants import GROUP_BY_OPTIONS
from offer_analytics.exceptions import GroupingConfigError, ReportInputError
from offer_analytics.models.schemas import DateRange, FilterSet, GroupingField, ReportContext, ReportOptions
from offer_analytics.services.query_params import build, build_from_context

DATES = DateRange(start_date='2024-03-01', end_date='2024-03-07')
CHANNEL = GroupingField(id=1, label='Channel', field='channel')
COUNTRY = GroupingField(id=3, label='Country', field='country')


class TestBuild:

    def test_full_descriptor(self):
        filters = FilterSet(filters={'country': ['US', 'CA'], 'channel': ['Google'], 'keyword': []}, match_type='all')
        descriptor = build(DATES, 'abc', filters, [CHANNEL, COUNTRY], ReportOptions(include_bots=True))
        assert descriptor.params == {
            'startDate': '2024-03-01',
            'endDate': '2024-03-07',
            'dkey': 'abc',
            'channel': 'Google',
            'country': 'US,CA',
            'matchType': 'all',
            'groupBy': 'channel,country',
            'usePostDate': False,
            'includeBots': True,
        }

    def test_omits_tenant_and_grouping_when_absent(self):
        descriptor = build(DATES, None, FilterSet(), [], ReportOptions())
        assert 'dkey' not in descriptor.params
        assert 'groupBy' not in descriptor.params
        assert descriptor.params['matchType'] == 'any'

    def test_booleans_stay_literal(self):
        descriptor = build(DATES, 'abc', FilterSet(), [], ReportOptions(use_post_date=True))
        assert descriptor.params['usePostDate'] is True
        assert descriptor.params['includeBots'] is False

    def test_deterministic_cache_key(self):
        first = build(DATES, 'abc', FilterSet(filters={'country': ['US'], 'channel': ['G']}), [CHANNEL], ReportOptions())
        second = build(DATES, 'abc', FilterSet(filters={'channel': ['G'], 'country': ['US']}), [CHANNEL], ReportOptions())
        assert first.params == second.params
        assert first.cache_key() == second.cache_key()
        other = build(DATES, 'xyz', FilterSet(), [CHANNEL], ReportOptions())
        assert other.cache_key() != first.cache_key()

    def test_pass_through_options(self):
        options = ReportOptions(extra={'uniqueVisitors': True, 'dkey': 'evil'})
        descriptor = build(DATES, 'abc', FilterSet(), [], options)
        assert descriptor.params['uniqueVisitors'] is True
        assert descriptor.params['dkey'] == 'abc'

    def test_timezone(self):
        descriptor = build(DATES, None, FilterSet(), [], ReportOptions(), timezone='America/New_York')
        assert descriptor.params['timezone'] == 'America/New_York'

    def test_build_from_context(self):
        context = ReportContext(date_range=DATES, dkey='abc', timezone='UTC')
        descriptor = build_from_context(context, [CHANNEL])
        assert descriptor.params['dkey'] == 'abc'
        assert descriptor.params['timezone'] == 'UTC'
        assert descriptor.params['groupBy'] == 'channel'


class TestValidation:

    def test_inverted_range(self):
        dates = DateRange(start_date='2024-03-08', end_date='2024-03-01')
        with pytest.raises(ReportInputError) as exc_info:
            build(dates, 'abc', FilterSet(), [], ReportOptions())
        assert exc_info.value.code == 'inverted_date_range'

    def test_bad_date_format(self):
        dates = DateRange(start_date='03/01/2024', end_date='2024-03-07')
        with pytest.raises(ReportInputError) as exc_info:
            build(dates, 'abc', FilterSet(), [], ReportOptions())
        assert exc_info.value.code == 'invalid_date'

    def test_single_day_range_is_valid(self):
        dates = DateRange(start_date='2024-03-01', end_date='2024-03-01')
        assert build(dates, None, FilterSet(), [], ReportOptions()).params['startDate'] == '2024-03-01'

    def test_too_many_groupings(self):
        fields = [GroupingField(**option) for option in GROUP_BY_OPTIONS[:6]]
        with pytest.raises(GroupingConfigError):
            build(DATES, 'abc', FilterSet(), fields, ReportOptions())

    def test_duplicate_groupings(self):
        with pytest.raises(GroupingConfigError):
            build(DATES, 'abc', FilterSet(), [CHANNEL, CHANNEL], ReportOptions())
