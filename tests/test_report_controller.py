import csv
import io
import sqlite3
from datetime import datetime, timedelta

import pytest

from offer_analytics.exceptions import DrillDownError, GroupingConfigError, NotFoundError, ReportInputError
from offer_analytics.models.schemas import (
    ContextUpdate,
    DrillDownStatus,
    FilterSet,
    ReportStatus,
    SavedReportConfig,
    SortConfig,
)
from offer_analytics.services.query_cache_service import QueryCacheService
from offer_analytics.services.report_controller import ReportController

from tests.conftest import HIERARCHICAL_REPORT, FakeAnalyticsClient, InterleavingClient, detail_records


class TestLoadReport:

    def test_loaded_view(self, controller):
        view = controller.load_report()
        assert view.status == ReportStatus.LOADED
        assert view.is_hierarchical
        assert view.title == 'Analytics Report by Channel > Subchannel (full) > Country'
        assert [row.grouping_value for row in view.rows] == ['Google', 'Bing']
        assert view.totals.metrics['visitors'] == 140
        assert view.columns[0].label == 'Channel'

    def test_request_params(self, controller, fake_client):
        controller.load_report()
        params = fake_client.report_calls[-1]
        assert params['groupBy'] == 'channel,subchannel,country'
        assert params['dkey'] == 'abc'
        assert params['startDate'] == '2024-03-01'

    def test_empty_state(self, report_context):
        controller = ReportController(FakeAnalyticsClient(), context=report_context)
        view = controller.load_report()
        assert view.status == ReportStatus.EMPTY
        assert view.rows == []

    def test_error_discards_stale_tree(self, controller, fake_client):
        controller.load_report()
        fake_client.fail_report = 'Backend down'
        view = controller.load_report()
        assert view.status == ReportStatus.ERROR
        assert view.error == 'Backend down'
        assert view.rows == []
        fake_client.fail_report = None
        assert controller.refresh().status == ReportStatus.LOADED

    def test_input_errors_raised_before_request(self, controller, fake_client):
        with pytest.raises(ReportInputError):
            controller.set_date_range('2024-03-10', '2024-03-01')
        with pytest.raises(GroupingConfigError):
            controller.set_grouping(['channel', 'channel'])
        assert fake_client.report_calls == []

    def test_cache_dedups_and_refresh_bypasses(self, fake_client, report_context, tmp_path):
        cache = QueryCacheService(str(tmp_path / 'cache.db'))
        controller = ReportController(fake_client, cache=cache, context=report_context)
        controller.load_report()
        controller.load_report()
        assert len(fake_client.report_calls) == 1
        controller.refresh()
        assert len(fake_client.report_calls) == 2

    def test_expired_cache_entry_is_refetched(self, fake_client, report_context, tmp_path):
        cache = QueryCacheService(str(tmp_path / 'cache.db'), ttl_seconds=60)
        first = ReportController(fake_client, cache=cache, context=report_context)
        assert first.load_report().totals.metrics['visitors'] == 140

        fake_client.report = {'data': [{'id': 'google', 'grouping': 'Google', 'visitors': 500}]}
        second = ReportController(fake_client, cache=cache, context=report_context)
        assert second.load_report().totals.metrics['visitors'] == 140
        assert len(fake_client.report_calls) == 1

        with sqlite3.connect(cache.db_path) as conn:
            conn.execute("UPDATE report_cache SET stored_at = ?",
                         ((datetime.utcnow() - timedelta(minutes=5)).isoformat(),))
        assert second.load_report().totals.metrics['visitors'] == 500
        assert len(fake_client.report_calls) == 2

    def test_single_grouping_zero_sales(self, report_context):
        client = FakeAnalyticsClient(report={'data': [
            {'channel': 'Google', 'visitors': 100, 'engaged': 40, 'sales': 0, 'revenue': 0},
        ]})
        controller = ReportController(client, grouping=None, context=report_context)
        controller.set_grouping(['channel'])
        view = controller.load_report()
        row = view.rows[0]
        assert row.id == 'row-0'
        assert row.grouping_value == 'Google'
        assert row.derived == {'engage_rate': 40.0, 'sales_rate': 0.0, 'epc': 0.0, 'aov': 0.0}
        assert not row.has_children


class TestOutOfOrderResponses:

    def test_older_report_response_is_dropped(self, report_context):
        client = InterleavingClient(report=HIERARCHICAL_REPORT)
        controller = ReportController(client, context=report_context)

        def newer_load():
            client.report = {'data': [{'id': 'yahoo', 'grouping': 'Yahoo', 'visitors': 7}]}
            controller.load_report()

        client.interleave = newer_load
        view = controller.load_report()
        assert len(client.report_calls) == 2
        assert view.status == ReportStatus.LOADED
        assert [row.grouping_value for row in view.rows] == ['Yahoo']
        assert view.totals.metrics['visitors'] == 7

    def test_older_response_does_not_clear_newer_error(self, report_context):
        client = InterleavingClient(report=HIERARCHICAL_REPORT)
        controller = ReportController(client, context=report_context)

        def newer_failing_load():
            client.fail_report = 'Backend down'
            controller.load_report()

        client.interleave = newer_failing_load
        view = controller.load_report()
        assert view.status == ReportStatus.ERROR
        assert view.error == 'Backend down'
        assert view.rows == []

class TestTableState:

    def test_expansion_survives_resort(self, controller):
        controller.load_report()
        controller.toggle_row('google')
        before = {row.key for row in controller.view().visible_rows}
        controller.sort_by('grouping')
        after = controller.view().visible_rows
        assert {row.key for row in after} == before
        assert [row.key for row in after][:2] == ['bing', 'google']

    def test_visible_rows_and_level_labels(self, controller):
        controller.load_report()
        controller.toggle_row('google')
        visible = controller.view().visible_rows
        assert [row.key for row in visible] == ['google', 'google/search', 'google/display', 'bing']
        assert visible[0].expanded and visible[0].level_label == 'Channel'
        assert visible[1].level_label == 'Subchannel (full)'

    def test_expand_all_and_collapse_all(self, controller):
        controller.load_report()
        controller.expand_all()
        assert len(controller.view().visible_rows) == 7
        controller.collapse_all()
        assert len(controller.view().visible_rows) == 2

    def test_grouping_change_resets_expansion(self, controller):
        controller.load_report()
        controller.expand_all()
        controller.set_grouping(['channel', 'subchannel', 'country'])
        assert controller.expansion.expanded != set()
        controller.set_grouping(['country'])
        assert controller.expansion.expanded == set()

    def test_reload_prunes_missing_keys(self, controller, fake_client):
        controller.load_report()
        controller.toggle_row('bing')
        fake_client.report = {'data': [{'id': 'google', 'grouping': 'Google', 'visitors': 1}]}
        controller.load_report()
        assert controller.expansion.expanded == set()

    def test_toggle_unknown_row(self, controller):
        controller.load_report()
        with pytest.raises(NotFoundError):
            controller.toggle_row('nope')

    def test_leaf_rows_cannot_be_toggled(self, controller):
        controller.load_report()
        with pytest.raises(ReportInputError) as excinfo:
            controller.toggle_row('google/search/us')
        assert excinfo.value.code == 'row_not_expandable'
        assert controller.expansion.expanded == set()
        assert controller.toggle_row('google/search') is True

    def test_sort_toggling(self, controller):
        assert controller.sort_by('visitors') == SortConfig(key='visitors', direction='asc')
        assert controller.sort_by('visitors') == SortConfig(key='visitors', direction='desc')
        assert controller.sort_by('revenue') == SortConfig(key='revenue', direction='asc')
        with pytest.raises(ReportInputError):
            controller.sort_by('unknown')

    def test_search_filters_top_level_and_totals(self, controller):
        controller.load_report()
        controller.set_search('goo')
        view = controller.view()
        assert [row.grouping_value for row in view.rows] == ['Google']
        assert view.totals.metrics['visitors'] == 100

    def test_toggle_column(self, controller):
        controller.load_report()
        assert controller.toggle_column('revenue') is False
        assert 'revenue' not in [column.key for column in controller.view().columns]
        assert controller.toggle_column('revenue') is True
        with pytest.raises(ReportInputError):
            controller.toggle_column('grouping')

    def test_fraud_column_only_when_present(self, controller, fake_client):
        controller.load_report()
        assert 'fraud' not in [column.key for column in controller.view().columns]
        fake_client.report = {'data': [{'grouping': 'x', 'visitors': 1, 'fraud': 1}]}
        controller.refresh()
        assert 'fraud' in [column.key for column in controller.view().columns]


class TestExport:

    def test_csv_follows_visible_rows(self, controller):
        controller.load_report()
        controller.toggle_row('google')
        rows = list(csv.reader(io.StringIO(controller.export_csv())))
        assert rows[0][:3] == ['Channel', 'Visitors', 'Engage']
        assert [row[0] for row in rows[1:]] == ['Google', 'Search', 'Display', 'Bing']
        assert rows[1][6] == '$250.00'

    def test_filename(self, controller):
        assert controller.export_filename().startswith('analytics-report-by-channel-subchannel-full-country-')


class TestDrillDown:

    def test_filter_accumulation(self, controller, fake_client):
        controller.load_report()
        view = controller.open_drilldown('sales', 'google/search/us')
        assert view.context.filters == {'channel': 'Google', 'subchannel': 'Search', 'country': 'US'}
        params = fake_client.detail_calls[-1]
        assert params['type'] == 'sales'
        assert params['country'] == 'US'

    def test_pagination_heuristic(self, controller, fake_client):
        fake_client.detail_pages = {0: {'data': detail_records(25)}, 25: {'data': detail_records(24, 25)}}
        controller.load_report()
        assert controller.open_drilldown('visitors', 'google').has_more is True
        assert controller.drilldown.next_page().has_more is False

    def test_totals_row(self, controller):
        controller.load_report()
        view = controller.open_drilldown('engaged')
        assert view.context.filters == {}

    def test_not_loaded(self, controller):
        with pytest.raises(DrillDownError):
            controller.open_drilldown('visitors', 'google')

    def test_unknown_row_and_column(self, controller):
        controller.load_report()
        with pytest.raises(NotFoundError):
            controller.open_drilldown('visitors', 'nope')
        with pytest.raises(DrillDownError):
            controller.open_drilldown('revenue', 'google')

    def test_drilldown_csv(self, controller, fake_client):
        fake_client.detail_pages = {0: {'data': detail_records(2)}}
        controller.load_report()
        controller.open_drilldown('sales', 'google')
        lines = controller.export_drilldown_csv().splitlines()
        assert lines[0].startswith('Since Visit,Page,Visitor ID,Action ID')
        assert len(lines) == 3

    def test_close_tears_down(self, controller):
        controller.load_report()
        controller.open_drilldown('visitors', 'google')
        controller.close()
        assert controller.drilldown.view().status == DrillDownStatus.CLOSED


class TestContext:

    def test_context_update_is_atomic(self, controller):
        context = controller.apply_context_update(ContextUpdate(
            start_date='2024-02-01', end_date='2024-02-10', dkey='xyz',
            filters=FilterSet(filters={'country': ['US']}), include_bots=True,
        ))
        assert context.date_range.start_date == '2024-02-01'
        assert context.dkey == 'xyz'
        assert context.options.include_bots is True
        assert context.filters.filters == {'country': ['US']}

    def test_invalid_update_leaves_context_untouched(self, controller):
        before = controller.context
        with pytest.raises(ReportInputError):
            controller.apply_context_update(ContextUpdate(start_date='2024-05-01', end_date='2024-04-01', dkey='xyz'))
        assert controller.context == before

    def test_date_preset(self, controller):
        context = controller.set_date_preset('lastMonth', datetime(2024, 3, 15))
        assert (context.date_range.start_date, context.date_range.end_date) == ('2024-02-01', '2024-02-29')
        assert controller.set_date_preset('custom').date_range.start_date == '2024-02-01'

    def test_initialize_domains_selects_default_offer(self, fake_client, report_context):
        controller = ReportController(fake_client, context=report_context.model_copy(update={'dkey': None}))
        controller.initialize_domains()
        assert controller.context.dkey == 'xyz'
        assert controller.context.domain_name == 'Offer X'

    def test_initialize_domains_keeps_selection(self, controller):
        controller.initialize_domains()
        assert controller.context.dkey == 'abc'

    def test_suggestions(self, controller):
        assert controller.suggest_filter_values('channel', 'goo')[0].label == 'goo-match'
        assert controller.suggest_filter_values('channel', ' ') == []
        with pytest.raises(ReportInputError):
            controller.suggest_filter_values('nope', 'x')


class TestSavedConfig:

    def test_snapshot_and_apply(self, controller):
        controller.sort_by('revenue')
        controller.toggle_column('fraud')
        snapshot = controller.snapshot_config()
        assert snapshot['grouping'] == ['channel', 'subchannel', 'country']
        assert snapshot['sort'] == {'key': 'revenue', 'direction': 'asc'}

        config = SavedReportConfig(
            id='r1', name='By country', grouping=['country'], date_preset='yesterday',
            filters=FilterSet(filters={'channel': ['Google']}),
            created_at='2024-01-01T00:00:00', updated_at='2024-01-01T00:00:00',
        )
        controller.load_report()
        controller.expand_all()
        controller.apply_config(config, reference_date=datetime(2024, 3, 15))
        assert controller.grouping.field_names == ['country']
        assert controller.expansion.expanded == set()
        assert controller.context.date_range.start_date == '2024-03-14'
        assert controller.context.filters.filters == {'channel': ['Google']}
        assert controller.sort.config == SortConfig()
