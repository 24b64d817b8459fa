import pytest

from offer_analytics.exceptions import BackendError
from offer_analytics.models.schemas import DateRange, Domain, DomainList, FilterSuggestion, ReportContext
from offer_analytics.services.grouping_service import GroupingConfiguration
from offer_analytics.services.report_controller import ReportController


class FakeAnalyticsClient:
    """In-memory stand-in for AnalyticsApiClient; records every call."""

    def __init__(self, report=None, detail_pages=None, domains=None):
        self.report = report if report is not None else {'data': [], 'isHierarchical': False}
        self.detail_pages = detail_pages or {}
        self.detail_default = {'data': []}
        self.domains = domains or DomainList()
        self.report_calls = []
        self.detail_calls = []
        self.lookup_calls = []
        self.fail_report = None
        self.fail_detail = None
        self.fail_lookup = None
        self.lookups = {}

    def get_analytics_report(self, params):
        self.report_calls.append(dict(params))
        if self.fail_report:
            raise BackendError(self.fail_report, status_code=500)
        return self.report

    def get_analytics_detail(self, params):
        self.detail_calls.append(dict(params))
        if self.fail_detail:
            raise BackendError(self.fail_detail, status_code=500)
        return self.detail_pages.get(params.get('offset', 0), self.detail_default)

    def get_action_detail(self, action_id, dkey=None):
        self.lookup_calls.append(('action', action_id, dkey))
        if self.fail_lookup:
            raise BackendError(self.fail_lookup, status_code=500)
        return {'data': self.lookups.get(('action', action_id), {'action_id': action_id})}

    def get_visitor_detail(self, visitor_id, dkey=None):
        self.lookup_calls.append(('visitor', visitor_id, dkey))
        if self.fail_lookup:
            raise BackendError(self.fail_lookup, status_code=500)
        return {'data': self.lookups.get(('visitor', visitor_id), {'visitor': {'visitor_id': visitor_id}})}

    def get_domains(self):
        return self.domains

    def get_approximate(self, query, filter_type, dkey=None):
        return [FilterSuggestion(id='1', label=f"{query}-match")]


class InterleavingClient(FakeAnalyticsClient):
    """Runs `interleave` once inside the next backend call, after that call's response is taken."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.interleave = None

    def _interleaved(self, response):
        interleave, self.interleave = self.interleave, None
        if interleave is not None:
            interleave()
        return response

    def get_analytics_report(self, params):
        return self._interleaved(super().get_analytics_report(params))

    def get_analytics_detail(self, params):
        return self._interleaved(super().get_analytics_detail(params))

    def get_action_detail(self, action_id, dkey=None):
        return self._interleaved(super().get_action_detail(action_id, dkey))


def detail_records(count, start=0):
    return [
        {'visitor_id': f"v{start + i}", 'action_id': f"a{start + i}", 'revenue': 10 + i, 'channel': 'Google'}
        for i in range(count)
    ]


HIERARCHICAL_REPORT = {
    'isHierarchical': True,
    'data': [
        {
            'id': 'google', 'grouping': 'Google', 'visitors': 100, 'engaged': 40, 'sales': 5, 'revenue': 250.0,
            'children': [
                {
                    'id': 'search', 'grouping': 'Search', 'visitors': 70, 'engaged': 30, 'sales': 4, 'revenue': 200.0,
                    'children': [
                        {'id': 'us', 'grouping': 'US', 'visitors': 50, 'engaged': 20, 'sales': 3, 'revenue': 150.0},
                        {'id': 'ca', 'grouping': 'CA', 'visitors': 20, 'engaged': 10, 'sales': 1, 'revenue': 50.0},
                    ],
                },
                {'id': 'display', 'grouping': 'Display', 'visitors': 30, 'engaged': 10, 'sales': 1, 'revenue': 50.0},
            ],
        },
        {
            'id': 'bing', 'grouping': 'Bing', 'visitors': 40, 'engaged': 10, 'sales': 0, 'revenue': 0,
            'children': [
                {'id': 'search', 'grouping': 'Search', 'visitors': 40, 'engaged': 10, 'sales': 0, 'revenue': 0},
            ],
        },
    ],
}


@pytest.fixture
def fake_client():
    return FakeAnalyticsClient(
        report=HIERARCHICAL_REPORT,
        domains=DomainList(
            domains=[Domain(dkey='abc', name='Offer A'), Domain(dkey='xyz', name='Offer X')],
            default_offer=Domain(dkey='xyz', name='Offer X'),
        ),
    )


@pytest.fixture
def report_context():
    return ReportContext(
        date_range=DateRange(start_date='2024-03-01', end_date='2024-03-07'),
        dkey='abc',
        domain_name='Offer A',
    )


@pytest.fixture
def controller(fake_client, report_context):
    controller = ReportController(
        fake_client,
        grouping=GroupingConfiguration(['channel', 'subchannel', 'country']),
        context=report_context,
        search_debounce_ms=10,
    )
    yield controller
    controller.close()
