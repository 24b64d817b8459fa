"""
Catalogues shared by the report engine: group-by options, report columns,
filter types and date presets.
"""

MAX_GROUPINGS = 5

DEFAULT_GROUPING_FIELD = 'landing_page_variant'

# Group By field options (id, label, backend grouping key)
GROUP_BY_OPTIONS = [
    {'id': 1, 'label': 'Channel', 'field': 'channel'},
    {'id': 2, 'label': 'Subchannel (stripped)', 'field': 'subchannel_stripped'},
    {'id': 3, 'label': 'Country', 'field': 'country'},
    {'id': 4, 'label': 'Keyword', 'field': 'keyword'},
    {'id': 5, 'label': 'Rawword', 'field': 'rawword'},
    {'id': 6, 'label': 'State', 'field': 'state'},
    {'id': 7, 'label': 'Device Type', 'field': 'device_type'},
    {'id': 8, 'label': 'Operating System', 'field': 'os'},
    {'id': 9, 'label': 'Operating System + Version', 'field': 'os_version'},
    {'id': 10, 'label': 'Browser', 'field': 'browser'},
    {'id': 11, 'label': 'Browser + Version', 'field': 'browser_version'},
    {'id': 12, 'label': 'Day of Week', 'field': 'day_of_week'},
    {'id': 13, 'label': 'Time of Day', 'field': 'hour'},
    {'id': 14, 'label': 'Landing Page', 'field': 'landing_page'},
    {'id': 15, 'label': 'Landing Page + Variant', 'field': 'landing_page_variant'},
    {'id': 16, 'label': 'Subchannel (full)', 'field': 'subchannel'},
    {'id': 18, 'label': 'State, City', 'field': 'state_city'},
    {'id': 19, 'label': 'Source Domain', 'field': 'source_domain'},
    {'id': 20, 'label': 'IP Address', 'field': 'ip'},
    {'id': 21, 'label': 'IP Organization', 'field': 'ip_org'},
    {'id': 22, 'label': 'ISP', 'field': 'isp'},
    {'id': 23, 'label': 'Visit Date', 'field': 'date'},
    {'id': 24, 'label': 'Visit Date + Day of Week', 'field': 'date_dow'},
]

# Report column definitions, in display order
REPORT_COLUMNS = [
    {'key': 'grouping', 'label': 'Group', 'sortable': True, 'clickable': False, 'type': 'text'},
    {'key': 'visitors', 'label': 'Visitors', 'sortable': True, 'clickable': True, 'type': 'number'},
    {'key': 'engaged', 'label': 'Engage', 'sortable': True, 'clickable': True, 'type': 'number'},
    {'key': 'engage_rate', 'label': 'Engage %', 'sortable': True, 'clickable': False, 'type': 'percent'},
    {'key': 'sales', 'label': 'Sales', 'sortable': True, 'clickable': True, 'type': 'number'},
    {'key': 'sales_rate', 'label': 'Sales %', 'sortable': True, 'clickable': False, 'type': 'percent'},
    {'key': 'revenue', 'label': 'Revenue', 'sortable': True, 'clickable': False, 'type': 'currency'},
    {'key': 'aov', 'label': 'AOV', 'sortable': True, 'clickable': False, 'type': 'currency'},
    {'key': 'epc', 'label': 'EPC', 'sortable': True, 'clickable': False, 'type': 'currency'},
    {'key': 'fraud', 'label': 'Fraud', 'sortable': True, 'clickable': False, 'type': 'number'},
]

FILTER_TYPES = [
    {'key': 'channel', 'label': 'Channel', 'placeholder': 'Search channels...'},
    {'key': 'subchannel', 'label': 'Subchannel', 'placeholder': 'Search subchannels...'},
    {'key': 'country', 'label': 'Country', 'placeholder': 'Search countries...'},
    {'key': 'keyword', 'label': 'Keyword', 'placeholder': 'Search keywords...'},
    {'key': 'iporg', 'label': 'IP Organization', 'placeholder': 'Search organizations...'},
    {'key': 'page_action', 'label': 'Page/Action', 'placeholder': 'Search actions...'},
]

DATE_PRESETS = [
    {'value': 'today', 'label': 'Today'},
    {'value': 'yesterday', 'label': 'Yesterday'},
    {'value': 'last7days', 'label': 'Last 7 Days'},
    {'value': 'last30days', 'label': 'Last 30 Days'},
    {'value': 'thisMonth', 'label': 'This Month'},
    {'value': 'lastMonth', 'label': 'Last Month'},
    {'value': 'thisYear', 'label': 'This Year'},
    {'value': 'custom', 'label': 'Custom Range'},
]

BASE_METRIC_KEYS = ('visitors', 'engaged', 'sales', 'revenue')
OPTIONAL_METRIC_KEYS = ('fraud',)
DERIVED_METRIC_KEYS = ('engage_rate', 'sales_rate', 'epc', 'aov')

# Columns whose cells open a drill-down, mapped to the detail type
DRILLDOWN_TYPES = {
    'visitors': 'visitors',
    'engaged': 'engaged',
    'sales': 'sales',
}

DETAIL_PAGE_SIZE = 25

_ACTION_DETAIL_COLUMNS = [
    {'key': 'since_visit', 'label': 'Since Visit', 'type': 'text'},
    {'key': 'page', 'label': 'Page', 'type': 'text'},
    {'key': 'visitor_id', 'label': 'Visitor ID', 'type': 'text'},
    {'key': 'action_id', 'label': 'Action ID', 'type': 'text'},
    {'key': 'total_actions', 'label': 'Total Actions', 'type': 'number'},
    {'key': 'revenue', 'label': 'Revenue', 'type': 'currency'},
    {'key': 'channel', 'label': 'Channel', 'type': 'text'},
    {'key': 'subchannel', 'label': 'Subchannel', 'type': 'text'},
    {'key': 'keyword', 'label': 'Keyword', 'type': 'text'},
]

DETAIL_COLUMNS = {
    'visitors': [
        {'key': 'since_visit', 'label': 'Since Visit', 'type': 'text'},
        {'key': 'visitor_id', 'label': 'Visitor ID', 'type': 'text'},
        {'key': 'total_actions', 'label': 'Total Actions', 'type': 'number'},
        {'key': 'revenue', 'label': 'Revenue', 'type': 'currency'},
        {'key': 'channel', 'label': 'Channel', 'type': 'text'},
        {'key': 'subchannel', 'label': 'Subchannel', 'type': 'text'},
        {'key': 'keyword', 'label': 'Keyword', 'type': 'text'},
    ],
    'engaged': _ACTION_DETAIL_COLUMNS,
    'sales': _ACTION_DETAIL_COLUMNS,
}

DETAIL_TITLES = {
    'visitors': 'Visitor Details',
    'engaged': 'Engagement Details',
    'sales': 'Sales Details',
}


def get_group_by_option(option_id=None, field=None):
    """Look up a group-by option by id or by backend field name."""
    for option in GROUP_BY_OPTIONS:
        if option_id is not None and option['id'] == option_id:
            return option
        if field is not None and option['field'] == field:
            return option
    return None


def get_report_column(key):
    return next((col for col in REPORT_COLUMNS if col['key'] == key), None)
