import math

import pytest

from offer_analytics.models.schemas import MetricRow
from offer_analytics.services.metric_service import (
    compute_derived,
    compute_totals,
    extract_base_metrics,
    safe_divide,
    safe_float,
    safe_number,
)


def make_row(row_id, **metrics):
    base = {'visitors': 0, 'engaged': 0, 'sales': 0, 'revenue': 0}
    base.update(metrics)
    return MetricRow(id=row_id, key=row_id, grouping_value=row_id, metrics=base, derived=compute_derived(base))


class TestSafeConversions:

    def test_safe_float_replaces_junk(self):
        assert safe_float(None) == 0.0
        assert safe_float('abc') == 0.0
        assert safe_float(float('nan')) == 0.0
        assert safe_float(float('inf')) == 0.0
        assert safe_float('12.5') == 12.5

    def test_safe_number_keeps_integers(self):
        assert safe_number(7) == 7 and isinstance(safe_number(7), int)
        assert isinstance(safe_number('7'), int)
        assert safe_number('7.5') == 7.5

    def test_safe_divide_zero_denominator(self):
        assert safe_divide(10, 0) == 0
        assert safe_divide(10, None) == 0
        assert safe_divide(10, 4) == 2.5


class TestComputeDerived:

    def test_zero_sales_row(self):
        derived = compute_derived({'visitors': 100, 'engaged': 40, 'sales': 0, 'revenue': 0})
        assert derived == {'engage_rate': 40.0, 'sales_rate': 0.0, 'epc': 0.0, 'aov': 0.0}

    def test_zero_visitors_is_total(self):
        derived = compute_derived({'visitors': 0, 'engaged': 0, 'sales': 0, 'revenue': 0})
        assert all(value == 0 for value in derived.values())

    @pytest.mark.parametrize('metrics', [
        {'visitors': float('nan'), 'engaged': 1, 'sales': 1, 'revenue': 1},
        {'visitors': 10, 'engaged': float('inf'), 'sales': 1, 'revenue': float('-inf')},
        {'visitors': 5, 'engaged': 9, 'sales': 7, 'revenue': 3},
        {},
    ])
    def test_always_finite(self, metrics):
        for value in compute_derived(metrics).values():
            assert value is not None
            assert math.isfinite(value)

    def test_rates_and_averages(self):
        derived = compute_derived({'visitors': 200, 'engaged': 50, 'sales': 10, 'revenue': 500.0})
        assert derived['engage_rate'] == 25.0
        assert derived['sales_rate'] == 5.0
        assert derived['epc'] == 2.5
        assert derived['aov'] == 50.0


class TestExtractBaseMetrics:

    def test_missing_keys_default_to_zero(self):
        assert extract_base_metrics({'visitors': 3}) == {'visitors': 3, 'engaged': 0, 'sales': 0, 'revenue': 0}

    def test_fraud_only_when_sent(self):
        assert 'fraud' not in extract_base_metrics({'visitors': 3})
        assert extract_base_metrics({'visitors': 3, 'fraud': 1})['fraud'] == 1


class TestComputeTotals:

    def test_totals_across_two_rows(self):
        rows = [
            make_row('a', visitors=100, engaged=50, sales=10, revenue=500.0),
            make_row('b', visitors=100, engaged=0, sales=0, revenue=0),
        ]
        totals = compute_totals(rows)
        assert totals.metrics == {'visitors': 200, 'engaged': 50, 'sales': 10, 'revenue': 500.0}
        assert totals.derived['engage_rate'] == 25.0
        assert totals.derived['sales_rate'] == 5.0
        assert totals.derived['epc'] == 2.5
        assert totals.derived['aov'] == 50.0
        assert totals.depth == -1
        assert totals.grouping_value == 'TOTALS'

    def test_totals_are_not_averaged_rates(self):
        rows = [
            make_row('a', visitors=10, engaged=10),
            make_row('b', visitors=90, engaged=0),
        ]
        # Mean of the row rates would be 50%
        assert compute_totals(rows).derived['engage_rate'] == 10.0

    def test_empty_rows(self):
        totals = compute_totals([])
        assert totals.metrics['visitors'] == 0
        assert totals.derived['epc'] == 0
