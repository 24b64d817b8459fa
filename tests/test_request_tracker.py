import threading

from offer_analytics.services.request_tracker import Debouncer, RequestTracker


class TestRequestTracker:

    def test_last_request_wins(self):
        tracker = RequestTracker()
        first = tracker.begin('report')
        second = tracker.begin('report')
        assert not tracker.is_current(first)
        assert tracker.is_current(second)

    def test_slots_are_independent(self):
        tracker = RequestTracker()
        report = tracker.begin('report')
        tracker.begin('drilldown')
        assert tracker.is_current(report)

    def test_invalidate_prefix(self):
        tracker = RequestTracker()
        first = tracker.begin('detail:0')
        second = tracker.begin('detail:1')
        report = tracker.begin('report')
        tracker.invalidate_prefix('detail:')
        assert not tracker.is_current(first)
        assert not tracker.is_current(second)
        assert tracker.is_current(report)


class TestDebouncer:

    def test_flush_runs_latest_call_once(self):
        calls = []
        debouncer = Debouncer(calls.append, delay_ms=10_000)
        debouncer.call('g')
        debouncer.call('go')
        debouncer.call('goo')
        assert debouncer.pending
        assert debouncer.flush() is True
        assert calls == ['goo']
        assert debouncer.flush() is False

    def test_cancel_drops_pending_call(self):
        calls = []
        debouncer = Debouncer(calls.append, delay_ms=10_000)
        debouncer.call('x')
        debouncer.cancel()
        assert not debouncer.pending
        assert debouncer.flush() is False
        assert calls == []

    def test_fires_after_delay(self):
        fired = threading.Event()
        calls = []

        def callback(value):
            calls.append(value)
            fired.set()

        debouncer = Debouncer(callback, delay_ms=20)
        debouncer.call('a')
        debouncer.call('b')
        assert fired.wait(timeout=2)
        assert calls == ['b']
