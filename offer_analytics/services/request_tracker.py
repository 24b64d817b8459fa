"""
Request identity and debounce primitives.

RequestTracker gives each logical fetch slot ('report', 'drilldown',
'detail:<n>') a monotonically increasing epoch. A response is applied only when
the token it was issued with is still the newest for its slot (last request
wins). Debouncer delays a callback until input has been quiet for a while.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestToken:
    slot: str
    epoch: int


class RequestTracker:
    """Thread-safe epoch counter per request slot."""

    def __init__(self):
        self._epochs: Dict[str, int] = {}
        self._lock = threading.Lock()

    def begin(self, slot: str) -> RequestToken:
        """Start a new request in `slot`, superseding any in flight."""
        with self._lock:
            epoch = self._epochs.get(slot, 0) + 1
            self._epochs[slot] = epoch
            return RequestToken(slot, epoch)

    def is_current(self, token: RequestToken) -> bool:
        with self._lock:
            current = self._epochs.get(token.slot, 0) == token.epoch
        if not current:
            logger.debug(f"Discarding stale response for slot '{token.slot}' (epoch {token.epoch})")
        return current

    def invalidate(self, slot: str) -> None:
        """Supersede whatever is in flight in `slot` without starting a new request."""
        with self._lock:
            self._epochs[slot] = self._epochs.get(slot, 0) + 1

    def invalidate_prefix(self, prefix: str) -> None:
        with self._lock:
            for slot in list(self._epochs):
                if slot.startswith(prefix):
                    self._epochs[slot] += 1


class Debouncer:
    """
    Runs `callback` once input has been quiet for `delay_ms`.

    Every call() cancels the pending run and reschedules with the newest
    arguments. cancel() drops the pending run (teardown); flush() runs it now.
    """

    def __init__(self, callback: Callable[..., Any], delay_ms: int = 300):
        self.callback = callback
        self.delay_ms = delay_ms
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[Tuple[tuple, dict]] = None
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def call(self, *args, **kwargs) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._pending = (args, kwargs)
            self._timer = threading.Timer(self.delay_ms / 1000.0, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._pending = None

    def flush(self) -> bool:
        """Run the pending callback immediately; returns whether one ran."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            pending, self._pending = self._pending, None
        if pending is None:
            return False
        args, kwargs = pending
        self.callback(*args, **kwargs)
        return True

    def _fire(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, None
            self._timer = None
        if pending is None:
            return
        args, kwargs = pending
        try:
            self.callback(*args, **kwargs)
        except Exception:
            logger.exception("Debounced callback failed")
