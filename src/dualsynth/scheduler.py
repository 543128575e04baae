"""
Deferred Callback Scheduler
---------------------------
Timer queue driven by the audio clock.

Envelope completions, safety timeouts and retrigger sequencing are all
deferred callbacks. The render loop calls run_due() after every render
quantum, so callbacks fire on the same clock the gain ramps are scheduled
against. Every call returns a TimerHandle that can be cancelled by a
superseding transition.
"""

import heapq
import itertools
from typing import Callable, List, Optional

from .debug import DEBUG


class TimerHandle:
    """Cancellable reference to a scheduled callback"""

    __slots__ = ('when', 'callback', 'args', 'label', 'cancelled', 'fired')

    def __init__(self, when: float, callback: Callable, args: tuple, label: Optional[str] = None):
        self.when = when
        self.callback = callback
        self.args = args
        self.label = label
        self.cancelled = False
        self.fired = False

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> bool:
        """Cancel the callback; returns False if it already ran or was cancelled"""
        if not self.pending:
            return False
        self.cancelled = True
        return True

    def __repr__(self):
        state = 'cancelled' if self.cancelled else 'fired' if self.fired else 'pending'
        return f"<TimerHandle {self.label or self.callback!r} at {self.when:.4f} {state}>"


class Scheduler:
    """Min-heap of TimerHandles ordered by due time, then insertion order"""

    def __init__(self, clock: Callable[[], float]):
        self._clock = clock
        self._queue: List[tuple] = []
        self._counter = itertools.count()

    def call_at(self, when: float, callback: Callable, *args, label: Optional[str] = None) -> TimerHandle:
        handle = TimerHandle(when, callback, args, label)
        heapq.heappush(self._queue, (when, next(self._counter), handle))
        return handle

    def call_later(self, delay: float, callback: Callable, *args, label: Optional[str] = None) -> TimerHandle:
        return self.call_at(self._clock() + max(0.0, delay), callback, *args, label=label)

    def run_due(self, now: Optional[float] = None) -> int:
        """
        Run every pending callback due at or before now

        Callbacks scheduled while this runs are left for the next call,
        even when already due.

        Returns:
            int: Number of callbacks executed
        """
        if now is None:
            now = self._clock()
        due = []
        while self._queue and self._queue[0][0] <= now:
            due.append(heapq.heappop(self._queue)[2])

        executed = 0
        for handle in due:
            if not handle.pending:
                continue
            handle.fired = True
            executed += 1
            try:
                handle.callback(*handle.args)
            except Exception as e:
                DEBUG.log_error(f"Scheduled callback {handle.label or handle.callback!r} failed", e)
        return executed

    def pending_count(self) -> int:
        return sum(1 for _, _, handle in self._queue if handle.pending)

    def next_due(self) -> Optional[float]:
        for when, _, handle in sorted(self._queue):
            if handle.pending:
                return when
        return None

    def clear(self):
        for _, _, handle in self._queue:
            handle.cancel()
        self._queue.clear()
