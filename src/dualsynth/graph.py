"""
Audio Graph
-----------
Pull-based node graph rendered in fixed-size quanta.

- AudioContext: sample clock, render loop and deferred callback queue
- AudioNode: connect/disconnect bookkeeping and per-quantum memoisation
- AudioParam: sample-accurate automation (set, linear/exponential ramps,
  exponential approach to a target, cancel and hold)

Every block flowing through the graph has shape (channels, quantum).
Feedback cycles are legal only through a DelayNode, which renders its
output from history before pulling its own inputs.
"""

from bisect import bisect_right
from typing import List, NamedTuple, Optional

import numpy as np

from .config import AUDIO_CONFIG
from .errors import GraphError
from .scheduler import Scheduler

SET = 'set'
LINEAR = 'linear'
EXPONENTIAL = 'exponential'
TARGET = 'target'
_CONST = 'const'


class _Event(NamedTuple):
    kind: str
    time: float
    value: float
    time_constant: float
    scheduled_at: float


class AudioParam:
    """Automatable parameter evaluated per sample of each render quantum"""

    def __init__(self, context: 'AudioContext', value: float,
                 min_value: float = -np.inf, max_value: float = np.inf, name: str = ''):
        self.context = context
        self.name = name
        self.default_value = float(value)
        self.min_value = min_value
        self.max_value = max_value
        self._events: List[_Event] = []
        self._pieces = None

    # -- scheduling -------------------------------------------------------

    @property
    def value(self) -> float:
        return self.value_at(self.context.current_time)

    @value.setter
    def value(self, value: float):
        self.set_value_at_time(value, self.context.current_time)

    def set_value_at_time(self, value: float, when: float) -> 'AudioParam':
        if when <= self.context.current_time:
            # Nothing before a past SET can be rendered again
            self._events = [e for e in self._events if e.time >= when]
        return self._insert(SET, when, value)

    def linear_ramp_to_value_at_time(self, value: float, end_time: float) -> 'AudioParam':
        return self._insert(LINEAR, end_time, value)

    def exponential_ramp_to_value_at_time(self, value: float, end_time: float) -> 'AudioParam':
        if value == 0:
            raise ValueError("Exponential ramp target must be non-zero")
        return self._insert(EXPONENTIAL, end_time, value)

    def set_target_at_time(self, target: float, start_time: float, time_constant: float) -> 'AudioParam':
        if time_constant < 0:
            raise ValueError("Time constant must be non-negative")
        return self._insert(TARGET, start_time, target, time_constant)

    def cancel_scheduled_values(self, cancel_time: float) -> 'AudioParam':
        self._events = [e for e in self._events if e.time < cancel_time]
        self._pieces = None
        return self

    def cancel_and_hold_at_time(self, cancel_time: float) -> 'AudioParam':
        """Freeze the parameter at whatever value it has at cancel_time"""
        held = self.value_at(cancel_time)
        self.cancel_scheduled_values(cancel_time)
        return self._insert(SET, cancel_time, held)

    def _insert(self, kind: str, when: float, value: float, time_constant: float = 0.0) -> 'AudioParam':
        event = _Event(kind, float(when), float(value), float(time_constant), self.context.current_time)
        index = bisect_right([e.time for e in self._events], event.time)
        self._events.insert(index, event)
        self._pieces = None
        return self

    # -- evaluation -------------------------------------------------------

    def _build_pieces(self):
        """Partition the timeline into (start, kind, params) segments"""
        pieces = [(-np.inf, _CONST, (self.default_value,))]
        for event in self._events:
            if event.kind == SET:
                pieces.append((event.time, _CONST, (event.value,)))
            elif event.kind in (LINEAR, EXPONENTIAL):
                start, kind, params = pieces.pop()
                if kind == _CONST:
                    v0 = params[0]
                else:
                    v0 = self._evaluate((start, kind, params), np.array([start]))[0]
                if start == -np.inf:
                    pieces.append((start, kind, params))
                    start = min(event.scheduled_at, event.time)
                pieces.append((start, event.kind, (start, v0, event.time, event.value)))
                pieces.append((event.time, _CONST, (event.value,)))
            else:
                v0 = self._evaluate(self._piece_for(pieces, event.time), np.array([event.time]))[0]
                pieces.append((event.time, TARGET, (event.time, v0, event.value, event.time_constant)))
        self._pieces = pieces
        self._starts = [p[0] for p in pieces]

    @staticmethod
    def _piece_for(pieces, when):
        starts = [p[0] for p in pieces]
        return pieces[max(0, bisect_right(starts, when) - 1)]

    @staticmethod
    def _evaluate(piece, times: np.ndarray) -> np.ndarray:
        _, kind, params = piece
        if kind == _CONST:
            return np.full(times.shape, params[0])
        if kind == TARGET:
            t0, v0, target, tau = params
            if tau <= 0:
                return np.full(times.shape, target)
            return target + (v0 - target) * np.exp(-np.maximum(times - t0, 0.0) / tau)
        t0, v0, t1, v1 = params
        if t1 <= t0:
            return np.full(times.shape, v1)
        frac = np.clip((times - t0) / (t1 - t0), 0.0, 1.0)
        if kind == LINEAR:
            return v0 + (v1 - v0) * frac
        if v0 == 0 or v0 * v1 < 0:
            return np.where(times >= t1, v1, v0)
        return v0 * (v1 / v0) ** frac

    def values(self, start_time: float, frames: int) -> np.ndarray:
        """Per-sample values for a block starting at start_time"""
        if self._pieces is None:
            self._build_pieces()
        times = start_time + np.arange(frames) / self.context.sample_rate
        first = bisect_right(self._starts, times[0]) - 1
        last = bisect_right(self._starts, times[-1]) - 1
        if first == last:
            out = self._evaluate(self._pieces[first], times)
        else:
            out = np.empty(frames)
            for i in range(first, last + 1):
                lo = 0 if i == first else int(np.searchsorted(times, self._starts[i], 'left'))
                hi = frames if i == last else int(np.searchsorted(times, self._starts[i + 1], 'left'))
                if hi > lo:
                    out[lo:hi] = self._evaluate(self._pieces[i], times[lo:hi])
        return np.clip(out, self.min_value, self.max_value)

    def value_at(self, when: float) -> float:
        return float(self.values(when, 1)[0])

    def __repr__(self):
        return f"<AudioParam {self.name} value={self.value:.4f} events={len(self._events)}>"


class AudioNode:
    """Base class for graph nodes"""

    def __init__(self, context: 'AudioContext', label: Optional[str] = None):
        self.context = context
        self.label = label or type(self).__name__
        self.inputs: List['AudioNode'] = []
        self.outputs: List['AudioNode'] = []
        self._rendered_pass = -1
        self._block = None

    def connect(self, destination: 'AudioNode') -> 'AudioNode':
        if destination.context is not self.context:
            raise GraphError(f"Cannot connect {self.label} across audio contexts")
        if destination not in self.outputs:
            self.outputs.append(destination)
            destination.inputs.append(self)
        return destination

    def disconnect(self, destination: Optional['AudioNode'] = None):
        """Disconnect from one destination, or from all of them when None"""
        if destination is None:
            for node in self.outputs:
                node.inputs.remove(self)
            self.outputs.clear()
            return
        if destination not in self.outputs:
            raise GraphError(f"{self.label} is not connected to {destination.label}")
        self.outputs.remove(destination)
        destination.inputs.remove(self)

    def is_connected_to(self, destination: 'AudioNode') -> bool:
        return destination in self.outputs

    def pull(self, render_pass: int) -> np.ndarray:
        if self._rendered_pass == render_pass:
            return self._block
        self._rendered_pass = render_pass
        self._block = self.context.silence()  # Cycle guard
        self._block = self.process(self._sum_inputs(render_pass))
        return self._block

    def _sum_inputs(self, render_pass: int) -> np.ndarray:
        block = self.context.silence()
        for node in list(self.inputs):
            block += node.pull(render_pass)
        return block

    def process(self, block: np.ndarray) -> np.ndarray:
        return block

    def __repr__(self):
        return f"<{self.label}>"


class AudioDestinationNode(AudioNode):
    """Final sink; whatever reaches it goes to the device"""


class AudioContext:
    """Owns the sample clock, the render loop and the timer queue"""

    def __init__(self, sample_rate: int = AUDIO_CONFIG.SAMPLE_RATE,
                 quantum: int = AUDIO_CONFIG.RENDER_QUANTUM,
                 channels: int = AUDIO_CONFIG.CHANNELS):
        self.sample_rate = sample_rate
        self.quantum = quantum
        self.channels = channels
        self.frame = 0
        self.scheduler = Scheduler(lambda: self.current_time)
        self.destination = AudioDestinationNode(self, 'destination')
        self._render_pass = 0
        self._carry = np.zeros((channels, 0))

    @property
    def current_time(self) -> float:
        return self.frame / self.sample_rate

    def silence(self) -> np.ndarray:
        return np.zeros((self.channels, self.quantum))

    def frame_at(self, when: float) -> int:
        return int(round(when * self.sample_rate))

    def render_quantum(self) -> np.ndarray:
        """Render one quantum, advance the clock, then run due callbacks"""
        self._render_pass += 1
        block = self.destination.pull(self._render_pass)
        self.frame += self.quantum
        self.scheduler.run_due(self.current_time)
        return block

    def render(self, frames: int) -> np.ndarray:
        """Render an arbitrary number of frames; returns (channels, frames)"""
        out = np.empty((self.channels, frames))
        filled = 0
        while filled < frames:
            if self._carry.shape[1] == 0:
                self._carry = self.render_quantum()
            take = min(frames - filled, self._carry.shape[1])
            out[:, filled:filled + take] = self._carry[:, :take]
            self._carry = self._carry[:, take:]
            filled += take
        return out
