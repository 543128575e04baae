"""
Audio Processing Modules
------------------------
Graph nodes used by voices and effect topologies:
- OscillatorNode: phase-continuous waveform source with start/stop times
- GainNode: automatable amplitude stage (envelopes, mix buses)
- DelayNode: ring-buffer delay line, usable inside feedback loops
- ConvolverNode: two-stage partitioned FFT convolution against an impulse response
- WaveShaperNode: lookup-table waveshaping
- BiquadFilterNode: resonant second-order filter with persistent state
"""

import math
from typing import Optional

import numpy as np
from scipy.signal import lfilter

from .errors import GraphError, InvalidWaveformError
from .graph import AudioContext, AudioNode, AudioParam

WAVEFORMS = ('sine', 'square', 'sawtooth', 'triangle')


def _poly_blep(t: np.ndarray, dt: np.ndarray) -> np.ndarray:
    """Polynomial band-limited step correction around phase wraps"""
    out = np.zeros_like(t)
    rising = t < dt
    x = t[rising] / dt[rising]
    out[rising] = x + x - x * x - 1.0
    falling = t > 1.0 - dt
    x = (t[falling] - 1.0) / dt[falling]
    out[falling] = x * x + x + x + 1.0
    return out


def generate_waveform(phases: np.ndarray, increments: np.ndarray, waveform: str) -> np.ndarray:
    """
    Evaluate a waveform at normalised phases

    Args:
        phases: Phase per sample in [0, 1)
        increments: Phase increment per sample (frequency / sample rate)
        waveform: One of WAVEFORMS

    Returns:
        np.ndarray: Samples in [-1, 1]
    """
    if waveform == 'sine':
        return np.sin(2 * np.pi * phases)
    elif waveform == 'square':
        naive = np.where(phases < 0.5, 1.0, -1.0)
        return naive + _poly_blep(phases, increments) - _poly_blep((phases + 0.5) % 1.0, increments)
    elif waveform == 'sawtooth':
        shifted = (phases + 0.5) % 1.0
        return 2.0 * shifted - 1.0 - _poly_blep(shifted, increments)
    elif waveform == 'triangle':
        return 2 * np.abs(2 * (phases - np.floor(0.5 + phases))) - 1
    raise InvalidWaveformError(f"Unknown waveform: {waveform!r}")


class OscillatorNode(AudioNode):
    """Generates continuous waveforms with phase-correct frequency control"""

    def __init__(self, context: AudioContext, waveform: str = 'sine', frequency: float = 440.0):
        super().__init__(context)
        self.frequency = AudioParam(context, frequency, 0.0, context.sample_rate / 2, 'frequency')
        self._type = None
        self.type = waveform
        self.phase = 0.0  # Normalised phase carried between quanta
        self._start_frame: Optional[int] = None
        self._stop_frame: Optional[int] = None

    @property
    def type(self) -> str:
        return self._type

    @type.setter
    def type(self, waveform: str):
        if waveform not in WAVEFORMS:
            raise InvalidWaveformError(f"Unknown waveform: {waveform!r}")
        self._type = waveform

    def start(self, when: Optional[float] = None):
        if self._start_frame is not None:
            raise GraphError(f"{self.label} already started")
        when = self.context.current_time if when is None else when
        self._start_frame = self.context.frame_at(when)

    def stop(self, when: Optional[float] = None):
        if self._start_frame is None:
            raise GraphError(f"{self.label} stopped before start")
        when = self.context.current_time if when is None else when
        self._stop_frame = max(self._start_frame, self.context.frame_at(when))

    @property
    def started(self) -> bool:
        return self._start_frame is not None

    @property
    def ended(self) -> bool:
        return self._stop_frame is not None and self.context.frame >= self._stop_frame

    def process(self, block):
        q = self.context.quantum
        first = self.context.frame
        if self._start_frame is None or first + q <= self._start_frame or self.ended:
            return self.context.silence()

        frames = first + np.arange(q)
        active = frames >= self._start_frame
        if self._stop_frame is not None:
            active &= frames < self._stop_frame

        increments = self.frequency.values(self.context.current_time, q) / self.context.sample_rate
        increments = increments * active
        phases = (self.phase + np.cumsum(increments) - increments) % 1.0
        self.phase = (self.phase + increments.sum()) % 1.0

        wave = generate_waveform(phases, np.maximum(increments, 1e-9), self._type) * active
        return np.tile(wave, (self.context.channels, 1))


class GainNode(AudioNode):
    """Multiplies its input by an automatable gain"""

    def __init__(self, context: AudioContext, gain: float = 1.0, label: Optional[str] = None):
        super().__init__(context, label)
        self.gain = AudioParam(context, gain, name='gain')

    def process(self, block):
        return block * self.gain.values(self.context.current_time, self.context.quantum)


class DelayNode(AudioNode):
    """
    Ring-buffer delay line

    The output of a quantum is read from history before the node pulls its
    inputs, so a path from the output back into the input forms a valid
    feedback loop. The effective delay is at least one render quantum.
    """

    def __init__(self, context: AudioContext, delay_time: float = 0.0, max_delay: float = 1.0,
                 label: Optional[str] = None):
        super().__init__(context, label)
        self.max_delay = max_delay
        self.delay_time = AudioParam(context, delay_time, 0.0, max_delay, 'delay_time')
        size = int(math.ceil(max_delay * context.sample_rate)) + 2 * context.quantum
        self._buffer = np.zeros((context.channels, size))
        self._write = 0

    def delay_frames(self) -> int:
        size = self._buffer.shape[1]
        q = self.context.quantum
        frames = int(round(self.delay_time.value * self.context.sample_rate))
        return min(max(frames, q), size - q)

    def pull(self, render_pass: int) -> np.ndarray:
        if self._rendered_pass == render_pass:
            return self._block
        self._rendered_pass = render_pass

        size = self._buffer.shape[1]
        offsets = np.arange(self.context.quantum)
        self._block = self._buffer[:, (self._write - self.delay_frames() + offsets) % size]

        self._buffer[:, (self._write + offsets) % size] = self._sum_inputs(render_pass)
        self._write = (self._write + self.context.quantum) % size
        return self._block

    def clear(self):
        self._buffer[:] = 0.0


class _PartitionedStage:
    """Uniformly partitioned overlap-save over one segment of a response"""

    def __init__(self, impulse: np.ndarray, size: int):
        channels, length = impulse.shape
        self.size = size
        self.parts = max(1, -(-length // size))
        padded = np.zeros((channels, self.parts * size))
        padded[:, :length] = impulse
        self.spectra = np.fft.rfft(padded.reshape(channels, self.parts, size), n=2 * size, axis=-1)
        # Each input spectrum is written twice so the newest-first window is a plain slice
        self.history = np.zeros((channels, 2 * self.parts, size + 1), dtype=complex)
        self.previous = np.zeros((channels, size))
        self.newest = 0

    def push(self, block: np.ndarray):
        frame = np.concatenate([self.previous, block], axis=1)
        self.previous = frame[:, self.size:]
        self.newest = (self.newest - 1) % self.parts
        spectrum = np.fft.rfft(frame, axis=-1)
        self.history[:, self.newest] = spectrum
        self.history[:, self.newest + self.parts] = spectrum

    def accumulate(self, start: int = 0, stop: Optional[int] = None) -> np.ndarray:
        """Sum of input spectra times response partitions start..stop"""
        stop = self.parts if stop is None else stop
        recent = self.history[:, self.newest + start:self.newest + stop]
        return np.einsum('cpk,cpk->ck', recent, self.spectra[:, start:stop])

    def inverse(self, spectrum: np.ndarray) -> np.ndarray:
        return np.fft.irfft(spectrum, n=2 * self.size, axis=-1)[:, self.size:]

    def reset(self):
        self.history[:] = 0.0
        self.previous[:] = 0.0


class ConvolverNode(AudioNode):
    """
    Two-stage partitioned convolution against an impulse response

    The first 2 * TAIL_QUANTA quanta of the response run in quantum-sized
    partitions. The rest runs in blocks of TAIL_QUANTA quanta: a block of
    input is collected for one block period, its products are spread over
    the next period and the result plays during the period after that,
    which is exactly where the tail of the response starts.
    """

    TAIL_QUANTA = 32

    def __init__(self, context: AudioContext, buffer: Optional[np.ndarray] = None,
                 normalize: bool = True, label: Optional[str] = None,
                 tail_quanta: Optional[int] = None):
        super().__init__(context, label)
        self.normalize = normalize
        self.tail_quanta = tail_quanta or self.TAIL_QUANTA
        self._buffer = None
        self._head = None
        self._tail = None
        if buffer is not None:
            self.buffer = buffer

    @property
    def buffer(self) -> Optional[np.ndarray]:
        return self._buffer

    @buffer.setter
    def buffer(self, impulse: np.ndarray):
        impulse = np.atleast_2d(np.asarray(impulse, dtype=float))
        if impulse.shape[0] != self.context.channels:
            impulse = np.resize(impulse[0], (self.context.channels, impulse.shape[1]))
        if self.normalize:
            energy = np.sqrt(np.mean(np.sum(impulse ** 2, axis=1)))
            if energy > 0:
                impulse = impulse / energy
        self._buffer = impulse

        quantum = self.context.quantum
        block = quantum * self.tail_quanta
        self._head = _PartitionedStage(impulse[:, :2 * block], quantum)
        self._tail = None
        if impulse.shape[1] > 2 * block:
            self._tail = _PartitionedStage(impulse[:, 2 * block:], block)
            self._slices = np.linspace(0, self._tail.parts, self.tail_quanta + 1).astype(int)
            self._collected = np.zeros((impulse.shape[0], block))
            self._pending = np.zeros((impulse.shape[0], block + 1), dtype=complex)
            self._ready = np.zeros((impulse.shape[0], block))
        self._position = 0

    def process(self, block):
        if self._head is None:
            return self.context.silence()
        self._head.push(block)
        out = self._head.inverse(self._head.accumulate())
        if self._tail is not None:
            out = out + self._advance_tail(block)
        return out

    def _advance_tail(self, block: np.ndarray) -> np.ndarray:
        quantum = self.context.quantum
        span = slice(self._position * quantum, (self._position + 1) * quantum)
        out = self._ready[:, span].copy()
        self._collected[:, span] = block

        start, stop = self._slices[self._position], self._slices[self._position + 1]
        self._pending += self._tail.accumulate(start, stop)
        self._position += 1
        if self._position == self.tail_quanta:
            self._ready = self._tail.inverse(self._pending)
            self._pending[:] = 0.0
            self._tail.push(self._collected)
            self._position = 0
        return out

    def reset(self):
        if self._head is None:
            return
        self._head.reset()
        if self._tail is not None:
            self._tail.reset()
            self._collected[:] = 0.0
            self._pending[:] = 0.0
            self._ready[:] = 0.0
        self._position = 0


class WaveShaperNode(AudioNode):
    """Maps input samples through a transfer curve with linear interpolation"""

    def __init__(self, context: AudioContext, curve: Optional[np.ndarray] = None,
                 label: Optional[str] = None):
        super().__init__(context, label)
        self._curve = None
        if curve is not None:
            self.curve = curve

    @property
    def curve(self) -> Optional[np.ndarray]:
        return self._curve

    @curve.setter
    def curve(self, curve: np.ndarray):
        curve = np.asarray(curve, dtype=float)
        if curve.ndim != 1 or curve.size < 2:
            raise ValueError("Waveshaper curve needs at least two points")
        self._curve = curve
        self._positions = np.arange(curve.size)

    def process(self, block):
        if self._curve is None:
            return block
        position = (np.clip(block, -1.0, 1.0) + 1.0) * (self._curve.size - 1) / 2.0
        return np.interp(position, self._positions, self._curve)


class BiquadFilterNode(AudioNode):
    """Processes audio through a resonant second-order filter"""

    TYPES = ('lowpass', 'highpass', 'bandpass', 'notch')

    def __init__(self, context: AudioContext, filter_type: str = 'lowpass',
                 frequency: float = 350.0, q: float = 1.0, label: Optional[str] = None):
        super().__init__(context, label)
        self.frequency = AudioParam(context, frequency, 10.0, context.sample_rate / 2 - 1, 'frequency')
        self.Q = AudioParam(context, q, 0.0001, 1000.0, 'Q')
        self._type = None
        self.type = filter_type
        self._zi = np.zeros((context.channels, 2))

    @property
    def type(self) -> str:
        return self._type

    @type.setter
    def type(self, filter_type: str):
        if filter_type not in self.TYPES:
            raise ValueError(f"Unknown filter type: {filter_type!r}")
        self._type = filter_type

    def coefficients(self):
        """Calculate normalised (b, a) coefficients for the current settings"""
        w0 = 2.0 * np.pi * self.frequency.value / self.context.sample_rate
        cosw0 = np.cos(w0)
        alpha = np.sin(w0) / (2.0 * self.Q.value)

        if self._type == 'lowpass':
            b = [(1.0 - cosw0) / 2.0, 1.0 - cosw0, (1.0 - cosw0) / 2.0]
        elif self._type == 'highpass':
            b = [(1.0 + cosw0) / 2.0, -(1.0 + cosw0), (1.0 + cosw0) / 2.0]
        elif self._type == 'bandpass':
            b = [alpha, 0.0, -alpha]
        else:
            b = [1.0, -2.0 * cosw0, 1.0]
        a = [1.0 + alpha, -2.0 * cosw0, 1.0 - alpha]
        return np.asarray(b) / a[0], np.asarray(a) / a[0]

    def process(self, block):
        b, a = self.coefficients()
        out, self._zi = lfilter(b, a, block, axis=-1, zi=self._zi)
        return out

    def reset(self):
        self._zi[:] = 0.0
