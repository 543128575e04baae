"""
Effects Chain
-------------
Fixed catalog of effect topologies wired in parallel off a shared input
splitter, with a dry/wet bus in front of the output.

    input --> dry --------------------------> output
      |                                         ^
      +--> [selected topology] --> wet ---------+

Each topology has a single entry and exit node, is built once at start-up
and is only wired between the splitter and the wet bus while selected.
Parameters are typed dataclasses behind a uniform get/set facade.
"""

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .audio import BiquadFilterNode, ConvolverNode, DelayNode, GainNode, WaveShaperNode
from .config import AUDIO_CONFIG, EffectsConfig
from .debug import DEBUG
from .errors import GraphError, InvalidParameterError, UnknownEffectError
from .graph import AudioContext, AudioNode

NONE = 'none'


@dataclass(frozen=True)
class ParameterSpec:
    """Describes one adjustable parameter for control surfaces"""
    name: str
    label: str
    default: Any
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    step: Optional[float] = None
    unit: str = ''
    options: Tuple[str, ...] = ()

    def coerce(self, value):
        """Validate a raw value; numeric values are clamped to the range"""
        if self.options:
            if value not in self.options:
                raise InvalidParameterError(f"{self.name} must be one of {self.options}, got {value!r}")
            return value
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise InvalidParameterError(f"{self.name} must be a number, got {value!r}") from None
        if not math.isfinite(number):
            raise InvalidParameterError(f"{self.name} must be finite, got {value!r}")
        if self.minimum is not None:
            number = max(self.minimum, number)
        if self.maximum is not None:
            number = min(self.maximum, number)
        return number


MIX = ParameterSpec('mix', 'Mix', 0.5, 0.0, 1.0, 0.01)


@dataclass(frozen=True)
class MixState:
    dry: float
    wet: float


def generate_impulse_response(duration: float, sample_rate: int, channels: int = 2,
                              rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """Exponentially decaying noise, independent per channel"""
    rng = rng or np.random.default_rng()
    length = max(1, int(sample_rate * duration))
    decay = np.exp(-np.arange(length) / (sample_rate * duration / 10))
    return rng.uniform(-1.0, 1.0, size=(channels, length)) * decay


def make_distortion_curve(amount: float, resolution: int = 44100) -> np.ndarray:
    """Waveshaping table for y = (pi + k) x / (pi + k |x|)"""
    x = np.linspace(-1.0, 1.0, resolution)
    return (np.pi + amount) * x / (np.pi + amount * np.abs(x))


# -- parameter structs -----------------------------------------------------

@dataclass
class DelayParams:
    time: float = 0.3
    feedback: float = 0.4

@dataclass
class EchoParams:
    time: float = 0.25
    feedback: float = 0.4

@dataclass
class ReverbParams:
    time: float = 2.0

@dataclass
class DistortionParams:
    amount: float = 50.0

@dataclass
class FilterParams:
    frequency: float = 2000.0
    resonance: float = 1.0
    type: str = 'lowpass'


# -- topologies ------------------------------------------------------------

class EffectTopology:
    """
    Base for the fixed effect topologies

    Subclasses build their nodes in _build(), set self.input and
    self.output, and push parameter values onto the nodes in _apply().
    """

    kind = ''
    params_type = None
    PARAMETERS: Tuple[ParameterSpec, ...] = ()

    def __init__(self, context: AudioContext, config: EffectsConfig):
        self.context = context
        self.config = config
        self.params = self.params_type()
        self.input: AudioNode = None
        self.output: AudioNode = None
        self._build()
        for spec in self.PARAMETERS:
            self._apply(spec.name)

    @classmethod
    def describe(cls) -> Dict[str, ParameterSpec]:
        return {spec.name: spec for spec in cls.PARAMETERS}

    def has_parameter(self, name: str) -> bool:
        return any(spec.name == name for spec in self.PARAMETERS)

    def get_parameters(self) -> Dict[str, Any]:
        return asdict(self.params)

    def set_parameter(self, name: str, value) -> bool:
        spec = self.describe().get(name)
        if spec is None:
            return False
        setattr(self.params, name, spec.coerce(value))
        self._apply(name)
        return True

    def reset(self):
        """Drop any signal still circulating inside the topology"""

    def _build(self):
        raise NotImplementedError

    def _apply(self, name: str):
        raise NotImplementedError


class DelayEffect(EffectTopology):
    """Single delay line feeding back into itself"""

    kind = 'delay'
    params_type = DelayParams
    PARAMETERS = (
        ParameterSpec('time', 'Time', 0.3, 0.0, AUDIO_CONFIG.MAX_DELAY, 0.05, 's'),
        ParameterSpec('feedback', 'Feedback', 0.4, 0.0, 0.99, 0.05),
    )

    def _build(self):
        self.delay = DelayNode(self.context, max_delay=AUDIO_CONFIG.MAX_DELAY, label='delay/line')
        self.feedback = GainNode(self.context, 0.0, 'delay/feedback')
        self.delay.connect(self.feedback)
        self.feedback.connect(self.delay)
        self.input = self.output = self.delay

    def _apply(self, name):
        now = self.context.current_time
        if name == 'time':
            self.delay.delay_time.set_value_at_time(self.params.time, now)
        elif name == 'feedback':
            self.feedback.gain.set_value_at_time(self.params.feedback, now)

    def reset(self):
        self.delay.clear()


class EchoEffect(EffectTopology):
    """Three delay lines at 1x, 2x and 3x the base time with fading feedback"""

    kind = 'echo'
    params_type = EchoParams
    TAPS = ((1.0, 1.0), (2.0, 0.75), (3.0, 0.5))  # (time scale, feedback scale)
    PARAMETERS = (
        ParameterSpec('time', 'Time', 0.25, 0.0, AUDIO_CONFIG.MAX_DELAY / 3, 0.05, 's'),
        ParameterSpec('feedback', 'Feedback', 0.4, 0.0, 0.99, 0.05),
    )

    def _build(self):
        self.input = GainNode(self.context, 1.0, 'echo/input')
        self.output = GainNode(self.context, 1.0, 'echo/output')
        self.lines = []
        for i, _ in enumerate(self.TAPS, start=1):
            delay = DelayNode(self.context, max_delay=AUDIO_CONFIG.MAX_DELAY, label=f'echo/line{i}')
            feedback = GainNode(self.context, 0.0, f'echo/feedback{i}')
            self.input.connect(delay)
            delay.connect(feedback)
            feedback.connect(delay)
            delay.connect(self.output)
            self.lines.append((delay, feedback))

    def _apply(self, name):
        now = self.context.current_time
        for (delay, feedback), (time_scale, feedback_scale) in zip(self.lines, self.TAPS):
            if name == 'time':
                delay.delay_time.set_value_at_time(self.params.time * time_scale, now)
            elif name == 'feedback':
                feedback.gain.set_value_at_time(self.params.feedback * feedback_scale, now)

    def reset(self):
        for delay, _ in self.lines:
            delay.clear()


class ReverbEffect(EffectTopology):
    """Convolution with a synthetic decaying-noise impulse response"""

    kind = 'reverb'
    params_type = ReverbParams
    PARAMETERS = (
        ParameterSpec('time', 'Room Size', 2.0, 0.1, 5.0, 0.1, 's'),
    )

    def _build(self):
        self.convolver = ConvolverNode(self.context, label='reverb/convolver')
        self.input = self.output = self.convolver

    def _apply(self, name):
        if name == 'time':
            self.convolver.buffer = generate_impulse_response(
                self.params.time, self.context.sample_rate, self.context.channels)

    def reset(self):
        self.convolver.reset()


class DistortionEffect(EffectTopology):
    """Soft-clipping waveshaper"""

    kind = 'distortion'
    params_type = DistortionParams
    PARAMETERS = (
        ParameterSpec('amount', 'Drive', 50.0, 0.0, 1000.0, 1.0),
    )

    def _build(self):
        self.shaper = WaveShaperNode(self.context, label='distortion/shaper')
        self.input = self.output = self.shaper

    def _apply(self, name):
        if name == 'amount':
            self.shaper.curve = make_distortion_curve(self.params.amount, self.config.CURVE_RESOLUTION)


class FilterEffect(EffectTopology):
    """Single resonant biquad"""

    kind = 'filter'
    params_type = FilterParams
    PARAMETERS = (
        ParameterSpec('frequency', 'Cutoff', 2000.0, 20.0, 20000.0, 10.0, 'Hz'),
        ParameterSpec('resonance', 'Resonance', 1.0, 0.0001, 30.0, 0.1),
        ParameterSpec('type', 'Type', 'lowpass', options=BiquadFilterNode.TYPES),
    )

    def _build(self):
        self.filter = BiquadFilterNode(self.context, self.params.type, label='filter/biquad')
        self.input = self.output = self.filter

    def _apply(self, name):
        now = self.context.current_time
        if name == 'frequency':
            self.filter.frequency.set_value_at_time(self.params.frequency, now)
        elif name == 'resonance':
            self.filter.Q.set_value_at_time(self.params.resonance, now)
        elif name == 'type':
            self.filter.type = self.params.type

    def reset(self):
        self.filter.reset()


TOPOLOGIES = {cls.kind: cls for cls in (DelayEffect, EchoEffect, ReverbEffect, DistortionEffect, FilterEffect)}
EFFECT_KINDS = (NONE,) + tuple(TOPOLOGIES)


class EffectsChain:
    """Selectable effect with dry/wet mixing"""

    def __init__(self, context: AudioContext, config: Optional[EffectsConfig] = None):
        self.context = context
        self.config = config or EffectsConfig()
        self.input = GainNode(context, 1.0, 'fx/input')
        self.output = GainNode(context, 1.0, 'fx/output')
        self.dry = GainNode(context, 1.0, 'fx/dry')
        self.wet = GainNode(context, 0.0, 'fx/wet')
        self.input.connect(self.dry)
        self.dry.connect(self.output)
        self.wet.connect(self.output)

        self.topologies: Dict[str, EffectTopology] = {
            kind: cls(context, self.config) for kind, cls in TOPOLOGIES.items()
        }
        self.current_effect = NONE
        self._mix = MixState(1.0, 0.0)
        DEBUG.log_debug("Effects chain ready: input -> [dry/wet] -> output")

    @property
    def bypassed(self) -> bool:
        return self.current_effect == NONE

    @property
    def mix(self) -> MixState:
        return self._mix

    @property
    def topology(self) -> Optional[EffectTopology]:
        return self.topologies.get(self.current_effect)

    def set_effect(self, kind: str) -> bool:
        """
        Select the effect wired into the wet bus

        Returns:
            bool: False when kind was already selected
        """
        if kind not in EFFECT_KINDS:
            raise UnknownEffectError(f"Unknown effect: {kind!r}")
        if kind == self.current_effect:
            return False

        previous = self.topology
        if previous is not None:
            self._detach(previous)

        self.current_effect = kind
        if kind == NONE:
            self._set_levels(1.0, 0.0)
            DEBUG.log_info("Effects bypassed - dry signal only")
            return True

        topology = self.topology
        self.input.connect(topology.input)
        topology.output.connect(self.wet)
        wet = self.config.DEFAULT_MIX
        self._set_levels(1.0 - wet, wet)
        DEBUG.log_info(f"Connected effect {kind} with {wet:.0%} wet mix")
        return True

    def _detach(self, topology: EffectTopology):
        for source, target in ((self.input, topology.input), (topology.output, self.wet)):
            try:
                source.disconnect(target)
            except GraphError as e:
                DEBUG.log_warning(f"Error disconnecting effect {topology.kind}: {e}")
        topology.reset()

    def set_mix(self, wet: float) -> bool:
        """Set the wet level, clamped to [0, 1]; ignored while bypassed"""
        wet = MIX.coerce(wet)
        if self.bypassed:
            return False
        self._set_levels(1.0 - wet, wet)
        return True

    def _set_levels(self, dry: float, wet: float):
        now = self.context.current_time
        self.dry.gain.set_value_at_time(dry, now)
        self.wet.gain.set_value_at_time(wet, now)
        self._mix = MixState(dry, wet)

    def set_parameter(self, name: str, value) -> bool:
        """
        Change a parameter of the selected effect

        Returns:
            bool: True if the parameter exists on the current effect and was applied
        """
        if self.bypassed:
            return False
        applied = self.topology.set_parameter(name, value)
        if not applied:
            DEBUG.log_debug(f"Effect {self.current_effect} has no parameter {name!r}")
        return applied

    def get_parameters(self) -> Dict[str, Any]:
        if self.bypassed:
            return {}
        return self.topology.get_parameters()

    def describe_parameters(self, kind: Optional[str] = None) -> Dict[str, ParameterSpec]:
        kind = self.current_effect if kind is None else kind
        if kind not in EFFECT_KINDS:
            raise UnknownEffectError(f"Unknown effect: {kind!r}")
        if kind == NONE:
            return {}
        return TOPOLOGIES[kind].describe()
