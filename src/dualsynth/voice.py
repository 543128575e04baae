"""
Synthesizer Voice
-----------------
One sounding or releasing note: up to two oscillator/gain pairs feeding
the master gain.
"""

from enum import Enum
from typing import List, Optional

from .audio import GainNode, OscillatorNode
from .config import VoiceConfig
from .debug import DEBUG
from .errors import GraphError
from .graph import AudioContext, AudioNode
from .pitch import PitchSpec

# Exponential ramps cannot reach zero; this is where the tail is cut
SILENCE_FLOOR = 1e-4


class VoicePhase(Enum):
    STARTING = 'starting'
    ACTIVE = 'active'
    RELEASING = 'releasing'
    REMOVED = 'removed'


class _OscillatorPair:
    """Oscillator plus the gain node that carries its envelope"""

    def __init__(self, context: AudioContext, waveform: str, frequency: float,
                 level: float, destination: AudioNode, label: str):
        self.level = level
        self.oscillator = OscillatorNode(context, waveform, frequency)
        self.oscillator.label = f"{label}/osc"
        self.envelope = GainNode(context, 0.0, f"{label}/env")
        self.oscillator.connect(self.envelope)
        self.envelope.connect(destination)

    def attack(self, now: float, duration: float):
        gain = self.envelope.gain
        gain.set_value_at_time(0.0, now)
        gain.linear_ramp_to_value_at_time(self.level, now + duration)
        self.oscillator.start(now)

    def release(self, now: float, duration: float):
        gain = self.envelope.gain
        gain.cancel_and_hold_at_time(now)
        if gain.value_at(now) > SILENCE_FLOOR:
            gain.exponential_ramp_to_value_at_time(SILENCE_FLOOR, now + duration)
        gain.set_value_at_time(0.0, now + duration)
        self.oscillator.stop(now + duration)

    def teardown(self) -> List[Exception]:
        errors = []
        try:
            if not self.oscillator.ended:
                self.oscillator.stop()
        except GraphError as e:
            errors.append(e)
        self.oscillator.disconnect()
        self.envelope.disconnect()
        return errors


class Voice:
    """Single note instance owning one or two oscillator/envelope pairs"""

    def __init__(self, context: AudioContext, pitch: PitchSpec, destination: AudioNode,
                 waveform1: str, waveform2: Optional[str], config: VoiceConfig):
        self.context = context
        self.pitch = pitch
        self.voice_id = pitch.voice_id
        self.frequency = pitch.frequency
        self.config = config
        self.destination = destination
        self.phase = VoicePhase.STARTING
        self.started_at = context.current_time
        self.released_at: Optional[float] = None
        self.safety_timer = None
        self.cleanup_timer = None

        self.osc1 = _OscillatorPair(context, waveform1, self.frequency,
                                    config.OSC1_GAIN, destination, f"{self.voice_id}/1")
        self.osc2 = None
        if waveform2:
            self.osc2 = _OscillatorPair(context, waveform2, self.frequency,
                                        config.OSC2_GAIN, destination, f"{self.voice_id}/2")

    @property
    def waveform1(self) -> str:
        return self.osc1.oscillator.type

    @property
    def waveform2(self) -> Optional[str]:
        return self.osc2.oscillator.type if self.osc2 else None

    @property
    def is_active(self) -> bool:
        return self.phase is VoicePhase.ACTIVE

    def age(self, now: Optional[float] = None) -> float:
        now = self.context.current_time if now is None else now
        return now - self.started_at

    def pairs(self) -> List[_OscillatorPair]:
        return [pair for pair in (self.osc1, self.osc2) if pair is not None]

    def start(self):
        """Schedule the attack ramps and start the oscillators"""
        now = self.context.current_time
        for pair in self.pairs():
            pair.attack(now, self.config.ATTACK)
        self.phase = VoicePhase.ACTIVE

    def release(self, duration: float) -> float:
        """
        Fade every oscillator out over duration

        Returns:
            float: Audio time at which the release completes
        """
        now = self.context.current_time
        self._cancel_safety_timer()
        for pair in self.pairs():
            pair.release(now, duration)
        self.phase = VoicePhase.RELEASING
        self.released_at = now
        return now + duration

    def set_waveform1(self, waveform: str):
        self.osc1.oscillator.type = waveform

    def set_waveform2(self, waveform: str):
        if self.osc2 is None:
            self.add_secondary(waveform)
        else:
            self.osc2.oscillator.type = waveform

    def add_secondary(self, waveform: str):
        """Attach oscillator 2 to a sounding voice, fading it in"""
        if self.osc2 is not None:
            return
        self.osc2 = _OscillatorPair(self.context, waveform, self.frequency,
                                    self.config.OSC2_GAIN, self.destination, f"{self.voice_id}/2")
        self.osc2.attack(self.context.current_time, self.config.ATTACK)

    def remove_secondary(self) -> List[Exception]:
        """Stop and disconnect oscillator 2 right away"""
        if self.osc2 is None:
            return []
        errors = self.osc2.teardown()
        self.osc2 = None
        return errors

    def teardown(self) -> List[Exception]:
        """Stop and disconnect everything; failures are returned, not raised"""
        if self.phase is VoicePhase.REMOVED:
            return []
        self._cancel_safety_timer()
        if self.cleanup_timer is not None:
            self.cleanup_timer.cancel()
        errors = []
        for pair in self.pairs():
            try:
                errors.extend(pair.teardown())
            except Exception as e:
                errors.append(e)
        self.phase = VoicePhase.REMOVED
        DEBUG.log_debug(f"Voice {self.voice_id} removed")
        return errors

    def _cancel_safety_timer(self):
        if self.safety_timer is not None:
            self.safety_timer.cancel()
            self.safety_timer = None

    def __repr__(self):
        return f"<Voice {self.voice_id} {self.phase.value} {self.waveform1}/{self.waveform2 or 'none'}>"
