"""
Dual-Oscillator Polyphonic Synthesizer
--------------------------------------
A real-time synthesis engine with per-pitch voices, a selectable effects
chain and MIDI support.

Public Modules:
    core: Synthesizer engine and voice management
    effects: Effect topologies and the dry/wet chain
    output: Master stage, output taps and the device stream
    midi: MIDI input handling
    pitch: Pitch classes and frequencies
"""

__version__ = '1.0.0'

from .config import AUDIO_CONFIG, MIDI_CONFIG, SynthConfig
from .core import Synthesizer, VoiceManager
from .effects import EFFECT_KINDS, EffectsChain
from .errors import (DeviceError, GraphError, InvalidParameterError, InvalidPitchError,
                     InvalidWaveformError, SynthError, UnknownEffectError)
from .midi import MIDIHandler
from .pitch import PitchSpec, frequency, voice_id

__all__ = [
    'Synthesizer',
    'VoiceManager',
    'EffectsChain',
    'EFFECT_KINDS',
    'MIDIHandler',
    'PitchSpec',
    'frequency',
    'voice_id',
    'SynthConfig',
    'AUDIO_CONFIG',
    'MIDI_CONFIG',
    'SynthError',
    'InvalidPitchError',
    'InvalidWaveformError',
    'UnknownEffectError',
    'InvalidParameterError',
    'GraphError',
    'DeviceError',
]
