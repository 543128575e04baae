"""
Configuration Management
------------------------
Defines configuration parameters for the synthesizer engine.
"""

from dataclasses import dataclass, field

@dataclass
class AudioConfig:
    """Audio configuration parameters"""
    SAMPLE_RATE: int = 44100
    BUFFER_SIZE: int = 512
    RENDER_QUANTUM: int = 128   # Frames per graph render pass
    CHANNELS: int = 2
    MAX_DELAY: float = 5.0      # Longest delay line in seconds

@dataclass
class VoiceConfig:
    """Envelope timings and oscillator levels shared by every voice"""
    ATTACK: float = 0.01
    RAPID_RELEASE: float = 0.03
    HELD_RELEASE: float = 0.08
    RETRIGGER_RELEASE: float = 0.015
    RAPID_NOTE_THRESHOLD: float = 1.0   # Notes younger than this use RAPID_RELEASE
    SAFETY_TIMEOUT: float = 5.0
    CLEANUP_MARGIN: float = 0.01
    RETRIGGER_DELAY: float = 0.0        # 0 = next scheduler tick
    OSC1_GAIN: float = 0.5
    OSC2_GAIN: float = 0.4
    DEFAULT_WAVEFORM1: str = 'sine'
    DEFAULT_WAVEFORM2: str = 'none'

@dataclass
class OutputConfig:
    """Master stage settings"""
    MASTER_GAIN: float = 0.7
    RESET_RAMP: float = 0.05
    DOUBLE_TAP_WINDOW: float = 0.4

@dataclass
class EffectsConfig:
    """Effects chain settings"""
    DEFAULT_MIX: float = 0.5
    CURVE_RESOLUTION: int = 44100

@dataclass
class MIDIConfig:
    """MIDI control change mappings"""
    ALL_NOTES_OFF_CC: int = 123
    EFFECT_MIX_CC: int = 91
    POLL_INTERVAL: float = 0.001

@dataclass
class SynthConfig:
    """Aggregated configuration handed to the engine"""
    audio: AudioConfig = field(default_factory=AudioConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    effects: EffectsConfig = field(default_factory=EffectsConfig)
    midi: MIDIConfig = field(default_factory=MIDIConfig)

# Global configuration instances
AUDIO_CONFIG = AudioConfig()
MIDI_CONFIG = MIDIConfig()
