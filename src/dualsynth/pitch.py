"""
Frequency Model
---------------
Pitch classes, voice identities and equal-temperament frequencies.
"""

import numbers
from dataclasses import dataclass

from .errors import InvalidPitchError

PITCH_CLASSES = ('C', 'C#', 'D', 'D#', 'E', 'F', 'F#', 'G', 'G#', 'A', 'A#', 'B')
_PITCH_INDEX = {name: i for i, name in enumerate(PITCH_CLASSES)}
_FLAT_ALIASES = {'Db': 'C#', 'Eb': 'D#', 'Gb': 'F#', 'Ab': 'G#', 'Bb': 'A#'}

A4_FREQUENCY = 440.0
A4_INDEX = 9
A4_OCTAVE = 4


def normalize_pitch_class(pitch_class: str) -> str:
    """Return the sharp spelling of a pitch class name"""
    name = _FLAT_ALIASES.get(pitch_class, pitch_class)
    if name not in _PITCH_INDEX:
        raise InvalidPitchError(f"Unknown pitch class: {pitch_class!r}")
    return name


def frequency(pitch_class: str, octave: int) -> float:
    """
    Equal-temperament frequency referenced to A4 = 440 Hz

    Args:
        pitch_class: One of the 12 semitone names
        octave: Octave number (C4 is middle C)

    Returns:
        float: Fundamental frequency in Hz
    """
    index = _PITCH_INDEX[normalize_pitch_class(pitch_class)]
    semitones = 12 * (octave - A4_OCTAVE) + (index - A4_INDEX)
    return A4_FREQUENCY * 2.0 ** (semitones / 12.0)


def voice_id(pitch_class: str, octave: int) -> str:
    return f"{normalize_pitch_class(pitch_class)}-{octave}"


@dataclass(frozen=True)
class PitchSpec:
    """A pitch class in a given octave"""
    pitch_class: str
    octave: int

    def __post_init__(self):
        if isinstance(self.octave, bool) or not isinstance(self.octave, numbers.Integral):
            raise InvalidPitchError(f"Octave must be an integer: {self.octave!r}")
        object.__setattr__(self, 'octave', int(self.octave))
        object.__setattr__(self, 'pitch_class', normalize_pitch_class(self.pitch_class))

    @classmethod
    def from_midi(cls, note: int) -> 'PitchSpec':
        """MIDI note 69 is A4, note 60 is C4"""
        return cls(PITCH_CLASSES[note % 12], note // 12 - 1)

    @property
    def midi_note(self) -> int:
        return (self.octave + 1) * 12 + _PITCH_INDEX[self.pitch_class]

    @property
    def voice_id(self) -> str:
        return f"{self.pitch_class}-{self.octave}"

    @property
    def frequency(self) -> float:
        return frequency(self.pitch_class, self.octave)

    def __str__(self):
        return self.voice_id
