"""
Error Types
-----------
Exceptions raised by the synthesizer engine.

Invalid input is reported with a ValueError subclass before any engine
state changes. Graph and device errors are raised by the low-level layers
and caught by the teardown and resume paths.
"""


class SynthError(Exception):
    """Base class for all engine errors"""


class InvalidPitchError(SynthError, ValueError):
    """Unknown pitch class or non-integer octave"""


class InvalidWaveformError(SynthError, ValueError):
    """Unknown oscillator waveform"""


class UnknownEffectError(SynthError, ValueError):
    """Unknown effect kind"""


class InvalidParameterError(SynthError, ValueError):
    """Effect parameter value that cannot be applied"""


class GraphError(SynthError):
    """Invalid connect/disconnect on the audio graph"""


class DeviceError(SynthError):
    """Audio output device unavailable or failed"""
