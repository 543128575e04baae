"""
Output Stage
------------
Master gain, emergency hard reset, output taps and the device stream.

    voices --> master --> effects chain --> destination --> device / taps

Both master swaps install a fresh node that starts silent and ramps back
up, so silence is reachable even when individual voices were left
connected by a failed teardown. replace_master() keeps the old node
draining until retire_master() detaches it; hard_reset() cuts every
master at once.
"""

from typing import Callable, List, Optional

import numpy as np

try:
    import sounddevice as sd
except (ImportError, OSError):  # PortAudio shared library missing
    sd = None

from .audio import GainNode
from .config import AUDIO_CONFIG, AudioConfig, OutputConfig
from .debug import DEBUG
from .effects import EffectsChain
from .errors import DeviceError, GraphError
from .graph import AudioContext, AudioNode

OutputTap = Callable[[np.ndarray], None]


class OutputStage:
    """Routes voice output through the master gain into the effects chain"""

    def __init__(self, context: AudioContext, effects: EffectsChain, config: Optional[OutputConfig] = None):
        self.context = context
        self.effects = effects
        self.config = config or OutputConfig()
        self.level = self.config.MASTER_GAIN
        self.master = GainNode(context, self.level, 'master')
        self.master.connect(effects.input)
        effects.output.connect(context.destination)
        self.resets = 0
        self._draining: List[GainNode] = []
        self._taps: List[OutputTap] = []

    @property
    def input(self) -> AudioNode:
        """Node new voices connect to"""
        return self.master

    @property
    def output(self) -> AudioNode:
        """Final mixed signal, after the effects chain"""
        return self.effects.output

    def set_level(self, level: float):
        self.level = min(1.0, max(0.0, float(level)))
        now = self.context.current_time
        gain = self.master.gain
        gain.cancel_and_hold_at_time(now)
        gain.linear_ramp_to_value_at_time(self.level, now + self.config.RESET_RAMP)

    @property
    def draining(self) -> List[GainNode]:
        """Replaced masters still carrying releasing voices"""
        return list(self._draining)

    def replace_master(self) -> GainNode:
        """
        Fade in a fresh master for new voices

        The current master stays connected so the voices on it can finish
        their release; hand it to retire_master() once they are gone.

        Returns:
            GainNode: The replaced master
        """
        old = self.master
        self._draining.append(old)
        self._install()
        DEBUG.log_debug(f"Master gain replaced, {len(self._draining)} draining")
        return old

    def retire_master(self, node: GainNode):
        """Detach a replaced master; no-op if a hard reset already cut it"""
        if node not in self._draining:
            return
        self._draining.remove(node)
        self._detach(node)

    def hard_reset(self) -> GainNode:
        """Cut every master gain and fade a silent replacement back in"""
        for node in [self.master] + self._draining:
            self._detach(node)
        self._draining.clear()
        master = self._install()
        DEBUG.log_info(f"Output stage hard reset #{self.resets}")
        return master

    def _install(self) -> GainNode:
        now = self.context.current_time
        master = GainNode(self.context, 0.0, 'master')
        master.gain.set_value_at_time(0.0, now)
        master.gain.linear_ramp_to_value_at_time(self.level, now + self.config.RESET_RAMP)
        master.connect(self.effects.input)
        self.master = master
        self.resets += 1
        return master

    def _detach(self, node: GainNode):
        try:
            node.disconnect(self.effects.input)
        except GraphError as e:
            DEBUG.log_warning(f"Master gain was already detached: {e}")

    def add_tap(self, tap: OutputTap):
        if tap not in self._taps:
            self._taps.append(tap)

    def remove_tap(self, tap: OutputTap):
        if tap in self._taps:
            self._taps.remove(tap)

    def emit(self, block: np.ndarray):
        """Hand a rendered (frames, channels) block to every tap"""
        for tap in list(self._taps):
            try:
                tap(block.copy())
            except Exception as e:
                DEBUG.log_error("Output tap failed and was removed", e)
                self.remove_tap(tap)


class AudioOutput:
    """Device stream pulling blocks from a render function"""

    def __init__(self, render: Callable[[int], np.ndarray], device=None,
                 config: AudioConfig = AUDIO_CONFIG):
        self.render = render
        self.device = device
        self.config = config
        self.stream = None
        self.requested = False
        self._error_reported = False

    @property
    def active(self) -> bool:
        return self.stream is not None and self.stream.active

    def start(self):
        """Open and start the output stream; raises DeviceError on failure"""
        self.requested = True
        if sd is None:
            raise DeviceError("sounddevice is unavailable (PortAudio not found)")
        DEBUG.log_info("Starting audio stream...")
        try:
            if self.stream is None:
                self.stream = sd.OutputStream(
                    device=self.device,
                    channels=self.config.CHANNELS,
                    samplerate=self.config.SAMPLE_RATE,
                    blocksize=self.config.BUFFER_SIZE,
                    dtype='float32',
                    callback=self._audio_callback
                )
            self.stream.start()
        except (sd.PortAudioError, ValueError) as e:
            raise DeviceError(f"Cannot start audio output: {e}") from e
        self._error_reported = False
        DEBUG.log_info("Audio stream started successfully")

    def stop(self):
        """Stop the audio output stream"""
        self.requested = False
        if self.stream:
            self.stream.stop()
            self.stream.close()
            self.stream = None

    def resume(self) -> bool:
        """
        Restart a stream that was started but is no longer running

        Safe to call on every note-on; device failures are logged once.
        """
        if not self.requested:
            return False
        if self.active:
            return True
        try:
            self.start()
        except DeviceError as e:
            if not self._error_reported:
                DEBUG.log_error("Audio device unavailable", e)
                self._error_reported = True
            return False
        return True

    def _audio_callback(self, outdata, frames, time_info, status):
        if status:
            DEBUG.log_warning(f"Audio stream status: {status}")
        try:
            outdata[:] = np.clip(self.render(frames), -1.0, 1.0)
        except Exception as e:
            DEBUG.log_error("Audio callback error", e)
            outdata.fill(0)
