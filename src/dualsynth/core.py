"""
Core Synthesizer Engine
------------------------
Polyphonic voice management and the engine context that owns the audio
graph, the effects chain, the output stage and the device stream.

Voices are keyed by VoiceId ("A-4", "C#-3"), so at most one voice per pitch
is ever ACTIVE. Envelope completion, retrigger sequencing, safety timeouts
and the stop-all sweep are deferred callbacks on the audio clock.
"""

import time
from threading import RLock
from typing import Callable, Dict, List, Optional

import numpy as np

from .audio import WAVEFORMS, GainNode
from .config import SynthConfig, VoiceConfig
from .debug import DEBUG
from .effects import EffectsChain, MixState, ParameterSpec
from .errors import InvalidWaveformError
from .graph import AudioContext
from .output import AudioOutput, OutputStage, OutputTap
from .pitch import PitchSpec
from .scheduler import TimerHandle
from .voice import Voice, VoicePhase

DISABLED = 'none'


class VoiceManager:
    """Creates, retriggers, releases and cleans up voices"""

    def __init__(self, context: AudioContext, output: OutputStage, config: Optional[VoiceConfig] = None):
        self.context = context
        self.scheduler = context.scheduler
        self.output = output
        self.config = config or VoiceConfig()
        self._voices: Dict[str, Voice] = {}
        self._retired: List[Voice] = []
        self._pending: Dict[str, TimerHandle] = {}
        self.waveform1 = self._check_waveform(self.config.DEFAULT_WAVEFORM1)
        self.waveform2 = self._check_waveform(self.config.DEFAULT_WAVEFORM2, allow_disabled=True)
        if self.waveform2 == self.waveform1:
            self.waveform2 = DISABLED

    # -- views --------------------------------------------------------------

    def active_voices(self) -> Dict[str, Voice]:
        return dict(self._voices)

    def voice(self, pitch: PitchSpec) -> Optional[Voice]:
        return self._voices.get(pitch.voice_id)

    @property
    def releasing_count(self) -> int:
        mapped = sum(1 for v in self._voices.values() if v.phase is VoicePhase.RELEASING)
        return mapped + len(self._retired)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def live_voices(self) -> List[Voice]:
        return list(self._voices.values()) + list(self._retired)

    # -- note events ----------------------------------------------------------

    def note_on(self, pitch: PitchSpec) -> Optional[Voice]:
        """
        Start a note, retriggering it if it is already sounding

        Returns:
            Voice: The new voice, or None when its creation was deferred
        """
        vid = pitch.voice_id
        if vid in self._pending:
            DEBUG.log_debug(f"Note {vid} already has a replacement pending")
            return None

        current = self._voices.get(vid)
        if current is not None and current.is_active:
            self._release(current, self.config.RETRIGGER_RELEASE)
            self._retire(current)
            self._pending[vid] = self.scheduler.call_later(
                self.config.RETRIGGER_DELAY, self._start_pending, pitch, label=f"retrigger {vid}")
            DEBUG.log_debug(f"Retrigger {vid}: old voice releasing, replacement scheduled")
            return None

        if current is not None:
            self._retire(current)
        return self._create(pitch)

    def note_off(self, pitch: PitchSpec) -> bool:
        """Release the voice for pitch; returns False if nothing was sounding"""
        vid = pitch.voice_id
        pending = self._pending.pop(vid, None)
        if pending is not None:
            pending.cancel()
            DEBUG.log_debug(f"Note off {vid}: pending replacement cancelled")
            return True

        voice = self._voices.get(vid)
        if voice is None or not voice.is_active:
            return False
        self._release(voice, self.release_time(voice))
        return True

    def release_time(self, voice: Voice) -> float:
        if voice.age() < self.config.RAPID_NOTE_THRESHOLD:
            return self.config.RAPID_RELEASE
        return self.config.HELD_RELEASE

    def _create(self, pitch: PitchSpec) -> Voice:
        secondary = None if self.waveform2 == DISABLED else self.waveform2
        voice = Voice(self.context, pitch, self.output.input, self.waveform1, secondary, self.config)
        voice.start()
        voice.safety_timer = self.scheduler.call_later(
            self.config.SAFETY_TIMEOUT, self._safety_timeout, voice, label=f"safety {voice.voice_id}")
        self._voices[voice.voice_id] = voice
        DEBUG.track_voices(len(self._voices))
        DEBUG.log_debug(f"Note on {voice.voice_id} ({voice.frequency:.2f} Hz)")
        return voice

    def _start_pending(self, pitch: PitchSpec):
        self._pending.pop(pitch.voice_id, None)
        current = self._voices.get(pitch.voice_id)
        if current is not None:
            if current.is_active:
                return
            self._retire(current)
        self._create(pitch)

    def _retire(self, voice: Voice):
        """Move a releasing voice out of the map until its cleanup runs"""
        if self._voices.get(voice.voice_id) is voice:
            del self._voices[voice.voice_id]
        if voice not in self._retired:
            self._retired.append(voice)

    def _release(self, voice: Voice, duration: float) -> float:
        end = voice.release(duration)
        if voice.cleanup_timer is not None:
            voice.cleanup_timer.cancel()
        voice.cleanup_timer = self.scheduler.call_at(
            end + self.config.CLEANUP_MARGIN, self._finish, voice, label=f"cleanup {voice.voice_id}")
        return end

    def _finish(self, voice: Voice) -> List[Exception]:
        """Tear a voice down and forget it; safe to call more than once"""
        errors = voice.teardown()
        for error in errors:
            DEBUG.log_warning(f"Teardown of voice {voice.voice_id} failed: {error}")
        if self._voices.get(voice.voice_id) is voice:
            del self._voices[voice.voice_id]
        if voice in self._retired:
            self._retired.remove(voice)
        DEBUG.track_voices(len(self._voices))
        return errors

    def _safety_timeout(self, voice: Voice):
        voice.safety_timer = None
        if not voice.is_active:
            return
        DEBUG.log_warning(f"Voice {voice.voice_id} reached the {self.config.SAFETY_TIMEOUT}s "
                          f"safety timeout, forcing release")
        self._release(voice, self.release_time(voice))

    # -- global stop ------------------------------------------------------------

    def stop_all(self, cut: bool = False) -> float:
        """
        Release every voice and schedule a sweep that guarantees silence

        A fresh master gain takes over at once, so notes played after the
        call never pass through the stage being torn down. The releasing
        voices drain on the old master until the sweep tears them down and
        detaches it. With cut=True every master is cut immediately instead.

        Returns:
            float: Audio time at which the sweep runs
        """
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()

        now = self.context.current_time
        snapshot = self.live_voices()
        finish_at = now
        for voice in snapshot:
            try:
                if voice.is_active:
                    finish_at = max(finish_at, self._release(voice, self.release_time(voice)))
                elif voice.cleanup_timer is not None and voice.cleanup_timer.pending:
                    finish_at = max(finish_at, voice.cleanup_timer.when - self.config.CLEANUP_MARGIN)
            except Exception as e:
                DEBUG.log_error(f"Release of voice {voice.voice_id} failed during stop-all", e)

        if cut:
            self.output.hard_reset()
            draining = None
        else:
            draining = self.output.replace_master()

        sweep_at = finish_at + self.config.CLEANUP_MARGIN
        self.scheduler.call_at(sweep_at, self._sweep, snapshot, draining, label="stop-all sweep")
        DEBUG.log_info(f"Stop all: releasing {len(snapshot)} voices")
        return sweep_at

    def _sweep(self, snapshot: List[Voice], draining: Optional[GainNode]):
        failures = 0
        for voice in snapshot:
            try:
                failures += len(self._finish(voice))
            except Exception as e:
                failures += 1
                DEBUG.log_error(f"Cleanup of voice {voice.voice_id} failed during stop-all", e)

        if draining is not None:
            self.output.retire_master(draining)
        if failures:
            DEBUG.log_warning(f"Stop-all sweep finished with {failures} teardown failures")

    # -- waveforms ------------------------------------------------------------

    @staticmethod
    def _check_waveform(waveform: str, allow_disabled: bool = False) -> str:
        if waveform in WAVEFORMS or (allow_disabled and waveform == DISABLED):
            return waveform
        raise InvalidWaveformError(f"Unknown waveform: {waveform!r}")

    def set_waveform1(self, waveform: str):
        self._check_waveform(waveform)
        if waveform == self.waveform2:
            self.set_waveform2(DISABLED)
        self.waveform1 = waveform
        for voice in self._voices.values():
            if voice.is_active:
                voice.set_waveform1(waveform)

    def set_waveform2(self, waveform: str):
        self._check_waveform(waveform, allow_disabled=True)
        if waveform == self.waveform1:
            DEBUG.log_debug(f"Oscillator 2 cannot match oscillator 1 ({waveform}); disabled")
            waveform = DISABLED
        self.waveform2 = waveform
        for voice in self._voices.values():
            if not voice.is_active:
                continue
            if waveform == DISABLED:
                for error in voice.remove_secondary():
                    DEBUG.log_warning(f"Removing oscillator 2 from {voice.voice_id} failed: {error}")
            else:
                voice.set_waveform2(waveform)


class Synthesizer:
    """Main synthesizer engine: graph, voices, effects and audio output"""

    def __init__(self, device=None, config: Optional[SynthConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or SynthConfig()
        audio = self.config.audio
        self.context = AudioContext(audio.SAMPLE_RATE, audio.RENDER_QUANTUM, audio.CHANNELS)
        self.effects = EffectsChain(self.context, self.config.effects)
        self.output = OutputStage(self.context, self.effects, self.config.output)
        self.voices = VoiceManager(self.context, self.output, self.config.voice)
        self.audio_output = AudioOutput(self.render, device, audio)
        self.lock = RLock()
        self._clock = clock
        self._last_stop_all: Optional[float] = None

    # -- stream ---------------------------------------------------------------

    def start(self):
        """Start the audio output stream"""
        self.audio_output.start()

    def stop(self):
        """Stop the audio output stream"""
        self.audio_output.stop()

    def resume(self) -> bool:
        return self.audio_output.resume()

    # -- notes ------------------------------------------------------------------

    def note_on(self, pitch_class: str, octave: int):
        pitch = PitchSpec(pitch_class, octave)
        self.resume()
        with self.lock:
            self.voices.note_on(pitch)

    def note_off(self, pitch_class: str, octave: int):
        pitch = PitchSpec(pitch_class, octave)
        with self.lock:
            self.voices.note_off(pitch)

    def stop_all(self) -> bool:
        """
        Release every voice

        A second call within the double-tap window also hard-resets the
        output stage right away.

        Returns:
            bool: True if this call was treated as a double tap
        """
        now = self._clock()
        with self.lock:
            double_tap = (self._last_stop_all is not None and
                          now - self._last_stop_all <= self.config.output.DOUBLE_TAP_WINDOW)
            self._last_stop_all = None if double_tap else now
            if double_tap:
                DEBUG.log_warning("Stop all pressed twice, hard resetting output")
            self.voices.stop_all(cut=double_tap)
        return double_tap

    def emergency_stop(self):
        """Release everything and cut the master gain immediately"""
        with self.lock:
            self.voices.stop_all(cut=True)

    # -- sound settings -----------------------------------------------------

    @property
    def waveform1(self) -> str:
        return self.voices.waveform1

    @property
    def waveform2(self) -> str:
        return self.voices.waveform2

    def set_waveform1(self, waveform: str):
        with self.lock:
            self.voices.set_waveform1(waveform)

    def set_waveform2(self, waveform: str):
        with self.lock:
            self.voices.set_waveform2(waveform)

    def set_effect(self, kind: str) -> bool:
        with self.lock:
            return self.effects.set_effect(kind)

    def set_mix(self, wet: float) -> bool:
        with self.lock:
            return self.effects.set_mix(wet)

    @property
    def mix(self) -> MixState:
        return self.effects.mix

    @property
    def current_effect(self) -> str:
        return self.effects.current_effect

    def set_parameter(self, name: str, value) -> bool:
        with self.lock:
            return self.effects.set_parameter(name, value)

    def get_parameters(self) -> Dict:
        with self.lock:
            return self.effects.get_parameters()

    def describe_parameters(self, kind: Optional[str] = None) -> Dict[str, ParameterSpec]:
        return self.effects.describe_parameters(kind)

    def set_master_volume(self, level: float):
        with self.lock:
            self.output.set_level(level)

    # -- output -------------------------------------------------------------------

    def add_output_tap(self, tap: OutputTap):
        self.output.add_tap(tap)

    def remove_output_tap(self, tap: OutputTap):
        self.output.remove_tap(tap)

    @property
    def current_time(self) -> float:
        return self.context.current_time

    def active_voice_ids(self) -> List[str]:
        with self.lock:
            return sorted(vid for vid, v in self.voices.active_voices().items() if v.is_active)

    def render(self, frames: int) -> np.ndarray:
        """
        Render the next block of audio

        Args:
            frames: Number of frames to render

        Returns:
            np.ndarray: float32 block of shape (frames, channels)
        """
        start_time = DEBUG.start_measurement()
        with self.lock:
            block = self.context.render(frames)
        out = np.ascontiguousarray(block.T, dtype=np.float32)
        self.output.emit(out)
        DEBUG.monitor_signal('audio_out', out[:, 0])
        DEBUG.end_measurement(start_time, 'render', frames / self.context.sample_rate)
        return out

    def advance(self, seconds: float):
        """Render and discard audio, moving the clock forward"""
        frames = int(round(seconds * self.context.sample_rate))
        if frames > 0:
            self.render(frames)
