import random
import unittest

import numpy as np

from dualsynth.audio import WAVEFORMS
from dualsynth.config import SynthConfig, VoiceConfig
from dualsynth.core import Synthesizer
from dualsynth.errors import InvalidPitchError, InvalidWaveformError
from dualsynth.pitch import PitchSpec
from dualsynth.voice import VoicePhase

A4 = PitchSpec('A', 4)
C4 = PitchSpec('C', 4)


class SynthTestCase(unittest.TestCase):
    def setUp(self):
        self.now = 100.0
        self.synth = Synthesizer(config=self.make_config(), clock=lambda: self.now)
        self.voices = self.synth.voices

    def make_config(self):
        return SynthConfig()

    def active_count(self, pitch):
        return sum(1 for v in self.voices.live_voices()
                   if v.voice_id == pitch.voice_id and v.is_active)


class TestVoiceLifecycle(SynthTestCase):
    def test_dual_oscillator_note(self):
        self.synth.set_waveform1('sine')
        self.synth.set_waveform2('square')
        self.synth.note_on('A', 4)
        voice = self.voices.voice(A4)

        self.assertEqual(voice.phase, VoicePhase.ACTIVE)
        self.assertEqual((voice.waveform1, voice.waveform2), ('sine', 'square'))
        self.assertEqual(voice.osc1.oscillator.frequency.value, 440.0)
        self.assertEqual(voice.osc2.oscillator.frequency.value, 440.0)

        start = voice.started_at
        env1, env2 = voice.osc1.envelope.gain, voice.osc2.envelope.gain
        self.assertEqual(env1.value_at(start), 0.0)
        self.assertAlmostEqual(env1.value_at(start + 0.005), 0.25)
        self.assertAlmostEqual(env1.value_at(start + 0.01), 0.5)
        self.assertAlmostEqual(env2.value_at(start + 0.01), 0.4)

        self.synth.advance(0.02)
        self.synth.note_off('A', 4)
        self.assertEqual(voice.phase, VoicePhase.RELEASING)
        released = voice.released_at
        self.assertLess(env1.value_at(released + 0.029), 1e-3)
        self.assertEqual(env1.value_at(released + 0.03), 0.0)
        self.assertEqual(env2.value_at(released + 0.03), 0.0)

        self.synth.advance(0.05)
        self.assertEqual(voice.phase, VoicePhase.REMOVED)
        self.assertNotIn('A-4', self.voices.active_voices())
        self.assertTrue(np.all(self.synth.render(256) == 0.0))

    def test_single_sine_output(self):
        self.synth.note_on('A', 4)
        self.synth.advance(0.05)
        out = self.synth.render(44100)
        self.assertEqual(out.shape, (44100, 2))
        self.assertEqual(out.dtype, np.float32)
        self.assertAlmostEqual(float(np.max(np.abs(out))), 0.5 * 0.7, places=3)
        spectrum = np.abs(np.fft.rfft(out[:, 0]))
        self.assertEqual(int(np.argmax(spectrum)), 440)

    def test_note_off_without_note(self):
        self.synth.note_off('A', 4)
        self.assertFalse(self.voices.note_off(A4))
        self.assertEqual(self.voices.active_voices(), {})

    def test_repeated_note_off_is_noop(self):
        self.synth.note_on('A', 4)
        self.synth.note_off('A', 4)
        voice = self.voices.voice(A4)
        timer = voice.cleanup_timer
        self.assertFalse(self.voices.note_off(A4))
        self.assertIs(voice.cleanup_timer, timer)

    def test_release_time_depends_on_age(self):
        self.synth.note_on('A', 4)
        self.synth.advance(0.2)
        self.synth.note_off('A', 4)
        rapid = self.voices.voice(A4)
        self.assertAlmostEqual(rapid.cleanup_timer.when, rapid.released_at + 0.03 + 0.01)

        self.synth.note_on('C', 4)
        self.synth.advance(1.2)
        self.synth.note_off('C', 4)
        held = self.voices.voice(C4)
        self.assertAlmostEqual(held.cleanup_timer.when, held.released_at + 0.08 + 0.01)

    def test_invalid_pitch_changes_nothing(self):
        with self.assertRaises(InvalidPitchError):
            self.synth.note_on('H', 4)
        with self.assertRaises(InvalidPitchError):
            self.synth.note_on('A', 4.5)
        self.assertEqual(self.voices.active_voices(), {})
        self.assertEqual(self.context_pending(), 0)

    def context_pending(self):
        return self.synth.context.scheduler.pending_count()

    def test_polyphony(self):
        for name in ('C', 'E', 'G'):
            self.synth.note_on(name, 4)
        self.assertEqual(self.synth.active_voice_ids(), ['C-4', 'E-4', 'G-4'])


class TestRetrigger(SynthTestCase):
    def test_retrigger_never_overlaps_active_voices(self):
        self.synth.note_on('C', 4)
        old = self.voices.voice(C4)
        self.synth.advance(0.005)

        level = old.osc1.envelope.gain.value
        self.synth.note_on('C', 4)
        self.assertEqual(old.phase, VoicePhase.RELEASING)
        self.assertAlmostEqual(old.osc1.envelope.gain.value, level)
        self.assertEqual(self.voices.pending_count, 1)

        for _ in range(10):
            self.synth.render(128)
            self.assertLessEqual(self.active_count(C4), 1)

        new = self.voices.voice(C4)
        self.assertIsNot(new, old)
        self.assertTrue(new.is_active)
        self.assertEqual(self.synth.active_voice_ids(), ['C-4'])
        self.assertIn(old.phase, (VoicePhase.RELEASING, VoicePhase.REMOVED))

    def test_replacement_starts_after_release_scheduled(self):
        self.synth.note_on('C', 4)
        old = self.voices.voice(C4)
        self.synth.advance(0.005)
        self.synth.note_on('C', 4)
        self.synth.render(128)
        new = self.voices.voice(C4)
        self.assertGreaterEqual(new.started_at, old.released_at)
        self.assertAlmostEqual(old.cleanup_timer.when, old.released_at + 0.015 + 0.01)

    def test_note_on_while_replacement_pending(self):
        self.synth.note_on('C', 4)
        self.synth.note_on('C', 4)
        self.synth.note_on('C', 4)
        self.assertEqual(self.voices.pending_count, 1)
        self.synth.render(256)
        self.assertEqual(len([v for v in self.voices.live_voices() if v.is_active]), 1)

    def test_note_off_cancels_pending_replacement(self):
        self.synth.note_on('C', 4)
        self.synth.note_on('C', 4)
        self.synth.note_off('C', 4)
        self.assertEqual(self.voices.pending_count, 0)
        self.synth.advance(0.1)
        self.assertEqual(self.voices.active_voices(), {})
        self.assertEqual(self.voices.releasing_count, 0)

    def test_note_on_while_releasing_starts_immediately(self):
        self.synth.note_on('A', 4)
        old = self.voices.voice(A4)
        self.synth.advance(0.02)
        self.synth.note_off('A', 4)
        self.synth.note_on('A', 4)

        new = self.voices.voice(A4)
        self.assertIsNot(new, old)
        self.assertTrue(new.is_active)
        self.assertEqual(old.phase, VoicePhase.RELEASING)
        self.assertEqual(self.voices.releasing_count, 1)

        self.synth.advance(0.1)
        self.assertEqual(old.phase, VoicePhase.REMOVED)
        self.assertIs(self.voices.voice(A4), new)
        self.assertTrue(new.is_active)


class TestSafetyTimeout(SynthTestCase):
    def make_config(self):
        return SynthConfig(voice=VoiceConfig(SAFETY_TIMEOUT=0.5))

    def test_default_timeout(self):
        synth = Synthesizer()
        synth.note_on('A', 4)
        voice = synth.voices.voice(A4)
        self.assertAlmostEqual(voice.safety_timer.when, voice.started_at + 5.0)

    def test_stuck_note_is_released(self):
        self.synth.note_on('A', 4)
        voice = self.voices.voice(A4)
        self.synth.advance(0.45)
        self.assertTrue(voice.is_active)

        with self.assertLogs('dualsynth', level='WARNING'):
            self.synth.advance(0.06)
        self.assertFalse(voice.is_active)
        self.assertLessEqual(voice.released_at - voice.started_at, 0.5 + 128 / 44100)

        self.synth.advance(0.2)
        self.assertEqual(voice.phase, VoicePhase.REMOVED)
        self.assertEqual(self.voices.active_voices(), {})
        self.synth.note_off('A', 4)

    def test_note_off_cancels_safety_timer(self):
        self.synth.note_on('A', 4)
        voice = self.voices.voice(A4)
        timer = voice.safety_timer
        self.synth.note_off('A', 4)
        self.assertTrue(timer.cancelled)
        self.assertIsNone(voice.safety_timer)


class TestStopAll(SynthTestCase):
    def test_stop_all_silences_everything(self):
        self.synth.note_on('A', 4)
        self.synth.note_on('C', 4)
        self.synth.note_on('E', 4)
        self.synth.advance(0.01)
        self.synth.note_on('E', 4)
        old_master = self.synth.output.master

        self.assertFalse(self.synth.stop_all())
        self.assertEqual(self.voices.pending_count, 0)
        self.assertEqual(self.synth.active_voice_ids(), [])

        self.synth.advance(0.2)
        self.assertEqual(self.voices.active_voices(), {})
        self.assertEqual(self.voices.releasing_count, 0)
        self.assertEqual(self.synth.output.resets, 1)
        self.assertIsNot(self.synth.output.master, old_master)
        self.assertFalse(old_master.is_connected_to(self.synth.effects.input))
        self.assertTrue(np.all(self.synth.render(512) == 0.0))

    def test_voice_started_after_stop_all_survives_sweep(self):
        self.synth.note_on('A', 4)
        self.synth.stop_all()
        self.synth.note_on('G', 4)
        late = self.voices.voice(PitchSpec('G', 4))

        self.synth.advance(0.2)
        self.assertTrue(late.is_active)
        self.assertEqual(self.synth.active_voice_ids(), ['G-4'])
        self.assertTrue(late.osc1.envelope.is_connected_to(self.synth.output.master))
        self.synth.advance(0.1)
        self.assertGreater(np.max(np.abs(self.synth.render(512))), 0.1)

    def test_late_note_level_is_steady_across_sweep(self):
        self.synth.note_on('A', 4)
        self.synth.advance(0.2)
        self.synth.stop_all()
        self.synth.note_on('E', 5)

        # 10 ms windows from 50 ms on, past the master fade-in and the sweep
        out = self.synth.render(13230)[:, 0]
        rms = np.sqrt(np.mean(out[2205:].reshape(-1, 441) ** 2, axis=1))
        self.assertGreater(np.min(rms), 0.2)
        self.assertLess(np.max(rms) - np.min(rms), 0.05 * np.max(rms))
        self.assertEqual(self.synth.output.resets, 1)
        self.assertEqual(self.synth.output.draining, [])

    def test_stop_all_with_nothing_playing(self):
        self.synth.stop_all()
        self.synth.advance(0.1)
        self.assertEqual(self.synth.output.resets, 1)
        self.assertEqual(self.synth.output.draining, [])

    def test_double_tap_resets_immediately(self):
        self.synth.note_on('A', 4)
        first_master = self.synth.output.master
        self.assertFalse(self.synth.stop_all())
        self.assertEqual(self.synth.output.resets, 1)
        self.now += 0.2
        self.assertTrue(self.synth.stop_all())
        self.assertEqual(self.synth.output.resets, 2)
        self.assertFalse(first_master.is_connected_to(self.synth.effects.input))
        self.assertEqual(self.synth.output.draining, [])

        self.synth.advance(0.5)
        self.assertEqual(self.synth.output.resets, 2)
        self.now += 0.1
        self.assertFalse(self.synth.stop_all())

    def test_slow_taps_are_not_double(self):
        self.assertFalse(self.synth.stop_all())
        self.now += 1.0
        self.assertFalse(self.synth.stop_all())

    def test_emergency_stop(self):
        self.synth.note_on('A', 4)
        self.assertGreater(np.max(np.abs(self.synth.render(128 * 20))), 0.1)
        self.synth.emergency_stop()
        self.assertEqual(self.synth.output.resets, 1)
        self.assertTrue(np.all(self.synth.render(128) == 0.0))


class TestWaveformExclusivity(SynthTestCase):
    def test_osc2_matching_osc1_stays_disabled(self):
        self.synth.set_waveform1('square')
        self.synth.set_waveform2('square')
        self.assertEqual(self.synth.waveform2, 'none')

    def test_osc1_matching_osc2_disables_osc2(self):
        self.synth.set_waveform2('sawtooth')
        self.synth.set_waveform1('sawtooth')
        self.assertEqual((self.synth.waveform1, self.synth.waveform2), ('sawtooth', 'none'))

    def test_live_voices_follow_changes(self):
        self.synth.set_waveform2('triangle')
        self.synth.note_on('A', 4)
        voice = self.voices.voice(A4)
        self.assertEqual(voice.waveform2, 'triangle')

        self.synth.set_waveform1('triangle')
        self.assertEqual(voice.waveform1, 'triangle')
        self.assertIsNone(voice.osc2)

        self.synth.set_waveform2('sine')
        self.assertEqual(voice.waveform2, 'sine')
        self.synth.set_waveform2('square')
        self.assertEqual(voice.waveform2, 'square')

    def test_releasing_voices_are_left_alone(self):
        self.synth.note_on('A', 4)
        self.synth.note_off('A', 4)
        voice = self.voices.voice(A4)
        self.synth.set_waveform1('square')
        self.assertEqual(voice.waveform1, 'sine')

    def test_invalid_waveform_changes_nothing(self):
        self.synth.set_waveform2('square')
        with self.assertRaises(InvalidWaveformError):
            self.synth.set_waveform1('none')
        with self.assertRaises(InvalidWaveformError):
            self.synth.set_waveform2('saw')
        self.assertEqual((self.synth.waveform1, self.synth.waveform2), ('sine', 'square'))

    def test_random_sequences_keep_oscillators_distinct(self):
        rng = random.Random(1234)
        self.synth.note_on('A', 4)
        self.synth.note_on('E', 5)
        for _ in range(200):
            if rng.random() < 0.5:
                self.synth.set_waveform1(rng.choice(WAVEFORMS))
            else:
                self.synth.set_waveform2(rng.choice(WAVEFORMS + ('none',)))
            self.assertNotEqual(self.synth.waveform1, self.synth.waveform2)
            for voice in self.voices.live_voices():
                self.assertNotEqual(voice.waveform1, voice.waveform2)
                self.assertEqual(voice.waveform1, self.synth.waveform1)


if __name__ == '__main__':
    unittest.main()
