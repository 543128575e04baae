import unittest

import numpy as np

from dualsynth.errors import GraphError
from dualsynth.graph import AudioContext, AudioNode, AudioParam
from dualsynth.scheduler import Scheduler


class Constant(AudioNode):
    def __init__(self, context, value=1.0):
        super().__init__(context)
        self.value = value

    def process(self, block):
        return np.full((self.context.channels, self.context.quantum), self.value)


class TestAudioParam(unittest.TestCase):
    def setUp(self):
        self.context = AudioContext(sample_rate=1000, quantum=10, channels=1)
        self.param = AudioParam(self.context, 1.0, name='test')

    def test_default_value(self):
        self.assertEqual(self.param.value, 1.0)
        self.assertTrue(np.all(self.param.values(0.0, 50) == 1.0))

    def test_set_value_in_future(self):
        self.param.set_value_at_time(0.5, 0.1)
        values = self.param.values(0.0, 200)
        self.assertEqual(values[99], 1.0)
        self.assertEqual(values[101], 0.5)

    def test_linear_ramp(self):
        self.param.set_value_at_time(0.0, 0.0)
        self.param.linear_ramp_to_value_at_time(1.0, 0.1)
        self.assertAlmostEqual(self.param.value_at(0.05), 0.5)
        self.assertAlmostEqual(self.param.value_at(0.1), 1.0)
        self.assertAlmostEqual(self.param.value_at(0.5), 1.0)

    def test_exponential_ramp(self):
        self.param.set_value_at_time(1.0, 0.0)
        self.param.exponential_ramp_to_value_at_time(0.01, 0.1)
        self.assertAlmostEqual(self.param.value_at(0.05), 0.1)
        self.assertAlmostEqual(self.param.value_at(0.2), 0.01)

    def test_exponential_ramp_rejects_zero(self):
        with self.assertRaises(ValueError):
            self.param.exponential_ramp_to_value_at_time(0.0, 0.1)

    def test_set_target(self):
        self.param.set_target_at_time(0.0, 0.0, 0.1)
        self.assertAlmostEqual(self.param.value_at(0.1), np.exp(-1.0))

    def test_cancel_scheduled_values(self):
        self.param.set_value_at_time(0.0, 0.0)
        self.param.linear_ramp_to_value_at_time(1.0, 0.1)
        self.param.cancel_scheduled_values(0.05)
        self.assertEqual(self.param.value_at(0.2), 0.0)

    def test_cancel_and_hold(self):
        self.param.set_value_at_time(0.0, 0.0)
        self.param.linear_ramp_to_value_at_time(1.0, 0.1)
        self.param.cancel_and_hold_at_time(0.05)
        self.assertAlmostEqual(self.param.value_at(0.05), 0.5)
        self.assertAlmostEqual(self.param.value_at(0.2), 0.5)

    def test_ramp_after_hold_starts_from_held_value(self):
        self.param.set_value_at_time(0.0, 0.0)
        self.param.linear_ramp_to_value_at_time(1.0, 0.1)
        self.param.cancel_and_hold_at_time(0.05)
        self.param.linear_ramp_to_value_at_time(0.0, 0.15)
        self.assertAlmostEqual(self.param.value_at(0.1), 0.25)

    def test_value_clipped_to_range(self):
        param = AudioParam(self.context, 0.5, 0.0, 1.0)
        param.value = 2.0
        self.assertEqual(param.value, 1.0)


class TestScheduler(unittest.TestCase):
    def setUp(self):
        self.now = 0.0
        self.scheduler = Scheduler(lambda: self.now)
        self.calls = []

    def test_runs_in_due_order(self):
        self.scheduler.call_at(2.0, self.calls.append, 'late')
        self.scheduler.call_at(1.0, self.calls.append, 'first')
        self.scheduler.call_at(1.0, self.calls.append, 'second')
        self.assertEqual(self.scheduler.run_due(0.5), 0)
        self.assertEqual(self.scheduler.run_due(2.0), 3)
        self.assertEqual(self.calls, ['first', 'second', 'late'])

    def test_call_later_uses_clock(self):
        self.now = 10.0
        handle = self.scheduler.call_later(0.5, self.calls.append, 'x')
        self.assertEqual(handle.when, 10.5)
        self.assertEqual(self.scheduler.next_due(), 10.5)

    def test_cancelled_handle_never_runs(self):
        handle = self.scheduler.call_at(1.0, self.calls.append, 'x')
        self.assertTrue(handle.cancel())
        self.assertFalse(handle.cancel())
        self.assertEqual(self.scheduler.pending_count(), 0)
        self.scheduler.run_due(5.0)
        self.assertEqual(self.calls, [])

    def test_fired_handle_cannot_be_cancelled(self):
        handle = self.scheduler.call_at(0.0, self.calls.append, 'x')
        self.scheduler.run_due(0.0)
        self.assertTrue(handle.fired)
        self.assertFalse(handle.cancel())

    def test_callbacks_scheduled_during_run_wait(self):
        def reschedule():
            self.calls.append('outer')
            self.scheduler.call_later(0.0, self.calls.append, 'inner')

        self.scheduler.call_at(0.0, reschedule)
        self.assertEqual(self.scheduler.run_due(0.0), 1)
        self.assertEqual(self.calls, ['outer'])
        self.assertEqual(self.scheduler.run_due(0.0), 1)
        self.assertEqual(self.calls, ['outer', 'inner'])

    def test_failing_callback_is_logged(self):
        def explode():
            raise RuntimeError('boom')

        self.scheduler.call_at(0.0, explode, label='explode')
        self.scheduler.call_at(0.0, self.calls.append, 'after')
        with self.assertLogs('dualsynth', level='ERROR') as logs:
            self.assertEqual(self.scheduler.run_due(0.0), 2)
        self.assertIn('explode', logs.output[0])
        self.assertEqual(self.calls, ['after'])


class TestAudioGraph(unittest.TestCase):
    def setUp(self):
        self.context = AudioContext(sample_rate=1000, quantum=10, channels=1)

    def test_render_arbitrary_lengths(self):
        Constant(self.context, 0.5).connect(self.context.destination)
        out = self.context.render(25)
        self.assertEqual(out.shape, (1, 25))
        self.assertTrue(np.all(out == 0.5))
        self.assertEqual(self.context.frame, 30)
        self.assertEqual(self.context.render(5).shape, (1, 5))
        self.assertEqual(self.context.frame, 30)

    def test_inputs_are_summed(self):
        Constant(self.context, 0.25).connect(self.context.destination)
        Constant(self.context, 0.5).connect(self.context.destination)
        self.assertTrue(np.allclose(self.context.render(10), 0.75))

    def test_connect_is_idempotent(self):
        source = Constant(self.context)
        source.connect(self.context.destination)
        source.connect(self.context.destination)
        self.assertEqual(self.context.destination.inputs, [source])
        self.assertTrue(np.all(self.context.render(10) == 1.0))

    def test_disconnect(self):
        source = Constant(self.context)
        source.connect(self.context.destination)
        source.disconnect(self.context.destination)
        self.assertFalse(source.is_connected_to(self.context.destination))
        self.assertTrue(np.all(self.context.render(10) == 0.0))
        with self.assertRaises(GraphError):
            source.disconnect(self.context.destination)
        source.disconnect()

    def test_cannot_connect_across_contexts(self):
        other = AudioContext(sample_rate=1000, quantum=10, channels=1)
        with self.assertRaises(GraphError):
            Constant(self.context).connect(other.destination)

    def test_cycle_without_delay_renders_silence_for_back_edge(self):
        a = Constant(self.context, 1.0)
        b = AudioNode(self.context)
        c = AudioNode(self.context)
        a.connect(b)
        b.connect(c)
        c.connect(b)
        b.connect(self.context.destination)
        self.assertTrue(np.all(np.isfinite(self.context.render(50))))

    def test_scheduler_runs_on_audio_clock(self):
        calls = []
        self.context.scheduler.call_at(0.015, calls.append, 'due')
        self.context.render(10)
        self.assertEqual(calls, [])
        self.context.render(10)
        self.assertEqual(calls, ['due'])
        self.assertAlmostEqual(self.context.current_time, 0.02)


if __name__ == '__main__':
    unittest.main()
