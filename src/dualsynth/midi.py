"""
MIDI Event System
-----------------
MIDI input handling for the synthesizer.

Features:
1. MIDI Input:
   - Device detection and selection
   - Polling thread over mido's pending-message iterator
   - Error handling without stopping the engine

2. Event Processing:
   - Note on/off mapped to pitch class and octave (note 69 = A4)
   - Note on with velocity 0 treated as note off

3. Control Mapping:
   - All notes off (CC 123) -> stop all
   - Effect mix (CC 91) -> wet level
"""

import time
from threading import Thread
from typing import List, Optional

import mido

from .config import MIDI_CONFIG, MIDIConfig
from .debug import DEBUG
from .errors import DeviceError, SynthError
from .pitch import PitchSpec


def list_input_devices() -> List[str]:
    return mido.get_input_names()


class MIDIHandler:
    """Handles MIDI input and routes events to the synthesizer"""

    def __init__(self, synth, device_name: Optional[str] = None, config: MIDIConfig = MIDI_CONFIG):
        self.synth = synth
        self.device_name = device_name
        self.config = config
        self.input_port = None
        self._poll_thread = None

    def start(self):
        """Open the input port and start polling it on a daemon thread"""
        available_devices = list_input_devices()
        DEBUG.log_info(f"Available MIDI devices: {available_devices}")

        if not available_devices:
            raise DeviceError("No MIDI input devices found")

        if not self.device_name:
            self.device_name = available_devices[0]
            DEBUG.log_info(f"Auto-selected MIDI device: {self.device_name}")
        elif self.device_name not in available_devices:
            DEBUG.log_warning(f"Selected device '{self.device_name}' not found.")
            self.device_name = available_devices[0]
            DEBUG.log_info(f"Using first available device: {self.device_name}")

        try:
            self.input_port = mido.open_input(self.device_name)
        except (IOError, OSError) as e:
            raise DeviceError(f"Cannot open MIDI input {self.device_name}: {e}") from e

        self._poll_thread = Thread(target=self._poll_messages, name='midi-input', daemon=True)
        self._poll_thread.start()
        DEBUG.log_info(f"MIDI input started successfully on {self.device_name}")

    def _poll_messages(self):
        while self.input_port is not None:
            port = self.input_port
            for msg in port.iter_pending():
                self.handle_message(msg)
            time.sleep(self.config.POLL_INTERVAL)

    def stop(self):
        """Stop MIDI input"""
        if self.input_port:
            port, self.input_port = self.input_port, None
            port.close()
            DEBUG.log_info("MIDI input stopped")

    def handle_message(self, message: mido.Message) -> bool:
        """
        Route a single MIDI message to the synthesizer

        Returns:
            bool: True if the message mapped to an engine operation
        """
        DEBUG.log_debug(f"MIDI message received: {message}")
        try:
            if message.type == 'note_on' and message.velocity > 0:
                pitch = PitchSpec.from_midi(message.note)
                self.synth.note_on(pitch.pitch_class, pitch.octave)
            elif message.type in ('note_on', 'note_off'):
                pitch = PitchSpec.from_midi(message.note)
                self.synth.note_off(pitch.pitch_class, pitch.octave)
            elif message.type == 'control_change':
                return self._handle_control(message.control, message.value)
            else:
                DEBUG.log_debug(f"Unhandled MIDI message type: {message.type}")
                return False
        except SynthError as e:
            DEBUG.log_error(f"MIDI message {message} rejected", e)
            return False
        return True

    def _handle_control(self, control: int, value: int) -> bool:
        if control == self.config.ALL_NOTES_OFF_CC:
            self.synth.stop_all()
        elif control == self.config.EFFECT_MIX_CC:
            return self.synth.set_mix(value / 127.0)
        else:
            DEBUG.log_debug(f"Unmapped control change: CC{control}={value}")
            return False
        return True
