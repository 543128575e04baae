"""
Main Application Entry
----------------------
- Audio device listing and selection
- MIDI device setup
- Engine start-up and shutdown
"""

import argparse
import logging
import sys
import time

from .audio import WAVEFORMS
from .core import Synthesizer
from .debug import DEBUG
from .effects import EFFECT_KINDS
from .errors import DeviceError, SynthError
from .midi import MIDIHandler, list_input_devices
from .output import sd


def list_devices():
    """Print audio outputs and MIDI inputs"""
    print("Available Audio Output Devices:")
    print("-" * 50)
    if sd is None:
        print("  (sounddevice unavailable)")
    else:
        for i, device in enumerate(sd.query_devices()):
            if device['max_output_channels'] > 0:
                print(f"{i}: {device['name']}")
    print("\nAvailable MIDI Input Devices:")
    print("-" * 50)
    for name in list_input_devices():
        print(f"  {name}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='dualsynth', description="Dual-oscillator polyphonic synthesizer")
    parser.add_argument('--device', type=int, default=None, help="audio output device index")
    parser.add_argument('--midi', default=None, help="MIDI input port name (default: first found)")
    parser.add_argument('--waveform1', choices=WAVEFORMS, default='sine')
    parser.add_argument('--waveform2', choices=WAVEFORMS + ('none',), default='none')
    parser.add_argument('--effect', choices=EFFECT_KINDS, default='none')
    parser.add_argument('--list-devices', action='store_true', help="list audio and MIDI devices and exit")
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    return parser


def main(argv=None) -> int:
    """Initialize and run the synthesizer"""
    args = build_parser().parse_args(argv)
    DEBUG.configure(getattr(logging, args.log_level))

    if args.list_devices:
        list_devices()
        return 0

    synth = Synthesizer(device=args.device)
    midi = MIDIHandler(synth, args.midi)
    try:
        synth.set_waveform1(args.waveform1)
        synth.set_waveform2(args.waveform2)
        synth.set_effect(args.effect)
        DEBUG.log_info("Synthesizer initialized")

        synth.start()
        DEBUG.log_info("Synth started - ready for MIDI input")
        midi.start()

        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        DEBUG.log_info("Interrupted, shutting down")
    except (DeviceError, SynthError) as e:
        DEBUG.log_error("Synthesizer failed to start", e)
        return 1
    finally:
        midi.stop()
        synth.stop()
        DEBUG.log_info("Cleanup completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
