"""
Debug and Monitoring System
-------------------------
Logging and runtime monitoring for the engine.

Features:
1. Logging:
   - Named 'dualsynth' logger behind a small facade
   - Error reporting with exception details
   - Console format setup for the command line entry

2. Render Monitoring:
   - Render time per audio block against its real-time budget
   - Overrun count (blocks that took longer than they play)

3. Output Monitoring:
   - Recent output samples
   - Peak level and clipped sample count
   - Active voice count
"""

import time
import logging
from typing import Dict, Optional
from threading import Lock
from collections import deque
import numpy as np

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

class RenderMonitor:
    """Rolling render timings for the audio callback"""

    def __init__(self, window_size: int = 100):
        self.durations = deque(maxlen=window_size)
        self.overruns = 0
        self.lock = Lock()

    def record(self, duration: float, budget: Optional[float] = None) -> bool:
        """Store one timing; returns True if it exceeded the budget"""
        with self.lock:
            self.durations.append(duration)
            late = budget is not None and duration > budget
            if late:
                self.overruns += 1
            return late

    def stats(self) -> Dict[str, float]:
        with self.lock:
            if not self.durations:
                return {'avg_ms': 0.0, 'max_ms': 0.0, 'overruns': self.overruns}
            return {
                'avg_ms': 1000 * sum(self.durations) / len(self.durations),
                'max_ms': 1000 * max(self.durations),
                'overruns': self.overruns,
            }

class OutputMonitor:
    """Keeps the most recent output samples and level counters"""

    def __init__(self, buffer_size: int = 1024):
        self.samples = deque(maxlen=buffer_size)
        self.peak = 0.0
        self.clipped = 0
        self.lock = Lock()

    def update(self, values: np.ndarray):
        values = np.ravel(values)
        if values.size == 0:
            return
        with self.lock:
            self.samples.extend(values)
            self.peak = max(self.peak, float(np.max(np.abs(values))))
            self.clipped += int(np.count_nonzero(np.abs(values) > 1.0))

    def snapshot(self) -> list:
        with self.lock:
            return list(self.samples)

class DebugSystem:
    def __init__(self, name: str = 'dualsynth'):
        self.logger = logging.getLogger(name)
        self.render_monitor = RenderMonitor()
        self.outputs: Dict[str, OutputMonitor] = {'audio_out': OutputMonitor()}
        self.voice_count = 0

    def configure(self, level=logging.INFO):
        """Install the console log format used by the command line entry"""
        logging.basicConfig(level=level, format=LOG_FORMAT)
        self.logger.setLevel(level)

    def start_measurement(self) -> float:
        return time.perf_counter()

    def end_measurement(self, start_time: float, label: str, budget: Optional[float] = None):
        duration = time.perf_counter() - start_time
        if self.render_monitor.record(duration, budget):
            self.logger.debug(f"{label} overran its {budget*1000:.2f}ms budget: {duration*1000:.2f}ms")

    def log_info(self, message: str):
        """Log information message"""
        self.logger.info(message)

    def log_debug(self, message: str):
        self.logger.debug(message)

    def log_error(self, message: str, exception: Optional[Exception] = None):
        """Log error message with optional exception"""
        if exception is not None:
            self.logger.error(f"{message}: {exception}")
        else:
            self.logger.error(message)

    def log_warning(self, message: str):
        self.logger.warning(message)

    def monitor_signal(self, name: str, values: np.ndarray):
        monitor = self.outputs.get(name)
        if monitor is not None:
            monitor.update(values)

    def get_signal_data(self, name: str) -> list:
        monitor = self.outputs.get(name)
        return monitor.snapshot() if monitor is not None else []

    def get_performance_stats(self) -> Dict[str, float]:
        return self.render_monitor.stats()

    def track_voices(self, active_count: int):
        """Track number of voices in the active map"""
        self.voice_count = active_count

    def get_active_voice_count(self) -> int:
        return self.voice_count

    def signal_stats(self, name: str) -> Dict[str, float]:
        """Level statistics for a monitored signal"""
        monitor = self.outputs.get(name)
        data = np.asarray(self.get_signal_data(name), dtype=float)
        if data.size == 0:
            return {'rms': 0.0, 'peak': 0.0, 'clipped': 0}
        return {
            'rms': float(np.sqrt(np.mean(data**2))),
            'peak': monitor.peak,
            'clipped': monitor.clipped,
        }

# Global debug instance
DEBUG = DebugSystem()
