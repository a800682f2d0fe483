import csv
import math
import time
import queue
import random
import struct
import logging
import threading
from abc import ABC, abstractmethod

from ecg_core import Sample

logger = logging.getLogger(__name__)

# BLE UUIDs exposed by the ECG peripheral firmware
HEART_RATE_SERVICE = "0000180d-0000-1000-8000-00805f9b34fb"
HEART_RATE_CHAR = "00002a37-0000-1000-8000-00805f9b34fb"
ECG_SERVICE = "0000181c-0000-1000-8000-00805f9b34fb"
ECG_DATA_CHAR = "00002a5b-0000-1000-8000-00805f9b34fb"

ADC_HALF_SCALE = 2048.0
ADC_REFERENCE = 1.65
RESYNC_GAP_MS = 1000


def decode_ecg_packet(data: bytes) -> list[float]:
    """Little-endian int16 ADC counts -> amplitude (counts / 2048 * 1.65)."""
    if len(data) % 2:
        raise ValueError(f"ECG packet length must be even, got {len(data)} bytes")
    count = len(data) // 2
    raw = struct.unpack(f"<{count}h", bytes(data))
    return [(r / ADC_HALF_SCALE) * ADC_REFERENCE for r in raw]


def parse_heart_rate_measurement(data: bytes) -> int:
    """Heart Rate Measurement characteristic: flags bit 0 selects uint16 vs uint8."""
    if len(data) < 2:
        raise ValueError("heart rate packet too short")
    flags = data[0]
    if flags & 0x01:
        if len(data) < 3:
            raise ValueError("heart rate packet too short for uint16 value")
        return struct.unpack_from("<H", bytes(data), 1)[0]
    return data[1]


class ECGSource(ABC):
    sample_rate: int

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...

    @abstractmethod
    def next_sample(self) -> Sample | None:
        """Next sample in arrival order, or None once stopped/exhausted."""

    def __iter__(self):
        while True:
            sample = self.next_sample()
            if sample is None:
                return
            yield sample


class SimulatedSource(ECGSource):
    def __init__(
        self,
        heart_rate: int = 72,
        sample_rate: int = 250,
        amplitude: float = 1.0,
        noise: float = 0.02,
        ectopic_rate: float = 0.001,
        duration_sec: float | None = None,
        realtime: bool = False,
        seed: int | None = None,
        start_ms: int | None = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.amplitude = amplitude
        self.noise = noise
        self.ectopic_rate = ectopic_rate
        self.realtime = realtime
        self.max_samples = int(duration_sec * sample_rate) if duration_sec is not None else None
        self.rng = random.Random(seed)
        self.start_ms = start_ms
        self.heart_rate = 72
        self.beat_interval = 60 / self.heart_rate
        self.set_heart_rate(heart_rate)
        self.count = 0
        self.running = False
        self._t0 = 0.0

    def set_heart_rate(self, bpm: int) -> None:
        self.heart_rate = max(40, min(200, bpm))
        self.beat_interval = 60 / self.heart_rate

    def generate_point(self, t: float) -> float:
        tau = t % self.beat_interval
        pos = tau / self.beat_interval
        value = 0.0

        # P wave
        if 0.04 <= pos < 0.12:
            value += 0.08 * math.sin(math.pi * (pos - 0.04) / 0.08)

        # QRS: Q/R/S widths fixed in seconds so the complex stays narrow at any rate
        r_time = 0.30 * self.beat_interval
        value += -0.06 * _gauss(tau, r_time - 0.0375, 0.005)
        value += 1.0 * _gauss(tau, r_time, 0.0125)
        value += -0.18 * _gauss(tau, r_time + 0.0333, 0.0067)

        # ST segment
        if 0.38 <= pos < 0.46:
            value += 0.02 * math.sin((pos - 0.38) / 0.08 * math.pi)

        # T wave
        if 0.46 <= pos < 0.72:
            value += 0.2 * math.sin(math.pi * (pos - 0.46) / 0.26)

        if self.ectopic_rate and self.rng.random() < self.ectopic_rate:
            value += 0.6 * math.exp(-((self.rng.random() - 0.5) ** 2) / 0.01)

        baseline = 0.02 * math.sin(t * 0.2)
        respiratory = 0.012 * math.sin(t * 0.3)
        noise = (self.rng.random() - 0.5) * self.noise if self.noise else 0.0
        return self.amplitude * (value + baseline + respiratory) + noise

    def start(self) -> None:
        if self.start_ms is None:
            self.start_ms = int(time.time() * 1000)
        self._t0 = time.monotonic()
        self.running = True
        logger.info("simulated source started at %d BPM", self.heart_rate)

    def stop(self) -> None:
        self.running = False

    def next_sample(self) -> Sample | None:
        if not self.running:
            return None
        if self.max_samples is not None and self.count >= self.max_samples:
            self.running = False
            return None
        if self.realtime:
            delay = self._t0 + self.count / self.sample_rate - time.monotonic()
            if delay > 0:
                time.sleep(delay)

        value = self.generate_point(self.count / self.sample_rate)
        timestamp = self.start_ms + round(self.count * 1000 / self.sample_rate)
        self.count += 1
        return Sample(value, timestamp, self.heart_rate)


class DeviceSource(ECGSource):
    """Samples pushed by a BLE transport through GATT notification callbacks.

    The transport (bleak, Web Bluetooth bridge, ...) calls
    ``handle_notification`` / ``handle_heart_rate`` with raw characteristic
    payloads. Packets carry no timestamps, so samples are placed on a nominal
    sample clock anchored at the first packet and re-anchored after a gap.
    With ``duration_sec`` set, the source stops itself once that much time
    has passed since ``start`` and drains what is already queued.
    """

    def __init__(
        self,
        sample_rate: int = 250,
        poll_timeout: float = 0.1,
        duration_sec: float | None = None,
        clock=time.time,
    ) -> None:
        self.sample_rate = sample_rate
        self.duration_sec = duration_sec
        self.poll_timeout = poll_timeout
        self.clock = clock
        self.heart_rate: int | None = None
        self.running = False
        self.packets = 0
        self.malformed = 0
        self._queue = queue.Queue()
        self._lock = threading.Lock()
        self._next_ts: float | None = None
        self._deadline: float | None = None

    def start(self) -> None:
        if self.duration_sec is not None:
            self._deadline = self.clock() + self.duration_sec
        self.running = True
        logger.info("device source listening")

    def stop(self) -> None:
        self.running = False

    def handle_notification(self, sender, data: bytes) -> None:
        if not self.running:
            return
        try:
            values = decode_ecg_packet(data)
        except ValueError as exc:
            self.malformed += 1
            logger.warning("dropping ECG packet: %s", exc)
            return

        with self._lock:
            now_ms = self.clock() * 1000
            if self._next_ts is None or now_ms - self._next_ts > RESYNC_GAP_MS:
                self._next_ts = now_ms
            for value in values:
                self._queue.put(Sample(value, int(round(self._next_ts)), self.heart_rate))
                self._next_ts += 1000 / self.sample_rate
            self.packets += 1

    def handle_heart_rate(self, sender, data: bytes) -> None:
        try:
            self.heart_rate = parse_heart_rate_measurement(data)
        except ValueError as exc:
            logger.warning("dropping heart rate packet: %s", exc)

    def next_sample(self) -> Sample | None:
        while True:
            if self.running and self._deadline is not None and self.clock() >= self._deadline:
                logger.info("device recording reached its %.1fs duration", self.duration_sec)
                self.stop()
            try:
                return self._queue.get(timeout=self.poll_timeout)
            except queue.Empty:
                if not self.running:
                    return None


class ReplaySource(ECGSource):
    def __init__(self, samples, sample_rate: int = 250) -> None:
        self.sample_rate = sample_rate
        self.samples = list(samples)
        self.position = 0
        self.running = False

    @classmethod
    def from_values(cls, values, sample_rate: int = 250, start_ms: int = 0) -> "ReplaySource":
        step = 1000 / sample_rate
        samples = [Sample(float(v), start_ms + round(i * step)) for i, v in enumerate(values)]
        return cls(samples, sample_rate)

    @classmethod
    def from_csv(cls, path: str, sample_rate: int = 250) -> "ReplaySource":
        samples = []
        with open(path, newline="") as f:
            for row in csv.DictReader(f):
                samples.append(Sample(float(row["value"]), int(float(row["timestamp"]))))
        return cls(samples, sample_rate)

    def start(self) -> None:
        self.position = 0
        self.running = True

    def stop(self) -> None:
        self.running = False

    def next_sample(self) -> Sample | None:
        if not self.running or self.position >= len(self.samples):
            return None
        sample = self.samples[self.position]
        self.position += 1
        return sample


def _gauss(x: float, center: float, sigma: float) -> float:
    return math.exp(-((x - center) ** 2) / (2 * sigma * sigma))
