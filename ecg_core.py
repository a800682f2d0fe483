import os
import logging
import dataclasses
from dataclasses import dataclass, field
from collections import deque

logger = logging.getLogger(__name__)

# Butterworth-style bandpass, 5-15 Hz at 250 Hz
FILTER_B = (0.0675, 0.0, -0.0675)
FILTER_A = (1.0, -1.1430, 0.4128)


class ConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class InsufficientData:
    """Explicit "not yet available" result for analyses that need more data."""

    reason: str
    required: int
    available: int


@dataclass
class ECGConfig:
    sample_rate: int = int(os.getenv("ECG_SAMPLE_RATE", "250"))
    refractory_ms: int = int(os.getenv("ECG_REFRACTORY_MS", "250"))
    integration_window: int = int(os.getenv("ECG_INTEGRATION_WINDOW", "15"))
    peak_decay: float = float(os.getenv("ECG_PEAK_DECAY", "0.995"))
    threshold_ratio: float = float(os.getenv("ECG_THRESHOLD_RATIO", "0.6"))
    threshold_floor: float = float(os.getenv("ECG_THRESHOLD_FLOOR", "0.3"))
    detector_gain: float = float(os.getenv("ECG_DETECTOR_GAIN", "1.0"))
    rr_capacity: int = int(os.getenv("ECG_RR_CAPACITY", "20"))
    bpm_maxlen: int = int(os.getenv("ECG_BPM_MAXLEN", "1200"))
    min_bpm: int = int(os.getenv("ECG_MIN_BPM", "30"))
    max_bpm: int = int(os.getenv("ECG_MAX_BPM", "220"))
    irregularity_ratio: float = float(os.getenv("ECG_IRREGULARITY_RATIO", "0.2"))
    min_hrv_intervals: int = int(os.getenv("ECG_MIN_HRV_INTERVALS", "5"))
    min_analysis_beats: int = int(os.getenv("ECG_MIN_ANALYSIS_BEATS", "2"))
    qtc_medium_ms: float = float(os.getenv("ECG_QTC_MEDIUM_MS", "440"))
    qtc_high_ms: float = float(os.getenv("ECG_QTC_HIGH_MS", "500"))
    st_medium_mv: float = float(os.getenv("ECG_ST_MEDIUM_MV", "0.1"))
    st_high_mv: float = float(os.getenv("ECG_ST_HIGH_MV", "0.2"))
    st_point_ms: int = int(os.getenv("ECG_ST_POINT_MS", "80"))
    tp_start_ms: int = int(os.getenv("ECG_TP_START_MS", "320"))
    tp_end_ms: int = int(os.getenv("ECG_TP_END_MS", "600"))
    q_search_ms: int = int(os.getenv("ECG_Q_SEARCH_MS", "20"))
    t_end_tolerance: float = float(os.getenv("ECG_T_END_TOLERANCE", "0.05"))
    brady_bpm: int = int(os.getenv("ECG_BRADY_BPM", "60"))
    tachy_bpm: int = int(os.getenv("ECG_TACHY_BPM", "100"))
    irregular_sdnn_ms: float = float(os.getenv("ECG_IRREGULAR_SDNN_MS", "50"))
    pr_max_ms: float = float(os.getenv("ECG_PR_MAX_MS", "200"))
    qrs_max_ms: float = float(os.getenv("ECG_QRS_MAX_MS", "120"))
    test_duration_sec: float = float(os.getenv("ECG_TEST_DURATION_SEC", "30"))
    buffer_sec: int = int(os.getenv("ECG_BUFFER_SEC", "120"))

    @property
    def ms_per_sample(self) -> float:
        return 1000.0 / self.sample_rate

    @property
    def recording_maxlen(self) -> int:
        return max(1000, self.sample_rate * self.buffer_sec)

    def samples_for(self, ms: float) -> int:
        return int(round(ms * self.sample_rate / 1000.0))

    def validate(self) -> "ECGConfig":
        problems = []
        if self.sample_rate <= 0:
            problems.append(f"sample_rate must be positive, got {self.sample_rate}")
        if self.refractory_ms <= 0:
            problems.append(f"refractory_ms must be positive, got {self.refractory_ms}")
        if self.integration_window < 1:
            problems.append(f"integration_window must be >= 1, got {self.integration_window}")
        if not 0 < self.peak_decay <= 1:
            problems.append(f"peak_decay must be in (0, 1], got {self.peak_decay}")
        if not 0 < self.threshold_ratio <= 1:
            problems.append(f"threshold_ratio must be in (0, 1], got {self.threshold_ratio}")
        if self.threshold_floor < 0:
            problems.append(f"threshold_floor must be >= 0, got {self.threshold_floor}")
        if self.detector_gain <= 0:
            problems.append(f"detector_gain must be positive, got {self.detector_gain}")
        if self.rr_capacity < 2:
            problems.append(f"rr_capacity must be >= 2, got {self.rr_capacity}")
        if not 0 < self.min_bpm < self.max_bpm:
            problems.append(f"BPM bounds must satisfy 0 < min < max, got {self.min_bpm}..{self.max_bpm}")
        if self.irregularity_ratio <= 0:
            problems.append(f"irregularity_ratio must be positive, got {self.irregularity_ratio}")
        if self.min_hrv_intervals < 2:
            problems.append(f"min_hrv_intervals must be >= 2, got {self.min_hrv_intervals}")
        if self.min_analysis_beats < 2:
            problems.append(f"min_analysis_beats must be >= 2, got {self.min_analysis_beats}")
        if not 0 < self.qtc_medium_ms < self.qtc_high_ms:
            problems.append("QTc cut-offs must satisfy 0 < medium < high")
        if not 0 < self.st_medium_mv < self.st_high_mv:
            problems.append("ST cut-offs must satisfy 0 < medium < high")
        if not self.st_point_ms < self.tp_start_ms < self.tp_end_ms:
            problems.append("ST point must precede the TP window, which must be non-empty")
        if self.t_end_tolerance <= 0:
            problems.append(f"t_end_tolerance must be positive, got {self.t_end_tolerance}")
        if self.test_duration_sec <= 0:
            problems.append(f"test_duration_sec must be positive, got {self.test_duration_sec}")
        if problems:
            raise ConfigurationError("; ".join(problems))
        return self

    def with_overrides(self, **values) -> "ECGConfig":
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {', '.join(unknown)}")
        try:
            return dataclasses.replace(self, **values).validate()
        except TypeError as exc:
            raise ConfigurationError(f"invalid configuration value: {exc}") from exc


@dataclass(frozen=True)
class Sample:
    value: float
    timestamp: int
    source_heart_rate: int | None = None


@dataclass(frozen=True)
class ProcessedSample:
    sample: Sample
    conditioned: float
    is_r_peak: bool
    bpm: int | None = None


@dataclass
class FilterState:
    x1: float = 0.0
    x2: float = 0.0
    y1: float = 0.0
    y2: float = 0.0


class BandpassFilter:
    def __init__(self, b=FILTER_B, a=FILTER_A) -> None:
        self.b = tuple(b)
        self.a = tuple(a)
        self.state = FilterState()

    def filter(self, x: float) -> float:
        b0, b1, b2 = self.b
        _, a1, a2 = self.a
        s = self.state
        y = b0 * x + b1 * s.x1 + b2 * s.x2 - a1 * s.y1 - a2 * s.y2
        s.x2, s.x1 = s.x1, x
        s.y2, s.y1 = s.y1, y
        return y

    def reset(self) -> None:
        self.state = FilterState()


@dataclass
class AdaptiveThreshold:
    decay: float
    ratio: float
    floor: float
    peak_max: float = 0.0
    threshold: float = field(init=False)

    def __post_init__(self) -> None:
        self.threshold = self.floor

    def update(self, integrated: float) -> float:
        self.peak_max = max(self.peak_max * self.decay, integrated)
        self.threshold = max(self.floor, self.peak_max * self.ratio)
        return self.threshold

    def reset(self) -> None:
        self.peak_max = 0.0
        self.threshold = self.floor


class BeatDetector:
    """Pan-Tompkins style R-peak detector fed one conditioned sample at a time.

    derivative -> squaring -> moving-window integration -> adaptive
    threshold, with a refractory period between accepted peaks.
    """

    def __init__(self, config: ECGConfig) -> None:
        self.config = config
        self.window = deque(maxlen=config.integration_window)
        self.threshold = AdaptiveThreshold(
            decay=config.peak_decay,
            ratio=config.threshold_ratio,
            floor=config.threshold_floor,
        )
        self.last_conditioned = 0.0
        self.last_peak_time: int | None = None
        self.integrated = 0.0

    def detect(self, conditioned: float, now: int) -> bool:
        slope = abs(self.config.detector_gain * (conditioned - self.last_conditioned))
        self.last_conditioned = conditioned

        self.window.append(slope * slope)
        self.integrated = sum(self.window) / len(self.window)
        threshold = self.threshold.update(self.integrated)

        if self.integrated <= threshold:
            return False
        if self.last_peak_time is not None and now - self.last_peak_time <= self.config.refractory_ms:
            return False
        self.last_peak_time = now
        return True

    def reset(self) -> None:
        self.window.clear()
        self.threshold.reset()
        self.last_conditioned = 0.0
        self.last_peak_time = None
        self.integrated = 0.0


class RhythmTracker:
    def __init__(self, config: ECGConfig) -> None:
        self.config = config
        self.peak_times = deque(maxlen=config.rr_capacity)
        self.rr_intervals = deque(maxlen=config.rr_capacity)
        self.bpm_history = deque(maxlen=config.bpm_maxlen)
        self.bpm_timestamps = deque(maxlen=config.bpm_maxlen)
        self.current_bpm = 0
        self.discarded = 0

    def record_peak(self, timestamp: int) -> int | None:
        """Register an R-peak; returns the instantaneous BPM when it was accepted."""
        previous = self.peak_times[-1] if self.peak_times else None
        self.peak_times.append(timestamp)
        if previous is None:
            return None

        rr = timestamp - previous
        bpm = round(60000 / rr)
        if not self.config.min_bpm <= bpm <= self.config.max_bpm:
            # Out of physiological range: keep the peak, drop the interval.
            self.discarded += 1
            logger.debug("discarding RR %d ms (%d BPM) as artifact", rr, bpm)
            return None

        self.rr_intervals.append(rr)
        self.current_bpm = bpm
        self.bpm_history.append(bpm)
        self.bpm_timestamps.append(timestamp)
        return bpm

    def reset(self) -> None:
        self.peak_times.clear()
        self.rr_intervals.clear()
        self.bpm_history.clear()
        self.bpm_timestamps.clear()
        self.current_bpm = 0
        self.discarded = 0
