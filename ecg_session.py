import logging
import threading
from enum import Enum
from dataclasses import dataclass
from collections import deque

from ecg_core import (
    ECGConfig,
    Sample,
    ProcessedSample,
    BandpassFilter,
    BeatDetector,
    RhythmTracker,
    InsufficientData,
)
from ecg_analysis import (
    HRVSnapshot,
    ClinicalMeasurement,
    compute_hrv,
    analyze_recording,
    rhythm_findings,
    signal_quality,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    ANALYZING = "analyzing"
    REPORTED = "reported"


class SessionStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class SessionSummary:
    started_at: int | None
    stopped_at: int | None
    samples: int
    duration_sec: float
    beats: int
    bpm_avg: float | None
    bpm_min: int | None
    bpm_max: int | None
    discarded_intervals: int
    signal_quality: int
    rr_intervals: tuple
    hrv: HRVSnapshot | InsufficientData
    clinical: ClinicalMeasurement | InsufficientData
    findings: tuple


class AnalysisSession:
    """One test recording: IDLE -> RECORDING -> ANALYZING -> REPORTED.

    Owns the conditioner, detector and rhythm tracker state plus the raw
    recording. Samples must be fed from a single thread, in arrival order;
    subscribers are notified once per sample on that thread.
    """

    def __init__(self, config: ECGConfig | None = None) -> None:
        self.config = (config or ECGConfig()).validate()
        self.lock = threading.RLock()
        self._analysis_lock = threading.Lock()
        self.conditioner = BandpassFilter()
        self.detector = BeatDetector(self.config)
        self.tracker = RhythmTracker(self.config)
        self.recording = deque(maxlen=self.config.recording_maxlen)
        self.state = SessionState.IDLE
        self.summary: SessionSummary | None = None
        self._subscribers = []

    @property
    def current_bpm(self) -> int:
        return self.tracker.current_bpm

    @property
    def rr_intervals(self) -> list[int]:
        with self.lock:
            return list(self.tracker.rr_intervals)

    @property
    def peak_times(self) -> list[int]:
        with self.lock:
            return list(self.tracker.peak_times)

    def subscribe(self, callback):
        with self.lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self.lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def start(self) -> None:
        with self.lock:
            if self.state is not SessionState.IDLE:
                raise SessionStateError(f"cannot start a session that is {self.state.value}")
            self.state = SessionState.RECORDING
        logger.info("session recording at %d Hz", self.config.sample_rate)

    def process(self, sample: Sample) -> ProcessedSample:
        with self.lock:
            if self.state is not SessionState.RECORDING:
                raise SessionStateError(f"cannot accept samples while {self.state.value}")
            conditioned = self.conditioner.filter(sample.value)
            is_peak = self.detector.detect(conditioned, sample.timestamp)
            bpm = self.tracker.record_peak(sample.timestamp) if is_peak else None
            processed = ProcessedSample(sample, conditioned, is_peak, bpm)
            self.recording.append(processed)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            callback(processed)
        return processed

    def stop(self) -> SessionSummary:
        if not self._analysis_lock.acquire(blocking=False):
            raise SessionStateError("analysis already running")
        try:
            with self.lock:
                if self.state is not SessionState.RECORDING:
                    raise SessionStateError(f"cannot stop a session that is {self.state.value}")
                self.state = SessionState.ANALYZING
                recording = list(self.recording)
                rr = list(self.tracker.rr_intervals)
                bpm_history = list(self.tracker.bpm_history)
                discarded = self.tracker.discarded

            try:
                summary = self._analyze(recording, rr, bpm_history, discarded)
            except Exception:
                with self.lock:
                    self.state = SessionState.RECORDING
                raise

            with self.lock:
                self.summary = summary
                self.state = SessionState.REPORTED
        finally:
            self._analysis_lock.release()
        logger.info(
            "session reported: %d samples, %d beats, findings=%s",
            summary.samples,
            summary.beats,
            ", ".join(summary.findings) or "none",
        )
        return summary

    def reset(self) -> None:
        with self.lock:
            if self.state is SessionState.ANALYZING:
                raise SessionStateError("cannot reset while analysis is running")
            self.conditioner.reset()
            self.detector.reset()
            self.tracker.reset()
            self.recording.clear()
            self.summary = None
            self.state = SessionState.IDLE

    def _analyze(self, recording, rr, bpm_history, discarded) -> SessionSummary:
        values = [p.sample.value for p in recording]
        r_indices = [i for i, p in enumerate(recording) if p.is_r_peak]

        hrv = compute_hrv(rr, self.config)
        clinical = analyze_recording(values, r_indices, rr, self.config)
        findings = rhythm_findings(hrv, clinical, self.config)

        started = recording[0].sample.timestamp if recording else None
        stopped = recording[-1].sample.timestamp if recording else None
        duration = (stopped - started) / 1000.0 if recording else 0.0

        return SessionSummary(
            started_at=started,
            stopped_at=stopped,
            samples=len(recording),
            duration_sec=round(duration, 1),
            beats=len(r_indices),
            bpm_avg=round(sum(bpm_history) / len(bpm_history), 1) if bpm_history else None,
            bpm_min=min(bpm_history) if bpm_history else None,
            bpm_max=max(bpm_history) if bpm_history else None,
            discarded_intervals=discarded,
            signal_quality=signal_quality(rr),
            rr_intervals=tuple(rr),
            hrv=hrv,
            clinical=clinical,
            findings=tuple(findings),
        )


class StreamWorker:
    """Single consumer thread moving samples from one source into one session."""

    def __init__(self, session: AnalysisSession, source, name: str = "ecg-stream") -> None:
        self.session = session
        self.source = source
        self.name = name
        self.thread: threading.Thread | None = None
        self.error: Exception | None = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self) -> None:
        if self.running:
            raise SessionStateError("stream worker already running")
        self.session.start()
        self.source.start()
        self.thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self.thread.start()

    def _run(self) -> None:
        try:
            while True:
                sample = self.source.next_sample()
                if sample is None:
                    break
                self.session.process(sample)
        except Exception as exc:
            self.error = exc
            logger.exception("stream worker stopped on error")
            self.source.stop()
        finally:
            self._finish()

    def _finish(self) -> None:
        try:
            self.session.stop()
        except SessionStateError as exc:
            logger.debug("session not finalised by worker: %s", exc)
        except Exception as exc:
            self.error = self.error or exc
            logger.exception("session analysis failed")

    def stop(self, timeout: float | None = None) -> SessionSummary | None:
        """Stop the source, drain what is in flight, and wait for the analysis."""
        self.source.stop()
        if self.thread is not None:
            self.thread.join(timeout)
        return self.session.summary

    def wait(self, timeout: float | None = None) -> SessionSummary | None:
        if self.thread is not None:
            self.thread.join(timeout)
        return self.session.summary
