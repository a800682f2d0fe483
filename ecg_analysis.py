import math
import logging
from dataclasses import dataclass

from ecg_core import ECGConfig, InsufficientData

logger = logging.getLogger(__name__)

LOW = "LOW"
NORMAL = "NORMAL"
MEDIUM = "MEDIUM"
HIGH = "HIGH"

# J-point search window after the R-peak, ms
J_SEARCH_MS = (20, 140)
# P-wave search window before the R-peak, ms
P_SEARCH_MS = (200, 60)
P_MIN_AMPLITUDE = 0.02
P_RELATIVE_AMPLITUDE = 0.04
P_ONSET_FRACTION = 0.3
J_RELATIVE_AMPLITUDE = 0.05

CARDIAC_FINDINGS = (
    "Bradycardia",
    "Tachycardia",
    "Irregular Rhythm",
    "Long QT (possible)",
    "ST Elevation (possible)",
    "ST Depression (possible)",
    "First-Degree AV Block (possible)",
    "Bundle Branch Block (possible)",
)


@dataclass(frozen=True)
class HRVSnapshot:
    mean_rr: float
    sdnn: float
    rmssd: float
    avg_hr: int
    irregular_beat_count: int
    arrhythmia_risk: str
    total_intervals: int


@dataclass(frozen=True)
class BeatIntervals:
    index: int
    pr_interval_ms: float | None = None
    qrs_duration_ms: float | None = None
    qt_ms: float | None = None
    st_value: float | None = None


@dataclass(frozen=True)
class ClinicalMeasurement:
    beats_analyzed: int
    pr_interval_ms: float | None
    qrs_duration_ms: float | None
    qt_ms: float | None
    qtc_ms: float | None
    qtc_risk: str | None
    st_elevation_mv: float | None
    st_risk: str | None
    beats: tuple = ()


def _mean(values) -> float | None:
    values = list(values)
    if not values:
        return None
    return sum(values) / len(values)


# ================= HRV =================

def classify_arrhythmia_risk(irregular_beats: int) -> str:
    if irregular_beats > 3:
        return HIGH
    if irregular_beats > 1:
        return MEDIUM
    return LOW


def compute_hrv(rr_intervals, config: ECGConfig | None = None) -> HRVSnapshot | InsufficientData:
    """Summarise RR intervals (ms) as time-domain HRV plus an arrhythmia risk.

    SDNN is the population standard deviation; RMSSD is taken over the
    successive differences. A beat counts as irregular when its interval
    jumps by more than ``irregularity_ratio`` of the mean RR.
    """
    config = config or ECGConfig()
    rr = [float(r) for r in rr_intervals]
    if len(rr) < config.min_hrv_intervals:
        return InsufficientData("HRV needs more RR intervals", config.min_hrv_intervals, len(rr))
    if any(r <= 0 for r in rr):
        raise ValueError("RR intervals must be positive")

    mean_rr = sum(rr) / len(rr)
    sdnn = math.sqrt(sum((r - mean_rr) ** 2 for r in rr) / len(rr))
    diffs = [rr[i] - rr[i - 1] for i in range(1, len(rr))]
    rmssd = math.sqrt(sum(d * d for d in diffs) / len(diffs))
    irregular = sum(1 for d in diffs if abs(d) > config.irregularity_ratio * mean_rr)

    return HRVSnapshot(
        mean_rr=mean_rr,
        sdnn=sdnn,
        rmssd=rmssd,
        avg_hr=round(60000 / mean_rr),
        irregular_beat_count=irregular,
        arrhythmia_risk=classify_arrhythmia_risk(irregular),
        total_intervals=len(rr),
    )


def signal_quality(rr_intervals) -> int:
    rr = list(rr_intervals)
    if len(rr) <= 2:
        return 100
    spread = math.sqrt(sum((rr[i] - rr[i - 1]) ** 2 for i in range(1, len(rr))) / (len(rr) - 1))
    return round(max(85.0, 100.0 - spread / 10.0))


# ================= CLINICAL INTERVALS =================

def classify_st(elevation: float, config: ECGConfig) -> str:
    if abs(elevation) > config.st_high_mv:
        return HIGH
    if abs(elevation) > config.st_medium_mv:
        return MEDIUM
    return NORMAL


def classify_qtc(qtc: float, config: ECGConfig) -> str:
    if qtc > config.qtc_high_ms:
        return HIGH
    if qtc > config.qtc_medium_ms:
        return MEDIUM
    return NORMAL


def bazett_qtc(qt_ms: float, mean_rr_ms: float) -> float:
    return qt_ms / math.sqrt(mean_rr_ms / 1000.0)


def tp_baseline(values, r_idx: int, config: ECGConfig) -> float | None:
    start = r_idx + config.samples_for(config.tp_start_ms)
    end = min(r_idx + config.samples_for(config.tp_end_ms), len(values))
    if start >= end:
        return None
    return _mean(values[start:end])


def find_q_onset(values, r_idx: int, config: ECGConfig) -> int | None:
    q = r_idx - config.samples_for(config.q_search_ms)
    if q < 1:
        return None
    while q > 0 and values[q] < values[q - 1]:
        q -= 1
    return q


def find_t_end(values, r_idx: int, config: ECGConfig) -> int | None:
    ref_idx = r_idx + config.samples_for(config.tp_end_ms)
    if ref_idx >= len(values):
        return None
    reference = values[ref_idx]
    t = r_idx + config.samples_for(config.tp_start_ms)
    while t < ref_idx and abs(values[t] - reference) > config.t_end_tolerance:
        t += 1
    return t


def find_j_point(values, r_idx: int, baseline: float, config: ECGConfig) -> int | None:
    start = r_idx + config.samples_for(J_SEARCH_MS[0])
    end = min(r_idx + config.samples_for(J_SEARCH_MS[1]), len(values))
    if start >= end:
        return None
    tolerance = J_RELATIVE_AMPLITUDE * abs(values[r_idx] - baseline)
    for k in range(start, end):
        if abs(values[k] - baseline) < tolerance:
            return k
    # no return to baseline: settle for the S-wave nadir
    return min(range(start, end), key=values.__getitem__)


def find_p_onset(values, r_idx: int, baseline: float, config: ECGConfig) -> int | None:
    start = r_idx - config.samples_for(P_SEARCH_MS[0])
    end = r_idx - config.samples_for(P_SEARCH_MS[1])
    if start < 0 or end <= start:
        return None
    threshold = max(P_RELATIVE_AMPLITUDE * abs(values[r_idx] - baseline), P_MIN_AMPLITUDE)
    peak = max(range(start, end), key=lambda k: abs(values[k] - baseline))
    if abs(values[peak] - baseline) < threshold:
        return None
    for k in range(peak, start, -1):
        if abs(values[k] - baseline) < threshold * P_ONSET_FRACTION:
            return k
    return start


def analyze_st_segment(values, r_indices, config: ECGConfig) -> dict | InsufficientData:
    if len(r_indices) < config.min_analysis_beats:
        return InsufficientData("ST analysis needs more beats", config.min_analysis_beats, len(r_indices))

    baselines = [b for b in (tp_baseline(values, i, config) for i in r_indices) if b is not None]
    avg_baseline = _mean(baselines)
    if avg_baseline is None:
        return {"avg_baseline": None, "elevation": None, "risk": None, "per_beat": {}}

    offset = config.samples_for(config.st_point_ms)
    per_beat = {
        i: values[i + offset] - avg_baseline
        for i in r_indices
        if i + offset < len(values)
    }
    elevation = _mean(per_beat.values())
    return {
        "avg_baseline": avg_baseline,
        "elevation": elevation,
        "risk": classify_st(elevation, config) if elevation is not None else None,
        "per_beat": per_beat,
    }


def calculate_qt_interval(values, r_indices, rr_intervals, config: ECGConfig) -> dict | InsufficientData:
    if len(r_indices) < config.min_analysis_beats:
        return InsufficientData("QT analysis needs more beats", config.min_analysis_beats, len(r_indices))

    per_beat = {}
    for i in r_indices:
        q_onset = find_q_onset(values, i, config)
        t_end = find_t_end(values, i, config)
        if q_onset is None or t_end is None:
            continue
        per_beat[i] = (t_end - q_onset) * config.ms_per_sample

    avg_qt = _mean(per_beat.values())
    mean_rr = _mean(rr_intervals)
    qtc = None
    if avg_qt is not None and mean_rr:
        qtc = bazett_qtc(avg_qt, mean_rr)
    return {
        "avg_qt": avg_qt,
        "qtc": qtc,
        "risk": classify_qtc(qtc, config) if qtc is not None else None,
        "per_beat": per_beat,
    }


def analyze_recording(values, r_indices, rr_intervals, config: ECGConfig | None = None) -> ClinicalMeasurement | InsufficientData:
    """Derive PR, QRS, QT/QTc and ST figures from a finished recording.

    ``values`` are the raw (unfiltered) amplitudes in mV, ``r_indices`` the
    sample positions flagged as R-peaks and ``rr_intervals`` the accepted RR
    history in ms used for the rate correction.
    """
    config = config or ECGConfig()
    values = list(values)
    r_indices = sorted(r_indices)
    if len(r_indices) < config.min_analysis_beats:
        return InsufficientData("interval estimation needs more beats", config.min_analysis_beats, len(r_indices))

    st = analyze_st_segment(values, r_indices, config)
    qt = calculate_qt_interval(values, r_indices, rr_intervals, config)

    beats = []
    for i in r_indices:
        pr_ms = qrs_ms = None
        baseline = tp_baseline(values, i, config)
        q_onset = find_q_onset(values, i, config)
        if baseline is not None and q_onset is not None:
            j_point = find_j_point(values, i, baseline, config)
            if j_point is not None:
                qrs_ms = (j_point - q_onset) * config.ms_per_sample
            p_onset = find_p_onset(values, i, baseline, config)
            if p_onset is not None and p_onset < q_onset:
                pr_ms = (q_onset - p_onset) * config.ms_per_sample
        beats.append(
            BeatIntervals(
                index=i,
                pr_interval_ms=pr_ms,
                qrs_duration_ms=qrs_ms,
                qt_ms=qt["per_beat"].get(i),
                st_value=st["per_beat"].get(i),
            )
        )

    measurement = ClinicalMeasurement(
        beats_analyzed=len(r_indices),
        pr_interval_ms=_mean(b.pr_interval_ms for b in beats if b.pr_interval_ms is not None),
        qrs_duration_ms=_mean(b.qrs_duration_ms for b in beats if b.qrs_duration_ms is not None),
        qt_ms=qt["avg_qt"],
        qtc_ms=qt["qtc"],
        qtc_risk=qt["risk"],
        st_elevation_mv=st["elevation"],
        st_risk=st["risk"],
        beats=tuple(beats),
    )
    logger.info(
        "clinical analysis: %d beats, QT=%s QTc=%s ST=%s",
        measurement.beats_analyzed,
        measurement.qt_ms,
        measurement.qtc_ms,
        measurement.st_elevation_mv,
    )
    return measurement


# ================= FINDINGS =================

def rhythm_findings(hrv, clinical, config: ECGConfig) -> list[str]:
    findings = []
    if isinstance(hrv, HRVSnapshot):
        if hrv.avg_hr < config.brady_bpm:
            findings.append("Bradycardia")
        if hrv.avg_hr > config.tachy_bpm:
            findings.append("Tachycardia")
        if hrv.sdnn > config.irregular_sdnn_ms or hrv.arrhythmia_risk == HIGH:
            findings.append("Irregular Rhythm")
    if isinstance(clinical, ClinicalMeasurement):
        if clinical.qtc_risk in (MEDIUM, HIGH):
            findings.append("Long QT (possible)")
        if clinical.st_risk in (MEDIUM, HIGH):
            if clinical.st_elevation_mv > 0:
                findings.append("ST Elevation (possible)")
            else:
                findings.append("ST Depression (possible)")
        if clinical.pr_interval_ms is not None and clinical.pr_interval_ms > config.pr_max_ms:
            findings.append("First-Degree AV Block (possible)")
        if clinical.qrs_duration_ms is not None and clinical.qrs_duration_ms > config.qrs_max_ms:
            findings.append("Bundle Branch Block (possible)")
    return findings
