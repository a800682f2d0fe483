import math

import pytest

from ecg_core import ECGConfig, InsufficientData
from ecg_analysis import (
    HRVSnapshot,
    ClinicalMeasurement,
    HIGH,
    MEDIUM,
    LOW,
    NORMAL,
    compute_hrv,
    classify_arrhythmia_risk,
    bazett_qtc,
    classify_qtc,
    analyze_st_segment,
    calculate_qt_interval,
    analyze_recording,
    rhythm_findings,
    signal_quality,
)
from ecg_sources import SimulatedSource


def make_config(**overrides):
    return ECGConfig(sample_rate=250).with_overrides(**overrides)


def flat_recording(length=1000, r_indices=(200, 450)):
    values = [0.0] * length
    for i in r_indices:
        values[i] = 1.0
    return values


def test_hrv_needs_five_intervals():
    result = compute_hrv([800, 810, 790, 800], make_config())
    assert isinstance(result, InsufficientData)
    assert result.required == 5
    assert result.available == 4


def test_hrv_identical_intervals_have_zero_variability():
    hrv = compute_hrv([800] * 6, make_config())
    assert hrv.sdnn == 0
    assert hrv.rmssd == 0
    assert hrv.avg_hr == 75
    assert hrv.irregular_beat_count == 0
    assert hrv.arrhythmia_risk == LOW


def test_hrv_variable_intervals_are_positive():
    hrv = compute_hrv([800, 820, 790, 805, 815, 800], make_config())
    assert hrv.sdnn > 0
    assert hrv.rmssd > 0
    assert hrv.mean_rr == pytest.approx(805.0)


def test_hrv_formulas():
    rr = [1000, 900, 1100, 1000, 1000]
    hrv = compute_hrv(rr, make_config())
    assert hrv.mean_rr == 1000
    assert hrv.sdnn == pytest.approx(math.sqrt((100 ** 2 + 100 ** 2) / 5))
    assert hrv.rmssd == pytest.approx(math.sqrt((100 ** 2 + 200 ** 2 + 100 ** 2) / 4))
    assert hrv.avg_hr == 60


def test_single_jump_counts_twice_medium_risk():
    hrv = compute_hrv([800, 800, 800, 1000, 800, 800, 800, 800], make_config())
    assert hrv.mean_rr == pytest.approx(825.0)
    assert hrv.irregular_beat_count == 2
    assert hrv.arrhythmia_risk == MEDIUM


def test_alternating_intervals_high_risk():
    hrv = compute_hrv([800, 1000, 800, 1000, 800, 1000], make_config())
    assert hrv.irregular_beat_count == 5
    assert hrv.arrhythmia_risk == HIGH


@pytest.mark.parametrize("count,risk", [(0, LOW), (1, LOW), (2, MEDIUM), (3, MEDIUM), (4, HIGH)])
def test_arrhythmia_risk_cutoffs(count, risk):
    assert classify_arrhythmia_risk(count) == risk


def test_bazett_at_sixty_bpm():
    config = make_config()
    qtc = bazett_qtc(400, 1000)
    assert qtc == pytest.approx(400)
    assert classify_qtc(qtc, config) == NORMAL
    assert classify_qtc(450, config) == MEDIUM
    assert classify_qtc(510, config) == HIGH


def test_qt_interval_from_constructed_beats():
    config = make_config()
    values = flat_recording()
    for i in (200, 450):
        # T wave still away from baseline until i + 95
        for k in range(i + 80, i + 95):
            values[k] = 0.3
    qt = calculate_qt_interval(values, [200, 450], [1000], config)
    assert qt["avg_qt"] == pytest.approx(400)
    assert qt["qtc"] == pytest.approx(400)
    assert qt["risk"] == NORMAL


@pytest.mark.parametrize("st_level,risk", [(0.25, HIGH), (0.15, MEDIUM), (0.05, NORMAL), (-0.25, HIGH)])
def test_st_segment_classification(st_level, risk):
    config = make_config()
    values = flat_recording()
    for i in (200, 450):
        values[i + 20] = st_level
    st = analyze_st_segment(values, [200, 450], config)
    assert st["avg_baseline"] == pytest.approx(0.0)
    assert st["elevation"] == pytest.approx(st_level)
    assert st["risk"] == risk


def test_interval_estimation_needs_two_beats():
    result = analyze_recording(flat_recording(r_indices=(200,)), [200], [800], make_config())
    assert isinstance(result, InsufficientData)
    assert result.available == 1


def test_beats_near_the_end_are_skipped_without_nan():
    config = make_config()
    values = flat_recording(length=300, r_indices=(100, 290))
    result = analyze_recording(values, [100, 290], [760], config)
    assert result.beats_analyzed == 2
    assert result.qt_ms is not None
    assert not math.isnan(result.qt_ms)
    assert not math.isnan(result.st_elevation_mv)
    tail = result.beats[1]
    assert tail.qt_ms is None
    assert tail.st_value is None
    assert tail.pr_interval_ms is None


def test_qtc_unavailable_without_rr_intervals():
    qt = calculate_qt_interval(flat_recording(), [200, 450], [], make_config())
    assert qt["avg_qt"] is not None
    assert qt["qtc"] is None
    assert qt["risk"] is None


def test_simulated_beats_give_normal_intervals():
    config = make_config()
    source = SimulatedSource(heart_rate=60, noise=0.0, ectopic_rate=0.0, duration_sec=10, start_ms=0)
    source.start()
    values = [s.value for s in source]
    # R apex sits at 30% of each one-second beat
    r_indices = [75 + 250 * k for k in range(10)]
    result = analyze_recording(values, r_indices, [1000] * 9, config)

    assert isinstance(result, ClinicalMeasurement)
    assert result.st_risk == NORMAL
    assert result.qtc_risk == NORMAL
    assert 300 < result.qt_ms < 460
    assert 100 < result.pr_interval_ms < 220
    assert 30 < result.qrs_duration_ms < 120


def test_findings_from_rate_and_intervals():
    config = make_config()
    slow = HRVSnapshot(1200.0, 20.0, 15.0, 50, 0, LOW, 10)
    clinical = ClinicalMeasurement(
        beats_analyzed=10,
        pr_interval_ms=240.0,
        qrs_duration_ms=90.0,
        qt_ms=480.0,
        qtc_ms=470.0,
        qtc_risk=MEDIUM,
        st_elevation_mv=-0.15,
        st_risk=MEDIUM,
    )
    findings = rhythm_findings(slow, clinical, config)
    assert findings == [
        "Bradycardia",
        "Long QT (possible)",
        "ST Depression (possible)",
        "First-Degree AV Block (possible)",
    ]


def test_findings_skip_insufficient_results():
    missing = InsufficientData("not enough", 5, 1)
    assert rhythm_findings(missing, missing, make_config()) == []


def test_signal_quality_score():
    assert signal_quality([800] * 6) == 100
    assert signal_quality([600, 1200, 600, 1200]) == 85
