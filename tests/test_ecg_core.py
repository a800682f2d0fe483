import pytest

from ecg_core import (
    ECGConfig,
    ConfigurationError,
    BandpassFilter,
    AdaptiveThreshold,
    BeatDetector,
    RhythmTracker,
)


def make_config(**overrides):
    return ECGConfig(sample_rate=250).with_overrides(**overrides)


def test_bandpass_impulse_response():
    f = BandpassFilter()
    out = [f.filter(1.0), f.filter(0.0), f.filter(0.0)]
    assert out[0] == pytest.approx(0.0675)
    assert out[1] == pytest.approx(0.0771525)
    assert out[2] == pytest.approx(-0.0675 + 1.143 * 0.0771525 - 0.4128 * 0.0675)


def test_bandpass_blocks_dc():
    f = BandpassFilter()
    for _ in range(2000):
        y = f.filter(1.0)
    assert y == pytest.approx(0.0, abs=1e-9)


def test_bandpass_reset_clears_state():
    f = BandpassFilter()
    first = f.filter(3.0)
    f.filter(-1.0)
    f.reset()
    assert f.filter(3.0) == first


def test_adaptive_threshold_floor_and_decay():
    t = AdaptiveThreshold(decay=0.995, ratio=0.6, floor=0.3)
    assert t.update(0.1) == 0.3
    assert t.update(2.0) == pytest.approx(1.2)
    assert t.update(0.0) == pytest.approx(2.0 * 0.995 * 0.6)


def test_detector_ignores_flat_signal():
    detector = BeatDetector(make_config())
    fired = [detector.detect(0.0, i * 4) for i in range(1000)]
    assert not any(fired)


def test_detector_refractory_period():
    detector = BeatDetector(make_config())
    fired = []
    for i in range(1000):
        value = 10.0 if i % 2 else -10.0
        if detector.detect(value, i * 4):
            fired.append(i * 4)
    assert len(fired) > 1
    gaps = [b - a for a, b in zip(fired, fired[1:])]
    assert min(gaps) > 250


def test_detector_gain_scales_slope():
    plain = BeatDetector(make_config())
    boosted = BeatDetector(make_config(detector_gain=10.0))
    plain.detect(0.1, 0)
    boosted.detect(0.1, 0)
    assert boosted.integrated == pytest.approx(plain.integrated * 100)


def test_integration_window_is_bounded():
    detector = BeatDetector(make_config())
    for i in range(100):
        detector.detect(float(i % 7), i * 4)
    assert len(detector.window) == 15


def test_rr_history_keeps_most_recent_twenty():
    tracker = RhythmTracker(make_config())
    for i in range(30):
        tracker.record_peak(i * 800)
    assert len(tracker.peak_times) == 20
    assert len(tracker.rr_intervals) == 20
    assert tracker.peak_times[0] == 10 * 800
    assert set(tracker.rr_intervals) == {800}
    assert tracker.current_bpm == 75


def test_out_of_range_interval_is_discarded():
    tracker = RhythmTracker(make_config())
    assert tracker.record_peak(0) is None
    assert tracker.record_peak(800) == 75
    # 3 s gap -> 20 BPM, treated as an artifact
    assert tracker.record_peak(3800) is None
    assert tracker.record_peak(4600) == 75
    # 260 ms -> 231 BPM, also out of range
    assert tracker.record_peak(4860) is None

    assert list(tracker.rr_intervals) == [800, 800]
    assert list(tracker.peak_times) == [0, 800, 3800, 4600, 4860]
    assert tracker.current_bpm == 75
    assert tracker.discarded == 2


def test_config_sample_offsets():
    config = make_config()
    assert config.samples_for(config.st_point_ms) == 20
    assert config.samples_for(config.tp_start_ms) == 80
    assert config.samples_for(config.tp_end_ms) == 150
    assert config.samples_for(config.q_search_ms) == 5
    assert config.ms_per_sample == 4.0


@pytest.mark.parametrize(
    "overrides",
    [
        {"sample_rate": 0},
        {"refractory_ms": -1},
        {"integration_window": 0},
        {"threshold_ratio": 1.5},
        {"peak_decay": 0},
        {"min_bpm": 220, "max_bpm": 30},
        {"qtc_medium_ms": 520},
        {"sample_rate": "fast"},
    ],
)
def test_invalid_configuration_is_rejected(overrides):
    with pytest.raises(ConfigurationError):
        make_config(**overrides)


def test_unknown_configuration_key_is_rejected():
    with pytest.raises(ConfigurationError, match="unknown"):
        make_config(sample_hz=250)
