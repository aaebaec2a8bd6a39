import numpy as np
import pytest
import soundfile as sf

import PURR as pr

SR = pr.DEFAULT_CONFIG.sample_rate

def sine(amp, seconds, freq=220.0):
    t = np.arange(int(seconds * SR)) / SR
    return amp * np.sin(2 * np.pi * freq * t)

def rms(x):
    return float(np.sqrt(np.mean(np.square(x))))

def test_breathiness_mix():
    assert pr.breathiness_mix(50) == 1.0
    assert pr.breathiness_mix(0) == 2.0
    assert pr.breathiness_mix(100) == 0.0

def test_peak_normalization():
    x = sine(0.2, 0.1)
    out = pr.peak_normalization(x, 6)
    assert np.max(np.abs(out)) == pytest.approx(10 ** (-6 / 20))
    assert np.max(np.abs(pr.peak_normalization(x, 0))) == pytest.approx(1.0)
    np.testing.assert_array_equal(pr.peak_normalization(np.zeros(10), 6), np.zeros(10))

def test_compression_without_headroom_is_a_no_op():
    x = np.concatenate([sine(0.1, 0.5), sine(1.0, 0.5)])
    np.testing.assert_array_equal(pr.peak_compression(x, 1.0), x)

def test_compression_skips_short_renders():
    x = sine(1.0, 0.01)
    assert len(x) < pr.DEFAULT_CONFIG.fft_size
    np.testing.assert_array_equal(pr.peak_compression(x, 0.5), x)

def test_compression_pulls_loud_part_down():
    x = np.concatenate([sine(0.1, 0.5), sine(1.0, 0.5)])
    out = pr.peak_compression(x, 0.5)
    assert out.shape == x.shape
    assert np.all(np.isfinite(out))
    quiet = slice(int(0.2 * SR), int(0.3 * SR))
    loud = slice(int(0.7 * SR), int(0.8 * SR))
    assert rms(out[quiet]) / rms(x[quiet]) == pytest.approx(1.0, abs=0.05)
    assert rms(out[loud]) / rms(x[loud]) == pytest.approx(0.5, abs=0.05)

def test_quantizer_error_feedback():
    x = np.full(3, 0.6) / 32767
    np.testing.assert_array_equal(pr.quantize_int16(x), [0, 1, 0])

@pytest.mark.parametrize('value', [0.3, -0.3, 0.123456, 0.99999])
def test_quantizer_residual_stays_bounded(value):
    x = np.full(20000, value)
    q = pr.quantize_int16(x)
    residual = np.cumsum(x * 32767 - q)
    assert np.max(np.abs(residual)) < 1.0 + 1e-6

def test_quantizer_clips():
    q = pr.quantize_int16(np.array([2.0, -2.0, 1.0, -1.0]))
    assert q.dtype == np.int16
    assert q[0] == 32767
    assert q[1] == -32768

def test_write_audio(tmp_path):
    x = sine(0.5, 0.05)
    path = tmp_path / 'out.wav'
    pr.write_audio(path, x)
    data, sr = sf.read(str(path), dtype='int16')
    info = sf.info(str(path))
    assert sr == SR
    assert info.subtype == 'PCM_16'
    assert info.channels == 1
    np.testing.assert_array_equal(data, pr.quantize_int16(x))

def test_read_audio_resamples_and_downmixes(tmp_path):
    path = tmp_path / 'in.wav'
    stereo = np.stack([np.full(22050, 0.25), np.full(22050, 0.75)], axis=1)
    sf.write(str(path), stereo, 22050, subtype='FLOAT')
    y = pr.read_audio(path)
    assert y.ndim == 1
    assert len(y) == 44100
    assert y[1000:-1000] == pytest.approx(0.5, abs=0.02)
    assert y[0] == pytest.approx(0.5, abs=0.02)
    assert y[-1] == pytest.approx(0.5, abs=0.02)

def test_resample_same_rate_is_identity():
    x = sine(0.5, 0.01)
    np.testing.assert_allclose(pr.resample_audio(x, SR, SR), x, atol=1e-9)

def test_filter_design_errors():
    with pytest.raises(pr.FilterDesignError):
        pr.make_coefficients('lowpass', 200.0, 100.0)
    with pytest.raises(pr.FilterDesignError):
        pr.make_coefficients('lowpass', 200.0, 0.0)
    with pytest.raises(pr.FilterDesignError):
        pr.make_coefficients('lowpass', 200.0, 20.0, q=0.0)
    with pytest.raises(pr.FilterDesignError):
        pr.make_coefficients('bandpass', 200.0, 20.0)
    assert issubclass(pr.FilterDesignError, ValueError)

def test_filter_dc_gain():
    b0, b1, b2, a1, a2 = pr.make_coefficients('lowpass', 200.0, 20.0)
    assert (b0 + b1 + b2) / (1 + a1 + a2) == pytest.approx(1.0)
    b0, b1, b2, a1, a2 = pr.make_coefficients('highpass', 200.0, 20.0)
    assert (b0 + b1 + b2) / (1 + a1 + a2) == pytest.approx(0.0, abs=1e-12)

def test_forward_backward_filter_is_zero_phase():
    x = np.zeros(401)
    x[200] = 1.0
    y = pr.forward_backward_filter(x, pr.make_coefficients('lowpass', 200.0, 20.0))
    np.testing.assert_allclose(y, y[::-1], atol=1e-12)
    assert np.argmax(y) == 200

def test_shift_formants():
    sp = np.ones((4, 1025))
    ap = np.full((4, 1025), 0.3)
    same_sp, same_ap = pr.shift_formants(sp, ap, 0)
    assert same_sp is sp and same_ap is ap

    up_sp, up_ap = pr.shift_formants(sp, ap, 20)
    assert up_sp.shape == sp.shape
    np.testing.assert_allclose(up_sp[:, :800], 1.0)
    np.testing.assert_array_equal(up_sp[:, -1], 0.0)
    np.testing.assert_allclose(up_ap, 0.3)

    down_sp, _ = pr.shift_formants(sp, ap, -10)
    np.testing.assert_allclose(down_sp, 1.0)

def test_shift_formants_moves_peaks():
    sp = np.zeros((1, 1025))
    sp[0, 400] = 1.0
    shifted, _ = pr.shift_formants(sp, np.zeros_like(sp), -120)
    # half the factor, so the peak lands at twice the bin
    assert np.argmax(shifted[0]) == 800

def test_boundary_window():
    t = np.linspace(0, 1, 1001)
    w = pr.boundary_window(t, 0.5, 0.2, 0.0, 0.05)
    assert w[400] == pytest.approx(1.0)
    assert w[0] == 0.0
    assert w[-1] == 0.0
    assert w[200] == 0.0

def test_fry_pulls_voiced_frames_to_fry_pitch():
    t = np.arange(100) * 0.005
    f0 = np.full(100, 200.0)
    f0[:10] = 0.0
    sp = np.ones((100, 5))
    out_f0, out_sp = pr.apply_fry(f0, sp, t, 0.3, 0.1, 0.0, 0.02, 0.5, 71.0)
    center = 50 # 0.25 s
    assert out_f0[center] == pytest.approx(71.0)
    np.testing.assert_allclose(out_sp[center], 0.25)
    np.testing.assert_array_equal(out_f0[:10], 0.0)
    assert out_f0[95] == 200.0
    np.testing.assert_allclose(out_sp[95], 1.0)

def test_devoice_gain():
    g = pr.devoice_gain(SR, 0.5, 0.2, 0.1, 0.05)
    assert g[int(0.5 * SR)] == pytest.approx(0.0)
    assert g[int(0.1 * SR)] == pytest.approx(1.0)

def test_base_frq():
    assert pr.base_frq(np.full(50, 220.0)) == pytest.approx(220.0)
    assert pr.base_frq(np.zeros(20)) == 0.0
    f0 = np.concatenate([np.zeros(10), np.full(40, 300.0), np.zeros(10)])
    assert pr.base_frq(f0) == pytest.approx(300.0, rel=1e-6)

def test_tremolo_flat_pitch_is_unity():
    env = pr.tremolo_envelope(np.full(100, 60.0), 1.0, 5000)
    assert env.shape == (5000,)
    np.testing.assert_allclose(env, 1.0, atol=1e-9)

def test_tremolo_follows_vibrato():
    frames = np.arange(400)
    pitch = 60 + 0.5 * np.sin(2 * np.pi * 5.5 * frames * 0.005)
    env = pr.tremolo_envelope(pitch, 1.0, int(400 * 220.5))
    assert env.max() > 1.2
    assert env.min() < 0.8
    assert env.min() >= 0.0

def test_growl_off_leaves_signal_alone():
    y = sine(0.5, 0.2)
    f0 = np.full(40, 220.0)
    np.testing.assert_allclose(pr.apply_growl(y, f0, 0.0), y)
    np.testing.assert_allclose(pr.apply_growl(y, np.zeros(40), 1.0), y)

def test_growl_changes_voiced_signal():
    y = sine(0.5, 0.5)
    out = pr.apply_growl(y, np.full(100, 220.0), 1.0)
    assert out.shape == y.shape
    assert not np.allclose(out, y)

def test_growl_is_repeatable_and_keeps_global_random_state():
    y = sine(0.5, 0.3)
    f0 = np.full(60, 220.0)
    np.random.seed(0)
    expected = np.random.rand()
    np.random.seed(0)
    first = pr.apply_growl(y, f0, 1.0)
    assert np.random.rand() == expected
    np.random.rand(17)
    second = pr.apply_growl(y, f0, 1.0)
    np.testing.assert_array_equal(first, second)
