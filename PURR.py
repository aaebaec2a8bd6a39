import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from numba import njit
import soundfile as sf
import pyworld as pw

DCOMPUTE = np.float64 # for math
DSTORAGE = np.float32 # for cached features

class FilterDesignError(ValueError):
    pass

@dataclass(frozen=True)
class WorldConfig:
    sample_rate: int = 44100
    frame_period: float = 5.0 # ms
    fft_size: int = 2048
    f0_floor: float = 71.0
    f0_ceil: float = 1760.0
    spec_q1: float = -0.15
    d4c_threshold: float = 0.1
    mgc_dims: int = 64
    sp_floor: float = 1e-16
    feature_ext: str = '.sc'

    @property
    def frame_rate(self):
        return 1000.0 / self.frame_period

    @property
    def hop_size(self):
        # samples per frame, not always an integer (220.5 at 44.1k/5ms)
        return self.sample_rate * self.frame_period / 1000.0

DEFAULT_CONFIG = WorldConfig()

def to_compute(x): return np.asarray(x, dtype=DCOMPUTE)

def midi_to_hz(m):
    return 440.0 * 2**((m - 69) / 12)

def smoothstep(s, e, x):
    x = np.clip((to_compute(x) - s) / (e - s), 0.0, 1.0)
    return x * x * (3.0 - 2.0 * x)

def lerp(a, b, t):
    return a * (1.0 - t) + b * t

# --- interpolators ---------------------------------------------------------
# All kinds sample along axis 0, so a (frames, bins) stack gets resampled per
# bin in one go. Cubic kinds clamp x to [0, len-1] and hit the end samples
# exactly. Lanczos does not clamp; samples outside the curve count as zero.

INTERP_KINDS = ('akima', 'catmull_rom', 'lanczos')

def _akima_coeffs(y):
    n = y.shape[0] - 1
    pad = np.zeros((2,) + y.shape[1:], dtype=DCOMPUTE)
    m = np.concatenate([pad, np.diff(y, axis=0), pad], axis=0) # m[k + 2] = y[k + 1] - y[k]

    w1 = np.abs(m[3:] - m[2:-1])
    w2 = np.abs(m[1:-2] - m[:-3])
    tally = w1 + w2
    flat = tally == 0.0
    s = np.where(flat,
                 (m[1:-2] + m[2:-1]) / 2.0,
                 (w1 * m[1:-2] + w2 * m[2:-1]) / np.where(flat, 1.0, tally))

    mk = m[2:n + 2]
    return np.stack([
        y[:n],
        s[:n],
        3.0 * mk - 2.0 * s[:n] - s[1:],
        s[:n] + s[1:] - 2.0 * mk,
    ], axis=0)

def _catmull_rom_coeffs(y):
    p = np.concatenate([y[:1], y, y[-1:]], axis=0) # ends doubled as virtual neighbours
    p0, p1, p2, p3 = p[:-3], p[1:-2], p[2:-1], p[3:]
    return np.stack([
        p1,
        -0.5 * p0 + 0.5 * p2,
        p0 - 2.5 * p1 + 2.0 * p2 - 0.5 * p3,
        -0.5 * p0 + 1.5 * p1 - 1.5 * p2 + 0.5 * p3,
    ], axis=0)

def lanczos_window(x, a=3):
    x = to_compute(x)
    px = np.pi * x
    with np.errstate(divide='ignore', invalid='ignore'):
        w = a * np.sin(px) * np.sin(px / a) / (px * px)
    w = np.where(x == 0.0, 1.0, w)
    return np.where(np.abs(x) > a, 0.0, w)

class Interpolator:
    """Resampler over a curve (or a stack of curves along axis 0).

    kind is one of 'akima', 'catmull_rom' or 'lanczos'. Cubic coefficients are
    stored ascending, y = c0 + c1*r + c2*r^2 + c3*r^3 with r the offset inside
    the segment.
    """

    def __init__(self, curve, kind='akima', a=3):
        if kind not in INTERP_KINDS:
            raise ValueError(f"Unknown interpolator '{kind}'")
        self.kind = kind
        self.curve = to_compute(curve)
        if self.curve.ndim == 0 or self.curve.shape[0] == 0:
            raise ValueError('Cannot interpolate an empty curve')
        self.a = int(a)
        self.coeffs = None
        if kind == 'akima':
            self.coeffs = _akima_coeffs(self.curve)
        elif kind == 'catmull_rom':
            self.coeffs = _catmull_rom_coeffs(self.curve)

    def sample(self, x):
        y = self.sample_many([x])[0]
        return float(y) if np.ndim(y) == 0 else y

    def sample_many(self, xs):
        xs = np.atleast_1d(to_compute(xs))
        if self.kind == 'lanczos':
            return self._sample_lanczos(xs)
        return self._sample_cubic(xs)

    def _sample_cubic(self, xs):
        last = self.curve.shape[0] - 1
        if last == 0:
            return np.repeat(self.curve[:1], xs.shape[0], axis=0)

        x = np.clip(xs, 0.0, last)
        idx = np.minimum(np.floor(x).astype(np.int64), last - 1)
        bshape = (-1,) + (1,) * (self.curve.ndim - 1)
        r = (x - idx).reshape(bshape)

        c0, c1, c2, c3 = (c[idx] for c in self.coeffs)
        y = c0 + c1 * r + c2 * r * r + c3 * r * r * r
        y = np.where((x == last).reshape(bshape), self.curve[last], y)
        return np.where((x == 0.0).reshape(bshape), self.curve[0], y)

    def _sample_lanczos(self, xs):
        n = self.curve.shape[0]
        k = np.floor(xs).astype(np.int64)[:, None] + np.arange(-self.a, self.a + 1)
        inside = (k >= 0) & (k < n)
        w = lanczos_window(xs[:, None] - k, self.a) * inside
        vals = self.curve[np.clip(k, 0, n - 1)]
        return np.einsum('mk,mk...->m...', w, vals)

def interp_stack(stack, xs, kind='akima', axis=0):
    # axis=0 resamples frames per bin, axis=1 resamples bins per frame
    stack = np.moveaxis(to_compute(stack), axis, 0)
    out = Interpolator(stack, kind).sample_many(xs)
    return np.moveaxis(out, 0, axis)

# --- filters ---------------------------------------------------------------

BUTTERWORTH_Q = 1.0 / np.sqrt(2.0)

def make_coefficients(btype, fs, f0, q=BUTTERWORTH_Q):
    # RBJ cookbook biquad, returned as normalized (b0, b1, b2, a1, a2)
    if fs <= 0 or f0 <= 0 or 2.0 * f0 >= fs or q <= 0:
        raise FilterDesignError(f"Can't make filter coefficients (fs={fs}, f0={f0}, q={q}).")
    omega = 2.0 * np.pi * f0 / fs
    cos_w = np.cos(omega)
    alpha = np.sin(omega) / (2.0 * q)

    if btype == 'lowpass':
        b0 = (1.0 - cos_w) / 2.0
        b1 = 1.0 - cos_w
    elif btype == 'highpass':
        b0 = (1.0 + cos_w) / 2.0
        b1 = -(1.0 + cos_w)
    else:
        raise FilterDesignError(f"Unknown filter type '{btype}'")

    coeffs = np.array([b0, b1, b0, -2.0 * cos_w, 1.0 - alpha], dtype=DCOMPUTE) / (1.0 + alpha)
    if not np.all(np.isfinite(coeffs)):
        raise FilterDesignError(f"Can't make filter coefficients (fs={fs}, f0={f0}, q={q}).")
    return coeffs

@njit
def _run_biquad(x, coeffs):
    # direct form II transposed, starts from a cleared state every call
    b0 = coeffs[0]; b1 = coeffs[1]; b2 = coeffs[2]; a1 = coeffs[3]; a2 = coeffs[4]
    y = np.empty(x.shape[0])
    s1 = 0.0
    s2 = 0.0
    for i in range(x.shape[0]):
        xn = x[i]
        yn = b0 * xn + s1
        s1 = b1 * xn - a1 * yn + s2
        s2 = b2 * xn - a2 * yn
        y[i] = yn
    return y

def forward_backward_filter(signal, coeffs, repeats=1):
    y = np.ascontiguousarray(to_compute(signal))
    for _ in range(repeats):
        y = _run_biquad(y, coeffs) # forward pass
        y = np.ascontiguousarray(_run_biquad(np.ascontiguousarray(y[::-1]), coeffs)[::-1]) # backward pass
    return y

@njit
def one_pole_highpass(x, sr, fc):
    if fc <= 0:
        return np.zeros(x.shape[0])
    rc = 1.0 / (2.0 * np.pi * fc)
    a = rc / (rc + 1.0 / sr)
    y = np.zeros(x.shape[0])
    prev_x = 0.0
    prev_y = 0.0
    for i in range(x.shape[0]):
        xn = x[i]
        yn = a * (prev_y + xn - prev_x)
        y[i] = yn
        prev_x = xn
        prev_y = yn
    return y

def gaussian_filter1d(x, sigma, truncate=4.0):
    x = to_compute(x)
    radius = int(truncate * sigma + 0.5)
    if x.size == 0 or sigma <= 0.0 or radius <= 0:
        return x.copy()
    t = np.arange(-radius, radius + 1)
    kernel = np.exp(-0.5 * (t / sigma) ** 2)
    kernel /= kernel.sum()
    return np.convolve(np.pad(x, radius, mode='edge'), kernel, mode='valid')

# --- audio i/o -------------------------------------------------------------

def resample_audio(audio, in_fs, out_fs, a=3):
    # lanczos with edge-clamped taps, unlike Interpolator's zero padding
    audio = to_compute(audio)
    n_in = len(audio)
    n_out = int(n_in * out_fs / in_fs)
    if n_in == 0 or n_out == 0:
        return np.zeros(0)
    findex = np.arange(n_out) * in_fs / out_fs
    k = np.floor(findex).astype(np.int64)[:, None] + np.arange(-a, a + 1)
    # taps past the ends read the edge sample but keep their real distance
    return np.sum(audio[np.clip(k, 0, n_in - 1)] * lanczos_window(findex[:, None] - k, a), axis=1)

def read_audio(path, config=DEFAULT_CONFIG):
    y, sr = sf.read(str(path), dtype='float64')
    if y.ndim > 1:
        y = y.mean(axis=1)
    if sr != config.sample_rate:
        y = resample_audio(y, sr, config.sample_rate)
    return y

@njit
def quantize_int16(signal):
    # error feedback: each sample's truncation residual is pushed onto the next
    n = signal.shape[0]
    scaled = np.empty(n)
    for i in range(n):
        scaled[i] = min(max(signal[i] * 32767.0, -32768.0), 32767.0)
    out = np.empty(n, dtype=np.int16)
    for s in range(n):
        q = int(min(max(scaled[s], -32768.0), 32767.0))
        out[s] = q
        if s + 1 < n:
            scaled[s + 1] += scaled[s] - q
    return out

def write_audio(path, signal, config=DEFAULT_CONFIG):
    pcm = quantize_int16(np.ascontiguousarray(to_compute(signal)))
    sf.write(str(path), pcm, config.sample_rate, subtype='PCM_16')

# --- WORLD features --------------------------------------------------------

def feature_path(in_file, config=DEFAULT_CONFIG):
    in_file = Path(in_file)
    return in_file.with_name(in_file.name + config.feature_ext)

def extract_features(y, config=DEFAULT_CONFIG, d4c_threshold=None):
    x = np.ascontiguousarray(to_compute(y))
    fs = config.sample_rate
    threshold = config.d4c_threshold if d4c_threshold is None else d4c_threshold

    f0, t = pw.harvest(x, fs, f0_floor=config.f0_floor, f0_ceil=config.f0_ceil,
                       frame_period=config.frame_period)
    sp = pw.cheaptrick(x, f0, t, fs, q1=config.spec_q1, f0_floor=config.f0_floor,
                       fft_size=config.fft_size)
    ap = pw.d4c(x, f0, t, fs, threshold=threshold, fft_size=config.fft_size)

    return {
        'f0': f0,
        'mgc': pw.code_spectral_envelope(sp, fs, config.mgc_dims),
        'bap': pw.code_aperiodicity(ap, fs),
        'fft_size': config.fft_size,
        'frame_period': config.frame_period,
    }

def save_features(path, coded):
    with open(path, 'wb') as f:
        np.savez_compressed(
            f,
            f0=to_compute(coded['f0']),
            mgc=np.asarray(coded['mgc'], dtype=DSTORAGE),
            bap=np.asarray(coded['bap'], dtype=DSTORAGE),
            fft_size=np.array([coded['fft_size']], dtype=np.int32),
            frame_period=np.array([coded['frame_period']], dtype=DCOMPUTE),
        )

def load_features(path):
    with np.load(path) as data:
        return {
            'f0': to_compute(data['f0']),
            'mgc': to_compute(data['mgc']),
            'bap': to_compute(data['bap']),
            'fft_size': int(data['fft_size'][0]),
            'frame_period': float(data['frame_period'][0]),
        }

def base_frq(f0, f0_floor=DEFAULT_CONFIG.f0_floor, f0_ceil=DEFAULT_CONFIG.f0_ceil):
    # weighted average of voiced f0, flat regions count the most
    f0 = to_compute(f0)
    if f0.size == 0:
        return 0.0
    q = np.gradient(f0) if f0.size > 1 else np.zeros(1)
    weight = 2.0 ** (-q * q)
    in_range = (f0 >= f0_floor) & (f0 <= f0_ceil)
    tally = np.sum(weight[in_range])
    if tally <= 0:
        return 0.0
    return float(np.sum(f0[in_range] * weight[in_range]) / tally)

def decode_features(coded, config=DEFAULT_CONFIG):
    fs = config.sample_rate
    fft_size = int(coded['fft_size'])
    f0 = to_compute(coded['f0'])
    sp = pw.decode_spectral_envelope(np.ascontiguousarray(to_compute(coded['mgc'])), fs, fft_size)
    ap = pw.decode_aperiodicity(np.ascontiguousarray(to_compute(coded['bap'])), fs, fft_size)
    return {
        'base_f0': base_frq(f0, config.f0_floor, config.f0_ceil),
        'f0': f0,
        'sp': sp,
        'ap': np.nan_to_num(ap), # d4c sometimes leaves nans in silence
    }

# --- synthesis -------------------------------------------------------------

def synthesize(f0, sp, ap, config=DEFAULT_CONFIG):
    # WORLD is undefined outside these bounds
    sp = np.maximum(to_compute(sp), config.sp_floor)
    ap = np.clip(to_compute(ap), 0.0, 1.0)
    return pw.synthesize(np.ascontiguousarray(to_compute(f0)),
                         np.ascontiguousarray(sp),
                         np.ascontiguousarray(ap),
                         config.sample_rate,
                         frame_period=config.frame_period)

def synthesize_harmonic(f0, sp, ap, config=DEFAULT_CONFIG):
    ap = to_compute(ap)
    return synthesize(f0, to_compute(sp) * (1.0 - ap * ap), np.zeros_like(ap), config)

def synthesize_aperiodic(f0, sp, ap, config=DEFAULT_CONFIG):
    ap = to_compute(ap)
    return synthesize(f0, to_compute(sp) * ap * ap, np.ones_like(ap), config)

def synthesize_whisper(f0, sp, ap, config=DEFAULT_CONFIG):
    return synthesize(f0, sp, np.ones_like(to_compute(ap)), config)

# --- feature effects -------------------------------------------------------

def shift_formants(sp, ap, gender):
    if gender == 0:
        return sp, ap
    n_bins = sp.shape[1]
    x = np.arange(n_bins) * 2 ** (gender / 120)
    # fade out whatever got pulled in from past the top two bins
    mask = smoothstep(n_bins - 1, n_bins - 3, x)
    sp_shift = interp_stack(sp, x, 'akima', axis=1) * mask[None, :]
    ap_shift = interp_stack(ap, x, 'akima', axis=1)
    return sp_shift, ap_shift

def boundary_window(t, boundary, length, offset, transition):
    # all in seconds; region of `length` ending at boundary + offset
    end = boundary + offset
    start = end - length
    half = transition / 2.0
    return smoothstep(start - half, start + half, t) * smoothstep(end + half, end - half, t)

def apply_fry(f0, sp, t, boundary, length, offset, transition, volume, pitch):
    f0 = to_compute(f0)
    amt = np.where(f0 > 0, boundary_window(t, boundary, length, offset, transition), 0.0)
    f0 = lerp(f0, pitch, amt)
    sp = to_compute(sp) * lerp(1.0, volume * volume, amt)[:, None]
    return f0, sp

def devoice_gain(n_samples, boundary, length, offset, transition, config=DEFAULT_CONFIG):
    t = np.arange(n_samples) / config.sample_rate
    return 1.0 - boundary_window(t, boundary, length, offset, transition)

def breathiness_mix(breathiness):
    return 1.0 - 2.0 * (breathiness / 100.0 - 0.5)

def tremolo_envelope(pitch, amount, n_samples, config=DEFAULT_CONFIG, cutoff=2.0):
    pitch = to_compute(pitch)
    centered = pitch - pitch.mean()
    pad = int(config.frame_rate) # a second of edge padding soaks up the filter start-up
    lp = make_coefficients('lowpass', config.frame_rate, cutoff)
    smooth = forward_backward_filter(np.pad(centered, pad, mode='edge'), lp)[pad:pad + len(pitch)]
    gain = np.maximum(1.0 + amount * (centered - smooth), 0.0)
    env = Interpolator(gain, 'akima').sample_many(np.arange(n_samples) / config.hop_size)
    return np.maximum(env, 0.0)

def make_smooth_noise(length, sr, smooth_ms=120.0, seed=None):
    n = np.random.default_rng(seed).standard_normal(length)
    sigma = max(1.0, (smooth_ms * 0.001 * sr) / 6.0)
    return gaussian_filter1d(n, sigma=sigma)

def apply_growl(y, f0, strength, config=DEFAULT_CONFIG,
                k_list=(2, 3, 4), h_list=(0.45, 0.28, 0.18),
                hp_fc=300.0, noise_amp=0.6, noise_smooth_ms=120.0, slew_ms=120.0):
    y = to_compute(y)
    f0 = to_compute(f0)
    N = len(y)
    sr = config.sample_rate

    frames = np.arange(N) / config.hop_size
    f0_samp = np.maximum(Interpolator(f0, 'akima').sample_many(frames), 0.0)
    nearest = np.clip(np.round(frames).astype(np.int64), 0, len(f0) - 1)
    vmask = (f0[nearest] > 0).astype(DCOMPUTE)

    mod_sum = np.zeros(N)
    for idx, (k, hk) in enumerate(zip(k_list, h_list)):
        nz = make_smooth_noise(N, sr, noise_smooth_ms, seed=(1337 + idx))
        f_mod = np.maximum((f0_samp / float(k)) * (1.0 + noise_amp * nz), 0.0) * vmask
        phase = 2.0 * np.pi * np.cumsum(f_mod) / float(sr)
        mod_sum += hk * np.cos(phase)

    y_sub = one_pole_highpass(np.ascontiguousarray(y * mod_sum), sr, hp_fc)

    sigma = max(1.0, (slew_ms * 0.001 * sr) / 6.0)
    alpha = gaussian_filter1d(strength * vmask, sigma=sigma)
    return y + alpha * y_sub

# --- waveform post processing ---------------------------------------------

@njit
def _stable_rms(frame):
    acc = 0.0
    for i in range(frame.shape[0]):
        acc += (frame[i] * frame[i] - acc) / (i + 1) # running mean of squares
    return np.sqrt(acc)

@njit
def _framed_rms(signal, hop_size, frame_size, hops):
    out = np.empty(hops)
    for h in range(hops):
        i = int(h * hop_size)
        out[h] = _stable_rms(signal[i:i + frame_size])
    return out

def peak_compression(signal, peak, config=DEFAULT_CONFIG):
    signal = to_compute(signal)
    if len(signal) < config.fft_size:
        logging.info('Render too short. Not compressing.')
        return signal
    if peak >= 1.0 or peak <= 0.0:
        return signal

    hop_size = config.hop_size
    env_fs = config.frame_rate # the envelope runs at the frame rate
    hops = int(1 + (len(signal) - config.fft_size) / hop_size)
    comp = _framed_rms(np.ascontiguousarray(signal), hop_size, config.fft_size, hops)
    comp_max = comp.max()
    if comp_max <= 0:
        return signal

    env_max = 1.0 / peak - 1.0
    comp = comp / (peak * comp_max)
    comp = np.where(comp >= 1.0, 1.0 - (1.0 - peak) * (comp - 1.0) / env_max, 1.0)

    blur = make_coefficients('lowpass', env_fs, env_fs / 10.0)
    comp = forward_backward_filter(comp, blur)

    gain = Interpolator(comp, 'akima').sample_many(np.arange(len(signal)) / hop_size)
    return signal * gain

def peak_normalization(signal, db_norm):
    signal = to_compute(signal)
    peak = np.max(np.abs(signal)) if signal.size else 0.0
    if peak <= 0:
        return signal
    return 10 ** (-db_norm / 20.0) * signal / peak
