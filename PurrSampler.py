import sys, logging, re, traceback, multiprocessing
from dataclasses import dataclass
from pathlib import Path
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from concurrent.futures import ThreadPoolExecutor

import numpy as np

import PURR as pr

logging.basicConfig(format='%(message)s', level=logging.INFO)

# --- UTAU pitch & tempo parsing --------------------------------------------
notes = {'C':0,'C#':1,'D':2,'D#':3,'E':4,'F':5,'F#':6,'G':7,'G#':8,'A':9,'A#':10,'B':11}
note_re = re.compile(r'([A-G]#?)(-?\d+)')

def note_to_midi(n):
    try:
        return int(n) # frq generators pass plain midi numbers
    except ValueError:
        pass
    m = note_re.match(n)
    if not m: raise ValueError(f"Bad note '{n}'")
    nm, octv = m.groups()
    return (int(octv)+1)*12 + notes[nm]

def parse_tempo(t):
    return float(str(t).lstrip('!'))

# --- pitchbend codec -------------------------------------------------------

class PitchCurveDecodeError(ValueError):
    pass

def to_uint6(c):
    o = ord(c)
    if 97 <= o <= 122: return o - 71
    if 65 <= o <= 90: return o - 65
    if 48 <= o <= 57: return o + 4
    if o == 43: return 62
    if o == 47: return 63
    raise PitchCurveDecodeError(f"Bad b64 '{c}'")

def to_int12(p):
    v = (to_uint6(p[0]) << 6) | to_uint6(p[1])
    return v - 4096 if (v & 0x800) else v

def to_int12_stream(s):
    if len(s) % 2:
        raise PitchCurveDecodeError(f"Odd length pitch block '{s}'")
    return [to_int12(s[i:i+2]) for i in range(0, len(s), 2)]

repeat_re = re.compile(r'[0-9]+')

def decode_pitch_string(x):
    # blocks alternate with run lengths: DATA#RUN#DATA#RUN#...#DATA
    parts = x.split('#')
    out = []
    for i in range(0, len(parts), 2):
        chunk = parts[i:i+2]
        stream = to_int12_stream(chunk[0])
        out += stream
        if len(chunk) == 2:
            if not repeat_re.fullmatch(chunk[1]):
                raise PitchCurveDecodeError(f"Bad repeat count '{chunk[1]}'")
            run = int(chunk[1])
            if not stream:
                raise PitchCurveDecodeError(f"Repeat count '{chunk[1]}' has no pitch point to repeat")
            out += [stream[-1]] * (run - 1)
    return out

def pitch_string_to_bend(x):
    # semitone offsets; a constant stream means no bend at all
    arr = np.array(decode_pitch_string(x), dtype=np.float64)
    if arr.size == 0 or np.all(arr == arr[0]):
        return np.zeros(max(arr.size, 1))
    return arr / 100.0

# --- flags -----------------------------------------------------------------

TWO_CHAR_FLAGS = ('fe', 'fo', 'fl', 'fv', 'fp', 've', 'vo', 'vl', 'gw')
ONE_CHAR_FLAGS = ('g', 'B', 'P', 'p', 'A', 't', 'S', 'G')
DIGITS = '0123456789'

FLAG_FIELDS = {
    'G': 'generate_features',
    'fe': 'fry_enable', 'fo': 'fry_offset', 'fl': 'fry_transition',
    'fv': 'fry_volume', 'fp': 'fry_pitch',
    've': 'devoice_enable', 'vo': 'devoice_offset', 'vl': 'devoice_transition',
    'g': 'gender', 'B': 'breathiness',
    'P': 'peak_compression', 'p': 'peak_normalization',
    'A': 'tremolo', 't': 'pitch_offset', 'S': 'aperiodic_mix', 'gw': 'growl',
}

FLAG_LIMITS = {
    'G': (0, 100), 'fe': (0, None), 'fl': (1, None), 'fv': (0, 100), 'fp': (0, None),
    've': (0, None), 'vl': (1, None), 'B': (0, 100), 'P': (0, 100),
    'A': (-100, 100), 'S': (0, 100), 'gw': (0, None),
}

@dataclass(frozen=True)
class Flags:
    generate_features: float = None
    fry_enable: float = 0.0
    fry_offset: float = 0.0
    fry_transition: float = 75.0
    fry_volume: float = 10.0
    fry_pitch: float = pr.DEFAULT_CONFIG.f0_floor
    devoice_enable: float = 0.0
    devoice_offset: float = 0.0
    devoice_transition: float = 75.0
    gender: float = 0.0
    breathiness: float = 50.0
    peak_compression: float = 86.0
    peak_normalization: float = 6.0
    tremolo: float = 0.0
    pitch_offset: float = 0.0
    aperiodic_mix: float = 0.0
    growl: float = 0.0

@dataclass(frozen=True)
class FlagToken:
    kind: str # flag name or 'num'
    value: float = 0.0

def tokenize_flags(text):
    s = text.replace('/', '')
    tokens = []
    state, start, i = 'scan', 0, 0
    while True:
        c = s[i] if i < len(s) else ''
        if state == 'number':
            if c and c in DIGITS:
                i += 1
                continue
            literal = s[start:i]
            if any(ch in DIGITS for ch in literal): # a lone sign is dropped
                tokens.append(FlagToken('num', float(literal)))
            state = 'scan'
            continue
        if not c:
            break
        if s[i:i+2] in TWO_CHAR_FLAGS:
            tokens.append(FlagToken(s[i:i+2]))
            i += 2
        elif c in ONE_CHAR_FLAGS:
            tokens.append(FlagToken(c))
            i += 1
        elif c in DIGITS or c in '+-':
            state, start = 'number', i
            i += 1
        else:
            i += 1
    return tokens

def _clamp(v, limits):
    lo, hi = limits
    if lo is not None: v = max(v, lo)
    if hi is not None: v = min(v, hi)
    return float(v)

def parse_flags(flag_string, config=pr.DEFAULT_CONFIG):
    tokens = tokenize_flags(flag_string)
    values = {'fry_pitch': config.f0_floor}
    for i, tok in enumerate(tokens):
        if tok.kind == 'num':
            continue
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        if nxt is not None and nxt.kind == 'num':
            values[FLAG_FIELDS[tok.kind]] = _clamp(nxt.value, FLAG_LIMITS.get(tok.kind, (None, None)))
        elif tok.kind == 'G':
            values['generate_features'] = config.d4c_threshold * 100
    return Flags(**values)

# --- render timeline -------------------------------------------------------

@dataclass(frozen=True)
class RenderTimeline:
    frames: np.ndarray # fractional source frame per output frame
    consonant_frames: int
    consonant_render: float # seconds into the output where the consonant ends
    stretched: bool

def build_timeline(offset, consonant, length, cutoff, velocity, n_frames, config=pr.DEFAULT_CONFIG):
    frame_rate = config.frame_rate
    vel = 2.0 ** (1.0 - velocity / 100.0)
    feature_length = n_frames / frame_rate

    start = offset / 1000
    if cutoff < 0:
        end = start - cutoff / 1000
    else:
        end = feature_length - cutoff / 1000
    con = start + consonant / 1000
    end = max(end, con)

    # consonant always plays at the velocity rate, never looped
    n_con = max(int(vel * consonant / config.frame_period), 0)
    t_con = np.linspace(start, con, n_con, endpoint=False)

    stretch_length = end - con
    length_req = length / 1000
    n_sus = max(int(length / config.frame_period), 0)
    if stretch_length > length_req:
        con_frame = int(np.ceil(con * frame_rate - 1e-9)) # first whole frame of the sustain
        sus_frames = con_frame + np.arange(n_sus, dtype=np.float64)
        stretched = False
    else:
        sus_frames = np.linspace(con, end, n_sus) * frame_rate
        stretched = True

    frames = np.concatenate([t_con * frame_rate, sus_frames])
    return RenderTimeline(frames, n_con, vel * consonant / 1000, stretched)

# --- pitch -----------------------------------------------------------------

def f0_offsets(f0, base_f0):
    # semitones away from the sample's base pitch, 0 where unvoiced
    f0 = pr.to_compute(f0)
    if base_f0 <= 0:
        return np.zeros_like(f0)
    voiced = f0 > 0
    return np.where(voiced, 12 * np.log2(np.where(voiced, f0, base_f0) / base_f0), 0.0)

def interpolate_features(features, frames):
    f0 = pr.to_compute(features['f0'])
    f0_off = pr.Interpolator(f0_offsets(f0, features['base_f0']), 'akima').sample_many(frames)
    nearest = np.clip(np.round(frames).astype(np.int64), 0, len(f0) - 1)
    voiced = f0[nearest] > 0
    sp = pr.interp_stack(features['sp'], frames)
    ap = pr.interp_stack(features['ap'], frames)
    return f0_off, voiced, sp, ap

def render_pitch(f0_off, voiced, pitch, pitchbend, tempo, modulation, config=pr.DEFAULT_CONFIG):
    t = np.arange(len(f0_off)) * config.frame_period / 1000
    pps = 8 * tempo / 5 # pitchbend points per second
    bend = pr.Interpolator(pitchbend, 'akima').sample_many(t * pps)
    pitch_render = pitch + bend + modulation * f0_off
    return np.where(voiced, pr.midi_to_hz(pitch_render), 0.0), pitch_render

# --- resampler -------------------------------------------------------------

def is_audio_file(file):
    return file.suffix.lower() in ['.wav', '.flac', '.aiff', '.aif', '.mp3']

def process_file(audio_file, config=pr.DEFAULT_CONFIG):
    feat_file = pr.feature_path(audio_file, config)
    if feat_file.exists():
        logging.info(f"[SKIP] {feat_file.name} already exists")
        return
    try:
        logging.info(f"[EXTRACT] {audio_file}")
        y = pr.read_audio(audio_file, config)
        pr.save_features(feat_file, pr.extract_features(y, config))
    except Exception as e:
        logging.error(f"[ERROR] Failed to extract {audio_file.name}: {str(e)}")

def extract_features_recursive(input_path):
    input_path = Path(input_path)
    all_files = input_path.rglob('*') if input_path.is_dir() else [input_path]
    audio_files = [f for f in all_files if f.is_file() and is_audio_file(f)]

    num_threads = multiprocessing.cpu_count()

    with ThreadPoolExecutor(max_workers=num_threads) as executor:
        list(executor.map(process_file, audio_files))

    logging.info(f"[DONE] Extracted features from {len(audio_files)} files using {num_threads} threads.")

class PurrResampler:
    def __init__(
        self,
        in_file, out_file,
        pitch, velocity,
        flags='',
        offset=0, length=1000, consonant=0, cutoff=0,
        volume=100, modulation=0, tempo='!100', pitch_string='AA',
        config=pr.DEFAULT_CONFIG
    ):
        self.config     = config
        self.in_file    = Path(in_file)
        self.out_file   = Path(out_file)
        self.pitch      = note_to_midi(pitch)
        self.velocity   = float(velocity)
        self.flags      = parse_flags(flags, config)
        self.offset     = float(offset)     # ms
        self.length     = float(length)     # ms
        self.consonant  = float(consonant)  # ms
        self.cutoff     = float(cutoff)     # ms
        self.volume     = float(volume) / 100.0
        self.modulation = float(modulation) / 100.0
        self.tempo      = parse_tempo(tempo)
        self.pitchbend  = pitch_string_to_bend(pitch_string)

        self.render()

    def render(self):
        features = self.get_features()
        out = self.resample(features)
        logging.info(f'Writing {self.out_file}')
        pr.write_audio(self.out_file, out, self.config)

    def get_features(self):
        feat = pr.feature_path(self.in_file, self.config)
        regen = self.flags.generate_features is not None
        coded = None
        if feat.exists() and not regen:
            logging.info('Loading cached features')
            coded = pr.load_features(feat)
            if coded['frame_period'] != self.config.frame_period:
                logging.info('Cached features use another frame period, re-extracting')
                coded = None
        if coded is None:
            logging.info('Extracting features')
            y = pr.read_audio(self.in_file, self.config)
            threshold = self.flags.generate_features / 100 if regen else None
            coded = pr.extract_features(y, self.config, d4c_threshold=threshold)
            pr.save_features(feat, coded)
        return pr.decode_features(coded, self.config)

    def resample(self, features):
        cfg = self.config
        flags = self.flags

        timeline = build_timeline(self.offset, self.consonant, self.length, self.cutoff,
                                  self.velocity, len(features['f0']), cfg)
        if timeline.frames.size == 0:
            logging.info('Nothing to render')
            return np.zeros(0)

        logging.info('Interpolating features')
        f0_off, voiced, sp, ap = interpolate_features(features, timeline.frames)

        pitch = self.pitch + flags.pitch_offset / 100.0
        f0, pitch_render = render_pitch(f0_off, voiced, pitch, self.pitchbend,
                                        self.tempo, self.modulation, cfg)

        if flags.gender != 0:
            sp, ap = pr.shift_formants(sp, ap, flags.gender)

        if flags.fry_enable > 0:
            t = np.arange(len(f0)) * cfg.frame_period / 1000
            f0, sp = pr.apply_fry(f0, sp, t, timeline.consonant_render,
                                  flags.fry_enable / 1000, flags.fry_offset / 1000,
                                  flags.fry_transition / 1000, flags.fry_volume / 100,
                                  flags.fry_pitch)

        logging.info('Synthesizing')
        harmonic = pr.synthesize_harmonic(f0, sp, ap, cfg)
        aperiodic = pr.synthesize_aperiodic(f0, sp, ap, cfg)

        if flags.devoice_enable > 0:
            harmonic = harmonic * pr.devoice_gain(len(harmonic), timeline.consonant_render,
                                                  flags.devoice_enable / 1000,
                                                  flags.devoice_offset / 1000,
                                                  flags.devoice_transition / 1000, cfg)

        render = harmonic * pr.breathiness_mix(flags.breathiness) + aperiodic

        if flags.aperiodic_mix > 0:
            whisper = pr.synthesize_whisper(f0, sp, ap, cfg)
            render = pr.lerp(render, whisper, flags.aperiodic_mix / 100)

        if flags.tremolo != 0:
            render = render * pr.tremolo_envelope(pitch_render, flags.tremolo / 100, len(render), cfg)

        if flags.growl > 0:
            render = pr.apply_growl(render, f0, flags.growl / 100, cfg)

        render = pr.peak_compression(render, flags.peak_compression / 100, cfg)
        render = pr.peak_normalization(render, flags.peak_normalization)
        return render * self.volume

def split_arguments(input_string):
    otherargs = input_string.split(' ')[-11:]
    file_path_strings = ' '.join(input_string.split(' ')[:-11])
    parts = re.findall(r'([^\s]+\.wav)', file_path_strings)
    if len(parts) < 2:
        raise ValueError('Missing .wav file paths in POST string')
    first_file, second_file = parts[:2]
    return [first_file, second_file] + otherargs

class ThreadedHTTPServer(ThreadingMixIn, HTTPServer): pass

class RequestHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        self.send_response(200)
        self.end_headers()

    def do_POST(self):
        content_length = int(self.headers['Content-Length'])
        post_data_string = self.rfile.read(content_length).decode('utf-8')
        try:
            args = split_arguments(post_data_string)
            PurrResampler(*args)
        except Exception:
            trcbk = traceback.format_exc()
            logging.error(trcbk)
            self.send_response(500)
            self.send_header('Content-type', 'text/plain')
            self.end_headers()
            self.wfile.write(f'An error occurred.\n{trcbk}'.encode('utf-8'))
            return
        self.send_response(200)
        self.end_headers()

def run(server_class=ThreadedHTTPServer, handler_class=RequestHandler, port=8572):
    server_address = ('', port)
    httpd = server_class(server_address, handler_class)
    logging.info(f'Starting HTTP server on port {port}...')
    httpd.serve_forever()

version = 'v1.0'
help_string = (
    'Usage:\n'
    '  PurrSampler.py in.wav out.wav pitch velocity flags\n'
    '           offset(ms) length(ms) consonant(ms) cutoff(ms)\n'
    '           volume(%) modulation(%) !tempo pitch_string\n\n'
    'Example:\n'
    '  PurrSampler.py in.wav out.wav C4 100 g0B50 0 1000 0 700 100 0 !120 AA'
)

def main(args):
    logging.info(f'Args: {args} (count={len(args)})')
    if len(args) == 1:
        # folder mode, only builds the feature caches
        input_path = Path(args[0])
        if not input_path.exists():
            logging.error(f'Folder or file not found: {input_path}')
            return 1
        logging.info(f'Scanning folder: {input_path}')
        extract_features_recursive(input_path)
        logging.info('Done extracting features.')
        return 0
    if len(args) != 13:
        logging.error(f'Argument parsing failed: expected 13 arguments but got {len(args)}')
        logging.error(help_string)
        return 1
    try:
        PurrResampler(*args)
    except Exception:
        logging.exception('Failed to render')
        return 1
    return 0

if __name__ == '__main__':
    logging.info(f'PurrSampler {version}')
    if len(sys.argv) == 1:
        run()
    else:
        sys.exit(main(sys.argv[1:]))
