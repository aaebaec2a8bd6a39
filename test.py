import os
import time
import soundfile as sf
import numpy as np
import PURR as pr
import PurrSampler as ps

_ = pr.quantize_int16(np.zeros(16)) #warmup for benchmark

input_file = 'test.wav'

pitch = 'A4'

flags = 'g0B50P86'

length = 1000 # ms

consonant = 100 # ms

input_name = os.path.splitext(input_file)[0]

start_time = time.time()
t0 = time.time()
y = pr.read_audio(input_file)
coded = pr.extract_features(y)
pr.save_features(pr.feature_path(input_file), coded)
t1 = time.time()
print(f"Feature extraction took: {t1 - t0:.3f} seconds")

t2 = time.time()
render_wav = f'{input_name}_render.wav'
ps.PurrResampler(input_file, render_wav, pitch, 100, flags,
                 0, length, consonant, 0, 100, 0, '!120', 'AA')
t3 = time.time()
print(f"Rendering took: {t3 - t2:.3f} seconds")

end_time = time.time()
print(f"Time taken: {end_time - start_time} seconds")
out, sr = sf.read(render_wav)
print(f'Rendered audio saved: {render_wav} ({len(out) / sr:.3f}s)')
