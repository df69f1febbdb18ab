import numpy as np


def generate_sine_wave(freq_hz: float, duration_sec: float, sr: int = 44100, amplitude: float = 1.0) -> np.ndarray:
    """Generates a pure sine wave."""
    t = np.arange(int(duration_sec * sr)) / float(sr)
    audio = amplitude * np.sin(2 * np.pi * freq_hz * t)
    return audio.astype(np.float32)


def generate_silence(duration_sec: float, sr: int = 44100) -> np.ndarray:
    """Generates silence."""
    return np.zeros(int(duration_sec * sr), dtype=np.float32)


def generate_noise(duration_sec: float, sr: int = 44100, amplitude: float = 0.1, seed: int = 0) -> np.ndarray:
    """Generates reproducible white noise."""
    rng = np.random.default_rng(seed)
    return (rng.uniform(-1.0, 1.0, int(duration_sec * sr)) * amplitude).astype(np.float32)


def generate_harmonic_tone(
    f0_hz: float,
    duration_sec: float,
    sr: int = 44100,
    n_harmonics: int = 5,
    amplitude: float = 0.8,
) -> np.ndarray:
    """Sum of the first harmonics with 1/h amplitudes, peak-normalized."""
    t = np.arange(int(duration_sec * sr)) / float(sr)
    audio = np.zeros_like(t)
    for h in range(1, n_harmonics + 1):
        audio += np.sin(2 * np.pi * f0_hz * h * t) / h
    audio *= amplitude / np.max(np.abs(audio))
    return audio.astype(np.float32)


def generate_plucked_tone(f0_hz: float, duration_sec: float, sr: int = 44100, decay_per_sec: float = 6.0) -> np.ndarray:
    """Harmonic tone with an instant attack and exponential decay."""
    tone = generate_harmonic_tone(f0_hz, duration_sec, sr)
    t = np.arange(len(tone)) / float(sr)
    return (tone * np.exp(-decay_per_sec * t)).astype(np.float32)


def mix_audio(signals: list) -> np.ndarray:
    """Mixes multiple signals together, padding to the longest and clipping to [-1, 1]."""
    if not signals:
        return np.array([], dtype=np.float32)
    max_len = max(len(s) for s in signals)
    output = np.zeros(max_len, dtype=np.float32)
    for s in signals:
        output += np.pad(s, (0, max_len - len(s)))
    return np.clip(output, -1.0, 1.0)
