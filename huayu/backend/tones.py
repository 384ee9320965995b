from __future__ import annotations

import io
import math

import numpy as np
import soundfile as sf


def sine_wave(
    frequency_hz: float,
    seconds: float,
    *,
    sample_rate: int = 44100,
    amplitude: float = 0.8,
    ramp_samples: int = 400,
) -> np.ndarray:
    n = max(1, int(sample_rate * seconds))
    t = np.arange(n, dtype=np.float32) / float(sample_rate)
    idx = np.arange(n, dtype=np.float32)
    # linear fade in/out so the tone does not click
    envelope = np.minimum(1.0, np.minimum(idx / ramp_samples, (n - idx) / ramp_samples))
    return (amplitude * envelope * np.sin(2.0 * math.pi * frequency_hz * t)).astype(np.float32)


def wav_bytes(samples: np.ndarray, sample_rate: int) -> bytes:
    buffer = io.BytesIO()
    sf.write(buffer, np.asarray(samples, dtype=np.float32), sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


def tone_wav(frequency_hz: float = 880.0, seconds: float = 1.0, sample_rate: int = 44100) -> bytes:
    return wav_bytes(sine_wave(frequency_hz, seconds, sample_rate=sample_rate), sample_rate)


def placeholder_speech_wav(text: str, sample_rate: int = 24000) -> bytes:
    duration = max(0.35, min(3.0, 0.03 * max(len(text), 1)))
    frequency = 180.0 + (len(text) % 80)
    samples = sine_wave(frequency, duration, sample_rate=sample_rate, amplitude=0.18)
    return wav_bytes(samples, sample_rate)
