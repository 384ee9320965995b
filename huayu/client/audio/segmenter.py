from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import webrtcvad


@dataclass
class UtteranceDetector:
    """Finds the end of one spoken utterance in a live capture.

    Feed arbitrary-sized blocks with ``push``; it returns the utterance once
    trailing silence reaches ``silence_ms`` or speech runs for
    ``max_utterance_ms``, then ignores further input.
    """

    sample_rate: int
    frame_ms: int = 20
    silence_ms: int = 700
    max_utterance_ms: int = 10000
    vad_mode: int = 2
    energy_threshold: float = 0.012
    _vad: webrtcvad.Vad = field(init=False)
    _pending: np.ndarray = field(init=False)
    _frames: list[np.ndarray] = field(default_factory=list, init=False)
    _speech_started: bool = field(default=False, init=False)
    _silence_run_ms: int = field(default=0, init=False)
    _speech_ms: int = field(default=0, init=False)
    _done: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        if self.sample_rate not in {8000, 16000, 32000, 48000}:
            raise ValueError("WebRTC VAD requires sample_rate in {8000, 16000, 32000, 48000}")
        if self.frame_ms not in {10, 20, 30}:
            raise ValueError("WebRTC VAD requires frame_ms in {10, 20, 30}")
        if not (0.0 <= self.energy_threshold <= 1.0):
            raise ValueError("energy_threshold must be in [0.0, 1.0]")
        self._vad = webrtcvad.Vad(self.vad_mode)
        self._pending = np.zeros(0, dtype=np.float32)

    @property
    def frame_samples(self) -> int:
        return int(self.sample_rate * self.frame_ms / 1000)

    @property
    def done(self) -> bool:
        return self._done

    @property
    def speech_started(self) -> bool:
        return self._speech_started

    @staticmethod
    def _rms(frame: np.ndarray) -> float:
        if frame.size == 0:
            return 0.0
        return float(np.sqrt(np.mean(np.square(frame), dtype=np.float64)))

    def _is_speech(self, frame: np.ndarray) -> bool:
        pcm16 = (np.clip(frame, -1.0, 1.0) * 32767.0).astype(np.int16)
        # soft voices slip past the VAD on cheap microphones; RMS backs it up
        return self._vad.is_speech(pcm16.tobytes(), self.sample_rate) or (
            self._rms(frame) >= self.energy_threshold
        )

    def _push_frame(self, frame: np.ndarray) -> np.ndarray | None:
        speech = self._is_speech(frame)
        if not self._speech_started:
            if not speech:
                return None
            self._speech_started = True
        self._frames.append(frame.copy())
        self._speech_ms += self.frame_ms
        self._silence_run_ms = 0 if speech else self._silence_run_ms + self.frame_ms
        if self._silence_run_ms >= self.silence_ms or self._speech_ms >= self.max_utterance_ms:
            return self._finish_utterance()
        return None

    def _finish_utterance(self) -> np.ndarray:
        self._done = True
        utterance = np.concatenate(self._frames).astype(np.float32)
        self._frames.clear()
        return utterance

    def push(self, block: np.ndarray) -> np.ndarray | None:
        if self._done:
            return None
        samples = np.asarray(block, dtype=np.float32).reshape(-1)
        buffered = np.concatenate([self._pending, samples])
        size = self.frame_samples
        offset = 0
        result: np.ndarray | None = None
        while offset + size <= buffered.size:
            result = self._push_frame(buffered[offset : offset + size])
            offset += size
            if result is not None:
                break
        self._pending = buffered[offset:] if result is None else np.zeros(0, dtype=np.float32)
        return result

    def flush(self) -> np.ndarray | None:
        """Return whatever speech was buffered when the capture ended early."""
        if self._done or not self._frames:
            return None
        return self._finish_utterance()
