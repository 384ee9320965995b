from __future__ import annotations

import gc
import importlib.util
import threading
from typing import Any

import numpy as np

from huayu.backend.config import AppConfig


def _map_language_whisper(language: str) -> str | None:
    hint = (language or "auto").strip().lower()
    if hint in {"auto", ""}:
        return None
    return hint.split("-", 1)[0]


class LocalRecognizer:
    """On-device recognition with faster-whisper, loaded on first use."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self._model: Any | None = None
        self._lock = threading.RLock()

    def available(self) -> bool:
        if self.config.fake_mode:
            return True
        return importlib.util.find_spec("faster_whisper") is not None

    def _load(self) -> None:
        if self._model is not None or self.config.fake_mode:
            return
        from faster_whisper import WhisperModel

        self._model = WhisperModel(
            self.config.local_asr_model,
            device=self.config.asr_device,
            compute_type=self.config.asr_compute_type,
        )

    def transcribe(self, audio: np.ndarray, language: str) -> str:
        if self.config.fake_mode:
            energy = float(np.mean(np.abs(audio))) if audio.size else 0.0
            return "" if energy < 0.01 else "你好"
        with self._lock:
            self._load()
            assert self._model is not None
            segments, _ = self._model.transcribe(
                np.asarray(audio, dtype=np.float32),
                language=_map_language_whisper(language),
                beam_size=1,
                best_of=1,
                vad_filter=False,
                condition_on_previous_text=False,
                temperature=0.0,
            )
            text = " ".join(seg.text.strip() for seg in segments if seg.text.strip())
        return text.strip()

    def warmup(self) -> None:
        if self.config.fake_mode:
            return
        with self._lock:
            self._load()

    def unload(self) -> bool:
        with self._lock:
            changed = self._model is not None
            self._model = None
        if changed:
            gc.collect()
        return changed
