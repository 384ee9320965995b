from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Protocol

import numpy as np

from huayu.backend.tones import wav_bytes

logger = logging.getLogger("huayu.stt")


class MicrophoneBusyError(RuntimeError):
    pass


class AudioUnavailableError(RuntimeError):
    pass


class MicrophoneArbiter:
    """One capture consumer at a time; a second acquirer is rejected, not queued."""

    def __init__(self) -> None:
        self._owner: str | None = None
        self._lock = threading.Lock()

    @property
    def owner(self) -> str | None:
        return self._owner

    def acquire(self, owner: str) -> None:
        with self._lock:
            if self._owner is not None:
                raise MicrophoneBusyError(f"Microphone is in use by {self._owner}")
            self._owner = owner

    def release(self, owner: str) -> None:
        with self._lock:
            if self._owner == owner:
                self._owner = None

    @contextmanager
    def hold(self, owner: str) -> Iterator[None]:
        self.acquire(owner)
        try:
            yield
        finally:
            self.release(owner)


class Recorder(Protocol):
    sample_rate: int

    def start(self) -> None: ...

    def stop(self) -> np.ndarray: ...


BlockCallback = Callable[[np.ndarray], None]


class SoundDeviceRecorder:
    """Mono float32 capture from a PortAudio input stream."""

    def __init__(
        self,
        *,
        sample_rate: int = 16000,
        device: int | None = None,
        blocksize: int = 0,
        on_block: BlockCallback | None = None,
    ) -> None:
        self.sample_rate = int(sample_rate)
        self.device = device
        self.blocksize = int(blocksize)
        self.on_block = on_block
        self._chunks: list[np.ndarray] = []
        self._lock = threading.Lock()
        self._stream = None

    @property
    def running(self) -> bool:
        return self._stream is not None

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("input stream status: %s", status)
        chunk = np.asarray(indata, dtype=np.float32)[:, 0].copy()
        with self._lock:
            self._chunks.append(chunk)
        if self.on_block is not None:
            self.on_block(chunk)

    def start(self) -> None:
        if self._stream is not None:
            return
        try:
            import sounddevice as sd

            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                device=self.device,
                blocksize=self.blocksize,
                callback=self._callback,
            )
            stream.start()
        except Exception as exc:
            raise AudioUnavailableError(f"Microphone unavailable: {exc}") from exc
        self._stream = stream

    def stop(self) -> np.ndarray:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()
        with self._lock:
            chunks, self._chunks = self._chunks, []
        if not chunks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(chunks).astype(np.float32)


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    return wav_bytes(np.asarray(samples, dtype=np.float32).reshape(-1), int(sample_rate))
