from __future__ import annotations

import io
import logging
import os
import shutil
import subprocess
import tempfile
import threading

import numpy as np
import soundfile as sf

from huayu.client.audio.amplitude import AmplitudeMeter
from huayu.client.audio.capture import AudioUnavailableError

logger = logging.getLogger("huayu.tts")

_PLAYER_COMMANDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("ffplay", ("-nodisp", "-autoexit", "-loglevel", "quiet")),
    ("afplay", ()),
    ("paplay", ()),
    ("aplay", ("-q",)),
)

_SUFFIX_BY_TYPE = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/ogg": ".ogg",
    "audio/webm": ".webm",
}


def decode_audio(audio: bytes) -> tuple[np.ndarray, int]:
    data, sr = sf.read(io.BytesIO(audio), dtype="float32", always_2d=True)
    return data, int(sr)


def _resolve_player(override: str = "") -> list[str] | None:
    if override:
        parts = override.split()
        if parts and shutil.which(parts[0]):
            return parts
        logger.warning("configured media player not found: %s", override)
    for name, args in _PLAYER_COMMANDS:
        path = shutil.which(name)
        if path:
            return [path, *args]
    return None


class AudioOutput:
    """Speaker output shared by the whole process.

    ``play_graph`` is the analysed path: decode, stream blocks to PortAudio and
    feed an AmplitudeMeter. ``play_media`` hands the encoded bytes to an
    external player and reports no levels.
    """

    def __init__(self, *, blocksize: int = 1024, media_player: str = "") -> None:
        self.blocksize = max(64, int(blocksize))
        self.media_player = media_player
        self._unlocked = False
        self._stop = threading.Event()
        self._lock = threading.Lock()

    @property
    def unlocked(self) -> bool:
        return self._unlocked

    def unlock(self) -> None:
        with self._lock:
            if self._unlocked:
                return
            try:
                import sounddevice as sd

                sd.query_devices(kind="output")
            except Exception as exc:
                raise AudioUnavailableError(f"Audio output unavailable: {exc}") from exc
            self._unlocked = True

    def stop(self) -> None:
        self._stop.set()

    def play_samples(
        self,
        samples: np.ndarray,
        sample_rate: int,
        meter: AmplitudeMeter | None = None,
    ) -> None:
        import sounddevice as sd

        self.unlock()
        self._stop.clear()
        data = np.asarray(samples, dtype=np.float32)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        mono = data.mean(axis=1)
        window = meter.window if meter is not None else 0
        if meter is not None:
            meter.begin()
        try:
            with sd.OutputStream(samplerate=sample_rate, channels=data.shape[1], dtype="float32") as stream:
                for start in range(0, data.shape[0], self.blocksize):
                    if self._stop.is_set():
                        break
                    end = start + self.blocksize
                    stream.write(np.ascontiguousarray(data[start:end]))
                    if meter is not None:
                        meter.feed(mono[max(0, end - window) : end])
        finally:
            if meter is not None:
                meter.end()

    def play_graph(self, audio: bytes, meter: AmplitudeMeter | None = None) -> None:
        samples, sample_rate = decode_audio(audio)
        self.play_samples(samples, sample_rate, meter)

    def play_media(self, audio: bytes, content_type: str = "audio/mpeg") -> None:
        command = _resolve_player(self.media_player)
        if command is None:
            raise AudioUnavailableError("No media player found (ffplay, afplay, paplay, aplay).")
        suffix = _SUFFIX_BY_TYPE.get(str(content_type or "").split(";")[0].strip().lower(), ".mp3")
        fd, path = tempfile.mkstemp(prefix="huayu-", suffix=suffix)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(audio)
            subprocess.run([*command, path], check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except subprocess.CalledProcessError as exc:
            raise AudioUnavailableError(f"Media player exited with {exc.returncode}") from exc
        finally:
            try:
                os.unlink(path)
            except OSError:
                pass


_shared_output: AudioOutput | None = None
_shared_lock = threading.Lock()


def get_audio_output(media_player: str = "") -> AudioOutput:
    """Create the process-wide output once; later calls return the same instance."""
    global _shared_output
    with _shared_lock:
        if _shared_output is None:
            _shared_output = AudioOutput(media_player=media_player)
        return _shared_output
