from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Optional

import numpy as np

from huayu.backend.config import AppConfig
from huayu.backend.types import AudioDeviceInfo
from huayu.client.api_client import LanguageServiceClient
from huayu.client.audio.capture import (
    BlockCallback,
    MicrophoneArbiter,
    Recorder,
    SoundDeviceRecorder,
    encode_wav,
)
from huayu.client.audio.devices import list_input_devices, resolve_input_device
from huayu.client.audio.playback import AudioOutput, get_audio_output
from huayu.client.audio.segmenter import UtteranceDetector
from huayu.client.local_asr import LocalRecognizer

logger = logging.getLogger("huayu.stt")

InputMode = Literal["local", "record"]
RecorderFactory = Callable[[int, Optional[int], Optional[BlockCallback]], Recorder]

_CJK_GAP = re.compile(r"(?<=[一-鿿])\s+(?=[一-鿿])")


def normalize_hanzi(text: str) -> str:
    """Drop the spaces some recognizers insert between Chinese characters."""
    return _CJK_GAP.sub("", str(text or "").strip())


def _default_recorder(sample_rate: int, device: int | None, on_block: BlockCallback | None) -> Recorder:
    return SoundDeviceRecorder(sample_rate=sample_rate, device=device, on_block=on_block)


@dataclass(frozen=True, slots=True)
class TranscriptOutcome:
    status: Literal["ok", "no_speech", "failed"]
    text: str = ""
    error: str | None = None


@dataclass(frozen=True, slots=True)
class DiagnosticOutcome:
    status: Literal["ok", "no_audio", "failed"]
    payload_bytes: int = 0
    error: str | None = None


@dataclass(slots=True)
class RecordingSession:
    recorder: Recorder
    done: asyncio.Future
    elapsed_ticks: int = 0
    ticker: asyncio.Task | None = None
    finalizing: bool = False


class SpeechInputEngine:
    """Turns the learner's speech into text.

    Two modes: ``local`` listens for one utterance and recognizes it on-device;
    ``record`` captures until release (or the tick ceiling) and sends the
    payload to the transcription service.
    """

    OWNER_LOCAL = "continuous-recognition"
    OWNER_RECORD = "push-to-record"
    OWNER_DIAGNOSTIC = "mic-diagnostic"

    def __init__(
        self,
        config: AppConfig,
        client: LanguageServiceClient,
        *,
        arbiter: MicrophoneArbiter | None = None,
        recognizer: LocalRecognizer | None = None,
        recorder_factory: RecorderFactory | None = None,
        output: AudioOutput | None = None,
        normalize: Callable[[str], str] | None = None,
        language: str = "zh",
        stt_model: str = "",
        device_id: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.client = client
        self.arbiter = arbiter or MicrophoneArbiter()
        self.recognizer = recognizer or LocalRecognizer(config)
        self._recorder_factory = recorder_factory or _default_recorder
        self._output = output
        self.normalize = normalize
        self.language = language
        self.stt_model = stt_model or config.stt_model
        self.device_id = device_id
        self._sleep = sleep
        self._mode: InputMode | None = None
        self._recording: RecordingSession | None = None
        self.on_tick: Callable[[int], None] | None = None

    @property
    def output(self) -> AudioOutput:
        if self._output is None:
            self._output = get_audio_output(self.config.media_player)
        return self._output

    @property
    def mode(self) -> InputMode | None:
        return self._mode

    @property
    def recording(self) -> bool:
        return self._recording is not None

    def resolve_mode(self, requested: str | None = None) -> InputMode:
        """Pick the input mode once per session; later calls return the cached choice."""
        if self._mode is not None:
            return self._mode
        wanted = str(requested or self.config.stt_engine or "auto").strip().lower()
        local_ok = self.recognizer.available()
        if wanted == "record":
            self._mode = "record"
        elif wanted == "local" and not local_ok:
            logger.warning("local recognition requested but unavailable; using push-to-record")
            self._mode = "record"
        else:
            self._mode = "local" if local_ok else "record"
        logger.info("speech input mode: %s", self._mode)
        return self._mode

    async def prepare(self, requested: str | None = None) -> InputMode:
        """Resolve the mode and load the on-device model when it will be used."""
        mode = self.resolve_mode(requested)
        if mode == "local":
            try:
                await asyncio.to_thread(self.recognizer.warmup)
            except Exception as exc:
                logger.warning("local recognizer warmup failed: %s", exc)
        return mode

    def _device(self) -> int | None:
        return resolve_input_device(self.device_id, self.config.input_device_hint)

    async def list_input_devices(self) -> list[AudioDeviceInfo]:
        return await asyncio.to_thread(list_input_devices)

    def _clean(self, text: str) -> str:
        text = str(text or "").strip()
        if text and self.normalize is not None:
            text = self.normalize(text)
        return text

    async def listen_once(self) -> TranscriptOutcome:
        loop = asyncio.get_running_loop()
        sample_rate = self.config.capture_sample_rate
        detector = UtteranceDetector(
            sample_rate=sample_rate,
            frame_ms=self.config.frame_ms,
            silence_ms=self.config.vad_silence_ms,
            max_utterance_ms=self.config.max_utterance_ms,
        )
        ready: asyncio.Future = loop.create_future()

        def _resolve(utterance: np.ndarray) -> None:
            if not ready.done():
                ready.set_result(utterance)

        def _on_block(block: np.ndarray) -> None:
            utterance = detector.push(block)
            if utterance is not None:
                loop.call_soon_threadsafe(_resolve, utterance)

        self.arbiter.acquire(self.OWNER_LOCAL)
        try:
            recorder = self._recorder_factory(sample_rate, self._device(), _on_block)
            await asyncio.to_thread(recorder.start)
            try:
                timeout_s = self.config.max_utterance_ms / 1000.0 + 5.0
                utterance = await asyncio.wait_for(ready, timeout=timeout_s)
            except asyncio.TimeoutError:
                utterance = None
            finally:
                await asyncio.to_thread(recorder.stop)
            if utterance is None:
                utterance = detector.flush()
            if utterance is None or utterance.size == 0:
                return TranscriptOutcome(status="no_speech")
            text = await asyncio.to_thread(self.recognizer.transcribe, utterance, self.language)
        except Exception as exc:
            logger.warning("local recognition failed: %s", exc)
            return TranscriptOutcome(status="failed", error=str(exc))
        finally:
            self.arbiter.release(self.OWNER_LOCAL)

        text = self._clean(text)
        if not text:
            return TranscriptOutcome(status="no_speech")
        return TranscriptOutcome(status="ok", text=text)

    async def start_recording(self) -> asyncio.Future:
        """Begin push-to-record. The returned future resolves once the capture is finalized."""
        if self._recording is not None:
            return self._recording.done
        self.arbiter.acquire(self.OWNER_RECORD)
        try:
            recorder = self._recorder_factory(self.config.capture_sample_rate, self._device(), None)
            await asyncio.to_thread(recorder.start)
        except Exception:
            self.arbiter.release(self.OWNER_RECORD)
            raise
        session = RecordingSession(recorder=recorder, done=asyncio.get_running_loop().create_future())
        self._recording = session
        session.ticker = asyncio.create_task(self._run_ticks(session))
        return session.done

    async def stop_recording(self) -> TranscriptOutcome:
        session = self._recording
        if session is None:
            return TranscriptOutcome(status="no_speech")
        await self._finalize(session)
        return await asyncio.shield(session.done)

    async def _run_ticks(self, session: RecordingSession) -> None:
        while session.elapsed_ticks < self.config.record_max_ticks:
            await self._sleep(self.config.record_tick_s)
            if session.finalizing:
                return
            session.elapsed_ticks += 1
            if self.on_tick is not None:
                self.on_tick(session.elapsed_ticks)
        await self._finalize(session)

    async def _finalize(self, session: RecordingSession) -> None:
        if session.finalizing:
            return
        session.finalizing = True
        if session.ticker is not None and session.ticker is not asyncio.current_task():
            session.ticker.cancel()
        try:
            try:
                samples = await asyncio.to_thread(session.recorder.stop)
            finally:
                self.arbiter.release(self.OWNER_RECORD)
                if self._recording is session:
                    self._recording = None
            payload = encode_wav(samples, session.recorder.sample_rate)
            outcome = await self._transcribe_payload(payload)
        except Exception as exc:
            logger.warning("recording finalize failed: %s", exc)
            outcome = TranscriptOutcome(status="failed", error=str(exc))
        if not session.done.done():
            session.done.set_result(outcome)

    async def _transcribe_payload(self, payload: bytes) -> TranscriptOutcome:
        if len(payload) < self.config.min_payload_bytes:
            logger.info("recording too small (%d bytes); treating as silence", len(payload))
            return TranscriptOutcome(status="no_speech")
        try:
            raw = await asyncio.to_thread(
                self.client.transcribe,
                payload,
                language=self.language,
                model=self.stt_model,
            )
        except Exception as exc:
            logger.warning("transcription failed: %s", exc)
            return TranscriptOutcome(status="failed", error=str(exc))
        text = self._clean(raw)
        if not text:
            return TranscriptOutcome(status="no_speech")
        return TranscriptOutcome(status="ok", text=text)

    async def run_diagnostic(self) -> DiagnosticOutcome:
        """Record a short clip and play it straight back; never feeds a turn."""
        sample_rate = self.config.capture_sample_rate
        self.arbiter.acquire(self.OWNER_DIAGNOSTIC)
        try:
            recorder = self._recorder_factory(sample_rate, self._device(), None)
            await asyncio.to_thread(recorder.start)
            try:
                await self._sleep(self.config.diagnostic_seconds)
            finally:
                samples = await asyncio.to_thread(recorder.stop)
        except Exception as exc:
            logger.warning("mic diagnostic capture failed: %s", exc)
            return DiagnosticOutcome(status="failed", error=str(exc))
        finally:
            self.arbiter.release(self.OWNER_DIAGNOSTIC)

        payload = encode_wav(samples, sample_rate)
        if len(payload) < self.config.diagnostic_min_bytes:
            return DiagnosticOutcome(status="no_audio", payload_bytes=len(payload))
        try:
            await asyncio.to_thread(self.output.play_samples, samples, sample_rate)
        except Exception as exc:
            logger.warning("mic diagnostic playback failed: %s", exc)
            return DiagnosticOutcome(status="failed", payload_bytes=len(payload), error=str(exc))
        return DiagnosticOutcome(status="ok", payload_bytes=len(payload))

    async def close(self) -> None:
        session = self._recording
        if session is not None:
            await self._finalize(session)
        if self._mode == "local":
            await asyncio.to_thread(self.recognizer.unload)
