from __future__ import annotations

import asyncio
import fractions
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal

import numpy as np
from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame

from huayu.client.api_client import LanguageServiceClient
from huayu.client.audio.capture import MicrophoneArbiter, SoundDeviceRecorder

logger = logging.getLogger("huayu.live")

LiveState = Literal["idle", "negotiating", "live"]

LIVE_SAMPLE_RATE = 48000
LIVE_FRAME_MS = 20


class MicrophoneTrack(MediaStreamTrack):
    """Outgoing mic audio for the peer connection.

    While ``enabled`` is False the track keeps its timing but sends silence,
    so push-to-talk never needs renegotiation.
    """

    kind = "audio"

    def __init__(
        self,
        *,
        sample_rate: int = LIVE_SAMPLE_RATE,
        frame_ms: int = LIVE_FRAME_MS,
        device: int | None = None,
    ) -> None:
        super().__init__()
        self.enabled = True
        self.sample_rate = int(sample_rate)
        self.samples_per_frame = self.sample_rate * int(frame_ms) // 1000
        self._recorder = SoundDeviceRecorder(
            sample_rate=self.sample_rate,
            device=device,
            on_block=self._on_block,
        )
        self._buffer = np.zeros(0, dtype=np.float32)
        self._lock = threading.Lock()
        self._start: float | None = None
        self._pts = 0

    def open(self) -> None:
        self._recorder.start()

    def _on_block(self, block: np.ndarray) -> None:
        with self._lock:
            self._buffer = np.concatenate([self._buffer, block])
            # keep at most one second queued
            if self._buffer.size > self.sample_rate:
                self._buffer = self._buffer[-self.sample_rate :]

    def _take_frame(self) -> np.ndarray:
        n = self.samples_per_frame
        with self._lock:
            if self._buffer.size < n:
                return np.zeros(n, dtype=np.float32)
            chunk, self._buffer = self._buffer[:n], self._buffer[n:]
        return chunk

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        if self._start is None:
            self._start = time.time()
            self._pts = 0
        else:
            self._pts += self.samples_per_frame
            wait = self._start + (self._pts / self.sample_rate) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)

        chunk = self._take_frame()
        if not self.enabled:
            chunk = np.zeros(self.samples_per_frame, dtype=np.float32)
        pcm16 = (np.clip(chunk, -1.0, 1.0) * 32767.0).astype(np.int16).reshape(1, -1)
        frame = AudioFrame.from_ndarray(pcm16, format="s16", layout="mono")
        frame.sample_rate = self.sample_rate
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, self.sample_rate)
        return frame

    def stop(self) -> None:
        super().stop()
        self._recorder.stop()


class RemoteAudioSink:
    """Plays the model's incoming audio track on the default output device."""

    def __init__(self, track: Any) -> None:
        self.track = track
        self._task: asyncio.Task | None = None
        self._stream = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.ensure_future(self._pump())

    def _write(self, samples: np.ndarray, sample_rate: int) -> None:
        import sounddevice as sd

        if self._stream is None:
            self._stream = sd.OutputStream(
                samplerate=sample_rate,
                channels=samples.shape[1],
                dtype="float32",
            )
            self._stream.start()
        self._stream.write(samples)

    async def _pump(self) -> None:
        while True:
            try:
                frame = await self.track.recv()
            except MediaStreamError:
                return
            channels = max(1, len(frame.layout.channels))
            pcm = frame.to_ndarray().reshape(-1, channels)
            samples = (pcm.astype(np.float32) / 32768.0).astype(np.float32)
            await asyncio.to_thread(self._write, samples, int(frame.sample_rate))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


@dataclass(slots=True)
class SessionHandle:
    peer_connection: Any | None = None
    local_media_track: Any | None = None
    remote_media_stream: Any | None = None
    state: Literal["connecting", "live", "closed"] = "connecting"


def _default_track() -> MicrophoneTrack:
    track = MicrophoneTrack()
    track.open()
    return track


class LiveSessionManager:
    """Owns the realtime voice channel: credential, peer connection and mic gating."""

    OWNER = "live-session"

    def __init__(
        self,
        client: LanguageServiceClient,
        *,
        arbiter: MicrophoneArbiter | None = None,
        peer_factory: Callable[[], Any] = RTCPeerConnection,
        track_factory: Callable[[], Any] = _default_track,
        sink_factory: Callable[[Any], Any] = RemoteAudioSink,
        model: str = "gpt-4o-mini-realtime-preview",
        voice: str = "alloy",
    ) -> None:
        self.client = client
        self.arbiter = arbiter or MicrophoneArbiter()
        self._peer_factory = peer_factory
        self._track_factory = track_factory
        self._sink_factory = sink_factory
        self.model = model
        self.voice = voice
        self._state: LiveState = "idle"
        self._handle: SessionHandle | None = None
        self._sink: Any | None = None
        self._mic_held = False

    @property
    def state(self) -> LiveState:
        return self._state

    @property
    def handle(self) -> SessionHandle | None:
        return self._handle

    @property
    def push_to_talk_enabled(self) -> bool:
        track = self._handle.local_media_track if self._handle is not None else None
        return bool(track is not None and self._state == "live" and track.enabled)

    def _superseded(self, handle: SessionHandle) -> bool:
        if self._handle is handle:
            return False
        logger.info("live session negotiation abandoned after disconnect")
        return True

    async def connect(self, model: str | None = None, voice: str | None = None) -> SessionHandle:
        """Negotiate a live session.

        A disconnect() that lands mid-negotiation wins: the returned handle is
        already closed and nothing further is opened for it.
        """
        if self._state != "idle" and self._handle is not None:
            return self._handle
        model = model or self.model
        voice = voice or self.voice
        handle = SessionHandle()
        self._handle = handle
        self._state = "negotiating"
        try:
            credential = await asyncio.to_thread(
                self.client.create_realtime_session,
                model=model,
                voice=voice,
            )
            if self._superseded(handle):
                return handle
            pc = self._peer_factory()
            handle.peer_connection = pc

            def _on_track(track: Any) -> None:
                if track.kind != "audio" or handle.remote_media_stream is not None:
                    return
                if self._handle is not handle:
                    return
                handle.remote_media_stream = track
                self._sink = self._sink_factory(track)
                self._sink.start()

            pc.on("track", _on_track)

            self.arbiter.acquire(self.OWNER)
            self._mic_held = True
            track = self._track_factory()
            handle.local_media_track = track
            pc.addTrack(track)

            offer = await pc.createOffer()
            if self._superseded(handle):
                return handle
            await pc.setLocalDescription(offer)
            if self._superseded(handle):
                return handle
            answer = await asyncio.to_thread(
                self.client.exchange_sdp,
                offer_sdp=pc.localDescription.sdp,
                credential=credential,
                model=model,
            )
            if self._superseded(handle):
                return handle
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer, type="answer"))
            if self._superseded(handle):
                return handle
        except Exception as exc:
            logger.warning("live session connect failed: %s", exc)
            if self._handle is handle:
                await self._teardown()
            raise

        track.enabled = True
        handle.state = "live"
        self._state = "live"
        logger.info("live session up (model=%s voice=%s)", model, voice)
        return handle

    def toggle_push_to_talk(self) -> bool:
        """Flip the outgoing mic gate; returns the new state (False when not live)."""
        handle = self._handle
        if self._state != "live" or handle is None or handle.local_media_track is None:
            return False
        track = handle.local_media_track
        track.enabled = not track.enabled
        return bool(track.enabled)

    async def disconnect(self) -> None:
        await self._teardown()

    async def _teardown(self) -> None:
        handle, self._handle = self._handle, None
        sink, self._sink = self._sink, None
        mic_held, self._mic_held = self._mic_held, False
        self._state = "idle"

        if handle is not None:
            handle.state = "closed"
            track = handle.local_media_track
            if track is not None:
                track.enabled = False
                try:
                    track.stop()
                except Exception as exc:
                    logger.warning("stopping mic track failed: %s", exc)
        if mic_held:
            self.arbiter.release(self.OWNER)
        if sink is not None:
            try:
                await sink.stop()
            except Exception as exc:
                logger.warning("stopping remote audio failed: %s", exc)
        if handle is not None and handle.peer_connection is not None:
            try:
                await handle.peer_connection.close()
            except Exception as exc:
                logger.warning("closing peer connection failed: %s", exc)
        if handle is not None:
            handle.peer_connection = None
            handle.local_media_track = None
            handle.remote_media_stream = None
