from __future__ import annotations

import asyncio
import threading
from types import SimpleNamespace

import pytest

from huayu.client.api_client import ApiError, SpeechAudio
from huayu.client.audio.amplitude import ActivityChannel, ActivityEvent
from huayu.client.speech_output import (
    BoundaryEvent,
    LocalSynthesizer,
    LocalVoice,
    SpeakOptions,
    SpeechCompleted,
    SpeechFailed,
    SpeechOutputEngine,
    VoiceSelection,
    resolve_local_voice,
    token_index_for_boundary,
)


class FakeClient:
    def __init__(self, *, fail: bool = False, coerced: bool = False) -> None:
        self.fail = fail
        self.coerced = coerced
        self.calls: list[dict] = []

    def synthesize_speech(self, *, text: str, voice: str, model: str, lang: str | None = None) -> SpeechAudio:
        self.calls.append({"text": text, "voice": voice, "model": model, "lang": lang})
        if self.fail:
            raise ApiError("OpenAI TTS failed")
        return SpeechAudio(
            audio=b"RIFF-fake",
            content_type="audio/mpeg",
            voice_requested=voice,
            voice_final="alloy" if self.coerced else voice,
            voice_coerced=self.coerced,
            model_requested=model,
            model_final=model,
            model_coerced=False,
        )


class FakeOutput:
    def __init__(self, *, graph_fails: bool = False) -> None:
        self.graph_fails = graph_fails
        self.unlocked = 0
        self.graph: list[bytes] = []
        self.media: list[tuple[bytes, str]] = []

    def unlock(self) -> None:
        self.unlocked += 1

    def play_graph(self, audio: bytes, meter=None) -> None:
        if self.graph_fails:
            raise RuntimeError("cannot decode")
        self.graph.append(audio)

    def play_media(self, audio: bytes, content_type: str = "audio/mpeg") -> None:
        self.media.append((audio, content_type))


class FakeSynth:
    def __init__(self, voices=None, events=None) -> None:
        self._voices = voices if voices is not None else [LocalVoice("zh-1", "Ting-Ting", ("zh-CN",))]
        self.events = events if events is not None else [
            BoundaryEvent(0, 2),
            BoundaryEvent(3, 2),
            SpeechCompleted(),
        ]
        self.utterances: list[tuple[str, str | None, float]] = []

    def voices(self) -> list[LocalVoice]:
        return list(self._voices)

    async def utter(self, text: str, *, voice_id=None, rate: float = 1.0):
        self.utterances.append((text, voice_id, rate))
        for event in self.events:
            yield event


def _recording_options(log: list, tokens=()) -> SpeakOptions:
    return SpeakOptions(
        tokens=tokens,
        on_start=lambda: log.append("start"),
        on_progress=lambda idx: log.append(("progress", idx)),
        on_end=lambda: log.append("end"),
        on_error=lambda exc: log.append(("error", str(exc))),
    )


def test_token_index_for_boundary_is_proportional() -> None:
    assert token_index_for_boundary(0, 6, 3) == 0
    assert token_index_for_boundary(2, 6, 3) == 1
    assert token_index_for_boundary(5, 6, 3) == 2
    assert token_index_for_boundary(99, 6, 3) == 2
    assert token_index_for_boundary(3, 6, 0) == -1


def test_resolve_local_voice_prefers_id_then_hint() -> None:
    voices = [LocalVoice("en-1", "Samantha", ("en-US",)), LocalVoice("zh-1", "Ting-Ting", ("zh-CN",))]
    assert resolve_local_voice(voices, "en-1", r"zh").id == "en-1"
    assert resolve_local_voice(voices, "missing", r"zh").id == "zh-1"
    assert resolve_local_voice(voices, None, r"klingon") is None


def test_empty_text_returns_false_without_callbacks() -> None:
    log: list = []
    engine = SpeechOutputEngine(FakeClient(), output=FakeOutput(), synthesizer=FakeSynth())
    assert asyncio.run(engine.speak("   ", "zh-CN", options=_recording_options(log))) is False
    assert log == []


def test_local_speech_maps_boundaries_and_publishes_activity() -> None:
    log: list = []
    channel = ActivityChannel()
    activity: list[bool] = []
    channel.subscribe(lambda e: activity.append(e.active) if isinstance(e, ActivityEvent) else None)
    synth = FakeSynth()
    engine = SpeechOutputEngine(FakeClient(), channel=channel, output=FakeOutput(), synthesizer=synth)

    ok = asyncio.run(
        engine.speak(
            "你好朋友",
            "zh-CN",
            VoiceSelection(voice_hint="zh"),
            _recording_options(log, tokens=["nǐ", "hǎo", "péngyou"]),
        )
    )

    assert ok is True
    assert log == ["start", ("progress", 0), ("progress", 2), "end"]
    assert synth.utterances == [("你好朋友", "zh-1", 1.0)]
    assert activity == [True, False]


def test_forced_remote_plays_through_graph_and_reports_coercion() -> None:
    client = FakeClient(coerced=True)
    output = FakeOutput()
    synth = FakeSynth()
    engine = SpeechOutputEngine(client, output=output, synthesizer=synth)

    ok = asyncio.run(
        engine.speak("你好", "zh-CN", VoiceSelection(backend="remote", remote_voice_id="robot"))
    )

    assert ok is True
    assert client.calls[0]["voice"] == "robot"
    assert client.calls[0]["lang"] == "zh-CN"
    assert output.graph == [b"RIFF-fake"]
    assert synth.utterances == []
    assert engine.last_remote_result is not None
    assert engine.last_remote_result.voice_coerced is True
    assert engine.last_remote_result.voice_final == "alloy"


def test_remote_used_when_no_local_voices() -> None:
    client = FakeClient()
    engine = SpeechOutputEngine(client, output=FakeOutput(), synthesizer=FakeSynth(voices=[]))
    assert asyncio.run(engine.speak("hello", "en-US")) is True
    assert len(client.calls) == 1


def test_graph_failure_falls_back_to_media_player() -> None:
    output = FakeOutput(graph_fails=True)
    engine = SpeechOutputEngine(FakeClient(), output=output, synthesizer=FakeSynth())
    assert asyncio.run(engine.speak("hi", selection=VoiceSelection(backend="remote"))) is True
    assert output.media == [(b"RIFF-fake", "audio/mpeg")]


def test_remote_failure_falls_back_to_local_when_allowed() -> None:
    log: list = []
    synth = FakeSynth()
    engine = SpeechOutputEngine(FakeClient(fail=True), output=FakeOutput(), synthesizer=synth)

    ok = asyncio.run(
        engine.speak("你好", "zh-CN", VoiceSelection(backend="remote"), _recording_options(log))
    )

    assert ok is True
    assert len(synth.utterances) == 1
    assert log.count("end") == 1
    assert not any(isinstance(item, tuple) and item[0] == "error" for item in log)


def test_remote_failure_without_fallback_reports_error_once() -> None:
    log: list = []
    options = _recording_options(log)
    options.allow_fallback = False
    synth = FakeSynth()
    engine = SpeechOutputEngine(FakeClient(fail=True), output=FakeOutput(), synthesizer=synth)

    ok = asyncio.run(engine.speak("你好", "zh-CN", VoiceSelection(backend="remote"), options))

    assert ok is False
    assert synth.utterances == []
    assert log == ["start", ("error", "OpenAI TTS failed")]


def test_local_failure_event_reports_error() -> None:
    log: list = []
    synth = FakeSynth(events=[SpeechFailed(RuntimeError("engine crashed"))])
    engine = SpeechOutputEngine(FakeClient(), output=FakeOutput(), synthesizer=synth)

    assert asyncio.run(engine.speak("你好", "zh-CN", options=_recording_options(log))) is False
    assert log == ["start", ("error", "engine crashed")]


def test_play_bytes_rejects_empty_buffer() -> None:
    engine = SpeechOutputEngine(FakeClient(), output=FakeOutput(), synthesizer=FakeSynth())
    with pytest.raises(ValueError):
        asyncio.run(engine.play_bytes(b""))


class BlockingOutput(FakeOutput):
    """Graph playback that runs until stop() is called."""

    def __init__(self) -> None:
        super().__init__()
        self.playing = threading.Event()
        self.halted = threading.Event()
        self.stops = 0

    def play_graph(self, audio: bytes, meter=None) -> None:
        self.playing.set()
        self.halted.wait(timeout=5)

    def stop(self) -> None:
        self.stops += 1
        self.halted.set()


class BlockingTtsEngine:
    """Stands in for a pyttsx3 engine whose runAndWait lasts until stop()."""

    def __init__(self) -> None:
        self.speaking = threading.Event()
        self.halted = threading.Event()
        self.stops = 0
        self.props: dict = {
            "rate": 200,
            "voices": [SimpleNamespace(id="zh-1", name="Ting-Ting", languages=["zh-CN"])],
        }

    def getProperty(self, name):
        return self.props[name]

    def setProperty(self, name, value) -> None:
        self.props[name] = value

    def connect(self, topic, callback):
        return object()

    def disconnect(self, token) -> None:
        pass

    def say(self, text) -> None:
        self.text = text

    def runAndWait(self) -> None:
        self.speaking.set()
        self.halted.wait(timeout=5)

    def stop(self) -> None:
        self.stops += 1
        self.halted.set()


async def _cancel_when(started: threading.Event, coro):
    task = asyncio.ensure_future(coro)
    while not started.is_set():
        await asyncio.sleep(0.01)
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        return "cancelled"
    return "finished"


def test_cancelling_remote_speech_stops_playback() -> None:
    log: list = []
    output = BlockingOutput()
    engine = SpeechOutputEngine(FakeClient(), output=output, synthesizer=FakeSynth())

    result = asyncio.run(
        _cancel_when(
            output.playing,
            engine.speak("你好", "zh-CN", VoiceSelection(backend="remote"), _recording_options(log)),
        )
    )

    assert result == "cancelled"
    assert output.stops == 1
    assert log == ["start"]


def test_cancelling_local_speech_stops_synthesizer() -> None:
    log: list = []
    tts = BlockingTtsEngine()
    synth = LocalSynthesizer()
    synth._engine = tts
    engine = SpeechOutputEngine(FakeClient(), output=FakeOutput(), synthesizer=synth)

    result = asyncio.run(
        _cancel_when(
            tts.speaking,
            engine.speak("你好", "zh-CN", VoiceSelection(voice_hint="zh"), _recording_options(log)),
        )
    )

    assert result == "cancelled"
    assert tts.stops == 1
    assert tts.props["rate"] == 200
    assert log == ["start"]


def test_stop_reaches_synthesizer_and_output() -> None:
    output = BlockingOutput()
    tts = BlockingTtsEngine()
    synth = LocalSynthesizer()
    synth._engine = tts
    engine = SpeechOutputEngine(FakeClient(), output=output, synthesizer=synth)

    engine.stop()

    assert tts.stops == 1
    assert output.stops == 1
