from __future__ import annotations

import asyncio
import logging
import re
import threading
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Sequence, Union

from huayu.backend.tones import sine_wave
from huayu.client.api_client import LanguageServiceClient, SpeechAudio
from huayu.client.audio.amplitude import ActivityChannel, AmplitudeMeter
from huayu.client.audio.capture import AudioUnavailableError
from huayu.client.audio.playback import AudioOutput, get_audio_output

logger = logging.getLogger("huayu.tts")

ZH_VOICE_HINT = r"zh|中文|Xiao|Ting|Mei|Google|Microsoft"
EN_VOICE_HINT = r"en[-_]|English|Samantha|Daniel|Google|Microsoft"


@dataclass(frozen=True, slots=True)
class VoiceSelection:
    backend: str = "local"
    local_voice_id: str | None = None
    remote_voice_id: str = "alloy"
    remote_model_id: str = "tts-1"
    voice_hint: str | None = None


@dataclass(slots=True)
class SpeakOptions:
    rate: float = 1.0
    tokens: Sequence[str] = ()
    allow_fallback: bool = True
    on_start: Callable[[], None] | None = None
    on_progress: Callable[[int], None] | None = None
    on_end: Callable[[], None] | None = None
    on_error: Callable[[Exception], None] | None = None


@dataclass(frozen=True, slots=True)
class LocalVoice:
    id: str
    name: str
    languages: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class BoundaryEvent:
    char_index: int
    length: int = 0


@dataclass(frozen=True, slots=True)
class SpeechCompleted:
    pass


@dataclass(frozen=True, slots=True)
class SpeechFailed:
    error: Exception


LocalSpeechEvent = Union[BoundaryEvent, SpeechCompleted, SpeechFailed]


def token_index_for_boundary(char_index: int, text_length: int, token_count: int) -> int:
    """Map a character offset in the spoken text onto the romanized token list."""
    if token_count <= 0:
        return -1
    if text_length <= 0:
        return 0
    offset = max(0, int(char_index))
    return min(token_count - 1, offset * token_count // text_length)


def _voice_languages(raw: Any) -> tuple[str, ...]:
    out: list[str] = []
    for item in raw or ():
        if isinstance(item, bytes):
            # espeak reports languages as bytes with a leading priority byte
            item = item[1:].decode("utf-8", errors="ignore") if item else ""
        text = str(item or "").strip()
        if text:
            out.append(text)
    return tuple(out)


def resolve_local_voice(
    voices: Sequence[LocalVoice],
    voice_id: str | None,
    hint: str | None,
) -> LocalVoice | None:
    if voice_id:
        for voice in voices:
            if voice.id == voice_id:
                return voice
    if hint:
        pattern = re.compile(hint, re.IGNORECASE)
        for voice in voices:
            if pattern.search(voice.name) or any(pattern.search(lang) for lang in voice.languages):
                return voice
    return None


class LocalSynthesizer:
    """pyttsx3 speech, exposed per utterance as an async stream of events."""

    def __init__(self) -> None:
        self._engine: Any | None = None
        self._lock = threading.Lock()

    def _get_engine(self) -> Any:
        if self._engine is None:
            import pyttsx3

            self._engine = pyttsx3.init()
        return self._engine

    def stop(self) -> None:
        engine = self._engine
        if engine is None:
            return
        try:
            engine.stop()
        except Exception as exc:
            logger.warning("stopping local speech failed: %s", exc)

    def voices(self) -> list[LocalVoice]:
        try:
            with self._lock:
                raw = self._get_engine().getProperty("voices") or []
        except Exception as exc:
            logger.warning("local voices unavailable: %s", exc)
            return []
        return [
            LocalVoice(
                id=str(getattr(v, "id", "")),
                name=str(getattr(v, "name", "") or ""),
                languages=_voice_languages(getattr(v, "languages", ())),
            )
            for v in raw
        ]

    def _run_utterance(
        self,
        text: str,
        voice_id: str | None,
        rate: float,
        emit: Callable[[LocalSpeechEvent], None],
    ) -> None:
        with self._lock:
            try:
                engine = self._get_engine()
            except Exception as exc:
                emit(SpeechFailed(AudioUnavailableError(f"Local speech unavailable: {exc}")))
                return
            token = engine.connect(
                "started-word",
                lambda name, location, length: emit(BoundaryEvent(int(location), int(length))),
            )
            base_rate = engine.getProperty("rate")
            try:
                if voice_id:
                    engine.setProperty("voice", voice_id)
                engine.setProperty("rate", int(float(base_rate) * max(0.1, float(rate))))
                engine.say(text)
                engine.runAndWait()
                emit(SpeechCompleted())
            except Exception as exc:
                emit(SpeechFailed(exc))
            finally:
                engine.setProperty("rate", base_rate)
                engine.disconnect(token)

    async def utter(
        self,
        text: str,
        *,
        voice_id: str | None = None,
        rate: float = 1.0,
    ) -> AsyncIterator[LocalSpeechEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[LocalSpeechEvent] = asyncio.Queue()

        def _emit(event: LocalSpeechEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        worker = asyncio.ensure_future(
            asyncio.to_thread(self._run_utterance, text, voice_id, rate, _emit)
        )
        try:
            while True:
                event = await queue.get()
                yield event
                if isinstance(event, (SpeechCompleted, SpeechFailed)):
                    break
        finally:
            if not worker.done():
                self.stop()
            await worker


class SpeechOutputEngine:
    """Speaks one line at a time through remote synthesis or the local synthesizer."""

    def __init__(
        self,
        client: LanguageServiceClient,
        *,
        channel: ActivityChannel | None = None,
        output: AudioOutput | None = None,
        synthesizer: LocalSynthesizer | None = None,
    ) -> None:
        self.client = client
        self.channel = channel or ActivityChannel()
        self._output = output
        self.synthesizer = synthesizer or LocalSynthesizer()
        self.last_remote_result: SpeechAudio | None = None

    @property
    def output(self) -> AudioOutput:
        if self._output is None:
            self._output = get_audio_output()
        return self._output

    async def unlock(self) -> bool:
        try:
            await asyncio.to_thread(self.output.unlock)
        except AudioUnavailableError as exc:
            logger.warning("audio output not ready: %s", exc)
            return False
        return True

    def stop(self) -> None:
        """Cut off the current utterance, local or remote."""
        self.synthesizer.stop()
        if self._output is not None:
            self._output.stop()

    async def list_local_voices(self, lang_prefix: str = "") -> list[LocalVoice]:
        voices = await asyncio.to_thread(self.synthesizer.voices)
        prefix = lang_prefix.strip().lower()
        if not prefix:
            return voices
        return [v for v in voices if any(lang.lower().startswith(prefix) for lang in v.languages)]

    async def beep(self, frequency_hz: float = 880.0, duration_ms: int = 120) -> None:
        samples = sine_wave(frequency_hz, duration_ms / 1000.0, sample_rate=44100, amplitude=0.2)
        await asyncio.to_thread(self.output.play_samples, samples, 44100)

    async def speak(
        self,
        text: str,
        lang: str = "en-US",
        selection: VoiceSelection | None = None,
        options: SpeakOptions | None = None,
    ) -> bool:
        line = str(text or "").strip()
        selection = selection or VoiceSelection()
        options = options or SpeakOptions()
        if not line:
            return False

        try:
            await self.unlock()
            if options.on_start is not None:
                options.on_start()
            voices: list[LocalVoice] = []
            if selection.backend != "remote":
                voices = await asyncio.to_thread(self.synthesizer.voices)
            if selection.backend == "remote" or not voices:
                try:
                    await self._speak_remote(line, lang, selection)
                except Exception as exc:
                    if not options.allow_fallback:
                        raise
                    logger.warning("remote speech failed, using local synthesis: %s", exc)
                    voices = voices or await asyncio.to_thread(self.synthesizer.voices)
                    await self._speak_local(line, selection, options, voices)
            else:
                await self._speak_local(line, selection, options, voices)
        except Exception as exc:
            logger.warning("speech failed: %s", exc)
            if options.on_error is not None:
                options.on_error(exc)
            return False

        if options.on_end is not None:
            options.on_end()
        return True

    async def _speak_remote(self, text: str, lang: str, selection: VoiceSelection) -> None:
        result = await asyncio.to_thread(
            self.client.synthesize_speech,
            text=text,
            voice=selection.remote_voice_id,
            model=selection.remote_model_id,
            lang=lang,
        )
        self.last_remote_result = result
        if result.voice_coerced or result.model_coerced:
            logger.info(
                "remote voice/model coerced: %s -> %s, %s -> %s",
                result.voice_requested,
                result.voice_final,
                result.model_requested,
                result.model_final,
            )
        await self.play_bytes(result.audio, result.content_type)

    async def play_bytes(self, audio: bytes, content_type: str = "audio/mpeg") -> None:
        if not audio:
            raise ValueError("empty audio buffer")
        meter = AmplitudeMeter(self.channel)
        try:
            await asyncio.to_thread(self.output.play_graph, audio, meter)
            return
        except asyncio.CancelledError:
            self.output.stop()
            raise
        except Exception as exc:
            logger.warning("graph playback failed, using media player: %s", exc)
        await asyncio.to_thread(self.output.play_media, audio, content_type)

    async def _speak_local(
        self,
        text: str,
        selection: VoiceSelection,
        options: SpeakOptions,
        voices: list[LocalVoice],
    ) -> None:
        voice = resolve_local_voice(voices, selection.local_voice_id, selection.voice_hint)
        tokens = list(options.tokens)
        meter = AmplitudeMeter(self.channel)
        meter.begin()
        try:
            events = self.synthesizer.utter(
                text,
                voice_id=voice.id if voice is not None else None,
                rate=options.rate,
            )
            async with aclosing(events):
                async for event in events:
                    if isinstance(event, BoundaryEvent):
                        if tokens and options.on_progress is not None:
                            options.on_progress(
                                token_index_for_boundary(event.char_index, len(text), len(tokens))
                            )
                    elif isinstance(event, SpeechFailed):
                        raise event.error
        finally:
            meter.end()
