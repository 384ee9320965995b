from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Literal, Sequence

from huayu.client.api_client import LanguageServiceClient
from huayu.client.conversation import (
    GREETING_PROMPT,
    PRACTICE_PROMPT,
    ConversationState,
    ConversationTurn,
    ParsedReply,
    VocabEntry,
    build_system_prompt,
    parse_reply,
    used_vocabulary,
)
from huayu.client.speech_output import (
    EN_VOICE_HINT,
    ZH_VOICE_HINT,
    SpeakOptions,
    SpeechOutputEngine,
    VoiceSelection,
)

logger = logging.getLogger("huayu.turns")

TurnPhase = Literal["idle", "awaiting_reply", "speaking"]
Notifier = Callable[[str, str], None]

MAX_GLOSS_DELAY_MS = 2000


@dataclass
class TurnSettings:
    chat_model: str = "gpt-4o-mini"
    difficulty: float = 35
    topic: str = "auto"
    show_gloss: bool = True
    speak_gloss: bool = False
    gloss_delay_ms: int = 0
    speak_slow: bool = False
    allow_fallback: bool = True
    zh_voice: VoiceSelection = field(default_factory=lambda: VoiceSelection(voice_hint=ZH_VOICE_HINT))
    en_voice: VoiceSelection = field(default_factory=lambda: VoiceSelection(voice_hint=EN_VOICE_HINT))


def _log_notice(message: str, level: str) -> None:
    log = logger.error if level == "error" else logger.info
    log("%s", message)


class TurnController:
    """Runs one conversational turn at a time: prompt, reply, parse, log, speak.

    Callers must not overlap ``submit_turn`` calls; nothing here locks them out.
    """

    def __init__(
        self,
        client: LanguageServiceClient,
        speech: SpeechOutputEngine,
        *,
        state: ConversationState | None = None,
        settings: TurnSettings | None = None,
        notify: Notifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.client = client
        self.speech = speech
        self.state = state or ConversationState()
        self.settings = settings or TurnSettings()
        self._notifier = notify or _log_notice
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._phase: TurnPhase = "idle"
        self._greeted = False
        self._closed = False
        self._gloss_timer: asyncio.Future | None = None
        self._utterance: asyncio.Future | None = None

    def notify(self, message: str, level: str = "info") -> None:
        self._notifier(message, level)

    @property
    def phase(self) -> TurnPhase:
        return self._phase

    @property
    def closed(self) -> bool:
        return self._closed

    async def set_vocabulary(self, entries: Sequence[VocabEntry]) -> ConversationTurn | None:
        """Replace the vocabulary; the first non-empty list triggers the greeting turn."""
        self.state.vocabulary = list(entries)
        if not self.state.vocabulary or self._greeted:
            return None
        self._greeted = True
        return await self.submit_turn(GREETING_PROMPT)

    async def submit_turn(
        self,
        user_input: str,
        *,
        temperature: float = 0.4,
        practice_focus: Sequence[VocabEntry] | None = None,
    ) -> ConversationTurn | None:
        if self._closed:
            return None
        settings = self.settings
        prompt = str(user_input or "").strip()
        system = build_system_prompt(
            difficulty=settings.difficulty,
            topic=settings.topic,
            show_gloss=settings.show_gloss,
            vocabulary=self.state.vocabulary,
            practice_focus=practice_focus,
        )
        messages = [
            {"role": "system", "content": system},
            *[m for m in self.state.messages if m.get("role") != "system"],
            {"role": "user", "content": prompt},
        ]

        self._phase = "awaiting_reply"
        try:
            raw = await asyncio.to_thread(
                self.client.chat,
                model=settings.chat_model,
                messages=messages,
                temperature=0.25 + float(temperature) * 0.75,
            )
        except Exception as exc:
            logger.warning("chat request failed: %s", exc)
            self._phase = "idle"
            if not self._closed:
                self.notify("Chat request failed", "error")
            return None
        if self._closed:
            self._phase = "idle"
            return None

        content = str(raw or "").strip()
        parsed = parse_reply(content, settings.show_gloss)
        if parsed.primary_text and not parsed.romanized_text:
            parsed = await self._fill_romanization(parsed)
            if self._closed:
                self._phase = "idle"
                return None

        used = tuple(used_vocabulary(self.state.vocabulary, parsed.primary_text))
        turn = ConversationTurn(
            timestamp=time.time(),
            prompt_text=prompt,
            raw_reply_text=content,
            parsed_reply=parsed,
            user_reply_text=self.state.user_reply,
            used_vocab_entries=used,
        )
        self.state.last_reply = parsed
        self.state.last_used_vocab = used
        self.state.history.append(turn)
        self.state.messages.append({"role": "assistant", "content": content})
        logger.info("turn logged: %d vocab hits, %d turns total", len(used), len(self.state.history))

        await self._speak_reply(parsed, gloss_delay=True)
        return turn

    async def _fill_romanization(self, parsed: ParsedReply) -> ParsedReply:
        try:
            romanized = await asyncio.to_thread(
                self.client.romanize,
                parsed.primary_text,
                model=self.settings.chat_model,
            )
        except Exception as exc:
            logger.warning("romanization lookup failed: %s", exc)
            return parsed
        romanized = str(romanized or "").strip()
        return replace(parsed, romanized_text=romanized) if romanized else parsed

    async def submit_practice_turn(self, size: int = 6) -> ConversationTurn | None:
        vocabulary = self.state.vocabulary
        if not vocabulary:
            self.notify("Load a vocabulary list first.", "warn")
            return None
        focus = self._rng.sample(vocabulary, min(size, len(vocabulary)))
        return await self.submit_turn(PRACTICE_PROMPT, temperature=0.45, practice_focus=focus)

    async def replay_last(self) -> bool:
        parsed = self.state.last_reply
        if parsed is None or self._closed:
            return False
        await self._speak_reply(parsed, gloss_delay=False)
        return True

    def _set_speaking(self, value: bool) -> None:
        self.state.speaking = value

    def _set_highlight(self, index: int) -> None:
        self.state.highlight_index = index

    async def _speak_reply(self, parsed: ParsedReply, *, gloss_delay: bool) -> None:
        settings = self.settings
        self._phase = "speaking"
        try:
            text = parsed.primary_text or parsed.romanized_text
            if text:
                tokens = parsed.romanized_tokens
                self.state.romanized_tokens = tokens
                self.state.highlight_index = -1
                await self._say(
                    text,
                    "zh-CN",
                    settings.zh_voice,
                    SpeakOptions(
                        rate=0.9 if settings.speak_slow else 1.0,
                        tokens=tokens,
                        allow_fallback=settings.allow_fallback,
                        on_start=lambda: self._set_speaking(True),
                        on_progress=self._set_highlight,
                        on_end=lambda: self._set_speaking(False),
                        on_error=lambda _exc: self._set_speaking(False),
                    ),
                )
            if self._closed:
                return
            if not (settings.show_gloss and settings.speak_gloss and parsed.gloss_text):
                return
            delay_ms = max(0, min(MAX_GLOSS_DELAY_MS, int(settings.gloss_delay_ms))) if gloss_delay else 0
            if delay_ms > 0 and not await self._wait_gloss_delay(delay_ms):
                return
            await self._say(
                parsed.gloss_text,
                "en-US",
                settings.en_voice,
                SpeakOptions(
                    allow_fallback=settings.allow_fallback,
                    on_start=lambda: self._set_speaking(True),
                    on_end=lambda: self._set_speaking(False),
                    on_error=lambda _exc: self._set_speaking(False),
                ),
            )
        finally:
            self._phase = "idle"

    async def _say(
        self,
        text: str,
        lang: str,
        selection: VoiceSelection,
        options: SpeakOptions,
    ) -> bool:
        utterance = asyncio.ensure_future(self.speech.speak(text, lang, selection, options))
        self._utterance = utterance
        try:
            return await utterance
        except asyncio.CancelledError:
            if not utterance.cancelled() or not self._closed:
                raise
            self._set_speaking(False)
            return False
        finally:
            self._utterance = None

    async def _wait_gloss_delay(self, delay_ms: int) -> bool:
        timer = asyncio.ensure_future(self._sleep(delay_ms / 1000.0))
        self._gloss_timer = timer
        try:
            await timer
        except asyncio.CancelledError:
            if not timer.cancelled() or not self._closed:
                raise
            return False
        finally:
            self._gloss_timer = None
        return not self._closed

    def close(self) -> None:
        """Stop accepting work; in-flight turns drop their remaining steps."""
        self._closed = True
        timer = self._gloss_timer
        if timer is not None and not timer.done():
            timer.cancel()
        utterance = self._utterance
        if utterance is not None and not utterance.done():
            utterance.cancel()
