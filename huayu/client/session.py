from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from huayu.backend.config import AppConfig
from huayu.client.api_client import LanguageServiceClient
from huayu.client.audio.amplitude import ActivityChannel
from huayu.client.audio.capture import MicrophoneArbiter
from huayu.client.audio.playback import get_audio_output
from huayu.client.backend_runtime import BackendRuntime
from huayu.client.conversation import ConversationState, ConversationTurn, VocabEntry
from huayu.client.live_session import LiveSessionManager
from huayu.client.preferences import PreferenceStore, TutorPreferences
from huayu.client.speech_input import SpeechInputEngine, TranscriptOutcome, normalize_hanzi
from huayu.client.speech_output import (
    EN_VOICE_HINT,
    ZH_VOICE_HINT,
    SpeechOutputEngine,
    VoiceSelection,
)
from huayu.client.turn_controller import Notifier, TurnController, TurnSettings

logger = logging.getLogger("huayu.session")


def turn_settings_from_preferences(prefs: TutorPreferences) -> TurnSettings:
    backend = "remote" if prefs.use_remote_tts else "local"
    return TurnSettings(
        chat_model=prefs.chat_model,
        difficulty=prefs.difficulty,
        topic=prefs.topic,
        show_gloss=prefs.show_english,
        speak_gloss=prefs.speak_english,
        gloss_delay_ms=prefs.speak_english_delay_ms,
        speak_slow=prefs.speak_slow,
        zh_voice=VoiceSelection(
            backend=backend,
            local_voice_id=prefs.zh_local_voice,
            remote_voice_id=prefs.zh_remote_voice,
            remote_model_id=prefs.tts_model,
            voice_hint=ZH_VOICE_HINT,
        ),
        en_voice=VoiceSelection(
            backend=backend,
            local_voice_id=prefs.en_local_voice,
            remote_voice_id=prefs.en_remote_voice,
            remote_model_id=prefs.tts_model,
            voice_hint=EN_VOICE_HINT,
        ),
    )


class TutorSession:
    """One tutoring conversation: owns the state container and wires every engine.

    All engines share this session's ActivityChannel and MicrophoneArbiter.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        client: LanguageServiceClient | None = None,
        store: PreferenceStore | None = None,
        runtime: BackendRuntime | None = None,
        speech: SpeechOutputEngine | None = None,
        listener: SpeechInputEngine | None = None,
        live: LiveSessionManager | None = None,
        notify: Notifier | None = None,
    ) -> None:
        self.config = config or AppConfig.from_env()
        self.client = client or LanguageServiceClient(
            self.config.server_url,
            self.config.openai_timeout_s,
            realtime_url=self.config.realtime_url,
        )
        self.store = store
        self.runtime = runtime
        self.prefs = store.load_preferences() if store is not None else TutorPreferences()
        self.channel = ActivityChannel()
        self.arbiter = MicrophoneArbiter()
        self.state = ConversationState()
        self.speech = speech or SpeechOutputEngine(
            self.client,
            channel=self.channel,
            output=get_audio_output(self.config.media_player),
        )
        self.listener = listener or SpeechInputEngine(
            self.config,
            self.client,
            arbiter=self.arbiter,
            stt_model=self.prefs.stt_model,
            device_id=self.prefs.input_device_id,
        )
        self.live = live or LiveSessionManager(
            self.client,
            arbiter=self.arbiter,
            model=self.config.realtime_model,
        )
        self.controller = TurnController(
            self.client,
            self.speech,
            state=self.state,
            settings=turn_settings_from_preferences(self.prefs),
            notify=notify,
        )
        self._apply_input_preferences()

    def _apply_input_preferences(self) -> None:
        self.listener.normalize = normalize_hanzi if self.prefs.normalize_hanzi else None
        self.listener.stt_model = self.prefs.stt_model or self.config.stt_model
        self.listener.device_id = self.prefs.input_device_id

    async def start(self) -> None:
        self.channel.bind_loop(asyncio.get_running_loop())
        if self.runtime is not None:
            await asyncio.to_thread(self.runtime.start)
        await self.listener.prepare(self.prefs.stt_engine)

    def update_preferences(self, **changes: Any) -> TutorPreferences:
        if self.store is not None:
            self.prefs = self.store.update_preferences(**changes)
        else:
            self.prefs = TutorPreferences.model_validate({**self.prefs.model_dump(), **changes})
        self.controller.settings = turn_settings_from_preferences(self.prefs)
        self._apply_input_preferences()
        return self.prefs

    async def load_vocabulary(self, entries: Sequence[VocabEntry]) -> ConversationTurn | None:
        return await self.controller.set_vocabulary(entries)

    async def submit_text(self, text: str) -> ConversationTurn | None:
        self.state.user_reply = str(text or "").strip()
        return await self.controller.submit_turn(text)

    async def practice(self) -> ConversationTurn | None:
        return await self.controller.submit_practice_turn()

    async def replay(self) -> bool:
        return await self.controller.replay_last()

    def clear_history(self) -> None:
        self.state.clear_history()

    async def handle_transcript(self, outcome: TranscriptOutcome) -> ConversationTurn | None:
        if outcome.status == "ok":
            return await self.submit_text(outcome.text)
        if outcome.status == "no_speech":
            self.controller.notify("No speech detected", "warn")
        else:
            self.controller.notify("Transcription failed", "error")
        return None

    async def listen_and_reply(self) -> ConversationTurn | None:
        """One hands-free turn using on-device recognition."""
        outcome = await self.listener.listen_once()
        return await self.handle_transcript(outcome)

    async def start_recording(self) -> asyncio.Future:
        return await self.listener.start_recording()

    async def stop_recording_and_reply(self) -> ConversationTurn | None:
        outcome = await self.listener.stop_recording()
        return await self.handle_transcript(outcome)

    async def close(self) -> None:
        self.controller.close()
        await self.listener.close()
        await self.live.disconnect()
        if self.runtime is not None:
            await asyncio.to_thread(self.runtime.stop)
        if self.store is not None:
            self.store.close()
        logger.info("session closed")
