from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from huayu.backend.voices import DEFAULT_TTS_MODEL, DEFAULT_TTS_VOICE

logger = logging.getLogger("huayu.prefs")

PREFERENCES_KEY = "tutor_preferences"


class TutorPreferences(BaseModel):
    chat_model: str = "gpt-4o-mini"
    stt_model: str = "gpt-4o-mini-transcribe"
    tts_model: str = DEFAULT_TTS_MODEL
    zh_local_voice: str | None = None
    en_local_voice: str | None = None
    zh_remote_voice: str = DEFAULT_TTS_VOICE
    en_remote_voice: str = DEFAULT_TTS_VOICE
    use_remote_tts: bool = False
    speak_slow: bool = False
    difficulty: float = Field(default=35, ge=0, le=100)
    topic: str = "auto"
    show_english: bool = True
    speak_english: bool = False
    speak_english_delay_ms: int = Field(default=0, ge=0, le=2000)
    normalize_hanzi: bool = True
    stt_engine: str = "auto"
    input_device_id: int | None = None


class PreferenceStore:
    """Key/value settings persisted as JSON rows in a small sqlite file."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def init_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    def upsert_setting(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO settings(key, value) VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, payload),
            )

    def get_setting(self, key: str) -> Any | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return json.loads(row["value"])

    def load_preferences(self) -> TutorPreferences:
        raw = self.get_setting(PREFERENCES_KEY)
        if not isinstance(raw, dict):
            return TutorPreferences()
        try:
            return TutorPreferences.model_validate(raw)
        except ValidationError as exc:
            logger.warning("stored preferences invalid, using defaults: %s", exc)
            return TutorPreferences()

    def save_preferences(self, prefs: TutorPreferences) -> None:
        self.upsert_setting(PREFERENCES_KEY, prefs.model_dump())

    def update_preferences(self, **changes: Any) -> TutorPreferences:
        merged = {**self.load_preferences().model_dump(), **changes}
        prefs = TutorPreferences.model_validate(merged)
        self.save_preferences(prefs)
        return prefs
