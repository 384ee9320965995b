from __future__ import annotations

from dataclasses import dataclass

ALLOWED_TTS_VOICES: tuple[str, ...] = (
    "nova",
    "shimmer",
    "echo",
    "onyx",
    "fable",
    "alloy",
    "ash",
    "sage",
    "coral",
)
ALLOWED_TTS_MODELS: tuple[str, ...] = ("tts-1", "tts-1-hd", "gpt-4o-mini-tts")
DEFAULT_TTS_VOICE = "alloy"
DEFAULT_TTS_MODEL = "tts-1"

REALTIME_VOICES: tuple[str, ...] = ("alloy", "sage", "aria", "verse")
DEFAULT_REALTIME_VOICE = "alloy"


@dataclass(frozen=True, slots=True)
class SanitizedChoice:
    requested: str
    final: str
    coerced: bool


def _sanitize(value: str | None, allowed: tuple[str, ...], default: str) -> SanitizedChoice:
    if value is None:
        return SanitizedChoice(requested=default, final=default, coerced=False)
    requested = str(value)
    lowered = requested.strip().lower()
    if lowered in allowed:
        return SanitizedChoice(requested=requested, final=lowered, coerced=False)
    return SanitizedChoice(requested=requested, final=default, coerced=True)


def sanitize_voice(value: str | None) -> SanitizedChoice:
    return _sanitize(value, ALLOWED_TTS_VOICES, DEFAULT_TTS_VOICE)


def sanitize_model(value: str | None) -> SanitizedChoice:
    return _sanitize(value, ALLOWED_TTS_MODELS, DEFAULT_TTS_MODEL)


def sanitize_realtime_voice(value: str | None) -> SanitizedChoice:
    return _sanitize(value, REALTIME_VOICES, DEFAULT_REALTIME_VOICE)
