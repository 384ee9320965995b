from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


class HealthResponse(_WireModel):
    ok: bool = True
    mode: Literal["ui+api", "api-only"] = "api-only"
    tts_voices: list[str] = Field(default_factory=list, alias="ttsVoices")


class ClientConfigResponse(_WireModel):
    chat_model: str = Field(alias="chatModel")
    stt_model: str = Field(alias="sttModel")
    tts_model: str = Field(alias="ttsModel")
    realtime_model: str = Field(alias="realtimeModel")


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = ""


class ChatRequest(_WireModel):
    model: str = "gpt-4o-mini"
    messages: list[ChatMessage] = Field(default_factory=list)
    temperature: float = Field(default=0.6, ge=0.0, le=2.0)


class ChatChoice(BaseModel):
    message: ChatMessage


class ChatResponse(BaseModel):
    choices: list[ChatChoice]


class TtsRequest(_WireModel):
    text: str = ""
    voice: str | None = None
    model: str | None = None
    lang: str | None = None


class PinyinRequest(_WireModel):
    text: str = ""
    model: str = "gpt-4o-mini"


class PinyinResponse(BaseModel):
    pinyin: str = ""


class SttRequest(_WireModel):
    audio_base64: str = Field(alias="audioBase64")
    mime: str = "audio/wav"
    language: str = "zh"
    model: str | None = None


class TranscriptResponse(BaseModel):
    text: str = ""


class RealtimeSessionRequest(_WireModel):
    model: str = "gpt-4o-mini-realtime-preview"
    voice: str = "alloy"


class ClientSecret(BaseModel):
    value: str
    expires_at: int | None = None


class RealtimeSessionResponse(_WireModel):
    client_secret: ClientSecret
    model: str
    voice: str


class AudioDeviceInfo(BaseModel):
    id: int
    name: str
    max_input_channels: int
    default_samplerate: float
    is_default_input: bool = False
