from __future__ import annotations

import base64
import binascii
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from huayu.backend.config import AppConfig
from huayu.backend.errors import ClientInputError, UpstreamError
from huayu.backend.services.openai_client import OpenAIClient
from huayu.backend.tones import tone_wav
from huayu.backend.types import (
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ClientConfigResponse,
    HealthResponse,
    PinyinRequest,
    PinyinResponse,
    RealtimeSessionRequest,
    RealtimeSessionResponse,
    SttRequest,
    TranscriptResponse,
    TtsRequest,
)
from huayu.backend.voices import (
    ALLOWED_TTS_VOICES,
    sanitize_model,
    sanitize_realtime_voice,
    sanitize_voice,
)

logger = logging.getLogger("huayu.server")
logging.basicConfig(level=logging.INFO)

config = AppConfig.from_env()
config.ensure_paths()
openai_client = OpenAIClient(config)

_UI_BUILD_DIR = Path(__file__).resolve().parents[2] / "build"


def _ui_mode() -> str:
    return "ui+api" if _UI_BUILD_DIR.exists() else "api-only"


def _require_key() -> None:
    if not openai_client.available():
        raise HTTPException(status_code=400, detail="OpenAI key missing")


def _upstream_failure(label: str, exc: UpstreamError) -> HTTPException:
    logger.error("[%s] upstream error: %s", label, exc.detail)
    return HTTPException(status_code=400, detail=f"{label} failed: {exc.detail}")


def _extension_for_mime(mime: str) -> str:
    lowered = str(mime or "").lower()
    for token, ext in (("wav", "wav"), ("webm", "webm"), ("ogg", "ogg"), ("mpeg", "mp3"), ("mp4", "m4a")):
        if token in lowered:
            return ext
    return "wav"


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info("mode=%s fake_mode=%s", _ui_mode(), config.fake_mode)
    if not openai_client.available():
        logger.warning("no OpenAI key configured; model endpoints will answer 400")
    yield


app = FastAPI(title="Huayu Buddy", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", include_in_schema=False)
async def root_index() -> PlainTextResponse:
    return PlainTextResponse(
        f"Huayu Buddy API running.\nMode: {_ui_mode()} @ {_UI_BUILD_DIR}\n"
    )


@app.get("/api/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(ok=True, mode=_ui_mode(), tts_voices=list(ALLOWED_TTS_VOICES))


@app.get("/api/config", response_model=ClientConfigResponse)
async def client_config() -> ClientConfigResponse:
    return ClientConfigResponse(
        chat_model=config.chat_model,
        stt_model=config.stt_model,
        tts_model=config.tts_model,
        realtime_model=config.realtime_model,
    )


@app.get("/api/tone")
async def tone() -> Response:
    return Response(content=tone_wav(880.0, 1.0), media_type="audio/wav")


@app.post("/api/chat", response_model=ChatResponse)
async def chat(req: ChatRequest) -> ChatResponse:
    _require_key()
    if not req.messages:
        raise HTTPException(status_code=400, detail="messages required")
    try:
        content = await run_in_threadpool(
            openai_client.chat,
            model=req.model,
            messages=[m.model_dump() for m in req.messages],
            temperature=req.temperature,
        )
    except UpstreamError as exc:
        raise _upstream_failure("chat", exc) from exc
    return ChatResponse(choices=[ChatChoice(message=ChatMessage(role="assistant", content=content))])


@app.post("/api/tts")
async def tts(req: TtsRequest) -> Response:
    _require_key()
    text = str(req.text or "")
    if not text.strip():
        raise HTTPException(status_code=400, detail="text required")
    voice = sanitize_voice(req.voice)
    model = sanitize_model(req.model)
    if voice.coerced or model.coerced:
        logger.info(
            "tts choice coerced: voice %r -> %r, model %r -> %r",
            voice.requested,
            voice.final,
            model.requested,
            model.final,
        )
    try:
        audio, media_type = await run_in_threadpool(
            openai_client.speech,
            text=text,
            voice=voice.final,
            model=model.final,
        )
    except UpstreamError as exc:
        raise _upstream_failure("OpenAI TTS", exc) from exc
    return Response(
        content=audio,
        media_type=media_type,
        headers={
            "x-voice-requested": voice.requested,
            "x-voice-final": voice.final,
            "x-voice-coerced": "1" if voice.coerced else "0",
            "x-model-requested": model.requested,
            "x-model-final": model.final,
            "x-model-coerced": "1" if model.coerced else "0",
        },
    )


@app.post("/api/pinyin", response_model=PinyinResponse)
async def pinyin(req: PinyinRequest) -> PinyinResponse:
    if not openai_client.available():
        return PinyinResponse(pinyin="")
    try:
        value = await run_in_threadpool(openai_client.romanize, req.text, model=req.model)
    except UpstreamError as exc:
        logger.warning("[pinyin] %s", exc.detail)
        return PinyinResponse(pinyin="")
    return PinyinResponse(pinyin=value)


async def _transcribe(audio: bytes, *, filename: str, mime: str, language: str, model: str | None):
    if not audio:
        raise ClientInputError("audio required")
    return await run_in_threadpool(
        openai_client.transcribe,
        audio=audio,
        filename=filename,
        mime=mime,
        language=language,
        model=str(model or config.stt_model),
    )


@app.post("/api/transcribe", response_model=TranscriptResponse)
async def transcribe(
    file: UploadFile = File(...),
    language: str = Form("zh"),
    model: str = Form(""),
) -> TranscriptResponse:
    _require_key()
    try:
        payload = await file.read()
        mime = file.content_type or "audio/wav"
        text = await _transcribe(
            payload,
            filename=file.filename or f"speech.{_extension_for_mime(mime)}",
            mime=mime,
            language=language,
            model=model or None,
        )
    except ClientInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UpstreamError as exc:
        raise _upstream_failure("transcription", exc) from exc
    return TranscriptResponse(text=text)


@app.post("/api/stt", response_model=TranscriptResponse)
async def stt(req: SttRequest) -> TranscriptResponse:
    _require_key()
    try:
        raw = base64.b64decode(req.audio_base64.encode("ascii"), validate=True)
        text = await _transcribe(
            raw,
            filename=f"speech.{_extension_for_mime(req.mime)}",
            mime=req.mime,
            language=req.language,
            model=req.model,
        )
    except (ClientInputError, ValueError, binascii.Error) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UpstreamError as exc:
        raise _upstream_failure("transcription", exc) from exc
    return TranscriptResponse(text=text)


@app.post("/api/realtime-session", response_model=RealtimeSessionResponse)
async def realtime_session(req: RealtimeSessionRequest) -> RealtimeSessionResponse:
    _require_key()
    voice = sanitize_realtime_voice(req.voice)
    try:
        data = await run_in_threadpool(
            openai_client.create_realtime_session,
            model=req.model,
            voice=voice.final,
        )
    except UpstreamError as exc:
        raise _upstream_failure("realtime session", exc) from exc
    return RealtimeSessionResponse(
        client_secret=data["client_secret"],
        model=req.model,
        voice=voice.final,
    )
