from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _bounded_float(value: str | None, default: float, low: float, high: float) -> float:
    try:
        parsed = float(value.strip()) if value is not None else default
    except ValueError:
        parsed = default
    return max(low, min(high, parsed))


@dataclass(slots=True)
class AppConfig:
    data_dir: Path
    prefs_path: Path
    logs_dir: Path

    host: str
    port: int
    server_url: str
    fake_mode: bool
    boot_timeout_s: float

    openai_api_base: str
    openai_api_key: str
    openai_timeout_s: float
    realtime_url: str

    chat_model: str
    stt_model: str
    tts_model: str
    realtime_model: str

    stt_engine: str
    input_device_hint: str
    capture_sample_rate: int
    frame_ms: int
    vad_silence_ms: int
    max_utterance_ms: int
    record_tick_s: float
    record_max_ticks: int
    min_payload_bytes: int
    diagnostic_seconds: float
    diagnostic_min_bytes: int

    local_asr_model: str
    asr_device: str
    asr_compute_type: str
    media_player: str

    @classmethod
    def from_env(cls) -> "AppConfig":
        root = Path(os.getenv("HB_DATA_DIR", "data")).resolve()
        host = os.getenv("HB_HOST", "127.0.0.1")
        port = int(os.getenv("HB_PORT", "8787"))
        return cls(
            data_dir=root,
            prefs_path=root / "prefs.db",
            logs_dir=root / "logs",
            host=host,
            port=port,
            server_url=os.getenv("HB_SERVER_URL", f"http://{host}:{port}"),
            fake_mode=_as_bool(os.getenv("HB_FAKE_MODE"), default=False),
            boot_timeout_s=_bounded_float(os.getenv("HB_BOOT_TIMEOUT_S"), 30.0, 5.0, 600.0),
            openai_api_base=os.getenv("HB_OPENAI_API_BASE", "https://api.openai.com/v1"),
            openai_api_key=os.getenv(
                "HB_OPENAI_API_KEY",
                os.getenv("OPENAI_API_KEY", ""),
            ),
            openai_timeout_s=float(os.getenv("HB_OPENAI_TIMEOUT_S", "30")),
            realtime_url=os.getenv("HB_REALTIME_URL", "https://api.openai.com/v1/realtime"),
            chat_model=os.getenv("HB_CHAT_MODEL", "gpt-4o-mini"),
            stt_model=os.getenv("HB_STT_MODEL", "gpt-4o-mini-transcribe"),
            tts_model=os.getenv("HB_TTS_MODEL", "tts-1"),
            realtime_model=os.getenv("HB_REALTIME_MODEL", "gpt-4o-mini-realtime-preview"),
            stt_engine=os.getenv("HB_STT_ENGINE", "auto"),
            input_device_hint=os.getenv("HB_INPUT_DEVICE_HINT", ""),
            capture_sample_rate=int(os.getenv("HB_CAPTURE_SR", "16000")),
            frame_ms=int(os.getenv("HB_FRAME_MS", "20")),
            vad_silence_ms=int(os.getenv("HB_VAD_SILENCE_MS", "700")),
            max_utterance_ms=int(os.getenv("HB_MAX_UTTERANCE_MS", "10000")),
            record_tick_s=max(0.01, float(os.getenv("HB_RECORD_TICK_S", "1.0"))),
            record_max_ticks=max(1, int(os.getenv("HB_RECORD_MAX_TICKS", "10"))),
            min_payload_bytes=max(0, int(os.getenv("HB_MIN_PAYLOAD_BYTES", "1024"))),
            diagnostic_seconds=max(0.1, float(os.getenv("HB_DIAGNOSTIC_SECONDS", "2.0"))),
            diagnostic_min_bytes=max(0, int(os.getenv("HB_DIAGNOSTIC_MIN_BYTES", "512"))),
            local_asr_model=os.getenv("HB_LOCAL_ASR_MODEL", "small"),
            asr_device=os.getenv("HB_ASR_DEVICE", "cpu"),
            asr_compute_type=os.getenv("HB_ASR_COMPUTE_TYPE", "int8"),
            media_player=os.getenv("HB_MEDIA_PLAYER", ""),
        )

    def ensure_paths(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
