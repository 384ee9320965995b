from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from huayu.backend.multipart import encode_multipart

logger = logging.getLogger("huayu.api")

DEFAULT_REALTIME_URL = "https://api.openai.com/v1/realtime"


class ServiceError(RuntimeError):
    """A language-service call failed; the caller aborts the operation."""


class ApiError(ServiceError):
    pass


@dataclass(frozen=True, slots=True)
class SpeechAudio:
    audio: bytes
    content_type: str
    voice_requested: str
    voice_final: str
    voice_coerced: bool
    model_requested: str
    model_final: str
    model_coerced: bool


class LanguageServiceClient:
    """Blocking HTTP client for the tutoring API; engines call it via ``asyncio.to_thread``."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        *,
        realtime_url: str = DEFAULT_REALTIME_URL,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.realtime_url = realtime_url.rstrip("/")

    def _open(self, request: urllib.request.Request) -> tuple[bytes, dict[str, str]]:
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                payload = response.read()
                headers = {k.lower(): v for k, v in response.headers.items()}
                return payload, headers
        except urllib.error.HTTPError as exc:
            detail = self._parse_http_error(exc)
            raise ApiError(f"HTTP {exc.code}: {detail}") from exc
        except urllib.error.URLError as exc:
            raise ApiError(f"Request failed: {exc.reason}") from exc

    def _request_raw(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
    ) -> tuple[bytes, dict[str, str]]:
        req_headers = dict(headers or {})
        req_body = body
        if json_payload is not None:
            req_body = json.dumps(json_payload, ensure_ascii=False).encode("utf-8")
            req_headers.setdefault("Content-Type", "application/json")
        request = urllib.request.Request(
            f"{self.base_url}{path}",
            data=req_body,
            method=method,
            headers=req_headers,
        )
        return self._open(request)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        payload, _ = self._request_raw(method, path, **kwargs)
        if not payload:
            return {}
        try:
            return json.loads(payload.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise ApiError(f"Invalid JSON from {path}") from exc

    @staticmethod
    def _parse_http_error(exc: urllib.error.HTTPError) -> str:
        try:
            raw = exc.read().decode("utf-8", errors="replace")
        except Exception:
            return str(exc)
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return raw.strip() or str(exc)
        detail = payload.get("detail") if isinstance(payload, dict) else None
        if isinstance(detail, str) and detail.strip():
            return detail.strip()
        return raw.strip() or str(exc)

    def ping(self) -> bool:
        try:
            self.health()
            return True
        except ApiError:
            return False

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/api/health")

    def client_config(self) -> dict[str, Any]:
        return self._request("GET", "/api/config")

    def chat(self, *, model: str, messages: list[dict[str, str]], temperature: float) -> str:
        payload = self._request(
            "POST",
            "/api/chat",
            json_payload={"model": model, "messages": messages, "temperature": temperature},
        )
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ApiError("Unexpected response payload for chat") from exc
        return str(content or "")

    def romanize(self, text: str, *, model: str = "gpt-4o-mini") -> str:
        """Best-effort pinyin for ``text``; any failure yields an empty string."""
        try:
            payload = self._request(
                "POST",
                "/api/pinyin",
                json_payload={"text": text, "model": model},
            )
        except ApiError as exc:
            logger.warning("romanize failed: %s", exc)
            return ""
        return str(payload.get("pinyin") or "").strip() if isinstance(payload, dict) else ""

    def synthesize_speech(
        self,
        *,
        text: str,
        voice: str,
        model: str,
        lang: str | None = None,
    ) -> SpeechAudio:
        body: dict[str, Any] = {"text": text, "voice": voice, "model": model}
        if lang:
            body["lang"] = lang
        audio, headers = self._request_raw("POST", "/api/tts", json_payload=body)
        if not audio:
            raise ApiError("Empty audio payload from /api/tts")
        return SpeechAudio(
            audio=audio,
            content_type=headers.get("content-type", "audio/mpeg"),
            voice_requested=headers.get("x-voice-requested", voice),
            voice_final=headers.get("x-voice-final", voice),
            voice_coerced=headers.get("x-voice-coerced") == "1",
            model_requested=headers.get("x-model-requested", model),
            model_final=headers.get("x-model-final", model),
            model_coerced=headers.get("x-model-coerced") == "1",
        )

    def transcribe(
        self,
        audio: bytes,
        *,
        language: str = "zh",
        model: str = "",
        filename: str = "speech.wav",
        content_type: str = "audio/wav",
    ) -> str:
        body, content_type_header = encode_multipart(
            fields={"language": language, "model": model},
            files={"file": (filename, content_type, audio)},
        )
        payload = self._request(
            "POST",
            "/api/transcribe",
            headers={"Content-Type": content_type_header},
            body=body,
        )
        return str(payload.get("text") or "").strip() if isinstance(payload, dict) else ""

    def create_realtime_session(self, *, model: str, voice: str) -> str:
        payload = self._request(
            "POST",
            "/api/realtime-session",
            json_payload={"model": model, "voice": voice},
        )
        secret = payload.get("client_secret") if isinstance(payload, dict) else None
        value = secret.get("value") if isinstance(secret, dict) else None
        if not isinstance(value, str) or not value.strip():
            raise ApiError("No ephemeral token")
        return value.strip()

    def exchange_sdp(self, *, offer_sdp: str, credential: str, model: str) -> str:
        url = f"{self.realtime_url}?{urllib.parse.urlencode({'model': model})}"
        request = urllib.request.Request(
            url,
            data=offer_sdp.encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {credential}",
                "Content-Type": "application/sdp",
                "OpenAI-Beta": "realtime=v1",
            },
        )
        answer, _ = self._open(request)
        text = answer.decode("utf-8", errors="replace")
        if not text.strip():
            raise ApiError("SDP exchange returned an empty answer")
        return text
