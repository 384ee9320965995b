from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any

from huayu.backend.config import AppConfig
from huayu.backend.errors import UpstreamError
from huayu.backend.multipart import encode_multipart
from huayu.backend.tones import placeholder_speech_wav

ROMANIZE_SYSTEM_PROMPT = (
    "You convert Mandarin Chinese Hanzi into Hanyu Pinyin with tone marks. "
    "Return ONLY the pinyin, no extra text."
)

_FAKE_REPLY = "Hanzi: 你好！你今天好吗？\nPinyin: nǐ hǎo! nǐ jīntiān hǎo ma?\nEnglish: Hello! How are you today?"


class OpenAIClient:
    """Blocking client for the hosted chat, speech, transcription and realtime APIs."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config

    def available(self) -> bool:
        return self.config.fake_mode or bool(str(self.config.openai_api_key or "").strip())

    def _api_key(self) -> str:
        api_key = str(self.config.openai_api_key or "").strip()
        if not api_key:
            raise UpstreamError("OpenAI key missing")
        return api_key

    def _endpoint(self, path: str) -> str:
        base = str(self.config.openai_api_base or "").strip().rstrip("/")
        if not base:
            base = "https://api.openai.com/v1"
        return f"{base}{path}"

    def _send(self, path: str, body: bytes, content_type: str, *, accept: str) -> bytes:
        req = urllib.request.Request(
            self._endpoint(path),
            data=body,
            method="POST",
            headers={
                "Authorization": f"Bearer {self._api_key()}",
                "Content-Type": content_type,
                "Accept": accept,
            },
        )
        timeout = max(2.0, float(self.config.openai_timeout_s))
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                return resp.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace") if exc.fp else str(exc)
            raise UpstreamError(f"OpenAI HTTP {exc.code}", detail) from exc
        except Exception as exc:
            raise UpstreamError(f"OpenAI request failed: {exc}") from exc

    def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        raw = self._send(path, body, "application/json", accept="application/json")
        try:
            data = json.loads(raw.decode("utf-8", errors="replace"))
        except Exception as exc:
            raise UpstreamError(f"OpenAI returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise UpstreamError("OpenAI returned an unexpected payload.")
        return data

    def chat(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float = 0.6,
    ) -> str:
        if self.config.fake_mode:
            return _FAKE_REPLY
        data = self._post_json(
            "/chat/completions",
            {"model": model, "messages": messages, "temperature": float(temperature)},
        )
        return self._extract_text(data)

    def romanize(self, text: str, *, model: str) -> str:
        normalized = str(text or "").strip()
        if not normalized:
            return ""
        if self.config.fake_mode:
            return "nǐ hǎo" if "你好" in normalized else ""
        data = self._post_json(
            "/chat/completions",
            {
                "model": model,
                "temperature": 0,
                "messages": [
                    {"role": "system", "content": ROMANIZE_SYSTEM_PROMPT},
                    {"role": "user", "content": normalized},
                ],
            },
        )
        return self._extract_text(data)

    def speech(self, *, text: str, voice: str, model: str) -> tuple[bytes, str]:
        if self.config.fake_mode:
            return placeholder_speech_wav(text), "audio/wav"
        body = json.dumps(
            {"model": model, "voice": voice, "input": text},
            ensure_ascii=False,
        ).encode("utf-8")
        audio = self._send("/audio/speech", body, "application/json", accept="audio/mpeg")
        return audio, "audio/mpeg"

    def transcribe(
        self,
        *,
        audio: bytes,
        filename: str,
        mime: str,
        language: str,
        model: str,
    ) -> str:
        if self.config.fake_mode:
            return "你好" if audio else ""
        fields = {"model": model, "response_format": "json"}
        if language:
            fields["language"] = language
        body, content_type = encode_multipart(
            fields=fields,
            files={"file": (filename, mime or "application/octet-stream", audio)},
        )
        raw = self._send("/audio/transcriptions", body, content_type, accept="application/json")
        try:
            data = json.loads(raw.decode("utf-8", errors="replace"))
        except Exception as exc:
            raise UpstreamError(f"OpenAI returned invalid JSON: {exc}") from exc
        return str(data.get("text") or "").strip() if isinstance(data, dict) else ""

    def create_realtime_session(self, *, model: str, voice: str) -> dict[str, Any]:
        if self.config.fake_mode:
            return {"client_secret": {"value": "ek_fake", "expires_at": None}}
        data = self._post_json("/realtime/sessions", {"model": model, "voice": voice})
        secret = data.get("client_secret")
        if not isinstance(secret, dict) or not str(secret.get("value") or "").strip():
            raise UpstreamError("Realtime session response has no client secret.")
        return data

    def _extract_text(self, data: dict[str, Any]) -> str:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise UpstreamError("OpenAI response has no choices.")
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise UpstreamError("OpenAI response has no message.")
        content = message.get("content")
        if isinstance(content, str):
            return content.strip()
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and isinstance(item.get("text"), str):
                    parts.append(item["text"])
                elif isinstance(item, str):
                    parts.append(item)
            return "".join(parts).strip()
        return str(content or "").strip()
