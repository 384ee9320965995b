from __future__ import annotations

import logging
from typing import Any

from huayu.backend.types import AudioDeviceInfo

logger = logging.getLogger("huayu.stt")

_NOISY_NAME_HINTS = (
    "microsoft sound mapper",
    "sound mapper",
    "primary sound",
    "primary audio",
)


def _normalize_name(name: str) -> str:
    return " ".join(name.lower().strip().split())


def _is_noisy_pseudo_device(name: str) -> bool:
    lowered = _normalize_name(name)
    return any(hint in lowered for hint in _NOISY_NAME_HINTS)


def _input_channels(dev: dict[str, Any]) -> int:
    return int(dev.get("max_input_channels", 0) or 0)


def _hostapi_name(hostapis: list[dict[str, Any]], idx: int) -> str:
    if idx < 0 or idx >= len(hostapis):
        return ""
    return str(hostapis[idx].get("name", ""))


def _hostapi_priority(hostapi_name: str) -> int:
    lowered = hostapi_name.lower()
    for rank, token in enumerate(("wasapi", "core audio", "pulse", "alsa", "directsound", "mme")):
        if token in lowered:
            return rank
    return 6


def _query_devices() -> tuple[list[dict[str, Any]], list[dict[str, Any]], int | None]:
    import sounddevice as sd

    devices = [dict(d) for d in sd.query_devices()]
    hostapis = [dict(h) for h in sd.query_hostapis()]
    default_input = sd.default.device[0]
    default_input_id = int(default_input) if default_input is not None and default_input >= 0 else None
    return devices, hostapis, default_input_id


def _preferred_hostapi(devices: list[dict[str, Any]], hostapis: list[dict[str, Any]]) -> int | None:
    apis = {
        int(dev.get("hostapi", -1))
        for dev in devices
        if _input_channels(dev) > 0 and not _is_noisy_pseudo_device(str(dev.get("name", "")))
    }
    apis.discard(-1)
    if not apis:
        return None
    return min(apis, key=lambda idx: (_hostapi_priority(_hostapi_name(hostapis, idx)), idx))


def find_input_device_by_hint(devices: list[dict[str, Any]], hint: str) -> int | None:
    if not hint:
        return None
    target = hint.lower()
    candidates: list[tuple[tuple[int, int], int]] = []
    for idx, dev in enumerate(devices):
        name = str(dev.get("name", "")).lower()
        if _input_channels(dev) <= 0 or target not in name:
            continue
        noisy_penalty = 1 if _is_noisy_pseudo_device(name) else 0
        candidates.append(((noisy_penalty, idx), idx))
    if not candidates:
        return None
    candidates.sort(key=lambda item: item[0])
    return candidates[0][1]


def list_input_devices() -> list[AudioDeviceInfo]:
    """Enumerate capture devices; an empty list when enumeration is unavailable."""
    try:
        devices, hostapis, default_input_id = _query_devices()
    except Exception as exc:
        logger.warning("input device enumeration failed: %s", exc)
        return []

    preferred = _preferred_hostapi(devices, hostapis)
    out: list[AudioDeviceInfo] = []
    for idx, dev in enumerate(devices):
        if _input_channels(dev) <= 0:
            continue
        name = str(dev.get("name", ""))
        if _is_noisy_pseudo_device(name):
            continue
        if preferred is not None and int(dev.get("hostapi", -1)) != preferred and idx != default_input_id:
            continue
        out.append(
            AudioDeviceInfo(
                id=idx,
                name=name,
                max_input_channels=_input_channels(dev),
                default_samplerate=float(dev.get("default_samplerate", 0.0) or 0.0),
                is_default_input=default_input_id == idx,
            )
        )
    return out


def resolve_input_device(device_id: int | None, hint: str = "") -> int | None:
    """Pick the capture device: explicit id, then name hint, then the platform default."""
    if device_id is not None:
        return int(device_id)
    if not hint:
        return None
    try:
        devices, _, _ = _query_devices()
    except Exception as exc:
        logger.warning("input device lookup failed: %s", exc)
        return None
    return find_input_device_by_hint(devices, hint)
