from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Union

import numpy as np

logger = logging.getLogger("huayu.tts")

ANALYSIS_WINDOW = 2048
LEVEL_GAIN = 2.5
FRAME_RATE_HZ = 60.0


@dataclass(frozen=True, slots=True)
class LevelEvent:
    level: float
    timestamp: float


@dataclass(frozen=True, slots=True)
class ActivityEvent:
    active: bool
    timestamp: float


AudioEvent = Union[LevelEvent, ActivityEvent]
Subscriber = Callable[[AudioEvent], None]


def window_level(samples: np.ndarray) -> float:
    """Mean absolute amplitude of one analysis window, scaled and capped to 0..1."""
    mono = np.asarray(samples, dtype=np.float32).reshape(-1)
    if mono.size == 0:
        return 0.0
    return float(min(1.0, float(np.mean(np.abs(mono), dtype=np.float64)) * LEVEL_GAIN))


class ActivityChannel:
    """Session-scoped fan-out of level and activity events.

    When bound to an event loop, events published from other threads are
    delivered on that loop so subscribers never race the turn logic.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._subscribers: set[Subscriber] = set()
        self._lock = threading.Lock()
        self._loop = loop

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None) -> None:
        self._loop = loop

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.add(callback)

        def _unsubscribe() -> None:
            with self._lock:
                self._subscribers.discard(callback)

        return _unsubscribe

    def publish(self, event: AudioEvent) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._dispatch, event)
                return
        self._dispatch(event)

    def _dispatch(self, event: AudioEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:
                logger.warning("activity subscriber failed: %s", exc)


class AmplitudeMeter:
    """Turns audio being played into throttled level events plus start/stop edges."""

    def __init__(
        self,
        channel: ActivityChannel,
        *,
        window: int = ANALYSIS_WINDOW,
        frame_rate_hz: float = FRAME_RATE_HZ,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self.window = max(1, int(window))
        self._interval_s = 1.0 / max(1.0, float(frame_rate_hz))
        self._clock = clock
        self._active = False
        self._last_emit = float("-inf")

    @property
    def active(self) -> bool:
        return self._active

    def begin(self) -> None:
        if self._active:
            return
        self._active = True
        self._last_emit = float("-inf")
        self.channel.publish(ActivityEvent(active=True, timestamp=self._clock()))

    def feed(self, recent: np.ndarray) -> float | None:
        """Analyse the newest ``window`` samples; publish at most once per frame."""
        if not self._active:
            return None
        samples = np.asarray(recent, dtype=np.float32).reshape(-1)[-self.window :]
        now = self._clock()
        if (now - self._last_emit) < self._interval_s:
            return None
        self._last_emit = now
        level = window_level(samples)
        self.channel.publish(LevelEvent(level=level, timestamp=now))
        return level

    def end(self) -> None:
        if not self._active:
            return
        self._active = False
        now = self._clock()
        self.channel.publish(LevelEvent(level=0.0, timestamp=now))
        self.channel.publish(ActivityEvent(active=False, timestamp=now))
