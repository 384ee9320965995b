from __future__ import annotations

import logging
import threading
import time
import urllib.error
import urllib.request
from urllib.parse import urlparse

import uvicorn

logger = logging.getLogger("huayu.server")

DEFAULT_URL = "http://127.0.0.1:8787"
DEFAULT_BOOT_TIMEOUT_S = 30.0


def _health_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/api/health"


def _is_backend_ready(base_url: str, timeout_seconds: float = 1.2) -> bool:
    req = urllib.request.Request(_health_url(base_url), method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as response:
            return int(response.status) == 200
    except (urllib.error.URLError, urllib.error.HTTPError, TimeoutError):
        return False


def _wait_backend_ready(base_url: str, timeout_seconds: float = 30.0) -> bool:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        if _is_backend_ready(base_url):
            return True
        time.sleep(0.25)
    return False


def _is_localhost_url(base_url: str) -> bool:
    parsed = urlparse(base_url)
    host = (parsed.hostname or "").strip().lower()
    return host in {"127.0.0.1", "localhost"}


def _host_and_port(base_url: str) -> tuple[str, int]:
    parsed = urlparse(base_url)
    host = parsed.hostname or "127.0.0.1"
    if parsed.port is not None:
        return host, int(parsed.port)
    if parsed.scheme == "https":
        return host, 443
    return host, 80


class BackendRuntime:
    """Explicit handle for an embedded API server.

    ``start()`` is a no-op when this handle already runs a server or when
    something already answers health checks at ``base_url``.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        *,
        app_path: str = "huayu.backend.main:app",
        boot_timeout_s: float = DEFAULT_BOOT_TIMEOUT_S,
    ):
        self.base_url = base_url.rstrip("/")
        self.boot_timeout_s = boot_timeout_s
        self.app_path = app_path
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def owns_server(self) -> bool:
        return self._server is not None

    def _spawn(self) -> None:
        host, port = _host_and_port(self.base_url)
        config = uvicorn.Config(
            self.app_path,
            host=host,
            port=port,
            reload=False,
            log_level="warning",
        )
        self._server = uvicorn.Server(config=config)
        self._thread = threading.Thread(
            target=self._server.run,
            daemon=True,
            name="huayu-embedded-backend",
        )
        self._thread.start()

    def start(self) -> bool:
        """Make sure the API is reachable. Returns True when this call spawned it."""
        with self._lock:
            if self._server is not None:
                return False
            if _is_backend_ready(self.base_url):
                logger.info("backend already running at %s", self.base_url)
                return False
            if not _is_localhost_url(self.base_url):
                raise RuntimeError(f"Backend is not reachable: {self.base_url}")
            self._spawn()
        timeout_s = self.boot_timeout_s
        if not _wait_backend_ready(self.base_url, timeout_seconds=timeout_s):
            self.stop()
            raise RuntimeError(
                f"Embedded backend failed to start within {timeout_s:.0f}s: {self.base_url}"
            )
        logger.info("embedded backend listening on %s", self.base_url)
        return True

    def stop(self, timeout_s: float = 6.0) -> None:
        with self._lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
        if server is None:
            return
        server.should_exit = True
        if thread is not None:
            thread.join(timeout=timeout_s)
