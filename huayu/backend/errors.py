from __future__ import annotations


class ClientInputError(ValueError):
    """Request input the caller has to fix; surfaced as HTTP 400."""


class UpstreamError(RuntimeError):
    """The hosted model service rejected or failed a request."""

    def __init__(self, message: str, detail: str = "") -> None:
        super().__init__(message)
        self.detail = detail or message
