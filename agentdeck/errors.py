"""Error types raised by the host client and the session store."""

from __future__ import annotations


class HostError(RuntimeError):
    """The agent host refused a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LaunchError(HostError):
    """An agent session could not be launched."""
