"""Exception types raised by the Proxmox API client."""

from __future__ import annotations

from typing import Any


class ProxmoxError(Exception):
    """Base exception for all client errors."""


class TransportError(ProxmoxError):
    """Connection, DNS or TLS failure. Never retried by the client."""


class Timeout(ProxmoxError):
    """A network call or task wait ran past its deadline."""


class HttpError(ProxmoxError):
    """The server answered with a non-2xx status."""

    def __init__(
        self,
        status: int,
        message: str = "",
        errors: dict[str, Any] | None = None,
    ) -> None:
        self.status = status
        self.message = message
        self.errors = errors or {}
        super().__init__(self._describe())

    def _describe(self) -> str:
        text = f"api error ({self.status}): {self.message}"
        if self.errors:
            details = " | ".join(f"{k}: {v}" for k, v in self.errors.items())
            text += f" ({details})"
        return text


class AuthError(HttpError):
    """Bad credentials or a rejected API token."""

    def __init__(self, message: str, status: int = 401) -> None:
        super().__init__(status, message)


class ValidationError(HttpError):
    """The server rejected one or more field values."""

    @property
    def field(self) -> str | None:
        """Name of the first offending field, when the server reported one."""
        for name in self.errors:
            return name
        return None


class ServerError(HttpError):
    """5xx response. Transient, the caller decides whether to retry."""


class SessionExpired(ProxmoxError):
    """A previously valid ticket was rejected; log in again before the next call."""


class TaskFailed(ProxmoxError):
    """An asynchronous server task finished with an error status."""

    def __init__(self, upid: str, exit_status: str, log: list[str] | None = None) -> None:
        self.upid = upid
        self.exit_status = exit_status
        self.log = log or []
        super().__init__(f"task error: task id: {upid} message: {exit_status}")


class GuestIdInUse(ProxmoxError):
    """A create call lost the race for a guest id another client took first."""

    def __init__(self, guest_id: int) -> None:
        self.guest_id = guest_id
        super().__init__(f"guest id {guest_id} is already in use")
