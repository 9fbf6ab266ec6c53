"""Authentication state for the Proxmox API.

Two credential types are supported:

  PasswordCredential - logs in once via ``/access/ticket`` and sends the
                       returned ticket as a cookie, plus the CSRF token on
                       state-changing requests.
  ApiTokenCredential - self-contained, sent as one Authorization header on
                       every request. No login call is needed.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Mapping, Union

from proxmox_api.encoding import Secret, form_body
from proxmox_api.errors import AuthError, SessionExpired
from proxmox_api.executor import ApiResponse, RequestExecutor

logger = logging.getLogger(__name__)

TICKET_COOKIE = "PVEAuthCookie"
CSRF_HEADER = "CSRFPreventionToken"
_READ_ONLY_METHODS = {"GET", "HEAD", "OPTIONS"}


@dataclass(frozen=True)
class PasswordCredential:
    username: str  # user@realm
    password: Secret
    otp: str | None = None


@dataclass(frozen=True)
class ApiTokenCredential:
    user_id: str  # user@realm
    token_name: str
    secret: Secret

    def header(self) -> str:
        return f"PVEAPIToken={self.user_id}!{self.token_name}={self.secret.reveal()}"


Credential = Union[PasswordCredential, ApiTokenCredential]


@dataclass(frozen=True)
class Ticket:
    ticket: str
    csrf_token: str
    issued_at: float


class Session:
    """Holds the active credential and attaches it to outgoing requests.

    The ticket pair is replaced as a whole under a lock, so concurrent
    requests never see a ticket from one login with the CSRF token of
    another.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        credential: Credential,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self.executor = executor
        self.credential = credential
        self.headers = dict(headers or {})
        self._lock = threading.Lock()
        self._ticket: Ticket | None = None

    # -- credential state ---------------------------------------------------

    @property
    def ticket(self) -> Ticket | None:
        with self._lock:
            return self._ticket

    @property
    def uses_ticket(self) -> bool:
        return isinstance(self.credential, PasswordCredential)

    def set_ticket(self, ticket: str, csrf_token: str) -> None:
        """Adopt a ticket obtained elsewhere, e.g. from an identity provider."""
        with self._lock:
            self._ticket = Ticket(ticket, csrf_token, time.time())

    def invalidate(self, expected: Ticket | None = None) -> None:
        """Forget the ticket; with ``expected``, only if it is still the current one."""
        with self._lock:
            if expected is None or self._ticket is expected:
                self._ticket = None

    def ticket_age(self) -> float | None:
        current = self.ticket
        if current is None:
            return None
        return time.time() - current.issued_at

    # -- login ----------------------------------------------------------------

    def login(self) -> None:
        """Obtain a ticket for a password credential. No-op for API tokens."""
        cred = self.credential
        if not isinstance(cred, PasswordCredential):
            return
        fields: dict[str, Any] = {"username": cred.username, "password": cred.password}
        if cred.otp:
            fields["otp"] = cred.otp
        try:
            resp = self.executor.execute(
                "POST", "/access/ticket", body=form_body(fields),
                headers=self.headers, sensitive=True,
            )
        except AuthError as e:
            raise AuthError(f"login failed for {cred.username}: {e.message}", e.status) from e

        data = resp.data
        if not isinstance(data, dict) or "ticket" not in data:
            raise AuthError(f"invalid login response for {cred.username}")
        if data.get("NeedTFA") in (1, True):
            # The ticket is only half authenticated, whether or not an OTP was sent.
            raise AuthError("missing TFA code")
        with self._lock:
            self._ticket = Ticket(data["ticket"], data.get("CSRFPreventionToken", ""), time.time())
        logger.debug("logged in as %s", cred.username)

    def logout(self) -> None:
        self.invalidate()

    # -- requests -----------------------------------------------------------

    def attach(self, method: str, headers: dict[str, str]) -> Ticket | None:
        """Add the credential headers for ``method`` to ``headers``.

        Returns the ticket that was attached, None for an API token.

        Raises:
            SessionExpired: A password session has no ticket (never logged in,
                logged out, or rejected earlier).
        """
        headers.update(self.headers)
        cred = self.credential
        if isinstance(cred, ApiTokenCredential):
            headers["Authorization"] = cred.header()
            return None
        current = self.ticket
        if current is None:
            raise SessionExpired("no valid session ticket, log in again")
        headers["Cookie"] = f"{TICKET_COOKIE}={current.ticket}"
        if method.upper() not in _READ_ONLY_METHODS:
            headers[CSRF_HEADER] = current.csrf_token
        return current

    def request(
        self,
        method: str,
        path: str,
        body: str | None = None,
        params: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ApiResponse:
        """Send an authenticated request.

        A rejected ticket clears the stored ticket, unless it was replaced
        in the meantime, and raises SessionExpired.
        A rejected API token raises AuthError. Neither is retried.
        """
        headers: dict[str, str] = {}
        sent = self.attach(method, headers)
        try:
            return self.executor.execute(
                method, path, body=body, params=params, headers=headers, timeout=timeout,
            )
        except AuthError as e:
            if not self.uses_ticket:
                raise
            # A newer ticket set meanwhile stays.
            self.invalidate(sent)
            raise SessionExpired(f"session ticket rejected: {e.message}") from e


def authenticate(
    executor: RequestExecutor,
    credential: Credential,
    headers: Mapping[str, str] | None = None,
) -> Session:
    """Build a ready-to-use Session for ``credential``."""
    session = Session(executor, credential, headers)
    session.login()
    return session
