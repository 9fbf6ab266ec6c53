"""HTTP transport for the Proxmox REST API."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

import requests
import urllib3

from proxmox_api.errors import (
    AuthError,
    HttpError,
    ServerError,
    Timeout,
    TransportError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0
_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
_READ_CHUNK_SIZE = 64 * 1024


@dataclass
class ApiResponse:
    """A decoded 2xx response."""

    status: int
    data: Any = None
    body: dict[str, Any] = field(default_factory=dict)


class RequestExecutor:
    """Sends requests with one TLS policy, timeout and proxy, and classifies the results."""

    def __init__(
        self,
        api_url: str,
        verify_ssl: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
        proxy: str | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.proxy = proxy
        self.http = requests.Session()
        self.http.verify = verify_ssl
        # Only the configured proxy is used, never the environment.
        self.http.trust_env = False
        if proxy:
            self.http.proxies = {"http": proxy, "https": proxy}
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def execute(
        self,
        method: str,
        path: str,
        body: str | None = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        sensitive: bool = False,
    ) -> ApiResponse:
        """Send one request and return the decoded response.

        Args:
            method: HTTP method.
            path: API path relative to the api url, e.g. ``/nodes``.
            body: Already form-encoded body for POST/PUT.
            params: Query parameters.
            headers: Extra headers (credentials are attached by the session).
            timeout: Limit for the whole exchange; defaults to the executor's.
            sensitive: Keep the request body out of the debug log.

        Raises:
            Timeout: The exchange did not finish in time.
            TransportError: Connection, DNS or TLS failure.
            AuthError: 401/403.
            ValidationError: Any other 4xx.
            ServerError: 5xx.
        """
        limit = self.timeout if timeout is None else timeout
        url = f"{self.api_url}{path}"
        send_headers = {"Accept": "application/json"}
        if body is not None:
            send_headers["Content-Type"] = _FORM_CONTENT_TYPE
        send_headers.update(headers or {})

        if logger.isEnabledFor(logging.DEBUG):
            shown = "<hidden>" if sensitive else body
            logger.debug(">>>>>>>>>> REQUEST: %s %s params=%s body=%s", method, url, params, shown)

        deadline = time.monotonic() + limit
        try:
            resp = self.http.request(
                method,
                url,
                params=params,
                data=body.encode("utf-8") if body is not None else None,
                headers=send_headers,
                timeout=limit,
                stream=True,
            )
        except requests.exceptions.Timeout as e:
            raise Timeout(f"{method} {path} timed out after {limit}s") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"error performing http request: {e}") from e

        try:
            content = _read_body(resp, deadline)
        except Timeout as e:
            raise Timeout(f"{method} {path} timed out after {limit}s") from e
        finally:
            resp.close()

        text = content.decode(resp.encoding or "utf-8", errors="replace")
        logger.debug("<<<<<<<<<< RESULT: %s %s", resp.status_code, "<hidden>" if sensitive else text)
        return _classify(resp, text)


def _read_body(resp: requests.Response, deadline: float) -> bytes:
    """Read the streamed body, giving up once ``deadline`` passes.

    Each read returns whatever the socket has buffered, with the socket
    timeout cut to the time left.
    """
    chunks = []
    sock = getattr(getattr(resp.raw, "connection", None), "sock", None)
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise Timeout("deadline passed while reading the response")
        if sock is not None:
            sock.settimeout(remaining)
        try:
            chunk = resp.raw.read1(_READ_CHUNK_SIZE, decode_content=True)
        except (urllib3.exceptions.ReadTimeoutError, TimeoutError) as e:
            raise Timeout("deadline passed while reading the response") from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransportError(f"error reading http response: {e}") from e
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def _decode_body(text: str) -> dict[str, Any] | None:
    """Parse a JSON body; None when it is not JSON."""
    # The server sometimes answers with a lone newline.
    if not text.strip():
        return {}
    try:
        decoded = json.loads(text)
    except ValueError:
        return None
    return decoded if isinstance(decoded, dict) else {"data": decoded}


def _classify(resp: requests.Response, text: str) -> ApiResponse:
    body = _decode_body(text)
    status = resp.status_code
    if 200 <= status <= 299:
        if body is None:
            # e.g. a captive portal or proxy login page
            raise TransportError(f"invalid JSON response (status {status}): {text.strip()[:80]!r}")
        return ApiResponse(status=status, data=body.get("data"), body=body)

    body = body or {}
    message = str(body.get("message") or resp.reason or "").rstrip("\n")
    errors = body.get("errors")
    if not isinstance(errors, dict):
        errors = {}

    if status in (401, 403):
        raise AuthError(message or "authentication failure", status=status)
    if 400 <= status <= 499:
        raise ValidationError(status, message, errors)
    if status >= 500:
        raise ServerError(status, message, errors)
    raise HttpError(status, message, errors)
