"""Proxmox VE REST API session client."""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping

from proxmox_api.encoding import form_body
from proxmox_api.errors import ServerError, TransportError
from proxmox_api.executor import DEFAULT_TIMEOUT, ApiResponse, RequestExecutor
from proxmox_api.ids import IdentityAllocator
from proxmox_api.resources import ResourceKind, ResourceManager
from proxmox_api.session import Credential, Session
from proxmox_api.tasks import TaskHandle, TaskResult, TaskTracker, task_from_data

logger = logging.getLogger(__name__)


class ProxmoxClient:
    """Handles authentication and HTTP requests to the Proxmox VE API."""

    def __init__(
        self,
        api_url: str,
        credential: Credential,
        verify_ssl: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
        proxy: str | None = None,
        headers: Mapping[str, str] | None = None,
        task_timeout: float = DEFAULT_TIMEOUT,
        executor: RequestExecutor | None = None,
    ) -> None:
        self.api_url = api_url
        self.task_timeout = task_timeout
        self.executor = executor or RequestExecutor(
            api_url, verify_ssl=verify_ssl, timeout=timeout, proxy=proxy,
        )
        self.session = Session(self.executor, credential, headers)
        self.tasks = TaskTracker(self)
        self.ids = IdentityAllocator(self)

    def login(self) -> None:
        """Authenticate; only password credentials talk to the server."""
        self.session.login()

    def logout(self) -> None:
        self.session.logout()

    def resources(self, kind: ResourceKind) -> ResourceManager:
        return ResourceManager(self, kind)

    # -- raw requests ---------------------------------------------------------

    def request(
        self,
        method: str,
        path: str,
        payload: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ApiResponse:
        body = form_body(payload) if payload is not None else None
        return self.session.request(method, path, body=body, params=params, timeout=timeout)

    def get(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        return self.request("GET", path, params=params).data

    def post(self, path: str, payload: Mapping[str, Any] | None = None) -> Any:
        return self.request("POST", path, payload=payload or {}).data

    def put(self, path: str, payload: Mapping[str, Any] | None = None) -> Any:
        return self.request("PUT", path, payload=payload or {}).data

    def delete(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        return self.request("DELETE", path, params=params).data

    def get_retryable(self, path: str, tries: int = 3, params: Mapping[str, Any] | None = None) -> Any:
        """GET that retries server and transport errors with linear back-off."""
        if tries < 1:
            raise ValueError(f"tries must be at least 1, got {tries}")
        for attempt in range(1, tries + 1):
            try:
                return self.get(path, params=params)
            except (ServerError, TransportError) as e:
                if attempt == tries:
                    raise
                logger.debug("GET %s failed (attempt %d/%d): %s", path, attempt, tries, e)
                time.sleep(attempt)

    # -- tasks ----------------------------------------------------------------

    def run_task(self, data: Any, timeout: float | None = None) -> TaskResult | None:
        """Wait for the task ``data`` refers to; None for synchronous results."""
        handle = task_from_data(data)
        if handle is None:
            return None
        return self.wait_for_task(handle, timeout)

    def wait_for_task(self, handle: TaskHandle, timeout: float | None = None) -> TaskResult:
        return self.tasks.wait(handle, self.task_timeout if timeout is None else timeout)

    # -- cluster --------------------------------------------------------------

    def version(self) -> dict[str, Any]:
        return self.get("/version") or {}

    def nodes(self) -> list[dict[str, Any]]:
        return self.get_retryable("/nodes") or []

    def __enter__(self):
        self.login()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logout()
        return False
