"""Tracking of asynchronous server tasks.

Operations like start, stop, clone and delete answer with a UPID instead
of a result, e.g.::

    UPID:pve-test:002860A9:051E01C1:67536165:qmstart:102:root@pam:

The tracker polls ``/nodes/<node>/tasks/<upid>/status`` at a fixed
interval until the task reports an exit status or the deadline passes.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from proxmox_api.errors import (
    ServerError,
    TaskFailed,
    Timeout,
    TransportError,
)

if TYPE_CHECKING:
    from proxmox_api.client import ProxmoxClient

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0
LOG_CHUNK_SIZE = 510  # same page size the web UI uses
LOG_TAIL_LINES = 20

_TRANSIENT = (TransportError, ServerError, Timeout)


@dataclass(frozen=True)
class TaskHandle:
    upid: str
    node: str
    operation: str = ""
    object_id: str = ""
    user: str = ""

    @classmethod
    def parse(cls, upid: str) -> TaskHandle:
        parts = upid.split(":")
        if len(parts) < 8 or parts[0] != "UPID" or not parts[1]:
            raise ValueError(f"invalid task id: {upid!r}")
        return cls(upid=upid, node=parts[1], operation=parts[5], object_id=parts[6], user=parts[7])

    @property
    def path(self) -> str:
        return f"/nodes/{self.node}/tasks/{self.upid}"


@dataclass
class TaskResult:
    handle: TaskHandle
    exit_status: str
    status: dict[str, Any] = field(default_factory=dict)


def task_from_data(data: Any) -> TaskHandle | None:
    """Return a handle when ``data`` is a UPID, None for synchronous results."""
    if isinstance(data, str) and data.startswith("UPID:"):
        return TaskHandle.parse(data)
    return None


def is_success(exit_status: str) -> bool:
    return exit_status.startswith("OK") or exit_status.startswith("WARNINGS")


class TaskTracker:
    """Waits for server tasks to finish."""

    def __init__(
        self,
        client: ProxmoxClient,
        interval: float = POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.interval = interval
        self._clock = clock
        self._sleep = sleep

    def status(self, handle: TaskHandle) -> dict[str, Any]:
        return self.client.get(f"{handle.path}/status") or {}

    def log(self, handle: TaskHandle, start: int = 0, limit: int = LOG_CHUNK_SIZE) -> tuple[list[str], int]:
        """Return ``(lines, total)`` for one chunk of the task log."""
        resp = self.client.request("GET", f"{handle.path}/log", params={"start": start, "limit": limit})
        entries = resp.data or []
        total = int(resp.body.get("total", len(entries)))
        return [e.get("t", "") for e in entries], total

    def log_tail(self, handle: TaskHandle, lines: int = LOG_TAIL_LINES) -> list[str]:
        head, total = self.log(handle, 0, LOG_CHUNK_SIZE)
        if total <= len(head):
            return head[-lines:]
        tail, _ = self.log(handle, max(total - lines, 0), lines)
        return tail

    def cancel(self, handle: TaskHandle) -> None:
        self.client.delete(handle.path)

    def wait(self, handle: TaskHandle, timeout: float) -> TaskResult:
        """Block until the task ends or ``timeout`` seconds pass.

        Transient failures reading the status are tolerated until the
        deadline; a task whose status could not be read in time still
        ends in Timeout, never in success.

        Raises:
            TaskFailed: The task ended with an error exit status.
            Timeout: The deadline passed first.
        """
        deadline = self._clock() + timeout
        failures = 0
        last_error: Exception | None = None
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            try:
                status = self.client.request(
                    "GET", f"{handle.path}/status", timeout=remaining,
                ).data or {}
            except _TRANSIENT as e:
                failures += 1
                last_error = e
                logger.warning("reading status of %s failed (%d in a row): %s", handle.upid, failures, e)
            else:
                failures = 0
                exit_status = status.get("exitstatus")
                if exit_status is not None:
                    return self._finish(handle, str(exit_status), status)
                logger.debug("task %s still %s", handle.upid, status.get("status", "running"))

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(self.interval, remaining))

        raise Timeout(f"wait timeout for: {handle.upid}") from last_error

    def _finish(self, handle: TaskHandle, exit_status: str, status: dict[str, Any]) -> TaskResult:
        if is_success(exit_status):
            return TaskResult(handle, exit_status, status)
        try:
            tail = self.log_tail(handle)
        except _TRANSIENT as e:
            logger.warning("could not read log of failed task %s: %s", handle.upid, e)
            tail = []
        raise TaskFailed(handle.upid, exit_status, tail)
