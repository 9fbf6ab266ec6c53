"""Shared fixtures: an in-memory executor and a fake clock."""

from dataclasses import dataclass, field
from typing import Any

import pytest

from proxmox_api.client import ProxmoxClient
from proxmox_api.encoding import Secret
from proxmox_api.executor import ApiResponse
from proxmox_api.session import ApiTokenCredential

API_URL = "https://pve.test:8006/api2/json"


@dataclass
class Call:
    method: str
    path: str
    body: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)


class FakeExecutor:
    """Routes (method, path) to queued responses.

    A queued item may be response data, an ApiResponse, an exception
    instance, or a callable taking the Call. The last item of a queue
    repeats.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.calls: list[Call] = []

    def add(self, method, path, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def set(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def execute(self, method, path, body=None, params=None, headers=None, timeout=None, sensitive=False):
        call = Call(method, path, body, dict(params or {}), dict(headers or {}))
        self.calls.append(call)
        queue = self.routes.get((method, path))
        if not queue:
            raise AssertionError(f"unexpected request: {method} {path}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item):
            item = item(call)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, ApiResponse):
            return item
        return ApiResponse(status=200, data=item, body={"data": item})

    def writes(self):
        return [c for c in self.calls if c.method in ("POST", "PUT", "DELETE")]


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def client(executor):
    credential = ApiTokenCredential("root@pam", "ci", Secret("s3cret"))
    return ProxmoxClient(API_URL, credential, executor=executor, task_timeout=30)


@pytest.fixture
def clock():
    return FakeClock()
