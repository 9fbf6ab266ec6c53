"""Tests for task handles and the task tracker."""

import pytest

from proxmox_api.errors import (
    ServerError,
    SessionExpired,
    TaskFailed,
    Timeout,
    TransportError,
)
from proxmox_api.executor import ApiResponse
from proxmox_api.tasks import TaskHandle, TaskTracker, is_success, task_from_data

UPID = "UPID:pve:002860A9:051E01C1:67536165:qmstart:101:root@pam:"
STATUS = f"/nodes/pve/tasks/{UPID}/status"
LOG = f"/nodes/pve/tasks/{UPID}/log"


@pytest.fixture
def tracker(client, clock):
    return TaskTracker(client, interval=1.0, clock=clock, sleep=clock.sleep)


@pytest.fixture
def handle():
    return TaskHandle.parse(UPID)


class TestTaskHandle:

    def test_parse(self, handle):
        assert handle.node == "pve"
        assert handle.operation == "qmstart"
        assert handle.object_id == "101"
        assert handle.user == "root@pam"
        assert handle.path == f"/nodes/pve/tasks/{UPID}"

    @pytest.mark.parametrize("upid", ["", "UPID:pve:1", "TASK:pve:a:b:c:d:e:f:", "UPID::a:b:c:d:e:f:"])
    def test_parse_rejects_malformed(self, upid):
        with pytest.raises(ValueError):
            TaskHandle.parse(upid)

    def test_synchronous_results_have_no_task(self):
        assert task_from_data(None) is None
        assert task_from_data({"vmid": 101}) is None
        assert task_from_data(UPID).upid == UPID

    @pytest.mark.parametrize(
        "exit_status,expected",
        [("OK", True), ("WARNINGS: 2", True), ("unexpected status", False), ("command failed", False)],
    )
    def test_is_success(self, exit_status, expected):
        assert is_success(exit_status) is expected


class TestWait:

    def test_returns_once_task_stops_ok(self, executor, tracker, handle, clock):
        executor.add("GET", STATUS, {"status": "running"}, {"status": "running"}, {"status": "stopped", "exitstatus": "OK"})
        result = tracker.wait(handle, timeout=30)
        assert result.exit_status == "OK"
        assert clock.sleeps == [1.0, 1.0]

    def test_warnings_are_success(self, executor, tracker, handle):
        executor.add("GET", STATUS, {"status": "stopped", "exitstatus": "WARNINGS: 1"})
        assert tracker.wait(handle, timeout=5).exit_status == "WARNINGS: 1"

    def test_failure_carries_log_tail(self, executor, tracker, handle):
        executor.add("GET", STATUS, {"status": "stopped", "exitstatus": "storage 'local' does not exist"})
        executor.add("GET", LOG, ApiResponse(200, [{"n": 1, "t": "starting"}, {"n": 2, "t": "TASK ERROR: boom"}], {"total": 2}))
        with pytest.raises(TaskFailed) as exc_info:
            tracker.wait(handle, timeout=5)
        err = exc_info.value
        assert err.upid == UPID
        assert err.exit_status == "storage 'local' does not exist"
        assert err.log == ["starting", "TASK ERROR: boom"]

    def test_failure_without_readable_log(self, executor, tracker, handle):
        executor.add("GET", STATUS, {"status": "stopped", "exitstatus": "failed"})
        executor.add("GET", LOG, ServerError(500, "unavailable"))
        with pytest.raises(TaskFailed) as exc_info:
            tracker.wait(handle, timeout=5)
        assert exc_info.value.log == []

    def test_times_out_at_the_deadline(self, executor, tracker, handle, clock):
        executor.add("GET", STATUS, {"status": "running"})
        with pytest.raises(Timeout):
            tracker.wait(handle, timeout=3)
        assert clock.now == 3.0
        assert len(executor.calls) == 3

    def test_last_sleep_is_cut_to_the_deadline(self, executor, client, handle, clock):
        tracker = TaskTracker(client, interval=2.0, clock=clock, sleep=clock.sleep)
        executor.add("GET", STATUS, {"status": "running"})
        with pytest.raises(Timeout):
            tracker.wait(handle, timeout=3)
        assert clock.sleeps == [2.0, 1.0]

    def test_transient_errors_are_tolerated(self, executor, tracker, handle):
        executor.add(
            "GET", STATUS,
            TransportError("connection reset"),
            ServerError(502, "bad gateway"),
            {"status": "stopped", "exitstatus": "OK"},
        )
        assert tracker.wait(handle, timeout=10).exit_status == "OK"

    def test_sustained_errors_end_in_timeout(self, executor, tracker, handle):
        cause = ServerError(503, "unavailable")
        executor.add("GET", STATUS, cause)
        with pytest.raises(Timeout) as exc_info:
            tracker.wait(handle, timeout=4)
        assert exc_info.value.__cause__ is cause

    def test_session_expiry_is_not_swallowed(self, executor, tracker, handle):
        executor.add("GET", STATUS, SessionExpired("ticket rejected"))
        with pytest.raises(SessionExpired):
            tracker.wait(handle, timeout=10)

    def test_status_reads_get_the_remaining_time(self, executor, tracker, handle):
        executor.add("GET", STATUS, {"status": "running"}, {"status": "stopped", "exitstatus": "OK"})
        requests_seen = []
        original = executor.execute

        def record(*args, **kwargs):
            requests_seen.append(kwargs.get("timeout"))
            return original(*args, **kwargs)

        executor.execute = record
        tracker.wait(handle, timeout=5)
        assert requests_seen == [5.0, 4.0]


class TestLog:

    def test_long_log_tail_reads_last_chunk(self, executor, tracker, handle):
        first = ApiResponse(200, [{"n": i, "t": f"line {i}"} for i in range(510)], {"total": 600})
        last = ApiResponse(200, [{"n": i, "t": f"line {i}"} for i in range(580, 600)], {"total": 600})
        executor.add("GET", LOG, first, last)
        tail = tracker.log_tail(handle)
        assert tail[0] == "line 580"
        assert len(tail) == 20
        assert executor.calls[-1].params == {"start": 580, "limit": 20}

    def test_cancel(self, executor, tracker, handle):
        executor.add("DELETE", f"/nodes/pve/tasks/{UPID}", None)
        tracker.cancel(handle)
        assert executor.calls[0].method == "DELETE"


def test_client_waits_for_upid_results(executor, client):
    executor.add("GET", STATUS, {"status": "stopped", "exitstatus": "OK"})
    assert client.run_task(None) is None
    assert client.run_task(UPID).exit_status == "OK"
