"""Tests for the command line front end."""

import json

import pytest

from proxmox_api import cli
from proxmox_api.errors import ServerError, ValidationError

UPID = "UPID:pve:00001234:00005678:67536165:qmstart:101:root@pam:"


@pytest.fixture
def run(client, monkeypatch):
    monkeypatch.setenv("PM_API_URL", "https://pve.test:8006/api2/json")
    monkeypatch.setenv("PM_USER", "root@pam!ci")
    monkeypatch.setenv("PM_PASS", "s3cret")

    def _run(*argv, registry=None):
        return cli.main(list(argv), registry=registry, client_factory=lambda settings: client)

    return _run


class TestRegistry:

    def test_default_commands(self):
        assert cli.build_registry().names() == [
            "create", "update", "set", "get", "delete", "list", "guest", "id", "node", "version",
        ]

    def test_duplicate_command(self):
        registry = cli.CommandRegistry()
        registry.register("version", cli.cmd_version, "Show the server version")
        with pytest.raises(ValueError, match="already registered"):
            registry.register("version", cli.cmd_version, "again")

    def test_separate_registries_do_not_share_commands(self, run, capsys):
        calls = []
        registry = cli.CommandRegistry()
        registry.register("ping", lambda client, args: calls.append(args.command), "Ping")
        assert run("ping", registry=registry) == 0
        assert calls == ["ping"]
        assert "ping" not in cli.build_registry().names()


class TestResourceCommands:

    def test_set_creates_from_file(self, run, executor, tmp_path, capsys):
        doc = tmp_path / "group.yaml"
        doc.write_text("comment: platform admins\n")
        executor.add("GET", "/access/groups/admins", ValidationError(404, "Not Found"))
        executor.add("POST", "/access/groups", None)
        assert run("set", "group", "admins", "--file", str(doc)) == 0
        assert capsys.readouterr().out.strip() == "Group (admins) has been created"
        assert executor.writes()[0].body == "groupid=admins&comment=platform%20admins"

    def test_update_up_to_date(self, run, executor, tmp_path, capsys):
        doc = tmp_path / "pool.yaml"
        doc.write_text("comment: c\n")
        executor.add("GET", "/pools/p1", {"comment": "c"})
        assert run("update", "pool", "p1", "-f", str(doc)) == 0
        assert capsys.readouterr().out.strip() == "Pool (p1) is up to date"

    def test_create_token_prints_secret(self, run, executor, tmp_path, capsys):
        doc = tmp_path / "token.yaml"
        doc.write_text("privsep: false\n")
        executor.add("POST", "/access/users/root@pam/token/ci", {"value": "abc-123"})
        assert run("create", "token", "root@pam!ci", "--file", str(doc)) == 0
        out = capsys.readouterr().out
        assert "Token (root@pam!ci) has been created" in out
        assert json.loads(out.split("\n", 1)[1]) == {"tokenid": "root@pam!ci", "value": "abc-123"}

    def test_delete_missing(self, run, executor, capsys):
        executor.add("DELETE", "/access/groups/g1", ServerError(500, "group 'g1' does not exist"))
        assert run("delete", "group", "g1") == 0
        assert capsys.readouterr().out.strip() == "Group (g1) did not exist"

    def test_get_missing_fails(self, run, executor, capsys):
        executor.add("GET", "/access/groups/g1", ServerError(500, "group 'g1' does not exist"))
        assert run("get", "group", "g1") == 1
        assert capsys.readouterr().err.strip() == "Error: get group (g1): group does not exist"

    def test_get_prints_json(self, run, executor, capsys):
        executor.add("GET", "/access/users/alice@pve", {"email": "a@x.test"})
        assert run("get", "user", "alice@pve") == 0
        assert json.loads(capsys.readouterr().out) == {"email": "a@x.test", "userid": "alice@pve"}

    def test_unknown_document_field_fails(self, run, tmp_path, capsys):
        doc = tmp_path / "group.yaml"
        doc.write_text("colour: blue\n")
        assert run("create", "group", "g1", "--file", str(doc)) == 1
        assert "unknown fields" in capsys.readouterr().err


class TestGuestCommands:

    @pytest.fixture(autouse=True)
    def inventory(self, executor):
        executor.add("GET", "/cluster/resources", [
            {"vmid": 100, "node": "pve", "type": "qemu"},
            {"vmid": 101, "node": "pve", "type": "qemu"},
        ])

    def test_start(self, run, executor, capsys):
        executor.add("POST", "/nodes/pve/qemu/101/status/start", UPID)
        executor.add("GET", f"/nodes/pve/tasks/{UPID}/status", {"status": "stopped", "exitstatus": "OK"})
        assert run("guest", "start", "101") == 0
        assert capsys.readouterr().out.strip() == "Guest with id (101) has been started"

    def test_failed_task_exits_nonzero(self, run, executor, capsys):
        executor.add("POST", "/nodes/pve/qemu/101/status/stop", UPID)
        executor.add("GET", f"/nodes/pve/tasks/{UPID}/status", {"status": "stopped", "exitstatus": "can't lock file"})
        executor.add("GET", f"/nodes/pve/tasks/{UPID}/log", [])
        assert run("guest", "stop", "101") == 1
        assert "task error" in capsys.readouterr().err

    def test_guest_id_required(self, run, capsys):
        assert run("guest", "start") == 1
        assert "requires a guest id" in capsys.readouterr().err

    def test_next_id(self, run, capsys):
        assert run("id", "next") == 0
        assert capsys.readouterr().out.strip() == "Getting Next Free ID: 102"

    def test_max_id(self, run, capsys):
        assert run("id", "max") == 0
        assert capsys.readouterr().out.strip() == "Max in use ID: 101"

    def test_check_id(self, run, capsys):
        assert run("id", "check", "100") == 0
        assert capsys.readouterr().out.strip() == "Selected ID is in use: 100"


def test_version(run, executor, capsys):
    executor.add("GET", "/version", {"version": "8.2.4", "release": "8.2"})
    assert run("version") == 0
    assert json.loads(capsys.readouterr().out)["release"] == "8.2"


def test_missing_credentials(monkeypatch, capsys):
    for name in ("PM_API_URL", "PM_USER", "PM_PASS"):
        monkeypatch.delenv(name, raising=False)
    assert cli.main(["version"]) == 1
    assert "credentials required" in capsys.readouterr().err


def test_node_list(run, executor, capsys):
    executor.add("GET", "/nodes", [{"node": "pve", "status": "online"}])
    assert run("node", "list") == 0
    assert json.loads(capsys.readouterr().out) == [{"node": "pve", "status": "online"}]


def test_list_groups(run, executor, capsys):
    executor.add("GET", "/access/groups", [{"groupid": "admins"}])
    assert run("list", "group") == 0
    assert json.loads(capsys.readouterr().out) == [{"groupid": "admins"}]
