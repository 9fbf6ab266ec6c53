"""CLI for managing a Proxmox VE cluster through its REST API.

Connection details come from the environment: PM_API_URL, PM_USER,
PM_PASS, PM_OTP and PM_HTTP_HEADERS. A PM_USER of the form
``user@realm!token`` authenticates with an API token (PM_PASS is the
token secret).

Usage examples:

  # Create or update a group from a YAML document
  python -m proxmox_api.cli set group admins --file group.yaml

  # Show a user
  python -m proxmox_api.cli get user alice@pve

  # Delete a pool (succeeds when the pool is already gone)
  python -m proxmox_api.cli delete pool staging

  # Start a guest and wait up to 60 seconds for the task
  python -m proxmox_api.cli --timeout 60 guest start 101

  # Next free guest id at or above 200
  python -m proxmox_api.cli id next --start 200
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable

from proxmox_api import guests
from proxmox_api.client import ProxmoxClient
from proxmox_api.config import ClientSettings, ConfigError, load_document, load_settings
from proxmox_api.errors import ProxmoxError
from proxmox_api.reconcile import Create, NoOp, Update
from proxmox_api.resources import KINDS, ResourceKind

Handler = Callable[[ProxmoxClient, argparse.Namespace], None]
ClientFactory = Callable[[ClientSettings], ProxmoxClient]


def _build_client(settings: ClientSettings) -> ProxmoxClient:
    """Create a ProxmoxClient from resolved settings."""
    return ProxmoxClient(
        settings.api_url,
        settings.credential(),
        verify_ssl=not settings.insecure,
        timeout=settings.timeout,
        proxy=settings.proxy_url or None,
        headers=settings.headers,
        task_timeout=settings.timeout,
    )


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _kind(args: argparse.Namespace) -> ResourceKind:
    return ResourceKind(args.kind)


def _label(args: argparse.Namespace) -> str:
    return KINDS[_kind(args)].label


# --- Sub-commands ---

def cmd_create(client: ProxmoxClient, args: argparse.Namespace) -> None:
    manager = client.resources(_kind(args))
    secret = manager.create(manager.config(args.id, load_document(args.file)))
    print(f"{_label(args)} ({args.id}) has been created")
    if secret is not None:
        _print_json({"tokenid": args.id, "value": secret.reveal()})


def cmd_update(client: ProxmoxClient, args: argparse.Namespace) -> None:
    manager = client.resources(_kind(args))
    result = manager.update(manager.config(args.id, load_document(args.file)))
    if isinstance(result, NoOp):
        print(f"{_label(args)} ({args.id}) is up to date")
    else:
        print(f"{_label(args)} ({args.id}) has been updated")


def cmd_set(client: ProxmoxClient, args: argparse.Namespace) -> None:
    manager = client.resources(_kind(args))
    result, secret = manager.set(manager.config(args.id, load_document(args.file)))
    if isinstance(result, Create):
        print(f"{_label(args)} ({args.id}) has been created")
    elif isinstance(result, Update):
        print(f"{_label(args)} ({args.id}) has been updated")
    else:
        print(f"{_label(args)} ({args.id}) is up to date")
    if secret is not None:
        _print_json({"tokenid": args.id, "value": secret.reveal()})


def cmd_get(client: ProxmoxClient, args: argparse.Namespace) -> None:
    record = client.resources(_kind(args)).get(args.id)
    if record is None:
        raise ProxmoxError(f"{_label(args).lower()} does not exist")
    _print_json(record)


def cmd_delete(client: ProxmoxClient, args: argparse.Namespace) -> None:
    if client.resources(_kind(args)).delete(args.id):
        print(f"{_label(args)} ({args.id}) has been deleted")
    else:
        print(f"{_label(args)} ({args.id}) did not exist")


def cmd_list(client: ProxmoxClient, args: argparse.Namespace) -> None:
    _print_json(client.resources(_kind(args)).list(user=args.user))


def cmd_guest(client: ProxmoxClient, args: argparse.Namespace) -> None:
    if args.action == "list":
        _print_json(guests.list_guests(client))
        return
    if args.id is None:
        raise ValueError(f"guest {args.action} requires a guest id")
    if args.action == "status":
        _print_json(guests.get_status(client, args.id))
    elif args.action == "delete":
        if guests.delete_guest(client, args.id, purge=args.purge):
            print(f"Guest with id ({args.id}) has been deleted")
        else:
            print(f"Guest with id ({args.id}) did not exist")
    else:
        guests.change_state(client, args.id, args.action)
        print(f"Guest with id ({args.id}) has been {_PAST_TENSE[args.action]}")


_PAST_TENSE = {
    "start": "started",
    "stop": "stopped",
    "shutdown": "shut down",
    "reboot": "rebooted",
    "reset": "reset",
    "suspend": "suspended",
    "resume": "resumed",
}


def cmd_id(client: ProxmoxClient, args: argparse.Namespace) -> None:
    if args.action == "next":
        print(f"Getting Next Free ID: {client.ids.next_free(args.start)}")
    elif args.action == "max":
        print(f"Max in use ID: {client.ids.max()}")
    else:
        if args.id is None:
            raise ValueError("id check requires a guest id")
        state = "in use" if client.ids.exists(args.id) else "free"
        print(f"Selected ID is {state}: {args.id}")


def cmd_node(client: ProxmoxClient, args: argparse.Namespace) -> None:
    _print_json(client.nodes())


def cmd_version(client: ProxmoxClient, args: argparse.Namespace) -> None:
    _print_json(client.version())


# --- Argument parser ---

def _resource_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("kind", choices=[k.value for k in ResourceKind])
    parser.add_argument("id", help="Resource identifier, e.g. a group name or user@realm")


def _document_args(parser: argparse.ArgumentParser) -> None:
    _resource_args(parser)
    parser.add_argument("--file", "-f", help="YAML/JSON config document (default: stdin)")


def _list_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("kind", choices=[k.value for k in ResourceKind])
    parser.add_argument("--user", help="Owner of the tokens to list (token only)")


def _guest_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "action",
        choices=["list", "status", "delete", *guests.STATE_CHANGES],
    )
    parser.add_argument("id", nargs="?", type=int, help="Guest id")
    parser.add_argument("--purge", action="store_true", help="Remove from backup jobs and HA on delete")


def _id_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("action", choices=["next", "max", "check"])
    parser.add_argument("id", nargs="?", type=int, help="Guest id (check only)")
    parser.add_argument("--start", type=int, help="Lowest id to consider (next only)")


def _node_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("action", nargs="?", choices=["list"], default="list")


@dataclass
class Command:
    name: str
    help: str
    handler: Handler
    configure: Callable[[argparse.ArgumentParser], None] | None = None


class CommandRegistry:
    """The set of sub-commands one CLI process exposes."""

    def __init__(self) -> None:
        self._commands: dict[str, Command] = {}

    def register(
        self,
        name: str,
        handler: Handler,
        help: str,
        configure: Callable[[argparse.ArgumentParser], None] | None = None,
    ) -> None:
        if name in self._commands:
            raise ValueError(f"command already registered: {name}")
        self._commands[name] = Command(name, help, handler, configure)

    def names(self) -> list[str]:
        return list(self._commands)

    def handler(self, name: str) -> Handler:
        return self._commands[name].handler

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="proxmox-api",
            description="Configure Proxmox VE from the API",
        )

        # Global connection args
        parser.add_argument("--insecure", "-i", action="store_true", help="TLS insecure mode")
        parser.add_argument("--debug", "-d", action="store_true", help="debug mode")
        parser.add_argument(
            "--timeout", "-t", type=float, default=300,
            help="API request and task timeout in seconds (default: 300)",
        )
        parser.add_argument("--proxyurl", "-p", help="Proxy URL to connect through")

        sub = parser.add_subparsers(dest="command", required=True)
        for command in self._commands.values():
            p = sub.add_parser(command.name, help=command.help)
            if command.configure:
                command.configure(p)
        return parser


def build_registry() -> CommandRegistry:
    registry = CommandRegistry()
    registry.register("create", cmd_create, "Create a resource from a config document", _document_args)
    registry.register("update", cmd_update, "Update an existing resource from a config document", _document_args)
    registry.register("set", cmd_set, "Create or update a resource from a config document", _document_args)
    registry.register("get", cmd_get, "Show a resource", _resource_args)
    registry.register("delete", cmd_delete, "Delete a resource", _resource_args)
    registry.register("list", cmd_list, "List resources of a kind", _list_args)
    registry.register("guest", cmd_guest, "Guest power state and lifecycle", _guest_args)
    registry.register("id", cmd_id, "Guest id queries", _id_args)
    registry.register("node", cmd_node, "List cluster nodes", _node_args)
    registry.register("version", cmd_version, "Show the server version")
    return registry


def _describe(args: argparse.Namespace) -> str:
    parts = [args.command]
    for attr in ("action", "kind"):
        if getattr(args, attr, None):
            parts.append(str(getattr(args, attr)))
    if getattr(args, "id", None) is not None:
        parts.append(f"({args.id})")
    return " ".join(parts)


def main(
    argv: list[str] | None = None,
    registry: CommandRegistry | None = None,
    client_factory: ClientFactory = _build_client,
) -> int:
    registry = registry or build_registry()
    parser = registry.build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    try:
        settings = load_settings(args)
        client = client_factory(settings)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        with client:
            registry.handler(args.command)(client, args)
    except (ProxmoxError, ValueError) as e:
        print(f"Error: {_describe(args)}: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
