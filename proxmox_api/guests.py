"""Guest (virtual machine and container) operations.

Covers:
  - Inventory: listing guests and locating a guest by id
  - Power state changes tracked to completion (start, stop, shutdown, ...)
  - Creating a guest with id allocation, and idempotent deletion
  - Reading and updating a guest's configuration
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from proxmox_api.client import ProxmoxClient
from proxmox_api.encoding import WireValue, encode_ssh_keys
from proxmox_api.errors import GuestIdInUse, HttpError, ProxmoxError
from proxmox_api.ids import GuestId, id_in_use_error
from proxmox_api.resources import is_missing
from proxmox_api.tasks import TaskResult

logger = logging.getLogger(__name__)

GUEST_TYPES = ("qemu", "lxc")
STATE_CHANGES = ("start", "stop", "shutdown", "reboot", "reset", "suspend", "resume")
# Only VMs support these; containers answer with 501.
_QEMU_ONLY = {"reset"}

_CREATE_ATTEMPTS = 3


@dataclass(frozen=True)
class GuestRef:
    """Where a guest lives."""

    guest_id: GuestId
    node: str
    guest_type: str  # "qemu" or "lxc"
    name: str = ""

    @property
    def path(self) -> str:
        return f"/nodes/{self.node}/{self.guest_type}/{self.guest_id}"


class GuestNotFound(ProxmoxError):
    def __init__(self, guest_id: int) -> None:
        self.guest_id = guest_id
        super().__init__(f"guest does not exist: {guest_id}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def list_guests(client: ProxmoxClient) -> list[dict[str, Any]]:
    """All guests in the cluster, as reported by the resource inventory."""
    return client.ids.inventory()


def find_guest(client: ProxmoxClient, guest_id: int) -> GuestRef | None:
    wanted = GuestId(guest_id)
    for guest in list_guests(client):
        if int(guest.get("vmid", 0)) == wanted:
            return GuestRef(wanted, guest["node"], guest["type"], guest.get("name", ""))
    return None


def get_guest(client: ProxmoxClient, guest_id: int) -> GuestRef:
    ref = find_guest(client, guest_id)
    if ref is None:
        raise GuestNotFound(guest_id)
    return ref


def get_status(client: ProxmoxClient, guest_id: int) -> dict[str, Any]:
    ref = get_guest(client, guest_id)
    return client.get(f"{ref.path}/status/current") or {}


def get_config(client: ProxmoxClient, guest_id: int) -> dict[str, Any]:
    ref = get_guest(client, guest_id)
    return client.get(f"{ref.path}/config") or {}


def change_state(
    client: ProxmoxClient,
    guest_id: int,
    action: str,
    params: Mapping[str, Any] | None = None,
    timeout: float | None = None,
) -> TaskResult | None:
    """Run a power state change and wait for its task.

    Args:
        client: An authenticated ProxmoxClient.
        guest_id: The guest to act on.
        action: One of STATE_CHANGES.
        params: Extra options, e.g. ``{"forceStop": 1}`` for shutdown.
        timeout: Task deadline in seconds; defaults to the client's.
    """
    if action not in STATE_CHANGES:
        raise ValueError(f"unknown action {action!r}, expected one of {', '.join(STATE_CHANGES)}")
    ref = get_guest(client, guest_id)
    if action in _QEMU_ONLY and ref.guest_type != "qemu":
        raise ValueError(f"{action} is only supported for virtual machines")
    data = client.post(f"{ref.path}/status/{action}", dict(params or {}))
    return client.run_task(data, timeout)


def delete_guest(
    client: ProxmoxClient,
    guest_id: int,
    purge: bool = False,
    timeout: float | None = None,
) -> bool:
    """Delete a guest. Returns False when it did not exist."""
    ref = find_guest(client, guest_id)
    if ref is None:
        return False
    params = {"purge": 1} if purge else None
    try:
        data = client.delete(ref.path, params=params)
    except HttpError as e:
        if is_missing(e):
            return False
        raise
    client.run_task(data, timeout)
    return True


def create_guest(
    client: ProxmoxClient,
    node: str,
    guest_type: str,
    params: Mapping[str, Any],
    guest_id: int | None = None,
    timeout: float | None = None,
) -> GuestId:
    """Create a guest from raw API parameters and return its id.

    Without ``guest_id`` an id is allocated, and allocated again when another
    client takes it first. An explicit ``guest_id`` that is taken raises
    GuestIdInUse.
    """
    if guest_type not in GUEST_TYPES:
        raise ValueError(f"guest type must be one of {', '.join(GUEST_TYPES)}")
    attempts = 1 if guest_id is not None else _CREATE_ATTEMPTS
    candidate = GuestId(guest_id) if guest_id is not None else client.ids.next_free()
    for attempt in range(1, attempts + 1):
        payload = _guest_payload(params)
        payload["vmid"] = WireValue(candidate)
        try:
            data = client.post(f"/nodes/{node}/{guest_type}", payload)
        except HttpError as e:
            in_use = id_in_use_error(e, candidate)
            if in_use is None:
                raise
            if attempt == attempts:
                raise in_use from e
            logger.info("guest id %d was taken, allocating another", candidate)
            candidate = client.ids.next_free(candidate + 1)
            continue
        client.run_task(data, timeout)
        return candidate
    raise GuestIdInUse(candidate)


def update_config(
    client: ProxmoxClient,
    guest_id: int,
    params: Mapping[str, Any],
    timeout: float | None = None,
) -> TaskResult | None:
    """Apply configuration options. VM config updates may run as a task."""
    ref = get_guest(client, guest_id)
    # POST is the asynchronous variant and only exists for VMs.
    method = "POST" if ref.guest_type == "qemu" else "PUT"
    data = client.request(method, f"{ref.path}/config", payload=_guest_payload(params)).data
    return client.run_task(data, timeout)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _guest_payload(params: Mapping[str, Any]) -> dict[str, Any]:
    payload = dict(params)
    keys = payload.get("sshkeys")
    if isinstance(keys, (list, tuple)):
        payload["sshkeys"] = encode_ssh_keys(keys)
    return payload
