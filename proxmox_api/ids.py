"""Guest id allocation.

Ids below 100 are reserved by the server. The inventory can change
between a lookup here and a later create, so ``next_free`` is advisory:
creates must handle GuestIdInUse and allocate again.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Iterable

from proxmox_api.errors import GuestIdInUse, HttpError

if TYPE_CHECKING:
    from proxmox_api.client import ProxmoxClient

GUEST_ID_MIN = 100
GUEST_ID_MAX = 999_999_999

_ID_IN_USE = re.compile(r"(?:VM|CT) (\d+) already exists|vmid.*already (?:exists|in use)", re.IGNORECASE)


class GuestId(int):
    """Guest id in ``100..999999999``."""

    def __new__(cls, value: Any) -> GuestId:
        number = int(value)
        if number < GUEST_ID_MIN:
            raise ValueError(f"guestID should be greater than {GUEST_ID_MIN - 1}")
        if number > GUEST_ID_MAX:
            raise ValueError(f"guestID should be less than {GUEST_ID_MAX + 1}")
        return super().__new__(cls, number)


def first_free(used: Iterable[int], start: int = GUEST_ID_MIN) -> GuestId:
    taken = set(used)
    candidate = max(start, GUEST_ID_MIN)
    while candidate in taken:
        candidate += 1
    return GuestId(candidate)


def highest(used: Iterable[int]) -> GuestId:
    return GuestId(max(used, default=GUEST_ID_MIN))


def id_in_use_error(err: HttpError, guest_id: int) -> GuestIdInUse | None:
    """Return GuestIdInUse when ``err`` says ``guest_id`` is taken."""
    texts = [err.message, *(str(v) for v in err.errors.values())]
    for text in texts:
        match = _ID_IN_USE.search(text)
        if match and (match.group(1) is None or int(match.group(1)) == guest_id):
            return GuestIdInUse(guest_id)
    return None


class IdentityAllocator:
    """Queries the guest inventory for free and used ids."""

    def __init__(self, client: ProxmoxClient) -> None:
        self.client = client

    def inventory(self) -> list[dict[str, Any]]:
        return self.client.get("/cluster/resources", params={"type": "vm"}) or []

    def used_ids(self) -> set[int]:
        return {int(guest["vmid"]) for guest in self.inventory() if "vmid" in guest}

    def next_free(self, start: int | None = None) -> GuestId:
        """First id at or above ``start`` (default the floor) not in use."""
        floor = GUEST_ID_MIN if start is None else GuestId(start)
        return first_free(self.used_ids(), floor)

    def exists(self, guest_id: int) -> bool:
        return GuestId(guest_id) in self.used_ids()

    def max(self) -> GuestId:
        """Highest id in use, or the floor when there are no guests."""
        return highest(self.used_ids())
