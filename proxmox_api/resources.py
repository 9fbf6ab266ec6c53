"""Access-control resources: groups, pools, users and API tokens."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar
from urllib.parse import quote

from proxmox_api.encoding import Secret
from proxmox_api.errors import HttpError
from proxmox_api.fields import UNSET, DesiredField, FieldSpec, FieldType
from proxmox_api.reconcile import Create, NoOp, ReconciliationPlan, ResourceConfig, Update, plan

if TYPE_CHECKING:
    from proxmox_api.client import ProxmoxClient

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_USER_RE = re.compile(r"^[^\s:@!]+@[A-Za-z0-9_-]+$")
_MISSING_RE = re.compile(r"does not exist|no such", re.IGNORECASE)


def _check_name(value: str, what: str) -> None:
    if not value:
        raise ValueError(f"{what} may not be empty")
    if len(value) > 1000:
        raise ValueError(f"{what} may not exceed 1000 characters")
    if not _NAME_RE.match(value):
        raise ValueError(f"{what} may only contain letters, digits, '_' and '-'")


def is_missing(err: HttpError) -> bool:
    """True when the server reports the addressed object as absent."""
    return err.status == 404 or bool(_MISSING_RE.search(err.message))


# ---------------------------------------------------------------------------
# Configurations
# ---------------------------------------------------------------------------

@dataclass
class GroupConfig(ResourceConfig):
    name: DesiredField = UNSET
    comment: DesiredField = UNSET

    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        FieldSpec("name", "groupid", identity=True),
        FieldSpec("comment", "comment"),
    )

    def validate(self) -> None:
        super().validate()
        _check_name(self.identifier(), "group name")


@dataclass
class PoolConfig(ResourceConfig):
    name: DesiredField = UNSET
    comment: DesiredField = UNSET

    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        FieldSpec("name", "poolid", identity=True),
        FieldSpec("comment", "comment"),
    )

    def validate(self) -> None:
        super().validate()
        _check_name(self.identifier(), "pool name")


@dataclass
class UserConfig(ResourceConfig):
    user: DesiredField = UNSET  # user@realm
    comment: DesiredField = UNSET
    email: DesiredField = UNSET
    enable: DesiredField = UNSET
    expire: DesiredField = UNSET  # unix time, 0 never expires
    first_name: DesiredField = UNSET
    last_name: DesiredField = UNSET
    groups: DesiredField = UNSET
    keys: DesiredField = UNSET  # two-factor keys

    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        FieldSpec("user", "userid", identity=True),
        FieldSpec("comment", "comment"),
        FieldSpec("email", "email"),
        FieldSpec("enable", "enable", FieldType.BOOL, default=True),
        FieldSpec("expire", "expire", FieldType.INT),
        FieldSpec("first_name", "firstname"),
        FieldSpec("last_name", "lastname"),
        FieldSpec("groups", "groups", FieldType.LIST),
        FieldSpec("keys", "keys"),
    )

    def validate(self) -> None:
        super().validate()
        if not _USER_RE.match(self.identifier()):
            raise ValueError(f"invalid user id {self.identifier()!r}, expected user@realm")
        for spec, field in self.desired_fields():
            if spec.attr == "groups" and field is not UNSET:
                for group in spec.resolve(field):
                    _check_name(group, "group name")
            if spec.attr == "expire" and field is not UNSET and spec.resolve(field) < 0:
                raise ValueError("expire may not be negative")


@dataclass
class TokenConfig(ResourceConfig):
    token: DesiredField = UNSET  # user@realm!tokenid
    comment: DesiredField = UNSET
    expire: DesiredField = UNSET
    privilege_separation: DesiredField = UNSET

    FIELDS: ClassVar[tuple[FieldSpec, ...]] = (
        FieldSpec("token", "tokenid", identity=True),
        FieldSpec("comment", "comment"),
        FieldSpec("expire", "expire", FieldType.INT),
        FieldSpec("privilege_separation", "privsep", FieldType.BOOL, default=True),
    )

    def split(self) -> tuple[str, str]:
        user, sep, name = self.identifier().partition("!")
        if not sep:
            raise ValueError(f"invalid token id {self.identifier()!r}, expected user@realm!tokenid")
        return user, name

    def validate(self) -> None:
        super().validate()
        user, name = self.split()
        if not _USER_RE.match(user):
            raise ValueError(f"invalid user id {user!r}, expected user@realm")
        _check_name(name, "token name")


# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------

class ResourceKind(enum.Enum):
    GROUP = "group"
    POOL = "pool"
    USER = "user"
    TOKEN = "token"


@dataclass(frozen=True)
class KindInfo:
    config: type[ResourceConfig]
    collection: str
    label: str


KINDS: dict[ResourceKind, KindInfo] = {
    ResourceKind.GROUP: KindInfo(GroupConfig, "/access/groups", "Group"),
    ResourceKind.POOL: KindInfo(PoolConfig, "/pools", "Pool"),
    ResourceKind.USER: KindInfo(UserConfig, "/access/users", "User"),
    ResourceKind.TOKEN: KindInfo(TokenConfig, "/access/users", "Token"),
}


class ResourceManager:
    """CRUD for one resource kind, driven by the reconciler."""

    def __init__(self, client: ProxmoxClient, kind: ResourceKind) -> None:
        self.client = client
        self.kind = kind
        self.info = KINDS[kind]

    # -- paths ----------------------------------------------------------------

    def item_path(self, identifier: str) -> str:
        if self.kind is ResourceKind.TOKEN:
            user, _, name = identifier.partition("!")
            return f"/access/users/{quote(user, safe='@')}/token/{quote(name, safe='')}"
        return f"{self.info.collection}/{quote(identifier, safe='@')}"

    def config(self, identifier: str, document: dict[str, Any] | None = None) -> ResourceConfig:
        return self.info.config.from_document(identifier, document)

    # -- reads ----------------------------------------------------------------

    def get(self, identifier: str) -> dict[str, Any] | None:
        """Raw server record, or None when it does not exist."""
        try:
            data = self.client.get(self.item_path(identifier))
        except HttpError as e:
            if is_missing(e):
                return None
            raise
        if isinstance(data, list):  # newer servers answer pool reads with a list
            data = data[0] if data else {}
        record = dict(data or {})
        record.setdefault(self.info.config.identity_spec().key, identifier)
        return record

    def exists(self, identifier: str) -> bool:
        return self.get(identifier) is not None

    def list(self, user: str | None = None) -> list[dict[str, Any]]:
        if self.kind is ResourceKind.TOKEN:
            if not user:
                raise ValueError("listing tokens requires a user")
            return self.client.get(f"/access/users/{quote(user, safe='@')}/token") or []
        return self.client.get(self.info.collection) or []

    # -- writes ---------------------------------------------------------------

    def plan(self, desired_config: ResourceConfig) -> ReconciliationPlan:
        desired_config.validate()
        return plan(desired_config, self.get(desired_config.identifier()))

    def create(self, desired_config: ResourceConfig) -> Secret | None:
        """Create the resource; API tokens return their secret."""
        desired_config.validate()
        return self._apply(desired_config, Create(desired_config.to_wire_fields()))

    def update(self, desired_config: ResourceConfig) -> ReconciliationPlan:
        """Update an existing resource. Raises ValueError when it is absent."""
        desired_config.validate()
        current = self.get(desired_config.identifier())
        if current is None:
            raise ValueError(f"{self.info.label} ({desired_config.identifier()}) does not exist")
        result = plan(desired_config, current)
        self._apply(desired_config, result)
        return result

    def set(self, desired_config: ResourceConfig) -> tuple[ReconciliationPlan, Secret | None]:
        """Create or update, whichever the current state calls for."""
        result = self.plan(desired_config)
        return result, self._apply(desired_config, result)

    def delete(self, identifier: str) -> bool:
        """Delete the resource. Returns False when it did not exist."""
        try:
            self.client.delete(self.item_path(identifier))
        except HttpError as e:
            if is_missing(e):
                return False
            raise
        return True

    def _apply(self, desired_config: ResourceConfig, step: ReconciliationPlan) -> Secret | None:
        identifier = desired_config.identifier()
        if isinstance(step, NoOp):
            logger.debug("%s (%s) is up to date", self.info.label, identifier)
            return None
        if isinstance(step, Update):
            self.client.put(self.item_path(identifier), step.payload)
            return None
        if self.kind is ResourceKind.TOKEN:
            payload = dict(step.payload)
            payload.pop("tokenid", None)
            data = self.client.post(self.item_path(identifier), payload)
            value = (data or {}).get("value")
            return Secret(value) if value else None
        self.client.post(self.info.collection, step.payload)
        return None
