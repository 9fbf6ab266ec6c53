"""Tri-state configuration fields.

A desired configuration distinguishes three cases per field:

  UNSET     - not mentioned, never sent
  CLEARED   - explicitly emptied, sent with the type's empty encoding
  Value(v)  - explicitly set to ``v``
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from proxmox_api.encoding import Profile, WireValue

T = TypeVar("T")


class _Unset:
    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


class _Cleared:
    _instance: _Cleared | None = None

    def __new__(cls) -> _Cleared:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CLEARED"


UNSET = _Unset()
CLEARED = _Cleared()


@dataclass(frozen=True)
class Value(Generic[T]):
    value: T


DesiredField = Union[_Unset, _Cleared, Value]


def desired(raw: Any) -> DesiredField:
    """Map a document value to a field: None or empty means CLEARED."""
    if isinstance(raw, (_Unset, _Cleared, Value)):
        return raw
    if raw is None or raw == "" or raw == [] or raw == {}:
        return CLEARED
    return Value(raw)


class FieldType(enum.Enum):
    STRING = "string"
    INT = "int"
    BOOL = "bool"
    LIST = "list"


_EMPTY = {
    FieldType.STRING: "",
    FieldType.INT: 0,
    FieldType.BOOL: False,
    FieldType.LIST: (),
}


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("", "0", "false", "no", "off"):
            return False
        raise ValueError(f"invalid boolean: {raw!r}")
    return bool(raw)


@dataclass(frozen=True)
class FieldSpec:
    """How one attribute of a config maps to an API key."""

    attr: str
    key: str
    type: FieldType = FieldType.STRING
    profile: Profile = Profile.TOKEN
    identity: bool = False
    # Value the server assumes when the key is missing from a read.
    default: Any = None

    @property
    def empty(self) -> Any:
        return _EMPTY[self.type]

    def normalize(self, raw: Any) -> Any:
        """Bring a desired or server-side value into one comparable form."""
        if raw is None:
            return self.empty if self.default is None else self.normalize(self.default)
        if self.type is FieldType.INT:
            return int(raw) if raw != "" else 0
        if self.type is FieldType.BOOL:
            return _to_bool(raw)
        if self.type is FieldType.LIST:
            items = raw.split(",") if isinstance(raw, str) else list(raw)
            return tuple(sorted(str(i).strip() for i in items if str(i).strip()))
        return str(raw)

    def resolve(self, field: DesiredField) -> Any:
        """Value the field asks for. Only valid for CLEARED and Value."""
        if field is CLEARED:
            return self.empty
        if isinstance(field, Value):
            return self.normalize(field.value)
        raise ValueError(f"{self.attr} is unset")

    def wire(self, value: Any) -> WireValue:
        return WireValue(list(value) if self.type is FieldType.LIST else value, self.profile)
