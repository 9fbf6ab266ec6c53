"""Desired-versus-current reconciliation.

Create sends every field that is not UNSET, because an omitted field on
create means "server default". Update sends only fields that differ from
the current snapshot, because an omitted field on update means "leave
unchanged".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Mapping, Union

from proxmox_api.encoding import WireValue
from proxmox_api.fields import CLEARED, UNSET, DesiredField, FieldSpec, Value, desired

Payload = dict[str, WireValue]


@dataclass(frozen=True)
class Create:
    payload: Payload


@dataclass(frozen=True)
class Update:
    identifier: str
    payload: Payload


@dataclass(frozen=True)
class NoOp:
    pass


ReconciliationPlan = Union[Create, Update, NoOp]


class ResourceConfig:
    """Base for desired configurations.

    Subclasses are dataclasses whose attributes are DesiredField values and
    list their FieldSpecs in FIELDS; exactly one spec is the identity.
    """

    FIELDS: ClassVar[tuple[FieldSpec, ...]] = ()

    @classmethod
    def identity_spec(cls) -> FieldSpec:
        for spec in cls.FIELDS:
            if spec.identity:
                return spec
        raise TypeError(f"{cls.__name__} declares no identity field")

    def identifier(self) -> str:
        spec = self.identity_spec()
        field = getattr(self, spec.attr)
        if not isinstance(field, Value):
            raise ValueError(f"{spec.attr} must be set")
        return str(field.value)

    def desired_fields(self) -> list[tuple[FieldSpec, DesiredField]]:
        return [(spec, getattr(self, spec.attr)) for spec in self.FIELDS]

    def validate(self) -> None:
        self.identifier()
        for spec, field in self.desired_fields():
            if not isinstance(field, (Value, type(UNSET), type(CLEARED))):
                raise ValueError(f"{spec.attr}: expected UNSET, CLEARED or Value, got {field!r}")
            if isinstance(field, Value):
                try:
                    spec.normalize(field.value)
                except (TypeError, ValueError) as e:
                    raise ValueError(f"{spec.attr}: {e}") from e

    def to_wire_fields(self, current: Mapping[str, Any] | None = None) -> Payload:
        """Payload for create (``current`` is None) or update."""
        payload: Payload = {}
        for spec, field in self.desired_fields():
            if field is UNSET:
                continue
            value = spec.resolve(field)
            if current is not None:
                if spec.identity:
                    continue
                if value == spec.normalize(current.get(spec.key)):
                    continue
            payload[spec.key] = spec.wire(value)
        return payload

    @classmethod
    def from_wire_fields(cls, raw: Mapping[str, Any]) -> ResourceConfig:
        """Build a config with every field the server reported."""
        values = {}
        for spec in cls.FIELDS:
            if spec.key in raw:
                values[spec.attr] = desired(raw[spec.key])
        return cls(**values)

    @classmethod
    def from_document(cls, identifier: str, document: Mapping[str, Any] | None) -> ResourceConfig:
        """Build a config from a parsed YAML/JSON document.

        Absent keys stay UNSET; null or empty values become CLEARED.
        Document keys may use either the attribute or the API name.
        """
        document = document or {}
        by_name = {}
        for spec in cls.FIELDS:
            by_name[spec.attr] = spec
            by_name[spec.key] = spec
        unknown = sorted(set(document) - set(by_name))
        if unknown:
            raise ValueError(f"unknown fields for {cls.__name__}: {', '.join(unknown)}")
        values: dict[str, Any] = {}
        for name, raw in document.items():
            values[by_name[name].attr] = desired(raw)
        values[cls.identity_spec().attr] = Value(identifier)
        return cls(**values)


def plan(desired_config: ResourceConfig, current: Mapping[str, Any] | None = None) -> ReconciliationPlan:
    """Choose create, update or no-op for ``desired_config``.

    ``current`` is the raw record as read from the server, or None when the
    resource does not exist.
    """
    if all(field is UNSET for _, field in desired_config.desired_fields()):
        return NoOp()
    payload = desired_config.to_wire_fields(current)
    if current is None:
        return Create(payload)
    if not payload:
        return NoOp()
    return Update(desired_config.identifier(), payload)
