"""Form field encoding for the Proxmox API.

The server parses form values with several different decoders, and each
accepts a different set of literal characters. Every profile keeps
alphanumerics and ``-_.~`` as-is and percent-escapes control and
non-ASCII bytes (as UTF-8). They differ on the punctuation below:

  PATH     - ``$&+:=@`` literal, like a URL path segment
  TOKEN    - ``!'()*`` literal, for ordinary form values and token secrets
  KEY_BLOB - ``$&`` literal, for SSH public keys
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Iterable, Mapping
from urllib.parse import quote, unquote, unquote_to_bytes


class Profile(enum.Enum):
    """Escaping profile; the value is the extra set of literal characters."""

    PATH = "$&+:=@"
    TOKEN = "!'()*"
    KEY_BLOB = "$&"


class Secret:
    """A string that never shows up in reprs or log output."""

    __slots__ = ("_value",)

    def __init__(self, value: str) -> None:
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Secret) and other._value == self._value

    def __hash__(self) -> int:
        return hash(self._value)

    def __repr__(self) -> str:
        return "Secret('******')"

    __str__ = __repr__


def encode(value: str | bytes, profile: Profile = Profile.TOKEN) -> str:
    """Percent-escape ``value`` under ``profile``.

    Text is escaped as UTF-8; bytes are escaped as they are. Spaces are
    always escaped as ``%20``. Mapping them to ``+`` would collide with a
    literal ``+`` in the PATH profile.
    """
    if not value:
        return ""
    if isinstance(value, bytes):
        return quote(value, safe=profile.value)
    return quote(value, safe=profile.value, encoding="utf-8", errors="strict")


def decode(value: str) -> str:
    """Inverse of :func:`encode` for every profile."""
    return unquote(value, encoding="utf-8", errors="strict")


def decode_bytes(value: str) -> bytes:
    """Inverse of :func:`encode` for byte input."""
    return unquote_to_bytes(value)


def render(value: Any) -> str:
    """Turn a structured value into the string the server expects."""
    if isinstance(value, Secret):
        return value.reveal()
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value) if isinstance(value, (set, frozenset)) else value
        return ",".join(render(v) for v in items)
    if value is None:
        return ""
    return str(value)


def encode_ssh_keys(keys: Iterable[str]) -> str:
    """Escape authorized keys for the cloud-init ``sshkeys`` option.

    The server decodes this option once more after form decoding, so the
    result still goes through the regular form encoding.
    """
    return "".join(encode(key.strip(), Profile.KEY_BLOB) + "%0A" for key in keys if key.strip())


@dataclass(frozen=True)
class WireValue:
    """A field value plus the escaping profile its field requires."""

    value: Any
    profile: Profile = Profile.TOKEN

    def text(self) -> str:
        return render(self.value)

    def encoded(self) -> str:
        return encode(self.text(), self.profile)


def form_body(payload: Mapping[str, Any] | Iterable[tuple[str, Any]]) -> str:
    """Serialize a payload to ``application/x-www-form-urlencoded``.

    Plain values are wrapped in a TOKEN profile WireValue.
    """
    items = payload.items() if isinstance(payload, Mapping) else payload
    parts = []
    for key, value in items:
        if not isinstance(value, WireValue):
            value = WireValue(value)
        parts.append(f"{key}={value.encoded()}")
    return "&".join(parts)
