"""Connection settings and configuration documents."""

from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Mapping

import yaml

from proxmox_api.encoding import Secret
from proxmox_api.executor import DEFAULT_TIMEOUT
from proxmox_api.session import ApiTokenCredential, Credential, PasswordCredential

_TOKEN_USER_RE = re.compile(r"^[^\s@!]+@[^\s@!]+![^\s@!]+$")


class ConfigError(ValueError):
    """Settings are missing or malformed."""


@dataclass
class ClientSettings:
    api_url: str = ""
    user: str = ""
    password: str = field(default="", repr=False)
    otp: str = ""
    insecure: bool = False
    debug: bool = False
    timeout: float = DEFAULT_TIMEOUT
    proxy_url: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    def credential(self) -> Credential:
        """API token credential for ``user@realm!token`` users, password otherwise."""
        if not self.api_url or not self.user or not self.password:
            raise ConfigError(
                "credentials required. Set PM_API_URL, PM_USER and PM_PASS "
                "environment variables."
            )
        if _TOKEN_USER_RE.match(self.user):
            user_id, _, token_name = self.user.partition("!")
            return ApiTokenCredential(user_id, token_name, Secret(self.password))
        return PasswordCredential(self.user, Secret(self.password), self.otp or None)


def parse_headers(raw: str) -> dict[str, str]:
    """Parse ``Key,Value,Key,Value`` into a header mapping."""
    if not raw:
        return {}
    parts = raw.split(",")
    if len(parts) % 2:
        raise ConfigError("Header key(s) and value(s) not even. Check your PM_HTTP_HEADERS env.")
    return {parts[i].strip(): parts[i + 1].strip() for i in range(0, len(parts), 2)}


def load_settings(args: Any, environ: Mapping[str, str] | None = None) -> ClientSettings:
    """Build settings from the global CLI flags and the PM_* environment."""
    env = os.environ if environ is None else environ
    return ClientSettings(
        api_url=env.get("PM_API_URL", ""),
        user=env.get("PM_USER", ""),
        password=env.get("PM_PASS", ""),
        otp=env.get("PM_OTP", ""),
        insecure=bool(getattr(args, "insecure", False)),
        debug=bool(getattr(args, "debug", False)),
        timeout=float(getattr(args, "timeout", None) or DEFAULT_TIMEOUT),
        proxy_url=getattr(args, "proxyurl", None) or "",
        headers=parse_headers(env.get("PM_HTTP_HEADERS", "")),
    )


def load_document(path: str | None = None, stream: IO[str] | None = None) -> dict[str, Any]:
    """Read a YAML (or JSON) mapping from ``path``, or from ``stream``/stdin."""
    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"config file not found: {config_path}")
        text = config_path.read_text()
    else:
        text = (stream or sys.stdin).read()
    document = yaml.safe_load(text) if text.strip() else {}
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError("configuration document must be a mapping")
    return document
