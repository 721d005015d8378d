"""
Configuration models for udsocks.

``ProxyConfig`` is the immutable snapshot shared by every session.
``ProxySettings`` mirrors the optional JSON settings file, whose values the
command line may override before the snapshot is built.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

PeerCheckPolicy = Literal["enforce", "disabled"]

DEFAULT_HANDSHAKE_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_RELAY_BUFFER_SIZE = 64 * 1024
DEFAULT_SHUTDOWN_GRACE = 5.0
DEFAULT_BACKLOG = 128


def _validate_uid(uid: int) -> int:
    if uid < 0:
        raise ValueError(f"Invalid user id {uid}: must not be negative")
    return uid


class ProxyConfig(BaseModel):
    """Read-only settings shared by the listener manager and all sessions."""

    model_config = ConfigDict(frozen=True)

    directory: str = Field(
        min_length=1,
        description="Publish directory holding the backend sockets",
    )
    own_uid: int = Field(
        default_factory=os.geteuid,
        ge=0,
        description="Effective user id of this process",
    )
    allowed_uids: frozenset[int] | None = Field(
        default=None,
        description="Peer user ids accepted on Unix-domain listeners (default: own_uid only)",
    )
    peer_check: PeerCheckPolicy = Field(
        default="enforce",
        description="Whether Unix-domain peers are checked against the allowed user ids",
    )
    handshake_timeout: float | None = Field(
        default=DEFAULT_HANDSHAKE_TIMEOUT,
        gt=0,
        description="Seconds allowed from accept to the success reply (None disables)",
    )
    connect_timeout: float | None = Field(
        default=DEFAULT_CONNECT_TIMEOUT,
        gt=0,
        description="Seconds allowed for the backend connect (None disables)",
    )
    idle_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds a relay may stay idle in both directions (None disables)",
    )
    relay_buffer_size: int = Field(
        default=DEFAULT_RELAY_BUFFER_SIZE,
        ge=1024,
        le=16 * 1024 * 1024,
        description="Maximum bytes moved per read in the relay",
    )
    shutdown_grace: float = Field(
        default=DEFAULT_SHUTDOWN_GRACE,
        ge=0,
        description="Seconds in-flight sessions may drain after shutdown begins",
    )
    backlog: int = Field(default=DEFAULT_BACKLOG, ge=1)

    @field_validator("allowed_uids", mode="before")
    @classmethod
    def validate_allowed_uids(cls, v: object) -> object:
        if v is None:
            return v
        return frozenset(_validate_uid(int(uid)) for uid in v)  # type: ignore[union-attr]

    @property
    def effective_allowed_uids(self) -> frozenset[int]:
        if self.allowed_uids is None:
            return frozenset({self.own_uid})
        return self.allowed_uids


class ProxySettings(BaseModel):
    """Partial configuration as read from the settings file."""

    directory: str | None = Field(default=None, min_length=1)
    listen: list[str] = Field(
        default_factory=list,
        description="Endpoint strings: Unix socket paths or ip:port",
    )
    allowed_uids: list[int] | None = None
    peer_check: PeerCheckPolicy | None = None
    handshake_timeout: float | None = Field(default=None, gt=0)
    connect_timeout: float | None = Field(default=None, gt=0)
    idle_timeout: float | None = Field(default=None, gt=0)
    relay_buffer_size: int | None = Field(default=None, ge=1024)
    shutdown_grace: float | None = Field(default=None, ge=0)
    backlog: int | None = Field(default=None, ge=1)

    @field_validator("listen", mode="before")
    @classmethod
    def validate_listen_nonempty(cls, v: list[str]) -> list[str]:
        for endpoint in v:
            if not endpoint:
                raise ValueError("Listen endpoints must not be empty strings")
        return v

    @field_validator("allowed_uids", mode="before")
    @classmethod
    def validate_allowed_uids(cls, v: list[int] | None) -> list[int] | None:
        if v is None:
            return v
        return [_validate_uid(int(uid)) for uid in v]


def build_config(settings: ProxySettings | None = None, **overrides: object) -> ProxyConfig:
    """
    Merge settings-file values with explicit overrides into a ProxyConfig.

    Overrides whose value is None are ignored so that unset CLI options fall
    back to the settings file, then to the model defaults.
    """
    values: dict[str, object] = {}
    if settings is not None:
        values.update(settings.model_dump(exclude_none=True, exclude={"listen"}))
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ProxyConfig.model_validate(values)


def load_settings(settings_path: str | Path) -> ProxySettings | None:
    """Load settings from a JSON file, returning None if not found or invalid."""
    path = Path(settings_path).expanduser()
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return _parse_settings_dict(data)
    except (json.JSONDecodeError, Exception):
        return None


def load_settings_from_string(raw: str) -> ProxySettings | None:
    """Parse settings from a JSON string."""
    try:
        data = json.loads(raw)
        return _parse_settings_dict(data)
    except (json.JSONDecodeError, Exception):
        return None


_CAMEL_RE = re.compile(r"([a-z0-9])([A-Z])")


def _camel_to_snake(name: str) -> str:
    return _CAMEL_RE.sub(r"\1_\2", name).lower()


def _normalize_keys(obj: object) -> object:
    """Recursively convert camelCase keys to snake_case."""
    if isinstance(obj, dict):
        return {_camel_to_snake(k): _normalize_keys(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_normalize_keys(item) for item in obj]
    return obj


def _parse_settings_dict(data: dict) -> ProxySettings:
    normalized = _normalize_keys(data)
    return ProxySettings.model_validate(normalized)
