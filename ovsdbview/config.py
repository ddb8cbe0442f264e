"""App configuration and connection request models."""

from __future__ import annotations

from pathlib import Path

import tomllib

from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import DEFAULT_SSH_PORT, EndpointSpec, ForwarderKind, TunnelSpec, parse_address, parse_jump_host

CONFIG_FILE = Path.home() / ".config" / "ovsdbview" / "config.toml"
DEFAULT_HISTORY_FILE = Path.home() / ".ovsdbview" / "connection_history.json"
DEFAULT_DATABASE = "Open_vSwitch"


class TunnelConfig(BaseModel):
    """SSH tunnel settings in their persisted/wire shape."""

    model_config = ConfigDict(populate_by_name=True)

    host: str
    port: int = DEFAULT_SSH_PORT
    user: str = ""
    key_file: str = Field(default="", alias="keyFile")
    jump_hosts: list[str] = Field(default_factory=list, alias="jumpHosts")
    local_forwarder_type: str = Field(default=ForwarderKind.TCP.value, alias="localForwarderType")

    @field_validator("jump_hosts", mode="before")
    @classmethod
    def _null_jump_hosts(cls, value: object) -> object:
        return [] if value is None else value

    def to_spec(self) -> TunnelSpec:
        """Convert to the runtime spec, validating the forwarder kind and jump hosts."""

        try:
            kind = ForwarderKind(self.local_forwarder_type or ForwarderKind.TCP.value)
        except ValueError:
            raise ValueError(f"Unsupported forwarder type: {self.local_forwarder_type}") from None
        return TunnelSpec(
            ssh_host=self.host,
            ssh_port=self.port or DEFAULT_SSH_PORT,
            ssh_user=self.user,
            key_file=self.key_file,
            jump_hosts=tuple(parse_jump_host(jump, default_user=self.user or None) for jump in self.jump_hosts),
            forwarder_kind=kind,
        )


class EndpointConfig(BaseModel):
    """One endpoint descriptor of a connect request or history record."""

    model_config = ConfigDict(populate_by_name=True)

    endpoint: str
    tunnel: TunnelConfig | None = None

    def to_spec(self) -> EndpointSpec:
        parse_address(self.endpoint)
        return EndpointSpec(
            address=self.endpoint,
            tunnel=self.tunnel.to_spec() if self.tunnel else None,
        )


class ConnectRequest(BaseModel):
    """Endpoints to connect plus the database to open."""

    endpoints: list[EndpointConfig] = Field(default_factory=list)
    database: str = DEFAULT_DATABASE


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    default_database: str = DEFAULT_DATABASE
    hop_timeout: float = 10.0
    request_timeout: float = 30.0
    keepalive_interval: float = 0.0
    known_hosts: str | None = None
    history_file: str | None = None
    log_level: str = "WARNING"

    @property
    def history_path(self) -> Path:
        """Location of the persisted connection history."""

        if self.history_file:
            return Path(self.history_file).expanduser()
        return DEFAULT_HISTORY_FILE

    def with_updates(self, **updates: object) -> AppConfig:
        """Return a copy with the given fields replaced."""

        return self.model_copy(update=updates)


def normalize_endpoints(endpoints: Sequence[EndpointConfig]) -> list[EndpointConfig]:
    """Trim user input, drop blank endpoints, and fill tunnel defaults."""

    cleaned: list[EndpointConfig] = []
    for entry in endpoints:
        address = entry.endpoint.strip()
        if not address:
            continue
        tunnel = entry.tunnel
        if tunnel is not None:
            host = tunnel.host.strip()
            if not host:
                tunnel = None
            else:
                tunnel = tunnel.model_copy(
                    update={
                        "host": host,
                        "user": tunnel.user.strip(),
                        "key_file": tunnel.key_file.strip(),
                        "port": tunnel.port or DEFAULT_SSH_PORT,
                        "local_forwarder_type": tunnel.local_forwarder_type.strip() or ForwarderKind.TCP.value,
                        "jump_hosts": [jump.strip() for jump in tunnel.jump_hosts if jump.strip()],
                    }
                )
        cleaned.append(EndpointConfig(endpoint=address, tunnel=tunnel))
    return cleaned


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()
    return AppConfig(**data)


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f'default_database = "{config.default_database}"',
        f"hop_timeout = {config.hop_timeout}",
        f"request_timeout = {config.request_timeout}",
        f"keepalive_interval = {config.keepalive_interval}",
        f'log_level = "{config.log_level}"',
    ]
    if config.known_hosts:
        lines.append(f'known_hosts = "{config.known_hosts}"')
    if config.history_file:
        lines.append(f'history_file = "{config.history_file}"')
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    for key in ("default_database", "known_hosts", "history_file", "log_level"):
        value = raw.get(key)
        if isinstance(value, str):
            data[key] = value
    for key in ("hop_timeout", "request_timeout", "keepalive_interval"):
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
            data[key] = float(value)
    return data


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "ConnectRequest",
    "DEFAULT_DATABASE",
    "DEFAULT_HISTORY_FILE",
    "EndpointConfig",
    "TunnelConfig",
    "load_config",
    "normalize_endpoints",
    "save_config",
]
