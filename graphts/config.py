"""Configuration of the transaction service and the services it talks to."""

from __future__ import annotations

import ipaddress
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from graphts.errors import SerializationError

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

LOCALHOST = ipaddress.IPv4Address("127.0.0.1")
DEFAULT_TS_PORT = 25003
DEFAULT_LS_PORT = 25002
DEFAULT_SS_PORT = 25001
DEFAULT_WORKER_THREADS = 4
DEFAULT_MAX_TRANSACTIONS = 1000
DEFAULT_TIMEOUT_MS = 5000

_U16_MAX = 0xFFFF
_U32_MAX = 0xFFFFFFFF
_U64_MAX = 0xFFFFFFFFFFFFFFFF


@dataclass
class ServerConfig:
    """Where the transaction service listens and how much it may take on."""

    ip: IPAddress = LOCALHOST
    port: int = DEFAULT_TS_PORT
    worker_threads: int = DEFAULT_WORKER_THREADS
    max_transactions: int = DEFAULT_MAX_TRANSACTIONS


@dataclass
class LsConfig:
    """How to reach the log service."""

    ip: IPAddress = LOCALHOST
    port: int = DEFAULT_LS_PORT
    timeout_ms: int = DEFAULT_TIMEOUT_MS


@dataclass
class SsConfig:
    """How to reach the storage service."""

    ip: IPAddress = LOCALHOST
    port: int = DEFAULT_SS_PORT
    timeout_ms: int = DEFAULT_TIMEOUT_MS


def _parse_ip(value: Any, where: str) -> IPAddress:
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    if not isinstance(value, str):
        raise SerializationError(f"{where}: expected an IP address string")
    try:
        return ipaddress.ip_address(value)
    except ValueError as exc:
        raise SerializationError(f"{where}: invalid IP address {value!r}") from exc


def _parse_uint(value: Any, where: str, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise SerializationError(f"{where}: expected an integer")
    if not 0 <= value <= maximum:
        raise SerializationError(f"{where}: {value} is out of range 0..{maximum}")
    return value


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    if name not in data:
        raise SerializationError(f"missing field `{name}`")
    section = data[name]
    if not isinstance(section, Mapping):
        raise SerializationError(f"`{name}` must be a table")
    return section


def _endpoint_fields(section: Mapping[str, Any], name: str, default_port: int) -> dict[str, Any]:
    return {
        "ip": _parse_ip(section.get("ip", LOCALHOST), f"{name}.ip"),
        "port": _parse_uint(section.get("port", default_port), f"{name}.port", _U16_MAX),
        "timeout_ms": _parse_uint(
            section.get("timeout_ms", DEFAULT_TIMEOUT_MS), f"{name}.timeout_ms", _U64_MAX
        ),
    }


@dataclass
class TsConfig:
    """Complete configuration: own server plus the LS and SS endpoints."""

    server: ServerConfig = field(default_factory=ServerConfig)
    ls: LsConfig = field(default_factory=LsConfig)
    ss: SsConfig = field(default_factory=SsConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TsConfig:
        """Build a configuration from nested mappings; missing fields take defaults."""
        if not isinstance(data, Mapping):
            raise SerializationError("configuration must be a table")
        server = _section(data, "server")
        return cls(
            server=ServerConfig(
                ip=_parse_ip(server.get("ip", LOCALHOST), "server.ip"),
                port=_parse_uint(server.get("port", DEFAULT_TS_PORT), "server.port", _U16_MAX),
                worker_threads=_parse_uint(
                    server.get("worker_threads", DEFAULT_WORKER_THREADS),
                    "server.worker_threads",
                    _U64_MAX,
                ),
                max_transactions=_parse_uint(
                    server.get("max_transactions", DEFAULT_MAX_TRANSACTIONS),
                    "server.max_transactions",
                    _U64_MAX,
                ),
            ),
            ls=LsConfig(**_endpoint_fields(_section(data, "ls"), "ls", DEFAULT_LS_PORT)),
            ss=SsConfig(**_endpoint_fields(_section(data, "ss"), "ss", DEFAULT_SS_PORT)),
        )

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """Return the configuration as plain nested dictionaries."""
        return {
            "server": {
                "ip": str(self.server.ip),
                "port": self.server.port,
                "worker_threads": self.server.worker_threads,
                "max_transactions": self.server.max_transactions,
            },
            "ls": {"ip": str(self.ls.ip), "port": self.ls.port, "timeout_ms": self.ls.timeout_ms},
            "ss": {"ip": str(self.ss.ip), "port": self.ss.port, "timeout_ms": self.ss.timeout_ms},
        }

    def server_addr(self) -> tuple[str, int]:
        """The (host, port) pair the server binds to."""
        return str(self.server.ip), self.server.port

    def ls_addr(self) -> str:
        """URL of the log service."""
        return f"http://{self.ls.ip}:{self.ls.port}"

    def ss_addr(self) -> str:
        """URL of the storage service."""
        return f"http://{self.ss.ip}:{self.ss.port}"