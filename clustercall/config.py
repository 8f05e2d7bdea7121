"""
ClusterCall configuration.

Configuration is an immutable :class:`ClusterConfig` snapshot held by a
:class:`ConfigStore`.  Runtime changes (port table, alias table) build a new
snapshot and publish it with a single reference swap, so a concurrent
resolver always sees one complete snapshot.

Config file (YAML, ``cluster:`` block optional)::

    cluster:
      service:
        name: orders
        type: api
      namespace: svc.cluster.local
      protocol: http
      port:
        _all: 8080
        billing: 9000
      alias:
        legacy: http://10.0.0.12:8000/dispatch
      path: /
      timeout: 40
      token_header: x-cluster-token
      debug: false

The shared secret is resolved separately (see :func:`resolve_shared_secret`)
and is never part of the snapshot.

Environment:
    CLUSTER_TOKEN       -- Shared secret used to sign/verify tokens
    CLUSTER_NAMESPACE   -- Default namespace suffix
    CLUSTER_PROTOCOL    -- Default protocol (default: http)
    CLUSTER_TIMEOUT     -- Default dispatch timeout in seconds (default: 40)
    CLUSTER_DEBUG       -- Log every dispatch when set to 1/true
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv

logger = logging.getLogger("ClusterCall.Config")

SECRET_ENV = "CLUSTER_TOKEN"
WILDCARD_PORT = "_all"
DEFAULT_TOKEN_HEADER = "x-cluster-token"

PortSpec = Union[int, Mapping[str, int]]


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ServiceIdentity:
    """Name and type of a service, carried in token claims as ``n`` / ``t``."""

    name: Optional[str] = None
    type: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]]) -> ServiceIdentity:
        d = d or {}
        return cls(name=d.get("name") or None, type=d.get("type") or None)


def _freeze_ports(port: Any) -> PortSpec:
    if isinstance(port, bool):
        raise ValueError("port must be an int or a mapping")
    if isinstance(port, int):
        return port
    if isinstance(port, Mapping):
        return MappingProxyType(dict(port))
    raise ValueError("port must be an int or a mapping")


@dataclass(frozen=True)
class ClusterConfig:
    """One complete, read-only view of the cluster settings."""

    service: ServiceIdentity = field(default_factory=ServiceIdentity)
    protocol: str = "http"
    namespace: Optional[str] = "svc.cluster.local"
    port: PortSpec = field(default_factory=lambda: MappingProxyType({WILDCARD_PORT: 8080}))
    alias: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    path: str = "/"
    timeout: float = 40.0
    token_header: str = DEFAULT_TOKEN_HEADER
    debug: bool = False

    def __post_init__(self):
        # Tables are stored read-only so a published snapshot cannot be torn.
        object.__setattr__(self, "port", _freeze_ports(self.port))
        object.__setattr__(self, "alias", MappingProxyType(dict(self.alias or {})))

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> ClusterConfig:
        """Build a snapshot from a plain dict, applying env and built-in defaults."""
        kwargs: Dict[str, Any] = {
            "service": ServiceIdentity.from_dict(d.get("service")),
            "protocol": d.get("protocol") or os.getenv("CLUSTER_PROTOCOL", "http"),
            "namespace": d.get(
                "namespace", os.getenv("CLUSTER_NAMESPACE", "svc.cluster.local")
            ),
            "path": d.get("path") or "/",
            "timeout": float(d.get("timeout") or os.getenv("CLUSTER_TIMEOUT", "40")),
            "token_header": d.get("token_header") or DEFAULT_TOKEN_HEADER,
            "debug": bool(d.get("debug", _env_flag("CLUSTER_DEBUG"))),
        }
        if d.get("port") is not None:
            kwargs["port"] = d["port"]
        if d.get("alias"):
            kwargs["alias"] = d["alias"]
        return cls(**kwargs)


class ConfigStore:
    """Atomically swappable holder of the current :class:`ClusterConfig`.

    Readers call :attr:`current` once per operation.  Writers are serialised
    among themselves; readers never take the lock.
    """

    def __init__(self, config: Optional[ClusterConfig] = None):
        self._config = config or ClusterConfig()
        self._write_lock = threading.Lock()

    @property
    def current(self) -> ClusterConfig:
        return self._config

    def publish(self, **changes: Any) -> ClusterConfig:
        """Publish a new snapshot with *changes* applied to the current one."""
        with self._write_lock:
            new = dataclasses.replace(self._config, **changes)
            self._config = new
        return new

    # ------------------------------------------------------------------
    # Port table
    # ------------------------------------------------------------------
    def set_ports(self, ports: Any) -> bool:
        """Replace the port table.

        Ignored unless *ports* is a non-empty mapping.  When the new table
        has no ``_all`` entry, the previous wildcard port is kept.

        Returns:
            True if a new table was published.
        """
        if not isinstance(ports, Mapping) or len(ports) == 0:
            logger.debug("set_ports ignored: %r", ports)
            return False
        with self._write_lock:
            table = dict(ports)
            previous = self._config.port
            if (
                WILDCARD_PORT not in table
                and isinstance(previous, Mapping)
                and previous.get(WILDCARD_PORT)
            ):
                table[WILDCARD_PORT] = previous[WILDCARD_PORT]
            self._config = dataclasses.replace(self._config, port=table)
        logger.info("Port table replaced (%d entries)", len(table))
        return True

    def get_ports(self) -> PortSpec:
        return self._config.port

    # ------------------------------------------------------------------
    # Alias table
    # ------------------------------------------------------------------
    def set_aliases(self, aliases: Optional[Mapping[str, str]]) -> None:
        """Replace the alias table wholesale; ``None`` or ``{}`` clears it."""
        self.publish(alias=dict(aliases or {}))
        logger.info("Alias table replaced (%d entries)", len(aliases or {}))

    def get_aliases(self) -> Mapping[str, str]:
        return self._config.alias


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
def load_dotenv_if_available() -> None:
    """Load a local ``.env`` file without overriding already-set variables."""
    if load_dotenv(override=False):
        logger.debug("Loaded .env file")


def resolve_shared_secret(
    explicit: Optional[Union[str, bytes]] = None,
    config: Optional[Mapping[str, Any]] = None,
) -> Optional[bytes]:
    """Resolve the shared signing secret.

    Resolution order:
        1. Explicit argument
        2. ``CLUSTER_TOKEN`` environment variable
        3. ``token`` key of the config dict

    Returns None when no secret is configured (authentication disabled).
    """
    value: Optional[Union[str, bytes]] = explicit
    if not value:
        value = os.getenv(SECRET_ENV)
        if value:
            logger.debug("Resolved shared secret from environment (%s)", SECRET_ENV)
    if not value and config and config.get("token"):
        value = config["token"]
        logger.debug("Resolved shared secret from config")
    if not value:
        return None
    return value.encode() if isinstance(value, str) else bytes(value)


def _read_source(source: Union[str, Path, Mapping[str, Any], None]) -> Dict[str, Any]:
    if source is None:
        return {}
    if isinstance(source, Mapping):
        raw: Any = dict(source)
    else:
        with open(source) as f:
            raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Cluster config must be a mapping (check YAML syntax)")
    block = raw.get("cluster", raw)
    if not isinstance(block, dict):
        raise ValueError("'cluster' block must be a mapping")
    return block


def load_config(
    source: Union[str, Path, Mapping[str, Any], None] = None,
    secret: Optional[Union[str, bytes]] = None,
) -> Tuple[ClusterConfig, Optional[bytes]]:
    """Load a config snapshot and the shared secret.

    Args:
        source: YAML file path, a config dict, or None for defaults.
        secret: Explicit shared secret; overrides env and config.

    Returns:
        ``(config, secret)`` where secret is None when signing is disabled.

    Raises:
        ValueError: If the config does not validate.
    """
    block = _read_source(source)
    ok, errors = validate_cluster_config(block)
    if not ok:
        for msg in errors:
            logger.error("Config error: %s", msg)
        raise ValueError("Invalid cluster config: " + "; ".join(errors))
    return ClusterConfig.from_dict(block), resolve_shared_secret(secret, block)


def validate_cluster_config(block: Any) -> Tuple[bool, List[str]]:
    """Validate a ``cluster`` config block.

    Returns:
        A ``(is_valid, errors)`` tuple.  ``is_valid`` is ``True`` only when
        ``errors`` is empty.
    """
    if not isinstance(block, Mapping):
        return False, ["Config must be a dict (check YAML syntax)"]

    errors: List[str] = []

    port = block.get("port")
    if port is not None:
        if isinstance(port, bool) or not isinstance(port, (int, Mapping)):
            errors.append("'port' must be an integer or a mapping of service -> port")
        elif isinstance(port, Mapping):
            for name, value in port.items():
                if isinstance(value, bool) or not isinstance(value, int):
                    errors.append(f"'port.{name}' must be an integer")

    alias = block.get("alias")
    if alias is not None:
        if not isinstance(alias, Mapping):
            errors.append("'alias' must be a mapping of service -> URL")
        else:
            for name, value in alias.items():
                if not isinstance(value, str) or not value:
                    errors.append(f"'alias.{name}' must be a non-empty URL string")

    timeout = block.get("timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            errors.append("'timeout' must be a positive number of seconds")

    path = block.get("path")
    if path is not None and (not isinstance(path, str) or not path.startswith("/")):
        errors.append("'path' must be a string starting with '/'")

    service = block.get("service")
    if service is not None and not isinstance(service, Mapping):
        errors.append("'service' must be a mapping with 'name' and 'type'")

    return len(errors) == 0, errors
