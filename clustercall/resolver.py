"""
Service address resolution.

Turns a logical service name into the URL the dispatch client posts to::

    http://billing.svc.cluster.local:9000/

Resolution order:
    1. ``alias[service]`` -- full URL override, returned verbatim.
    2. ``{protocol}://{service}[.{namespace}][:{port}]{path}`` where the
       port is a bare int override, else ``port[service]``, else
       ``port["_all"]``, else omitted.
"""

from __future__ import annotations

from typing import Mapping, Optional

from clustercall.config import WILDCARD_PORT, ClusterConfig, ConfigStore


def resolve_port(config: ClusterConfig, service: str) -> Optional[int]:
    """Return the port for *service*, or None when no port applies."""
    port = config.port
    if isinstance(port, int) and not isinstance(port, bool):
        return port or None
    if isinstance(port, Mapping):
        return port.get(service) or port.get(WILDCARD_PORT) or None
    return None


def resolve_url(config: ClusterConfig, service: str) -> str:
    alias = config.alias.get(service)
    if alias:
        return alias

    url = f"{config.protocol}://{service}"
    if config.namespace:
        url += f".{config.namespace}"
    port = resolve_port(config, service)
    if port:
        url += f":{port}"
    return url + (config.path or "/")


class AddressResolver:
    """Resolve service names against the current config snapshot."""

    def __init__(self, store: ConfigStore):
        self.store = store

    def resolve(self, service: str) -> str:
        return resolve_url(self.store.current, service)
