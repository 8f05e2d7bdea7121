"""
ClusterCall facade.

Wires the config store, token codec, address resolver, dispatch client and
authorization gates together for one service process.

Usage::

    from clustercall import Cluster

    cluster = Cluster.from_config("cluster.yaml")
    result = await cluster.dispatch("billing", "invoice.create", {"order": 42})

    # inbound
    cluster.authorize_proxy(call)          # 403 CLUSTER.PROXY on rejection
    cluster.authorize(call, required=False)
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from clustercall.config import (
    ClusterConfig,
    ConfigStore,
    PortSpec,
    ServiceIdentity,
    load_config,
    load_dotenv_if_available,
)
from clustercall.dispatch import MAX_REDIRECTS, DispatchClient, DispatchResult
from clustercall.gate import AuthorizationGate, CallContext, GateOutcome
from clustercall.resolver import AddressResolver
from clustercall.token import ClusterTokenCodec
from clustercall.transport import HttpxTransport, Transport

logger = logging.getLogger("ClusterCall")


class Cluster:
    """Service-to-service calls for one process.

    Args:
        config:     Initial config snapshot (defaults apply when None).
        secret:     Shared secret; None runs without service authentication.
        transport:  Outbound transport (defaults to :class:`HttpxTransport`).
        clock:      Epoch-seconds clock used for token expiry.
    """

    def __init__(
        self,
        config: Optional[ClusterConfig] = None,
        secret: Optional[Union[str, bytes]] = None,
        transport: Optional[Transport] = None,
        clock: Callable[[], float] = time.time,
    ):
        config = config or ClusterConfig()
        self.store = ConfigStore(config)
        self.codec = ClusterTokenCodec(secret, identity=config.service, clock=clock)
        self.resolver = AddressResolver(self.store)
        self.transport = transport or HttpxTransport(max_redirects=MAX_REDIRECTS)
        self.client = DispatchClient(self.store, self.codec, self.transport)
        self.proxy_gate = AuthorizationGate(self.codec, config.token_header, "CLUSTER.PROXY", 403)
        self.auth_gate = AuthorizationGate(self.codec, config.token_header, "CLUSTER.AUTH", 401)
        if not self.codec.enabled:
            logger.warning("cluster: working without service authentication (no token present)")

    @classmethod
    def from_config(
        cls,
        source: Union[str, Path, Mapping[str, Any], None] = None,
        secret: Optional[Union[str, bytes]] = None,
        transport: Optional[Transport] = None,
    ) -> Cluster:
        """Build a cluster from a YAML path or dict, reading ``.env`` first."""
        load_dotenv_if_available()
        config, resolved_secret = load_config(source, secret)
        return cls(config, resolved_secret, transport)

    @property
    def config(self) -> ClusterConfig:
        return self.store.current

    @property
    def service(self) -> ServiceIdentity:
        return self.store.current.service

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------
    def has_token(self) -> bool:
        return self.codec.enabled

    def sign(self, action: str, identity: Optional[ServiceIdentity] = None) -> Optional[str]:
        return self.codec.sign(action, identity)

    def verify_token(self, token: Any, action: str):
        return self.codec.verify(token, action)

    # ------------------------------------------------------------------
    # Addressing
    # ------------------------------------------------------------------
    def resolve(self, service: str) -> str:
        return self.resolver.resolve(service)

    def set_ports(self, ports: Any) -> bool:
        return self.store.set_ports(ports)

    def get_ports(self) -> PortSpec:
        return self.store.get_ports()

    def set_aliases(self, aliases: Optional[Mapping[str, str]]) -> None:
        self.store.set_aliases(aliases)

    def get_aliases(self) -> Mapping[str, str]:
        return self.store.get_aliases()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def dispatch(self, service: str, action: str, payload: Any = None, **options: Any) -> Awaitable[Any]:
        """See :meth:`clustercall.dispatch.DispatchClient.dispatch`."""
        return self.client.dispatch(service, action, payload, **options)

    def dispatch_result(
        self, service: str, action: str, payload: Any = None, **options: Any
    ) -> Awaitable[DispatchResult]:
        return self.client.dispatch_result(service, action, payload, **options)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def authorize(self, call: CallContext, required: bool = True) -> GateOutcome:
        """Authorize an inbound call (401 ``CLUSTER.AUTH`` on rejection)."""
        return self.auth_gate.authorize(call, required)

    def authorize_proxy(self, call: CallContext, required: bool = True) -> GateOutcome:
        """Authorize an inbound call (403 ``CLUSTER.PROXY`` on rejection)."""
        return self.proxy_gate.authorize(call, required)

    async def aclose(self) -> None:
        close = getattr(self.transport, "aclose", None)
        if close is not None:
            await close()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_cluster: Optional[Cluster] = None


def get_cluster() -> Cluster:
    """Return the process-wide Cluster (lazily created from env/defaults)."""
    global _cluster
    if _cluster is None:
        _cluster = Cluster.from_config(None)
    return _cluster


def init_from_config(config: Union[str, Path, Mapping[str, Any], None]) -> Cluster:
    """Initialize the global cluster from a config path or dict.

    Call once at service startup.
    """
    global _cluster
    _cluster = Cluster.from_config(config)
    return _cluster
