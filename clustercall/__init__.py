"""ClusterCall: authenticated service-to-service dispatch inside a cluster."""

try:
    from importlib.metadata import version as _pkg_version

    __version__ = _pkg_version("clustercall")
except Exception:
    __version__ = "2026.10.19.1"  # fallback

from clustercall.cluster import Cluster, get_cluster, init_from_config
from clustercall.config import ClusterConfig, ConfigStore, ServiceIdentity, load_config
from clustercall.dispatch import DispatchClient, DispatchResult
from clustercall.errors import ClusterError, ErrorKind
from clustercall.gate import AuthorizationGate, GateOutcome, SimpleCallContext
from clustercall.resolver import AddressResolver
from clustercall.token import ClusterTokenCodec

__all__ = [
    "__version__",
    "Cluster",
    "get_cluster",
    "init_from_config",
    "ClusterConfig",
    "ConfigStore",
    "ServiceIdentity",
    "load_config",
    "DispatchClient",
    "DispatchResult",
    "ClusterError",
    "ErrorKind",
    "AuthorizationGate",
    "GateOutcome",
    "SimpleCallContext",
    "AddressResolver",
    "ClusterTokenCodec",
]
