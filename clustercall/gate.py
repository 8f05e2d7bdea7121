"""
ClusterCall authorization gate.

Checks that an inbound call was made by another service of the cluster and
annotates the call with the caller's identity.

The gate:
    1. Passes every call through when no shared secret is configured.
    2. Extracts the token from the token header, falling back to a
       ``TOKEN``-type authorization already parsed by the host.
    3. Verifies the token against the action the call is for.
    4. Annotates the call (``proxy_auth``, ``proxy_name``, ``proxy_service``)
       or rejects it with a fixed "not authorized" error.

With ``required=False`` a missing or invalid token lets the call through
with ``proxy_auth`` set to False.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from clustercall.config import DEFAULT_TOKEN_HEADER
from clustercall.errors import ClusterError, unauthorized_error
from clustercall.token import ClusterTokenCodec

logger = logging.getLogger("ClusterCall.Gate")

TOKEN_SOURCE = "TOKEN"
CLUSTER_SOURCE = "CLUSTER"


class GateOutcome(enum.Enum):
    TRUSTED = "trusted"
    UNAUTHENTICATED = "unauthenticated"
    OPTIONAL_UNVERIFIED = "optional_unverified"


class CallContext(Protocol):
    """What the gate needs from the host's inbound call object."""

    action: str
    headers: Mapping[str, str]
    client_ip: Optional[str]
    raw_input: Any
    authorization: Optional[str]
    authorization_source: Optional[str]

    def annotate(self, key: str, value: Any) -> None:
        ...

    def set_authorization(self, source: str, token: Optional[str]) -> None:
        ...

    def set_response_header(self, name: str, value: str) -> None:
        ...


@dataclass
class SimpleCallContext:
    """In-memory :class:`CallContext`."""

    action: str
    headers: Dict[str, str] = field(default_factory=dict)
    client_ip: Optional[str] = None
    raw_input: Any = None
    authorization: Optional[str] = None
    authorization_source: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    response_headers: Dict[str, str] = field(default_factory=dict)

    def annotate(self, key: str, value: Any) -> None:
        self.data[key] = value

    def set_authorization(self, source: str, token: Optional[str]) -> None:
        self.authorization_source = source
        self.authorization = token

    def set_response_header(self, name: str, value: str) -> None:
        self.response_headers[name] = value


def extract_token(call: CallContext, header: str = DEFAULT_TOKEN_HEADER) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(source, token)`` for *call*; the token header wins."""
    headers = call.headers or {}
    header_token = headers.get(header) or headers.get(header.lower())
    if header_token:
        return TOKEN_SOURCE, header_token
    return call.authorization_source, call.authorization


class AuthorizationGate:
    """Accept or reject inbound calls based on their cluster token.

    Args:
        codec:         Token codec holding the shared secret.
        token_header:  Header carrying the token.
        code:          Error code used on rejection.
        status:        HTTP status used on rejection (401 or 403).
    """

    def __init__(
        self,
        codec: ClusterTokenCodec,
        token_header: str = DEFAULT_TOKEN_HEADER,
        code: str = "CLUSTER.PROXY",
        status: int = 403,
    ):
        self.codec = codec
        self.token_header = token_header
        self.code = code
        self.status = status

    def _reject(self) -> ClusterError:
        return unauthorized_error(self.code, self.status)

    def _optional(self, call: CallContext, required: bool) -> GateOutcome:
        if required is False:
            call.annotate("proxy_auth", False)
            return GateOutcome.OPTIONAL_UNVERIFIED
        raise self._reject()

    def authorize(self, call: CallContext, required: bool = True) -> GateOutcome:
        """Run the gate for *call*.

        Raises:
            ClusterError: When the call is rejected.
        """
        source, token = extract_token(call, self.token_header)

        # turned off
        if not self.codec.enabled:
            call.annotate("proxy_auth", True)
            call.set_authorization(CLUSTER_SOURCE, token)
            return GateOutcome.UNAUTHENTICATED

        if source != TOKEN_SOURCE or not token:
            return self._optional(call, required)

        claims = self.codec.verify(token, call.action)
        if not claims:
            logger.warning(
                "Received invalid proxy request for %s from: %s", call.action, call.client_ip
            )
            logger.warning("Rejected input from %s: %s", call.client_ip, call.raw_input)
            return self._optional(call, required)

        call.annotate("proxy_auth", True)
        call.set_authorization(CLUSTER_SOURCE, token)
        call.annotate("proxy_name", claims.get("n"))
        if claims.get("t"):
            call.annotate("proxy_service", claims["t"])
        call.set_response_header("connection", "keep-alive")
        return GateOutcome.TRUSTED
