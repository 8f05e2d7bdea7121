"""
ClusterCall dispatch client.

Performs a single request/response exchange with another service in the
cluster::

    client = DispatchClient(store, codec, HttpxTransport())
    invoice = await client.dispatch("billing", "invoice.create", {"order": 42})

Steps:
    1. Validate the service and action names (raised before any I/O).
    2. Resolve the service URL from the current config snapshot.
    3. Sign a token for the action when a shared secret is configured.
    4. POST ``{"type": action, "payload": payload}`` through the transport.
    5. Return the response body without its ``type`` key, or fail with a
       :class:`~clustercall.errors.ClusterError`.

With ``required=False`` every transport or remote failure resolves to
``None`` instead of raising.  There are no retries.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Mapping, Optional

from clustercall.config import ConfigStore, ServiceIdentity
from clustercall.errors import ClusterError, ErrorKind, validation_error
from clustercall.resolver import resolve_url
from clustercall.token import ClusterTokenCodec
from clustercall.transport import (
    Transport,
    TransportResponse,
    TransportTimeout,
)

logger = logging.getLogger("ClusterCall.Dispatch")

CLUSTER_MARKER_HEADER = "x-cluster-kube"
MAX_REDIRECTS = 1

SUCCESS = "success"
ABSENT = "absent"
FAILURE = "failure"


@dataclass
class DispatchResult:
    """Outcome of one dispatch: ``success``, ``absent`` or ``failure``."""

    status: str
    payload: Any = None
    error: Optional[ClusterError] = None

    @classmethod
    def success(cls, payload: Any) -> DispatchResult:
        return cls(SUCCESS, payload=payload)

    @classmethod
    def failure(cls, error: ClusterError) -> DispatchResult:
        return cls(FAILURE, error=error)

    @classmethod
    def absent(cls) -> DispatchResult:
        return cls(ABSENT)

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS

    def apply_policy(self, required: bool = True) -> DispatchResult:
        """Collapse a suppressible failure to ``absent`` when not required."""
        if self.status == FAILURE and required is False and self.error.kind.suppressible:
            return DispatchResult.absent()
        return self

    def unwrap(self, required: bool = True) -> Any:
        result = self.apply_policy(required)
        if result.status == FAILURE:
            raise result.error
        return result.payload


@dataclass
class PreparedDispatch:
    service: str
    action: str
    url: str
    headers: Dict[str, str]
    body: bytes
    timeout: float
    payload: Dict[str, Any]
    debug: bool = False


def _failure(code: str, message: str, status: int, kind: ErrorKind, prepared: PreparedDispatch):
    return DispatchResult.failure(
        ClusterError(code, message, status, kind, action=prepared.action, service=prepared.service)
    )


def _remote_failure(data: Any, prepared: PreparedDispatch) -> DispatchResult:
    err = data.get("error") if isinstance(data, dict) else None
    if not isinstance(err, dict):
        err = {}
    message = err.get("message") or "Failed to execute fetch"
    status = err.get("status") or 400
    code = err.get("code") or "FETCH.ERROR"
    return _failure(
        code, f"{message} ({prepared.action})", status, ErrorKind.REMOTE, prepared
    )


class DispatchClient:
    """Send actions to other services in the cluster.

    Args:
        store:      Config store (resolver input, timeouts, header names).
        codec:      Token codec; signing is skipped when it has no secret.
        transport:  Object with an async ``send`` (see :mod:`clustercall.transport`).
    """

    def __init__(self, store: ConfigStore, codec: ClusterTokenCodec, transport: Transport):
        self.store = store
        self.codec = codec
        self.transport = transport

    def prepare(
        self,
        service: str,
        action: str,
        payload: Any = None,
        timeout: Optional[float] = None,
        identity: Optional[ServiceIdentity] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> PreparedDispatch:
        """Validate inputs and build the outbound request.

        Raises:
            ClusterError: ``CLUSTER.DATA`` when the service or action is missing.
        """
        if not isinstance(service, str) or not service:
            raise validation_error(
                "Please provide the service name",
                action=action if isinstance(action, str) and action else None,
            )
        if not isinstance(action, str) or not action:
            raise validation_error("Please provide the action name", service=service)
        if not isinstance(payload, Mapping):
            payload = {}

        config = self.store.current
        request = {"type": action, "payload": dict(payload)}
        try:
            body = json.dumps(request).encode()
        except (TypeError, ValueError) as exc:
            raise validation_error(
                "Payload could not be serialized", action=action, service=service
            ) from exc

        out_headers = {
            "content-type": "application/json",
            "connection": "keep-alive",
            CLUSTER_MARKER_HEADER: "true",
        }
        token = self.codec.sign(action, identity or config.service)
        if token:
            out_headers[config.token_header] = token
        if headers:
            out_headers.update(headers)

        return PreparedDispatch(
            service=service,
            action=action,
            url=resolve_url(config, service),
            headers=out_headers,
            body=body,
            timeout=timeout or config.timeout,
            payload=request["payload"],
            debug=config.debug,
        )

    async def exchange(self, prepared: PreparedDispatch) -> DispatchResult:
        """Send a prepared request and classify the outcome."""
        if prepared.debug:
            logger.info("dispatch -> [%s#%s] %s", prepared.service, prepared.action, prepared.payload)
        result = await self._exchange(prepared)
        if prepared.debug:
            logger.info(
                "dispatch <- [%s#%s] %s",
                prepared.service,
                prepared.action,
                result.payload if result.ok else result.error.to_dict(),
            )
        return result

    async def _exchange(self, prepared: PreparedDispatch) -> DispatchResult:
        try:
            resp: TransportResponse = await self.transport.send(
                prepared.url,
                method="POST",
                headers=prepared.headers,
                body=prepared.body,
                timeout=prepared.timeout,
                follow_redirects=MAX_REDIRECTS,
            )
        except (TransportTimeout, asyncio.TimeoutError):
            return _failure(
                "FETCH.TIMEOUT", "Request timed out", 400, ErrorKind.TRANSPORT_TIMEOUT, prepared
            )
        except Exception as exc:
            # connection errors, or anything else a host transport raises
            logger.debug("Transport error for %s#%s: %s", prepared.service, prepared.action, exc)
            return _failure(
                "FETCH.ERROR",
                "Could not contact the server",
                400,
                ErrorKind.TRANSPORT_CONNECTION,
                prepared,
            )

        try:
            data = resp.json()
        except (ValueError, UnicodeDecodeError):
            return _failure(
                "FETCH.RESPONSE",
                "Request data could not be processed.",
                400,
                ErrorKind.TRANSPORT_MALFORMED,
                prepared,
            )

        if not resp.ok:
            return _remote_failure(data, prepared)
        if isinstance(data, dict):
            data.pop("type", None)
        return DispatchResult.success(data)

    def dispatch_result(
        self,
        service: str,
        action: str,
        payload: Any = None,
        *,
        timeout: Optional[float] = None,
        required: bool = True,
        identity: Optional[ServiceIdentity] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Awaitable[DispatchResult]:
        """Like :meth:`dispatch` but returns the :class:`DispatchResult`.

        Validation errors are still raised immediately.
        """
        prepared = self.prepare(service, action, payload, timeout, identity, headers)

        async def _run() -> DispatchResult:
            result = await self.exchange(prepared)
            return result.apply_policy(required)

        return _run()

    def dispatch(
        self,
        service: str,
        action: str,
        payload: Any = None,
        *,
        timeout: Optional[float] = None,
        required: bool = True,
        identity: Optional[ServiceIdentity] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Awaitable[Any]:
        """Dispatch *action* to *service* and return the response payload.

        Args:
            service:   Logical service name.
            action:    Action name on the remote service.
            payload:   JSON-serialisable mapping (anything else becomes ``{}``).
            timeout:   Seconds; defaults to the configured timeout.
            required:  When False, failures resolve to None instead of raising.
            identity:  Identity to sign with instead of the local service.
            headers:   Extra request headers.

        Raises:
            ClusterError: Immediately for missing names; when awaited for
                transport or remote failures (unless ``required=False``).
        """
        pending = self.dispatch_result(
            service,
            action,
            payload,
            timeout=timeout,
            required=required,
            identity=identity,
            headers=headers,
        )

        async def _run() -> Any:
            return (await pending).unwrap(required)

        return _run()
