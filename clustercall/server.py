"""
Inbound action router for FastAPI services.

Receives cluster dispatches (``POST {"type": action, "payload": {...}}``),
runs the authorization gate and hands the payload to the registered
handler::

    app = FastAPI()
    router = ActionRouter(cluster)

    @router.action("invoice.create")
    async def create_invoice(payload, call):
        return {"invoice": 7, "caller": call.data.get("proxy_name")}

    router.mount(app)

The router:
    1. Parses the request body.
    2. Looks up the handler for ``type``.
    3. Runs the proxy authorization gate (403 on rejection).
    4. Calls the handler (sync or async).
    5. Returns ``{"type": action, ...result}`` or an ``error`` envelope.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from clustercall.cluster import Cluster
from clustercall.errors import (
    ClusterError,
    ErrorKind,
    error_response,
    register_error_handlers,
    validation_error,
)
from clustercall.gate import TOKEN_SOURCE, SimpleCallContext

logger = logging.getLogger("ClusterCall.Server")

HandlerFn = Callable[[Dict[str, Any], SimpleCallContext], Union[Any, Awaitable[Any]]]


class RequestCallContext(SimpleCallContext):
    """Call context built from a Starlette request."""

    @classmethod
    def from_request(cls, request: Request, action: str, raw_input: Any) -> RequestCallContext:
        headers = {k.lower(): v for k, v in request.headers.items()}
        auth = headers.get("authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else None
        return cls(
            action=action,
            headers=headers,
            client_ip=request.client.host if request.client else None,
            raw_input=raw_input,
            authorization=token,
            authorization_source=TOKEN_SOURCE if token else None,
        )


@dataclass
class _Route:
    handler: HandlerFn
    required: bool = True
    authorize: bool = True


class ActionRouter:
    """Route inbound cluster actions to handlers."""

    def __init__(self, cluster: Cluster):
        self.cluster = cluster
        self._routes: Dict[str, _Route] = {}
        self._calls_routed = 0

    @property
    def calls_routed(self) -> int:
        return self._calls_routed

    def register_handler(
        self,
        action: str,
        handler: HandlerFn,
        required: bool = True,
        authorize: bool = True,
    ) -> None:
        """Register a handler for *action*.

        Args:
            required:   When False, calls without a valid token still reach
                        the handler with ``proxy_auth`` set to False.
            authorize:  When False, the gate is skipped entirely.
        """
        self._routes[action] = _Route(handler, required, authorize)

    def action(self, name: str, required: bool = True, authorize: bool = True):
        """Decorator form of :meth:`register_handler`."""

        def decorator(fn: HandlerFn) -> HandlerFn:
            self.register_handler(name, fn, required=required, authorize=authorize)
            return fn

        return decorator

    async def handle(self, request: Request) -> JSONResponse:
        try:
            return await self._handle(request)
        except ClusterError as exc:
            return error_response(exc)
        except Exception:
            logger.exception("Handler error on %s", request.url.path)
            return error_response(
                ClusterError("CLUSTER.HANDLER_ERROR", "Internal server error", 500, ErrorKind.REMOTE)
            )

    async def _handle(self, request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            raise validation_error("Request data could not be processed.")
        if not isinstance(body, dict):
            raise validation_error("Request data could not be processed.")

        action = body.get("type")
        if not isinstance(action, str) or not action:
            raise validation_error("Please provide the action name")
        route = self._routes.get(action)
        if route is None:
            raise ClusterError("CLUSTER.NOT_FOUND", f"Action {action} not found", 404)

        payload = body.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        call = RequestCallContext.from_request(request, action, payload)
        if route.authorize:
            self.cluster.authorize_proxy(call, route.required)

        result = route.handler(payload, call)
        if inspect.isawaitable(result):
            result = await result
        self._calls_routed += 1

        if result is None:
            result = {}
        elif not isinstance(result, dict):
            result = {"result": result}
        content = {"type": action}
        content.update(result)
        return JSONResponse(content=content, headers=call.response_headers)

    def mount(self, app: FastAPI, path: Optional[str] = None) -> None:
        """Add the dispatch endpoint and the error handlers to *app*."""
        register_error_handlers(app)
        app.add_api_route(path or self.cluster.config.path, self.handle, methods=["POST"])
