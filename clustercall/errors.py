"""Error taxonomy and JSON error envelope for ClusterCall.

Every failure surfaced by the dispatch client or the authorization gate is a
:class:`ClusterError`.  The wire shape matches what remote services send
back on failure::

    {"error": {"message": "<human-readable>", "status": <http_status>, "code": "<DOTTED.CODE>"}}

Usage
-----
Raise ``ClusterError`` inside an inbound action handler to return a
structured error without building a ``JSONResponse`` by hand::

    from clustercall.errors import ClusterError, ErrorKind

    raise ClusterError("ORDERS.NOT_FOUND", "Order does not exist", 404)

Call ``register_error_handlers(app)`` once at application startup to install
the global exception handlers.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("ClusterCall.Errors")


class ErrorKind(enum.Enum):
    """Discriminator for :class:`ClusterError`."""

    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    TRANSPORT_TIMEOUT = "transport_timeout"
    TRANSPORT_MALFORMED = "transport_malformed"
    TRANSPORT_CONNECTION = "transport_connection"
    REMOTE = "remote"

    @property
    def suppressible(self) -> bool:
        """True for failures that ``required=False`` collapses to ``None``."""
        return self not in (ErrorKind.VALIDATION, ErrorKind.UNAUTHORIZED)


class ClusterError(Exception):
    """A cluster call failure carrying a dotted code and an HTTP-style status."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 400,
        kind: ErrorKind = ErrorKind.REMOTE,
        action: Optional[str] = None,
        service: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        self.kind = kind
        self.action = action
        self.service = service
        super().__init__(message)

    @property
    def ns(self) -> str:
        """Namespace part of the code (``FETCH`` for ``FETCH.TIMEOUT``)."""
        return self.code.split(".", 1)[0]

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "status": self.status, "code": self.code}

    def __repr__(self) -> str:
        return f"ClusterError({self.code!r}, {self.message!r}, {self.status})"


def validation_error(
    message: str, action: Optional[str] = None, service: Optional[str] = None
) -> ClusterError:
    return ClusterError(
        "CLUSTER.DATA", message, 400, ErrorKind.VALIDATION, action=action, service=service
    )


def unauthorized_error(code: str = "CLUSTER.AUTH", status: int = 401) -> ClusterError:
    """Build a rejection error.  The message never varies with the cause."""
    message = "Request not authorized." if status == 403 else "Request not authorized"
    return ClusterError(code, message, status, ErrorKind.UNAUTHORIZED)


def error_response(exc: ClusterError) -> JSONResponse:
    return JSONResponse(status_code=exc.status, content={"error": exc.to_dict()})


def register_error_handlers(app) -> None:
    """Install global exception handlers on the FastAPI *app* instance.

    Must be called after the ``app`` object is created but before any
    requests are handled.
    """

    @app.exception_handler(ClusterError)
    async def _cluster_error_handler(request: Request, exc: ClusterError):
        return error_response(exc)

    @app.exception_handler(HTTPException)
    async def _http_error_handler(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "message": detail,
                    "status": exc.status_code,
                    "code": f"HTTP.{exc.status_code}",
                }
            },
        )

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "message": "Internal server error",
                    "status": 500,
                    "code": "INTERNAL_ERROR",
                }
            },
        )
