"""Tests for the ClusterCall error taxonomy and JSON envelope."""

from fastapi import FastAPI, HTTPException
from starlette.testclient import TestClient

from clustercall.errors import (
    ClusterError,
    ErrorKind,
    register_error_handlers,
    unauthorized_error,
    validation_error,
)


class TestClusterError:
    def test_fields(self):
        err = ClusterError("FETCH.TIMEOUT", "Request timed out", 400, ErrorKind.TRANSPORT_TIMEOUT)
        assert err.ns == "FETCH"
        assert str(err) == "Request timed out"
        assert err.to_dict() == {"message": "Request timed out", "status": 400, "code": "FETCH.TIMEOUT"}

    def test_suppressible_kinds(self):
        assert ErrorKind.TRANSPORT_TIMEOUT.suppressible
        assert ErrorKind.TRANSPORT_MALFORMED.suppressible
        assert ErrorKind.TRANSPORT_CONNECTION.suppressible
        assert ErrorKind.REMOTE.suppressible
        assert not ErrorKind.VALIDATION.suppressible
        assert not ErrorKind.UNAUTHORIZED.suppressible

    def test_helpers(self):
        assert validation_error("x").code == "CLUSTER.DATA"
        err = unauthorized_error()
        assert (err.code, err.status, err.kind) == ("CLUSTER.AUTH", 401, ErrorKind.UNAUTHORIZED)


class TestHandlers:
    def _client(self):
        app = FastAPI()
        register_error_handlers(app)

        @app.get("/cluster")
        async def cluster():
            raise ClusterError("ORDERS.GONE", "Order does not exist", 404)

        @app.get("/http")
        async def http():
            raise HTTPException(status_code=409, detail="conflict")

        return TestClient(app)

    def test_cluster_error_envelope(self):
        resp = self._client().get("/cluster")
        assert resp.status_code == 404
        assert resp.json() == {
            "error": {"message": "Order does not exist", "status": 404, "code": "ORDERS.GONE"}
        }

    def test_http_exception_envelope(self):
        resp = self._client().get("/http")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "HTTP.409"
