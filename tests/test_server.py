"""Tests for the inbound FastAPI action router.

Uses Starlette's TestClient so requests go through the real routing, the
gate and the error envelope.
"""

import asyncio

import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from clustercall.cluster import Cluster
from clustercall.config import ClusterConfig, ServiceIdentity
from clustercall.dispatch import DispatchClient
from clustercall.errors import ClusterError
from clustercall.server import ActionRouter
from clustercall.transport import TransportResponse

SECRET = "s3cr3t"


def _app(cluster):
    app = FastAPI()
    router = ActionRouter(cluster)

    @router.action("charge")
    async def charge(payload, call):
        return {
            "charged": payload.get("amount"),
            "caller": call.data.get("proxy_name"),
            "caller_type": call.data.get("proxy_service"),
        }

    @router.action("status", required=False)
    def status(payload, call):
        return {"trusted": call.data.get("proxy_auth")}

    @router.action("health", authorize=False)
    def health(payload, call):
        return None

    @router.action("decline")
    def decline(payload, call):
        raise ClusterError("BILLING.DECLINED", "Card declined", 402)

    @router.action("boom")
    def boom(payload, call):
        raise RuntimeError("kaput")

    router.mount(app)
    return app, router


@pytest.fixture
def server_cluster():
    return Cluster(ClusterConfig(service=ServiceIdentity("billing", "api")), secret=SECRET)


@pytest.fixture
def caller_cluster():
    return Cluster(ClusterConfig(service=ServiceIdentity("orders", "api")), secret=SECRET)


@pytest.fixture
def client(server_cluster):
    app, _ = _app(server_cluster)
    return TestClient(app)


class TestAuthorized:
    def test_valid_token(self, client, caller_cluster):
        token = caller_cluster.sign("charge")
        resp = client.post(
            "/",
            json={"type": "charge", "payload": {"amount": 5}},
            headers={"x-cluster-token": token},
        )
        assert resp.status_code == 200
        assert resp.json() == {
            "type": "charge",
            "charged": 5,
            "caller": "orders",
            "caller_type": "api",
        }
        assert resp.headers["connection"] == "keep-alive"

    def test_bearer_token(self, client, caller_cluster):
        token = caller_cluster.sign("charge")
        resp = client.post(
            "/",
            json={"type": "charge", "payload": {}},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 200


class TestRejected:
    def test_missing_token(self, client):
        resp = client.post("/", json={"type": "charge", "payload": {}})
        assert resp.status_code == 403
        assert resp.json() == {
            "error": {"message": "Request not authorized.", "status": 403, "code": "CLUSTER.PROXY"}
        }

    def test_token_for_other_action(self, client, caller_cluster):
        resp = client.post(
            "/",
            json={"type": "charge", "payload": {}},
            headers={"x-cluster-token": caller_cluster.sign("refund")},
        )
        assert resp.status_code == 403

    def test_optional_route(self, client):
        resp = client.post("/", json={"type": "status"})
        assert resp.status_code == 200
        assert resp.json() == {"type": "status", "trusted": False}

    def test_unauthorized_route(self, client):
        resp = client.post("/", json={"type": "health"})
        assert resp.json() == {"type": "health"}


class TestErrors:
    def test_unknown_action(self, client):
        resp = client.post("/", json={"type": "nope"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "CLUSTER.NOT_FOUND"

    def test_missing_type(self, client):
        resp = client.post("/", json={"payload": {}})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "CLUSTER.DATA"

    def test_bad_json(self, client):
        resp = client.post("/", content=b"{not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400

    def test_handler_cluster_error(self, client, caller_cluster):
        resp = client.post(
            "/",
            json={"type": "decline"},
            headers={"x-cluster-token": caller_cluster.sign("decline")},
        )
        assert resp.status_code == 402
        assert resp.json()["error"] == {"message": "Card declined", "status": 402, "code": "BILLING.DECLINED"}

    def test_handler_crash(self, client, caller_cluster):
        resp = client.post(
            "/",
            json={"type": "boom"},
            headers={"x-cluster-token": caller_cluster.sign("boom")},
        )
        assert resp.status_code == 500
        assert "kaput" not in resp.text


class TestDisabledServer:
    def test_open_when_no_secret(self):
        app, router = _app(Cluster(ClusterConfig()))
        resp = TestClient(app).post("/", json={"type": "charge", "payload": {"amount": 1}})
        assert resp.status_code == 200
        assert resp.json()["caller"] is None
        assert router.calls_routed == 1


class TestRoundTrip:
    """Dispatch client talking to the router through an in-process transport."""

    class _TestClientTransport:
        def __init__(self, client):
            self.client = client

        async def send(self, url, *, method, headers, body, timeout, follow_redirects):
            resp = self.client.request(method, "/", headers=headers, content=body)
            return TransportResponse(resp.status_code, resp.content)

    def test_dispatch_to_router(self, client, caller_cluster):
        dispatcher = DispatchClient(
            caller_cluster.store, caller_cluster.codec, self._TestClientTransport(client)
        )
        result = asyncio.run(dispatcher.dispatch("billing", "charge", {"amount": 9}))
        assert result == {"charged": 9, "caller": "orders", "caller_type": "api"}

    def test_remote_error_round_trip(self, client, caller_cluster):
        dispatcher = DispatchClient(
            caller_cluster.store, caller_cluster.codec, self._TestClientTransport(client)
        )
        with pytest.raises(ClusterError) as exc:
            asyncio.run(dispatcher.dispatch("billing", "decline"))
        assert exc.value.code == "BILLING.DECLINED"
        assert exc.value.status == 402
        assert exc.value.message == "Card declined (decline)"

    def test_wrong_secret_rejected(self, client):
        intruder = Cluster(ClusterConfig(service=ServiceIdentity("evil")), secret="guess")
        dispatcher = DispatchClient(intruder.store, intruder.codec, self._TestClientTransport(client))
        assert asyncio.run(dispatcher.dispatch("billing", "charge", required=False)) is None
