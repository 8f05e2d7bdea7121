"""Tests for the inbound authorization gate."""

import logging

import pytest

from clustercall.config import ServiceIdentity
from clustercall.errors import ClusterError, ErrorKind
from clustercall.gate import (
    AuthorizationGate,
    GateOutcome,
    SimpleCallContext,
    extract_token,
)
from clustercall.token import ClusterTokenCodec


@pytest.fixture
def codec():
    return ClusterTokenCodec(secret="s3cr3t", identity=ServiceIdentity("orders", "api"))


@pytest.fixture
def gate(codec):
    return AuthorizationGate(codec)


def _call(action="charge", token=None, **kwargs):
    headers = {"x-cluster-token": token} if token else {}
    return SimpleCallContext(action=action, headers=headers, client_ip="10.1.2.3", **kwargs)


class TestExtractToken:
    def test_header_wins(self):
        call = _call(token="Dheader", authorization="Dbearer", authorization_source="TOKEN")
        assert extract_token(call) == ("TOKEN", "Dheader")

    def test_falls_back_to_authorization(self):
        call = _call(authorization="Dbearer", authorization_source="TOKEN")
        assert extract_token(call) == ("TOKEN", "Dbearer")

    def test_other_source(self):
        call = _call(authorization="session", authorization_source="SESSION")
        assert extract_token(call) == ("SESSION", "session")


class TestDisabled:
    def test_everything_accepted(self):
        gate = AuthorizationGate(ClusterTokenCodec(secret=None))
        call = _call(token="garbage")
        assert gate.authorize(call) is GateOutcome.UNAUTHENTICATED
        assert call.data["proxy_auth"] is True
        assert call.authorization_source == "CLUSTER"
        assert call.authorization == "garbage"

    def test_accepted_without_token(self):
        gate = AuthorizationGate(ClusterTokenCodec(secret=None))
        assert gate.authorize(_call()) is GateOutcome.UNAUTHENTICATED


class TestTrusted:
    def test_valid_token(self, gate, codec):
        call = _call(token=codec.sign("charge"))
        assert gate.authorize(call) is GateOutcome.TRUSTED
        assert call.data == {"proxy_auth": True, "proxy_name": "orders", "proxy_service": "api"}
        assert call.response_headers == {"connection": "keep-alive"}
        assert call.authorization_source == "CLUSTER"

    def test_no_type_annotation_without_claim(self, gate, codec):
        call = _call(token=codec.sign("charge", ServiceIdentity(name="cron")))
        gate.authorize(call)
        assert call.data["proxy_name"] == "cron"
        assert "proxy_service" not in call.data

    def test_bearer_token(self, gate, codec):
        call = _call(authorization=codec.sign("charge"), authorization_source="TOKEN")
        assert gate.authorize(call) is GateOutcome.TRUSTED

    def test_custom_header(self, codec):
        gate = AuthorizationGate(codec, token_header="x-internal-auth")
        call = SimpleCallContext(action="charge", headers={"x-internal-auth": codec.sign("charge")})
        assert gate.authorize(call) is GateOutcome.TRUSTED


class TestRejected:
    def test_missing_token(self, gate):
        with pytest.raises(ClusterError) as exc:
            gate.authorize(_call())
        assert exc.value.code == "CLUSTER.PROXY"
        assert exc.value.status == 403
        assert exc.value.kind is ErrorKind.UNAUTHORIZED

    def test_wrong_action(self, gate, codec):
        with pytest.raises(ClusterError):
            gate.authorize(_call(action="refund", token=codec.sign("charge")))

    def test_non_token_authorization(self, gate):
        call = _call(authorization="abc", authorization_source="SESSION")
        with pytest.raises(ClusterError):
            gate.authorize(call)

    def test_fixed_message(self, gate, codec):
        messages = set()
        for call in (_call(), _call(token="Dbad$00"), _call(action="x", token=codec.sign("y"))):
            with pytest.raises(ClusterError) as exc:
                gate.authorize(call)
            messages.add(exc.value.message)
        assert messages == {"Request not authorized."}

    def test_auth_variant(self, codec):
        gate = AuthorizationGate(codec, code="CLUSTER.AUTH", status=401)
        with pytest.raises(ClusterError) as exc:
            gate.authorize(_call())
        assert exc.value.code == "CLUSTER.AUTH"
        assert exc.value.status == 401

    def test_invalid_token_logged(self, gate, caplog):
        call = _call(token="Dbad$00", raw_input={"amount": 5})
        with caplog.at_level(logging.WARNING, logger="ClusterCall.Gate"):
            with pytest.raises(ClusterError):
                gate.authorize(call)
        text = caplog.text
        assert "charge" in text
        assert "10.1.2.3" in text
        assert "amount" in text


class TestOptional:
    def test_missing_token(self, gate):
        call = _call()
        assert gate.authorize(call, required=False) is GateOutcome.OPTIONAL_UNVERIFIED
        assert call.data == {"proxy_auth": False}

    def test_invalid_token(self, gate, codec):
        call = _call(action="refund", token=codec.sign("charge"))
        assert gate.authorize(call, required=False) is GateOutcome.OPTIONAL_UNVERIFIED
        assert call.data["proxy_auth"] is False
        assert "proxy_name" not in call.data

    def test_valid_token(self, gate, codec):
        call = _call(token=codec.sign("charge"))
        assert gate.authorize(call, required=False) is GateOutcome.TRUSTED
        assert call.data["proxy_auth"] is True
