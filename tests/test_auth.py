"""Operator request signing, agent context and arbitrator credentials."""

from datetime import UTC, datetime, timedelta

import pytest
from httpx import AsyncClient

from agent_resolve.config import settings
from agent_resolve.main import app
from agent_resolve.redis import get_redis
from agent_resolve.utils.crypto import (
    canonical_request,
    generate_keypair,
    generate_nonce,
    is_timestamp_fresh,
    sign_request,
    verify_signature,
)
from tests.conftest import (
    ARBITRATOR_HEADERS,
    OPERATOR_A,
    OPERATOR_B,
    OPERATOR_KEYS,
    encode_body,
    make_auth_headers,
    register_agent_http,
    signed_request,
)


class FakeNonceRedis:
    """Just enough of redis.asyncio.Redis for the nonce check."""

    def __init__(self) -> None:
        self.keys: dict[str, str] = {}

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.keys:
            return None
        self.keys[key] = value
        return True


def test_sign_and_verify() -> None:
    priv, pub = generate_keypair()
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv, ts, "post", "/disputes", b'{"a":1}')

    assert verify_signature(pub, sig, ts, "POST", "/disputes", b'{"a":1}')
    assert not verify_signature(pub, sig, ts, "POST", "/disputes", b'{"a":2}')
    assert not verify_signature(pub, sig, ts, "POST", "/disputes?x=1", b'{"a":1}')
    assert not verify_signature(pub, "zz", ts, "POST", "/disputes", b'{"a":1}')

    _, other_pub = generate_keypair()
    assert not verify_signature(other_pub, sig, ts, "POST", "/disputes", b'{"a":1}')


def test_signing_keys_match_configured_operators() -> None:
    for operator_id, (_, public_key) in OPERATOR_KEYS.items():
        assert settings.operator_public_keys[operator_id] == public_key


@pytest.mark.asyncio
async def test_signed_registration_is_accepted(client: AsyncClient) -> None:
    resp = await signed_request(client, "POST", "/agents", OPERATOR_B, body={"identifier": "signed-ok"})
    assert resp.status_code == 201, resp.text


def test_canonical_request_layout() -> None:
    message = canonical_request("2026-01-01T00:00:00+00:00", "get", "/agents?x=1", b"").decode()
    timestamp, method, target, digest = message.split("\n")
    assert method == "GET"
    assert target == "/agents?x=1"
    assert digest == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_timestamp_freshness() -> None:
    now = datetime.now(UTC)
    assert is_timestamp_fresh(now.isoformat(), 30)
    assert not is_timestamp_fresh((now - timedelta(seconds=90)).isoformat(), 30)
    assert not is_timestamp_fresh((now + timedelta(seconds=90)).isoformat(), 30)
    assert not is_timestamp_fresh(now.replace(tzinfo=None).isoformat(), 30)
    assert not is_timestamp_fresh("yesterday", 30)


@pytest.mark.asyncio
async def test_missing_auth_headers(client: AsyncClient) -> None:
    resp = await client.post("/agents", json={"identifier": "x"})
    assert resp.status_code == 403
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "NOT_AUTHORIZED"


@pytest.mark.asyncio
async def test_wrong_scheme(client: AsyncClient) -> None:
    headers = make_auth_headers(OPERATOR_A, "GET", "/transactions")
    headers["Authorization"] = headers["Authorization"].replace("OperatorSig", "AgentSig")
    resp = await client.get("/transactions", headers=headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_tampered_body(client: AsyncClient) -> None:
    signed = encode_body({"identifier": "honest"})
    headers = make_auth_headers(OPERATOR_A, "POST", "/agents", signed)
    headers["Content-Type"] = "application/json"
    resp = await client.post("/agents", content=encode_body({"identifier": "forged"}), headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "Invalid signature"


@pytest.mark.asyncio
async def test_unknown_operator(client: AsyncClient) -> None:
    priv, _ = OPERATOR_KEYS[OPERATOR_A]
    ts = datetime.now(UTC).isoformat()
    sig = sign_request(priv, ts, "GET", "/transactions", b"")
    resp = await client.get(
        "/transactions",
        headers={"Authorization": f"OperatorSig op-ghost:{sig}", "X-Timestamp": ts, "X-Agent-Ref": "x"},
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "Unknown operator"


@pytest.mark.asyncio
async def test_stale_timestamp(client: AsyncClient) -> None:
    priv, _ = OPERATOR_KEYS[OPERATOR_A]
    ts = (datetime.now(UTC) - timedelta(minutes=5)).isoformat()
    sig = sign_request(priv, ts, "GET", "/transactions", b"")
    resp = await client.get(
        "/transactions", headers={"Authorization": f"OperatorSig {OPERATOR_A}:{sig}", "X-Timestamp": ts}
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "Request timestamp expired"


@pytest.mark.asyncio
async def test_query_string_is_signed(client: AsyncClient) -> None:
    agent_ref = await register_agent_http(client)
    headers = make_auth_headers(OPERATOR_A, "GET", "/transactions", agent_ref=agent_ref)
    resp = await client.get("/transactions?status=PROPOSED", headers=headers)
    assert resp.status_code == 403

    ok = await signed_request(client, "GET", "/transactions?status=PROPOSED", agent_ref=agent_ref)
    assert ok.status_code == 200


@pytest.mark.asyncio
async def test_nonce_replay_rejected(client: AsyncClient) -> None:
    fake = FakeNonceRedis()

    async def override_get_redis():
        yield fake

    app.dependency_overrides[get_redis] = override_get_redis

    agent_ref = await register_agent_http(client)
    headers = make_auth_headers(OPERATOR_A, "GET", f"/agents/{agent_ref}", nonce=generate_nonce())
    first = await client.get(f"/agents/{agent_ref}", headers=headers)
    replay = await client.get(f"/agents/{agent_ref}", headers=headers)

    assert first.status_code == 200
    assert replay.status_code == 403
    assert replay.json()["error"]["message"] == "Nonce already used"


@pytest.mark.asyncio
async def test_agent_ref_required(client: AsyncClient) -> None:
    resp = await signed_request(client, "GET", "/transactions")
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "AGENT_REF_REQUIRED"


@pytest.mark.asyncio
async def test_cannot_act_as_another_operators_agent(client: AsyncClient) -> None:
    agent_ref = await register_agent_http(client, OPERATOR_A)
    resp = await signed_request(client, "GET", "/transactions", OPERATOR_B, agent_ref=agent_ref)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "AGENT_NOT_FOUND"


@pytest.mark.asyncio
async def test_arbitrator_key_required(client: AsyncClient) -> None:
    resp = await client.post("/escalations/RESC-AAAAAAAAAAAAAAAA/assign", json={"arbitrator_id": "arb-1"})
    assert resp.status_code == 403

    resp = await client.post(
        "/escalations/RESC-AAAAAAAAAAAAAAAA/assign",
        json={"arbitrator_id": "arb-1"},
        headers={"X-Arbitrator-Key": "guess"},
    )
    assert resp.status_code == 403

    resp = await client.post(
        "/escalations/RESC-AAAAAAAAAAAAAAAA/assign", json={"arbitrator_id": "arb-1"}, headers=ARBITRATOR_HEADERS
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "ESCALATION_NOT_FOUND"
