"""End-to-end HTTP flows through the FastAPI app."""

from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient

from agent_resolve.services.work_queue import TaskQueue
from tests.conftest import (
    ARBITRATOR_HEADERS,
    OPERATOR_A,
    OPERATOR_B,
    RecordingScheduler,
    StubOracle,
    register_agent_http,
    signed_request,
)

CLAIM = {
    "claim_type": "NON_PERFORMANCE",
    "claim_summary": "Nothing was delivered by the due date",
    "requested_resolution": "Release the escrow back to me",
}


async def _accepted_transaction(
    client: AsyncClient, a: str, b: str, stated_value: int = 10_000
) -> str:
    body = {"receiver_id": b, "title": "Crawl 10k product pages", "stated_value": stated_value}
    resp = await signed_request(client, "POST", "/transactions", OPERATOR_A, a, body)
    assert resp.status_code == 201, resp.text
    txn_id = resp.json()["data"]["transaction_id"]

    resp = await signed_request(
        client, "POST", f"/transactions/{txn_id}/respond", OPERATOR_B, b, {"accept": True}
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["data"]["status"] == "ACCEPTED"
    return txn_id


async def _filed_dispute(client: AsyncClient) -> tuple[str, str, str]:
    a = await register_agent_http(client, OPERATOR_A)
    b = await register_agent_http(client, OPERATOR_B)
    txn_id = await _accepted_transaction(client, a, b, stated_value=5_000)
    resp = await signed_request(client, "POST", "/disputes", OPERATOR_A, a, {"transaction_id": txn_id, **CLAIM})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["dispute_id"], a, b


@pytest.mark.asyncio
async def test_register_and_trust_view(client: AsyncClient) -> None:
    resp = await signed_request(
        client, "POST", "/agents", OPERATOR_A, body={"identifier": "scraper-1", "display_name": "Scraper"}
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    agent_id = body["data"]["agent_id"]
    assert body["data"]["trust_score"] == 50

    dup = await signed_request(client, "POST", "/agents", OPERATOR_A, body={"identifier": "scraper-1"})
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "DUPLICATE_AGENT"

    resp = await signed_request(client, "GET", "/agents/scraper-1/trust?include_history=true", OPERATOR_A)
    assert resp.status_code == 200
    trust = resp.json()["data"]
    assert trust["agent_id"] == agent_id
    assert trust["trust_level"] == "moderate"
    assert trust["history"] == []
    assert trust["stats"]["completion_rate"] is None

    hidden = await signed_request(client, "GET", f"/agents/{agent_id}", OPERATOR_B)
    assert hidden.status_code == 404


@pytest.mark.asyncio
async def test_registration_validation_error(client: AsyncClient) -> None:
    resp = await signed_request(client, "POST", "/agents", OPERATOR_A, body={"identifier": "   "})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_ten_thousand_cent_scenario_over_http(client: AsyncClient) -> None:
    a = await register_agent_http(client, OPERATOR_A)
    b = await register_agent_http(client, OPERATOR_B)
    txn_id = await _accepted_transaction(client, a, b)

    resp = await signed_request(
        client, "POST", f"/transactions/{txn_id}/escrow/fund", OPERATOR_A, a, {"amount": 10_000}
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["escrow"]["status"] == "FUNDED"
    assert resp.json()["data"]["status"] == "IN_PROGRESS"

    for operator, agent in ((OPERATOR_B, b), (OPERATOR_A, a)):
        resp = await signed_request(client, "POST", f"/transactions/{txn_id}/complete", operator, agent)
        assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "COMPLETED"

    resp = await signed_request(client, "GET", f"/transactions/{txn_id}", OPERATOR_B, b)
    assert resp.json()["data"]["escrow"]["status"] == "FUNDED"

    for operator, agent in ((OPERATOR_A, a), (OPERATOR_B, b)):
        resp = await signed_request(client, "GET", f"/agents/{agent}/trust", operator)
        assert resp.json()["data"]["trust_score"] == 51

    resp = await signed_request(client, "POST", f"/transactions/{txn_id}/escrow/release", OPERATOR_A, a)
    assert resp.status_code == 200
    escrow = resp.json()["data"]["escrow"]
    assert escrow["status"] == "RELEASED"
    assert escrow["released_to"] == b

    again = await signed_request(client, "POST", f"/transactions/{txn_id}/escrow/release", OPERATOR_A, a)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "ESCROW_NOT_FUNDED"


@pytest.mark.asyncio
async def test_list_transactions(client: AsyncClient) -> None:
    a = await register_agent_http(client, OPERATOR_A)
    b = await register_agent_http(client, OPERATOR_B)
    await _accepted_transaction(client, a, b)

    resp = await signed_request(client, "GET", "/transactions?role=receiver", OPERATOR_B, b)
    assert resp.status_code == 200
    assert len(resp.json()["data"]) == 1

    resp = await signed_request(client, "GET", "/transactions?role=proposer", OPERATOR_B, b)
    assert resp.json()["data"] == []


@pytest.mark.asyncio
async def test_filing_schedules_review(client: AsyncClient, scheduler: RecordingScheduler) -> None:
    dispute_id, a, _ = await _filed_dispute(client)

    resp = await signed_request(client, "GET", f"/disputes/{dispute_id}", OPERATOR_A, a)
    data = resp.json()["data"]
    assert data["status"] == "AWAITING_RESPONSE"
    assert data["filing_cost"] == 0
    assert len(scheduler.scheduled) == 1


@pytest.mark.asyncio
async def test_deadline_extension_over_http(client: AsyncClient, scheduler: RecordingScheduler) -> None:
    dispute_id, a, b = await _filed_dispute(client)
    first = await signed_request(client, "GET", f"/disputes/{dispute_id}", OPERATOR_A, a)
    original = datetime.fromisoformat(first.json()["data"]["response_deadline"])

    for _ in range(2):
        resp = await signed_request(
            client, "POST", f"/disputes/{dispute_id}/deadline", OPERATOR_A, a, {"additional_hours": 48}
        )
        assert resp.status_code == 200

    deadline = datetime.fromisoformat(resp.json()["data"]["response_deadline"])
    assert deadline - original == timedelta(hours=96)
    assert list(scheduler.scheduled.values()) == [deadline]

    denied = await signed_request(
        client, "POST", f"/disputes/{dispute_id}/deadline", OPERATOR_B, b, {"additional_hours": 48}
    )
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "NOT_CLAIMANT"


@pytest.mark.asyncio
async def test_full_dispute_round_trip(
    client: AsyncClient, oracle: StubOracle, queue: TaskQueue, scheduler: RecordingScheduler
) -> None:
    dispute_id, a, b = await _filed_dispute(client)

    resp = await signed_request(
        client,
        "POST",
        f"/disputes/{dispute_id}/respond",
        OPERATOR_B,
        b,
        {"response_summary": "The pages were crawled and uploaded"},
    )
    assert resp.json()["data"]["status"] == "RESPONSE_RECEIVED"

    resp = await signed_request(
        client,
        "POST",
        f"/disputes/{dispute_id}/evidence",
        OPERATOR_A,
        a,
        {"evidence_type": "TEXT", "title": "Empty bucket", "content": "The upload bucket has zero objects"},
    )
    assert resp.status_code == 201
    assert resp.json()["data"]["submitter_role"] == "claimant"

    resp = await signed_request(client, "GET", f"/disputes/{dispute_id}/evidence", OPERATOR_B, b)
    assert [e["title"] for e in resp.json()["data"]] == ["Empty bucket"]

    resp = await signed_request(client, "POST", f"/disputes/{dispute_id}/submission-complete", OPERATOR_A, a)
    assert resp.json()["data"]["arbitration_queued"] is False

    resp = await signed_request(client, "POST", f"/disputes/{dispute_id}/submission-complete", OPERATOR_B, b)
    status = resp.json()["data"]
    assert status["both_complete"] is True
    assert status["arbitration_queued"] is True
    assert scheduler.cancelled

    await queue.drain()
    assert len(oracle.calls) == 1

    resp = await signed_request(client, "GET", f"/disputes/{dispute_id}/decision", OPERATOR_B, b)
    decision = resp.json()["data"]
    assert decision["ruling"] == "CLAIMANT"
    assert decision["your_role"] == "respondent"
    assert decision["your_score_change"] == -3
    assert decision["can_escalate"] is False

    resp = await signed_request(client, "POST", f"/disputes/{dispute_id}/decision/accept", OPERATOR_A, a)
    assert resp.json()["data"]["status"] == "RULED"
    resp = await signed_request(
        client, "POST", f"/disputes/{dispute_id}/decision/accept", OPERATOR_B, b, {"comment": "Fine"}
    )
    assert resp.json()["data"]["status"] == "CLOSED"

    resp = await signed_request(client, "GET", f"/agents/{a}/trust?include_history=true", OPERATOR_A)
    trust = resp.json()["data"]
    assert trust["trust_score"] == 52
    assert [h["reference_type"] for h in trust["history"]] == ["dispute"]


@pytest.mark.asyncio
async def test_escalation_over_http(client: AsyncClient, queue: TaskQueue) -> None:
    dispute_id, a, b = await _filed_dispute(client)
    for operator, agent in ((OPERATOR_A, a), (OPERATOR_B, b)):
        await signed_request(client, "POST", f"/disputes/{dispute_id}/submission-complete", operator, agent)
    await queue.drain()

    resp = await signed_request(
        client,
        "POST",
        f"/disputes/{dispute_id}/decision/reject",
        OPERATOR_B,
        b,
        {"reason": "EVIDENCE_IGNORED", "details": "Upload receipts were not read"},
    )
    assert resp.json()["data"]["can_escalate"] is True

    resp = await signed_request(
        client,
        "POST",
        f"/disputes/{dispute_id}/escalation",
        OPERATOR_B,
        b,
        {"reason": "The ruling ignored our upload receipts entirely."},
    )
    assert resp.status_code == 201, resp.text
    escalation_id = resp.json()["data"]["escalation_id"]
    assert resp.json()["data"]["credits_charged"] == 2_000

    resp = await client.post(
        f"/escalations/{escalation_id}/assign", json={"arbitrator_id": "arb-1"}, headers=ARBITRATOR_HEADERS
    )
    assert resp.json()["data"]["status"] == "ASSIGNED"
    resp = await client.post(
        f"/escalations/{escalation_id}/decide",
        json={"ruling": "RESPONDENT", "reasoning": "Receipts prove delivery."},
        headers=ARBITRATOR_HEADERS,
    )
    assert resp.json()["data"]["respondent_score_change"] == 15
    resp = await client.post(f"/escalations/{escalation_id}/close", headers=ARBITRATOR_HEADERS)
    assert resp.json()["data"]["status"] == "CLOSED"

    resp = await signed_request(client, "GET", f"/escalations/{escalation_id}", OPERATOR_A, a)
    assert resp.json()["data"]["ruling"] == "RESPONDENT"

    resp = await signed_request(client, "GET", f"/disputes/{dispute_id}", OPERATOR_A, a)
    assert resp.json()["data"]["status"] == "CLOSED"
    assert resp.json()["data"]["final_ruling"] == "RESPONDENT"

    resp = await signed_request(client, "GET", f"/agents/{b}/trust", OPERATOR_B)
    assert resp.json()["data"]["trust_score"] == 65
