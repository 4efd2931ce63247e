"""Escalation to a human arbitrator."""

import pytest

from agent_resolve.errors import AuthorizationError, InsufficientCreditsError, NotFoundError, StateConflictError
from agent_resolve.models.agent import TrustReferenceType
from agent_resolve.models.dispute import DisputeStatus, Ruling
from agent_resolve.models.escalation import EscalationStatus
from agent_resolve.repositories.memory import InMemoryStore
from agent_resolve.schemas.escalation import ArbitratorDecision
from agent_resolve.services import agent as agent_service
from agent_resolve.services import decision as decision_service
from agent_resolve.services import escalation as escalation_service
from agent_resolve.services.credit import InMemoryCreditLedger
from agent_resolve.services.work_queue import TaskQueue
from tests.conftest import OPERATOR_B, StubOracle, make_agent, make_ruled_dispute, reload_dispute

REASON = "The arbitrator ignored the delivery logs we submitted."


async def _rejected_by_respondent(store, ledger, oracle, queue):
    a = await make_agent(store)
    b = await make_agent(store, OPERATOR_B)
    dispute = await make_ruled_dispute(store, ledger, oracle, queue, a, b)
    await decision_service.reject(store, dispute.external_id, b.agent_id)
    return dispute, a, b


@pytest.mark.asyncio
async def test_escalation_requires_prior_rejection(
    store: InMemoryStore, ledger: InMemoryCreditLedger, oracle: StubOracle, queue: TaskQueue
) -> None:
    dispute, a, _ = await _rejected_by_respondent(store, ledger, oracle, queue)
    with pytest.raises(StateConflictError) as exc_info:
        await escalation_service.request(store, ledger, a, dispute.external_id, REASON)
    assert exc_info.value.code == "NO_PRIOR_REJECTION"


@pytest.mark.asyncio
async def test_request_charges_fee_and_escalates(
    store: InMemoryStore, ledger: InMemoryCreditLedger, oracle: StubOracle, queue: TaskQueue
) -> None:
    dispute, a, b = await _rejected_by_respondent(store, ledger, oracle, queue)

    escalation = await escalation_service.request(store, ledger, b, dispute.external_id, REASON)
    assert escalation.status == EscalationStatus.REQUESTED
    assert escalation.credits_charged == 2_000
    assert ledger.balance(OPERATOR_B) == 100_000 - 2_000
    assert (await reload_dispute(store, dispute.dispute_id)).status == DisputeStatus.ESCALATED

    with pytest.raises(StateConflictError):
        await escalation_service.request(store, ledger, b, dispute.external_id, REASON)

    # The other party can no longer accept the automated ruling
    with pytest.raises(StateConflictError):
        await decision_service.accept(store, dispute.external_id, a.agent_id)


@pytest.mark.asyncio
async def test_failed_debit_releases_slot(
    store: InMemoryStore, oracle: StubOracle, queue: TaskQueue
) -> None:
    ledger = InMemoryCreditLedger(starting_balance=1_000)
    dispute, _, b = await _rejected_by_respondent(store, ledger, oracle, queue)

    with pytest.raises(InsufficientCreditsError):
        await escalation_service.request(store, ledger, b, dispute.external_id, REASON)

    stored = await reload_dispute(store, dispute.dispute_id)
    assert stored.status == DisputeStatus.RULED
    cancelled, _ = await escalation_service.get_status(store, dispute.external_id, b.agent_id)
    assert cancelled.status == EscalationStatus.CANCELLED
    view = await decision_service.get_decision(store, dispute.external_id, b.agent_id)
    assert view.can_escalate is True

    ledger.balances[OPERATOR_B] = 5_000
    escalation = await escalation_service.request(store, ledger, b, dispute.external_id, REASON)
    assert escalation.status == EscalationStatus.REQUESTED
    assert ledger.balance(OPERATOR_B) == 3_000


@pytest.mark.asyncio
async def test_close_applies_human_deltas_only(
    store: InMemoryStore, ledger: InMemoryCreditLedger, oracle: StubOracle, queue: TaskQueue
) -> None:
    dispute, a, b = await _rejected_by_respondent(store, ledger, oracle, queue)
    escalation = await escalation_service.request(store, ledger, b, dispute.external_id, REASON)

    with pytest.raises(StateConflictError):
        await escalation_service.close(store, escalation.external_id)

    await escalation_service.assign(store, escalation.external_id, "arbitrator-7")
    decided = await escalation_service.decide(
        store,
        escalation.external_id,
        ArbitratorDecision(ruling=Ruling.RESPONDENT, reasoning="Logs show delivery."),
    )
    assert (decided.claimant_score_change, decided.respondent_score_change) == (-25, 15)

    closed = await escalation_service.close(store, escalation.external_id)
    assert closed.status == EscalationStatus.CLOSED

    final = await reload_dispute(store, dispute.dispute_id)
    assert final.status == DisputeStatus.CLOSED
    assert final.final_ruling == Ruling.RESPONDENT
    assert final.ruling == Ruling.CLAIMANT

    claimant = await agent_service.get_trust(store, a.operator_id, a.external_id, include_history=True)
    respondent = await agent_service.get_trust(store, b.operator_id, b.external_id, include_history=True)
    assert claimant.agent.trust_score == 25
    assert respondent.agent.trust_score == 65
    assert [h.reference_type for h in claimant.history] == [TrustReferenceType.ESCALATION]
    assert respondent.agent.disputes_won == 1
    assert claimant.agent.disputes_lost == 1


@pytest.mark.asyncio
async def test_decide_with_explicit_deltas(
    store: InMemoryStore, ledger: InMemoryCreditLedger, oracle: StubOracle, queue: TaskQueue
) -> None:
    dispute, a, b = await _rejected_by_respondent(store, ledger, oracle, queue)
    escalation = await escalation_service.request(store, ledger, b, dispute.external_id, REASON)
    await escalation_service.assign(store, escalation.external_id, "arbitrator-7")
    await escalation_service.decide(
        store,
        escalation.external_id,
        ArbitratorDecision(
            ruling=Ruling.SPLIT, reasoning="Partial delivery.", claimant_score_change=0, respondent_score_change=-4
        ),
    )
    await escalation_service.close(store, escalation.external_id)

    assert (await agent_service.get_trust(store, a.operator_id, a.external_id)).agent.trust_score == 50
    assert (await agent_service.get_trust(store, b.operator_id, b.external_id)).agent.trust_score == 46


@pytest.mark.asyncio
async def test_get_status_is_party_only(
    store: InMemoryStore, ledger: InMemoryCreditLedger, oracle: StubOracle, queue: TaskQueue
) -> None:
    dispute, a, b = await _rejected_by_respondent(store, ledger, oracle, queue)
    outsider = await make_agent(store)
    escalation = await escalation_service.request(store, ledger, b, dispute.external_id, REASON)

    by_id, _ = await escalation_service.get_status(store, escalation.external_id, a.agent_id)
    by_dispute, _ = await escalation_service.get_status(store, dispute.external_id, a.agent_id)
    assert by_id.escalation_id == by_dispute.escalation_id == escalation.escalation_id

    with pytest.raises(AuthorizationError) as exc_info:
        await escalation_service.get_status(store, escalation.external_id, outsider.agent_id)
    assert exc_info.value.code == "NOT_PARTY"

    with pytest.raises(NotFoundError):
        await escalation_service.get_status(store, "RESC-AAAAAAAAAAAAAAAA", a.agent_id)
