"""Escalation manager: human review of an automated ruling.

A party that rejected the ruling pays a flat fee to have a human arbitrator
take the case. The arbitrator's ruling is final, and its trust deltas replace
the automated ones.
"""

import logging
import uuid
from datetime import UTC, datetime

from agent_resolve.errors import (
    ExternalServiceError,
    InsufficientCreditsError,
    NotFoundError,
    StateConflictError,
)
from agent_resolve.models.agent import Agent, TrustReferenceType
from agent_resolve.models.dispute import Dispute, DisputeStatus
from agent_resolve.models.escalation import VALID_TRANSITIONS, Escalation, EscalationStatus
from agent_resolve.repositories.base import Store, UnitOfWork
from agent_resolve.schemas.escalation import ArbitratorDecision
from agent_resolve.services import credit as credit_service
from agent_resolve.services.agent import calculate_escalation_impact
from agent_resolve.services.credit import CreditLedger
from agent_resolve.services.decision import finalize
from agent_resolve.services.dispute import get_for_party
from agent_resolve.utils.ids import ESCALATION_PREFIX, looks_like, new_escalation_id

logger = logging.getLogger(__name__)


def _assert_transition(escalation: Escalation, target: EscalationStatus) -> None:
    if target not in VALID_TRANSITIONS.get(escalation.status, set()):
        raise StateConflictError(
            f"Cannot transition escalation from {escalation.status.value} to {target.value}",
            code="INVALID_ESCALATION_STATUS",
        )


async def _get_escalation(uow: UnitOfWork, escalation_ref: str, *, for_update: bool = False) -> Escalation:
    escalation = await uow.escalations.get_by_external_id(escalation_ref, for_update=for_update)
    if escalation is None:
        raise NotFoundError("Escalation not found", code="ESCALATION_NOT_FOUND")
    return escalation


async def request(store: Store, ledger: CreditLedger, agent: Agent, dispute_ref: str, reason: str) -> Escalation:
    """Claim the escalation slot, then collect the fee. A failed debit releases the slot."""
    async with store.atomic() as uow:
        dispute, role = await get_for_party(uow, dispute_ref, agent.agent_id, for_update=True)
        if dispute.decision_of(role) is not False:
            raise StateConflictError(
                "You must reject the ruling before requesting escalation", code="NO_PRIOR_REJECTION"
            )
        if dispute.status != DisputeStatus.RULED:
            raise StateConflictError(
                f"Cannot escalate dispute in {dispute.status.value} status", code="INVALID_DISPUTE_STATUS"
            )
        if await uow.escalations.get_active_for_dispute(dispute.dispute_id) is not None:
            raise StateConflictError("Dispute is already escalated", code="ALREADY_ESCALATED")

        now = datetime.now(UTC)
        escalation = Escalation(
            escalation_id=uuid.uuid4(),
            external_id=new_escalation_id(),
            dispute_id=dispute.dispute_id,
            requested_by_id=agent.agent_id,
            dispute_external_id=dispute.external_id,
            requested_by_external_id=agent.external_id,
            reason=reason,
            status=EscalationStatus.REQUESTED,
            credits_charged=0,
            fee_reference=f"escalation-fee:{dispute.external_id}:{agent.external_id}",
            requested_at=now,
        )
        await uow.escalations.add(escalation)
        dispute.status = DisputeStatus.ESCALATED
        dispute.updated_at = now

    fee = credit_service.escalation_fee()
    try:
        await credit_service.charge(ledger, agent.operator_id, fee, reference=escalation.fee_reference)
    except (InsufficientCreditsError, ExternalServiceError):
        await _release_slot(store, escalation.escalation_id)
        raise

    async with store.atomic() as uow:
        escalation = await uow.escalations.get(escalation.escalation_id, for_update=True)
        escalation.credits_charged = fee.amount

    logger.info(
        "Escalation %s requested for dispute %s by %s",
        escalation.external_id, escalation.dispute_external_id, agent.external_id,
    )
    return escalation


async def _release_slot(store: Store, escalation_id: uuid.UUID) -> None:
    async with store.atomic() as uow:
        escalation = await uow.escalations.get(escalation_id, for_update=True)
        if escalation.status != EscalationStatus.REQUESTED:
            return
        now = datetime.now(UTC)
        escalation.status = EscalationStatus.CANCELLED
        escalation.closed_at = now
        dispute = await uow.disputes.get(escalation.dispute_id, for_update=True)
        if dispute.status == DisputeStatus.ESCALATED:
            dispute.status = DisputeStatus.RULED
            dispute.updated_at = now
    logger.warning("Escalation %s cancelled: fee not collected", escalation.external_id)


async def assign(store: Store, escalation_ref: str, arbitrator_id: str) -> Escalation:
    async with store.atomic() as uow:
        escalation = await _get_escalation(uow, escalation_ref, for_update=True)
        _assert_transition(escalation, EscalationStatus.ASSIGNED)
        escalation.status = EscalationStatus.ASSIGNED
        escalation.arbitrator_id = arbitrator_id
        escalation.assigned_at = datetime.now(UTC)

    logger.info("Escalation %s assigned to %s", escalation.external_id, arbitrator_id)
    return escalation


async def decide(store: Store, escalation_ref: str, data: ArbitratorDecision) -> Escalation:
    """Record the human ruling. Omitted deltas follow the standard escalation impact."""
    claimant_delta, respondent_delta = calculate_escalation_impact(data.ruling)
    if data.claimant_score_change is not None:
        claimant_delta = data.claimant_score_change
    if data.respondent_score_change is not None:
        respondent_delta = data.respondent_score_change

    async with store.atomic() as uow:
        escalation = await _get_escalation(uow, escalation_ref, for_update=True)
        _assert_transition(escalation, EscalationStatus.DECIDED)
        escalation.status = EscalationStatus.DECIDED
        escalation.ruling = data.ruling
        escalation.ruling_reasoning = data.reasoning
        escalation.arbitrator_notes = data.notes
        escalation.claimant_score_change = claimant_delta
        escalation.respondent_score_change = respondent_delta
        escalation.decided_at = datetime.now(UTC)

    logger.info("Escalation %s decided: %s", escalation.external_id, data.ruling.value)
    return escalation


async def close(store: Store, escalation_ref: str) -> Escalation:
    """Close the escalation and its dispute, applying the human deltas."""
    async with store.atomic() as uow:
        escalation = await _get_escalation(uow, escalation_ref, for_update=True)
        _assert_transition(escalation, EscalationStatus.CLOSED)
        dispute = await uow.disputes.get(escalation.dispute_id, for_update=True)

        escalation.status = EscalationStatus.CLOSED
        escalation.closed_at = datetime.now(UTC)
        await finalize(
            uow,
            dispute,
            escalation.ruling,
            escalation.claimant_score_change,
            escalation.respondent_score_change,
            f"Escalation ruling ({escalation.ruling.value})",
            TrustReferenceType.ESCALATION,
            escalation.escalation_id,
        )

    logger.info("Escalation %s closed; dispute %s final", escalation.external_id, dispute.external_id)
    return escalation


async def get_status(store: Store, reference: str, agent_id: uuid.UUID) -> tuple[Escalation, Dispute]:
    """Look up by escalation id, or by dispute id for its latest escalation. Party-only."""
    async with store.atomic() as uow:
        if looks_like(reference, ESCALATION_PREFIX):
            escalation = await _get_escalation(uow, reference)
            dispute, _ = await get_for_party(uow, escalation.dispute_external_id, agent_id)
        else:
            dispute, _ = await get_for_party(uow, reference, agent_id)
            escalation = await uow.escalations.get_latest_for_dispute(dispute.dispute_id)
            if escalation is None:
                raise NotFoundError("Dispute has not been escalated", code="ESCALATION_NOT_FOUND")
    return escalation, dispute
