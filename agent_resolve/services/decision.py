"""Decision acceptance tracker.

After a ruling each party accepts or rejects it. Both accepting closes the
dispute and applies the ruling's trust deltas. A rejection never closes
anything; it only opens the escalation path for the party that rejected.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from agent_resolve.errors import InvalidStateError, StateConflictError
from agent_resolve.models.agent import TrustReferenceType
from agent_resolve.models.dispute import Dispute, DisputeStatus, PartyRole, RejectionReason, Ruling
from agent_resolve.repositories.base import Store, UnitOfWork
from agent_resolve.services.agent import adjust_trust, record_dispute_outcome
from agent_resolve.services.dispute import get_for_party

logger = logging.getLogger(__name__)

REJECTABLE_STATUSES = frozenset({DisputeStatus.RULED, DisputeStatus.ESCALATED})


@dataclass
class DecisionView:
    dispute: Dispute
    role: PartyRole
    can_escalate: bool

    @property
    def score_change(self) -> int | None:
        if self.role is PartyRole.CLAIMANT:
            return self.dispute.claimant_score_change
        return self.dispute.respondent_score_change


def _require_ruling(dispute: Dispute) -> None:
    if dispute.ruling is None:
        raise StateConflictError("Dispute has not been ruled on yet", code="NO_RULING_YET")


async def finalize(
    uow: UnitOfWork,
    dispute: Dispute,
    ruling: Ruling,
    claimant_delta: int,
    respondent_delta: int,
    reason: str,
    reference_type: TrustReferenceType = TrustReferenceType.DISPUTE,
    reference_id: uuid.UUID | None = None,
) -> None:
    """Close the dispute and apply trust exactly once. Runs in the caller's unit."""
    now = datetime.now(UTC)
    dispute.status = DisputeStatus.CLOSED
    dispute.final_ruling = ruling
    dispute.closed_at = now
    dispute.updated_at = now
    if dispute.trust_applied_at is not None:
        return

    reference_id = reference_id or dispute.dispute_id
    await adjust_trust(uow, dispute.claimant_id, claimant_delta, reason, reference_type, reference_id)
    await adjust_trust(uow, dispute.respondent_id, respondent_delta, reason, reference_type, reference_id)
    await record_dispute_outcome(uow, ruling, dispute.claimant_id, dispute.respondent_id)
    dispute.trust_applied_at = now


async def _can_escalate(uow: UnitOfWork, dispute: Dispute, role: PartyRole) -> bool:
    if dispute.status != DisputeStatus.RULED or dispute.decision_of(role) is not False:
        return False
    return await uow.escalations.get_active_for_dispute(dispute.dispute_id) is None


async def get_decision(store: Store, dispute_ref: str, agent_id: uuid.UUID) -> DecisionView:
    async with store.atomic() as uow:
        dispute, role = await get_for_party(uow, dispute_ref, agent_id)
        _require_ruling(dispute)
        can_escalate = await _can_escalate(uow, dispute, role)
    return DecisionView(dispute=dispute, role=role, can_escalate=can_escalate)


async def accept(
    store: Store, dispute_ref: str, agent_id: uuid.UUID, comment: str | None = None
) -> DecisionView:
    async with store.atomic() as uow:
        dispute, role = await get_for_party(uow, dispute_ref, agent_id, for_update=True)
        _require_ruling(dispute)
        current = dispute.decision_of(role)
        if current is False:
            raise StateConflictError("You have already rejected this ruling", code="ALREADY_REJECTED")

        if current is None:
            if dispute.status != DisputeStatus.RULED:
                raise InvalidStateError(
                    f"Cannot accept ruling for dispute in {dispute.status.value} status",
                    code="INVALID_DISPUTE_STATUS",
                )
            now = datetime.now(UTC)
            if role is PartyRole.CLAIMANT:
                dispute.claimant_accepted = True
                dispute.claimant_decided_at = now
                dispute.claimant_decision_comment = comment
            else:
                dispute.respondent_accepted = True
                dispute.respondent_decided_at = now
                dispute.respondent_decision_comment = comment
            dispute.updated_at = now
            logger.info("Dispute %s: %s accepted the ruling", dispute.external_id, role.value)

            if dispute.claimant_accepted and dispute.respondent_accepted:
                await finalize(
                    uow,
                    dispute,
                    dispute.ruling,
                    dispute.claimant_score_change or 0,
                    dispute.respondent_score_change or 0,
                    f"Dispute ruling accepted ({dispute.ruling.value})",
                )
                logger.info("Dispute %s closed by mutual acceptance", dispute.external_id)

        can_escalate = await _can_escalate(uow, dispute, role)
    return DecisionView(dispute=dispute, role=role, can_escalate=can_escalate)


async def reject(
    store: Store,
    dispute_ref: str,
    agent_id: uuid.UUID,
    reason: RejectionReason | None = None,
    details: str | None = None,
) -> DecisionView:
    async with store.atomic() as uow:
        dispute, role = await get_for_party(uow, dispute_ref, agent_id, for_update=True)
        _require_ruling(dispute)
        current = dispute.decision_of(role)
        if current is True:
            raise StateConflictError("You have already accepted this ruling", code="ALREADY_ACCEPTED")

        if current is None:
            if dispute.status not in REJECTABLE_STATUSES:
                raise InvalidStateError(
                    f"Cannot reject ruling for dispute in {dispute.status.value} status",
                    code="INVALID_DISPUTE_STATUS",
                )
            now = datetime.now(UTC)
            if role is PartyRole.CLAIMANT:
                dispute.claimant_accepted = False
                dispute.claimant_decided_at = now
                dispute.claimant_decision_comment = details
                dispute.claimant_rejection_reason = reason
            else:
                dispute.respondent_accepted = False
                dispute.respondent_decided_at = now
                dispute.respondent_decision_comment = details
                dispute.respondent_rejection_reason = reason
            dispute.updated_at = now
            logger.info(
                "Dispute %s: %s rejected the ruling (%s)",
                dispute.external_id, role.value, reason.value if reason else "no reason given",
            )

        can_escalate = await _can_escalate(uow, dispute, role)
    return DecisionView(dispute=dispute, role=role, can_escalate=can_escalate)
