"""Party feedback on how a closed dispute was decided."""

import logging
import uuid
from datetime import UTC, datetime, timedelta

from agent_resolve.config import settings
from agent_resolve.errors import ExpiredError, InvalidStateError
from agent_resolve.models.dispute import DecisionFeedback, DisputeStatus, PartyRole, Ruling
from agent_resolve.repositories.base import Store
from agent_resolve.schemas.dispute import FeedbackSubmission
from agent_resolve.services.dispute import get_for_party

logger = logging.getLogger(__name__)

_WINNING_RULING = {PartyRole.CLAIMANT: Ruling.CLAIMANT, PartyRole.RESPONDENT: Ruling.RESPONDENT}


async def submit_feedback(
    store: Store, dispute_ref: str, agent_id: uuid.UUID, data: FeedbackSubmission
) -> DecisionFeedback:
    """Rate a decided dispute. Each party can rate it once, within the feedback window."""
    async with store.atomic() as uow:
        dispute, role = await get_for_party(uow, dispute_ref, agent_id)
        ruling = dispute.final_ruling or dispute.ruling
        # Disputes withdrawn before opening were never decided
        if dispute.status != DisputeStatus.CLOSED or ruling is None:
            raise InvalidStateError(
                "Feedback is only accepted once a decided dispute has closed", code="INVALID_DISPUTE_STATUS"
            )
        now = datetime.now(UTC)
        if now > dispute.closed_at + timedelta(days=settings.feedback_window_days):
            raise ExpiredError("Feedback window has closed", code="FEEDBACK_WINDOW_CLOSED")

        feedback = DecisionFeedback(
            feedback_id=uuid.uuid4(),
            dispute_id=dispute.dispute_id,
            agent_id=agent_id,
            party_role=role,
            was_winner=ruling == _WINNING_RULING[role],
            fairness_rating=data.fairness_rating,
            reasoning_rating=data.reasoning_rating,
            evidence_rating=data.evidence_rating,
            comment=data.comment,
            created_at=now,
        )
        await uow.disputes.add_feedback(feedback)

    logger.info(
        "Feedback on dispute %s from %s (fairness %d, reasoning %d, evidence %d)",
        dispute.external_id, role.value, data.fairness_rating, data.reasoning_rating, data.evidence_rating,
    )
    return feedback
