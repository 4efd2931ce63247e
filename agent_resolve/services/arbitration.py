"""Arbitration trigger and runner.

A dispute enters arbitration through exactly one successful claim. The claim
is a compare-and-set on the dispute row: the explicit trigger (both parties
marked their submissions complete) and the timed trigger (the review window
closed) race for it, and the loser is a silent no-op.

The claim holds a lease. The oracle is only called by the holder of a live
lease, and the ruling is only written if the dispute is still unruled. A run
that fails keeps the dispute IN_ARBITRATION and pushes the lease out by the
retry backoff; ``retry_stalled_arbitrations`` picks it up from there.
"""

import asyncio
import logging
import uuid
from datetime import UTC, datetime, timedelta

from agent_resolve.config import settings
from agent_resolve.errors import ExternalServiceError
from agent_resolve.models.dispute import (
    SUBMISSION_STATUSES,
    ArbitrationTrigger,
    Dispute,
    DisputeStatus,
)
from agent_resolve.repositories.base import Store
from agent_resolve.services.agent import calculate_ruling_impact
from agent_resolve.services.oracle import (
    ArbitrationOracle,
    ArbitrationRequest,
    ArbitrationResult,
    EvidenceItem,
)
from agent_resolve.services.work_queue import TaskQueue

logger = logging.getLogger(__name__)

SWEEP_BATCH = 100


def _lease_expired(dispute: Dispute, now: datetime) -> bool:
    return dispute.arbitration_lease_until is None or dispute.arbitration_lease_until <= now


async def claim_for_arbitration(
    store: Store,
    dispute_id: uuid.UUID,
    trigger: ArbitrationTrigger,
    now: datetime | None = None,
) -> bool:
    """Move a dispute into IN_ARBITRATION if the trigger's condition holds."""
    now = now or datetime.now(UTC)
    async with store.atomic() as uow:
        dispute = await uow.disputes.get(dispute_id, for_update=True)
        if dispute is None or dispute.status not in SUBMISSION_STATUSES:
            return False
        if trigger is ArbitrationTrigger.EXPLICIT and not dispute.both_submissions_complete:
            return False
        if trigger is ArbitrationTrigger.TIMED and dispute.review_closes_at > now:
            return False

        dispute.status = DisputeStatus.IN_ARBITRATION
        dispute.arbitration_trigger = trigger
        dispute.arbitration_started_at = now
        dispute.arbitration_lease_until = now + timedelta(seconds=settings.arbitration_lease_seconds)
        dispute.arbitration_attempts += 1
        dispute.updated_at = now

    logger.info("Dispute %s entered arbitration (%s)", dispute.external_id, trigger.value)
    return True


async def _reclaim_stalled(store: Store, dispute_id: uuid.UUID, now: datetime) -> bool:
    async with store.atomic() as uow:
        dispute = await uow.disputes.get(dispute_id, for_update=True)
        if (
            dispute is None
            or dispute.status != DisputeStatus.IN_ARBITRATION
            or dispute.ruling is not None
            or not _lease_expired(dispute, now)
        ):
            return False
        dispute.arbitration_lease_until = now + timedelta(seconds=settings.arbitration_lease_seconds)
        dispute.arbitration_attempts += 1
        dispute.updated_at = now

    logger.info(
        "Retrying arbitration for dispute %s (attempt %d)", dispute.external_id, dispute.arbitration_attempts
    )
    return True


async def _build_request(store: Store, dispute_id: uuid.UUID) -> ArbitrationRequest | None:
    async with store.atomic() as uow:
        dispute = await uow.disputes.get(dispute_id)
        if dispute is None or dispute.status != DisputeStatus.IN_ARBITRATION or dispute.ruling is not None:
            return None
        transaction = await uow.transactions.get(dispute.transaction_id)
        claimant = await uow.agents.get(dispute.claimant_id)
        respondent = await uow.agents.get(dispute.respondent_id)
        evidence = await uow.disputes.list_evidence(dispute.dispute_id)

    return ArbitrationRequest(
        dispute_id=dispute.external_id,
        transaction_title=transaction.title,
        transaction_description=transaction.description,
        transaction_terms=transaction.terms or {},
        stated_value=transaction.stated_value,
        claim_type=dispute.claim_type.value,
        claim_summary=dispute.claim_summary,
        claim_details=dispute.claim_details,
        requested_resolution=dispute.requested_resolution,
        response_summary=dispute.response_summary,
        response_details=dispute.response_details,
        claimant_trust_score=claimant.trust_score,
        respondent_trust_score=respondent.trust_score,
        evidence=[
            EvidenceItem(
                submitted_by=item.submitter_role.value,
                evidence_type=item.evidence_type.value,
                title=item.title,
                content=item.content,
            )
            for item in evidence
        ],
    )


async def _record_ruling(
    store: Store, dispute_id: uuid.UUID, result: ArbitrationResult, stated_value: int | None
) -> Dispute | None:
    claimant_delta, respondent_delta = calculate_ruling_impact(result.ruling, stated_value)
    if result.claimant_score_change is not None:
        claimant_delta = result.claimant_score_change
    if result.respondent_score_change is not None:
        respondent_delta = result.respondent_score_change

    async with store.atomic() as uow:
        dispute = await uow.disputes.get(dispute_id, for_update=True)
        if dispute.status != DisputeStatus.IN_ARBITRATION or dispute.ruling is not None:
            logger.warning("Dispute %s already ruled, discarding oracle result", dispute.external_id)
            return None

        now = datetime.now(UTC)
        dispute.ruling = result.ruling
        dispute.ruling_reasoning = result.reasoning
        dispute.ruling_details = result.details
        dispute.ruled_at = now
        dispute.decision_deadline = now + timedelta(days=settings.decision_window_days)
        dispute.claimant_score_change = claimant_delta
        dispute.respondent_score_change = respondent_delta
        dispute.status = DisputeStatus.RULED
        dispute.arbitration_lease_until = None
        dispute.last_arbitration_error = None
        dispute.updated_at = now

    logger.info(
        "Dispute %s ruled %s (claimant %+d, respondent %+d)",
        dispute.external_id, result.ruling.value, claimant_delta, respondent_delta,
    )
    return dispute


async def _record_failure(store: Store, dispute_id: uuid.UUID, error: str) -> None:
    async with store.atomic() as uow:
        dispute = await uow.disputes.get(dispute_id, for_update=True)
        if dispute.status != DisputeStatus.IN_ARBITRATION or dispute.ruling is not None:
            return
        now = datetime.now(UTC)
        dispute.last_arbitration_error = error[:2000]
        dispute.arbitration_lease_until = now + timedelta(seconds=settings.arbitration_retry_backoff_seconds)
        dispute.updated_at = now


async def run_arbitration(store: Store, oracle: ArbitrationOracle, dispute_id: uuid.UUID) -> Dispute | None:
    """Ask the oracle for a ruling and persist it. Returns the ruled dispute,
    or None if there was nothing to do or the oracle failed."""
    request = await _build_request(store, dispute_id)
    if request is None:
        return None

    try:
        result = await asyncio.wait_for(oracle.arbitrate(request), timeout=settings.oracle_timeout_seconds)
    except (ExternalServiceError, TimeoutError) as e:
        logger.exception("Arbitration failed for dispute %s", request.dispute_id)
        await _record_failure(store, dispute_id, str(e) or type(e).__name__)
        return None

    return await _record_ruling(store, dispute_id, result, request.stated_value)


def schedule_run(queue: TaskQueue, store: Store, oracle: ArbitrationOracle, dispute_id: uuid.UUID) -> asyncio.Task:
    return queue.submit(f"arbitration:{dispute_id}", lambda: run_arbitration(store, oracle, dispute_id))


async def start_arbitration(
    store: Store,
    oracle: ArbitrationOracle,
    queue: TaskQueue,
    dispute_id: uuid.UUID,
    trigger: ArbitrationTrigger,
    now: datetime | None = None,
) -> bool:
    """Claim and, on success, hand the oracle call to the work queue."""
    if not await claim_for_arbitration(store, dispute_id, trigger, now):
        return False
    schedule_run(queue, store, oracle, dispute_id)
    return True


async def process_due_disputes(
    store: Store, oracle: ArbitrationOracle, queue: TaskQueue, now: datetime | None = None
) -> int:
    """Timed trigger from the repository. Backs up the Redis review index."""
    now = now or datetime.now(UTC)
    async with store.atomic() as uow:
        due = [d.dispute_id for d in await uow.disputes.list_due_for_arbitration(now, SWEEP_BATCH)]

    started = 0
    for dispute_id in due:
        if await start_arbitration(store, oracle, queue, dispute_id, ArbitrationTrigger.TIMED, now):
            started += 1
    if started:
        logger.info("Review sweep started arbitration for %d disputes", started)
    return started


async def retry_stalled_arbitrations(
    store: Store, oracle: ArbitrationOracle, queue: TaskQueue, now: datetime | None = None
) -> int:
    now = now or datetime.now(UTC)
    async with store.atomic() as uow:
        stalled = [d.dispute_id for d in await uow.disputes.list_stalled_arbitrations(now, SWEEP_BATCH)]

    retried = 0
    for dispute_id in stalled:
        if await _reclaim_stalled(store, dispute_id, now):
            schedule_run(queue, store, oracle, dispute_id)
            retried += 1
    return retried
