"""Dispute case manager: filing, response, deadlines and evidence.

Arbitration itself lives in services/arbitration.py. This module only moves a
case up to the point where it can be claimed for arbitration.
"""

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from agent_resolve.config import settings
from agent_resolve.errors import (
    AuthorizationError,
    DuplicateDisputeError,
    ExpiredError,
    ExternalServiceError,
    InsufficientCreditsError,
    InvalidStateError,
    NotFoundError,
    StateConflictError,
)
from agent_resolve.models.agent import Agent, AgentStatus
from agent_resolve.models.dispute import (
    EXTENDABLE_STATUSES,
    SUBMISSION_STATUSES,
    Dispute,
    DisputeStatus,
    Evidence,
    PartyRole,
)
from agent_resolve.models.transaction import ACTIVE_STATUSES, EscrowStatus, TransactionStatus
from agent_resolve.repositories.base import Store, UnitOfWork
from agent_resolve.schemas.dispute import DisputeFiling, DisputeReply, EvidenceSubmission
from agent_resolve.services import credit as credit_service
from agent_resolve.services.credit import Charge, CreditLedger
from agent_resolve.utils.ids import new_dispute_id

logger = logging.getLogger(__name__)

UNPAID_SWEEP_BATCH = 100


def _require_party(dispute: Dispute, agent_id: uuid.UUID) -> PartyRole:
    role = dispute.role_of(agent_id)
    if role is None:
        raise AuthorizationError("Not a party to this dispute", code="NOT_PARTY")
    return role


async def get_for_party(
    uow: UnitOfWork, dispute_ref: str, agent_id: uuid.UUID, *, for_update: bool = False
) -> tuple[Dispute, PartyRole]:
    dispute = await uow.disputes.get_by_external_id(dispute_ref, for_update=for_update)
    if dispute is None:
        raise NotFoundError("Dispute not found", code="DISPUTE_NOT_FOUND")
    return dispute, _require_party(dispute, agent_id)


def review_close_time(dispute: Dispute) -> datetime:
    """When the timed trigger may fire: the response deadline, or later if a
    reply came in close to it."""
    if dispute.response_submitted_at is None:
        return dispute.response_deadline
    return max(
        dispute.response_deadline,
        dispute.response_submitted_at + timedelta(hours=settings.review_window_hours),
    )


async def _open_case(uow: UnitOfWork, dispute: Dispute) -> None:
    dispute.status = DisputeStatus.AWAITING_RESPONSE
    dispute.updated_at = datetime.now(UTC)
    claimant = await uow.agents.get(dispute.claimant_id, for_update=True)
    respondent = await uow.agents.get(dispute.respondent_id, for_update=True)
    claimant.disputes_as_claimant += 1
    respondent.disputes_as_respondent += 1


async def file(store: Store, ledger: CreditLedger, claimant: Agent, data: DisputeFiling) -> Dispute:
    """Open a dispute on an active transaction.

    A paid dispute sits in FILED until its fee is collected. Filing again while
    it is still FILED resumes collection under the same idempotency reference.
    """
    if claimant.status != AgentStatus.ACTIVE:
        raise AuthorizationError("Claimant agent is not active", code="CLAIMANT_NOT_ACTIVE")

    async with store.atomic() as uow:
        transaction = await uow.transactions.get_by_external_id(data.transaction_id, for_update=True)
        if transaction is None:
            raise NotFoundError("Transaction not found", code="TRANSACTION_NOT_FOUND")
        if not transaction.is_party(claimant.agent_id):
            raise AuthorizationError("Not a party to this transaction", code="NOT_PARTY")

        dispute = await uow.disputes.get_open_for_transaction(transaction.transaction_id)
        if dispute is not None:
            if not (dispute.status == DisputeStatus.FILED and dispute.claimant_id == claimant.agent_id):
                raise DuplicateDisputeError(
                    f"Transaction already has an open dispute ({dispute.external_id})"
                )
            logger.info("Resuming fee collection for dispute %s", dispute.external_id)
        else:
            if transaction.status not in ACTIVE_STATUSES:
                raise StateConflictError(
                    f"Cannot dispute transaction in {transaction.status.value} status",
                    code="INVALID_TRANSACTION_STATUS",
                )

            now = datetime.now(UTC)
            filed_this_month = await uow.disputes.count_filed_since(
                claimant.agent_id, credit_service.month_start(now)
            )
            fee = credit_service.calculate_dispute_cost(transaction.stated_value, filed_this_month)
            deadline = now + timedelta(hours=settings.response_deadline_hours)
            dispute = Dispute(
                dispute_id=uuid.uuid4(),
                external_id=new_dispute_id(),
                transaction_id=transaction.transaction_id,
                claimant_id=claimant.agent_id,
                respondent_id=transaction.counterparty_of(claimant.agent_id),
                transaction_external_id=transaction.external_id,
                claimant_external_id=claimant.external_id,
                respondent_external_id=transaction.external_id_of(
                    transaction.counterparty_of(claimant.agent_id)
                ),
                status=DisputeStatus.FILED,
                filing_cost=fee.amount,
                claim_type=data.claim_type,
                claim_summary=data.claim_summary,
                claim_details=data.claim_details,
                requested_resolution=data.requested_resolution,
                response_deadline=deadline,
                review_closes_at=deadline,
                claimant_submission_complete=False,
                respondent_submission_complete=False,
                arbitration_attempts=0,
                created_at=now,
                updated_at=now,
            )
            await uow.disputes.add(dispute)
            transaction.status = TransactionStatus.DISPUTED
            transaction.updated_at = now

            if fee.amount == 0:
                await _open_case(uow, dispute)

    if dispute.status != DisputeStatus.FILED:
        logger.info(
            "Dispute %s filed on %s by %s (free)",
            dispute.external_id, dispute.transaction_external_id, claimant.external_id,
        )
        return dispute

    dispute = await _collect_filing_fee(store, ledger, claimant.operator_id, dispute)
    logger.info(
        "Dispute %s filed on %s by %s (%d credits)",
        dispute.external_id, dispute.transaction_external_id, claimant.external_id, dispute.filing_cost,
    )
    return dispute


async def _withdraw(store: Store, dispute_id: uuid.UUID) -> None:
    """Close an unpaid dispute and hand the transaction back to its parties."""
    async with store.atomic() as uow:
        dispute = await uow.disputes.get(dispute_id, for_update=True)
        if dispute.status != DisputeStatus.FILED:
            return
        now = datetime.now(UTC)
        dispute.status = DisputeStatus.CLOSED
        dispute.closed_at = now
        dispute.withdrawn_at = now
        dispute.updated_at = now

        transaction = await uow.transactions.get(dispute.transaction_id, for_update=True)
        if transaction.status == TransactionStatus.DISPUTED:
            transaction.status = (
                TransactionStatus.IN_PROGRESS
                if transaction.escrow_status == EscrowStatus.FUNDED
                else TransactionStatus.ACCEPTED
            )
            transaction.updated_at = now
    logger.info("Dispute %s withdrawn: filing fee not collected", dispute.external_id)


async def _collect_filing_fee(store: Store, ledger: CreditLedger, operator_id: str, dispute: Dispute) -> Dispute:
    """Debit the filing fee and open the case.

    An operator that cannot pay gets the dispute withdrawn. An ExternalServiceError
    leaves it FILED for a retry under the same reference.
    """
    fee = Charge("dispute", dispute.filing_cost, f"Dispute filing for {dispute.transaction_external_id}")
    try:
        await credit_service.charge(ledger, operator_id, fee, reference=f"dispute-fee:{dispute.external_id}")
    except InsufficientCreditsError:
        await _withdraw(store, dispute.dispute_id)
        raise

    async with store.atomic() as uow:
        dispute = await uow.disputes.get(dispute.dispute_id, for_update=True)
        if dispute.status == DisputeStatus.FILED:
            await _open_case(uow, dispute)
    return dispute


async def settle_unpaid_filings(store: Store, ledger: CreditLedger, now: datetime | None = None) -> int:
    """Retry the fee for paid disputes left FILED by a ledger outage.

    Each one either opens, or is withdrawn when the claimant cannot pay or the
    ledger stays unreachable past ``unpaid_dispute_expiry_hours``. Returns how
    many were settled either way.
    """
    now = now or datetime.now(UTC)
    retry_before = now - timedelta(minutes=settings.unpaid_dispute_retry_after_minutes)
    expire_before = now - timedelta(hours=settings.unpaid_dispute_expiry_hours)

    async with store.atomic() as uow:
        pending = []
        for dispute in await uow.disputes.list_unpaid_filings(retry_before, UNPAID_SWEEP_BATCH):
            claimant = await uow.agents.get(dispute.claimant_id)
            pending.append((dispute, claimant.operator_id))

    settled = 0
    for dispute, operator_id in pending:
        try:
            opened = await _collect_filing_fee(store, ledger, operator_id, dispute)
        except InsufficientCreditsError:
            settled += 1
            continue
        except ExternalServiceError as e:
            if dispute.created_at > expire_before:
                logger.warning("Filing fee for dispute %s still uncollected: %s", dispute.external_id, e)
                continue
            # The debit may have landed without us hearing back; the reference allows reconciliation
            logger.warning(
                "Withdrawing dispute %s after %dh without fee collection (ref dispute-fee:%s)",
                dispute.external_id, settings.unpaid_dispute_expiry_hours, dispute.external_id,
            )
            await _withdraw(store, dispute.dispute_id)
            settled += 1
            continue
        settled += 1
        logger.info("Dispute %s opened after deferred fee collection", opened.external_id)

    return settled


async def respond(store: Store, dispute_ref: str, respondent_id: uuid.UUID, data: DisputeReply) -> Dispute:
    async with store.atomic() as uow:
        dispute, role = await get_for_party(uow, dispute_ref, respondent_id, for_update=True)
        if role is not PartyRole.RESPONDENT:
            raise AuthorizationError("Only the respondent can respond to a dispute", code="NOT_RESPONDENT")
        if dispute.status != DisputeStatus.AWAITING_RESPONSE:
            raise InvalidStateError(
                f"Cannot respond to dispute in {dispute.status.value} status", code="INVALID_DISPUTE_STATUS"
            )
        now = datetime.now(UTC)
        if now > dispute.response_deadline:
            raise ExpiredError("Response deadline has passed", code="RESPONSE_DEADLINE_PASSED")

        dispute.response_summary = data.response_summary
        dispute.response_details = data.response_details
        dispute.response_submitted_at = now
        dispute.status = DisputeStatus.RESPONSE_RECEIVED
        dispute.review_closes_at = review_close_time(dispute)
        dispute.updated_at = now

    logger.info("Dispute %s answered by respondent", dispute.external_id)
    return dispute


async def extend_deadline(
    store: Store, dispute_ref: str, caller_id: uuid.UUID, additional_hours: int
) -> Dispute:
    """Push the response deadline out. Cumulative and uncapped."""
    async with store.atomic() as uow:
        dispute, role = await get_for_party(uow, dispute_ref, caller_id, for_update=True)
        if role is not PartyRole.CLAIMANT:
            raise AuthorizationError("Only the claimant can extend the deadline", code="NOT_CLAIMANT")
        if dispute.status not in EXTENDABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot extend deadline for dispute in {dispute.status.value} status",
                code="INVALID_DISPUTE_STATUS",
            )

        dispute.response_deadline = dispute.response_deadline + timedelta(hours=additional_hours)
        dispute.review_closes_at = review_close_time(dispute)
        dispute.updated_at = datetime.now(UTC)

    logger.info(
        "Dispute %s deadline extended by %dh to %s",
        dispute.external_id, additional_hours, dispute.response_deadline.isoformat(),
    )
    return dispute


def _assert_submissions_open(dispute: Dispute) -> None:
    if dispute.status not in SUBMISSION_STATUSES:
        raise InvalidStateError(
            f"Submissions are closed for dispute in {dispute.status.value} status",
            code="SUBMISSIONS_CLOSED",
        )


async def submit_evidence(
    store: Store, dispute_ref: str, agent_id: uuid.UUID, data: EvidenceSubmission
) -> Evidence:
    async with store.atomic() as uow:
        dispute, role = await get_for_party(uow, dispute_ref, agent_id, for_update=True)
        # Open to both parties until arbitration starts, whatever their own flag says
        _assert_submissions_open(dispute)

        evidence = Evidence(
            evidence_id=uuid.uuid4(),
            dispute_id=dispute.dispute_id,
            submitted_by_id=agent_id,
            submitter_role=role,
            evidence_type=data.evidence_type,
            title=data.title,
            content=data.content,
            created_at=datetime.now(UTC),
        )
        await uow.disputes.add_evidence(evidence)

    logger.info("Evidence added to dispute %s by %s", dispute.external_id, role.value)
    return evidence


async def mark_submission_complete(store: Store, dispute_ref: str, agent_id: uuid.UUID) -> Dispute:
    """Set the caller's flag. The caller checks ``both_submissions_complete``
    to decide whether to start arbitration.

    Marking again is a no-op that returns the current flags, even once
    arbitration has started.
    """
    async with store.atomic() as uow:
        dispute, role = await get_for_party(uow, dispute_ref, agent_id, for_update=True)
        if dispute.submission_complete(role):
            return dispute
        _assert_submissions_open(dispute)

        if role is PartyRole.CLAIMANT:
            dispute.claimant_submission_complete = True
        else:
            dispute.respondent_submission_complete = True
        dispute.updated_at = datetime.now(UTC)

    logger.info(
        "Dispute %s: %s submission complete (both=%s)",
        dispute.external_id, role.value, dispute.both_submissions_complete,
    )
    return dispute


async def get_dispute(store: Store, dispute_ref: str, agent_id: uuid.UUID) -> Dispute:
    async with store.atomic() as uow:
        dispute, _ = await get_for_party(uow, dispute_ref, agent_id)
    return dispute


async def list_evidence(store: Store, dispute_ref: str, agent_id: uuid.UUID) -> Sequence[Evidence]:
    async with store.atomic() as uow:
        dispute, _ = await get_for_party(uow, dispute_ref, agent_id)
        return await uow.disputes.list_evidence(dispute.dispute_id)


async def list_for_agent(
    store: Store,
    agent_id: uuid.UUID,
    status: DisputeStatus | None = None,
    role: str = "both",
    limit: int = 20,
    offset: int = 0,
) -> Sequence[Dispute]:
    async with store.atomic() as uow:
        return await uow.disputes.list_for_agent(
            agent_id,
            status=status,
            as_claimant=role in ("both", "claimant"),
            as_respondent=role in ("both", "respondent"),
            limit=limit,
            offset=offset,
        )
