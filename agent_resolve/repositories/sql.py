"""Postgres-backed repositories on an AsyncSession."""

import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_resolve.errors import DuplicateAgentError, DuplicateFeedbackError
from agent_resolve.models.agent import Agent, TrustHistory
from agent_resolve.models.dispute import (
    SUBMISSION_STATUSES,
    DecisionFeedback,
    Dispute,
    DisputeStatus,
    Evidence,
)
from agent_resolve.models.escalation import ACTIVE_ESCALATION_STATUSES, Escalation
from agent_resolve.models.transaction import Transaction, TransactionStatus
from agent_resolve.repositories.base import (
    AgentRepository,
    DisputeRepository,
    EscalationRepository,
    Store,
    TransactionRepository,
    UnitOfWork,
)


def _locked(stmt: Select, for_update: bool) -> Select:
    # populate_existing refreshes an instance already in the identity map,
    # otherwise the lock would be taken but stale attributes returned
    if for_update:
        return stmt.with_for_update().execution_options(populate_existing=True)
    return stmt


class _SqlRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _one(self, stmt: Select):  # type: ignore[no-untyped-def]
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _all(self, stmt: Select) -> list:
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class SqlAgentRepository(_SqlRepository, AgentRepository):
    async def add(self, agent: Agent) -> None:
        self.session.add(agent)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise DuplicateAgentError(
                f"Agent '{agent.identifier}' is already registered for this operator"
            ) from e

    async def get(self, agent_id: uuid.UUID, *, for_update: bool = False) -> Agent | None:
        return await self._one(_locked(select(Agent).where(Agent.agent_id == agent_id), for_update))

    async def get_by_external_id(self, external_id: str) -> Agent | None:
        return await self._one(select(Agent).where(Agent.external_id == external_id))

    async def get_by_identifier(self, operator_id: str, identifier: str) -> Agent | None:
        return await self._one(
            select(Agent).where(Agent.operator_id == operator_id, Agent.identifier == identifier)
        )

    async def add_trust_history(self, entry: TrustHistory) -> None:
        self.session.add(entry)

    async def list_trust_history(self, agent_id: uuid.UUID, limit: int) -> Sequence[TrustHistory]:
        return await self._all(
            select(TrustHistory)
            .where(TrustHistory.agent_id == agent_id)
            .order_by(TrustHistory.created_at.desc())
            .limit(limit)
        )


class SqlTransactionRepository(_SqlRepository, TransactionRepository):
    async def add(self, transaction: Transaction) -> None:
        self.session.add(transaction)
        await self.session.flush()

    async def get(self, transaction_id: uuid.UUID, *, for_update: bool = False) -> Transaction | None:
        stmt = select(Transaction).where(Transaction.transaction_id == transaction_id)
        return await self._one(_locked(stmt, for_update))

    async def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Transaction | None:
        stmt = select(Transaction).where(Transaction.external_id == external_id)
        return await self._one(_locked(stmt, for_update))

    async def list_for_agent(
        self,
        agent_id: uuid.UUID,
        *,
        status: TransactionStatus | None = None,
        as_proposer: bool = True,
        as_receiver: bool = True,
        limit: int = 20,
        offset: int = 0,
    ) -> Sequence[Transaction]:
        roles = []
        if as_proposer:
            roles.append(Transaction.proposer_id == agent_id)
        if as_receiver:
            roles.append(Transaction.receiver_id == agent_id)
        if not roles:
            return []
        stmt = select(Transaction).where(or_(*roles))
        if status is not None:
            stmt = stmt.where(Transaction.status == status)
        stmt = stmt.order_by(Transaction.created_at.desc()).limit(limit).offset(offset)
        return await self._all(stmt)

    async def list_expired_proposals(self, now: datetime, limit: int) -> Sequence[Transaction]:
        return await self._all(
            select(Transaction)
            .where(Transaction.status == TransactionStatus.PROPOSED, Transaction.expires_at <= now)
            .order_by(Transaction.expires_at)
            .limit(limit)
        )


class SqlDisputeRepository(_SqlRepository, DisputeRepository):
    async def add(self, dispute: Dispute) -> None:
        self.session.add(dispute)
        await self.session.flush()

    async def get(self, dispute_id: uuid.UUID, *, for_update: bool = False) -> Dispute | None:
        return await self._one(_locked(select(Dispute).where(Dispute.dispute_id == dispute_id), for_update))

    async def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Dispute | None:
        stmt = select(Dispute).where(Dispute.external_id == external_id)
        return await self._one(_locked(stmt, for_update))

    async def get_open_for_transaction(self, transaction_id: uuid.UUID) -> Dispute | None:
        return await self._one(
            select(Dispute)
            .where(Dispute.transaction_id == transaction_id, Dispute.status != DisputeStatus.CLOSED)
            .limit(1)
        )

    async def count_filed_since(self, claimant_id: uuid.UUID, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(Dispute)
            .where(
                Dispute.claimant_id == claimant_id,
                Dispute.created_at >= since,
                Dispute.withdrawn_at.is_(None),
            )
        )
        return int(result.scalar_one())

    async def list_for_agent(
        self,
        agent_id: uuid.UUID,
        *,
        status: DisputeStatus | None = None,
        as_claimant: bool = True,
        as_respondent: bool = True,
        limit: int = 20,
        offset: int = 0,
    ) -> Sequence[Dispute]:
        roles = []
        if as_claimant:
            roles.append(Dispute.claimant_id == agent_id)
        if as_respondent:
            roles.append(Dispute.respondent_id == agent_id)
        if not roles:
            return []
        stmt = select(Dispute).where(or_(*roles))
        if status is not None:
            stmt = stmt.where(Dispute.status == status)
        stmt = stmt.order_by(Dispute.created_at.desc()).limit(limit).offset(offset)
        return await self._all(stmt)

    async def list_awaiting_review(self, limit: int) -> Sequence[Dispute]:
        return await self._all(
            select(Dispute)
            .where(Dispute.status.in_(SUBMISSION_STATUSES))
            .order_by(Dispute.review_closes_at)
            .limit(limit)
        )

    async def list_due_for_arbitration(self, now: datetime, limit: int) -> Sequence[Dispute]:
        return await self._all(
            select(Dispute)
            .where(Dispute.status.in_(SUBMISSION_STATUSES), Dispute.review_closes_at <= now)
            .order_by(Dispute.review_closes_at)
            .limit(limit)
        )

    async def list_unpaid_filings(self, filed_before: datetime, limit: int) -> Sequence[Dispute]:
        return await self._all(
            select(Dispute)
            .where(Dispute.status == DisputeStatus.FILED, Dispute.created_at <= filed_before)
            .order_by(Dispute.created_at)
            .limit(limit)
        )

    async def list_stalled_arbitrations(self, now: datetime, limit: int) -> Sequence[Dispute]:
        return await self._all(
            select(Dispute)
            .where(
                Dispute.status == DisputeStatus.IN_ARBITRATION,
                Dispute.ruling.is_(None),
                or_(Dispute.arbitration_lease_until.is_(None), Dispute.arbitration_lease_until <= now),
            )
            .order_by(Dispute.arbitration_started_at)
            .limit(limit)
        )

    async def add_evidence(self, evidence: Evidence) -> None:
        self.session.add(evidence)

    async def list_evidence(self, dispute_id: uuid.UUID) -> Sequence[Evidence]:
        return await self._all(
            select(Evidence).where(Evidence.dispute_id == dispute_id).order_by(Evidence.created_at)
        )

    async def add_feedback(self, feedback: DecisionFeedback) -> None:
        self.session.add(feedback)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise DuplicateFeedbackError("Feedback already submitted for this dispute") from e

    async def get_feedback(self, dispute_id: uuid.UUID, agent_id: uuid.UUID) -> DecisionFeedback | None:
        return await self._one(
            select(DecisionFeedback).where(
                DecisionFeedback.dispute_id == dispute_id, DecisionFeedback.agent_id == agent_id
            )
        )


class SqlEscalationRepository(_SqlRepository, EscalationRepository):
    async def add(self, escalation: Escalation) -> None:
        self.session.add(escalation)
        await self.session.flush()

    async def get(self, escalation_id: uuid.UUID, *, for_update: bool = False) -> Escalation | None:
        stmt = select(Escalation).where(Escalation.escalation_id == escalation_id)
        return await self._one(_locked(stmt, for_update))

    async def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Escalation | None:
        stmt = select(Escalation).where(Escalation.external_id == external_id)
        return await self._one(_locked(stmt, for_update))

    async def get_active_for_dispute(self, dispute_id: uuid.UUID) -> Escalation | None:
        return await self._one(
            select(Escalation)
            .where(
                Escalation.dispute_id == dispute_id,
                Escalation.status.in_(ACTIVE_ESCALATION_STATUSES),
            )
            .limit(1)
        )

    async def get_latest_for_dispute(self, dispute_id: uuid.UUID) -> Escalation | None:
        return await self._one(
            select(Escalation)
            .where(Escalation.dispute_id == dispute_id)
            .order_by(Escalation.requested_at.desc())
            .limit(1)
        )


class SqlUnitOfWork(UnitOfWork):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.agents = SqlAgentRepository(session)
        self.transactions = SqlTransactionRepository(session)
        self.disputes = SqlDisputeRepository(session)
        self.escalations = SqlEscalationRepository(session)


class SqlStore(Store):
    """One AsyncSession transaction per unit."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[SqlUnitOfWork]:
        async with self._session_factory() as session:
            async with session.begin():
                yield SqlUnitOfWork(session)
