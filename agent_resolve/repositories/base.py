"""Storage contracts the services depend on.

Every read-check-write runs inside ``Store.atomic()``. The unit commits when the
block exits normally and rolls back when it raises, so a failed check never
leaves partial state behind. Pass ``for_update=True`` on reads that feed a
mutation: the SQL store locks the row and re-reads it, so the check always runs
against the latest committed value.

Units must not nest, and no external call (oracle, credit ledger) may be made
while one is open.
"""

import abc
import uuid
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from agent_resolve.models.agent import Agent, TrustHistory
from agent_resolve.models.dispute import DecisionFeedback, Dispute, DisputeStatus, Evidence
from agent_resolve.models.escalation import Escalation
from agent_resolve.models.transaction import Transaction, TransactionStatus


class AgentRepository(abc.ABC):
    @abc.abstractmethod
    async def add(self, agent: Agent) -> None: ...

    @abc.abstractmethod
    async def get(self, agent_id: uuid.UUID, *, for_update: bool = False) -> Agent | None: ...

    @abc.abstractmethod
    async def get_by_external_id(self, external_id: str) -> Agent | None: ...

    @abc.abstractmethod
    async def get_by_identifier(self, operator_id: str, identifier: str) -> Agent | None: ...

    @abc.abstractmethod
    async def add_trust_history(self, entry: TrustHistory) -> None: ...

    @abc.abstractmethod
    async def list_trust_history(self, agent_id: uuid.UUID, limit: int) -> Sequence[TrustHistory]:
        """Newest first."""


class TransactionRepository(abc.ABC):
    @abc.abstractmethod
    async def add(self, transaction: Transaction) -> None: ...

    @abc.abstractmethod
    async def get(self, transaction_id: uuid.UUID, *, for_update: bool = False) -> Transaction | None: ...

    @abc.abstractmethod
    async def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Transaction | None: ...

    @abc.abstractmethod
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
        """Newest first."""

    @abc.abstractmethod
    async def list_expired_proposals(self, now: datetime, limit: int) -> Sequence[Transaction]: ...


class DisputeRepository(abc.ABC):
    @abc.abstractmethod
    async def add(self, dispute: Dispute) -> None: ...

    @abc.abstractmethod
    async def get(self, dispute_id: uuid.UUID, *, for_update: bool = False) -> Dispute | None: ...

    @abc.abstractmethod
    async def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Dispute | None: ...

    @abc.abstractmethod
    async def get_open_for_transaction(self, transaction_id: uuid.UUID) -> Dispute | None: ...

    @abc.abstractmethod
    async def count_filed_since(self, claimant_id: uuid.UUID, since: datetime) -> int:
        """Disputes filed since ``since``, not counting ones withdrawn for non-payment."""

    @abc.abstractmethod
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
        """Newest first."""

    @abc.abstractmethod
    async def list_awaiting_review(self, limit: int) -> Sequence[Dispute]:
        """Disputes still collecting submissions, soonest review close first."""

    @abc.abstractmethod
    async def list_due_for_arbitration(self, now: datetime, limit: int) -> Sequence[Dispute]:
        """Disputes still collecting submissions whose review window has closed."""

    @abc.abstractmethod
    async def list_unpaid_filings(self, filed_before: datetime, limit: int) -> Sequence[Dispute]:
        """Paid disputes still FILED that were created before ``filed_before``, oldest first."""

    @abc.abstractmethod
    async def list_stalled_arbitrations(self, now: datetime, limit: int) -> Sequence[Dispute]:
        """IN_ARBITRATION without a ruling and with no live lease."""

    @abc.abstractmethod
    async def add_evidence(self, evidence: Evidence) -> None: ...

    @abc.abstractmethod
    async def list_evidence(self, dispute_id: uuid.UUID) -> Sequence[Evidence]:
        """Oldest first, in submission order."""

    @abc.abstractmethod
    async def add_feedback(self, feedback: DecisionFeedback) -> None: ...

    @abc.abstractmethod
    async def get_feedback(self, dispute_id: uuid.UUID, agent_id: uuid.UUID) -> DecisionFeedback | None: ...


class EscalationRepository(abc.ABC):
    @abc.abstractmethod
    async def add(self, escalation: Escalation) -> None: ...

    @abc.abstractmethod
    async def get(self, escalation_id: uuid.UUID, *, for_update: bool = False) -> Escalation | None: ...

    @abc.abstractmethod
    async def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Escalation | None: ...

    @abc.abstractmethod
    async def get_active_for_dispute(self, dispute_id: uuid.UUID) -> Escalation | None: ...

    @abc.abstractmethod
    async def get_latest_for_dispute(self, dispute_id: uuid.UUID) -> Escalation | None: ...


class UnitOfWork(abc.ABC):
    agents: AgentRepository
    transactions: TransactionRepository
    disputes: DisputeRepository
    escalations: EscalationRepository


class Store(abc.ABC):
    @abc.abstractmethod
    def atomic(self) -> AbstractAsyncContextManager[UnitOfWork]:
        """Open one atomic read-check-write unit."""
