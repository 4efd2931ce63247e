"""In-process store for tests and single-process development servers.

Units are serialized behind one asyncio.Lock, which makes every unit trivially
serializable. Each unit works on copies of the committed rows and writes them
back only when the block exits cleanly, so a raised error discards the unit's
changes just like a database rollback.
"""

import asyncio
import copy
import uuid
from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Generic, TypeVar

from sqlalchemy import inspect

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

T = TypeVar("T")


def _clone(obj: T) -> T:
    clone = type(obj)()
    for attr in inspect(type(obj)).column_attrs:
        setattr(clone, attr.key, copy.deepcopy(getattr(obj, attr.key)))
    return clone


class _Table(Generic[T]):
    """Committed rows plus the unit's working copies."""

    def __init__(self, committed: dict[uuid.UUID, T]) -> None:
        self._committed = committed
        self._working: dict[uuid.UUID, T] = {}

    def get(self, key: uuid.UUID) -> T | None:
        if key in self._working:
            return self._working[key]
        row = self._committed.get(key)
        if row is None:
            return None
        working = _clone(row)
        self._working[key] = working
        return working

    def put(self, key: uuid.UUID, row: T) -> None:
        self._working[key] = row

    def rows(self) -> Iterator[T]:
        for key in list(self._committed.keys() | self._working.keys()):
            row = self.get(key)
            if row is not None:
                yield row

    def find(self, predicate: Callable[[T], bool]) -> T | None:
        return next((row for row in self.rows() if predicate(row)), None)

    def commit(self) -> None:
        for key, row in self._working.items():
            self._committed[key] = _clone(row)


class _Log(Generic[T]):
    """Append-only rows."""

    def __init__(self, committed: list[T]) -> None:
        self._committed = committed
        self._pending: list[T] = []

    def append(self, row: T) -> None:
        self._pending.append(row)

    def rows(self) -> list[T]:
        return [_clone(row) for row in self._committed] + list(self._pending)

    def commit(self) -> None:
        self._committed.extend(_clone(row) for row in self._pending)


def _page(rows: list[T], key: Callable[[T], datetime], limit: int, offset: int) -> list[T]:
    rows.sort(key=key, reverse=True)
    return rows[offset:offset + limit]


class MemoryAgentRepository(AgentRepository):
    def __init__(self, table: _Table[Agent], history: _Log[TrustHistory]) -> None:
        self._table = table
        self._history = history

    async def add(self, agent: Agent) -> None:
        clash = self._table.find(
            lambda a: a.operator_id == agent.operator_id and a.identifier == agent.identifier
        )
        if clash is not None:
            raise DuplicateAgentError(
                f"Agent '{agent.identifier}' is already registered for this operator"
            )
        self._table.put(agent.agent_id, agent)

    async def get(self, agent_id: uuid.UUID, *, for_update: bool = False) -> Agent | None:
        return self._table.get(agent_id)

    async def get_by_external_id(self, external_id: str) -> Agent | None:
        return self._table.find(lambda a: a.external_id == external_id)

    async def get_by_identifier(self, operator_id: str, identifier: str) -> Agent | None:
        return self._table.find(lambda a: a.operator_id == operator_id and a.identifier == identifier)

    async def add_trust_history(self, entry: TrustHistory) -> None:
        self._history.append(entry)

    async def list_trust_history(self, agent_id: uuid.UUID, limit: int) -> Sequence[TrustHistory]:
        rows = [h for h in self._history.rows() if h.agent_id == agent_id]
        # Insertion order breaks ties between entries written in the same instant
        rows.reverse()
        return _page(rows, lambda h: h.created_at, limit, 0)


class MemoryTransactionRepository(TransactionRepository):
    def __init__(self, table: _Table[Transaction]) -> None:
        self._table = table

    async def add(self, transaction: Transaction) -> None:
        self._table.put(transaction.transaction_id, transaction)

    async def get(self, transaction_id: uuid.UUID, *, for_update: bool = False) -> Transaction | None:
        return self._table.get(transaction_id)

    async def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Transaction | None:
        return self._table.find(lambda t: t.external_id == external_id)

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
        rows = [
            t for t in self._table.rows()
            if ((as_proposer and t.proposer_id == agent_id) or (as_receiver and t.receiver_id == agent_id))
            and (status is None or t.status == status)
        ]
        return _page(rows, lambda t: t.created_at, limit, offset)

    async def list_expired_proposals(self, now: datetime, limit: int) -> Sequence[Transaction]:
        rows = [
            t for t in self._table.rows()
            if t.status == TransactionStatus.PROPOSED and t.expires_at <= now
        ]
        rows.sort(key=lambda t: t.expires_at)
        return rows[:limit]


class MemoryDisputeRepository(DisputeRepository):
    def __init__(
        self, table: _Table[Dispute], evidence: _Log[Evidence], feedback: _Log[DecisionFeedback]
    ) -> None:
        self._table = table
        self._evidence = evidence
        self._feedback = feedback

    async def add(self, dispute: Dispute) -> None:
        self._table.put(dispute.dispute_id, dispute)

    async def get(self, dispute_id: uuid.UUID, *, for_update: bool = False) -> Dispute | None:
        return self._table.get(dispute_id)

    async def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Dispute | None:
        return self._table.find(lambda d: d.external_id == external_id)

    async def get_open_for_transaction(self, transaction_id: uuid.UUID) -> Dispute | None:
        return self._table.find(
            lambda d: d.transaction_id == transaction_id and d.status != DisputeStatus.CLOSED
        )

    async def count_filed_since(self, claimant_id: uuid.UUID, since: datetime) -> int:
        return sum(
            1 for d in self._table.rows()
            if d.claimant_id == claimant_id and d.created_at >= since and d.withdrawn_at is None
        )

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
        rows = [
            d for d in self._table.rows()
            if ((as_claimant and d.claimant_id == agent_id) or (as_respondent and d.respondent_id == agent_id))
            and (status is None or d.status == status)
        ]
        return _page(rows, lambda d: d.created_at, limit, offset)

    async def list_awaiting_review(self, limit: int) -> Sequence[Dispute]:
        rows = [d for d in self._table.rows() if d.status in SUBMISSION_STATUSES]
        rows.sort(key=lambda d: d.review_closes_at)
        return rows[:limit]

    async def list_due_for_arbitration(self, now: datetime, limit: int) -> Sequence[Dispute]:
        rows = [
            d for d in self._table.rows()
            if d.status in SUBMISSION_STATUSES and d.review_closes_at <= now
        ]
        rows.sort(key=lambda d: d.review_closes_at)
        return rows[:limit]

    async def list_unpaid_filings(self, filed_before: datetime, limit: int) -> Sequence[Dispute]:
        rows = [
            d for d in self._table.rows()
            if d.status == DisputeStatus.FILED and d.created_at <= filed_before
        ]
        rows.sort(key=lambda d: d.created_at)
        return rows[:limit]

    async def list_stalled_arbitrations(self, now: datetime, limit: int) -> Sequence[Dispute]:
        rows = [
            d for d in self._table.rows()
            if d.status == DisputeStatus.IN_ARBITRATION
            and d.ruling is None
            and (d.arbitration_lease_until is None or d.arbitration_lease_until <= now)
        ]
        rows.sort(key=lambda d: d.arbitration_started_at or now)
        return rows[:limit]

    async def add_evidence(self, evidence: Evidence) -> None:
        self._evidence.append(evidence)

    async def list_evidence(self, dispute_id: uuid.UUID) -> Sequence[Evidence]:
        return [e for e in self._evidence.rows() if e.dispute_id == dispute_id]

    async def add_feedback(self, feedback: DecisionFeedback) -> None:
        if await self.get_feedback(feedback.dispute_id, feedback.agent_id) is not None:
            raise DuplicateFeedbackError("Feedback already submitted for this dispute")
        self._feedback.append(feedback)

    async def get_feedback(self, dispute_id: uuid.UUID, agent_id: uuid.UUID) -> DecisionFeedback | None:
        return next(
            (f for f in self._feedback.rows() if f.dispute_id == dispute_id and f.agent_id == agent_id), None
        )


class MemoryEscalationRepository(EscalationRepository):
    def __init__(self, table: _Table[Escalation]) -> None:
        self._table = table

    async def add(self, escalation: Escalation) -> None:
        self._table.put(escalation.escalation_id, escalation)

    async def get(self, escalation_id: uuid.UUID, *, for_update: bool = False) -> Escalation | None:
        return self._table.get(escalation_id)

    async def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Escalation | None:
        return self._table.find(lambda e: e.external_id == external_id)

    async def get_active_for_dispute(self, dispute_id: uuid.UUID) -> Escalation | None:
        return self._table.find(
            lambda e: e.dispute_id == dispute_id and e.status in ACTIVE_ESCALATION_STATUSES
        )

    async def get_latest_for_dispute(self, dispute_id: uuid.UUID) -> Escalation | None:
        rows = [e for e in self._table.rows() if e.dispute_id == dispute_id]
        if not rows:
            return None
        return max(rows, key=lambda e: e.requested_at)


class MemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: "InMemoryStore") -> None:
        self._tables = (
            _Table(store._agents),
            _Table(store._transactions),
            _Table(store._disputes),
            _Table(store._escalations),
        )
        self._logs = (_Log(store._trust_history), _Log(store._evidence), _Log(store._feedback))
        agents, transactions, disputes, escalations = self._tables
        trust_history, evidence, feedback = self._logs
        self.agents = MemoryAgentRepository(agents, trust_history)
        self.transactions = MemoryTransactionRepository(transactions)
        self.disputes = MemoryDisputeRepository(disputes, evidence, feedback)
        self.escalations = MemoryEscalationRepository(escalations)

    def commit(self) -> None:
        for table in self._tables:
            table.commit()
        for log in self._logs:
            log.commit()


class InMemoryStore(Store):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._agents: dict[uuid.UUID, Agent] = {}
        self._transactions: dict[uuid.UUID, Transaction] = {}
        self._disputes: dict[uuid.UUID, Dispute] = {}
        self._escalations: dict[uuid.UUID, Escalation] = {}
        self._trust_history: list[TrustHistory] = []
        self._evidence: list[Evidence] = []
        self._feedback: list[DecisionFeedback] = []

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[MemoryUnitOfWork]:
        async with self._lock:
            uow = MemoryUnitOfWork(self)
            yield uow
            uow.commit()
