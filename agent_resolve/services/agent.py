"""Agent registry: identity, operator scoping, and trust score bookkeeping."""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from agent_resolve.config import settings
from agent_resolve.errors import DuplicateAgentError, NotFoundError
from agent_resolve.models.agent import Agent, AgentStatus, TrustHistory, TrustReferenceType
from agent_resolve.models.dispute import Ruling
from agent_resolve.repositories.base import Store, UnitOfWork
from agent_resolve.utils.ids import AGENT_PREFIX, looks_like, new_agent_id

logger = logging.getLogger(__name__)

MIN_TRUST = 0
MAX_TRUST = 100

# Trust deltas
COMPLETION_BONUS = 1
DISPUTE_WIN = 2
SPLIT_PENALTY = -1
DISMISSED_CLAIM_PENALTY = -5
ESCALATION_FAVORABLE = 15
ESCALATION_UNFAVORABLE = -25

# (upper bound in cents, exclusive; penalty). Anything above the last bound loses 10.
LOSS_PENALTIES: tuple[tuple[int, int], ...] = ((10_000, -3), (100_000, -5))
LARGE_LOSS_PENALTY = -10

HISTORY_VIEW_LIMIT = 10


def clamp_trust(score: int) -> int:
    return max(MIN_TRUST, min(MAX_TRUST, score))


def loss_penalty(stated_value: int | None) -> int:
    value = stated_value or 0
    for bound, penalty in LOSS_PENALTIES:
        if value < bound:
            return penalty
    return LARGE_LOSS_PENALTY


def calculate_ruling_impact(ruling: Ruling, stated_value: int | None) -> tuple[int, int]:
    """(claimant delta, respondent delta) for an automated ruling."""
    if ruling is Ruling.CLAIMANT:
        return DISPUTE_WIN, loss_penalty(stated_value)
    if ruling is Ruling.RESPONDENT:
        return loss_penalty(stated_value), DISPUTE_WIN
    if ruling is Ruling.SPLIT:
        return SPLIT_PENALTY, SPLIT_PENALTY
    return DISMISSED_CLAIM_PENALTY, 0


def calculate_escalation_impact(ruling: Ruling) -> tuple[int, int]:
    """(claimant delta, respondent delta) for a final human ruling."""
    if ruling is Ruling.CLAIMANT:
        return ESCALATION_FAVORABLE, ESCALATION_UNFAVORABLE
    if ruling is Ruling.RESPONDENT:
        return ESCALATION_UNFAVORABLE, ESCALATION_FAVORABLE
    if ruling is Ruling.SPLIT:
        return SPLIT_PENALTY, SPLIT_PENALTY
    return ESCALATION_UNFAVORABLE, 0


def trust_level(score: int) -> str:
    if score >= 80:
        return "excellent"
    if score >= 60:
        return "good"
    if score >= 40:
        return "moderate"
    return "low"


def _rate(numerator: int, denominator: int) -> int | None:
    if denominator == 0:
        return None
    return round(numerator / denominator * 100)


@dataclass
class TrustView:
    agent: Agent
    level: str
    completion_rate: int | None
    win_rate: int | None
    history: list[TrustHistory] | None


async def register(
    store: Store,
    operator_id: str,
    identifier: str,
    display_name: str | None = None,
    metadata: dict | None = None,
) -> Agent:
    async with store.atomic() as uow:
        if await uow.agents.get_by_identifier(operator_id, identifier) is not None:
            raise DuplicateAgentError(f"Agent '{identifier}' is already registered for this operator")

        now = datetime.now(UTC)
        agent = Agent(
            agent_id=uuid.uuid4(),
            external_id=new_agent_id(),
            operator_id=operator_id,
            identifier=identifier,
            display_name=display_name,
            metadata_=metadata,
            status=AgentStatus.ACTIVE,
            trust_score=settings.initial_trust_score,
            total_transactions=0,
            completed_transactions=0,
            disputes_as_claimant=0,
            disputes_as_respondent=0,
            disputes_won=0,
            disputes_lost=0,
            created_at=now,
            updated_at=now,
        )
        await uow.agents.add(agent)

    logger.info("Registered agent %s (%s) for operator %s", agent.external_id, identifier, operator_id)
    return agent


async def resolve_reference(uow: UnitOfWork, operator_id: str, reference: str) -> Agent:
    """Find an operator's agent by external id or identifier.

    Another operator's agent raises the same NotFoundError as a missing one.
    """
    agent = None
    if looks_like(reference, AGENT_PREFIX):
        agent = await uow.agents.get_by_external_id(reference)
    if agent is None:
        agent = await uow.agents.get_by_identifier(operator_id, reference)
    if agent is None or agent.operator_id != operator_id:
        raise NotFoundError("Agent not found or does not belong to your account", code="AGENT_NOT_FOUND")
    return agent


async def lookup(store: Store, operator_id: str, reference: str) -> Agent:
    async with store.atomic() as uow:
        return await resolve_reference(uow, operator_id, reference)


async def deactivate(store: Store, operator_id: str, reference: str) -> Agent:
    async with store.atomic() as uow:
        agent = await resolve_reference(uow, operator_id, reference)
        agent = await uow.agents.get(agent.agent_id, for_update=True)
        if agent.status != AgentStatus.SUSPENDED:
            agent.status = AgentStatus.SUSPENDED
            agent.updated_at = datetime.now(UTC)
            logger.info("Deactivated agent %s", agent.external_id)
    return agent


async def adjust_trust(
    uow: UnitOfWork,
    agent_id: uuid.UUID,
    delta: int,
    reason: str,
    reference_type: TrustReferenceType | None = None,
    reference_id: uuid.UUID | None = None,
) -> Agent:
    """Apply ``delta`` against the latest stored score and append a history row.

    Must run inside the caller's atomic unit so the score and its history
    commit together.
    """
    agent = await uow.agents.get(agent_id, for_update=True)
    if agent is None:
        raise NotFoundError("Agent not found", code="AGENT_NOT_FOUND")

    previous = agent.trust_score
    new_score = clamp_trust(previous + delta)
    now = datetime.now(UTC)
    agent.trust_score = new_score
    agent.updated_at = now

    await uow.agents.add_trust_history(
        TrustHistory(
            trust_history_id=uuid.uuid4(),
            agent_id=agent_id,
            previous_score=previous,
            new_score=new_score,
            delta=new_score - previous,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            created_at=now,
        )
    )
    logger.info("Trust %s: %d -> %d (%s)", agent.external_id, previous, new_score, reason)
    return agent


async def record_dispute_outcome(
    uow: UnitOfWork,
    ruling: Ruling,
    claimant_id: uuid.UUID,
    respondent_id: uuid.UUID,
) -> None:
    """Update win/loss counters. A split ruling counts for neither side."""
    if ruling is Ruling.SPLIT:
        return
    winner_id, loser_id = (
        (claimant_id, respondent_id) if ruling is Ruling.CLAIMANT else (respondent_id, claimant_id)
    )
    winner = await uow.agents.get(winner_id, for_update=True)
    loser = await uow.agents.get(loser_id, for_update=True)
    winner.disputes_won += 1
    loser.disputes_lost += 1


async def get_trust(
    store: Store,
    operator_id: str,
    reference: str,
    include_history: bool = False,
    history_limit: int = HISTORY_VIEW_LIMIT,
) -> TrustView:
    async with store.atomic() as uow:
        agent = await resolve_reference(uow, operator_id, reference)
        history = None
        if include_history:
            history = list(await uow.agents.list_trust_history(agent.agent_id, history_limit))

    decided = agent.disputes_won + agent.disputes_lost
    return TrustView(
        agent=agent,
        level=trust_level(agent.trust_score),
        completion_rate=_rate(agent.completed_transactions, agent.total_transactions),
        win_rate=_rate(agent.disputes_won, decided),
        history=history,
    )
