"""Trust math, registration and the trust view."""

import pytest

from agent_resolve.errors import DuplicateAgentError, NotFoundError
from agent_resolve.models.agent import AgentStatus, TrustReferenceType
from agent_resolve.models.dispute import Ruling
from agent_resolve.repositories.memory import InMemoryStore
from agent_resolve.services import agent as agent_service
from agent_resolve.services.agent import (
    adjust_trust,
    calculate_escalation_impact,
    calculate_ruling_impact,
    clamp_trust,
    loss_penalty,
    trust_level,
)
from tests.conftest import OPERATOR_A, OPERATOR_B, make_agent, reload_agent


def test_clamp_trust() -> None:
    assert clamp_trust(-7) == 0
    assert clamp_trust(0) == 0
    assert clamp_trust(64) == 64
    assert clamp_trust(140) == 100


@pytest.mark.parametrize(
    ("stated_value", "penalty"),
    [(None, -3), (0, -3), (9_999, -3), (10_000, -5), (99_999, -5), (100_000, -10), (5_000_000, -10)],
)
def test_loss_penalty_tiers(stated_value: int | None, penalty: int) -> None:
    assert loss_penalty(stated_value) == penalty


def test_ruling_impact() -> None:
    assert calculate_ruling_impact(Ruling.CLAIMANT, 50_000) == (2, -5)
    assert calculate_ruling_impact(Ruling.RESPONDENT, 500) == (-3, 2)
    assert calculate_ruling_impact(Ruling.SPLIT, 1_000_000) == (-1, -1)
    assert calculate_ruling_impact(Ruling.DISMISSED, 1_000_000) == (-5, 0)


def test_escalation_impact() -> None:
    assert calculate_escalation_impact(Ruling.CLAIMANT) == (15, -25)
    assert calculate_escalation_impact(Ruling.RESPONDENT) == (-25, 15)
    assert calculate_escalation_impact(Ruling.SPLIT) == (-1, -1)
    assert calculate_escalation_impact(Ruling.DISMISSED) == (-25, 0)


def test_trust_levels() -> None:
    assert trust_level(100) == "excellent"
    assert trust_level(80) == "excellent"
    assert trust_level(79) == "good"
    assert trust_level(60) == "good"
    assert trust_level(40) == "moderate"
    assert trust_level(39) == "low"
    assert trust_level(0) == "low"


@pytest.mark.asyncio
async def test_register_starts_at_initial_score(store: InMemoryStore) -> None:
    agent = await agent_service.register(store, OPERATOR_A, "summarizer", "Summarizer", {"model": "x"})
    assert agent.trust_score == 50
    assert agent.status == AgentStatus.ACTIVE
    assert agent.external_id.startswith("RAGENT-")
    assert agent.metadata_ == {"model": "x"}


@pytest.mark.asyncio
async def test_register_duplicate_identifier(store: InMemoryStore) -> None:
    await agent_service.register(store, OPERATOR_A, "summarizer")
    with pytest.raises(DuplicateAgentError):
        await agent_service.register(store, OPERATOR_A, "summarizer")


@pytest.mark.asyncio
async def test_same_identifier_under_other_operator(store: InMemoryStore) -> None:
    first = await agent_service.register(store, OPERATOR_A, "summarizer")
    second = await agent_service.register(store, OPERATOR_B, "summarizer")
    assert first.external_id != second.external_id


@pytest.mark.asyncio
async def test_lookup_by_identifier_or_external_id(store: InMemoryStore) -> None:
    agent = await agent_service.register(store, OPERATOR_A, "summarizer")
    by_id = await agent_service.lookup(store, OPERATOR_A, agent.external_id)
    by_name = await agent_service.lookup(store, OPERATOR_A, "summarizer")
    assert by_id.agent_id == by_name.agent_id == agent.agent_id


@pytest.mark.asyncio
async def test_lookup_hides_other_operators_agents(store: InMemoryStore) -> None:
    agent = await agent_service.register(store, OPERATOR_A, "summarizer")
    with pytest.raises(NotFoundError) as exc_info:
        await agent_service.lookup(store, OPERATOR_B, agent.external_id)
    assert exc_info.value.code == "AGENT_NOT_FOUND"

    with pytest.raises(NotFoundError):
        await agent_service.lookup(store, OPERATOR_A, "no-such-agent")


@pytest.mark.asyncio
async def test_adjust_trust_clamps_and_records_actual_delta(store: InMemoryStore) -> None:
    agent = await make_agent(store)

    async with store.atomic() as uow:
        await adjust_trust(uow, agent.agent_id, -80, "Large loss", TrustReferenceType.DISPUTE)
    assert (await reload_agent(store, agent.agent_id)).trust_score == 0

    async with store.atomic() as uow:
        await adjust_trust(uow, agent.agent_id, 250, "Windfall")
    assert (await reload_agent(store, agent.agent_id)).trust_score == 100

    view = await agent_service.get_trust(store, OPERATOR_A, agent.external_id, include_history=True)
    deltas = [(h.previous_score, h.new_score, h.delta) for h in view.history]
    assert deltas == [(0, 100, 100), (50, 0, -50)]


@pytest.mark.asyncio
async def test_failed_unit_rolls_back_trust(store: InMemoryStore) -> None:
    agent = await make_agent(store)

    with pytest.raises(RuntimeError):
        async with store.atomic() as uow:
            await adjust_trust(uow, agent.agent_id, 10, "Never committed")
            raise RuntimeError("boom")

    view = await agent_service.get_trust(store, OPERATOR_A, agent.external_id, include_history=True)
    assert view.agent.trust_score == 50
    assert view.history == []


@pytest.mark.asyncio
async def test_trust_view_rates(store: InMemoryStore) -> None:
    agent = await make_agent(store)
    view = await agent_service.get_trust(store, OPERATOR_A, agent.external_id)
    assert view.level == "moderate"
    assert view.completion_rate is None
    assert view.win_rate is None
    assert view.history is None


@pytest.mark.asyncio
async def test_deactivate(store: InMemoryStore) -> None:
    agent = await make_agent(store)
    suspended = await agent_service.deactivate(store, OPERATOR_A, agent.external_id)
    assert suspended.status == AgentStatus.SUSPENDED
    # Repeat is a no-op
    again = await agent_service.deactivate(store, OPERATOR_A, agent.external_id)
    assert again.status == AgentStatus.SUSPENDED
