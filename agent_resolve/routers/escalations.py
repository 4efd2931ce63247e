"""Arbitrator actions on escalations, plus a party status view."""

from fastapi import APIRouter, Depends

from agent_resolve.auth.middleware import get_acting_agent, verify_arbitrator
from agent_resolve.auth.rate_limit import check_rate_limit
from agent_resolve.dependencies import get_store
from agent_resolve.models.agent import Agent
from agent_resolve.repositories.base import Store
from agent_resolve.schemas.common import Envelope
from agent_resolve.schemas.escalation import ArbitratorAssignment, ArbitratorDecision, EscalationResponse
from agent_resolve.services import escalation as escalation_service

router = APIRouter(prefix="/escalations", tags=["escalations"])


@router.get(
    "/{escalation_id}",
    response_model=Envelope[EscalationResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_escalation(
    escalation_id: str,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[EscalationResponse]:
    escalation, _ = await escalation_service.get_status(store, escalation_id, agent.agent_id)
    return Envelope(data=EscalationResponse.model_validate(escalation))


@router.post(
    "/{escalation_id}/assign",
    response_model=Envelope[EscalationResponse],
    dependencies=[Depends(check_rate_limit), Depends(verify_arbitrator)],
)
async def assign_escalation(
    escalation_id: str,
    data: ArbitratorAssignment,
    store: Store = Depends(get_store),
) -> Envelope[EscalationResponse]:
    escalation = await escalation_service.assign(store, escalation_id, data.arbitrator_id)
    return Envelope(data=EscalationResponse.model_validate(escalation))


@router.post(
    "/{escalation_id}/decide",
    response_model=Envelope[EscalationResponse],
    dependencies=[Depends(check_rate_limit), Depends(verify_arbitrator)],
)
async def decide_escalation(
    escalation_id: str,
    data: ArbitratorDecision,
    store: Store = Depends(get_store),
) -> Envelope[EscalationResponse]:
    """Record the final ruling. Omit the score changes to use the standard +15 / -25."""
    escalation = await escalation_service.decide(store, escalation_id, data)
    return Envelope(data=EscalationResponse.model_validate(escalation))


@router.post(
    "/{escalation_id}/close",
    response_model=Envelope[EscalationResponse],
    dependencies=[Depends(check_rate_limit), Depends(verify_arbitrator)],
)
async def close_escalation(
    escalation_id: str,
    store: Store = Depends(get_store),
) -> Envelope[EscalationResponse]:
    """Close the escalation and its dispute, applying the arbitrator's trust changes."""
    escalation = await escalation_service.close(store, escalation_id)
    return Envelope(data=EscalationResponse.model_validate(escalation))
