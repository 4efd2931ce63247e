"""Agent registration and trust endpoints."""

from fastapi import APIRouter, Depends, Query

from agent_resolve.auth.middleware import AuthenticatedOperator, verify_request
from agent_resolve.auth.rate_limit import check_rate_limit
from agent_resolve.dependencies import get_store
from agent_resolve.repositories.base import Store
from agent_resolve.schemas.agent import (
    AgentRegistration,
    AgentResponse,
    AgentTrustResponse,
    TrustHistoryEntry,
    TrustStats,
)
from agent_resolve.schemas.common import Envelope
from agent_resolve.services import agent as agent_service

router = APIRouter(prefix="/agents", tags=["agents"])


@router.post(
    "",
    response_model=Envelope[AgentResponse],
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def register_agent(
    data: AgentRegistration,
    auth: AuthenticatedOperator = Depends(verify_request),
    store: Store = Depends(get_store),
) -> Envelope[AgentResponse]:
    """Register an agent under the calling operator. Starts at trust 50."""
    agent = await agent_service.register(
        store, auth.operator_id, data.identifier, data.display_name, data.metadata
    )
    return Envelope(data=AgentResponse.model_validate(agent))


@router.get(
    "/{agent_ref}/trust",
    response_model=Envelope[AgentTrustResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_agent_trust(
    agent_ref: str,
    include_history: bool = Query(False),
    history_limit: int = Query(agent_service.HISTORY_VIEW_LIMIT, ge=1, le=100),
    auth: AuthenticatedOperator = Depends(verify_request),
    store: Store = Depends(get_store),
) -> Envelope[AgentTrustResponse]:
    """Trust score, level and dispute record. ``agent_ref`` is the agent id or your identifier."""
    view = await agent_service.get_trust(store, auth.operator_id, agent_ref, include_history, history_limit)
    agent = view.agent
    return Envelope(
        data=AgentTrustResponse(
            agent_id=agent.external_id,
            identifier=agent.identifier,
            display_name=agent.display_name,
            status=agent.status.value,
            trust_score=agent.trust_score,
            trust_level=view.level,
            stats=TrustStats(
                total_transactions=agent.total_transactions,
                completed_transactions=agent.completed_transactions,
                completion_rate=view.completion_rate,
                disputes_as_claimant=agent.disputes_as_claimant,
                disputes_as_respondent=agent.disputes_as_respondent,
                disputes_won=agent.disputes_won,
                disputes_lost=agent.disputes_lost,
                win_rate=view.win_rate,
            ),
            history=(
                [TrustHistoryEntry.model_validate(h) for h in view.history]
                if view.history is not None
                else None
            ),
        )
    )


@router.get("/{agent_ref}", response_model=Envelope[AgentResponse], dependencies=[Depends(check_rate_limit)])
async def get_agent(
    agent_ref: str,
    auth: AuthenticatedOperator = Depends(verify_request),
    store: Store = Depends(get_store),
) -> Envelope[AgentResponse]:
    agent = await agent_service.lookup(store, auth.operator_id, agent_ref)
    return Envelope(data=AgentResponse.model_validate(agent))


@router.post(
    "/{agent_ref}/deactivate",
    response_model=Envelope[AgentResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def deactivate_agent(
    agent_ref: str,
    auth: AuthenticatedOperator = Depends(verify_request),
    store: Store = Depends(get_store),
) -> Envelope[AgentResponse]:
    """Suspend an agent. It keeps its history but can no longer open transactions or disputes."""
    agent = await agent_service.deactivate(store, auth.operator_id, agent_ref)
    return Envelope(data=AgentResponse.model_validate(agent))
