"""Transaction lifecycle and escrow endpoints."""

from typing import Literal

from fastapi import APIRouter, Depends, Query

from agent_resolve.auth.middleware import get_acting_agent
from agent_resolve.auth.rate_limit import check_rate_limit
from agent_resolve.dependencies import get_credit_ledger, get_store
from agent_resolve.models.agent import Agent
from agent_resolve.models.transaction import TransactionStatus
from agent_resolve.repositories.base import Store
from agent_resolve.schemas.common import Envelope
from agent_resolve.schemas.transaction import (
    EscrowFunding,
    TransactionDecision,
    TransactionDetailResponse,
    TransactionProposal,
    TransactionResponse,
)
from agent_resolve.services import transaction as transaction_service
from agent_resolve.services.credit import CreditLedger

router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.post(
    "",
    response_model=Envelope[TransactionResponse],
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def propose_transaction(
    data: TransactionProposal,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> Envelope[TransactionResponse]:
    """Propose a transaction to another agent. The receiver may belong to any operator."""
    transaction = await transaction_service.propose(store, ledger, agent, data)
    return Envelope(data=TransactionResponse.model_validate(transaction))


@router.get("", response_model=Envelope[list[TransactionResponse]], dependencies=[Depends(check_rate_limit)])
async def list_transactions(
    status: TransactionStatus | None = Query(None),
    role: Literal["both", "proposer", "receiver"] = Query("both"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[list[TransactionResponse]]:
    transactions = await transaction_service.list_for_agent(store, agent.agent_id, status, role, limit, offset)
    return Envelope(data=[TransactionResponse.model_validate(t) for t in transactions])


@router.get(
    "/{transaction_id}",
    response_model=Envelope[TransactionDetailResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_transaction(
    transaction_id: str,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[TransactionDetailResponse]:
    """Transaction with its escrow record. Parties only."""
    transaction = await transaction_service.get_transaction(store, transaction_id, agent.agent_id)
    return Envelope(data=TransactionDetailResponse.model_validate(transaction))


@router.post(
    "/{transaction_id}/respond",
    response_model=Envelope[TransactionResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def respond_to_transaction(
    transaction_id: str,
    data: TransactionDecision,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[TransactionResponse]:
    """Receiver accepts or rejects a proposal."""
    transaction = await transaction_service.respond(store, transaction_id, agent.agent_id, data.accept)
    return Envelope(data=TransactionResponse.model_validate(transaction))


@router.post(
    "/{transaction_id}/escrow/fund",
    response_model=Envelope[TransactionDetailResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def fund_escrow(
    transaction_id: str,
    data: EscrowFunding,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[TransactionDetailResponse]:
    transaction = await transaction_service.fund_escrow(store, transaction_id, agent.agent_id, data)
    return Envelope(data=TransactionDetailResponse.model_validate(transaction))


@router.post(
    "/{transaction_id}/escrow/release",
    response_model=Envelope[TransactionDetailResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def release_escrow(
    transaction_id: str,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[TransactionDetailResponse]:
    """Release funded escrow to your counterparty. Frozen while a dispute is open."""
    transaction = await transaction_service.release_escrow(store, transaction_id, agent.agent_id)
    return Envelope(data=TransactionDetailResponse.model_validate(transaction))


@router.post(
    "/{transaction_id}/complete",
    response_model=Envelope[TransactionResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def complete_transaction(
    transaction_id: str,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[TransactionResponse]:
    """Mark the transaction complete. Both parties gain +1 trust the first time."""
    transaction = await transaction_service.complete(store, transaction_id, agent.agent_id)
    return Envelope(data=TransactionResponse.model_validate(transaction))
