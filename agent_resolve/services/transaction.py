"""Transaction ledger: proposal, response, escrow and completion."""

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from agent_resolve.errors import (
    AuthorizationError,
    ExpiredError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from agent_resolve.models.agent import Agent, AgentStatus, TrustReferenceType
from agent_resolve.models.transaction import (
    ACTIVE_STATUSES,
    VALID_TRANSITIONS,
    EscrowStatus,
    Transaction,
    TransactionStatus,
)
from agent_resolve.repositories.base import Store, UnitOfWork
from agent_resolve.schemas.transaction import EscrowFunding, TransactionProposal
from agent_resolve.services import credit as credit_service
from agent_resolve.services.agent import COMPLETION_BONUS, adjust_trust
from agent_resolve.services.credit import CreditLedger
from agent_resolve.utils.ids import new_transaction_id

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_BATCH = 200


def _assert_transition(transaction: Transaction, target: TransactionStatus) -> None:
    if target not in VALID_TRANSITIONS.get(transaction.status, set()):
        raise StateConflictError(
            f"Cannot transition from {transaction.status.value} to {target.value}",
            code="INVALID_TRANSACTION_STATUS",
        )


def _assert_party(transaction: Transaction, agent_id: uuid.UUID, allowed: str = "both") -> None:
    """allowed: 'proposer', 'receiver', 'both'."""
    if allowed == "receiver" and agent_id != transaction.receiver_id:
        raise AuthorizationError("Only the receiver can respond to this transaction", code="NOT_RECEIVER")
    if allowed == "proposer" and agent_id != transaction.proposer_id:
        raise AuthorizationError("Only the proposer can perform this action", code="NOT_PROPOSER")
    if not transaction.is_party(agent_id):
        raise AuthorizationError("Not a party to this transaction", code="NOT_PARTY")


async def _get_transaction(uow: UnitOfWork, transaction_ref: str, *, for_update: bool = False) -> Transaction:
    transaction = await uow.transactions.get_by_external_id(transaction_ref, for_update=for_update)
    if transaction is None:
        raise NotFoundError("Transaction not found", code="TRANSACTION_NOT_FOUND")
    return transaction


async def propose(
    store: Store,
    ledger: CreditLedger,
    proposer: Agent,
    data: TransactionProposal,
) -> Transaction:
    """Proposer offers a transaction to another agent, possibly under another operator."""
    if proposer.status != AgentStatus.ACTIVE:
        raise AuthorizationError("Proposer agent is not active", code="PROPOSER_NOT_ACTIVE")

    async with store.atomic() as uow:
        receiver = await uow.agents.get_by_external_id(data.receiver_id)
        if receiver is None:
            raise NotFoundError("Receiver agent not found", code="RECEIVER_NOT_FOUND")
        if receiver.agent_id == proposer.agent_id:
            raise ValidationError("Cannot propose a transaction to yourself", code="SELF_TRANSACTION")
        if receiver.status != AgentStatus.ACTIVE:
            raise StateConflictError("Receiver agent is not active", code="RECEIVER_NOT_ACTIVE")

    external_id = new_transaction_id()
    # Charged before the row exists. A retry with the same id is never charged twice.
    await credit_service.charge(
        ledger,
        proposer.operator_id,
        credit_service.transaction_fee(),
        reference=f"transaction-fee:{external_id}",
    )

    now = datetime.now(UTC)
    transaction = Transaction(
        transaction_id=uuid.uuid4(),
        external_id=external_id,
        proposer_id=proposer.agent_id,
        receiver_id=receiver.agent_id,
        proposer_external_id=proposer.external_id,
        receiver_external_id=receiver.external_id,
        title=data.title,
        description=data.description,
        terms=data.terms,
        stated_value=data.stated_value,
        currency=data.currency,
        status=TransactionStatus.PROPOSED,
        expires_at=now + timedelta(days=data.expires_in_days),
        escrow_status=EscrowStatus.NONE,
        created_at=now,
        updated_at=now,
    )
    async with store.atomic() as uow:
        await uow.transactions.add(transaction)

    logger.info(
        "Transaction %s proposed by %s to %s", external_id, proposer.external_id, receiver.external_id
    )
    return transaction


async def respond(store: Store, transaction_ref: str, responder_id: uuid.UUID, accept: bool) -> Transaction:
    """Receiver accepts or rejects. A proposal past its expiry is marked EXPIRED."""
    async with store.atomic() as uow:
        transaction = await _get_transaction(uow, transaction_ref, for_update=True)
        _assert_party(transaction, responder_id, allowed="receiver")
        if transaction.status != TransactionStatus.PROPOSED:
            raise StateConflictError(
                f"Cannot respond to transaction in {transaction.status.value} status",
                code="INVALID_TRANSACTION_STATUS",
            )
        now = datetime.now(UTC)
        if transaction.expires_at <= now:
            transaction.status = TransactionStatus.EXPIRED
            transaction.updated_at = now
            expired = True
        else:
            target = TransactionStatus.ACCEPTED if accept else TransactionStatus.REJECTED
            _assert_transition(transaction, target)
            transaction.status = target
            transaction.responded_at = now
            transaction.updated_at = now
            expired = False

    # The EXPIRED status is committed before the caller hears about it
    if expired:
        logger.info("Transaction %s expired before response", transaction.external_id)
        raise ExpiredError("Transaction has expired", code="TRANSACTION_EXPIRED")

    logger.info("Transaction %s %s", transaction.external_id, transaction.status.value)
    return transaction


async def fund_escrow(
    store: Store, transaction_ref: str, caller_id: uuid.UUID, data: EscrowFunding
) -> Transaction:
    """Either party funds escrow, once. An ACCEPTED transaction moves to IN_PROGRESS."""
    async with store.atomic() as uow:
        transaction = await _get_transaction(uow, transaction_ref, for_update=True)
        _assert_party(transaction, caller_id)
        if transaction.status not in ACTIVE_STATUSES:
            raise StateConflictError(
                f"Cannot fund escrow for transaction in {transaction.status.value} status",
                code="INVALID_TRANSACTION_STATUS",
            )
        if transaction.escrow_status != EscrowStatus.NONE:
            raise StateConflictError(
                f"Escrow already {transaction.escrow_status.value}", code="ESCROW_ALREADY_FUNDED"
            )

        now = datetime.now(UTC)
        transaction.escrow_status = EscrowStatus.FUNDED
        transaction.escrow_amount = data.amount
        transaction.escrow_currency = data.currency
        transaction.escrow_funded_at = now
        if transaction.status == TransactionStatus.ACCEPTED:
            transaction.status = TransactionStatus.IN_PROGRESS
        transaction.updated_at = now

    logger.info("Escrow funded for %s: %d %s", transaction.external_id, data.amount, data.currency)
    return transaction


async def release_escrow(store: Store, transaction_ref: str, caller_id: uuid.UUID) -> Transaction:
    """Release funded escrow to the caller's counterparty."""
    async with store.atomic() as uow:
        transaction = await _get_transaction(uow, transaction_ref, for_update=True)
        _assert_party(transaction, caller_id)
        if transaction.escrow_status != EscrowStatus.FUNDED:
            raise StateConflictError(
                f"Escrow must be FUNDED, currently {transaction.escrow_status.value}",
                code="ESCROW_NOT_FUNDED",
            )
        if transaction.status == TransactionStatus.DISPUTED:
            raise StateConflictError(
                "Escrow is frozen while the transaction is disputed", code="TRANSACTION_DISPUTED"
            )

        now = datetime.now(UTC)
        transaction.escrow_status = EscrowStatus.RELEASED
        transaction.escrow_released_at = now
        transaction.escrow_released_to = transaction.counterparty_of(caller_id)
        transaction.updated_at = now

    logger.info(
        "Escrow for %s released to %s",
        transaction.external_id, transaction.external_id_of(transaction.escrow_released_to),
    )
    return transaction


async def complete(store: Store, transaction_ref: str, caller_id: uuid.UUID) -> Transaction:
    """Mark complete. The first transition rewards both parties; repeats are no-ops."""
    async with store.atomic() as uow:
        transaction = await _get_transaction(uow, transaction_ref, for_update=True)
        _assert_party(transaction, caller_id)
        if transaction.status == TransactionStatus.COMPLETED:
            return transaction
        if transaction.status not in ACTIVE_STATUSES:
            raise StateConflictError(
                f"Cannot complete transaction in {transaction.status.value} status",
                code="INVALID_TRANSACTION_STATUS",
            )

        now = datetime.now(UTC)
        transaction.status = TransactionStatus.COMPLETED
        transaction.completed_at = now
        transaction.updated_at = now

        for agent_id in (transaction.proposer_id, transaction.receiver_id):
            agent = await uow.agents.get(agent_id, for_update=True)
            agent.total_transactions += 1
            agent.completed_transactions += 1
            await adjust_trust(
                uow,
                agent_id,
                COMPLETION_BONUS,
                "Transaction completed",
                TrustReferenceType.TRANSACTION,
                transaction.transaction_id,
            )

    logger.info("Transaction %s completed", transaction.external_id)
    return transaction


async def get_transaction(store: Store, transaction_ref: str, caller_id: uuid.UUID) -> Transaction:
    async with store.atomic() as uow:
        transaction = await _get_transaction(uow, transaction_ref)
    _assert_party(transaction, caller_id)
    return transaction


async def list_for_agent(
    store: Store,
    agent_id: uuid.UUID,
    status: TransactionStatus | None = None,
    role: str = "both",
    limit: int = 20,
    offset: int = 0,
) -> Sequence[Transaction]:
    async with store.atomic() as uow:
        return await uow.transactions.list_for_agent(
            agent_id,
            status=status,
            as_proposer=role in ("both", "proposer"),
            as_receiver=role in ("both", "receiver"),
            limit=limit,
            offset=offset,
        )


async def expire_stale(store: Store, now: datetime | None = None) -> int:
    """Move proposals past their expiry to EXPIRED. Returns the count."""
    now = now or datetime.now(UTC)
    async with store.atomic() as uow:
        stale = await uow.transactions.list_expired_proposals(now, EXPIRY_SWEEP_BATCH)
        for candidate in stale:
            transaction = await uow.transactions.get(candidate.transaction_id, for_update=True)
            if transaction.status != TransactionStatus.PROPOSED:
                continue
            transaction.status = TransactionStatus.EXPIRED
            transaction.updated_at = now
    if stale:
        logger.info("Expired %d stale proposals", len(stale))
    return len(stale)
