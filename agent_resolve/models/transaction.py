"""Transaction model with its escrow sub-record."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from agent_resolve.database import Base


class TransactionStatus(enum.Enum):
    PROPOSED = "PROPOSED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"


class EscrowStatus(enum.Enum):
    NONE = "NONE"
    FUNDED = "FUNDED"
    RELEASED = "RELEASED"


# Valid state transitions
VALID_TRANSITIONS: dict[TransactionStatus, set[TransactionStatus]] = {
    TransactionStatus.PROPOSED: {
        TransactionStatus.ACCEPTED,
        TransactionStatus.REJECTED,
        TransactionStatus.EXPIRED,
    },
    TransactionStatus.ACCEPTED: {
        TransactionStatus.IN_PROGRESS,
        TransactionStatus.COMPLETED,
        TransactionStatus.DISPUTED,
    },
    TransactionStatus.IN_PROGRESS: {TransactionStatus.COMPLETED, TransactionStatus.DISPUTED},
    TransactionStatus.REJECTED: set(),
    TransactionStatus.EXPIRED: set(),
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.DISPUTED: set(),
}

# Statuses from which work can still be funded, completed or disputed
ACTIVE_STATUSES = frozenset({TransactionStatus.ACCEPTED, TransactionStatus.IN_PROGRESS})


class Transaction(Base):
    __tablename__ = "transactions"

    transaction_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    proposer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    receiver_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    # Public ids of the parties, denormalized for read views
    proposer_external_id: Mapped[str] = mapped_column(String(32), nullable=False)
    receiver_external_id: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    stated_value: Mapped[int | None] = mapped_column(BigInteger, nullable=True)  # cents
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TransactionStatus.PROPOSED,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    escrow_status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowStatus.NONE,
    )
    escrow_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)  # cents
    escrow_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    escrow_funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escrow_released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escrow_released_to: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    def is_party(self, agent_id: uuid.UUID) -> bool:
        return agent_id in (self.proposer_id, self.receiver_id)

    def counterparty_of(self, agent_id: uuid.UUID) -> uuid.UUID:
        return self.receiver_id if agent_id == self.proposer_id else self.proposer_id

    def external_id_of(self, agent_id: uuid.UUID | None) -> str | None:
        if agent_id is None:
            return None
        return self.proposer_external_id if agent_id == self.proposer_id else self.receiver_external_id
