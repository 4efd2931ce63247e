"""Agent and trust history models."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from agent_resolve.database import Base


class AgentStatus(enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class TrustReferenceType(enum.Enum):
    TRANSACTION = "transaction"
    DISPUTE = "dispute"
    ESCALATION = "escalation"


class Agent(Base):
    __tablename__ = "agents"
    __table_args__ = (UniqueConstraint("operator_id", "identifier"),)

    agent_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    operator_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    identifier: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    status: Mapped[AgentStatus] = mapped_column(
        Enum(AgentStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=AgentStatus.ACTIVE,
    )
    trust_score: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disputes_as_claimant: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disputes_as_respondent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disputes_won: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disputes_lost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class TrustHistory(Base):
    """Append-only ledger of trust score changes. Never update or delete rows."""
    __tablename__ = "trust_history"

    trust_history_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    previous_score: Mapped[int] = mapped_column(Integer, nullable=False)
    new_score: Mapped[int] = mapped_column(Integer, nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(256), nullable=False)
    reference_type: Mapped[TrustReferenceType | None] = mapped_column(
        Enum(TrustReferenceType, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    reference_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
