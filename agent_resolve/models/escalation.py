"""Human-review escalation of an automated ruling."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from agent_resolve.database import Base
from agent_resolve.models.dispute import Ruling


class EscalationStatus(enum.Enum):
    REQUESTED = "REQUESTED"
    ASSIGNED = "ASSIGNED"
    DECIDED = "DECIDED"
    CLOSED = "CLOSED"
    # Fee debit failed; the slot is released
    CANCELLED = "CANCELLED"


ACTIVE_ESCALATION_STATUSES = frozenset({
    EscalationStatus.REQUESTED,
    EscalationStatus.ASSIGNED,
    EscalationStatus.DECIDED,
})

VALID_TRANSITIONS: dict[EscalationStatus, set[EscalationStatus]] = {
    EscalationStatus.REQUESTED: {EscalationStatus.ASSIGNED, EscalationStatus.CANCELLED},
    EscalationStatus.ASSIGNED: {EscalationStatus.DECIDED},
    EscalationStatus.DECIDED: {EscalationStatus.CLOSED},
    EscalationStatus.CLOSED: set(),
    EscalationStatus.CANCELLED: set(),
}


class Escalation(Base):
    __tablename__ = "escalations"

    escalation_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    requested_by_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False
    )
    dispute_external_id: Mapped[str] = mapped_column(String(32), nullable=False)
    requested_by_external_id: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(String(2000), nullable=False)
    status: Mapped[EscalationStatus] = mapped_column(
        Enum(EscalationStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscalationStatus.REQUESTED,
    )
    credits_charged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_reference: Mapped[str] = mapped_column(String(128), nullable=False)

    arbitrator_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    arbitrator_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    ruling: Mapped[Ruling | None] = mapped_column(
        Enum(Ruling, values_callable=lambda x: [e.value for e in x]), nullable=True
    )
    ruling_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimant_score_change: Mapped[int | None] = mapped_column(Integer, nullable=True)
    respondent_score_change: Mapped[int | None] = mapped_column(Integer, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
