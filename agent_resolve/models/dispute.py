"""Dispute case and evidence models."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from agent_resolve.database import Base


class DisputeStatus(enum.Enum):
    FILED = "FILED"
    AWAITING_RESPONSE = "AWAITING_RESPONSE"
    RESPONSE_RECEIVED = "RESPONSE_RECEIVED"
    IN_ARBITRATION = "IN_ARBITRATION"
    RULED = "RULED"
    ESCALATED = "ESCALATED"
    CLOSED = "CLOSED"


# Statuses in which the parties are still building their case
SUBMISSION_STATUSES = frozenset({DisputeStatus.AWAITING_RESPONSE, DisputeStatus.RESPONSE_RECEIVED})

# The claimant may push the response deadline out until arbitration starts
EXTENDABLE_STATUSES = frozenset({DisputeStatus.FILED, *SUBMISSION_STATUSES})

OPEN_STATUSES = frozenset(set(DisputeStatus) - {DisputeStatus.CLOSED})


class ClaimType(enum.Enum):
    NON_PERFORMANCE = "NON_PERFORMANCE"
    PARTIAL_PERFORMANCE = "PARTIAL_PERFORMANCE"
    QUALITY_ISSUE = "QUALITY_ISSUE"
    PAYMENT_DISPUTE = "PAYMENT_DISPUTE"
    MISREPRESENTATION = "MISREPRESENTATION"
    BREACH_OF_TERMS = "BREACH_OF_TERMS"
    OTHER = "OTHER"


class Ruling(enum.Enum):
    CLAIMANT = "CLAIMANT"
    RESPONDENT = "RESPONDENT"
    SPLIT = "SPLIT"
    DISMISSED = "DISMISSED"


class RejectionReason(enum.Enum):
    FACTUAL_ERROR = "FACTUAL_ERROR"
    EVIDENCE_IGNORED = "EVIDENCE_IGNORED"
    REASONING_FLAWED = "REASONING_FLAWED"
    BIAS_DETECTED = "BIAS_DETECTED"
    RULING_DISPROPORTIONATE = "RULING_DISPROPORTIONATE"
    OTHER = "OTHER"


class ArbitrationTrigger(enum.Enum):
    EXPLICIT = "explicit"
    TIMED = "timed"


class PartyRole(enum.Enum):
    CLAIMANT = "claimant"
    RESPONDENT = "respondent"


class EvidenceType(enum.Enum):
    TEXT = "TEXT"
    URL = "URL"
    DOCUMENT = "DOCUMENT"
    SCREENSHOT = "SCREENSHOT"
    LOG = "LOG"
    OTHER = "OTHER"


def _enum(cls: type[enum.Enum]) -> Enum:
    return Enum(cls, values_callable=lambda x: [e.value for e in x])


class Dispute(Base):
    __tablename__ = "disputes"

    dispute_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transactions.transaction_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    claimant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    respondent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    # Public ids, denormalized for read views
    transaction_external_id: Mapped[str] = mapped_column(String(32), nullable=False)
    claimant_external_id: Mapped[str] = mapped_column(String(32), nullable=False)
    respondent_external_id: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[DisputeStatus] = mapped_column(
        _enum(DisputeStatus), nullable=False, default=DisputeStatus.FILED
    )
    filing_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Claim
    claim_type: Mapped[ClaimType] = mapped_column(_enum(ClaimType), nullable=False)
    claim_summary: Mapped[str] = mapped_column(String(500), nullable=False)
    claim_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_resolution: Mapped[str] = mapped_column(String(1000), nullable=False)

    # Response
    response_summary: Mapped[str | None] = mapped_column(String(500), nullable=True)
    response_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    response_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    review_closes_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    claimant_submission_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    respondent_submission_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Arbitration bookkeeping
    arbitration_trigger: Mapped[ArbitrationTrigger | None] = mapped_column(
        _enum(ArbitrationTrigger), nullable=True
    )
    arbitration_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    arbitration_lease_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    arbitration_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_arbitration_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Ruling
    ruling: Mapped[Ruling | None] = mapped_column(_enum(Ruling), nullable=True)
    ruling_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    ruling_details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    ruled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decision_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimant_score_change: Mapped[int | None] = mapped_column(Integer, nullable=True)
    respondent_score_change: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Decisions on the ruling (None = undecided)
    claimant_accepted: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    claimant_decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimant_decision_comment: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    claimant_rejection_reason: Mapped[RejectionReason | None] = mapped_column(
        _enum(RejectionReason), nullable=True
    )
    respondent_accepted: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    respondent_decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    respondent_decision_comment: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    respondent_rejection_reason: Mapped[RejectionReason | None] = mapped_column(
        _enum(RejectionReason), nullable=True
    )

    # Closure
    final_ruling: Mapped[Ruling | None] = mapped_column(_enum(Ruling), nullable=True)
    trust_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set when an unpaid dispute is closed without ever opening
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    def role_of(self, agent_id: uuid.UUID) -> PartyRole | None:
        if agent_id == self.claimant_id:
            return PartyRole.CLAIMANT
        if agent_id == self.respondent_id:
            return PartyRole.RESPONDENT
        return None

    def submission_complete(self, role: PartyRole) -> bool:
        if role is PartyRole.CLAIMANT:
            return self.claimant_submission_complete
        return self.respondent_submission_complete

    def decision_of(self, role: PartyRole) -> bool | None:
        if role is PartyRole.CLAIMANT:
            return self.claimant_accepted
        return self.respondent_accepted

    @property
    def both_submissions_complete(self) -> bool:
        return self.claimant_submission_complete and self.respondent_submission_complete


class Evidence(Base):
    """Append-only. Never update or delete rows."""
    __tablename__ = "dispute_evidence"

    evidence_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    submitted_by_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False
    )
    submitter_role: Mapped[PartyRole] = mapped_column(_enum(PartyRole), nullable=False)
    evidence_type: Mapped[EvidenceType] = mapped_column(_enum(EvidenceType), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class DecisionFeedback(Base):
    """A party's 1-5 ratings of how a closed dispute was decided. One per party."""
    __tablename__ = "dispute_feedback"
    __table_args__ = (
        UniqueConstraint("dispute_id", "agent_id", name="uq_dispute_feedback_party"),
        CheckConstraint(
            "fairness_rating BETWEEN 1 AND 5 AND reasoning_rating BETWEEN 1 AND 5 "
            "AND evidence_rating BETWEEN 1 AND 5",
            name="ratings",
        ),
    )

    feedback_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False
    )
    party_role: Mapped[PartyRole] = mapped_column(_enum(PartyRole), nullable=False)
    was_winner: Mapped[bool] = mapped_column(Boolean, nullable=False)
    fairness_rating: Mapped[int] = mapped_column(Integer, nullable=False)
    reasoning_rating: Mapped[int] = mapped_column(Integer, nullable=False)
    evidence_rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
