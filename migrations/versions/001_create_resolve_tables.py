"""Create agents, trust history, transactions, disputes, evidence and escalations.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Created once up front; several columns share "ruling" and "rejectionreason"
ENUMS = {
    "agentstatus": ("active", "suspended"),
    "trustreferencetype": ("transaction", "dispute", "escalation"),
    "transactionstatus": (
        "PROPOSED", "ACCEPTED", "REJECTED", "EXPIRED", "IN_PROGRESS", "COMPLETED", "DISPUTED",
    ),
    "escrowstatus": ("NONE", "FUNDED", "RELEASED"),
    "disputestatus": (
        "FILED", "AWAITING_RESPONSE", "RESPONSE_RECEIVED", "IN_ARBITRATION", "RULED", "ESCALATED", "CLOSED",
    ),
    "claimtype": (
        "NON_PERFORMANCE", "PARTIAL_PERFORMANCE", "QUALITY_ISSUE", "PAYMENT_DISPUTE",
        "MISREPRESENTATION", "BREACH_OF_TERMS", "OTHER",
    ),
    "ruling": ("CLAIMANT", "RESPONDENT", "SPLIT", "DISMISSED"),
    "rejectionreason": (
        "FACTUAL_ERROR", "EVIDENCE_IGNORED", "REASONING_FLAWED", "BIAS_DETECTED",
        "RULING_DISPROPORTIONATE", "OTHER",
    ),
    "arbitrationtrigger": ("explicit", "timed"),
    "partyrole": ("claimant", "respondent"),
    "evidencetype": ("TEXT", "URL", "DOCUMENT", "SCREENSHOT", "LOG", "OTHER"),
    "escalationstatus": ("REQUESTED", "ASSIGNED", "DECIDED", "CLOSED", "CANCELLED"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _agent_fk(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Uuid(), sa.ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "agents",
        sa.Column("agent_id", sa.Uuid(), primary_key=True),
        sa.Column("external_id", sa.String(32), nullable=False, unique=True),
        sa.Column("operator_id", sa.String(128), nullable=False),
        sa.Column("identifier", sa.String(128), nullable=False),
        sa.Column("display_name", sa.String(128), nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column("status", _enum("agentstatus"), nullable=False, server_default="active"),
        sa.Column("trust_score", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("total_transactions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_transactions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("disputes_as_claimant", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("disputes_as_respondent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("disputes_won", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("disputes_lost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("operator_id", "identifier", name="uq_agents_operator_id"),
        sa.CheckConstraint("trust_score BETWEEN 0 AND 100", name="ck_agents_trust_score_range"),
    )
    op.create_index("ix_agents_operator_id", "agents", ["operator_id"])

    op.create_table(
        "trust_history",
        sa.Column("trust_history_id", sa.Uuid(), primary_key=True),
        _agent_fk("agent_id"),
        sa.Column("previous_score", sa.Integer(), nullable=False),
        sa.Column("new_score", sa.Integer(), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(256), nullable=False),
        sa.Column("reference_type", _enum("trustreferencetype"), nullable=True),
        sa.Column("reference_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_trust_history_agent_id", "trust_history", ["agent_id"])

    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.Uuid(), primary_key=True),
        sa.Column("external_id", sa.String(32), nullable=False, unique=True),
        _agent_fk("proposer_id"),
        _agent_fk("receiver_id"),
        sa.Column("proposer_external_id", sa.String(32), nullable=False),
        sa.Column("receiver_external_id", sa.String(32), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("terms", JSONB, nullable=False, server_default="{}"),
        sa.Column("stated_value", sa.BigInteger(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("status", _enum("transactionstatus"), nullable=False, server_default="PROPOSED"),
        _ts("expires_at", nullable=False),
        _ts("responded_at"),
        _ts("completed_at"),
        sa.Column("escrow_status", _enum("escrowstatus"), nullable=False, server_default="NONE"),
        sa.Column("escrow_amount", sa.BigInteger(), nullable=True),
        sa.Column("escrow_currency", sa.String(3), nullable=True),
        _ts("escrow_funded_at"),
        _ts("escrow_released_at"),
        _agent_fk("escrow_released_to", nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_transactions_proposer_id", "transactions", ["proposer_id"])
    op.create_index("ix_transactions_receiver_id", "transactions", ["receiver_id"])

    op.create_table(
        "disputes",
        sa.Column("dispute_id", sa.Uuid(), primary_key=True),
        sa.Column("external_id", sa.String(32), nullable=False, unique=True),
        sa.Column(
            "transaction_id",
            sa.Uuid(),
            sa.ForeignKey("transactions.transaction_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        _agent_fk("claimant_id"),
        _agent_fk("respondent_id"),
        sa.Column("transaction_external_id", sa.String(32), nullable=False),
        sa.Column("claimant_external_id", sa.String(32), nullable=False),
        sa.Column("respondent_external_id", sa.String(32), nullable=False),
        sa.Column("status", _enum("disputestatus"), nullable=False, server_default="FILED"),
        sa.Column("filing_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claim_type", _enum("claimtype"), nullable=False),
        sa.Column("claim_summary", sa.String(500), nullable=False),
        sa.Column("claim_details", sa.Text(), nullable=True),
        sa.Column("requested_resolution", sa.String(1000), nullable=False),
        sa.Column("response_summary", sa.String(500), nullable=True),
        sa.Column("response_details", sa.Text(), nullable=True),
        _ts("response_submitted_at"),
        _ts("response_deadline", nullable=False),
        _ts("review_closes_at", nullable=False),
        sa.Column("claimant_submission_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("respondent_submission_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("arbitration_trigger", _enum("arbitrationtrigger"), nullable=True),
        _ts("arbitration_started_at"),
        _ts("arbitration_lease_until"),
        sa.Column("arbitration_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_arbitration_error", sa.Text(), nullable=True),
        sa.Column("ruling", _enum("ruling"), nullable=True),
        sa.Column("ruling_reasoning", sa.Text(), nullable=True),
        sa.Column("ruling_details", JSONB, nullable=True),
        _ts("ruled_at"),
        _ts("decision_deadline"),
        sa.Column("claimant_score_change", sa.Integer(), nullable=True),
        sa.Column("respondent_score_change", sa.Integer(), nullable=True),
        sa.Column("claimant_accepted", sa.Boolean(), nullable=True),
        _ts("claimant_decided_at"),
        sa.Column("claimant_decision_comment", sa.String(1000), nullable=True),
        sa.Column("claimant_rejection_reason", _enum("rejectionreason"), nullable=True),
        sa.Column("respondent_accepted", sa.Boolean(), nullable=True),
        _ts("respondent_decided_at"),
        sa.Column("respondent_decision_comment", sa.String(1000), nullable=True),
        sa.Column("respondent_rejection_reason", _enum("rejectionreason"), nullable=True),
        sa.Column("final_ruling", _enum("ruling"), nullable=True),
        _ts("trust_applied_at"),
        _ts("closed_at"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_disputes_transaction_id", "disputes", ["transaction_id"])
    op.create_index("ix_disputes_claimant_id", "disputes", ["claimant_id"])
    op.create_index("ix_disputes_respondent_id", "disputes", ["respondent_id"])
    op.create_index("ix_disputes_review_closes_at", "disputes", ["review_closes_at"])
    # At most one open dispute per transaction
    op.create_index(
        "uq_disputes_open_transaction",
        "disputes",
        ["transaction_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'CLOSED'"),
    )

    op.create_table(
        "dispute_evidence",
        sa.Column("evidence_id", sa.Uuid(), primary_key=True),
        sa.Column("dispute_id", sa.Uuid(), sa.ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False),
        _agent_fk("submitted_by_id"),
        sa.Column("submitter_role", _enum("partyrole"), nullable=False),
        sa.Column("evidence_type", _enum("evidencetype"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_dispute_evidence_dispute_id", "dispute_evidence", ["dispute_id"])

    op.create_table(
        "escalations",
        sa.Column("escalation_id", sa.Uuid(), primary_key=True),
        sa.Column("external_id", sa.String(32), nullable=False, unique=True),
        sa.Column("dispute_id", sa.Uuid(), sa.ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False),
        _agent_fk("requested_by_id"),
        sa.Column("dispute_external_id", sa.String(32), nullable=False),
        sa.Column("requested_by_external_id", sa.String(32), nullable=False),
        sa.Column("reason", sa.String(2000), nullable=False),
        sa.Column("status", _enum("escalationstatus"), nullable=False, server_default="REQUESTED"),
        sa.Column("credits_charged", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("fee_reference", sa.String(128), nullable=False),
        sa.Column("arbitrator_id", sa.String(128), nullable=True),
        sa.Column("arbitrator_notes", sa.Text(), nullable=True),
        sa.Column("ruling", _enum("ruling"), nullable=True),
        sa.Column("ruling_reasoning", sa.Text(), nullable=True),
        sa.Column("claimant_score_change", sa.Integer(), nullable=True),
        sa.Column("respondent_score_change", sa.Integer(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        _ts("assigned_at"),
        _ts("decided_at"),
        _ts("closed_at"),
    )
    op.create_index("ix_escalations_dispute_id", "escalations", ["dispute_id"])


def downgrade() -> None:
    op.drop_table("escalations")
    op.drop_table("dispute_evidence")
    op.drop_table("disputes")
    op.drop_table("transactions")
    op.drop_table("trust_history")
    op.drop_table("agents")
    for name in reversed(list(ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
