"""Add dispute feedback and mark disputes withdrawn for non-payment.

Revision ID: 002
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "002"
down_revision = "001"


def upgrade() -> None:
    op.add_column("disputes", sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True))

    op.create_table(
        "dispute_feedback",
        sa.Column("feedback_id", sa.Uuid(), primary_key=True),
        sa.Column("dispute_id", sa.Uuid(), sa.ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("agent_id", sa.Uuid(), sa.ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "party_role",
            postgresql.ENUM("claimant", "respondent", name="partyrole", create_type=False),
            nullable=False,
        ),
        sa.Column("was_winner", sa.Boolean(), nullable=False),
        sa.Column("fairness_rating", sa.Integer(), nullable=False),
        sa.Column("reasoning_rating", sa.Integer(), nullable=False),
        sa.Column("evidence_rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("dispute_id", "agent_id", name="uq_dispute_feedback_party"),
        sa.CheckConstraint(
            "fairness_rating BETWEEN 1 AND 5 AND reasoning_rating BETWEEN 1 AND 5 "
            "AND evidence_rating BETWEEN 1 AND 5",
            name="ck_dispute_feedback_ratings",
        ),
    )
    op.create_index("ix_dispute_feedback_dispute_id", "dispute_feedback", ["dispute_id"])


def downgrade() -> None:
    op.drop_table("dispute_feedback")
    op.drop_column("disputes", "withdrawn_at")
