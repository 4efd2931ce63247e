"""Pydantic v2 schemas for disputes, evidence and decisions."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agent_resolve.models.dispute import ClaimType, EvidenceType, RejectionReason, Ruling
from agent_resolve.schemas.common import enum_value


class DisputeFiling(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=64)
    claim_type: ClaimType
    claim_summary: str = Field(..., min_length=10, max_length=500)
    claim_details: str | None = Field(None, max_length=5000)
    requested_resolution: str = Field(..., min_length=10, max_length=1000)


class DisputeReply(BaseModel):
    response_summary: str = Field(..., min_length=10, max_length=500)
    response_details: str | None = Field(None, max_length=5000)


class DeadlineExtension(BaseModel):
    additional_hours: int = Field(..., gt=0)


class EvidenceSubmission(BaseModel):
    evidence_type: EvidenceType
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=50_000)


class DecisionAcceptance(BaseModel):
    comment: str | None = Field(None, max_length=1000)


class DecisionRejection(BaseModel):
    reason: RejectionReason | None = None
    details: str | None = Field(None, max_length=1000)


class FeedbackSubmission(BaseModel):
    fairness_rating: int = Field(..., ge=1, le=5)
    reasoning_rating: int = Field(..., ge=1, le=5)
    evidence_rating: int = Field(..., ge=1, le=5)
    comment: str | None = Field(None, max_length=500)


class EvidenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    submitter_role: str
    evidence_type: str
    title: str
    content: str
    created_at: datetime

    @field_validator("submitter_role", "evidence_type", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return enum_value(v)


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    dispute_id: str = Field(validation_alias="external_id")
    transaction_id: str = Field(validation_alias="transaction_external_id")
    claimant_id: str = Field(validation_alias="claimant_external_id")
    respondent_id: str = Field(validation_alias="respondent_external_id")
    status: str
    claim_type: str
    claim_summary: str
    claim_details: str | None
    requested_resolution: str
    response_summary: str | None
    response_details: str | None
    response_submitted_at: datetime | None
    response_deadline: datetime
    review_closes_at: datetime
    claimant_submission_complete: bool
    respondent_submission_complete: bool
    filing_cost: int
    ruling: str | None
    ruled_at: datetime | None
    final_ruling: str | None
    closed_at: datetime | None
    created_at: datetime

    @field_validator("status", "claim_type", "ruling", "final_ruling", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return enum_value(v)


class SubmissionStatusResponse(BaseModel):
    dispute_id: str
    claimant_submission_complete: bool
    respondent_submission_complete: bool
    both_complete: bool
    arbitration_queued: bool


class DecisionStateResponse(BaseModel):
    accepted: bool | None
    decided_at: datetime | None


class DecisionResponse(BaseModel):
    dispute_id: str
    status: str
    ruling: Ruling
    reasoning: str | None
    details: dict | None
    ruled_at: datetime
    decision_deadline: datetime | None
    your_role: str
    your_score_change: int | None
    claimant_decision: DecisionStateResponse
    respondent_decision: DecisionStateResponse
    can_escalate: bool


class FeedbackResponse(BaseModel):
    dispute_id: str
    party_role: str
    was_winner: bool
    created_at: datetime

