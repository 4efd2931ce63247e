"""Pydantic v2 schemas for escalation requests and arbitrator actions."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agent_resolve.models.dispute import Ruling
from agent_resolve.schemas.common import enum_value


class EscalationRequest(BaseModel):
    reason: str = Field(..., min_length=20, max_length=2000)


class ArbitratorAssignment(BaseModel):
    arbitrator_id: str = Field(..., min_length=1, max_length=128)


class ArbitratorDecision(BaseModel):
    ruling: Ruling
    reasoning: str = Field(..., min_length=1, max_length=10_000)
    notes: str | None = Field(None, max_length=10_000)
    # Omit to use the standard escalation impact for the ruling
    claimant_score_change: int | None = Field(None, ge=-100, le=100)
    respondent_score_change: int | None = Field(None, ge=-100, le=100)


class EscalationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    escalation_id: str = Field(validation_alias="external_id")
    dispute_id: str = Field(validation_alias="dispute_external_id")
    requested_by: str = Field(validation_alias="requested_by_external_id")
    status: str
    reason: str
    credits_charged: int
    arbitrator_id: str | None
    ruling: str | None
    ruling_reasoning: str | None
    claimant_score_change: int | None
    respondent_score_change: int | None
    requested_at: datetime
    assigned_at: datetime | None
    decided_at: datetime | None
    closed_at: datetime | None

    @field_validator("status", "ruling", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return enum_value(v)
