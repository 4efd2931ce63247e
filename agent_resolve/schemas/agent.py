"""Pydantic v2 schemas for agent registration and trust views."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agent_resolve.schemas.common import enum_value


class AgentRegistration(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=128)
    display_name: str | None = Field(None, max_length=128)
    metadata: dict | None = None

    @field_validator("identifier")
    @classmethod
    def strip_identifier(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("identifier must not be blank")
        return v


class AgentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    agent_id: str = Field(validation_alias="external_id")
    identifier: str
    display_name: str | None
    status: str
    trust_score: int
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> object:
        return enum_value(v)


class TrustHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    previous_score: int
    new_score: int
    delta: int
    reason: str
    reference_type: str | None
    created_at: datetime

    @field_validator("reference_type", mode="before")
    @classmethod
    def serialize_reference(cls, v: object) -> object:
        return enum_value(v)


class TrustStats(BaseModel):
    total_transactions: int
    completed_transactions: int
    completion_rate: int | None
    disputes_as_claimant: int
    disputes_as_respondent: int
    disputes_won: int
    disputes_lost: int
    win_rate: int | None


class AgentTrustResponse(BaseModel):
    agent_id: str
    identifier: str
    display_name: str | None
    status: str
    trust_score: int
    trust_level: str
    stats: TrustStats
    history: list[TrustHistoryEntry] | None = None
