"""Pydantic v2 schemas for the transaction and escrow endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from agent_resolve.config import settings
from agent_resolve.schemas.common import enum_value

# Amounts are integer cents. Cap at $10M per transaction.
MAX_AMOUNT_CENTS = 1_000_000_000


class TransactionProposal(BaseModel):
    receiver_id: str = Field(..., min_length=1, max_length=64, description="Receiver's public agent id")
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=5000)
    terms: dict = Field(default_factory=dict)
    stated_value: int | None = Field(None, ge=0, le=MAX_AMOUNT_CENTS, description="Cents")
    currency: str = Field(settings.default_currency, min_length=3, max_length=3)
    expires_in_days: int = Field(settings.default_transaction_expiry_days, ge=1)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        if not v.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return v.upper()

    @field_validator("expires_in_days")
    @classmethod
    def validate_expiry(cls, v: int) -> int:
        if v > settings.max_transaction_expiry_days:
            raise ValueError(f"expires_in_days must be at most {settings.max_transaction_expiry_days}")
        return v


class TransactionDecision(BaseModel):
    accept: bool


class EscrowFunding(BaseModel):
    amount: int = Field(..., gt=0, le=MAX_AMOUNT_CENTS, description="Cents")
    currency: str = Field(settings.default_currency, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        if not v.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return v.upper()


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    status: str = Field(validation_alias="escrow_status")
    amount: int | None = Field(validation_alias="escrow_amount")
    currency: str | None = Field(validation_alias="escrow_currency")
    funded_at: datetime | None = Field(validation_alias="escrow_funded_at")
    released_at: datetime | None = Field(validation_alias="escrow_released_at")
    released_to: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> object:
        return enum_value(v)

    @model_validator(mode="before")
    @classmethod
    def resolve_release_target(cls, data: object) -> object:
        # Built from a Transaction row: translate the internal agent id
        external_id_of = getattr(data, "external_id_of", None)
        if external_id_of is None:
            return data
        return {
            "escrow_status": data.escrow_status,
            "escrow_amount": data.escrow_amount,
            "escrow_currency": data.escrow_currency,
            "escrow_funded_at": data.escrow_funded_at,
            "escrow_released_at": data.escrow_released_at,
            "released_to": external_id_of(data.escrow_released_to),
        }


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    transaction_id: str = Field(validation_alias="external_id")
    proposer_id: str = Field(validation_alias="proposer_external_id")
    receiver_id: str = Field(validation_alias="receiver_external_id")
    title: str
    description: str | None
    terms: dict
    stated_value: int | None
    currency: str
    status: str
    expires_at: datetime
    responded_at: datetime | None
    completed_at: datetime | None
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> object:
        return enum_value(v)


class TransactionDetailResponse(TransactionResponse):
    escrow: EscrowResponse

    @model_validator(mode="before")
    @classmethod
    def attach_escrow(cls, data: object) -> object:
        if hasattr(data, "escrow_status"):
            base = TransactionResponse.model_validate(data).model_dump()
            return {**base, "escrow": EscrowResponse.model_validate(data)}
        return data
