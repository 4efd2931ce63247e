"""Response envelope shared by every endpoint."""

import enum
from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T


class ErrorBody(BaseModel):
    code: str
    message: str


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody


def enum_value(v: object) -> object:
    """Serialize enum members by value for str-typed response fields."""
    if isinstance(v, enum.Enum):
        return v.value
    return v
