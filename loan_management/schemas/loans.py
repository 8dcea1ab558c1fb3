from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from schemas.common import naive_local


class LoanCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    itemID: int
    borrowerID: int
    borrowedAt: datetime
    dueAt: datetime
    notes: Optional[str] = Field(default=None, max_length=2000)
    contexts: List[str] = []

    @field_validator("borrowedAt", "dueAt")
    @classmethod
    def _naive(cls, value):
        return naive_local(value)


class LoanReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    returnedAt: Optional[datetime] = None

    @field_validator("returnedAt")
    @classmethod
    def _naive(cls, value):
        return naive_local(value)


class LoanStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    status: Literal["ACTIVE", "RETURNED"]
