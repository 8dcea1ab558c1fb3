from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from schemas.common import naive_local


class ReservationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    itemID: int
    userID: int
    startDate: datetime
    endDate: datetime

    @field_validator("startDate", "endDate")
    @classmethod
    def _naive(cls, value):
        return naive_local(value)


class ReservationUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    status: Optional[Literal["CONFIRMED", "CANCELLED", "EXPIRED", "PENDING"]] = None

    @field_validator("startDate", "endDate")
    @classmethod
    def _naive(cls, value):
        return naive_local(value)
