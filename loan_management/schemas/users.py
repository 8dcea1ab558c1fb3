from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UserCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    firstName: str = Field(min_length=1, max_length=100)
    lastName: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    phone: Optional[str] = None
    address: Optional[str] = None
    departmentCode: Optional[str] = None
    departmentName: Optional[str] = None
    isAdmin: bool = False


class UserUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    firstName: Optional[str] = Field(default=None, min_length=1, max_length=100)
    lastName: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    phone: Optional[str] = None
    address: Optional[str] = None
    departmentCode: Optional[str] = None
    departmentName: Optional[str] = None
    isAdmin: Optional[bool] = None
