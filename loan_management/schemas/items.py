from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


ServiceCategory = Literal[
    "CICAT",
    "PNT",
    "SAVS",
    "RUNE",
    "CONFERENCE_FINANCEURS",
    "APPUIS_SPECIFIQUES",
    "PLATEFORME_AGEFIPH",
    "AIDANTS",
    "LOGEMENT_INCLUSIF",
]


class _ItemChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class RenameItem(_ItemChange):
    kind: Literal["rename"]
    name: str = Field(min_length=1, max_length=255)


class ChangeCustomId(_ItemChange):
    kind: Literal["changeCustomId"]
    customId: str = Field(min_length=1, max_length=100)


class ChangeServiceCategory(_ItemChange):
    kind: Literal["changeServiceCategory"]
    serviceCategory: Optional[ServiceCategory] = None

    @field_validator("serviceCategory", mode="before")
    @classmethod
    def _upper(cls, value):
        if isinstance(value, str):
            return value.strip().upper() or None
        return value


class UpdateItemDetails(_ItemChange):
    kind: Literal["updateDetails"]
    description: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    yearPublished: Optional[int] = Field(default=None, ge=0, le=9999)
    isbn: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    serialNumber: Optional[str] = None
    coverImageUrl: Optional[str] = None


class SetReservationStatus(_ItemChange):
    kind: Literal["setReservationStatus"]
    # BORROWED is derived from loans and cannot be requested.
    target: Literal["AVAILABLE", "RESERVED", "OUT_OF_ORDER", "PENDING"]
    actingUserID: Optional[int] = None
    reservedByID: Optional[int] = None


ItemChange = Annotated[
    Union[RenameItem, ChangeCustomId, ChangeServiceCategory, UpdateItemDetails, SetReservationStatus],
    Field(discriminator="kind"),
]


class ItemUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    changes: List[ItemChange] = Field(min_length=1)


class ItemCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str = Field(min_length=1, max_length=255)
    customId: Optional[str] = Field(default=None, max_length=100)
    category: Literal["BOOK", "EQUIPMENT"] = "EQUIPMENT"
    serviceCategory: Optional[ServiceCategory] = None
    reservationStatus: Literal["AVAILABLE", "RESERVED", "OUT_OF_ORDER"] = "AVAILABLE"
    description: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    yearPublished: Optional[int] = Field(default=None, ge=0, le=9999)
    isbn: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    serialNumber: Optional[str] = None
    coverImageUrl: Optional[str] = None

    @field_validator("category", "serviceCategory", mode="before")
    @classmethod
    def _upper(cls, value):
        if isinstance(value, str):
            return value.strip().upper() or None
        return value
