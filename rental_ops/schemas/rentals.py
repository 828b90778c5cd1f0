from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RentalItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    quantity: int = Field(1, gt=0)
    unitPrice: Optional[float] = None


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    personID: int
    startDate: date
    endDate: date
    deliveryAddress: Optional[str] = None
    notes: Optional[str] = None
    rentalItems: List[RentalItemDto] = []


class ReplaceItemsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalItems: List[RentalItemDto] = []


class RescheduleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    startDate: Optional[date] = None
    endDate: Optional[date] = None
