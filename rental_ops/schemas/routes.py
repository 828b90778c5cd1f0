import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class RouteStopDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalID: int
    type: Literal["DELIVERY", "RETURN"]
    sequence: Optional[int] = None


class CreateRouteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date: datetime.date
    driverID: int
    stops: List[RouteStopDto] = []


class AddStopsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stops: List[RouteStopDto] = []


class ReorderStopsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stopIDs: List[int] = []


class RouteStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["PLANNED", "IN_PROGRESS", "COMPLETED"]


class CompleteStopRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    receiverName: Optional[str] = None
    signature: Optional[str] = None
