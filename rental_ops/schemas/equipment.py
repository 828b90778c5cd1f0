from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EquipmentUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    description: Optional[str] = None
    totalQty: Optional[int] = Field(None, ge=0)
    unitPrice: Optional[float] = None
