from typing import Optional

from pydantic import BaseModel, ConfigDict


class StartUsageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    instrumentID: int
    quantity: int = 1


class StopUsageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    instrumentID: int
    notes: Optional[str] = None


class ForceStopRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    instrumentID: int
    userID: int
    reason: Optional[str] = None
