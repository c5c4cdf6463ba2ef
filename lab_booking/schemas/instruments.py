from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


InstrumentStatus = Literal["available", "unavailable", "maintenance"]


class InstrumentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: str
    category: str
    quantity: int
    location: Optional[str] = None
    manualGuide: Optional[str] = None
    imagePath: Optional[str] = None
    status: InstrumentStatus = "available"
    specifications: Dict[str, str] = Field(default_factory=dict)


class InstrumentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[int] = None
    location: Optional[str] = None
    manualGuide: Optional[str] = None
    imagePath: Optional[str] = None
    status: Optional[InstrumentStatus] = None
    specifications: Optional[Dict[str, str]] = None
