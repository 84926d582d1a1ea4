from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict


class CreateCoffeeOrder(BaseModel):
    user_name: str
    coffee_type: str


class CoffeeOrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_name: str
    coffee_type: str
    created_at: datetime


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    database: Literal["healthy", "unhealthy"]
    region: str


class ErrorResponse(BaseModel):
    error: str
