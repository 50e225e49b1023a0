import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field, field_validator

from ..config import settings
from .orders import ApiModel


class StockDirection(str, Enum):
    stock_in = "in"
    stock_out = "out"


class MaterialBase(ApiModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    minimum_quantity: int = Field(default=settings.default_min_stock, ge=0)
    unit_price: Optional[float] = Field(default=None, ge=0)
    supplier: Optional[str] = None
    location: Optional[str] = None

    @field_validator("description", "category", "unit", "supplier", "location", mode="before")
    @classmethod
    def empty_str_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class MaterialCreate(MaterialBase):
    code: str = Field(min_length=1, max_length=50)
    initial_quantity: int = Field(default=0, ge=0)


class MaterialUpdate(ApiModel):
    # Quantities only move through the stock ledger
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    minimum_quantity: Optional[int] = Field(default=None, ge=0)
    unit_price: Optional[float] = Field(default=None, ge=0)
    supplier: Optional[str] = None
    location: Optional[str] = None

    @field_validator("name", "minimum_quantity")
    @classmethod
    def required_columns_not_null(cls, v):
        # Omit the field to leave it unchanged; null would clear a NOT NULL column
        if v is None:
            raise ValueError("may be omitted but not null")
        return v


class MaterialResponse(MaterialBase):
    id: uuid.UUID
    code: str
    available_quantity: int
    is_active: bool
    version: int
    created_at: datetime
    updated_at: Optional[datetime] = None


class StockAdjustRequest(ApiModel):
    direction: StockDirection
    quantity: int = Field(gt=0)
    note: Optional[str] = None


class StockMovementResponse(ApiModel):
    id: uuid.UUID
    material_id: uuid.UUID
    quantity: int
    order_id: Optional[uuid.UUID] = None
    reason: str
    note: Optional[str] = None
    actor_id: Optional[uuid.UUID] = None
    created_at: datetime
