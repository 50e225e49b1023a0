import uuid
from datetime import datetime
from typing import Optional

from pydantic import Field

from ..models.models import VehicleStatus
from .orders import ApiModel


class VehicleBase(ApiModel):
    plate: str = Field(min_length=1, max_length=20)
    model: str
    brand: Optional[str] = None
    year: Optional[int] = None
    capacity: Optional[str] = None
    next_maintenance_at: Optional[datetime] = None
    notes: Optional[str] = None


class VehicleCreate(VehicleBase):
    pass


class VehicleResponse(VehicleBase):
    id: uuid.UUID
    status: VehicleStatus
    last_maintenance_at: Optional[datetime] = None
    is_active: bool
    version: int
    created_at: datetime
    updated_at: Optional[datetime] = None


class MaintenanceRequest(ApiModel):
    next_maintenance_at: Optional[datetime] = None
