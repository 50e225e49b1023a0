import uuid
from datetime import date, datetime, time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..models.models import OrderStatus


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class ChecklistKind(str, Enum):
    pre = "pre"
    post = "post"


class Address(ApiModel):
    street: str
    number: str
    complement: Optional[str] = None
    district: str
    city: str
    state: str
    postal_code: str

    @field_validator("street", "number", "district", "city", "state", "postal_code")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class Addresses(ApiModel):
    origin: Optional[Address] = None
    destination: Optional[Address] = None


class ScheduleWindow(ApiModel):
    scheduled_date: date = Field(alias="date")
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_time <= self.start_time:
            raise ValueError("endTime must be after startTime")
        return self


class ChecklistItem(ApiModel):
    item: str = Field(min_length=1)
    done: bool = False
    note: Optional[str] = None


class CrewMember(ApiModel):
    employee_id: uuid.UUID
    role: str = Field(min_length=1)


class MaterialLine(ApiModel):
    material_id: uuid.UUID
    quantity: int = Field(gt=0, alias="qty")


class ServiceOrderCreate(ApiModel):
    contract_id: uuid.UUID
    schedule_window: ScheduleWindow
    addresses: Optional[Addresses] = None
    crew: List[CrewMember] = Field(min_length=1)
    materials: List[MaterialLine] = []
    vehicle_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    checklist_pre: List[ChecklistItem] = []
    checklist_post: List[ChecklistItem] = []


class ServiceOrderUpdate(ApiModel):
    """Partial update; only fields present in the payload are applied."""
    schedule_window: Optional[ScheduleWindow] = None
    addresses: Optional[Addresses] = None
    notes: Optional[str] = None
    vehicle_id: Optional[uuid.UUID] = None
    materials: Optional[List[MaterialLine]] = None
    crew: Optional[List[CrewMember]] = None
    checklist_pre: Optional[List[ChecklistItem]] = None
    checklist_post: Optional[List[ChecklistItem]] = None
    expected_version: Optional[int] = None


class ChecklistUpdate(ApiModel):
    kind: ChecklistKind
    items: List[ChecklistItem] = Field(min_length=1)
    expected_version: Optional[int] = None


class CancelRequest(ApiModel):
    reason: Optional[str] = None


class CrewAssignRequest(CrewMember):
    pass


class MaterialLineResponse(ApiModel):
    material_id: uuid.UUID
    quantity: int = Field(serialization_alias="qty")


class CrewAssignmentResponse(ApiModel):
    employee_id: uuid.UUID
    role: str
    assigned_at: Optional[datetime] = None


class ServiceOrderResponse(ApiModel):
    id: uuid.UUID
    number: str
    contract_id: uuid.UUID
    client_id: uuid.UUID
    responsible_id: Optional[uuid.UUID] = None
    scheduled_date: date
    start_time: time
    end_time: time
    origin_address: Address
    destination_address: Address
    vehicle_id: Optional[uuid.UUID] = None
    status: OrderStatus
    notes: Optional[str] = None
    checklist_pre: List[ChecklistItem] = []
    checklist_post: List[ChecklistItem] = []
    cancellation_reason: Optional[str] = None
    materials: List[MaterialLineResponse] = []
    crew: List[CrewAssignmentResponse] = []
    created_at: datetime
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int
