import uuid
from datetime import time
from typing import Dict, List, Optional

from ..models.models import OrderStatus
from .orders import ApiModel


class BusyOrder(ApiModel):
    order_id: uuid.UUID
    number: str
    role: str
    start_time: time
    end_time: time
    status: OrderStatus


class EmployeeAvailability(ApiModel):
    employee_id: uuid.UUID
    name: str
    job_title: Optional[str] = None
    is_active: bool = True
    available: bool
    orders: List[BusyOrder] = []


class EmployeeWorkload(ApiModel):
    employee_id: uuid.UUID
    name: str
    total: int
    by_status: Dict[str, int]
