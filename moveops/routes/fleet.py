import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db, unit_of_work
from ..auth.security import require_permissions
from ..errors import ConflictError
from ..models.models import Vehicle, VehicleStatus
from ..schemas.fleet import MaintenanceRequest, VehicleCreate, VehicleResponse
from ..services.vehicle_allocator import VehicleAllocator


router = APIRouter(prefix="/fleet", tags=["fleet"])


@router.get("/vehicles", response_model=List[VehicleResponse])
def list_vehicles(
    status: Optional[VehicleStatus] = Query(None),
    db: Session = Depends(get_db),
    _=Depends(require_permissions("fleet:read")),
):
    query = db.query(Vehicle).filter(Vehicle.is_active == True)  # noqa: E712
    if status:
        query = query.filter(Vehicle.status == status.value)
    return query.order_by(Vehicle.plate).all()


@router.post("/vehicles", response_model=VehicleResponse, status_code=201)
def create_vehicle(
    payload: VehicleCreate,
    db: Session = Depends(get_db),
    _=Depends(require_permissions("fleet:write")),
):
    plate = payload.plate.strip().upper()
    if db.query(Vehicle).filter(Vehicle.plate == plate).first():
        raise ConflictError(f"Vehicle with plate {plate} already exists", details={"plate": plate})
    row = Vehicle(plate=plate, **payload.model_dump(exclude={"plate"}))
    with unit_of_work(db):
        db.add(row)
    db.refresh(row)
    return row


@router.get("/vehicles/{vehicle_id}", response_model=VehicleResponse)
def get_vehicle(vehicle_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_permissions("fleet:read"))):
    return VehicleAllocator(db).get_vehicle(vehicle_id)


@router.post("/vehicles/{vehicle_id}/maintenance", response_model=VehicleResponse)
def start_maintenance(
    vehicle_id: uuid.UUID,
    payload: Optional[MaintenanceRequest] = None,
    db: Session = Depends(get_db),
    _=Depends(require_permissions("fleet:write")),
):
    allocator = VehicleAllocator(db)
    with unit_of_work(db):
        allocator.start_maintenance(vehicle_id, payload.next_maintenance_at if payload else None)
    return allocator.get_vehicle(vehicle_id)


@router.post("/vehicles/{vehicle_id}/maintenance/finish", response_model=VehicleResponse)
def finish_maintenance(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(require_permissions("fleet:write")),
):
    allocator = VehicleAllocator(db)
    with unit_of_work(db):
        allocator.finish_maintenance(vehicle_id)
    return allocator.get_vehicle(vehicle_id)
