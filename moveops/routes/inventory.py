import uuid
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db, unit_of_work
from ..auth.security import Actor, require_permissions
from ..errors import ConflictError
from ..models.models import Material
from ..schemas.inventory import (
    MaterialCreate,
    MaterialResponse,
    MaterialUpdate,
    StockAdjustRequest,
    StockDirection,
    StockMovementResponse,
)
from ..services.stock_ledger import MaterialStockLedger


router = APIRouter(prefix="/inventory", tags=["inventory"])


# ---------- MATERIALS ----------
@router.get("/materials", response_model=List[MaterialResponse])
def list_materials(
    include_inactive: bool = Query(False, alias="includeInactive"),
    db: Session = Depends(get_db),
    _=Depends(require_permissions("inventory:read")),
):
    query = db.query(Material)
    if not include_inactive:
        query = query.filter(Material.is_active == True)  # noqa: E712
    return query.order_by(Material.code).all()


# Declared before /materials/{material_id} so the literal path wins
@router.get("/materials/low_stock", response_model=List[MaterialResponse])
def low_stock_materials(db: Session = Depends(get_db), _=Depends(require_permissions("inventory:read"))):
    return MaterialStockLedger(db).low_stock()


@router.post("/materials", response_model=MaterialResponse, status_code=201)
def create_material(
    payload: MaterialCreate,
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("inventory:write")),
):
    code = payload.code.strip().upper()
    if db.query(Material).filter(Material.code == code).first():
        raise ConflictError(f"Material code {code} already exists", details={"code": code})
    data = payload.model_dump(exclude={"code", "initial_quantity"})
    row = Material(code=code, available_quantity=payload.initial_quantity, **data)
    with unit_of_work(db):
        db.add(row)
        db.flush()
        MaterialStockLedger(db, actor_id=user.id).receive_initial(row)
    db.refresh(row)
    return row


@router.get("/materials/{material_id}", response_model=MaterialResponse)
def get_material(material_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_permissions("inventory:read"))):
    return MaterialStockLedger(db).get_material(material_id)


@router.put("/materials/{material_id}", response_model=MaterialResponse)
def update_material(
    material_id: uuid.UUID,
    payload: MaterialUpdate,
    db: Session = Depends(get_db),
    _=Depends(require_permissions("inventory:write")),
):
    row = MaterialStockLedger(db).get_material(material_id)
    with unit_of_work(db):
        for field, value in payload.model_dump(exclude_unset=True).items():
            setattr(row, field, value)
        row.updated_at = datetime.now(timezone.utc)
    db.refresh(row)
    return row


@router.delete("/materials/{material_id}")
def deactivate_material(
    material_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(require_permissions("inventory:write")),
):
    # Soft delete: movements and order lines keep pointing at the row
    row = MaterialStockLedger(db).get_material(material_id)
    with unit_of_work(db):
        row.is_active = False
        row.updated_at = datetime.now(timezone.utc)
    return {"message": "Material deactivated"}


@router.post("/materials/{material_id}/adjust", response_model=MaterialResponse)
def adjust_stock(
    material_id: uuid.UUID,
    payload: StockAdjustRequest,
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("inventory:write")),
):
    ledger = MaterialStockLedger(db, actor_id=user.id)
    with unit_of_work(db):
        ledger.adjust(material_id, payload.direction.value, payload.quantity, payload.note)
    return ledger.get_material(material_id)


@router.get("/materials/{material_id}/movements", response_model=List[StockMovementResponse])
def material_movements(
    material_id: uuid.UUID,
    direction: Optional[StockDirection] = Query(None),
    db: Session = Depends(get_db),
    _=Depends(require_permissions("inventory:read")),
):
    ledger = MaterialStockLedger(db)
    ledger.get_material(material_id)
    return ledger.movements(material_id=material_id, direction=direction.value if direction else None)


# ---------- MOVEMENTS ----------
@router.get("/movements", response_model=List[StockMovementResponse])
def list_movements(
    material_id: Optional[uuid.UUID] = Query(None, alias="materialId"),
    order_id: Optional[uuid.UUID] = Query(None, alias="orderId"),
    direction: Optional[StockDirection] = Query(None),
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    db: Session = Depends(get_db),
    _=Depends(require_permissions("inventory:read")),
):
    return MaterialStockLedger(db).movements(
        material_id=material_id,
        direction=direction.value if direction else None,
        date_from=date_from,
        date_to=date_to,
        order_id=order_id,
    )
