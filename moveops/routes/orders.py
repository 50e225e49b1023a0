import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import Actor, require_permissions
from ..models.models import OrderStatus
from ..schemas.orders import (
    CancelRequest,
    ChecklistUpdate,
    CrewAssignRequest,
    ServiceOrderCreate,
    ServiceOrderResponse,
    ServiceOrderUpdate,
)
from ..services.order_lifecycle import OrderLifecycle


router = APIRouter(prefix="/orders", tags=["orders"])


def _lifecycle(db: Session, user: Actor) -> OrderLifecycle:
    return OrderLifecycle(db, actor_id=user.id)


@router.post("", response_model=ServiceOrderResponse, status_code=201)
def create_order(
    payload: ServiceOrderCreate,
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("orders:write")),
):
    return _lifecycle(db, user).create(payload)


@router.get("", response_model=List[ServiceOrderResponse])
def list_orders(
    status: Optional[OrderStatus] = Query(None),
    client_id: Optional[uuid.UUID] = Query(None, alias="clientId"),
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("orders:read")),
):
    return _lifecycle(db, user).list_orders(
        status=status.value if status else None,
        client_id=client_id,
        date_from=date_from,
        date_to=date_to,
    )


@router.get("/{order_id}", response_model=ServiceOrderResponse)
def get_order(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("orders:read")),
):
    return _lifecycle(db, user).get(order_id)


@router.put("/{order_id}", response_model=ServiceOrderResponse)
def update_order(
    order_id: uuid.UUID,
    payload: ServiceOrderUpdate,
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("orders:write")),
):
    return _lifecycle(db, user).update(order_id, payload)


@router.post("/{order_id}/start", response_model=ServiceOrderResponse)
def start_order(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("orders:write")),
):
    return _lifecycle(db, user).start(order_id)


@router.post("/{order_id}/complete", response_model=ServiceOrderResponse)
def complete_order(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("orders:write")),
):
    return _lifecycle(db, user).complete(order_id)


@router.post("/{order_id}/cancel", response_model=ServiceOrderResponse)
def cancel_order(
    order_id: uuid.UUID,
    payload: Optional[CancelRequest] = None,
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("orders:write")),
):
    return _lifecycle(db, user).cancel(order_id, payload.reason if payload else None)


@router.put("/{order_id}/checklist", response_model=ServiceOrderResponse)
def update_checklist(
    order_id: uuid.UUID,
    payload: ChecklistUpdate,
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("orders:write")),
):
    return _lifecycle(db, user).update_checklist(order_id, payload.kind, payload.items, payload.expected_version)


@router.post("/{order_id}/crew", response_model=ServiceOrderResponse)
def assign_crew(
    order_id: uuid.UUID,
    payload: CrewAssignRequest,
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("orders:write")),
):
    return _lifecycle(db, user).assign_crew(order_id, payload.employee_id, payload.role)


@router.delete("/{order_id}/crew/{employee_id}", response_model=ServiceOrderResponse)
def unassign_crew(
    order_id: uuid.UUID,
    employee_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: Actor = Depends(require_permissions("orders:write")),
):
    return _lifecycle(db, user).unassign_crew(order_id, employee_id)
