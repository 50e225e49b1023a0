"""
Service order lifecycle.

The only entry point allowed to change service orders and the resources they
hold (stock, vehicle, crew). Each public operation follows the same shape:

1. load and check everything (contract, staff, catalog, stock, vehicle,
   current state) without writing anything;
2. apply every mutation inside one ``unit_of_work`` so the order row, stock
   rows and movements, vehicle row and crew rows commit or roll back together.

Business errors found in step 1 leave no trace. Conditional writes in step 2
that lose a race raise ConflictError and roll the whole unit back; the caller
retries the entire operation.

State machine::

    scheduled --> in_progress --> completed
        \\              |
         `-----------> cancelled

completed and cancelled are terminal.
"""
import uuid
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import structlog
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from ..db import unit_of_work
from ..errors import ConflictError, NotFoundError, StateError, ValidationError
from ..models.models import (
    Contract,
    MovementReason,
    OrderStatus,
    ServiceOrder,
    ServiceOrderMaterial,
)
from ..schemas.orders import (
    Address,
    Addresses,
    ChecklistItem,
    ChecklistKind,
    CrewMember,
    MaterialLine,
    ServiceOrderCreate,
    ServiceOrderUpdate,
)
from .crew_roster import CrewRoster
from .directories import (
    ClientDirectory,
    CrewDirectory,
    MaterialCatalog,
    SqlClientDirectory,
    SqlCrewDirectory,
    SqlMaterialCatalog,
)
from .reconciler import ResourceReconciler
from .sequence import next_order_number
from .stock_ledger import MaterialStockLedger
from .vehicle_allocator import VehicleAllocator


logger = structlog.get_logger(__name__)


ALLOWED_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.scheduled: frozenset({OrderStatus.in_progress, OrderStatus.cancelled}),
    OrderStatus.in_progress: frozenset({OrderStatus.completed, OrderStatus.cancelled}),
    OrderStatus.completed: frozenset(),
    OrderStatus.cancelled: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderLifecycle:
    def __init__(
        self,
        db: Session,
        actor_id: Optional[uuid.UUID] = None,
        clients: Optional[ClientDirectory] = None,
        crew_directory: Optional[CrewDirectory] = None,
        catalog: Optional[MaterialCatalog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.actor_id = actor_id
        self.clients = clients or SqlClientDirectory(db)
        self.crew_directory = crew_directory or SqlCrewDirectory(db)
        self.catalog = catalog or SqlMaterialCatalog(db)
        self.clock = clock or _utcnow
        self.ledger = MaterialStockLedger(db, actor_id)
        self.vehicles = VehicleAllocator(db)
        self.roster = CrewRoster(db)
        self.reconciler = ResourceReconciler(self.ledger, self.roster)

    # ---------- reads ----------
    def get(self, order_id: uuid.UUID) -> ServiceOrder:
        order = self.db.get(ServiceOrder, order_id)
        if not order:
            raise NotFoundError(f"Service order {order_id} not found", details={"order_id": str(order_id)})
        return order

    def list_orders(
        self,
        status: Optional[str] = None,
        client_id: Optional[uuid.UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[ServiceOrder]:
        query = self.db.query(ServiceOrder)
        if status is not None:
            try:
                query = query.filter(ServiceOrder.status == OrderStatus(status).value)
            except ValueError:
                raise ValidationError(f"Invalid status '{status}'", details={"allowed": [s.value for s in OrderStatus]})
        if client_id:
            query = query.filter(ServiceOrder.client_id == client_id)
        if date_from:
            query = query.filter(ServiceOrder.scheduled_date >= date_from)
        if date_to:
            query = query.filter(ServiceOrder.scheduled_date <= date_to)
        return query.order_by(ServiceOrder.scheduled_date.desc(), ServiceOrder.number.desc()).all()

    # ---------- create ----------
    def create(self, request: ServiceOrderCreate) -> ServiceOrder:
        contract = self._validate_contract(request.contract_id)
        origin, destination = self._resolve_addresses(request.addresses, contract)
        crew = self._validate_crew(request.crew)
        lines = self._validate_lines(request.materials)
        self.reconciler.validate(lines)
        if request.vehicle_id:
            self.vehicles.check_available(request.vehicle_id)

        now = self.clock()
        with unit_of_work(self.db):
            number = next_order_number(self.db, now.year)
            window = request.schedule_window
            order = ServiceOrder(
                number=number,
                contract_id=contract.id,
                client_id=contract.client_id,
                responsible_id=self.actor_id,
                scheduled_date=window.scheduled_date,
                start_time=window.start_time,
                end_time=window.end_time,
                origin_address=origin,
                destination_address=destination,
                vehicle_id=request.vehicle_id,
                status=OrderStatus.scheduled.value,
                notes=request.notes,
                checklist_pre=_dump_checklist(request.checklist_pre),
                checklist_post=_dump_checklist(request.checklist_post),
                created_at=now,
                updated_at=now,
            )
            for material_id, qty in lines.items():
                order.materials.append(ServiceOrderMaterial(material_id=material_id, quantity=qty, created_at=now))
            self.db.add(order)
            self.db.flush()

            for material_id, qty in _sorted_items(lines):
                self.ledger.reserve(material_id, qty, order.id, MovementReason.reservation, f"Reserved for order {number}")
            if request.vehicle_id:
                self.vehicles.allocate(request.vehicle_id)
            for employee_id, role in _sorted_items(crew):
                self.roster.assign(order.id, employee_id, role)

        logger.info(
            "order_created",
            order_id=str(order.id),
            number=order.number,
            materials=len(lines),
            crew=len(crew),
            vehicle_id=str(request.vehicle_id) if request.vehicle_id else None,
        )
        return order

    # ---------- update ----------
    def update(self, order_id: uuid.UUID, changes: ServiceOrderUpdate) -> ServiceOrder:
        order = self._get_for_update(order_id)
        self._ensure_mutable(order)
        self._check_version(order, changes.expected_version)
        fields = changes.model_fields_set

        vehicle_changed = "vehicle_id" in fields and changes.vehicle_id != order.vehicle_id
        if vehicle_changed and changes.vehicle_id is not None:
            self.vehicles.check_available(changes.vehicle_id)

        new_lines = None
        deltas: Dict[uuid.UUID, int] = {}
        if changes.materials is not None:
            old_lines = {line.material_id: line.quantity for line in order.materials}
            new_lines = self._validate_lines(changes.materials, reserved=old_lines)
            deltas = self.reconciler.diff_material_lines(old_lines.items(), new_lines.items())
            self.reconciler.validate(deltas)

        new_crew = None
        current_crew: Dict[uuid.UUID, str] = {}
        if changes.crew is not None:
            if not changes.crew:
                raise ValidationError("A service order needs at least one crew member")
            current_crew = {a.employee_id: a.role for a in self.roster.assignments(order.id)}
            new_crew = self._validate_crew(changes.crew, assigned=current_crew.keys())

        origin = destination = None
        if changes.addresses is not None:
            origin = changes.addresses.origin.model_dump() if changes.addresses.origin else None
            destination = changes.addresses.destination.model_dump() if changes.addresses.destination else None

        now = self.clock()
        with unit_of_work(self.db):
            if vehicle_changed:
                # Old vehicle goes back first; if the new one was taken meanwhile
                # the allocate raises and the rollback restores the old assignment
                if order.vehicle_id is not None:
                    self.vehicles.release(order.vehicle_id)
                if changes.vehicle_id is not None:
                    self.vehicles.allocate(changes.vehicle_id)
                order.vehicle_id = changes.vehicle_id

            if new_lines is not None:
                self.reconciler.apply(deltas, order.id, f"Adjusted for order {order.number}")
                _replace_lines(order, new_lines, now)

            if new_crew is not None:
                self.reconciler.reconcile_crew(order.id, current_crew, new_crew)

            if changes.schedule_window is not None:
                order.scheduled_date = changes.schedule_window.scheduled_date
                order.start_time = changes.schedule_window.start_time
                order.end_time = changes.schedule_window.end_time
            if origin is not None:
                order.origin_address = origin
            if destination is not None:
                order.destination_address = destination
            if "notes" in fields:
                order.notes = changes.notes
            if changes.checklist_pre is not None:
                order.checklist_pre = _dump_checklist(changes.checklist_pre)
            if changes.checklist_post is not None:
                order.checklist_post = _dump_checklist(changes.checklist_post)
            order.updated_at = now

        logger.info(
            "order_updated",
            order_id=str(order.id),
            number=order.number,
            fields=sorted(fields),
            material_deltas={str(k): v for k, v in deltas.items()},
        )
        return order

    # ---------- checklists ----------
    def update_checklist(
        self,
        order_id: uuid.UUID,
        kind: str,
        items: Iterable[ChecklistItem],
        expected_version: Optional[int] = None,
    ) -> ServiceOrder:
        """Merge ``items`` into the named checklist by item text; new items are appended."""
        try:
            kind = ChecklistKind(kind)
        except ValueError:
            raise ValidationError("Checklist kind must be 'pre' or 'post'", details={"kind": str(kind)})
        order = self._get_for_update(order_id)
        self._ensure_mutable(order)
        self._check_version(order, expected_version)

        attr = "checklist_pre" if kind == ChecklistKind.pre else "checklist_post"
        merged = [dict(entry) for entry in (getattr(order, attr) or [])]
        by_item = {entry["item"]: entry for entry in merged}
        for item in items:
            entry = by_item.get(item.item)
            if entry is None:
                entry = item.model_dump()
                merged.append(entry)
                by_item[item.item] = entry
            else:
                entry["done"] = item.done
                if item.note is not None:
                    entry["note"] = item.note

        with unit_of_work(self.db):
            setattr(order, attr, merged)
            order.updated_at = self.clock()
        logger.info("order_checklist_updated", order_id=str(order.id), kind=kind.value, items=len(merged))
        return order

    # ---------- crew ----------
    def assign_crew(self, order_id: uuid.UUID, employee_id: uuid.UUID, role: str) -> ServiceOrder:
        order = self._get_for_update(order_id)
        self._ensure_mutable(order)
        self._validate_crew([CrewMember(employee_id=employee_id, role=role)])
        with unit_of_work(self.db):
            self.roster.assign(order.id, employee_id, role)
            order.updated_at = self.clock()
        return order

    def unassign_crew(self, order_id: uuid.UUID, employee_id: uuid.UUID) -> ServiceOrder:
        order = self._get_for_update(order_id)
        self._ensure_mutable(order)
        with unit_of_work(self.db):
            self.roster.unassign(order.id, employee_id)
            order.updated_at = self.clock()
        return order

    # ---------- transitions ----------
    def transition(self, order_id: uuid.UUID, new_status, reason: Optional[str] = None) -> ServiceOrder:
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise StateError(f"Unknown target status '{new_status}'", details={"allowed": [s.value for s in OrderStatus]})

        order = self._get_for_update(order_id)
        current = OrderStatus(order.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise StateError(
                f"Order {order.number} cannot go from {current.value} to {target.value}",
                details={"order_id": str(order.id), "current": current.value, "requested": target.value},
            )
        if target == OrderStatus.completed:
            pending = [entry.get("item") for entry in (order.checklist_post or []) if not entry.get("done")]
            if pending:
                raise StateError(
                    "Post-service checklist has pending items",
                    details={"order_id": str(order.id), "pending": pending},
                )

        now = self.clock()
        with unit_of_work(self.db):
            if target == OrderStatus.in_progress:
                order.started_at = now
            elif target == OrderStatus.completed:
                # Materials were consumed by the job; only the vehicle comes back
                if order.vehicle_id is not None:
                    self.vehicles.release(order.vehicle_id)
                order.completed_at = now
            elif target == OrderStatus.cancelled:
                if order.vehicle_id is not None:
                    self.vehicles.release(order.vehicle_id)
                for material_id, qty in _sorted_items({line.material_id: line.quantity for line in order.materials}):
                    self.ledger.release(
                        material_id,
                        qty,
                        order.id,
                        MovementReason.cancellation_return,
                        f"Returned by cancellation of order {order.number}",
                    )
                if reason:
                    order.cancellation_reason = reason
                    line = f"Cancellation reason: {reason}"
                    order.notes = f"{order.notes}\n{line}" if order.notes else line
                order.cancelled_at = now
            order.status = target.value
            order.updated_at = now

        logger.info("order_transitioned", order_id=str(order.id), number=order.number, from_status=current.value, to_status=target.value)
        return order

    def start(self, order_id: uuid.UUID) -> ServiceOrder:
        return self.transition(order_id, OrderStatus.in_progress)

    def complete(self, order_id: uuid.UUID) -> ServiceOrder:
        return self.transition(order_id, OrderStatus.completed)

    def cancel(self, order_id: uuid.UUID, reason: Optional[str] = None) -> ServiceOrder:
        return self.transition(order_id, OrderStatus.cancelled, reason)

    # ---------- helpers ----------
    def _get_for_update(self, order_id: uuid.UUID) -> ServiceOrder:
        order = (
            self.db.query(ServiceOrder)
            .filter(ServiceOrder.id == order_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not order:
            raise NotFoundError(f"Service order {order_id} not found", details={"order_id": str(order_id)})
        return order

    def _ensure_mutable(self, order: ServiceOrder) -> None:
        if order.is_terminal:
            raise StateError(
                f"Order {order.number} is {order.status} and can no longer be changed",
                details={"order_id": str(order.id), "status": order.status},
            )

    def _check_version(self, order: ServiceOrder, expected: Optional[int]) -> None:
        if expected is not None and expected != order.version:
            raise ConflictError(
                f"Order {order.number} was modified by someone else",
                details={"order_id": str(order.id), "expected_version": expected, "current_version": order.version},
            )

    def _validate_contract(self, contract_id: uuid.UUID) -> Contract:
        contract = self.clients.get_contract(contract_id)
        if not contract:
            raise NotFoundError(f"Contract {contract_id} not found", details={"contract_id": str(contract_id)})
        if not self.clients.contract_is_active(contract_id):
            raise ValidationError(
                "Service orders can only be generated from active contracts",
                details={"contract_id": str(contract_id), "status": contract.status},
            )
        return contract

    def _resolve_addresses(self, addresses: Optional[Addresses], contract: Contract) -> Tuple[dict, dict]:
        """Request addresses win; missing ones fall back to the contract's."""
        resolved = []
        for side in ("origin", "destination"):
            given = getattr(addresses, side) if addresses else None
            if given is not None:
                resolved.append(given.model_dump())
                continue
            fallback = getattr(contract, f"{side}_address")
            if not fallback:
                raise ValidationError(f"{side} address is required", details={"field": f"addresses.{side}"})
            try:
                resolved.append(Address.model_validate(fallback).model_dump())
            except SchemaValidationError as e:
                raise ValidationError(
                    f"Contract {side} address is incomplete",
                    details={"field": f"addresses.{side}", "errors": e.errors(include_context=False)},
                )
        return resolved[0], resolved[1]

    def _validate_crew(
        self,
        members: Iterable[CrewMember],
        assigned: Iterable[uuid.UUID] = (),
    ) -> Dict[uuid.UUID, str]:
        """Employees already on the order skip the directory check, so a deactivated member can stay."""
        assigned = set(assigned)
        crew: Dict[uuid.UUID, str] = {}
        for member in members:
            if member.employee_id in crew:
                raise ValidationError(
                    "Employee listed more than once in the crew",
                    details={"employee_id": str(member.employee_id)},
                )
            if member.employee_id not in assigned and not self.crew_directory.employee_exists(member.employee_id):
                raise NotFoundError(
                    f"Employee {member.employee_id} not found",
                    details={"employee_id": str(member.employee_id)},
                )
            crew[member.employee_id] = member.role.strip()
        return crew

    def _validate_lines(
        self,
        lines: Iterable[MaterialLine],
        reserved: Optional[Dict[uuid.UUID, int]] = None,
    ) -> Dict[uuid.UUID, int]:
        """
        Duplicate and catalog checks for requested lines.

        A line already reserved on the order that is kept or reduced reserves
        nothing new, so it skips the catalog check; the reconciler still needs
        the material row to exist.
        """
        reserved = reserved or {}
        result: Dict[uuid.UUID, int] = {}
        for line in lines:
            if line.material_id in result:
                raise ValidationError(
                    "Material listed more than once",
                    details={"material_id": str(line.material_id)},
                )
            if line.quantity <= reserved.get(line.material_id, 0):
                result[line.material_id] = line.quantity
                continue
            if not self.catalog.material_exists(line.material_id):
                raise NotFoundError(
                    f"Material {line.material_id} not found",
                    details={"material_id": str(line.material_id)},
                )
            result[line.material_id] = line.quantity
        return result


def _dump_checklist(items: Iterable[ChecklistItem]) -> List[dict]:
    return [item.model_dump() for item in items]


def _sorted_items(mapping: Dict[uuid.UUID, object]) -> List[Tuple[uuid.UUID, object]]:
    return sorted(mapping.items(), key=lambda kv: str(kv[0]))


def _replace_lines(order: ServiceOrder, new_lines: Dict[uuid.UUID, int], now: datetime) -> None:
    # Edit rows in place so a kept material never hits the (order, material) unique key twice
    existing = {line.material_id: line for line in order.materials}
    for material_id, line in existing.items():
        if material_id not in new_lines:
            order.materials.remove(line)
        else:
            line.quantity = new_lines[material_id]
    for material_id, qty in new_lines.items():
        if material_id not in existing:
            order.materials.append(ServiceOrderMaterial(material_id=material_id, quantity=qty, created_at=now))
