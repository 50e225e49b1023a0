"""
Tests for OrderLifecycle.

Covers:
1. Creation reserves stock, vehicle and crew atomically
2. Updates reconcile material and crew deltas
3. State machine: legal transitions, terminal states, completion gate
4. Cancellation returns every reserved resource exactly once
5. Failures leave no partial writes
"""
import uuid

import pytest
from sqlalchemy import update

from moveops.errors import ConflictError, NotFoundError, StateError, ValidationError
from moveops.models.models import (
    CrewAssignment,
    Employee,
    Material,
    MovementReason,
    OrderSequence,
    OrderStatus,
    ServiceOrder,
    StockMovement,
    Vehicle,
    VehicleStatus,
)
from moveops.schemas.orders import ChecklistItem, ServiceOrderUpdate
from moveops.services.order_lifecycle import ALLOWED_TRANSITIONS

from conftest import DESTINATION, FIXED_NOW, ORIGIN, line


def stock(session, material_id):
    session.expire_all()
    return session.get(Material, material_id).available_quantity


def vehicle_status(session, vehicle_id):
    session.expire_all()
    return session.get(Vehicle, vehicle_id).status


def order_movements(session, order_id):
    return session.query(StockMovement).filter(StockMovement.order_id == order_id).all()


def changes(**payload):
    return ServiceOrderUpdate.model_validate(payload)


# ============================================================================
# Create
# ============================================================================


def test_create_reserves_materials(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(materials=[line(seed.boxes, 10)]))

    assert order.number == "2026-0001"
    assert order.status == OrderStatus.scheduled.value
    assert stock(session, seed.boxes) == 15
    movements = order_movements(session, order.id)
    assert [(m.quantity, m.reason) for m in movements] == [(-10, MovementReason.reservation.value)]


def test_create_fills_order_from_contract(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(notes="Fragile piano"))

    assert order.client_id == seed.client
    assert order.contract_id == seed.contract
    assert order.origin_address == ORIGIN
    assert order.destination_address == DESTINATION
    assert order.responsible_id is not None
    assert order.created_at.replace(tzinfo=None) == FIXED_NOW.replace(tzinfo=None)
    assert [a.employee_id for a in order.crew] == [seed.ana]


def test_request_addresses_override_contract(seed, lifecycle, make_request):
    origin = dict(ORIGIN, street="Rua Nova", postalCode="80000-000")
    origin.pop("postal_code")
    order = lifecycle.create(make_request(addresses={"origin": origin}))

    assert order.origin_address["street"] == "Rua Nova"
    assert order.destination_address == DESTINATION


def test_create_with_insufficient_stock_persists_nothing(session, seed, lifecycle, make_request):
    with pytest.raises(ConflictError) as exc:
        lifecycle.create(make_request(materials=[line(seed.boxes, 1), line(seed.blankets, 30)]))

    assert "insufficient stock" in exc.value.message
    assert stock(session, seed.blankets) == 2
    assert stock(session, seed.boxes) == 25
    assert session.query(ServiceOrder).count() == 0
    assert session.query(OrderSequence).count() == 0


def test_create_allocates_vehicle(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(vehicle=seed.truck))

    assert order.vehicle_id == seed.truck
    assert vehicle_status(session, seed.truck) == VehicleStatus.in_use.value


def test_vehicle_cannot_be_double_booked(session, seed, lifecycle, make_request):
    first = lifecycle.create(make_request(vehicle=seed.truck))

    with pytest.raises(ConflictError) as exc:
        lifecycle.create(make_request(vehicle=seed.truck, materials=[line(seed.boxes, 3)]))

    assert exc.value.message == "vehicle unavailable"
    assert vehicle_status(session, seed.truck) == VehicleStatus.in_use.value
    assert stock(session, seed.boxes) == 25
    holders = session.query(ServiceOrder).filter(ServiceOrder.vehicle_id == seed.truck).all()
    assert [o.id for o in holders] == [first.id]


def test_vehicle_lost_mid_transaction_rolls_everything_back(session, seed, lifecycle, make_request):
    # Another transaction grabs the truck after our availability check
    lifecycle.vehicles.check_available(seed.truck)
    session.execute(
        update(Vehicle)
        .where(Vehicle.id == seed.truck)
        .values(status=VehicleStatus.in_use.value)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    lifecycle.vehicles.check_available = lambda vehicle_id: None

    with pytest.raises(ConflictError):
        lifecycle.create(make_request(vehicle=seed.truck, materials=[line(seed.boxes, 4)]))

    assert stock(session, seed.boxes) == 25
    assert session.query(ServiceOrder).count() == 0
    assert session.query(StockMovement).filter(StockMovement.quantity < 0).count() == 0


def test_create_requires_active_contract(seed, lifecycle, make_request):
    with pytest.raises(ValidationError):
        lifecycle.create(make_request(contractId=str(seed.inactive_contract)))


def test_create_with_unknown_contract(lifecycle, make_request):
    with pytest.raises(NotFoundError):
        lifecycle.create(make_request(contractId=str(uuid.uuid4())))


def test_create_with_unknown_employee(lifecycle, make_request):
    with pytest.raises(NotFoundError):
        lifecycle.create(make_request(crew=[{"employeeId": str(uuid.uuid4()), "role": "mover"}]))


def test_create_with_unknown_material(lifecycle, make_request):
    with pytest.raises(NotFoundError):
        lifecycle.create(make_request(materials=[line(uuid.uuid4(), 1)]))


def test_duplicate_lines_are_rejected(seed, lifecycle, make_request):
    with pytest.raises(ValidationError):
        lifecycle.create(make_request(materials=[line(seed.boxes, 1), line(seed.boxes, 2)]))
    with pytest.raises(ValidationError):
        lifecycle.create(make_request(crew=[
            {"employeeId": str(seed.ana), "role": "lead"},
            {"employeeId": str(seed.ana), "role": "driver"},
        ]))


# ============================================================================
# Update
# ============================================================================


def test_update_reserves_only_the_delta(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(materials=[line(seed.boxes, 10)]))

    lifecycle.update(order.id, changes(materials=[line(seed.boxes, 15)]))

    assert stock(session, seed.boxes) == 10
    reasons = sorted((m.quantity, m.reason) for m in order_movements(session, order.id))
    assert reasons == [(-10, MovementReason.reservation.value), (-5, MovementReason.reservation_increase.value)]
    assert [(l.material_id, l.quantity) for l in lifecycle.get(order.id).materials] == [(seed.boxes, 15)]


def test_update_can_swap_materials(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(materials=[line(seed.boxes, 10)]))

    lifecycle.update(order.id, changes(materials=[line(seed.blankets, 2)]))

    assert stock(session, seed.boxes) == 25
    assert stock(session, seed.blankets) == 0
    assert {l.material_id: l.quantity for l in lifecycle.get(order.id).materials} == {seed.blankets: 2}


def test_update_with_insufficient_stock_changes_nothing(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(materials=[line(seed.boxes, 10), line(seed.blankets, 1)]))

    with pytest.raises(ConflictError):
        lifecycle.update(order.id, changes(materials=[line(seed.boxes, 5), line(seed.blankets, 4)]))

    assert stock(session, seed.boxes) == 15
    assert stock(session, seed.blankets) == 1
    assert {l.material_id: l.quantity for l in lifecycle.get(order.id).materials} == {seed.boxes: 10, seed.blankets: 1}


def test_update_vehicle_swaps_allocation(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(vehicle=seed.truck))

    lifecycle.update(order.id, changes(vehicleId=str(seed.van)))

    assert vehicle_status(session, seed.truck) == VehicleStatus.available.value
    assert vehicle_status(session, seed.van) == VehicleStatus.in_use.value
    assert lifecycle.get(order.id).vehicle_id == seed.van


def test_update_to_unavailable_vehicle_keeps_the_old_one(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(vehicle=seed.truck))
    lifecycle.create(make_request(vehicle=seed.van))

    with pytest.raises(ConflictError):
        lifecycle.update(order.id, changes(vehicleId=str(seed.van)))

    assert vehicle_status(session, seed.truck) == VehicleStatus.in_use.value
    assert lifecycle.get(order.id).vehicle_id == seed.truck


def test_update_can_drop_the_vehicle(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(vehicle=seed.truck))

    lifecycle.update(order.id, changes(vehicleId=None))

    assert vehicle_status(session, seed.truck) == VehicleStatus.available.value
    assert lifecycle.get(order.id).vehicle_id is None


def test_update_crew_reconciles_assignments(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request())

    lifecycle.update(order.id, changes(crew=[
        {"employeeId": str(seed.ana), "role": "driver"},
        {"employeeId": str(seed.bruno), "role": "mover"},
    ]))

    rows = session.query(CrewAssignment).filter(CrewAssignment.order_id == order.id).all()
    assert {r.employee_id: r.role for r in rows} == {seed.ana: "driver", seed.bruno: "mover"}


def test_update_can_reduce_a_deactivated_material(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(materials=[line(seed.boxes, 10)]))
    session.get(Material, seed.boxes).is_active = False
    session.commit()

    lifecycle.update(order.id, changes(materials=[line(seed.boxes, 4)]))

    assert stock(session, seed.boxes) == 21
    assert {l.material_id: l.quantity for l in lifecycle.get(order.id).materials} == {seed.boxes: 4}


def test_update_cannot_grow_a_deactivated_material(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(materials=[line(seed.boxes, 10)]))
    session.get(Material, seed.boxes).is_active = False
    session.commit()

    with pytest.raises(NotFoundError):
        lifecycle.update(order.id, changes(materials=[line(seed.boxes, 12)]))
    assert stock(session, seed.boxes) == 15


def test_update_keeps_a_deactivated_crew_member(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request())
    session.get(Employee, seed.ana).is_active = False
    session.commit()

    lifecycle.update(order.id, changes(crew=[
        {"employeeId": str(seed.ana), "role": "lead"},
        {"employeeId": str(seed.bruno), "role": "mover"},
    ]))

    rows = session.query(CrewAssignment).filter(CrewAssignment.order_id == order.id).all()
    assert {r.employee_id: r.role for r in rows} == {seed.ana: "lead", seed.bruno: "mover"}


def test_update_cannot_add_a_deactivated_employee(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request())
    session.get(Employee, seed.bruno).is_active = False
    session.commit()

    with pytest.raises(NotFoundError):
        lifecycle.update(order.id, changes(crew=[
            {"employeeId": str(seed.ana), "role": "lead"},
            {"employeeId": str(seed.bruno), "role": "mover"},
        ]))


def test_update_with_empty_crew_is_rejected(lifecycle, make_request):
    order = lifecycle.create(make_request())
    with pytest.raises(ValidationError):
        lifecycle.update(order.id, changes(crew=[]))


def test_update_scalar_fields(seed, lifecycle, make_request):
    order = lifecycle.create(make_request(notes="old"))

    updated = lifecycle.update(order.id, changes(
        notes="Call before arriving",
        scheduleWindow={"date": "2026-03-20", "startTime": "13:00", "endTime": "17:30"},
    ))

    assert updated.notes == "Call before arriving"
    assert updated.scheduled_date.isoformat() == "2026-03-20"
    assert updated.start_time.hour == 13


def test_stale_expected_version_is_a_conflict(lifecycle, make_request):
    order = lifecycle.create(make_request())
    version = order.version
    lifecycle.update(order.id, changes(notes="first"))

    with pytest.raises(ConflictError):
        lifecycle.update(order.id, changes(notes="second", expectedVersion=version))


def test_terminal_orders_cannot_be_updated(seed, lifecycle, make_request):
    order = lifecycle.create(make_request())
    lifecycle.cancel(order.id)

    with pytest.raises(StateError):
        lifecycle.update(order.id, changes(notes="too late"))
    with pytest.raises(StateError):
        lifecycle.assign_crew(order.id, seed.bruno, "mover")


# ============================================================================
# Transitions
# ============================================================================


def test_transition_table_is_closed():
    assert ALLOWED_TRANSITIONS[OrderStatus.completed] == frozenset()
    assert ALLOWED_TRANSITIONS[OrderStatus.cancelled] == frozenset()
    assert OrderStatus.completed not in ALLOWED_TRANSITIONS[OrderStatus.scheduled]


def test_full_lifecycle(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(vehicle=seed.truck, materials=[line(seed.boxes, 10)]))

    started = lifecycle.start(order.id)
    assert started.status == OrderStatus.in_progress.value
    assert started.started_at is not None

    completed = lifecycle.complete(order.id)
    assert completed.status == OrderStatus.completed.value
    assert completed.completed_at is not None
    # Materials were used up; the vehicle comes back
    assert stock(session, seed.boxes) == 15
    assert vehicle_status(session, seed.truck) == VehicleStatus.available.value


def test_scheduled_order_cannot_complete(lifecycle, make_request):
    order = lifecycle.create(make_request())
    with pytest.raises(StateError):
        lifecycle.complete(order.id)


def test_completion_requires_post_checklist(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(
        vehicle=seed.truck,
        materials=[line(seed.boxes, 10)],
        checklistPost=[{"item": "Floor protected"}, {"item": "Client signed"}],
    ))
    lifecycle.start(order.id)

    with pytest.raises(StateError) as exc:
        lifecycle.complete(order.id)
    assert exc.value.details["pending"] == ["Floor protected", "Client signed"]
    assert lifecycle.get(order.id).status == OrderStatus.in_progress.value
    assert stock(session, seed.boxes) == 15
    assert vehicle_status(session, seed.truck) == VehicleStatus.in_use.value

    lifecycle.update_checklist(order.id, "post", [
        ChecklistItem(item="Floor protected", done=True),
        ChecklistItem(item="Client signed", done=True, note="signed by tenant"),
    ])
    assert lifecycle.complete(order.id).status == OrderStatus.completed.value


def test_unknown_target_status(lifecycle, make_request):
    order = lifecycle.create(make_request())
    with pytest.raises(StateError):
        lifecycle.transition(order.id, "archived")


def test_missing_order(lifecycle):
    with pytest.raises(NotFoundError):
        lifecycle.start(uuid.uuid4())


# ============================================================================
# Cancel
# ============================================================================


def test_cancel_releases_everything(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(vehicle=seed.truck, materials=[line(seed.boxes, 10)]))
    lifecycle.update(order.id, changes(materials=[line(seed.boxes, 15)]))
    assert stock(session, seed.boxes) == 10

    cancelled = lifecycle.cancel(order.id, "client moved the date")

    assert cancelled.status == OrderStatus.cancelled.value
    assert cancelled.cancellation_reason == "client moved the date"
    assert "client moved the date" in cancelled.notes
    assert stock(session, seed.boxes) == 25
    assert vehicle_status(session, seed.truck) == VehicleStatus.available.value
    returns = [m for m in order_movements(session, order.id) if m.reason == MovementReason.cancellation_return.value]
    assert [m.quantity for m in returns] == [15]


def test_cancel_twice_does_not_release_twice(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(vehicle=seed.truck, materials=[line(seed.boxes, 10)]))
    lifecycle.cancel(order.id)
    movements_after_first = len(order_movements(session, order.id))

    with pytest.raises(StateError):
        lifecycle.cancel(order.id)

    assert stock(session, seed.boxes) == 25
    assert vehicle_status(session, seed.truck) == VehicleStatus.available.value
    assert len(order_movements(session, order.id)) == movements_after_first
    assert lifecycle.get(order.id).status == OrderStatus.cancelled.value


def test_completed_order_cannot_be_cancelled(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(materials=[line(seed.boxes, 10)]))
    lifecycle.start(order.id)
    lifecycle.complete(order.id)

    with pytest.raises(StateError):
        lifecycle.cancel(order.id)
    assert stock(session, seed.boxes) == 15


def test_in_progress_order_can_be_cancelled(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request(vehicle=seed.van))
    lifecycle.start(order.id)

    assert lifecycle.cancel(order.id).status == OrderStatus.cancelled.value
    assert vehicle_status(session, seed.van) == VehicleStatus.available.value


# ============================================================================
# Checklists and crew
# ============================================================================


def test_checklist_merge_keeps_unmentioned_items(lifecycle, make_request):
    order = lifecycle.create(make_request(checklistPre=[{"item": "Boxes labelled"}, {"item": "Keys collected"}]))

    updated = lifecycle.update_checklist(order.id, "pre", [
        ChecklistItem(item="Keys collected", done=True),
        ChecklistItem(item="Photos taken", done=True),
    ])

    assert [(i["item"], i["done"]) for i in updated.checklist_pre] == [
        ("Boxes labelled", False),
        ("Keys collected", True),
        ("Photos taken", True),
    ]


def test_checklist_rejects_unknown_kind(lifecycle, make_request):
    order = lifecycle.create(make_request())
    with pytest.raises(ValidationError):
        lifecycle.update_checklist(order.id, "during", [ChecklistItem(item="x")])


def test_assign_and_unassign_crew(session, seed, lifecycle, make_request):
    order = lifecycle.create(make_request())

    lifecycle.assign_crew(order.id, seed.carla, "driver")
    with pytest.raises(ConflictError):
        lifecycle.assign_crew(order.id, seed.carla, "mover")
    lifecycle.unassign_crew(order.id, seed.ana)

    session.expire_all()
    assert [(a.employee_id, a.role) for a in lifecycle.get(order.id).crew] == [(seed.carla, "driver")]


# ============================================================================
# Queries
# ============================================================================


def test_list_orders_filters(seed, lifecycle, make_request):
    first = lifecycle.create(make_request())
    second = lifecycle.create(make_request())
    lifecycle.cancel(second.id)

    assert [o.id for o in lifecycle.list_orders(status="scheduled")] == [first.id]
    assert len(lifecycle.list_orders(client_id=seed.client)) == 2
    assert lifecycle.list_orders(client_id=uuid.uuid4()) == []
    with pytest.raises(ValidationError):
        lifecycle.list_orders(status="lost")
