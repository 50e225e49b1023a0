"""
Pytest fixtures for the moveops test suite.

Provides:
- A fresh in-memory SQLite database per test (StaticPool, one connection)
- Seed data: an active contract, staff, packing materials and vehicles
- An OrderLifecycle wired to a fixed clock
- A FastAPI TestClient with the database and caller overridden
"""
import uuid
from types import SimpleNamespace
from datetime import date, datetime, time, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from moveops.db import Base, get_db
from moveops.auth.security import Actor, get_current_user
from moveops.models.models import Contract, Employee, Material, Vehicle
from moveops.schemas.orders import ServiceOrderCreate
from moveops.services.order_lifecycle import OrderLifecycle
from moveops.services.stock_ledger import MaterialStockLedger


FIXED_NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
ORDER_DAY = date(2026, 3, 12)
ACTOR_ID = uuid.UUID("11111111-1111-4111-8111-111111111111")

ORIGIN = {
    "street": "Rua das Flores",
    "number": "120",
    "complement": None,
    "district": "Centro",
    "city": "Curitiba",
    "state": "PR",
    "postal_code": "80010-000",
}
DESTINATION = {
    "street": "Avenida Batel",
    "number": "1550",
    "complement": "Casa 2",
    "district": "Batel",
    "city": "Curitiba",
    "state": "PR",
    "postal_code": "80420-090",
}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT to behave
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, future=True)


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def seed(session):
    """Reference rows every scenario starts from."""
    contract = Contract(
        client_id=uuid.uuid4(),
        number="CT-2026-001",
        status="active",
        origin_address=ORIGIN,
        destination_address=DESTINATION,
    )
    inactive_contract = Contract(
        client_id=uuid.uuid4(),
        number="CT-2025-099",
        status="finished",
        origin_address=ORIGIN,
        destination_address=DESTINATION,
    )
    ana = Employee(name="Ana Souza", job_title="supervisor")
    bruno = Employee(name="Bruno Lima", job_title="mover")
    carla = Employee(name="Carla Dias", job_title="driver")
    boxes = Material(code="CX-001", name="Cardboard box", unit="un", available_quantity=25, minimum_quantity=5)
    blankets = Material(code="CR-003", name="Moving blanket", unit="un", available_quantity=2, minimum_quantity=1)
    truck = Vehicle(plate="ABC1D23", model="Delivery 9.170", brand="Volkswagen")
    van = Vehicle(plate="XYZ9K88", model="Sprinter 416", brand="Mercedes-Benz")
    session.add_all([contract, inactive_contract, ana, bruno, carla, boxes, blankets, truck, van])
    session.flush()

    ledger = MaterialStockLedger(session)
    ledger.receive_initial(boxes)
    ledger.receive_initial(blankets)
    # Ids only: the API tests share the single connection and must not reopen this session
    ids = SimpleNamespace(
        contract=contract.id,
        client=contract.client_id,
        inactive_contract=inactive_contract.id,
        ana=ana.id,
        bruno=bruno.id,
        carla=carla.id,
        boxes=boxes.id,
        blankets=blankets.id,
        truck=truck.id,
        van=van.id,
    )
    session.commit()
    return ids


@pytest.fixture
def lifecycle(session, seed):
    return OrderLifecycle(session, actor_id=ACTOR_ID, clock=lambda: FIXED_NOW)


@pytest.fixture
def make_request(seed):
    """Build a ServiceOrderCreate from the seed with overridable pieces."""
    def _make(materials=None, vehicle=None, crew=None, **extra):
        payload = {
            "contractId": str(seed.contract),
            "scheduleWindow": {"date": ORDER_DAY.isoformat(), "startTime": "08:00", "endTime": "12:00"},
            "crew": crew if crew is not None else [{"employeeId": str(seed.ana), "role": "lead"}],
            "materials": materials or [],
        }
        if vehicle is not None:
            payload["vehicleId"] = str(vehicle)
        payload.update(extra)
        return ServiceOrderCreate.model_validate(payload)

    return _make


@pytest.fixture
def client(session_factory, seed):
    from moveops.main import app

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.state.limiter.reset()
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user] = lambda: Actor(id=ACTOR_ID, roles=frozenset({"admin"}))
    yield TestClient(app)
    app.dependency_overrides.clear()


def line(material_id, qty):
    return {"materialId": str(material_id), "qty": qty}


def schedule(start=time(8, 0), end=time(12, 0), day=ORDER_DAY):
    return {"date": day.isoformat(), "startTime": start.isoformat(), "endTime": end.isoformat()}
