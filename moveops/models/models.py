import enum
import uuid
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Time,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    UniqueConstraint,
    CheckConstraint,
    Text,
    Index,
    Uuid,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


class OrderStatus(str, enum.Enum):
    scheduled = "scheduled"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.completed, OrderStatus.cancelled})


class VehicleStatus(str, enum.Enum):
    available = "available"
    in_use = "in_use"
    maintenance = "maintenance"


class MovementReason(str, enum.Enum):
    initial_stock = "initial_stock"
    reservation = "reservation"
    reservation_increase = "reservation_increase"
    reservation_decrease = "reservation_decrease"
    cancellation_return = "cancellation_return"
    manual_in = "manual_in"
    manual_out = "manual_out"


# =====================
# Collaborator-owned records (contracts and staff live in other subsystems)
# =====================

class Contract(Base):
    """Signed contract a service order is generated from"""
    __tablename__ = "contracts"

    id: Mapped[uuid.UUID] = uuid_pk()
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    number: Mapped[Optional[str]] = mapped_column(String(50), unique=True)
    status: Mapped[str] = mapped_column(String(50), default="active", index=True)  # draft|active|finished|cancelled
    origin_address: Mapped[Optional[dict]] = mapped_column(JSON)
    destination_address: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    job_title: Mapped[Optional[str]] = mapped_column(String(100))  # mover|driver|packer|supervisor
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


# =====================
# Inventory domain
# =====================

class Material(Base):
    """Stock entry for a packing material (boxes, tape, blankets...)"""
    __tablename__ = "materials"

    id: Mapped[uuid.UUID] = uuid_pk()
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)  # e.g. CX-001
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    unit: Mapped[Optional[str]] = mapped_column(String(50))
    # Cached level; the stock_movements ledger is the source of truth
    available_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minimum_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    supplier: Mapped[Optional[str]] = mapped_column(String(255))
    location: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="ck_material_available_non_negative"),
    )


class StockMovement(Base):
    """Append-only stock ledger entry (negative = out, positive = in)"""
    __tablename__ = "stock_movements"

    id: Mapped[uuid.UUID] = uuid_pk()
    material_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("materials.id", ondelete="RESTRICT"), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("service_orders.id", ondelete="SET NULL"), index=True)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(String(500))
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        CheckConstraint("quantity <> 0", name="ck_movement_quantity_non_zero"),
        Index("idx_movement_material_created", "material_id", "created_at"),
    )


# =====================
# Fleet domain
# =====================

class Vehicle(Base):
    __tablename__ = "vehicles"

    id: Mapped[uuid.UUID] = uuid_pk()
    plate: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String(100))
    year: Mapped[Optional[int]] = mapped_column(Integer)
    capacity: Mapped[Optional[str]] = mapped_column(String(50))  # e.g. "3.5t", "24m3"
    status: Mapped[str] = mapped_column(String(50), default=VehicleStatus.available.value, nullable=False, index=True)  # available|in_use|maintenance
    last_maintenance_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    next_maintenance_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


# =====================
# Service order domain
# =====================

class OrderSequence(Base):
    """Per-year counter behind order numbers (YYYY-NNNN)"""
    __tablename__ = "order_sequences"

    year: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ServiceOrder(Base):
    __tablename__ = "service_orders"

    id: Mapped[uuid.UUID] = uuid_pk()
    number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    contract_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False, index=True)
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    responsible_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)
    end_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)
    origin_address: Mapped[dict] = mapped_column(JSON, nullable=False)
    destination_address: Mapped[dict] = mapped_column(JSON, nullable=False)
    vehicle_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("vehicles.id", ondelete="RESTRICT"), index=True)
    status: Mapped[str] = mapped_column(String(50), default=OrderStatus.scheduled.value, nullable=False, index=True)  # scheduled|in_progress|completed|cancelled
    notes: Mapped[Optional[str]] = mapped_column(Text)
    checklist_pre: Mapped[list] = mapped_column(JSON, default=list)  # [{item, done, note}]
    checklist_post: Mapped[list] = mapped_column(JSON, default=list)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Relationships
    materials = relationship("ServiceOrderMaterial", back_populates="order", cascade="all, delete-orphan", order_by="ServiceOrderMaterial.created_at")
    # Rows are written through CrewRoster only
    crew = relationship("CrewAssignment", viewonly=True, order_by="CrewAssignment.assigned_at")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_service_order_status_date", "status", "scheduled_date"),
    )

    @property
    def is_terminal(self) -> bool:
        return OrderStatus(self.status) in TERMINAL_STATUSES


class ServiceOrderMaterial(Base):
    """Material reservation line of a service order"""
    __tablename__ = "service_order_materials"

    id: Mapped[uuid.UUID] = uuid_pk()
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("service_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    material_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("materials.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    order = relationship("ServiceOrder", back_populates="materials")

    __table_args__ = (
        UniqueConstraint("order_id", "material_id", name="uq_order_material"),
        CheckConstraint("quantity > 0", name="ck_order_material_quantity_positive"),
    )


class CrewAssignment(Base):
    __tablename__ = "crew_assignments"

    id: Mapped[uuid.UUID] = uuid_pk()
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("service_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    employee_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("employees.id", ondelete="RESTRICT"), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(100), nullable=False)  # driver|mover|packer|lead
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("order_id", "employee_id", name="uq_order_employee"),
    )
