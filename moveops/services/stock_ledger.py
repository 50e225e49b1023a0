"""
Material stock ledger.

Every change to a material's available quantity goes through this module and
appends a matching StockMovement (signed: negative = out, positive = in). The
cached ``Material.available_quantity`` can always be rebuilt by summing the
movements.

Decrements are compare-and-set UPDATEs guarded by
``available_quantity >= qty``, so two callers working from the same stale read
cannot drive stock negative: the loser affects zero rows and gets a
ConflictError. Nothing here commits; the caller's unit of work does.
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models.models import Material, MovementReason, StockMovement


logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MaterialStockLedger:
    def __init__(self, db: Session, actor_id: Optional[uuid.UUID] = None):
        self.db = db
        self.actor_id = actor_id

    # ---------- reads ----------
    def get_material(self, material_id: uuid.UUID) -> Material:
        material = self.db.get(Material, material_id)
        if not material:
            raise NotFoundError(f"Material {material_id} not found", details={"material_id": str(material_id)})
        return material

    def available(self, material_id: uuid.UUID) -> int:
        return self.get_material(material_id).available_quantity

    def check_available(self, material_id: uuid.UUID, qty: int) -> None:
        """Raise ConflictError if ``qty`` cannot be reserved right now. Read-only."""
        material = self.get_material(material_id)
        if material.available_quantity < qty:
            raise ConflictError(
                f"insufficient stock for material {material.code}",
                details={
                    "material_id": str(material.id),
                    "code": material.code,
                    "requested": qty,
                    "available": material.available_quantity,
                },
            )

    def low_stock(self) -> List[Material]:
        # All materials, active or not
        return (
            self.db.query(Material)
            .filter(Material.available_quantity <= Material.minimum_quantity)
            .order_by(Material.code)
            .all()
        )

    def movements(
        self,
        material_id: Optional[uuid.UUID] = None,
        direction: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        order_id: Optional[uuid.UUID] = None,
    ) -> List[StockMovement]:
        query = self.db.query(StockMovement)
        if material_id:
            query = query.filter(StockMovement.material_id == material_id)
        if order_id:
            query = query.filter(StockMovement.order_id == order_id)
        if direction == "in":
            query = query.filter(StockMovement.quantity > 0)
        elif direction == "out":
            query = query.filter(StockMovement.quantity < 0)
        elif direction is not None:
            raise ValidationError("direction must be 'in' or 'out'", details={"direction": direction})
        if date_from:
            query = query.filter(StockMovement.created_at >= date_from)
        if date_to:
            query = query.filter(StockMovement.created_at <= date_to)
        return query.order_by(StockMovement.created_at.desc()).all()

    def reconstruct_available(self, material_id: uuid.UUID) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(StockMovement.quantity), 0))
            .filter(StockMovement.material_id == material_id)
            .scalar()
        )
        return int(total)

    # ---------- writes ----------
    def reserve(
        self,
        material_id: uuid.UUID,
        qty: int,
        order_id: Optional[uuid.UUID] = None,
        reason: MovementReason = MovementReason.reservation,
        note: Optional[str] = None,
    ) -> StockMovement:
        _require_positive(qty)
        self.check_available(material_id, qty)
        result = self.db.execute(
            update(Material)
            .where(Material.id == material_id, Material.available_quantity >= qty)
            .values(
                available_quantity=Material.available_quantity - qty,
                version=Material.version + 1,
                updated_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Someone else took the stock between our read and the write
            self._expire(material_id)
            raise ConflictError(
                "insufficient stock (concurrent reservation)",
                details={"material_id": str(material_id), "requested": qty},
            )
        self._expire(material_id)
        movement = self._record(material_id, -qty, order_id, reason, note)
        logger.info("stock_reserved", material_id=str(material_id), quantity=qty, order_id=_s(order_id), reason=reason.value)
        return movement

    def release(
        self,
        material_id: uuid.UUID,
        qty: int,
        order_id: Optional[uuid.UUID] = None,
        reason: MovementReason = MovementReason.cancellation_return,
        note: Optional[str] = None,
    ) -> StockMovement:
        _require_positive(qty)
        self.get_material(material_id)
        self.db.execute(
            update(Material)
            .where(Material.id == material_id)
            .values(
                available_quantity=Material.available_quantity + qty,
                version=Material.version + 1,
                updated_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        self._expire(material_id)
        movement = self._record(material_id, qty, order_id, reason, note)
        logger.info("stock_released", material_id=str(material_id), quantity=qty, order_id=_s(order_id), reason=reason.value)
        return movement

    def apply_delta(
        self,
        material_id: uuid.UUID,
        delta: int,
        order_id: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Optional[StockMovement]:
        """Positive delta reserves more, negative returns some, zero does nothing."""
        if delta > 0:
            return self.reserve(material_id, delta, order_id, MovementReason.reservation_increase, note)
        if delta < 0:
            return self.release(material_id, -delta, order_id, MovementReason.reservation_decrease, note)
        return None

    def receive_initial(self, material: Material, note: Optional[str] = None) -> Optional[StockMovement]:
        """Record the opening balance of a freshly created material."""
        if material.available_quantity <= 0:
            return None
        return self._record(material.id, material.available_quantity, None, MovementReason.initial_stock, note or "Initial stock")

    def adjust(self, material_id: uuid.UUID, direction: str, qty: int, note: Optional[str] = None) -> StockMovement:
        """Manual stock correction outside of any service order."""
        if direction == "in":
            return self.release(material_id, qty, None, MovementReason.manual_in, note or "Manual stock adjustment (in)")
        if direction == "out":
            return self.reserve(material_id, qty, None, MovementReason.manual_out, note or "Manual stock adjustment (out)")
        raise ValidationError("direction must be 'in' or 'out'", details={"direction": direction})

    # ---------- helpers ----------
    def _record(
        self,
        material_id: uuid.UUID,
        signed_qty: int,
        order_id: Optional[uuid.UUID],
        reason: MovementReason,
        note: Optional[str],
    ) -> StockMovement:
        movement = StockMovement(
            material_id=material_id,
            quantity=signed_qty,
            order_id=order_id,
            reason=reason.value,
            note=note,
            actor_id=self.actor_id,
            created_at=_now(),
        )
        self.db.add(movement)
        return movement

    def _expire(self, material_id: uuid.UUID) -> None:
        cached = self.db.identity_map.get(self.db.identity_key(Material, material_id))
        if cached is not None:
            self.db.expire(cached)


def _require_positive(qty: int) -> None:
    if qty is None or qty <= 0:
        raise ValidationError("quantity must be greater than zero", details={"quantity": qty})


def _s(value) -> Optional[str]:
    return str(value) if value is not None else None

