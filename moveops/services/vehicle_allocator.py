"""
Vehicle allocation.

A vehicle is exclusive: every status change is a conditional UPDATE on the
expected current status (compare-and-set). Allocation succeeds only if exactly
one row moved from ``available`` to ``in_use``, which serializes concurrent
allocators without a lock manager.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError
from ..models.models import Vehicle, VehicleStatus


logger = structlog.get_logger(__name__)


class VehicleAllocator:
    def __init__(self, db: Session):
        self.db = db

    def get_vehicle(self, vehicle_id: uuid.UUID) -> Vehicle:
        vehicle = self.db.get(Vehicle, vehicle_id)
        if not vehicle:
            raise NotFoundError(f"Vehicle {vehicle_id} not found", details={"vehicle_id": str(vehicle_id)})
        return vehicle

    def check_available(self, vehicle_id: uuid.UUID) -> Vehicle:
        vehicle = self.get_vehicle(vehicle_id)
        if vehicle.status != VehicleStatus.available.value or not vehicle.is_active:
            raise ConflictError(
                "vehicle unavailable",
                details={"vehicle_id": str(vehicle.id), "plate": vehicle.plate, "status": vehicle.status},
            )
        return vehicle

    def allocate(self, vehicle_id: uuid.UUID) -> None:
        self.check_available(vehicle_id)
        if not self._swap(vehicle_id, VehicleStatus.available, VehicleStatus.in_use):
            raise ConflictError("vehicle unavailable", details={"vehicle_id": str(vehicle_id)})
        logger.info("vehicle_allocated", vehicle_id=str(vehicle_id))

    def release(self, vehicle_id: uuid.UUID) -> None:
        """Make the vehicle available again. Releasing an available vehicle is a no-op."""
        self.get_vehicle(vehicle_id)
        if self._swap(vehicle_id, None, VehicleStatus.available):
            logger.info("vehicle_released", vehicle_id=str(vehicle_id))

    def start_maintenance(self, vehicle_id: uuid.UUID, next_maintenance_at: Optional[datetime] = None) -> None:
        vehicle = self.get_vehicle(vehicle_id)
        if not self._swap(vehicle_id, VehicleStatus.available, VehicleStatus.maintenance):
            raise ConflictError(
                "Only available vehicles can be sent to maintenance",
                details={"vehicle_id": str(vehicle_id), "status": vehicle.status},
            )
        if next_maintenance_at is not None:
            self.db.execute(
                update(Vehicle)
                .where(Vehicle.id == vehicle_id)
                .values(next_maintenance_at=next_maintenance_at)
                .execution_options(synchronize_session=False)
            )
        logger.info("vehicle_maintenance_started", vehicle_id=str(vehicle_id))

    def finish_maintenance(self, vehicle_id: uuid.UUID) -> None:
        vehicle = self.get_vehicle(vehicle_id)
        if not self._swap(
            vehicle_id,
            VehicleStatus.maintenance,
            VehicleStatus.available,
            last_maintenance_at=datetime.now(timezone.utc),
        ):
            raise ConflictError(
                "Vehicle is not in maintenance",
                details={"vehicle_id": str(vehicle_id), "status": vehicle.status},
            )
        logger.info("vehicle_maintenance_finished", vehicle_id=str(vehicle_id))

    def _swap(
        self,
        vehicle_id: uuid.UUID,
        expected: Optional[VehicleStatus],
        new: VehicleStatus,
        **extra,
    ) -> bool:
        """
        Conditional status update. ``expected=None`` means "any status other
        than ``new``". Returns True when exactly one row changed.
        """
        stmt = update(Vehicle).where(Vehicle.id == vehicle_id)
        if expected is None:
            stmt = stmt.where(Vehicle.status != new.value)
        else:
            stmt = stmt.where(Vehicle.status == expected.value)
        result = self.db.execute(
            stmt.values(
                status=new.value,
                version=Vehicle.version + 1,
                updated_at=datetime.now(timezone.utc),
                **extra,
            ).execution_options(synchronize_session=False)
        )
        cached = self.db.identity_map.get(self.db.identity_key(Vehicle, vehicle_id))
        if cached is not None:
            self.db.expire(cached)
        return result.rowcount == 1
