"""
Crew roster: which employees work which service orders, and in what role.

An employee appears at most once per order; nothing limits how many orders an
employee is on. The availability and workload views feed the staffing reports.
"""
import uuid
from collections import defaultdict
from datetime import date
from typing import Dict, List

import structlog
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError, ValidationError
from ..models.models import CrewAssignment, Employee, OrderStatus, ServiceOrder, TERMINAL_STATUSES


logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = [s.value for s in OrderStatus if s not in TERMINAL_STATUSES]


class CrewRoster:
    def __init__(self, db: Session):
        self.db = db

    def assignments(self, order_id: uuid.UUID) -> List[CrewAssignment]:
        return (
            self.db.query(CrewAssignment)
            .filter(CrewAssignment.order_id == order_id)
            .order_by(CrewAssignment.assigned_at)
            .all()
        )

    def _find(self, order_id: uuid.UUID, employee_id: uuid.UUID):
        return (
            self.db.query(CrewAssignment)
            .filter(CrewAssignment.order_id == order_id, CrewAssignment.employee_id == employee_id)
            .first()
        )

    def assign(self, order_id: uuid.UUID, employee_id: uuid.UUID, role: str) -> CrewAssignment:
        if not role or not role.strip():
            raise ValidationError("role is required", details={"employee_id": str(employee_id)})
        if self._find(order_id, employee_id):
            raise ConflictError(
                "Employee is already assigned to this order",
                details={"order_id": str(order_id), "employee_id": str(employee_id)},
            )
        assignment = CrewAssignment(order_id=order_id, employee_id=employee_id, role=role.strip())
        self.db.add(assignment)
        # Flush so a second assign in the same unit of work sees this row
        self.db.flush()
        logger.info("crew_assigned", order_id=str(order_id), employee_id=str(employee_id), role=assignment.role)
        return assignment

    def unassign(self, order_id: uuid.UUID, employee_id: uuid.UUID) -> None:
        assignment = self._find(order_id, employee_id)
        if not assignment:
            raise NotFoundError(
                "Employee is not assigned to this order",
                details={"order_id": str(order_id), "employee_id": str(employee_id)},
            )
        self.db.delete(assignment)
        self.db.flush()
        logger.info("crew_unassigned", order_id=str(order_id), employee_id=str(employee_id))

    def availability(self, day: date) -> List[Dict]:
        """For every employee, active or not: busy or free on ``day``, and on which orders."""
        rows = (
            self.db.query(CrewAssignment, ServiceOrder)
            .join(ServiceOrder, ServiceOrder.id == CrewAssignment.order_id)
            .filter(ServiceOrder.scheduled_date == day, ServiceOrder.status.in_(ACTIVE_STATUSES))
            .all()
        )
        busy: Dict[uuid.UUID, List[Dict]] = defaultdict(list)
        for assignment, order in rows:
            busy[assignment.employee_id].append({
                "order_id": order.id,
                "number": order.number,
                "role": assignment.role,
                "start_time": order.start_time,
                "end_time": order.end_time,
                "status": order.status,
            })

        employees = self.db.query(Employee).order_by(Employee.name).all()
        return [
            {
                "employee_id": e.id,
                "name": e.name,
                "job_title": e.job_title,
                "is_active": e.is_active,
                "available": e.id not in busy,
                "orders": busy.get(e.id, []),
            }
            for e in employees
        ]

    def workload(self, start: date, end: date) -> List[Dict]:
        """Per-employee order counts by status for orders scheduled in [start, end]."""
        if end < start:
            raise ValidationError("end must not be before start", details={"start": str(start), "end": str(end)})
        rows = (
            self.db.query(CrewAssignment.employee_id, ServiceOrder.status)
            .join(ServiceOrder, ServiceOrder.id == CrewAssignment.order_id)
            .filter(ServiceOrder.scheduled_date >= start, ServiceOrder.scheduled_date <= end)
            .all()
        )
        counts: Dict[uuid.UUID, Dict[str, int]] = defaultdict(lambda: {s.value: 0 for s in OrderStatus})
        for employee_id, status in rows:
            counts[employee_id][status] += 1

        employees = self.db.query(Employee).filter(Employee.is_active == True).order_by(Employee.name).all()  # noqa: E712
        result = []
        for e in employees:
            by_status = dict(counts[e.id]) if e.id in counts else {s.value: 0 for s in OrderStatus}
            result.append({
                "employee_id": e.id,
                "name": e.name,
                "total": sum(by_status.values()),
                "by_status": by_status,
            })
        return result
