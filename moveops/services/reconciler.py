"""
Delta-based reconciliation of an order's reserved resources.

Updating an order's material lines never releases and re-reserves everything.
Instead the old and new line lists are diffed per material into signed deltas,
the whole batch is validated against current stock, and only then applied.
Validation and application are separate steps so an insufficient-stock delta
aborts the update before any ledger mutation happens.
"""
import uuid
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from ..errors import ConflictError
from .crew_roster import CrewRoster
from .stock_ledger import MaterialStockLedger


logger = structlog.get_logger(__name__)

# (material_id, quantity) pairs; material ids are unique within one list
MaterialLines = Iterable[Tuple[uuid.UUID, int]]
# employee_id -> role
CrewSet = Mapping[uuid.UUID, str]


def diff_material_lines(old_lines: MaterialLines, new_lines: MaterialLines) -> Dict[uuid.UUID, int]:
    old = dict(old_lines)
    new = dict(new_lines)
    deltas: Dict[uuid.UUID, int] = {}
    for material_id in old.keys() | new.keys():
        delta = new.get(material_id, 0) - old.get(material_id, 0)
        if delta != 0:
            deltas[material_id] = delta
    return deltas


def diff_crew(old: CrewSet, new: CrewSet) -> Tuple[List[uuid.UUID], List[Tuple[uuid.UUID, str]]]:
    """
    Explicit roster operations turning ``old`` into ``new``.

    Returns (employees to unassign, (employee, role) pairs to assign). A role
    change is an unassign followed by an assign.
    """
    to_unassign = [e for e in old if e not in new or old[e] != new[e]]
    to_assign = [(e, role) for e, role in new.items() if e not in old or old[e] != role]
    return sorted(to_unassign, key=str), sorted(to_assign, key=lambda pair: str(pair[0]))


class ResourceReconciler:
    def __init__(self, ledger: MaterialStockLedger, roster: Optional[CrewRoster] = None):
        self.ledger = ledger
        self.roster = roster

    diff_material_lines = staticmethod(diff_material_lines)
    diff_crew = staticmethod(diff_crew)

    def validate(self, deltas: Mapping[uuid.UUID, int]) -> None:
        """Check every positive delta against current stock; raise once listing all shortfalls."""
        shortfalls = []
        for material_id, delta in _ordered(deltas):
            if delta <= 0:
                # Returns only need the material to exist
                self.ledger.get_material(material_id)
                continue
            material = self.ledger.get_material(material_id)
            if material.available_quantity < delta:
                shortfalls.append({
                    "material_id": str(material_id),
                    "code": material.code,
                    "requested": delta,
                    "available": material.available_quantity,
                })
        if shortfalls:
            codes = ", ".join(s["code"] for s in shortfalls)
            raise ConflictError(f"insufficient stock for {codes}", details={"shortfalls": shortfalls})

    def apply(self, deltas: Mapping[uuid.UUID, int], order_id: Optional[uuid.UUID] = None, note: Optional[str] = None) -> None:
        for material_id, delta in _ordered(deltas):
            self.ledger.apply_delta(material_id, delta, order_id, note)
        if deltas:
            logger.info("materials_reconciled", order_id=str(order_id) if order_id else None, deltas={str(k): v for k, v in deltas.items()})

    def reconcile_materials(
        self,
        old_lines: MaterialLines,
        new_lines: MaterialLines,
        order_id: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Dict[uuid.UUID, int]:
        deltas = diff_material_lines(old_lines, new_lines)
        self.validate(deltas)
        self.apply(deltas, order_id, note)
        return deltas

    def reconcile_crew(self, order_id: uuid.UUID, old: CrewSet, new: CrewSet) -> None:
        if self.roster is None:
            raise RuntimeError("ResourceReconciler was built without a CrewRoster")
        to_unassign, to_assign = diff_crew(old, new)
        for employee_id in to_unassign:
            self.roster.unassign(order_id, employee_id)
        for employee_id, role in to_assign:
            self.roster.assign(order_id, employee_id, role)


def _ordered(deltas: Mapping[uuid.UUID, int]) -> List[Tuple[uuid.UUID, int]]:
    # Stable order keeps row-lock acquisition consistent across concurrent updates
    return sorted(deltas.items(), key=lambda item: str(item[0]))
