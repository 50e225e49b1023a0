"""
Collaborator lookups consumed by the order lifecycle.

Contracts, staff and the material catalog are owned by other subsystems. The
lifecycle only asks them narrow yes/no questions through these protocols; the
SQL-backed defaults read the shared tables directly.
"""
import uuid
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from ..models.models import Contract, Employee, Material


ACTIVE_CONTRACT_STATUSES = {"active"}


class ClientDirectory(Protocol):
    def get_contract(self, contract_id: uuid.UUID) -> Optional[Contract]: ...

    def contract_is_active(self, contract_id: uuid.UUID) -> bool: ...


class CrewDirectory(Protocol):
    def employee_exists(self, employee_id: uuid.UUID) -> bool: ...


class MaterialCatalog(Protocol):
    def material_exists(self, material_id: uuid.UUID) -> bool: ...


class SqlClientDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get_contract(self, contract_id: uuid.UUID) -> Optional[Contract]:
        return self.db.get(Contract, contract_id)

    def contract_is_active(self, contract_id: uuid.UUID) -> bool:
        contract = self.get_contract(contract_id)
        return bool(contract and contract.status in ACTIVE_CONTRACT_STATUSES)


class SqlCrewDirectory:
    def __init__(self, db: Session):
        self.db = db

    def employee_exists(self, employee_id: uuid.UUID) -> bool:
        employee = self.db.get(Employee, employee_id)
        return bool(employee and employee.is_active)


class SqlMaterialCatalog:
    def __init__(self, db: Session):
        self.db = db

    def material_exists(self, material_id: uuid.UUID) -> bool:
        # Deactivated materials can still be returned to stock but not reserved
        material = self.db.get(Material, material_id)
        return bool(material and material.is_active)
