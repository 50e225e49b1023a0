"""
Seed a local database with a client contract, a few employees, packing
materials and vehicles so service orders can be created right away.

Running it twice is safe: rows are matched by their natural keys (contract
number, employee name, material code, vehicle plate) and skipped if present.

    python scripts/seed_demo_data.py
"""
import sys
import os
import uuid

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from moveops.db import Base, SessionLocal, engine, unit_of_work
from moveops.models.models import Contract, Employee, Material, Vehicle
from moveops.services.stock_ledger import MaterialStockLedger


DEMO_CLIENT_ID = uuid.UUID("00000000-0000-4000-8000-000000000001")

ADDRESS_ORIGIN = {
    "street": "Rua das Flores",
    "number": "120",
    "complement": "Apto 42",
    "district": "Centro",
    "city": "Curitiba",
    "state": "PR",
    "postal_code": "80010-000",
}
ADDRESS_DESTINATION = {
    "street": "Avenida Sete de Setembro",
    "number": "3300",
    "complement": None,
    "district": "Batel",
    "city": "Curitiba",
    "state": "PR",
    "postal_code": "80240-000",
}

EMPLOYEES = [
    ("Ana Souza", "Team lead"),
    ("Bruno Lima", "Mover"),
    ("Carla Dias", "Driver"),
    ("Diego Alves", "Mover"),
]

MATERIALS = [
    # code, name, unit, quantity, minimum
    ("CX-001", "Cardboard box (medium)", "un", 200, 30),
    ("CX-002", "Cardboard box (large)", "un", 120, 20),
    ("FT-001", "Packing tape", "roll", 60, 10),
    ("PL-001", "Bubble wrap", "m", 500, 50),
    ("CB-001", "Moving blanket", "un", 40, 8),
]

VEHICLES = [
    ("ABC1D23", "Delivery 9.170", "Volkswagen", 2021, "9t"),
    ("XYZ9K88", "Sprinter 416", "Mercedes-Benz", 2022, "15m3"),
]


def seed_demo_data(db) -> dict:
    """Insert whatever demo rows are missing. Returns how many rows of each kind were created."""
    created = {"contracts": 0, "employees": 0, "materials": 0, "vehicles": 0}
    with unit_of_work(db):
        if not db.query(Contract).filter(Contract.number == "CT-DEMO-001").first():
            db.add(Contract(
                client_id=DEMO_CLIENT_ID,
                number="CT-DEMO-001",
                status="active",
                origin_address=ADDRESS_ORIGIN,
                destination_address=ADDRESS_DESTINATION,
            ))
            created["contracts"] += 1

        for name, job_title in EMPLOYEES:
            if not db.query(Employee).filter(Employee.name == name).first():
                db.add(Employee(name=name, job_title=job_title))
                created["employees"] += 1

        ledger = MaterialStockLedger(db)
        for code, name, unit, qty, minimum in MATERIALS:
            if db.query(Material).filter(Material.code == code).first():
                continue
            material = Material(code=code, name=name, unit=unit, available_quantity=qty, minimum_quantity=minimum)
            db.add(material)
            db.flush()
            ledger.receive_initial(material)
            created["materials"] += 1

        for plate, model, brand, year, capacity in VEHICLES:
            if not db.query(Vehicle).filter(Vehicle.plate == plate).first():
                db.add(Vehicle(plate=plate, model=model, brand=brand, year=year, capacity=capacity))
                created["vehicles"] += 1
    return created


if __name__ == "__main__":
    print("Seeding demo data...")
    if os.getenv("DATABASE_URL", "sqlite:///./var/dev.db").startswith("sqlite:///./"):
        os.makedirs("var", exist_ok=True)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        result = seed_demo_data(db)
        for kind, count in result.items():
            print(f"  {kind}: {count} created")
        print("Done.")
    finally:
        db.close()
