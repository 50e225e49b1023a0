from moveops.models.models import Material
from moveops.services.stock_ledger import MaterialStockLedger
from scripts.seed_demo_data import MATERIALS, seed_demo_data


def test_seed_is_idempotent(session):
    first = seed_demo_data(session)
    second = seed_demo_data(session)

    assert first == {"contracts": 1, "employees": 4, "materials": len(MATERIALS), "vehicles": 2}
    assert second == {"contracts": 0, "employees": 0, "materials": 0, "vehicles": 0}


def test_seeded_stock_is_backed_by_movements(session):
    seed_demo_data(session)

    ledger = MaterialStockLedger(session)
    for material in session.query(Material).all():
        assert ledger.reconstruct_available(material.id) == material.available_quantity
