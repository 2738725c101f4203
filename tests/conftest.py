"""
Shared fixtures for manufacturing engine tests.

Every test gets a fresh in-memory SQLite database with the engine schema,
three stocked component materials, a finished good material and an active
three-operation BOM producing chairs.
"""
import pytest

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from manufacturing import (
    BOMManager, InventoryManager, MaterialLedger, ProductionManager, create_schema
)


SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def engine():
    """Create a fresh database for each test"""
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_schema(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def ledger(engine):
    return MaterialLedger(engine)


@pytest.fixture
def boms(engine):
    return BOMManager(engine)


@pytest.fixture
def production(engine):
    return ProductionManager(engine)


@pytest.fixture
def inventory(engine):
    return InventoryManager(engine)


# ============================================================================
# Material & BOM Fixtures
# ============================================================================

@pytest.fixture
def steel(ledger):
    """Raw material with 100 kg on hand at 5.00"""
    return ledger.create_material({
        'name': 'Steel Tube',
        'category': 'Raw Material',
        'unit': 'kg',
        'opening_stock': 100,
        'unit_cost': 5.0,
        'reorder_level': 10,
    }, actor='u-1')


@pytest.fixture
def paint(ledger):
    """Consumable with 50 l on hand at 2.00"""
    return ledger.create_material({
        'name': 'Paint',
        'category': 'Consumable',
        'unit': 'l',
        'opening_stock': 50,
        'unit_cost': 2.0,
        'reorder_level': 5,
    }, actor='u-1')


@pytest.fixture
def screws(ledger):
    """Component with 100 pcs on hand at 0.10"""
    return ledger.create_material({
        'name': 'Screw M4',
        'category': 'Component',
        'unit': 'pcs',
        'opening_stock': 100,
        'unit_cost': 0.1,
    }, actor='u-1')


@pytest.fixture
def chair(ledger):
    """Finished good with no stock"""
    return ledger.create_material({
        'name': 'Chair',
        'category': 'Finished Good',
        'unit': 'pcs',
    }, actor='u-1')


def chair_bom_data(steel, paint, screws, chair=None):
    return {
        'finished_product': 'Chair',
        'finished_product_material_id': chair['id'] if chair else None,
        'unit': 'pcs',
        'components': [
            {'material_id': steel['id'], 'quantity': 2, 'waste_percentage': 10, 'operation_sequence': 10},
            {'material_id': paint['id'], 'quantity': 0.5, 'operation_sequence': 20},
            {'material_id': screws['id'], 'quantity': 4},
        ],
        'operations': [
            {'sequence': 30, 'name': 'Assembly', 'work_center_id': 'WC-ASM', 'duration': 15},
            {'sequence': 10, 'name': 'Cutting', 'work_center_id': 'WC-CUT', 'duration': 30,
             'setup_time': 5},
            {'sequence': 20, 'name': 'Painting', 'work_center_id': 'WC-PNT', 'duration': 20,
             'teardown_time': 10},
        ],
    }


@pytest.fixture
def bom_data(steel, paint, screws, chair):
    return chair_bom_data(steel, paint, screws, chair)


@pytest.fixture
def draft_bom(boms, bom_data):
    return boms.create_bom(bom_data, created_by='u-1')


@pytest.fixture
def active_bom(boms, draft_bom):
    return boms.approve_bom(draft_bom['id'], approved_by='u-2')


@pytest.fixture
def order(production, active_bom):
    """Draft order for 10 chairs"""
    return production.create_order_from_bom(active_bom['id'], {'quantity': 10}, created_by='u-1')


@pytest.fixture
def released_order(production, order):
    """Order with generated work orders and reserved materials"""
    production.generate_work_orders(order['id'], actor='u-1')
    production.reserve_materials(order['id'], actor='u-1')
    return production.get_order(order['id'])


@pytest.fixture
def run_work_orders(production):
    """Start and complete every work order of an order in sequence"""
    def run(order_id, actor='op-1'):
        results = []
        while True:
            ready = [wo for wo in production.sequencer.get_work_orders_for_order(order_id)
                     if wo['status'] == 'READY']
            if not ready:
                return results
            production.start_work_order(ready[0]['id'], actor)
            results.append(production.complete_work_order(ready[0]['id'], actor))
    return run
