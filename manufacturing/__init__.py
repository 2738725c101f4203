# manufacturing/__init__.py
"""Manufacturing Engine - Execution and Inventory Consistency Components"""

from .bom import BOMManager, resolve
from .ledger import MaterialLedger
from .work_orders import WorkOrderSequencer
from .reservations import ReservationEngine
from .production import ProductionManager
from .inventory import InventoryManager
from .schema import create_schema, drop_schema
from .models import MaterialCategory, TxnType, BOMStatus, MOStatus, WOStatus, StockTransaction
from .errors import EngineError

__all__ = [
    'BOMManager',
    'resolve',
    'MaterialLedger',
    'WorkOrderSequencer',
    'ReservationEngine',
    'ProductionManager',
    'InventoryManager',
    'create_schema',
    'drop_schema',
    'MaterialCategory',
    'TxnType',
    'BOMStatus',
    'MOStatus',
    'WOStatus',
    'StockTransaction',
    'EngineError'
]

__version__ = '1.0.0'
