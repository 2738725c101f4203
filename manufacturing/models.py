# manufacturing/models.py - Status enums and value objects
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional


class MaterialCategory(str, Enum):
    RAW_MATERIAL = 'Raw Material'
    COMPONENT = 'Component'
    FINISHED_GOOD = 'Finished Good'
    CONSUMABLE = 'Consumable'
    TOOL = 'Tool'


class TxnType(str, Enum):
    """Stock ledger transaction types"""

    IN = 'IN'
    OUT = 'OUT'
    ADJUSTMENT = 'ADJUSTMENT'
    RESERVE = 'RESERVE'
    UNRESERVE = 'UNRESERVE'

    @property
    def reference_type(self) -> str:
        return {
            TxnType.IN: 'Purchase Order',
            TxnType.OUT: 'Manufacturing Order',
            TxnType.RESERVE: 'Manufacturing Order',
            TxnType.UNRESERVE: 'Manufacturing Order',
            TxnType.ADJUSTMENT: 'Adjustment',
        }[self]


class BOMStatus(str, Enum):
    DRAFT = 'DRAFT'
    ACTIVE = 'ACTIVE'
    ARCHIVED = 'ARCHIVED'


class MOStatus(str, Enum):
    """Manufacturing order lifecycle"""

    DRAFT = 'DRAFT'
    CONFIRMED = 'CONFIRMED'
    IN_PROGRESS = 'IN_PROGRESS'
    TO_CLOSE = 'TO_CLOSE'
    DONE = 'DONE'
    CANCELLED = 'CANCELLED'

    @property
    def is_terminal(self) -> bool:
        return self in (MOStatus.DONE, MOStatus.CANCELLED)


class WOStatus(str, Enum):
    """Work order lifecycle"""

    PENDING = 'PENDING'
    READY = 'READY'
    IN_PROGRESS = 'IN_PROGRESS'
    PAUSED = 'PAUSED'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'
    FAILED = 'FAILED'

    @property
    def is_terminal(self) -> bool:
        return self in (WOStatus.COMPLETED, WOStatus.CANCELLED, WOStatus.FAILED)


@dataclass
class StockCounters:
    """On-hand and reserved quantities of one material"""

    on_hand: float = 0.0
    reserved: float = 0.0

    @property
    def available(self) -> float:
        return max(0.0, round(self.on_hand - self.reserved, 6))


@dataclass
class StockTransaction:
    """One entry of the stock ledger audit trail"""

    material_id: int
    txn_type: TxnType
    quantity: float
    unit_cost: float
    reference: str
    performed_by: str
    timestamp: datetime = field(default_factory=datetime.now)
    reference_type: str = ''
    notes: Optional[str] = None
    id: Optional[int] = None
    on_hand_after: Optional[float] = None
    reserved_after: Optional[float] = None

    @property
    def available_after(self) -> Optional[float]:
        if self.on_hand_after is None or self.reserved_after is None:
            return None
        return max(0.0, round(self.on_hand_after - self.reserved_after, 6))

    def to_dict(self):
        data = asdict(self)
        data['txn_type'] = self.txn_type.value
        data['available_after'] = self.available_after
        return data
