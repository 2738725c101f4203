# manufacturing/inventory.py - Inventory queries
import pandas as pd
from sqlalchemy import DateTime, bindparam, text
from utils.db import get_db_engine
import logging

from .common import to_datetime
from .errors import NotFound
from .ledger import stock_status

logger = logging.getLogger(__name__)


class InventoryManager:
    """Read-side inventory queries over materials and the stock ledger"""

    def __init__(self, engine=None):
        self.engine = engine or get_db_engine()

    def get_materials(self, category=None, search=None):
        """Get materials with stock status and value"""
        query = """
        SELECT
            m.id,
            m.code,
            m.name,
            m.category,
            m.unit,
            m.status,
            m.on_hand,
            m.reserved,
            m.available,
            m.reorder_level,
            m.max_stock,
            m.average_cost
        FROM materials m
        WHERE 1 = 1
        """

        params = {}

        if category:
            query += " AND m.category = :category"
            params['category'] = category

        if search:
            query += " AND (m.code LIKE :search OR m.name LIKE :search)"
            params['search'] = f"%{search}%"

        query += " ORDER BY m.code"

        df = pd.read_sql(text(query), self.engine, params=params)
        if df.empty:
            return df

        df['stock_status'] = df.apply(stock_status, axis=1)
        df['total_value'] = (df['on_hand'] * df['average_cost']).round(2)
        return df

    def get_stock_balance(self, material_id):
        """Get current stock counters for a material"""
        query = """
        SELECT
            on_hand,
            reserved,
            on_hand - reserved as available
        FROM materials
        WHERE id = :material_id
        """

        result = pd.read_sql(text(query), self.engine, params={'material_id': material_id})
        if result.empty:
            raise NotFound(f"Material {material_id} not found", material_id=material_id)

        balance = {key: float(value) for key, value in result.iloc[0].to_dict().items()}
        balance['available'] = max(0.0, round(balance['available'], 6))
        return balance

    def get_stock_ledger(self, material_id=None, txn_type=None, from_date=None, to_date=None):
        """Get stock transaction history"""
        query = """
        SELECT
            t.id,
            t.created_at,
            m.code as material_code,
            m.name as material_name,
            t.txn_type,
            t.quantity,
            t.unit_cost,
            t.quantity * t.unit_cost as value,
            t.reference,
            t.reference_type,
            t.notes,
            t.on_hand_after,
            t.reserved_after,
            t.performed_by
        FROM stock_transactions t
        JOIN materials m ON t.material_id = m.id
        WHERE 1 = 1
        """

        params = {}
        binds = []

        if material_id:
            query += " AND t.material_id = :material_id"
            params['material_id'] = material_id

        if txn_type:
            query += " AND t.txn_type = :txn_type"
            params['txn_type'] = getattr(txn_type, 'value', txn_type)

        if from_date:
            query += " AND t.created_at >= :from_date"
            params['from_date'] = to_datetime(from_date)
            binds.append(bindparam('from_date', type_=DateTime))

        if to_date:
            query += " AND t.created_at <= :to_date"
            params['to_date'] = to_datetime(to_date)
            binds.append(bindparam('to_date', type_=DateTime))

        query += " ORDER BY t.id"

        return pd.read_sql(text(query).bindparams(*binds), self.engine, params=params)

    def get_low_stock_items(self):
        """Get active materials at or below their reorder level"""
        query = """
        SELECT
            m.id,
            m.code,
            m.name,
            m.category,
            m.on_hand,
            m.reserved,
            m.reorder_level,
            (m.reorder_level - m.on_hand) as shortage,
            m.unit
        FROM materials m
        WHERE m.status = 'Active'
        AND m.on_hand <= m.reorder_level
        ORDER BY shortage DESC, m.code
        """

        return pd.read_sql(text(query), self.engine)

    def get_stock_stats(self):
        """Get inventory statistics"""
        query = """
        SELECT
            COUNT(*) as total_items,
            SUM(CASE WHEN on_hand > 0 AND on_hand <= reorder_level THEN 1 ELSE 0 END) as low_stock_items,
            SUM(CASE WHEN on_hand <= 0 THEN 1 ELSE 0 END) as out_of_stock_items,
            COALESCE(SUM(on_hand * average_cost), 0) as total_value,
            COALESCE(SUM(reserved), 0) as total_reserved
        FROM materials
        WHERE status = 'Active'
        """

        result = pd.read_sql(text(query), self.engine)
        stats = result.iloc[0].to_dict() if not result.empty else {}

        for key in ('total_items', 'low_stock_items', 'out_of_stock_items', 'total_value', 'total_reserved'):
            if key not in stats or pd.isna(stats[key]):
                stats[key] = 0

        stats['total_value'] = round(float(stats['total_value']), 2)
        return stats

    def check_stock_availability(self, order_id):
        """Check whether stock covers each component of an order"""
        query = """
        SELECT
            c.material_id,
            c.name as material_name,
            c.quantity_required * (1 + c.waste_percentage / 100.0) as required,
            c.quantity_reserved as reserved,
            c.quantity_consumed as consumed,
            m.on_hand - m.reserved as available,
            c.unit
        FROM mo_components c
        JOIN materials m ON c.material_id = m.id
        WHERE c.manufacturing_order_id = :order_id
        ORDER BY c.id
        """

        df = pd.read_sql(text(query), self.engine, params={'order_id': order_id})
        if df.empty:
            return df

        df['required'] = df['required'].round(6)
        df['available'] = df['available'].clip(lower=0).round(6)
        # Consumed components owe nothing further
        df['outstanding'] = (df['required'] - df['reserved']).clip(lower=0).round(6)
        df.loc[df['consumed'] > 0, 'outstanding'] = 0.0
        df['sufficient'] = df['available'] >= df['outstanding']
        return df
