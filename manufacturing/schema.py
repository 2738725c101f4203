# manufacturing/schema.py - Table definitions
from sqlalchemy import (
    MetaData, Table, Column, Integer, String, Float, Boolean, DateTime, Text,
    ForeignKey, Index, UniqueConstraint
)
import logging

logger = logging.getLogger(__name__)

metadata = MetaData()

materials = Table(
    'materials', metadata,
    Column('id', Integer, primary_key=True),
    Column('code', String(32), unique=True, nullable=False),
    Column('name', String(255), nullable=False),
    Column('description', Text),
    Column('category', String(32), nullable=False),
    Column('unit', String(16), nullable=False),
    Column('status', String(16), nullable=False, default='Active'),
    Column('on_hand', Float, nullable=False, default=0),
    Column('reserved', Float, nullable=False, default=0),
    Column('available', Float, nullable=False, default=0),
    Column('reorder_level', Float, nullable=False, default=0),
    Column('max_stock', Float, nullable=False, default=1000),
    Column('average_cost', Float, nullable=False, default=0),
    Column('last_cost', Float, nullable=False, default=0),
    Column('version', Integer, nullable=False, default=1),
    Column('created_by', String(64), nullable=False),
    Column('updated_by', String(64)),
    Column('created_at', DateTime, nullable=False),
    Column('updated_at', DateTime),
)
Index('ix_materials_name_category', materials.c.name, materials.c.category)

stock_ledger_entries = Table(
    'stock_ledger_entries', metadata,
    Column('id', Integer, primary_key=True),
    Column('material_id', Integer, ForeignKey('materials.id'), unique=True, nullable=False),
    Column('material_code', String(32), nullable=False),
    Column('material_name', String(255), nullable=False),
    Column('on_hand', Float, nullable=False, default=0),
    Column('reserved', Float, nullable=False, default=0),
    Column('available', Float, nullable=False, default=0),
    Column('last_movement', DateTime),
    Column('is_active', Boolean, nullable=False, default=True),
    Column('created_by', String(64), nullable=False),
    Column('created_at', DateTime, nullable=False),
)

stock_transactions = Table(
    'stock_transactions', metadata,
    Column('id', Integer, primary_key=True),
    Column('ledger_entry_id', Integer, ForeignKey('stock_ledger_entries.id'), nullable=False),
    Column('material_id', Integer, ForeignKey('materials.id'), nullable=False),
    Column('txn_type', String(16), nullable=False),
    Column('quantity', Float, nullable=False),
    Column('unit_cost', Float, nullable=False, default=0),
    Column('reference', String(64), nullable=False),
    Column('reference_type', String(32), nullable=False),
    Column('notes', String(500)),
    Column('on_hand_after', Float, nullable=False),
    Column('reserved_after', Float, nullable=False),
    Column('performed_by', String(64), nullable=False),
    Column('created_at', DateTime, nullable=False),
)
Index('ix_stock_txn_material_created', stock_transactions.c.material_id, stock_transactions.c.created_at)

bills_of_materials = Table(
    'bills_of_materials', metadata,
    Column('id', Integer, primary_key=True),
    Column('reference', String(32), unique=True, nullable=False),
    Column('finished_product', String(255), nullable=False),
    Column('finished_product_material_id', Integer, ForeignKey('materials.id')),
    Column('version', String(16), nullable=False, default='1.0'),
    Column('status', String(16), nullable=False),
    Column('description', Text),
    Column('category', String(64)),
    Column('unit', String(16), nullable=False, default='pcs'),
    Column('total_quantity', Float, nullable=False, default=1),
    Column('estimated_cycle_time', Float, nullable=False, default=0),
    Column('created_by', String(64), nullable=False),
    Column('updated_by', String(64)),
    Column('approved_by', String(64)),
    Column('approved_at', DateTime),
    Column('created_at', DateTime, nullable=False),
    Column('updated_at', DateTime),
)

bom_components = Table(
    'bom_components', metadata,
    Column('id', Integer, primary_key=True),
    Column('bom_id', Integer, ForeignKey('bills_of_materials.id'), nullable=False, index=True),
    Column('line_no', Integer, nullable=False),
    Column('material_id', Integer, ForeignKey('materials.id'), nullable=False),
    Column('quantity', Float, nullable=False),
    Column('unit', String(16), nullable=False),
    Column('unit_cost', Float, nullable=False, default=0),
    Column('waste_percentage', Float, nullable=False, default=0),
    Column('operation_sequence', Integer),
    Column('is_critical', Boolean, nullable=False, default=False),
    Column('notes', String(200)),
)

bom_operations = Table(
    'bom_operations', metadata,
    Column('id', Integer, primary_key=True),
    Column('bom_id', Integer, ForeignKey('bills_of_materials.id'), nullable=False, index=True),
    Column('sequence', Integer, nullable=False),
    Column('name', String(128), nullable=False),
    Column('work_center_id', String(64), nullable=False),
    Column('duration', Float, nullable=False),
    Column('setup_time', Float, nullable=False, default=0),
    Column('teardown_time', Float, nullable=False, default=0),
    Column('description', String(500)),
    Column('skill_required', String(64)),
    Column('quality_check_required', Boolean, nullable=False, default=False),
    UniqueConstraint('bom_id', 'sequence', name='uq_bom_operation_sequence'),
)

manufacturing_orders = Table(
    'manufacturing_orders', metadata,
    Column('id', Integer, primary_key=True),
    Column('reference', String(32), unique=True, nullable=False),
    Column('finished_product', String(255), nullable=False),
    Column('finished_product_material_id', Integer, ForeignKey('materials.id')),
    Column('bom_id', Integer, ForeignKey('bills_of_materials.id')),
    Column('quantity', Float, nullable=False),
    Column('quantity_produced', Float, nullable=False, default=0),
    Column('quantity_scrap', Float, nullable=False, default=0),
    Column('scheduled_start_date', DateTime),
    Column('due_date', DateTime),
    Column('assignee_id', String(64)),
    Column('status', String(16), nullable=False, index=True),
    Column('priority', String(16), nullable=False, default='Medium'),
    Column('progress', Integer, nullable=False, default=0),
    Column('actual_start_date', DateTime),
    Column('actual_end_date', DateTime),
    Column('notes', String(1000)),
    Column('cancellation_reason', String(500)),
    Column('version', Integer, nullable=False, default=1),
    Column('created_by', String(64), nullable=False),
    Column('updated_by', String(64)),
    Column('created_at', DateTime, nullable=False),
    Column('updated_at', DateTime),
)

mo_components = Table(
    'mo_components', metadata,
    Column('id', Integer, primary_key=True),
    Column('manufacturing_order_id', Integer, ForeignKey('manufacturing_orders.id'),
           nullable=False, index=True),
    Column('material_id', Integer, ForeignKey('materials.id'), nullable=False),
    Column('name', String(255), nullable=False),
    Column('operation_sequence', Integer),
    Column('quantity_required', Float, nullable=False),
    Column('quantity_reserved', Float, nullable=False, default=0),
    Column('quantity_consumed', Float, nullable=False, default=0),
    Column('quantity_scrapped', Float, nullable=False, default=0),
    Column('unit', String(16), nullable=False),
    Column('unit_cost', Float, nullable=False, default=0),
    Column('waste_percentage', Float, nullable=False, default=0),
    Column('is_reserved', Boolean, nullable=False, default=False),
    Column('reserved_at', DateTime),
)

work_orders = Table(
    'work_orders', metadata,
    Column('id', Integer, primary_key=True),
    Column('reference', String(32), unique=True, nullable=False),
    Column('manufacturing_order_id', Integer, ForeignKey('manufacturing_orders.id'), nullable=False),
    Column('operation_name', String(128), nullable=False),
    Column('work_center_id', String(64), nullable=False),
    Column('sequence', Integer, nullable=False),
    Column('expected_duration', Float, nullable=False),
    Column('setup_time', Float, nullable=False, default=0),
    Column('real_duration', Float, nullable=False, default=0),
    Column('status', String(16), nullable=False, index=True),
    Column('assignee_id', String(64)),
    Column('description', String(500)),
    Column('start_time', DateTime),
    Column('end_time', DateTime),
    Column('paused_at', DateTime),
    Column('paused_time', Float, nullable=False, default=0),
    Column('quality_check_required', Boolean, nullable=False, default=False),
    Column('quality_passed', Boolean),
    Column('quality_checked_by', String(64)),
    Column('quality_checked_at', DateTime),
    Column('quality_notes', String(500)),
    Column('failure_reason', String(500)),
    Column('version', Integer, nullable=False, default=1),
    Column('created_by', String(64), nullable=False),
    Column('updated_by', String(64)),
    Column('created_at', DateTime, nullable=False),
    Column('updated_at', DateTime),
    UniqueConstraint('manufacturing_order_id', 'sequence', name='uq_work_order_sequence'),
)

work_order_materials = Table(
    'work_order_materials', metadata,
    Column('id', Integer, primary_key=True),
    Column('work_order_id', Integer, ForeignKey('work_orders.id'), nullable=False, index=True),
    Column('mo_component_id', Integer, ForeignKey('mo_components.id'), nullable=False),
    Column('material_id', Integer, ForeignKey('materials.id'), nullable=False),
    Column('name', String(255), nullable=False),
    Column('quantity_required', Float, nullable=False),
    Column('quantity_consumed', Float),
    Column('quantity_scrapped', Float, nullable=False, default=0),
    Column('unit', String(16), nullable=False),
)

work_order_comments = Table(
    'work_order_comments', metadata,
    Column('id', Integer, primary_key=True),
    Column('work_order_id', Integer, ForeignKey('work_orders.id'), nullable=False, index=True),
    Column('text', String(500), nullable=False),
    Column('author', String(64), nullable=False),
    Column('created_at', DateTime, nullable=False),
)


def create_schema(engine):
    """Create all engine tables if they do not exist"""
    metadata.create_all(engine)
    logger.info(f"Schema ready ({len(metadata.tables)} tables)")


def drop_schema(engine):
    """Drop all engine tables"""
    metadata.drop_all(engine)
