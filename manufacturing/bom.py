# manufacturing/bom.py - Bill of Materials Management
import pandas as pd
from sqlalchemy import insert, select, text, update
from utils.db import get_db_engine
import logging

from .common import log_activity, next_reference, now, round_qty, row_to_dict, unit_of_work, validate_quantity
from .errors import BOMNotEditable, InvalidBOM, InvalidTransition, NotFound, ValidationError
from .models import BOMStatus
from .schema import bills_of_materials, bom_components, bom_operations, materials

logger = logging.getLogger(__name__)


def resolve(bom, order_quantity):
    """Expand a BOM for an order quantity.

    Scales every component's per-unit quantity by ``order_quantity`` and
    returns the operations sorted by sequence. Components without an
    ``operation_sequence`` are consumed by the first operation. Pure: the BOM
    dict is not modified.
    """
    operations = list(bom.get('operations') or [])
    if not operations:
        raise InvalidBOM(f"BOM {bom.get('reference', bom.get('id'))} has no operations")

    sequences = [op['sequence'] for op in operations]
    duplicates = sorted({s for s in sequences if sequences.count(s) > 1})
    if duplicates:
        raise InvalidBOM(
            f"BOM {bom.get('reference', bom.get('id'))} has duplicate operation sequences {duplicates}",
            duplicates=duplicates
        )

    ok, quantity = validate_quantity(order_quantity, 0, allow_equal_min=False)
    if not ok:
        raise ValidationError(quantity)

    ordered = [dict(op) for op in sorted(operations, key=lambda op: op['sequence'])]
    first_sequence = ordered[0]['sequence']

    components = []
    for component in bom.get('components') or []:
        sequence = component.get('operation_sequence')
        if sequence is None:
            sequence = first_sequence
        elif sequence not in sequences:
            raise InvalidBOM(
                f"Component for material {component['material_id']} references "
                f"unknown operation {sequence}"
            )
        resolved = dict(component)
        resolved['operation_sequence'] = sequence
        resolved['quantity_required'] = round_qty(component['quantity'] * quantity)
        components.append(resolved)

    return {'components': components, 'operations': ordered}


def _validate_lines(components, operations):
    """Validate BOM component and operation input"""
    for component in components:
        if component.get('material_id') is None:
            raise ValidationError("Component material is required")
        ok, value = validate_quantity(component.get('quantity'), 0, allow_equal_min=False)
        if not ok:
            raise ValidationError(f"Component {component['material_id']}: {value}")
        ok, value = validate_quantity(component.get('waste_percentage', 0), 0, 100)
        if not ok:
            raise ValidationError(f"Component {component['material_id']} waste percentage: {value}")

    sequences = []
    for operation in operations:
        sequence = operation.get('sequence')
        if not isinstance(sequence, int) or sequence < 1:
            raise ValidationError(f"Operation sequence must be at least 1, got {sequence!r}")
        if not operation.get('name'):
            raise ValidationError(f"Operation {sequence} requires a name")
        if not operation.get('work_center_id'):
            raise ValidationError(f"Operation {sequence} requires a work center")
        ok, value = validate_quantity(operation.get('duration'), 1)
        if not ok:
            raise ValidationError(f"Operation {sequence} duration: {value}")
        sequences.append(sequence)

    if len(set(sequences)) != len(sequences):
        raise InvalidBOM("Operation sequence numbers must be unique")

    known = set(sequences)
    for component in components:
        sequence = component.get('operation_sequence')
        if sequence is not None and sequence not in known:
            raise InvalidBOM(f"Component for material {component['material_id']} "
                             f"references unknown operation {sequence}")


def _cycle_time(operations):
    return sum((op.get('duration') or 0) + (op.get('setup_time') or 0) + (op.get('teardown_time') or 0)
               for op in operations)


class BOMManager:
    """Manage Bill of Materials operations"""

    def __init__(self, engine=None):
        self.engine = engine or get_db_engine()

    def get_boms(self, status=None, search=None):
        """Get list of BOMs with filters"""
        query = """
        SELECT
            h.id,
            h.reference,
            h.finished_product,
            h.version,
            h.status,
            h.category,
            h.total_quantity,
            h.unit,
            h.estimated_cycle_time,
            h.created_by,
            h.created_at
        FROM bills_of_materials h
        WHERE 1 = 1
        """

        params = {}

        if status:
            query += " AND h.status = :status"
            params['status'] = status

        if search:
            query += " AND (h.reference LIKE :search OR h.finished_product LIKE :search)"
            params['search'] = f"%{search}%"

        query += " ORDER BY h.created_at DESC, h.id DESC"

        return pd.read_sql(text(query), self.engine, params=params)

    def get_active_boms(self):
        """Get active BOMs"""
        return self.get_boms(status=BOMStatus.ACTIVE.value)

    def get_bom(self, bom_id, conn=None):
        """Get BOM header with components, operations and cost totals"""
        with unit_of_work(self.engine, conn) as c:
            header = c.execute(
                select(bills_of_materials).where(bills_of_materials.c.id == bom_id)
            ).first()
            if header is None:
                raise NotFound(f"Bill of Materials {bom_id} not found", bom_id=bom_id)

            components = c.execute(
                select(bom_components, materials.c.name.label('material_name'),
                       materials.c.code.label('material_code'))
                .join(materials, materials.c.id == bom_components.c.material_id)
                .where(bom_components.c.bom_id == bom_id)
                .order_by(bom_components.c.line_no)
            ).all()
            operations = c.execute(
                select(bom_operations)
                .where(bom_operations.c.bom_id == bom_id)
                .order_by(bom_operations.c.sequence)
            ).all()

        bom = row_to_dict(header)
        bom['components'] = [row_to_dict(r) for r in components]
        bom['operations'] = [row_to_dict(r) for r in operations]
        bom['total_material_cost'] = round(
            sum(comp['quantity'] * comp['unit_cost'] for comp in bom['components']), 2
        )
        bom['total_operation_time'] = sum(op['duration'] + op['setup_time'] for op in bom['operations'])
        return bom

    def create_bom(self, bom_data, created_by):
        """Create new BOM with components and operations"""
        components = bom_data.get('components') or []
        operations = bom_data.get('operations') or []
        if not bom_data.get('finished_product'):
            raise ValidationError("Finished product is required")
        _validate_lines(components, operations)

        with unit_of_work(self.engine) as conn:
            bom_code = next_reference(conn, bills_of_materials, 'BOM')
            timestamp = now()

            result = conn.execute(insert(bills_of_materials).values(
                reference=bom_code,
                finished_product=bom_data['finished_product'].strip(),
                finished_product_material_id=bom_data.get('finished_product_material_id'),
                version=bom_data.get('version', '1.0'),
                status=BOMStatus.DRAFT.value,
                description=bom_data.get('description'),
                category=bom_data.get('category'),
                unit=bom_data.get('unit', 'pcs'),
                total_quantity=bom_data.get('total_quantity', 1),
                estimated_cycle_time=_cycle_time(operations),
                created_by=str(created_by),
                created_at=timestamp,
            ))
            bom_id = result.inserted_primary_key[0]

            self._insert_lines(conn, bom_id, components, operations)

        logger.info(f"Created BOM {bom_code}")
        return self.get_bom(bom_id)

    def _insert_lines(self, conn, bom_id, components, operations):
        component_query = text("""
        INSERT INTO bom_components (
            bom_id, line_no, material_id, quantity, unit, unit_cost,
            waste_percentage, operation_sequence, is_critical, notes
        ) VALUES (
            :bom_id, :line_no, :material_id, :quantity, :unit, :unit_cost,
            :waste_percentage, :operation_sequence, :is_critical, :notes
        )
        """)

        for line_no, component in enumerate(components, start=1):
            material = conn.execute(
                select(materials.c.id, materials.c.unit, materials.c.average_cost)
                .where(materials.c.id == component['material_id'])
            ).first()
            if material is None:
                raise NotFound(f"Material {component['material_id']} not found",
                               material_id=component['material_id'])

            conn.execute(component_query, {
                'bom_id': bom_id,
                'line_no': line_no,
                'material_id': component['material_id'],
                'quantity': round_qty(component['quantity']),
                'unit': component.get('unit', material.unit),
                'unit_cost': component.get('unit_cost', material.average_cost),
                'waste_percentage': component.get('waste_percentage', 0),
                'operation_sequence': component.get('operation_sequence'),
                'is_critical': bool(component.get('is_critical', False)),
                'notes': component.get('notes'),
            })

        operation_query = text("""
        INSERT INTO bom_operations (
            bom_id, sequence, name, work_center_id, duration, setup_time,
            teardown_time, description, skill_required, quality_check_required
        ) VALUES (
            :bom_id, :sequence, :name, :work_center_id, :duration, :setup_time,
            :teardown_time, :description, :skill_required, :quality_check_required
        )
        """)

        for operation in operations:
            conn.execute(operation_query, {
                'bom_id': bom_id,
                'sequence': operation['sequence'],
                'name': operation['name'],
                'work_center_id': str(operation['work_center_id']),
                'duration': operation['duration'],
                'setup_time': operation.get('setup_time', 0),
                'teardown_time': operation.get('teardown_time', 0),
                'description': operation.get('description'),
                'skill_required': operation.get('skill_required'),
                'quality_check_required': bool(operation.get('quality_check_required', False)),
            })

    def _delete_lines(self, conn, bom_id):
        params = {'bom_id': bom_id}
        conn.execute(text("DELETE FROM bom_components WHERE bom_id = :bom_id"), params)
        conn.execute(text("DELETE FROM bom_operations WHERE bom_id = :bom_id"), params)

    def update_bom(self, bom_id, bom_data, updated_by):
        """Update a draft BOM; active and archived BOMs are immutable"""
        with unit_of_work(self.engine) as conn:
            bom = self.get_bom(bom_id, conn=conn)
            if bom['status'] != BOMStatus.DRAFT.value:
                raise BOMNotEditable(
                    f"Cannot modify {bom['status'].lower()} BOM {bom['reference']}. "
                    "Create a new version instead.",
                    bom_id=bom_id
                )

            components = bom_data.get('components', bom['components'])
            operations = bom_data.get('operations', bom['operations'])
            _validate_lines(components, operations)

            values = {key: bom_data[key] for key in
                      ('finished_product', 'finished_product_material_id', 'version',
                       'description', 'category', 'unit', 'total_quantity')
                      if key in bom_data}
            values.update(
                estimated_cycle_time=_cycle_time(operations),
                updated_by=str(updated_by),
                updated_at=now(),
            )
            conn.execute(update(bills_of_materials)
                         .where(bills_of_materials.c.id == bom_id).values(**values))

            if 'components' in bom_data or 'operations' in bom_data:
                self._delete_lines(conn, bom_id)
                self._insert_lines(conn, bom_id, components, operations)

        logger.info(f"Updated BOM {bom['reference']}")
        return self.get_bom(bom_id)

    def approve_bom(self, bom_id, approved_by):
        """Activate a draft BOM"""
        return self._set_status(bom_id, BOMStatus.DRAFT, BOMStatus.ACTIVE, approved_by,
                                approved_by=str(approved_by), approved_at=now())

    def archive_bom(self, bom_id, updated_by):
        """Archive an active BOM"""
        return self._set_status(bom_id, BOMStatus.ACTIVE, BOMStatus.ARCHIVED, updated_by)

    def _set_status(self, bom_id, expected, new_status, actor, **extra):
        with unit_of_work(self.engine) as conn:
            bom = self.get_bom(bom_id, conn=conn)
            if bom['status'] != expected.value:
                raise InvalidTransition(
                    f"Only {expected.value.lower()} BOMs can become {new_status.value.lower()}",
                    bom_id=bom_id, status=bom['status']
                )
            if new_status == BOMStatus.ACTIVE and not bom['operations']:
                raise InvalidBOM(f"BOM {bom['reference']} has no operations")

            conn.execute(update(bills_of_materials)
                         .where(bills_of_materials.c.id == bom_id)
                         .values(status=new_status.value, updated_by=str(actor),
                                 updated_at=now(), **extra))

        log_activity(f"BOM {new_status.value.title()}", bom['reference'], actor)
        return self.get_bom(bom_id)

    def delete_bom(self, bom_id, deleted_by):
        """Delete a BOM that is not active"""
        with unit_of_work(self.engine) as conn:
            bom = self.get_bom(bom_id, conn=conn)
            if bom['status'] == BOMStatus.ACTIVE.value:
                raise InvalidTransition("Cannot delete active BOM", bom_id=bom_id)

            self._delete_lines(conn, bom_id)
            conn.execute(text("DELETE FROM bills_of_materials WHERE id = :bom_id"), {'bom_id': bom_id})

        log_activity('BOM Deleted', bom['reference'], deleted_by)

    def get_where_used(self, material_id):
        """Find BOMs that use a material as component"""
        query = """
        SELECT
            h.id as bom_id,
            h.reference,
            h.finished_product,
            h.status as bom_status,
            d.quantity,
            d.unit,
            d.waste_percentage
        FROM bom_components d
        JOIN bills_of_materials h ON d.bom_id = h.id
        WHERE d.material_id = :material_id
        ORDER BY h.status, h.finished_product
        """

        return pd.read_sql(text(query), self.engine, params={'material_id': material_id})
