# manufacturing/ledger.py - Material stock ledger
"""Material Ledger.

The only code path allowed to touch material stock counters. Every stock
event updates the ``materials`` row (optimistic version check), mirrors the
counters onto the material's ``stock_ledger_entries`` row and appends one
``stock_transactions`` row, all inside a single database transaction.
"""
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from utils.db import get_db_engine
import logging

from .common import (
    log_activity, next_reference, now, retry_on_conflict, round_qty, row_to_dict,
    unit_of_work, validate_quantity
)
from .errors import (
    ConcurrentModification, InsufficientStock, MaterialInUse, NotFound, StorageError,
    ValidationError
)
from .models import MaterialCategory, StockCounters, StockTransaction, TxnType
from .schema import (
    bom_components, materials, mo_components, stock_ledger_entries, stock_transactions
)

logger = logging.getLogger(__name__)

UNITS = ('pcs', 'kg', 'm', 'l', 'm2', 'm3', 'box', 'pack', 'set')


def stock_status(material):
    """Derive the stock status label of a material record"""
    on_hand = material['on_hand']
    if on_hand <= 0:
        return 'Out of Stock'
    if on_hand <= material['reorder_level']:
        return 'Low Stock'
    if on_hand >= material['max_stock']:
        return 'Overstock'
    return 'In Stock'


def _decorate(material):
    material['available'] = StockCounters(material['on_hand'], material['reserved']).available
    material['stock_status'] = stock_status(material)
    material['total_value'] = round(material['on_hand'] * material['average_cost'], 2)
    return material


class MaterialLedger:
    """Own per-material stock counters and the stock ledger audit trail"""

    def __init__(self, engine=None):
        self.engine = engine or get_db_engine()

    # ------------------------------------------------------------------
    # Material records
    # ------------------------------------------------------------------
    def create_material(self, data, actor, conn=None):
        """Create a material, booking any opening stock as an IN transaction"""
        category = data.get('category')
        if category not in [c.value for c in MaterialCategory]:
            raise ValidationError(f"Invalid material category: {category}")
        if data.get('unit') not in UNITS:
            raise ValidationError(f"Invalid unit: {data.get('unit')}")
        if not data.get('name'):
            raise ValidationError("Material name is required")

        opening_stock = round_qty(data.get('opening_stock', 0))
        if opening_stock < 0:
            raise ValidationError("Opening stock cannot be negative")

        with unit_of_work(self.engine, conn) as c:
            code = (data.get('code') or '').strip().upper()
            if not code:
                code = next_reference(c, materials, 'MAT', column=materials.c.code)

            timestamp = now()
            result = c.execute(insert(materials).values(
                code=code,
                name=data['name'].strip(),
                description=data.get('description'),
                category=category,
                unit=data['unit'],
                status=data.get('status', 'Active'),
                on_hand=0,
                reserved=0,
                available=0,
                reorder_level=data.get('reorder_level', 0),
                max_stock=data.get('max_stock', 1000),
                average_cost=data.get('average_cost', 0),
                last_cost=data.get('unit_cost', data.get('average_cost', 0)),
                version=1,
                created_by=str(actor),
                created_at=timestamp,
            ))
            material_id = result.inserted_primary_key[0]
            self._ensure_ledger_entry(c, material_id, actor)

            if opening_stock > 0:
                self._apply_stock_event(
                    c, material_id, TxnType.IN, opening_stock,
                    reference=f"OPEN-{code}", actor=actor,
                    unit_cost=data.get('unit_cost'), notes='Opening stock'
                )

            material = self.get_material(material_id, conn=c)

        logger.info(f"Created material {code}")
        return material

    def get_material(self, material_id, conn=None):
        """Get a material with derived available stock, status and value"""
        with unit_of_work(self.engine, conn) as c:
            row = c.execute(select(materials).where(materials.c.id == material_id)).first()
        if row is None:
            raise NotFound(f"Material {material_id} not found", material_id=material_id)
        return _decorate(row_to_dict(row))

    def find_material(self, name, category, conn=None):
        """Find a material by exact name and category, or None"""
        with unit_of_work(self.engine, conn) as c:
            row = c.execute(
                select(materials)
                .where(materials.c.name == name, materials.c.category == category)
                .order_by(materials.c.id)
            ).first()
        return _decorate(row_to_dict(row)) if row is not None else None

    def delete_material(self, material_id, actor):
        """Delete a material that no BOM or order references.

        Materials with stock history are retired (status Obsolete, ledger entry
        inactive) instead of being removed, so the audit trail survives.
        """
        with unit_of_work(self.engine) as c:
            material = self.get_material(material_id, conn=c)

            bom_count = c.execute(
                select(func.count()).select_from(bom_components)
                .where(bom_components.c.material_id == material_id)
            ).scalar_one()
            mo_count = c.execute(
                select(func.count()).select_from(mo_components)
                .where(mo_components.c.material_id == material_id)
            ).scalar_one()
            if bom_count or mo_count:
                raise MaterialInUse(
                    "Cannot delete material that is being used in BOMs or Manufacturing Orders",
                    material_id=material_id, bom_count=bom_count, order_count=mo_count
                )

            txn_count = c.execute(
                select(func.count()).select_from(stock_transactions)
                .where(stock_transactions.c.material_id == material_id)
            ).scalar_one()

            if txn_count:
                c.execute(update(materials).where(materials.c.id == material_id).values(
                    status='Obsolete', updated_by=str(actor), updated_at=now(),
                    version=materials.c.version + 1
                ))
                c.execute(update(stock_ledger_entries)
                          .where(stock_ledger_entries.c.material_id == material_id)
                          .values(is_active=False))
                retired = True
            else:
                c.execute(delete(stock_ledger_entries)
                          .where(stock_ledger_entries.c.material_id == material_id))
                c.execute(delete(materials).where(materials.c.id == material_id))
                retired = False

        log_activity('Material Deleted' if not retired else 'Material Retired', material['code'], actor)
        return {'material_id': material_id, 'code': material['code'], 'retired': retired}

    # ------------------------------------------------------------------
    # Stock events
    # ------------------------------------------------------------------
    def adjust_stock(self, material_id, quantity, txn_type, reference, actor,
                     unit_cost=None, notes=None, conn=None):
        """Apply an IN, OUT or ADJUSTMENT movement.

        IN adds stock and updates the weighted average cost, OUT subtracts
        (floored at zero), ADJUSTMENT sets the absolute on-hand quantity.
        """
        txn_type = TxnType(txn_type)
        if txn_type not in (TxnType.IN, TxnType.OUT, TxnType.ADJUSTMENT):
            raise ValidationError(f"adjust_stock does not accept {txn_type.value} transactions")

        ok, value = validate_quantity(quantity, 0, allow_equal_min=txn_type == TxnType.ADJUSTMENT)
        if not ok:
            raise ValidationError(value, material_id=material_id)

        reference = reference or f"ADJ-{now():%Y%m%d%H%M%S}"
        return self._run(conn, material_id, txn_type, value, reference, actor, unit_cost, notes)

    def reserve(self, material_id, quantity, actor, reference='', notes=None, conn=None):
        """Earmark stock; fails with InsufficientStock beyond available"""
        ok, value = validate_quantity(quantity, 0, allow_equal_min=False)
        if not ok:
            raise ValidationError(value, material_id=material_id)
        return self._run(conn, material_id, TxnType.RESERVE, value,
                         reference or f"RSV-{now():%Y%m%d%H%M%S}", actor, None, notes)

    def unreserve(self, material_id, quantity, actor, reference='', notes=None, conn=None):
        """Release earmarked stock; the reserved counter is clamped at zero"""
        ok, value = validate_quantity(quantity, 0, allow_equal_min=False)
        if not ok:
            raise ValidationError(value, material_id=material_id)
        return self._run(conn, material_id, TxnType.UNRESERVE, value,
                         reference or f"RSV-{now():%Y%m%d%H%M%S}", actor, None, notes)

    def _run(self, conn, material_id, txn_type, quantity, reference, actor, unit_cost, notes):
        if conn is not None:
            return self._apply_stock_event(conn, material_id, txn_type, quantity,
                                           reference, actor, unit_cost, notes)

        def attempt():
            with unit_of_work(self.engine) as c:
                return self._apply_stock_event(c, material_id, txn_type, quantity,
                                               reference, actor, unit_cost, notes)

        return retry_on_conflict(attempt)

    def _apply_stock_event(self, conn, material_id, txn_type, quantity, reference, actor,
                           unit_cost=None, notes=None):
        """Mutate material counters and append the ledger transaction"""
        row = conn.execute(select(materials).where(materials.c.id == material_id)).first()
        if row is None:
            raise NotFound(f"Material {material_id} not found", material_id=material_id)
        material = row_to_dict(row)

        quantity = round_qty(quantity)
        counters = StockCounters(round_qty(material['on_hand']), round_qty(material['reserved']))
        average_cost = material['average_cost'] or 0.0
        last_cost = material['last_cost'] or 0.0
        txn_cost = average_cost

        if txn_type == TxnType.IN:
            if unit_cost is not None:
                last_cost = float(unit_cost)
            txn_cost = last_cost
            previous = counters.on_hand
            counters.on_hand = round_qty(previous + quantity)
            if counters.on_hand > 0:
                average_cost = round((previous * average_cost + quantity * last_cost) / counters.on_hand, 6)

        elif txn_type in (TxnType.OUT, TxnType.ADJUSTMENT):
            if txn_type == TxnType.OUT:
                target = round_qty(counters.on_hand - quantity)
                if target < 0:
                    logger.warning(
                        f"OUT of {quantity} on {material['code']} exceeds on-hand "
                        f"{counters.on_hand}; clamping to zero"
                    )
                    target = 0.0
            else:
                target = quantity
            if target < counters.reserved:
                raise InsufficientStock(
                    f"{txn_type.value} on {material['code']} would leave on-hand {target} "
                    f"below reserved {counters.reserved}",
                    material_id=material_id, requested=quantity,
                    on_hand=counters.on_hand, reserved=counters.reserved
                )
            counters.on_hand = target

        elif txn_type == TxnType.RESERVE:
            available = counters.available
            if quantity > available:
                raise InsufficientStock(
                    f"Insufficient stock for material: {material['name']}. "
                    f"Available: {available}, Required: {quantity}",
                    material_id=material_id, requested=quantity, available=available
                )
            counters.reserved = round_qty(counters.reserved + quantity)

        elif txn_type == TxnType.UNRESERVE:
            target = round_qty(counters.reserved - quantity)
            if target < 0:
                logger.warning(
                    f"UNRESERVE of {quantity} on {material['code']} exceeds reserved "
                    f"{counters.reserved}; clamping to zero"
                )
                target = 0.0
            counters.reserved = target

        timestamp = now()
        result = conn.execute(
            update(materials)
            .where(materials.c.id == material_id, materials.c.version == material['version'])
            .values(
                on_hand=counters.on_hand,
                reserved=counters.reserved,
                available=counters.available,
                average_cost=average_cost,
                last_cost=last_cost,
                version=material['version'] + 1,
                updated_by=str(actor),
                updated_at=timestamp,
            )
        )
        if result.rowcount != 1:
            raise ConcurrentModification(
                f"Material {material['code']} was modified concurrently",
                material_id=material_id
            )

        try:
            entry_id = self._ensure_ledger_entry(conn, material_id, actor, material)
            conn.execute(
                update(stock_ledger_entries)
                .where(stock_ledger_entries.c.id == entry_id)
                .values(
                    on_hand=counters.on_hand,
                    reserved=counters.reserved,
                    available=counters.available,
                    last_movement=timestamp,
                )
            )
            txn = StockTransaction(
                material_id=material_id,
                txn_type=txn_type,
                quantity=quantity,
                unit_cost=txn_cost,
                reference=reference,
                performed_by=str(actor),
                timestamp=timestamp,
                reference_type=txn_type.reference_type,
                notes=notes,
                on_hand_after=counters.on_hand,
                reserved_after=counters.reserved,
            )
            result = conn.execute(insert(stock_transactions).values(
                ledger_entry_id=entry_id,
                material_id=material_id,
                txn_type=txn_type.value,
                quantity=quantity,
                unit_cost=txn_cost,
                reference=reference,
                reference_type=txn.reference_type,
                notes=notes,
                on_hand_after=counters.on_hand,
                reserved_after=counters.reserved,
                performed_by=str(actor),
                created_at=timestamp,
            ))
            txn.id = result.inserted_primary_key[0]
        except SQLAlchemyError as e:
            logger.critical(
                f"Ledger append failed after counter update on {material['code']} "
                f"({txn_type.value} {quantity}, ref {reference}); the transaction must be "
                f"rolled back or the ledger reconciled: {e}"
            )
            raise StorageError(f"Stock ledger write failed for {material['code']}") from e

        logger.info(
            f"{txn_type.value} {quantity} {material['unit']} of {material['code']} "
            f"(ref {reference}) by {actor}: on_hand={counters.on_hand} reserved={counters.reserved}"
        )
        return txn

    def _ensure_ledger_entry(self, conn, material_id, actor, material=None):
        row = conn.execute(
            select(stock_ledger_entries.c.id)
            .where(stock_ledger_entries.c.material_id == material_id)
        ).first()
        if row is not None:
            return row.id

        if material is None:
            material = row_to_dict(
                conn.execute(select(materials).where(materials.c.id == material_id)).first()
            )
        result = conn.execute(insert(stock_ledger_entries).values(
            material_id=material_id,
            material_code=material['code'],
            material_name=material['name'],
            on_hand=material['on_hand'],
            reserved=material['reserved'],
            available=StockCounters(material['on_hand'], material['reserved']).available,
            is_active=True,
            created_by=str(actor),
            created_at=now(),
        ))
        return result.inserted_primary_key[0]

    def get_ledger_entry(self, material_id, conn=None):
        """Get the stock ledger entry of a material with its transactions"""
        with unit_of_work(self.engine, conn) as c:
            entry = c.execute(
                select(stock_ledger_entries)
                .where(stock_ledger_entries.c.material_id == material_id)
            ).first()
            if entry is None:
                raise NotFound(f"No stock ledger entry for material {material_id}",
                               material_id=material_id)
            txns = c.execute(
                select(stock_transactions)
                .where(stock_transactions.c.ledger_entry_id == entry.id)
                .order_by(stock_transactions.c.id)
            ).all()

        result = row_to_dict(entry)
        result['transactions'] = [row_to_dict(t) for t in txns]
        return result

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def reconcile_ledger(self, actor='system'):
        """Repair ledger entry counters that drifted from their material.

        The material row is authoritative. Returns one dict per repaired or
        created entry.
        """
        discrepancies = []

        with unit_of_work(self.engine) as c:
            rows = c.execute(
                select(materials, stock_ledger_entries.c.id.label('entry_id'),
                       stock_ledger_entries.c.on_hand.label('entry_on_hand'),
                       stock_ledger_entries.c.reserved.label('entry_reserved'))
                .select_from(materials.outerjoin(
                    stock_ledger_entries,
                    stock_ledger_entries.c.material_id == materials.c.id
                ))
                .order_by(materials.c.id)
            ).all()

            for row in rows:
                material = row_to_dict(row)
                if material['entry_id'] is None:
                    self._ensure_ledger_entry(c, material['id'], actor)
                    discrepancies.append({'material_id': material['id'], 'code': material['code'],
                                          'issue': 'missing_ledger_entry'})
                    logger.warning(f"Created missing stock ledger entry for {material['code']}")
                    continue

                if (round_qty(material['entry_on_hand']) == round_qty(material['on_hand'])
                        and round_qty(material['entry_reserved']) == round_qty(material['reserved'])):
                    continue

                counters = StockCounters(material['on_hand'], material['reserved'])
                c.execute(
                    update(stock_ledger_entries)
                    .where(stock_ledger_entries.c.id == material['entry_id'])
                    .values(on_hand=counters.on_hand, reserved=counters.reserved,
                            available=counters.available)
                )
                discrepancies.append({
                    'material_id': material['id'],
                    'code': material['code'],
                    'issue': 'counter_drift',
                    'ledger_on_hand': material['entry_on_hand'],
                    'ledger_reserved': material['entry_reserved'],
                    'on_hand': counters.on_hand,
                    'reserved': counters.reserved,
                })
                logger.warning(
                    f"Stock ledger drift on {material['code']}: ledger "
                    f"{material['entry_on_hand']}/{material['entry_reserved']} vs material "
                    f"{counters.on_hand}/{counters.reserved}; repaired"
                )

        if discrepancies:
            log_activity('Ledger Reconciled', f"{len(discrepancies)} entries", actor)
        return discrepancies
