# manufacturing/production.py - Manufacturing Order Management
import math
import pandas as pd
from sqlalchemy import DateTime, bindparam, insert, select, text
from utils.db import get_db_engine
import logging

from .bom import BOMManager, resolve
from .common import (
    calculate_percentage, elapsed_minutes, log_activity, next_reference, now,
    retry_on_conflict, round_qty, row_to_dict, to_datetime, unit_of_work,
    validate_quantity, versioned_update
)
from .errors import (
    ConcurrentModification, EngineError, InvalidBOM, InvalidTransition, ValidationError
)
from .ledger import MaterialLedger
from .models import BOMStatus, MOStatus, WOStatus
from .reservations import ReservationEngine, required_with_waste
from .schema import (
    manufacturing_orders, mo_components, work_order_materials, work_orders
)
from .work_orders import WorkOrderSequencer, load_order, load_work_order

logger = logging.getLogger(__name__)

PRIORITIES = ('Low', 'Medium', 'High', 'Urgent')


class _ConsumptionFailed(Exception):
    """Material bookkeeping failed while completing a work order"""

    def __init__(self, error):
        super().__init__(error.message)
        self.error = error


class ProductionManager:
    """Manage manufacturing order operations"""

    def __init__(self, engine=None):
        self.engine = engine or get_db_engine()
        self.ledger = MaterialLedger(self.engine)
        self.boms = BOMManager(self.engine)
        self.sequencer = WorkOrderSequencer(self.engine)
        self.reservations = ReservationEngine(self.engine, self.ledger)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    def get_orders(self, status=None, from_date=None, to_date=None):
        """Get manufacturing orders with filters"""
        query = """
        SELECT
            o.id,
            o.reference,
            o.finished_product,
            o.quantity,
            o.quantity_produced,
            o.status,
            o.priority,
            o.progress,
            o.scheduled_start_date,
            o.due_date,
            o.assignee_id,
            b.reference as bom_reference,
            o.created_at
        FROM manufacturing_orders o
        LEFT JOIN bills_of_materials b ON o.bom_id = b.id
        WHERE 1 = 1
        """

        params = {}
        binds = []

        if status:
            query += " AND o.status = :status"
            params['status'] = status

        if from_date:
            query += " AND o.created_at >= :from_date"
            params['from_date'] = to_datetime(from_date)
            binds.append(bindparam('from_date', type_=DateTime))

        if to_date:
            query += " AND o.created_at <= :to_date"
            params['to_date'] = to_datetime(to_date)
            binds.append(bindparam('to_date', type_=DateTime))

        query += " ORDER BY o.created_at DESC, o.id DESC"

        return pd.read_sql(text(query).bindparams(*binds), self.engine, params=params)

    def get_order(self, order_id, conn=None):
        """Get order with components, work orders and derived cost and timing"""
        with unit_of_work(self.engine, conn) as c:
            order = load_order(c, order_id)
            components = [row_to_dict(r) for r in c.execute(
                select(mo_components)
                .where(mo_components.c.manufacturing_order_id == order_id)
                .order_by(mo_components.c.id)
            ).all()]
            order['work_orders'] = self.sequencer.get_work_orders_for_order(order_id, conn=c)

        order['components'] = components
        order['total_planned_cost'] = round(
            sum(required_with_waste(comp) * comp['unit_cost'] for comp in components), 2
        )
        order['actual_cost'] = round(
            sum((comp['quantity_consumed'] + comp['quantity_scrapped']) * comp['unit_cost']
                for comp in components), 2
        )

        due_date = to_datetime(order['due_date'])
        order['is_delayed'] = bool(
            due_date and due_date < now() and not MOStatus(order['status']).is_terminal
        )

        start = to_datetime(order['actual_start_date'])
        end = to_datetime(order['actual_end_date'])
        order['duration_days'] = math.ceil((end - start).total_seconds() / 86400) if start and end else None
        order['completion_rate'] = (round(100 * order['quantity_produced'] / order['quantity'])
                                   if order['quantity'] else 0)
        return order

    def get_order_materials(self, order_id):
        """Get materials required for an order"""
        query = """
        SELECT
            c.id,
            c.material_id,
            m.code as material_code,
            c.name as material_name,
            c.operation_sequence,
            c.quantity_required,
            c.waste_percentage,
            c.quantity_reserved,
            c.quantity_consumed,
            c.quantity_scrapped,
            c.unit,
            c.unit_cost,
            c.is_reserved
        FROM mo_components c
        JOIN materials m ON c.material_id = m.id
        WHERE c.manufacturing_order_id = :order_id
        ORDER BY c.id
        """

        return pd.read_sql(text(query), self.engine, params={'order_id': order_id})

    def get_order_work_orders(self, order_id):
        """Get work orders of an order in sequence order"""
        query = """
        SELECT
            w.id,
            w.reference,
            w.sequence,
            w.operation_name,
            w.work_center_id,
            w.status,
            w.expected_duration,
            w.real_duration,
            w.paused_time,
            w.start_time,
            w.end_time,
            w.assignee_id
        FROM work_orders w
        WHERE w.manufacturing_order_id = :order_id
        ORDER BY w.sequence
        """

        return pd.read_sql(text(query), self.engine, params={'order_id': order_id})

    def get_production_summary(self):
        """Get production summary statistics"""
        query = text("""
        SELECT
            COUNT(*) as total_orders,
            SUM(CASE WHEN status = 'DRAFT' THEN 1 ELSE 0 END) as draft_orders,
            SUM(CASE WHEN status = 'CONFIRMED' THEN 1 ELSE 0 END) as confirmed_orders,
            SUM(CASE WHEN status = 'IN_PROGRESS' THEN 1 ELSE 0 END) as in_progress_orders,
            SUM(CASE WHEN status = 'TO_CLOSE' THEN 1 ELSE 0 END) as to_close_orders,
            SUM(CASE WHEN status = 'DONE' THEN 1 ELSE 0 END) as completed_orders,
            SUM(CASE WHEN status = 'CANCELLED' THEN 1 ELSE 0 END) as cancelled_orders,
            SUM(CASE WHEN due_date < :now AND status NOT IN ('DONE', 'CANCELLED')
                THEN 1 ELSE 0 END) as overdue_orders,
            COALESCE(SUM(quantity), 0) as total_planned_qty,
            COALESCE(SUM(quantity_produced), 0) as total_output
        FROM manufacturing_orders
        """).bindparams(bindparam('now', type_=DateTime))

        result = pd.read_sql(query, self.engine, params={'now': now()})

        summary = result.iloc[0].to_dict() if not result.empty else {}

        for key in ('total_orders', 'draft_orders', 'confirmed_orders', 'in_progress_orders',
                    'to_close_orders', 'completed_orders', 'cancelled_orders', 'overdue_orders',
                    'total_planned_qty', 'total_output'):
            if key not in summary or pd.isna(summary[key]):
                summary[key] = 0

        summary['completion_rate'] = calculate_percentage(summary['completed_orders'],
                                                          summary['total_orders'])
        return summary

    # ------------------------------------------------------------------
    # Order lifecycle
    # ------------------------------------------------------------------
    def create_order_from_bom(self, bom_id, order_data, created_by):
        """Create a draft manufacturing order from an active BOM"""
        ok, quantity = validate_quantity(order_data.get('quantity'), 0, allow_equal_min=False)
        if not ok:
            raise ValidationError(quantity)

        priority = order_data.get('priority', 'Medium')
        if priority not in PRIORITIES:
            raise ValidationError(f"Invalid priority: {priority}")

        with unit_of_work(self.engine) as conn:
            bom = self.boms.get_bom(bom_id, conn=conn)
            if bom['status'] != BOMStatus.ACTIVE.value:
                raise InvalidBOM(
                    f"BOM {bom['reference']} is {bom['status']}; only active BOMs can be produced",
                    bom_id=bom_id
                )
            resolved = resolve(bom, quantity)

            order_no = next_reference(conn, manufacturing_orders, 'MO')
            timestamp = now()

            result = conn.execute(insert(manufacturing_orders).values(
                reference=order_no,
                finished_product=bom['finished_product'],
                finished_product_material_id=order_data.get(
                    'finished_product_material_id', bom['finished_product_material_id']),
                bom_id=bom_id,
                quantity=quantity,
                quantity_produced=0,
                quantity_scrap=0,
                scheduled_start_date=to_datetime(order_data.get('scheduled_start_date')),
                due_date=to_datetime(order_data.get('due_date')),
                assignee_id=order_data.get('assignee_id'),
                status=MOStatus.DRAFT.value,
                priority=priority,
                progress=0,
                notes=order_data.get('notes'),
                version=1,
                created_by=str(created_by),
                created_at=timestamp,
            ))
            order_id = result.inserted_primary_key[0]

            for component in resolved['components']:
                conn.execute(insert(mo_components).values(
                    manufacturing_order_id=order_id,
                    material_id=component['material_id'],
                    name=component['material_name'],
                    operation_sequence=component['operation_sequence'],
                    quantity_required=component['quantity_required'],
                    quantity_reserved=0,
                    quantity_consumed=0,
                    quantity_scrapped=0,
                    unit=component['unit'],
                    unit_cost=component['unit_cost'],
                    waste_percentage=component['waste_percentage'],
                    is_reserved=False,
                ))

            order = self.get_order(order_id, conn=conn)

        log_activity('Order Created', order_no, created_by, {'bom': bom['reference'], 'quantity': quantity})
        return order

    def delete_order(self, order_id, deleted_by):
        """Delete a draft or cancelled order"""
        with unit_of_work(self.engine) as conn:
            mo = load_order(conn, order_id)
            if mo['status'] not in (MOStatus.DRAFT.value, MOStatus.CANCELLED.value):
                raise InvalidTransition(
                    f"Only draft or cancelled orders can be deleted; {mo['reference']} is {mo['status']}",
                    order_id=order_id
                )

            params = {'order_id': order_id}
            conn.execute(text("""
            DELETE FROM work_order_materials
            WHERE work_order_id IN (SELECT id FROM work_orders WHERE manufacturing_order_id = :order_id)
            """), params)
            conn.execute(text("""
            DELETE FROM work_order_comments
            WHERE work_order_id IN (SELECT id FROM work_orders WHERE manufacturing_order_id = :order_id)
            """), params)
            conn.execute(text("DELETE FROM work_orders WHERE manufacturing_order_id = :order_id"), params)
            conn.execute(text("DELETE FROM mo_components WHERE manufacturing_order_id = :order_id"), params)
            conn.execute(text("DELETE FROM manufacturing_orders WHERE id = :order_id"), params)

        log_activity('Order Deleted', mo['reference'], deleted_by)

    def generate_work_orders(self, order_id, actor):
        """Create the work order sequence of an order"""
        return self.sequencer.generate(order_id, actor)

    def reserve_materials(self, order_id, actor):
        """Reserve component stock for an order"""
        return self.reservations.reserve_for_order(order_id, actor)

    def complete_order(self, order_id, actor, quantity_produced=None):
        """Close an order and receive its finished goods"""
        return self.reservations.complete_order(order_id, actor, quantity_produced)

    def cancel_order(self, order_id, actor, reason):
        """Cancel an order and release its reservations"""
        return self.reservations.cancel_order(order_id, actor, reason)

    def recompute_progress(self, order_id, actor='system', conn=None):
        """Derive order progress and status from its work orders"""
        if conn is not None:
            return self._recompute_progress(conn, order_id, actor)

        def attempt():
            with unit_of_work(self.engine) as c:
                return self._recompute_progress(c, order_id, actor)

        return retry_on_conflict(attempt)

    def _recompute_progress(self, conn, order_id, actor):
        mo = load_order(conn, order_id)
        statuses = [r.status for r in conn.execute(
            select(work_orders.c.status).where(work_orders.c.manufacturing_order_id == order_id)
        ).all()]
        if not statuses:
            return mo

        completed = sum(1 for s in statuses if s == WOStatus.COMPLETED.value)
        progress = round(100 * completed / len(statuses))

        values = {'progress': progress}
        status = MOStatus(mo['status'])
        if not status.is_terminal:
            if progress == 100:
                status = MOStatus.TO_CLOSE
            elif progress > 0:
                status = MOStatus.IN_PROGRESS
            values['status'] = status.value
            if status == MOStatus.IN_PROGRESS and mo['actual_start_date'] is None:
                values['actual_start_date'] = now()

        if all(mo[key] == value for key, value in values.items()):
            return mo

        versioned_update(conn, manufacturing_orders, mo,
                         updated_by=str(actor), updated_at=now(), **values)
        logger.info(f"Order {mo['reference']} progress {progress}% ({status.value})")
        return load_order(conn, order_id)

    # ------------------------------------------------------------------
    # Work order execution
    # ------------------------------------------------------------------
    def start_work_order(self, wo_id, actor):
        """Start a work order and put its order in progress"""
        def attempt():
            with unit_of_work(self.engine) as conn:
                wo = self.sequencer.start_work_order(wo_id, actor, conn=conn)
                mo = load_order(conn, wo['manufacturing_order_id'])
                if mo['status'] in (MOStatus.DRAFT.value, MOStatus.CONFIRMED.value):
                    timestamp = now()
                    versioned_update(conn, manufacturing_orders, mo,
                                     status=MOStatus.IN_PROGRESS.value,
                                     actual_start_date=mo['actual_start_date'] or timestamp,
                                     updated_by=str(actor), updated_at=timestamp)
                    logger.info(f"Order {mo['reference']} in progress")
                return wo

        wo = retry_on_conflict(attempt)
        log_activity('Work Order Started', wo['reference'], actor)
        return wo

    def pause_work_order(self, wo_id, actor):
        return self.sequencer.pause_work_order(wo_id, actor)

    def resume_work_order(self, wo_id, actor):
        return self.sequencer.resume_work_order(wo_id, actor)

    def fail_work_order(self, wo_id, actor, reason):
        return self.sequencer.fail_work_order(wo_id, actor, reason)

    def add_work_order_comment(self, wo_id, author, comment_text):
        """Comment on a work order"""
        return self.sequencer.add_comment(wo_id, author, comment_text)

    def complete_work_order(self, wo_id, actor, real_duration=None, materials=None, quality_check=None):
        """Complete a running work order.

        ``materials`` optionally lists actual usage per line as dicts with
        ``material_id`` (or line ``id``), ``quantity_consumed`` and
        ``quantity_scrapped``. Consumption and the status change commit
        together; when consumption fails the work order is still completed
        and the result carries a ``warning``. Afterwards the next work order
        is made ready and the order progress recomputed.
        """
        warning = None
        try:
            outcome = retry_on_conflict(self._complete_attempt, wo_id, actor, real_duration,
                                        materials, quality_check, True)
        except _ConsumptionFailed as e:
            warning = f"Work order completed but material consumption failed: {e.error.message}"
            logger.warning(f"Work order {wo_id}: {warning}")
            outcome = retry_on_conflict(self._complete_attempt, wo_id, actor, real_duration,
                                        materials, quality_check, False)

        wo = outcome['work_order']
        result = {'work_order': wo, 'transactions': outcome['transactions'], 'next_work_order': None}

        if wo['status'] == WOStatus.COMPLETED.value:
            result['next_work_order'] = self.sequencer.advance_next(wo_id, actor)
            log_activity('Work Order Completed', wo['reference'], actor,
                         {'real_duration': wo['real_duration']})
        else:
            warning = f"Quality check failed for {wo['reference']}"
            logger.warning(warning)

        result['order'] = self.recompute_progress(wo['manufacturing_order_id'], actor)
        if warning:
            result['warning'] = warning
        return result

    def _complete_attempt(self, wo_id, actor, real_duration, materials, quality_check, consume):
        with unit_of_work(self.engine) as conn:
            wo = load_work_order(conn, wo_id)
            if wo['status'] != WOStatus.IN_PROGRESS.value:
                raise InvalidTransition(
                    f"Only in-progress work orders can be completed; {wo['reference']} is {wo['status']}",
                    work_order_id=wo_id, status=wo['status']
                )

            timestamp = now()
            values = {'updated_by': str(actor), 'updated_at': timestamp, 'end_time': timestamp}

            if wo['quality_check_required']:
                if not quality_check:
                    raise ValidationError(
                        f"Quality check is required to complete {wo['reference']}",
                        work_order_id=wo_id
                    )
                passed = bool(quality_check.get('passed'))
                values.update(
                    quality_passed=passed,
                    quality_checked_by=str(quality_check.get('checked_by', actor)),
                    quality_checked_at=timestamp,
                    quality_notes=quality_check.get('notes'),
                )
                if not passed:
                    versioned_update(conn, work_orders, wo, status=WOStatus.FAILED.value,
                                     failure_reason='Quality check failed', **values)
                    return {'work_order': self.sequencer.get_work_order(wo_id, conn=conn),
                            'transactions': []}

            if real_duration is None:
                real_duration = max(0.0, round(elapsed_minutes(wo['start_time'], timestamp)
                                               - (wo['paused_time'] or 0), 2))
            else:
                ok, real_duration = validate_quantity(real_duration, 0)
                if not ok:
                    raise ValidationError(f"Real duration: {real_duration}")
            values['real_duration'] = real_duration

            self._record_usage(conn, wo_id, materials or [])

            transactions = []
            if consume:
                try:
                    transactions = self.reservations.apply_consumption(conn, wo, actor)
                except ConcurrentModification:
                    raise
                except EngineError as e:
                    raise _ConsumptionFailed(e) from e

            versioned_update(conn, work_orders, wo, status=WOStatus.COMPLETED.value, **values)
            return {'work_order': self.sequencer.get_work_order(wo_id, conn=conn),
                    'transactions': transactions}

    def _record_usage(self, conn, wo_id, usage):
        """Store actual consumed and scrapped quantities on work order lines"""
        lines = [row_to_dict(r) for r in conn.execute(
            select(work_order_materials).where(work_order_materials.c.work_order_id == wo_id)
        ).all()]

        for entry in usage:
            line = next((candidate for candidate in lines
                         if ('id' in entry and candidate['id'] == entry['id'])
                         or ('id' not in entry and candidate['material_id'] == entry.get('material_id'))), None)
            if line is None:
                raise ValidationError(
                    f"Work order {wo_id} has no material line for {entry}",
                    work_order_id=wo_id
                )

            values = {}
            for field in ('quantity_consumed', 'quantity_scrapped'):
                if entry.get(field) is None:
                    continue
                ok, value = validate_quantity(entry[field], 0)
                if not ok:
                    raise ValidationError(f"{line['name']} {field.replace('_', ' ')}: {value}")
                values[field] = round_qty(value)

            if values:
                assignments = ", ".join(f"{field} = :{field}" for field in values)
                conn.execute(text(f"UPDATE work_order_materials SET {assignments} WHERE id = :line_id"),
                             {**values, 'line_id': line['id']})

    def get_material_usage(self, order_id):
        """Planned versus actual material usage of an order"""
        df = self.get_order_materials(order_id)
        if df.empty:
            return df

        df['required_with_waste'] = (df['quantity_required'] * (1 + df['waste_percentage'] / 100)).round(6)
        df['variance'] = (df['quantity_consumed'] + df['quantity_scrapped'] - df['required_with_waste']).round(6)
        df['actual_cost'] = ((df['quantity_consumed'] + df['quantity_scrapped']) * df['unit_cost']).round(2)
        return df
