# manufacturing/work_orders.py - Work Order sequencing and state machine
from sqlalchemy import func, insert, select, text
from utils.db import get_db_engine
import logging

from .bom import BOMManager, resolve
from .common import (
    calculate_percentage, elapsed_minutes, log_activity, next_reference, now,
    retry_on_conflict, row_to_dict, unit_of_work, versioned_update
)
from .errors import AlreadyGenerated, EmptyBOM, InvalidTransition, NoBOM, NotFound, ValidationError
from .models import MOStatus, WOStatus
from .schema import (
    manufacturing_orders, mo_components, work_order_comments, work_order_materials, work_orders
)

logger = logging.getLogger(__name__)


def load_order(conn, order_id):
    """Read a manufacturing order row as a dict"""
    row = conn.execute(
        select(manufacturing_orders).where(manufacturing_orders.c.id == order_id)
    ).first()
    if row is None:
        raise NotFound(f"Manufacturing order {order_id} not found", order_id=order_id)
    return row_to_dict(row)


def load_work_order(conn, wo_id):
    """Read a work order row as a dict"""
    row = conn.execute(select(work_orders).where(work_orders.c.id == wo_id)).first()
    if row is None:
        raise NotFound(f"Work order {wo_id} not found", work_order_id=wo_id)
    return row_to_dict(row)


def _with_metrics(wo):
    real = wo.get('real_duration') or 0
    wo['efficiency'] = calculate_percentage(wo['expected_duration'], real) if real > 0 else None
    wo['total_duration'] = (wo['expected_duration'] or 0) + (wo['setup_time'] or 0)
    return wo


class WorkOrderSequencer:
    """Generate work orders from a BOM and drive their state machine"""

    def __init__(self, engine=None):
        self.engine = engine or get_db_engine()
        self.boms = BOMManager(self.engine)

    def _run(self, conn, operation, *args):
        if conn is not None:
            return operation(conn, *args)

        def attempt():
            with unit_of_work(self.engine) as c:
                return operation(c, *args)

        return retry_on_conflict(attempt)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_work_order(self, wo_id, conn=None):
        """Get work order with its material lines and comments"""
        with unit_of_work(self.engine, conn) as c:
            wo = load_work_order(c, wo_id)
            lines = c.execute(
                select(work_order_materials)
                .where(work_order_materials.c.work_order_id == wo_id)
                .order_by(work_order_materials.c.id)
            ).all()
            comments = c.execute(
                select(work_order_comments)
                .where(work_order_comments.c.work_order_id == wo_id)
                .order_by(work_order_comments.c.id)
            ).all()
        wo['materials'] = [row_to_dict(line) for line in lines]
        wo['comments'] = [row_to_dict(comment) for comment in comments]
        return _with_metrics(wo)

    def get_work_orders_for_order(self, order_id, conn=None):
        """Get all work orders of a manufacturing order in sequence order"""
        with unit_of_work(self.engine, conn) as c:
            rows = c.execute(
                select(work_orders)
                .where(work_orders.c.manufacturing_order_id == order_id)
                .order_by(work_orders.c.sequence)
            ).all()
        return [_with_metrics(row_to_dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def generate(self, order_id, actor, conn=None):
        """Create one work order per BOM operation for a manufacturing order.

        The first work order in sequence starts Ready, the rest Pending, and
        the order moves from Draft to Confirmed.
        """
        return self._run(conn, self._generate, order_id, actor)

    def _generate(self, conn, order_id, actor):
        mo = load_order(conn, order_id)
        if MOStatus(mo['status']).is_terminal:
            raise InvalidTransition(
                f"Cannot generate work orders for {mo['status'].lower()} order {mo['reference']}",
                order_id=order_id
            )

        existing = conn.execute(
            select(func.count()).select_from(work_orders)
            .where(work_orders.c.manufacturing_order_id == order_id)
        ).scalar_one()
        if existing:
            raise AlreadyGenerated(
                f"Work orders already generated for {mo['reference']}",
                order_id=order_id, count=existing
            )
        if mo['bom_id'] is None:
            raise NoBOM(f"Manufacturing order {mo['reference']} has no BOM", order_id=order_id)

        bom = self.boms.get_bom(mo['bom_id'], conn=conn)
        if not bom['operations']:
            raise EmptyBOM(f"BOM {bom['reference']} has no operations", bom_id=bom['id'])
        operations = resolve(bom, mo['quantity'])['operations']
        first_sequence = operations[0]['sequence']

        components = [row_to_dict(r) for r in conn.execute(
            select(mo_components)
            .where(mo_components.c.manufacturing_order_id == order_id)
            .order_by(mo_components.c.id)
        ).all()]

        timestamp = now()
        generated = []
        for index, operation in enumerate(operations):
            reference = next_reference(conn, work_orders, 'WO', width=3)
            status = WOStatus.READY if index == 0 else WOStatus.PENDING
            result = conn.execute(insert(work_orders).values(
                reference=reference,
                manufacturing_order_id=order_id,
                operation_name=operation['name'],
                work_center_id=operation['work_center_id'],
                sequence=operation['sequence'],
                expected_duration=operation['duration'],
                setup_time=operation['setup_time'],
                real_duration=0,
                status=status.value,
                assignee_id=mo['assignee_id'],
                description=operation['description'],
                paused_time=0,
                quality_check_required=operation['quality_check_required'],
                version=1,
                created_by=str(actor),
                created_at=timestamp,
            ))
            wo_id = result.inserted_primary_key[0]

            for component in components:
                sequence = component['operation_sequence']
                if sequence is None:
                    sequence = first_sequence
                if sequence != operation['sequence']:
                    continue
                conn.execute(insert(work_order_materials).values(
                    work_order_id=wo_id,
                    mo_component_id=component['id'],
                    material_id=component['material_id'],
                    name=component['name'],
                    quantity_required=component['quantity_required'],
                    quantity_consumed=None,
                    quantity_scrapped=0,
                    unit=component['unit'],
                ))
            generated.append(wo_id)

        if mo['status'] == MOStatus.DRAFT.value:
            versioned_update(conn, manufacturing_orders, mo,
                             status=MOStatus.CONFIRMED.value,
                             updated_by=str(actor), updated_at=timestamp)

        log_activity('Work Orders Generated', mo['reference'], actor, {'count': len(generated)})
        return [self.get_work_order(wo_id, conn=conn) for wo_id in generated]

    def advance_next(self, completed_wo_id, actor='system', conn=None):
        """Flip the work order following a completed one from Pending to Ready.

        Returns the advanced work order, or None when there is nothing to
        advance (the normal case after the final operation).
        """
        return self._run(conn, self._advance_next, completed_wo_id, actor)

    def _advance_next(self, conn, completed_wo_id, actor):
        completed = load_work_order(conn, completed_wo_id)
        if completed['status'] != WOStatus.COMPLETED.value:
            raise InvalidTransition(
                f"Work order {completed['reference']} is {completed['status']}; "
                "only a completed work order releases its successor",
                work_order_id=completed_wo_id
            )
        row = conn.execute(
            select(work_orders)
            .where(work_orders.c.manufacturing_order_id == completed['manufacturing_order_id'],
                   work_orders.c.sequence > completed['sequence'])
            .order_by(work_orders.c.sequence)
            .limit(1)
        ).first()
        if row is None or row.status != WOStatus.PENDING.value:
            return None

        following = row_to_dict(row)
        versioned_update(conn, work_orders, following, status=WOStatus.READY.value,
                         updated_by=str(actor), updated_at=now())
        logger.info(f"Work order {following['reference']} is ready "
                    f"after {completed['reference']} completed")
        return self.get_work_order(following['id'], conn=conn)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def _transition(self, conn, wo, allowed, new_status, actor, **values):
        if wo['status'] not in [s.value for s in allowed]:
            raise InvalidTransition(
                f"Work order {wo['reference']} is {wo['status']}; "
                f"cannot move to {new_status.value}",
                work_order_id=wo['id'], status=wo['status']
            )
        versioned_update(conn, work_orders, wo, status=new_status.value,
                         updated_by=str(actor), updated_at=now(), **values)
        logger.info(f"Work order {wo['reference']}: {wo['status']} -> {new_status.value}")

    def start_work_order(self, wo_id, actor, conn=None):
        """Start a ready work order"""
        return self._run(conn, self._start, wo_id, actor)

    def _start(self, conn, wo_id, actor):
        wo = load_work_order(conn, wo_id)
        mo = load_order(conn, wo['manufacturing_order_id'])
        if MOStatus(mo['status']).is_terminal:
            raise InvalidTransition(
                f"Manufacturing order {mo['reference']} is {mo['status']}",
                order_id=mo['id']
            )
        self._transition(conn, wo, [WOStatus.READY], WOStatus.IN_PROGRESS, actor,
                         start_time=wo['start_time'] or now(),
                         assignee_id=wo['assignee_id'] or str(actor))
        return self.get_work_order(wo_id, conn=conn)

    def pause_work_order(self, wo_id, actor, conn=None):
        """Pause a running work order"""
        return self._run(conn, self._pause, wo_id, actor)

    def _pause(self, conn, wo_id, actor):
        wo = load_work_order(conn, wo_id)
        self._transition(conn, wo, [WOStatus.IN_PROGRESS], WOStatus.PAUSED, actor, paused_at=now())
        return self.get_work_order(wo_id, conn=conn)

    def resume_work_order(self, wo_id, actor, conn=None):
        """Resume a paused work order, accumulating the paused minutes"""
        return self._run(conn, self._resume, wo_id, actor)

    def _resume(self, conn, wo_id, actor):
        wo = load_work_order(conn, wo_id)
        paused = round((wo['paused_time'] or 0) + elapsed_minutes(wo['paused_at'], now()), 2)
        self._transition(conn, wo, [WOStatus.PAUSED], WOStatus.IN_PROGRESS, actor,
                         paused_at=None, paused_time=paused)
        return self.get_work_order(wo_id, conn=conn)

    def fail_work_order(self, wo_id, actor, reason, conn=None):
        """Mark a non-terminal work order as failed"""
        return self._run(conn, self._fail, wo_id, actor, reason)

    def _fail(self, conn, wo_id, actor, reason):
        wo = load_work_order(conn, wo_id)
        active = [s for s in WOStatus if not s.is_terminal]
        self._transition(conn, wo, active, WOStatus.FAILED, actor,
                         failure_reason=reason, end_time=now(), paused_at=None)
        log_activity('Work Order Failed', wo['reference'], actor, {'reason': reason})
        return self.get_work_order(wo_id, conn=conn)

    def add_comment(self, wo_id, author, comment_text):
        """Attach a shop-floor comment to a work order"""
        comment_text = (comment_text or '').strip()
        if not comment_text:
            raise ValidationError("Comment text is required", work_order_id=wo_id)
        if len(comment_text) > 500:
            raise ValidationError("Comment cannot exceed 500 characters", work_order_id=wo_id)

        with unit_of_work(self.engine) as conn:
            wo = load_work_order(conn, wo_id)
            query = text("""
            INSERT INTO work_order_comments (work_order_id, text, author, created_at)
            VALUES (:work_order_id, :text, :author, :created_at)
            """)
            result = conn.execute(query, {
                'work_order_id': wo_id,
                'text': comment_text,
                'author': str(author),
                'created_at': now(),
            })
            comment = row_to_dict(conn.execute(
                select(work_order_comments).where(work_order_comments.c.id == result.lastrowid)
            ).first())

        logger.info(f"Comment added to {wo['reference']} by {author}")
        return comment
