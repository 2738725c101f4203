# manufacturing/reservations.py - Material reservation and consumption
"""Reservation & consumption of component stock against manufacturing orders.

Reservations are taken per component when an order is released to the shop
floor and converted into consumption as each work order completes. Every
stock movement goes through :class:`MaterialLedger`.
"""
from sqlalchemy import select, update
from utils.config import config
from utils.db import get_db_engine
import logging

from .common import log_activity, now, retry_on_conflict, round_qty, row_to_dict, unit_of_work, versioned_update
from .errors import (
    AlreadyDone, EngineError, IncompleteWorkOrders, InvalidTransition, ReservationIncomplete
)
from .ledger import MaterialLedger
from .models import MOStatus, TxnType, WOStatus
from .schema import manufacturing_orders, mo_components, work_order_materials, work_orders
from .work_orders import load_order, load_work_order

logger = logging.getLogger(__name__)


def required_with_waste(component):
    """Quantity to reserve for a component, including its waste allowance"""
    waste = component.get('waste_percentage') or 0
    return round_qty(component['quantity_required'] * (1 + waste / 100))


def _order_components(conn, order_id):
    return [row_to_dict(r) for r in conn.execute(
        select(mo_components)
        .where(mo_components.c.manufacturing_order_id == order_id)
        .order_by(mo_components.c.id)
    ).all()]


class ReservationEngine:
    """Reserve, consume and release component stock for manufacturing orders"""

    def __init__(self, engine=None, ledger=None):
        self.engine = engine or get_db_engine()
        self.ledger = ledger or MaterialLedger(self.engine)

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------
    def reserve_for_order(self, order_id, actor):
        """Reserve every unreserved component of an order.

        Each component is reserved in its own transaction. Failures do not
        stop the pass; once all components were attempted, any failures are
        raised together as ReservationIncomplete while successful
        reservations stay in place.
        """
        with unit_of_work(self.engine) as conn:
            mo = load_order(conn, order_id)
            components = _order_components(conn, order_id)

        if mo['status'] == MOStatus.DONE.value:
            raise AlreadyDone(f"Manufacturing order {mo['reference']} is already done", order_id=order_id)
        if mo['status'] == MOStatus.CANCELLED.value:
            raise InvalidTransition(f"Manufacturing order {mo['reference']} is cancelled", order_id=order_id)

        reserved, failures = [], []
        for component in components:
            if component['is_reserved']:
                logger.debug(f"Component {component['name']} of {mo['reference']} already reserved")
                continue

            required = required_with_waste(component)
            if required <= 0:
                continue

            try:
                txn = retry_on_conflict(self._reserve_component, mo, component, required, actor)
            except EngineError as e:
                failures.append({
                    'component_id': component['id'],
                    'material_id': component['material_id'],
                    'name': component['name'],
                    'required': required,
                    'kind': e.kind,
                    'error': e.message,
                })
                logger.warning(f"Reservation failed for {component['name']} on {mo['reference']}: {e.message}")
                continue

            if txn is not None:
                reserved.append(txn)

        if failures:
            raise ReservationIncomplete(
                f"Could not reserve {len(failures)} of {len(components)} components "
                f"for {mo['reference']}",
                failures=failures, reserved=reserved
            )

        log_activity('Materials Reserved', mo['reference'], actor, {'transactions': len(reserved)})
        return reserved

    def _reserve_component(self, mo, component, required, actor):
        with unit_of_work(self.engine) as conn:
            claimed = conn.execute(
                update(mo_components)
                .where(mo_components.c.id == component['id'], mo_components.c.is_reserved.is_(False))
                .values(is_reserved=True, quantity_reserved=required, reserved_at=now())
            )
            if claimed.rowcount != 1:
                return None
            return self.ledger.reserve(
                component['material_id'], required, actor,
                reference=mo['reference'],
                notes=f"Reserved for {mo['reference']}",
                conn=conn
            )

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------
    def consume_for_work_order(self, wo_id, actor):
        """Convert the reservations of a running work order into consumption"""
        def attempt():
            with unit_of_work(self.engine) as conn:
                wo = load_work_order(conn, wo_id)
                if wo['status'] != WOStatus.IN_PROGRESS.value:
                    raise InvalidTransition(
                        f"Materials can only be consumed for an in-progress work order; "
                        f"{wo['reference']} is {wo['status']}",
                        work_order_id=wo_id, status=wo['status']
                    )
                return self.apply_consumption(conn, wo, actor)

        return retry_on_conflict(attempt)

    def apply_consumption(self, conn, wo, actor):
        """Release the holds of a work order's materials and issue them.

        Runs on the caller's connection; the caller owns the status guard
        that keeps this from running twice for the same work order.
        """
        mo = load_order(conn, wo['manufacturing_order_id'])
        lines = conn.execute(
            select(work_order_materials)
            .where(work_order_materials.c.work_order_id == wo['id'])
            .order_by(work_order_materials.c.id)
        ).all()

        txns = []
        for line in lines:
            component = row_to_dict(conn.execute(
                select(mo_components).where(mo_components.c.id == line.mo_component_id)
            ).first())

            held = round_qty(component['quantity_reserved'])
            if held > 0:
                txns.append(self.ledger.unreserve(
                    line.material_id, held, actor, reference=mo['reference'],
                    notes=f"Released for {wo['reference']}", conn=conn
                ))

            consumed = round_qty(line.quantity_consumed if line.quantity_consumed is not None
                                 else line.quantity_required)
            scrapped = round_qty(line.quantity_scrapped)
            if consumed > 0:
                txns.append(self.ledger.adjust_stock(
                    line.material_id, consumed, TxnType.OUT, mo['reference'], actor,
                    notes=f"Consumed by {wo['reference']}", conn=conn
                ))
            if scrapped > 0:
                txns.append(self.ledger.adjust_stock(
                    line.material_id, scrapped, TxnType.OUT, mo['reference'], actor,
                    notes=f"Scrap from {wo['reference']}", conn=conn
                ))

            conn.execute(update(work_order_materials)
                         .where(work_order_materials.c.id == line.id)
                         .values(quantity_consumed=consumed))
            conn.execute(update(mo_components)
                         .where(mo_components.c.id == component['id'])
                         .values(quantity_reserved=0,
                                 quantity_consumed=round_qty(component['quantity_consumed'] + consumed),
                                 quantity_scrapped=round_qty(component['quantity_scrapped'] + scrapped)))

        logger.info(f"Consumed materials for {wo['reference']} ({len(txns)} transactions)")
        return txns

    # ------------------------------------------------------------------
    # Completion and cancellation
    # ------------------------------------------------------------------
    def _release_holds(self, conn, mo, actor, notes):
        txns = []
        for component in _order_components(conn, mo['id']):
            held = round_qty(component['quantity_reserved'])
            if held <= 0:
                continue
            txns.append(self.ledger.unreserve(
                component['material_id'], held, actor, reference=mo['reference'],
                notes=notes, conn=conn
            ))
            conn.execute(update(mo_components)
                         .where(mo_components.c.id == component['id'])
                         .values(quantity_reserved=0, is_reserved=False))
        return txns

    def complete_order(self, order_id, actor, quantity_produced=None):
        """Close an order whose work orders are all completed.

        Receives the produced quantity of the finished good into stock at the
        actual material unit cost when the finished good material is known.
        """
        def attempt():
            with unit_of_work(self.engine) as conn:
                return self._complete_order(conn, order_id, actor, quantity_produced)

        return retry_on_conflict(attempt)

    def _complete_order(self, conn, order_id, actor, quantity_produced):
        mo = load_order(conn, order_id)
        if mo['status'] == MOStatus.DONE.value:
            raise AlreadyDone(f"Manufacturing order {mo['reference']} is already done", order_id=order_id)
        if mo['status'] == MOStatus.CANCELLED.value:
            raise InvalidTransition(f"Cannot complete cancelled order {mo['reference']}", order_id=order_id)

        unfinished = conn.execute(
            select(work_orders.c.reference, work_orders.c.status)
            .where(work_orders.c.manufacturing_order_id == order_id,
                   work_orders.c.status != WOStatus.COMPLETED.value)
            .order_by(work_orders.c.sequence)
        ).all()
        if unfinished:
            raise IncompleteWorkOrders(
                f"All work orders must be completed before closing {mo['reference']}",
                order_id=order_id,
                work_orders=[{'reference': r.reference, 'status': r.status} for r in unfinished]
            )

        self._release_holds(conn, mo, actor, notes=f"Released at completion of {mo['reference']}")

        produced = round_qty(quantity_produced if quantity_produced is not None else mo['quantity'])
        actual_cost = sum(
            (c['quantity_consumed'] + c['quantity_scrapped']) * c['unit_cost']
            for c in _order_components(conn, order_id)
        )

        timestamp = now()
        versioned_update(conn, manufacturing_orders, mo,
                         status=MOStatus.DONE.value,
                         actual_end_date=timestamp,
                         progress=100,
                         quantity_produced=produced,
                         updated_by=str(actor),
                         updated_at=timestamp)

        receipt = None
        finished = None
        if mo['finished_product_material_id'] is not None:
            finished = self.ledger.get_material(mo['finished_product_material_id'], conn=conn)
        else:
            finished = self.ledger.find_material(mo['finished_product'], config.finished_good_category,
                                                 conn=conn)

        if finished is None:
            logger.info(f"No finished good material for {mo['finished_product']}; "
                        f"skipping stock receipt for {mo['reference']}")
        elif produced > 0:
            unit_cost = round(actual_cost / produced, 6) if actual_cost > 0 else None
            receipt = self.ledger.adjust_stock(
                finished['id'], produced, TxnType.IN, mo['reference'], actor,
                unit_cost=unit_cost, notes=f"Finished goods from {mo['reference']}", conn=conn
            )

        log_activity('Order Completed', mo['reference'], actor, {'produced': produced})
        order = load_order(conn, order_id)
        order['actual_cost'] = round(actual_cost, 2)
        order['finished_goods_receipt'] = receipt
        return order

    def cancel_order(self, order_id, actor, reason):
        """Cancel an order, releasing every outstanding reservation"""
        def attempt():
            with unit_of_work(self.engine) as conn:
                return self._cancel_order(conn, order_id, actor, reason)

        return retry_on_conflict(attempt)

    def _cancel_order(self, conn, order_id, actor, reason):
        mo = load_order(conn, order_id)
        if mo['status'] == MOStatus.DONE.value:
            raise AlreadyDone(f"Cannot cancel completed order {mo['reference']}", order_id=order_id)
        if mo['status'] == MOStatus.CANCELLED.value:
            raise InvalidTransition(f"Manufacturing order {mo['reference']} is already cancelled",
                                    order_id=order_id)

        released = self._release_holds(conn, mo, actor, notes=f"Order cancelled: {reason}")

        timestamp = now()
        conn.execute(
            update(work_orders)
            .where(work_orders.c.manufacturing_order_id == order_id,
                   work_orders.c.status.in_([WOStatus.PENDING.value, WOStatus.READY.value]))
            .values(status=WOStatus.CANCELLED.value, version=work_orders.c.version + 1,
                    updated_by=str(actor), updated_at=timestamp)
        )

        versioned_update(conn, manufacturing_orders, mo,
                         status=MOStatus.CANCELLED.value,
                         cancellation_reason=reason,
                         updated_by=str(actor),
                         updated_at=timestamp)

        log_activity('Order Cancelled', mo['reference'], actor,
                     {'reason': reason, 'released': len(released)})
        order = load_order(conn, order_id)
        order['released'] = released
        return order
