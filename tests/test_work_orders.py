"""
Unit Tests for the Work Order Sequencer

Tests:
1. Generation from a BOM (readiness, material slices, preconditions)
2. Advancement of the next work order
3. Work order state machine (start, pause, resume, fail)
"""
from datetime import datetime, timedelta

import pytest

from sqlalchemy import insert, update

from manufacturing import WorkOrderSequencer
from manufacturing.errors import (
    AlreadyGenerated, EmptyBOM, InvalidTransition, NoBOM, NotFound, ValidationError
)
from manufacturing.schema import bills_of_materials, manufacturing_orders, work_orders


@pytest.fixture
def sequencer(engine):
    return WorkOrderSequencer(engine)


def insert_order(engine, bom_id=None, status='DRAFT'):
    with engine.begin() as conn:
        result = conn.execute(insert(manufacturing_orders).values(
            reference='MO-MANUAL-1', finished_product='Table', bom_id=bom_id, quantity=1,
            status=status, created_by='u-1', created_at=datetime.now(),
        ))
        return result.inserted_primary_key[0]


# ============================================================================
# Generation
# ============================================================================

class TestGenerate:

    def test_first_ready_rest_pending(self, sequencer, order):
        generated = sequencer.generate(order['id'], actor='u-1')

        assert [wo['sequence'] for wo in generated] == [10, 20, 30]
        assert [wo['status'] for wo in generated] == ['READY', 'PENDING', 'PENDING']
        assert [wo['operation_name'] for wo in generated] == ['Cutting', 'Painting', 'Assembly']
        assert generated[0]['expected_duration'] == 30
        assert generated[0]['setup_time'] == 5
        assert all(wo['reference'].startswith('WO-') for wo in generated)

    def test_order_moves_to_confirmed(self, sequencer, production, order):
        sequencer.generate(order['id'], actor='u-1')
        assert production.get_order(order['id'])['status'] == 'CONFIRMED'

    def test_material_slices_follow_operations(self, sequencer, order, steel, paint, screws):
        cutting, painting, assembly = sequencer.generate(order['id'], actor='u-1')

        cutting_lines = {m['material_id']: m['quantity_required'] for m in cutting['materials']}
        assert cutting_lines == {steel['id']: 20.0, screws['id']: 40.0}
        assert [(m['material_id'], m['quantity_required']) for m in painting['materials']] == [(paint['id'], 5.0)]
        assert assembly['materials'] == []
        assert all(m['quantity_consumed'] is None for m in cutting['materials'])

    def test_generate_twice_fails_and_keeps_work_orders(self, sequencer, order):
        first = sequencer.generate(order['id'], actor='u-1')

        with pytest.raises(AlreadyGenerated):
            sequencer.generate(order['id'], actor='u-1')

        after = sequencer.get_work_orders_for_order(order['id'])
        assert [wo['id'] for wo in after] == [wo['id'] for wo in first]
        assert [wo['status'] for wo in after] == ['READY', 'PENDING', 'PENDING']

    def test_order_without_bom(self, engine, sequencer):
        order_id = insert_order(engine)
        with pytest.raises(NoBOM):
            sequencer.generate(order_id, actor='u-1')

    def test_bom_without_operations(self, engine, sequencer):
        with engine.begin() as conn:
            bom_id = conn.execute(insert(bills_of_materials).values(
                reference='BOM-EMPTY', finished_product='Table', status='ACTIVE',
                created_by='u-1', created_at=datetime.now(),
            )).inserted_primary_key[0]
        order_id = insert_order(engine, bom_id=bom_id)

        with pytest.raises(EmptyBOM):
            sequencer.generate(order_id, actor='u-1')
        assert sequencer.get_work_orders_for_order(order_id) == []

    def test_unknown_order(self, sequencer):
        with pytest.raises(NotFound):
            sequencer.generate(12345, actor='u-1')

    def test_cancelled_order(self, production, sequencer, order):
        production.cancel_order(order['id'], actor='u-1', reason='No longer needed')
        with pytest.raises(InvalidTransition):
            sequencer.generate(order['id'], actor='u-1')


# ============================================================================
# Advancement
# ============================================================================

class TestAdvanceNext:

    def test_completing_n_readies_n_plus_one(self, engine, sequencer, order):
        cutting, painting, _ = sequencer.generate(order['id'], actor='u-1')
        with engine.begin() as conn:
            conn.execute(update(work_orders).where(work_orders.c.id == cutting['id'])
                         .values(status='COMPLETED'))

        advanced = sequencer.advance_next(cutting['id'])

        assert advanced['id'] == painting['id']
        assert advanced['status'] == 'READY'

    def test_last_work_order_advances_nothing(self, engine, sequencer, order):
        *_, assembly = sequencer.generate(order['id'], actor='u-1')
        with engine.begin() as conn:
            conn.execute(update(work_orders).where(work_orders.c.id == assembly['id'])
                         .values(status='COMPLETED'))
        assert sequencer.advance_next(assembly['id']) is None

    def test_only_pending_successor_is_advanced(self, engine, sequencer, order):
        cutting, painting, assembly = sequencer.generate(order['id'], actor='u-1')
        with engine.begin() as conn:
            conn.execute(update(work_orders).where(work_orders.c.id == cutting['id'])
                         .values(status='COMPLETED'))
        sequencer.advance_next(cutting['id'])

        assert sequencer.advance_next(cutting['id']) is None
        assert sequencer.get_work_order(painting['id'])['status'] == 'READY'
        assert sequencer.get_work_order(assembly['id'])['status'] == 'PENDING'

    def test_predecessor_must_be_completed(self, sequencer, order):
        cutting, painting, _ = sequencer.generate(order['id'], actor='u-1')
        with pytest.raises(InvalidTransition):
            sequencer.advance_next(cutting['id'])
        assert sequencer.get_work_order(painting['id'])['status'] == 'PENDING'


# ============================================================================
# State machine
# ============================================================================

class TestStateMachine:

    def test_start_ready_work_order(self, sequencer, order):
        cutting, *_ = sequencer.generate(order['id'], actor='u-1')
        started = sequencer.start_work_order(cutting['id'], actor='op-1')

        assert started['status'] == 'IN_PROGRESS'
        assert started['start_time'] is not None
        assert started['assignee_id'] == 'op-1'

    def test_cannot_start_pending(self, sequencer, order):
        _, painting, _ = sequencer.generate(order['id'], actor='u-1')
        with pytest.raises(InvalidTransition):
            sequencer.start_work_order(painting['id'], actor='op-1')

    def test_pause_and_resume_accumulates_paused_time(self, engine, sequencer, order):
        cutting, *_ = sequencer.generate(order['id'], actor='u-1')
        sequencer.start_work_order(cutting['id'], actor='op-1')
        paused = sequencer.pause_work_order(cutting['id'], actor='op-1')
        assert paused['status'] == 'PAUSED'

        with engine.begin() as conn:
            conn.execute(update(work_orders).where(work_orders.c.id == cutting['id'])
                         .values(paused_at=datetime.now() - timedelta(minutes=15)))

        resumed = sequencer.resume_work_order(cutting['id'], actor='op-1')
        assert resumed['status'] == 'IN_PROGRESS'
        assert resumed['paused_at'] is None
        assert resumed['paused_time'] == pytest.approx(15, abs=0.5)

    def test_resume_requires_paused(self, sequencer, order):
        cutting, *_ = sequencer.generate(order['id'], actor='u-1')
        with pytest.raises(InvalidTransition):
            sequencer.resume_work_order(cutting['id'], actor='op-1')

    def test_fail_from_any_active_state(self, sequencer, order):
        _, painting, _ = sequencer.generate(order['id'], actor='u-1')
        failed = sequencer.fail_work_order(painting['id'], actor='op-1', reason='Machine breakdown')

        assert failed['status'] == 'FAILED'
        assert failed['failure_reason'] == 'Machine breakdown'
        with pytest.raises(InvalidTransition):
            sequencer.fail_work_order(painting['id'], actor='op-1', reason='again')

    def test_efficiency(self, engine, sequencer, order):
        cutting, *_ = sequencer.generate(order['id'], actor='u-1')
        assert cutting['efficiency'] is None

        with engine.begin() as conn:
            conn.execute(update(work_orders).where(work_orders.c.id == cutting['id'])
                         .values(real_duration=40))
        assert sequencer.get_work_order(cutting['id'])['efficiency'] == 75.0


# ============================================================================
# Comments
# ============================================================================

class TestComments:

    def test_comments_are_listed_in_order(self, sequencer, order):
        cutting, *_ = sequencer.generate(order['id'], actor='u-1')

        first = sequencer.add_comment(cutting['id'], 'op-1', '  Blade worn  ')
        sequencer.add_comment(cutting['id'], 'op-2', 'Blade replaced')

        assert first['text'] == 'Blade worn'
        assert first['author'] == 'op-1'
        assert first['created_at'] is not None
        comments = sequencer.get_work_order(cutting['id'])['comments']
        assert [(c['author'], c['text']) for c in comments] == [('op-1', 'Blade worn'), ('op-2', 'Blade replaced')]

    def test_blank_comment_rejected(self, sequencer, order):
        cutting, *_ = sequencer.generate(order['id'], actor='u-1')
        with pytest.raises(ValidationError):
            sequencer.add_comment(cutting['id'], 'op-1', '   ')

    def test_comment_length_limit(self, sequencer, order):
        cutting, *_ = sequencer.generate(order['id'], actor='u-1')
        with pytest.raises(ValidationError):
            sequencer.add_comment(cutting['id'], 'op-1', 'x' * 501)
        assert sequencer.add_comment(cutting['id'], 'op-1', 'x' * 500)['text'] == 'x' * 500

    def test_comment_on_unknown_work_order(self, sequencer):
        with pytest.raises(NotFound):
            sequencer.add_comment(404, 'op-1', 'Hello')
