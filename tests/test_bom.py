"""
Unit Tests for Bills of Materials

Tests:
1. resolve(): scaling, operation ordering, structural validation, purity
2. BOM lifecycle: Draft -> Active -> Archived, immutability of active BOMs
3. Read-side queries
"""
import copy

import pytest

from manufacturing.bom import resolve
from manufacturing.errors import BOMNotEditable, InvalidBOM, InvalidTransition, ValidationError


def simple_bom(**overrides):
    bom = {
        'reference': 'BOM-TEST',
        'components': [
            {'material_id': 1, 'quantity': 2, 'waste_percentage': 10, 'operation_sequence': 20},
            {'material_id': 2, 'quantity': 0.25, 'waste_percentage': 0, 'operation_sequence': None},
        ],
        'operations': [
            {'sequence': 20, 'name': 'Welding'},
            {'sequence': 10, 'name': 'Cutting'},
        ],
    }
    bom.update(overrides)
    return bom


# ============================================================================
# resolve()
# ============================================================================

class TestResolve:

    def test_scales_components_by_order_quantity(self):
        resolved = resolve(simple_bom(), 10)
        quantities = {c['material_id']: c['quantity_required'] for c in resolved['components']}
        assert quantities == {1: 20.0, 2: 2.5}

    def test_operations_sorted_by_sequence(self):
        resolved = resolve(simple_bom(), 1)
        assert [op['sequence'] for op in resolved['operations']] == [10, 20]

    def test_unassigned_components_go_to_first_operation(self):
        resolved = resolve(simple_bom(), 1)
        assert resolved['components'][1]['operation_sequence'] == 10
        assert resolved['components'][0]['operation_sequence'] == 20

    def test_zero_operations_is_invalid(self):
        with pytest.raises(InvalidBOM):
            resolve(simple_bom(operations=[]), 5)

    def test_duplicate_sequences_are_invalid(self):
        ops = [{'sequence': 10, 'name': 'A'}, {'sequence': 10, 'name': 'B'}]
        with pytest.raises(InvalidBOM) as exc:
            resolve(simple_bom(operations=ops), 5)
        assert exc.value.details['duplicates'] == [10]

    def test_unknown_operation_reference_is_invalid(self):
        components = [{'material_id': 1, 'quantity': 1, 'operation_sequence': 99}]
        with pytest.raises(InvalidBOM):
            resolve(simple_bom(components=components), 1)

    def test_non_positive_quantity(self):
        with pytest.raises(ValidationError):
            resolve(simple_bom(), 0)

    def test_does_not_modify_input(self):
        bom = simple_bom()
        snapshot = copy.deepcopy(bom)
        resolve(bom, 3)
        assert bom == snapshot


# ============================================================================
# BOM lifecycle
# ============================================================================

class TestBOMManager:

    def test_create_bom_is_draft(self, draft_bom):
        assert draft_bom['status'] == 'DRAFT'
        assert draft_bom['reference'].startswith('BOM-')
        assert [op['sequence'] for op in draft_bom['operations']] == [10, 20, 30]
        assert len(draft_bom['components']) == 3

    def test_cycle_time_and_costs(self, draft_bom):
        assert draft_bom['estimated_cycle_time'] == 80
        assert draft_bom['total_operation_time'] == 70
        # 2 kg steel @5 + 0.5 l paint @2 + 4 screws @0.1
        assert draft_bom['total_material_cost'] == pytest.approx(11.4)

    def test_component_defaults_from_material(self, draft_bom, steel):
        line = draft_bom['components'][0]
        assert line['material_id'] == steel['id']
        assert line['unit'] == 'kg'
        assert line['unit_cost'] == 5.0
        assert line['material_name'] == 'Steel Tube'

    def test_duplicate_operation_sequence_rejected(self, boms, bom_data):
        bom_data['operations'][1]['sequence'] = 30
        with pytest.raises(InvalidBOM):
            boms.create_bom(bom_data, created_by='u-1')

    def test_waste_out_of_range_rejected(self, boms, bom_data):
        bom_data['components'][0]['waste_percentage'] = 150
        with pytest.raises(ValidationError):
            boms.create_bom(bom_data, created_by='u-1')

    def test_zero_component_quantity_rejected(self, boms, bom_data):
        bom_data['components'][0]['quantity'] = 0
        with pytest.raises(ValidationError):
            boms.create_bom(bom_data, created_by='u-1')

    def test_update_draft_replaces_lines(self, boms, draft_bom, steel):
        updated = boms.update_bom(draft_bom['id'], {
            'description': 'Lighter frame',
            'components': [{'material_id': steel['id'], 'quantity': 1.5}],
            'operations': [{'sequence': 1, 'name': 'Cutting', 'work_center_id': 'WC-CUT', 'duration': 25}],
        }, updated_by='u-3')

        assert updated['description'] == 'Lighter frame'
        assert len(updated['components']) == 1
        assert updated['components'][0]['quantity'] == 1.5
        assert updated['estimated_cycle_time'] == 25
        assert updated['updated_by'] == 'u-3'

    def test_active_bom_is_immutable(self, boms, active_bom):
        with pytest.raises(BOMNotEditable):
            boms.update_bom(active_bom['id'], {'description': 'changed'}, updated_by='u-1')
        assert boms.get_bom(active_bom['id'])['description'] is None

    def test_approve_stamps_approver(self, active_bom):
        assert active_bom['status'] == 'ACTIVE'
        assert active_bom['approved_by'] == 'u-2'
        assert active_bom['approved_at'] is not None

    def test_approve_twice_fails(self, boms, active_bom):
        with pytest.raises(InvalidTransition):
            boms.approve_bom(active_bom['id'], approved_by='u-2')

    def test_archive(self, boms, active_bom):
        archived = boms.archive_bom(active_bom['id'], updated_by='u-1')
        assert archived['status'] == 'ARCHIVED'
        with pytest.raises(BOMNotEditable):
            boms.update_bom(active_bom['id'], {'description': 'x'}, updated_by='u-1')

    def test_cannot_delete_active_bom(self, boms, active_bom):
        with pytest.raises(InvalidTransition):
            boms.delete_bom(active_bom['id'], deleted_by='u-1')

    def test_delete_draft_bom(self, boms, draft_bom):
        boms.delete_bom(draft_bom['id'], deleted_by='u-1')
        assert boms.get_boms().empty

    def test_reference_after_delete_continues_from_latest(self, boms, bom_data, draft_bom):
        second = boms.create_bom(bom_data, created_by='u-1')
        boms.delete_bom(draft_bom['id'], deleted_by='u-1')

        third = boms.create_bom(bom_data, created_by='u-1')

        assert int(third['reference'].rsplit('-', 1)[1]) == int(second['reference'].rsplit('-', 1)[1]) + 1
        assert len(third['components']) == 3
        assert [op['sequence'] for op in third['operations']] == [10, 20, 30]

    def test_get_boms_filters(self, boms, active_bom):
        assert len(boms.get_boms(status='ACTIVE')) == 1
        assert boms.get_boms(status='DRAFT').empty
        assert len(boms.get_boms(search='Chair')) == 1
        assert list(boms.get_active_boms()['reference']) == [active_bom['reference']]

    def test_where_used(self, boms, draft_bom, paint):
        used = boms.get_where_used(paint['id'])
        assert list(used['reference']) == [draft_bom['reference']]
        assert used.iloc[0]['quantity'] == 0.5
