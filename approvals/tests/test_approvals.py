import pytest
from django.core.exceptions import ValidationError

from approvals.models import ManagerApproval, WarehouseApprovalRecord, reduce_decisions
from approvals.services import record_manager_action, record_warehouse_check
from core.exceptions import ForbiddenTransition, IncompleteSubmission, InvalidInput, InvalidQuantity, NotFound
from core.models import Warehouse
from inventory.models import InventoryRecord, Product
from procurement.models import InvoiceReceiving, PurchaseOrder, PurchaseOrderLine
from quality.services import approve_qc, create_qc_record, record_item_results, submit_for_approval


@pytest.mark.parametrize('decisions, expected', [
    ([], 'pending'),
    (['approved', 'pending'], 'pending'),
    (['approved', 'approved'], 'approved'),
    (['rejected'], 'rejected'),
    (['approved', 'rejected'], 'partial_approved'),
    (['partial_approved'], 'partial_approved'),
])
def test_reduce_decisions(decisions, expected):
    assert reduce_decisions(decisions) == expected


@pytest.fixture
def approval(ordered_po, product, receive, buyer, manager):
    """Warehouse approval for 10 received units, 8 of which passed QC."""
    qc = create_qc_record(receive(ordered_po, product, 10), actor=buyer)
    record_item_results(qc, 0, [
        {'item_index': i, 'status': 'passed' if i < 8 else 'failed', 'reasons': [] if i < 8 else ['expired']}
        for i in range(10)
    ], actor=buyer)
    submit_for_approval(qc, actor=buyer)
    return approve_qc(qc, actor=manager)


@pytest.mark.django_db
class TestWarehouseCheck:
    def test_approved_takes_warehouse_quantity(self, approval, buyer):
        product = record_warehouse_check(approval, 0, 'approved', actor=buyer,
                                         location={'zone': 'A', 'rack': 'R1'})
        assert (product.approved_qty, product.rejected_qty) == (8, 0)
        assert (product.zone, product.rack, product.checked_by) == ('A', 'R1', buyer)

        approval.refresh_from_db()
        assert (approval.status, approval.overall_result) == ('pending_manager_approval', 'approved')

    def test_rejected(self, approval, buyer):
        product = record_warehouse_check(approval, 0, 'rejected', actor=buyer,
                                         rejection_reasons=['storage_capacity'])
        assert (product.approved_qty, product.rejected_qty) == (0, 8)
        assert product.rejection_reasons == ['storage_capacity']

    def test_partial(self, approval, buyer):
        product = record_warehouse_check(approval, 0, 'partial_approved', actor=buyer, approved_qty=5)
        assert (product.approved_qty, product.rejected_qty) == (5, 3)
        approval.refresh_from_db()
        assert approval.overall_result == 'partial_approved'

    @pytest.mark.parametrize('qty', [-1, 9, None, '5'])
    def test_partial_quantity_out_of_range(self, approval, buyer, qty):
        with pytest.raises(InvalidQuantity):
            record_warehouse_check(approval, 0, 'partial_approved', actor=buyer, approved_qty=qty)

    def test_unknown_decision(self, approval, buyer):
        with pytest.raises(InvalidInput):
            record_warehouse_check(approval, 0, 'maybe', actor=buyer)

    def test_unknown_location_field(self, approval, buyer):
        with pytest.raises(InvalidInput):
            record_warehouse_check(approval, 0, 'approved', actor=buyer, location={'aisle': '3'})

    def test_destination_override(self, approval, buyer, second_warehouse):
        product = record_warehouse_check(approval, 0, 'approved', actor=buyer, warehouse=second_warehouse)
        assert product.warehouse == second_warehouse

    def test_approved_cannot_exceed_qc_passed(self, approval):
        product = approval.products.get()
        product.approved_qty = 9
        with pytest.raises(ValidationError):
            product.clean()


@pytest.fixture
def two_levels(settings):
    settings.PROCUREMENT = {**settings.PROCUREMENT, 'WAREHOUSE_APPROVAL_LEVELS': 2}


@pytest.mark.django_db
class TestManagerApproval:
    def test_undecided_products_block_approval(self, approval, manager):
        with pytest.raises(IncompleteSubmission):
            record_manager_action(approval, 1, 'approve', actor=manager)

    def test_first_approval_completes_by_default(self, approval, buyer, manager):
        record_warehouse_check(approval, 0, 'approved', actor=buyer)
        completed = record_manager_action(approval, 1, 'approve', actor=manager)

        assert completed.status == 'completed'
        assert InventoryRecord.objects.get().current_stock == 8
        with pytest.raises(ForbiddenTransition):
            record_manager_action(approval, 2, 'approve', actor=manager)

    def test_levels_in_order(self, approval, buyer, manager, two_levels):
        record_warehouse_check(approval, 0, 'approved', actor=buyer)
        with pytest.raises(ForbiddenTransition) as exc:
            record_manager_action(approval, 2, 'approve', actor=manager)
        assert exc.value.details['expected_level'] == 1

        record_manager_action(approval, 1, 'approve', actor=manager)
        approval.refresh_from_db()
        assert approval.get_next_approval_level() == 2
        assert approval.status == 'pending_manager_approval'
        assert not InventoryRecord.objects.exists()

        with pytest.raises(ForbiddenTransition):
            record_manager_action(approval, 1, 'approve', actor=manager)

    def test_check_locked_once_managers_act(self, approval, buyer, manager, two_levels):
        record_warehouse_check(approval, 0, 'approved', actor=buyer)
        record_manager_action(approval, 1, 'approve', actor=manager)
        with pytest.raises(ForbiddenTransition):
            record_warehouse_check(approval, 0, 'rejected', actor=buyer)

    def test_final_level_creates_inventory(self, approval, buyer, manager, second_warehouse, two_levels):
        record_warehouse_check(approval, 0, 'partial_approved', actor=buyer, approved_qty=6,
                               warehouse=second_warehouse, location={'zone': 'COLD', 'bin': '7'})
        record_manager_action(approval, 1, 'approve', actor=manager)
        completed = record_manager_action(approval, 2, 'approve', actor=manager, conditions=['store cold'])

        assert completed.status == 'completed'
        assert completed.inventory_integration_status == 'completed'
        assert completed.final_approval_date is not None

        inventory = InventoryRecord.objects.get()
        assert inventory.warehouse == second_warehouse
        assert inventory.location_label == 'COLD-7'
        assert (inventory.current_stock, inventory.available_stock) == (6, 6)
        assert inventory.warehouse_approval_id == approval.id
        movement = inventory.movements.get()
        assert (movement.movement_type, movement.quantity_delta, movement.reference_number) == (
            'inward', 6, approval.approval_number
        )

        receiving = InvoiceReceiving.objects.get(pk=approval.invoice_receiving_id)
        assert receiving.status == 'completed'

    def test_partially_received_po_stays_open(self, approval, buyer, manager, ordered_po):
        record_warehouse_check(approval, 0, 'approved', actor=buyer)
        record_manager_action(approval, 1, 'approve', actor=manager)
        ordered_po.refresh_from_db()
        assert ordered_po.stage == 'partial_received'

    def test_all_rejected_creates_no_inventory(self, approval, buyer, manager):
        record_warehouse_check(approval, 0, 'rejected', actor=buyer)
        completed = record_manager_action(approval, 1, 'approve', actor=manager)
        assert completed.inventory_integration_status == 'not_required'
        assert not InventoryRecord.objects.exists()

    def test_failed_stock_receipt_rolls_back_approval(self, approval, buyer, manager, ordered_po, product):
        record_warehouse_check(approval, 0, 'approved', actor=buyer)
        PurchaseOrder.objects.filter(pk=ordered_po.pk).update(ship_to=None)
        WarehouseApprovalRecord.objects.filter(pk=approval.pk).update(warehouse=None)
        Product.objects.filter(pk=product.pk).update(default_warehouse=None)
        Warehouse.objects.update(is_active=False)

        with pytest.raises(NotFound):
            record_manager_action(approval, 1, 'approve', actor=manager)

        approval.refresh_from_db()
        assert approval.status == 'pending_manager_approval'
        assert not ManagerApproval.objects.exists()
        assert not InventoryRecord.objects.exists()
        receiving = InvoiceReceiving.objects.get(pk=approval.invoice_receiving_id)
        assert receiving.status == 'qc_pending'

    def test_reject_requires_remarks(self, approval, buyer, manager):
        record_warehouse_check(approval, 0, 'approved', actor=buyer)
        with pytest.raises(InvalidInput):
            record_manager_action(approval, 1, 'reject', actor=manager)

    def test_reject_rejects_receiving(self, approval, buyer, manager, ordered_po, two_levels):
        record_warehouse_check(approval, 0, 'approved', actor=buyer)
        record_manager_action(approval, 1, 'approve', actor=manager)
        rejected = record_manager_action(approval, 2, 'reject', actor=manager, remarks='No space')

        assert rejected.status == 'rejected'
        assert not InventoryRecord.objects.exists()
        receiving = InvoiceReceiving.objects.get(pk=approval.invoice_receiving_id)
        assert receiving.status == 'rejected'
        assert PurchaseOrderLine.objects.get(po=ordered_po).received_qty == 0

        with pytest.raises(ForbiddenTransition):
            record_manager_action(approval, 2, 'approve', actor=manager)

    def test_manager_actions_are_append_only(self, approval, buyer, manager):
        record_warehouse_check(approval, 0, 'approved', actor=buyer)
        action = record_manager_action(approval, 1, 'approve', actor=manager).manager_approvals.get()
        action.remarks = 'changed'
        with pytest.raises(ValidationError):
            action.save()
        assert ManagerApproval.objects.get().remarks == ''
