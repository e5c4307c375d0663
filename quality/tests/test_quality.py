from types import SimpleNamespace

import pytest

from approvals.models import WarehouseApprovalRecord
from core.exceptions import ForbiddenTransition, IncompleteSubmission, InvalidInput, InvalidQuantity, NotFound
from procurement.models import InvoiceReceiving, PurchaseOrderLine
from procurement.receiving import submit_receiving
from quality.models import QCItemDetail, reduce_item_statuses, reduce_product_statuses, summarize_items
from quality.services import (
    approve_qc, create_qc_record, record_item_result, record_item_results, reject_qc, submit_for_approval,
)


class TestReductions:
    @pytest.mark.parametrize('statuses, expected', [
        ([], 'pending'),
        (['pending', 'pending'], 'pending'),
        (['passed', 'pending'], 'in_progress'),
        (['passed', 'passed'], 'passed'),
        (['failed', 'failed'], 'failed'),
        (['passed', 'failed'], 'partial_pass'),
    ])
    def test_item_statuses(self, statuses, expected):
        assert reduce_item_statuses(statuses) == expected

    @pytest.mark.parametrize('statuses, expected', [
        (['pending'], 'pending'),
        (['passed', 'in_progress'], 'in_progress'),
        (['passed', 'pending'], 'in_progress'),
        (['passed', 'passed'], 'passed'),
        (['failed'], 'failed'),
        (['passed', 'failed'], 'partial_pass'),
        (['partial_pass', 'passed'], 'partial_pass'),
    ])
    def test_product_statuses(self, statuses, expected):
        assert reduce_product_statuses(statuses) == expected

    def test_summary_counts_reasons(self):
        items = [
            SimpleNamespace(status='passed', reasons=[]),
            SimpleNamespace(status='passed', reasons=['received_correctly']),
            SimpleNamespace(status='passed', reasons=['near_expiry']),
            SimpleNamespace(status='failed', reasons=['damaged_packaging', 'expired']),
            SimpleNamespace(status='failed', reasons=[]),
            SimpleNamespace(status='pending', reasons=[]),
        ]
        assert summarize_items(items) == {
            'received_correctly': 2,
            'near_expiry': 1,
            'damaged_packaging': 1,
            'expired': 1,
        }


@pytest.mark.django_db
class TestCreateRecord:
    def test_one_item_per_unit(self, ordered_po, product, receive, buyer):
        receiving = receive(ordered_po, product, 12)
        qc = create_qc_record(receiving, actor=buyer)

        assert qc.qc_number.startswith('QC-')
        assert qc.status == 'pending'
        qc_product = qc.products.get()
        assert qc_product.received_qty == 12
        assert list(qc_product.items.values_list('item_number', flat=True)) == list(range(1, 13))
        assert set(qc_product.items.values_list('status', flat=True)) == {'pending'}

        receiving.refresh_from_db()
        assert (receiving.status, receiving.qc_status) == ('qc_pending', 'in_progress')

    def test_receiving_still_counts_during_qc(self, ordered_po, product, receive, buyer):
        receiving = receive(ordered_po, product, 12)
        create_qc_record(receiving, actor=buyer)
        assert PurchaseOrderLine.objects.get(po=ordered_po).received_qty == 12

    def test_only_one_record_per_receiving(self, ordered_po, product, receive, buyer):
        receiving = receive(ordered_po, product, 12)
        create_qc_record(receiving, actor=buyer)
        with pytest.raises(ForbiddenTransition):
            create_qc_record(receiving, actor=buyer)

    def test_draft_receiving_cannot_be_inspected(self, ordered_po, product, buyer):
        draft = submit_receiving(ordered_po, [{'product': product, 'received_qty': 5}], actor=buyer, as_draft=True)
        with pytest.raises(ForbiddenTransition):
            create_qc_record(draft, actor=buyer)

    def test_nothing_to_inspect(self, ordered_po, product, receive, buyer):
        receiving = receive(ordered_po, product, 0)
        with pytest.raises(InvalidQuantity):
            create_qc_record(receiving, actor=buyer)


@pytest.fixture
def qc(ordered_po, product, receive, buyer):
    return create_qc_record(receive(ordered_po, product, 4), actor=buyer)


def pass_all(qc, actor, failed=()):
    return record_item_results(qc, 0, [
        {'item_index': i, 'status': 'failed' if i in failed else 'passed',
         'reasons': ['quality_issue'] if i in failed else []}
        for i in range(4)
    ], actor=actor)


@pytest.mark.django_db
class TestInspection:
    def test_single_result(self, qc, buyer):
        product = record_item_result(qc, 0, 2, 'failed', reasons=['damaged_product'], actor=buyer)

        assert product.overall_status == 'in_progress'
        assert product.failed_qty == 1
        item = product.items.get(item_number=3)
        assert (item.status, item.reasons, item.inspected_by) == ('failed', ['damaged_product'], buyer)
        qc.refresh_from_db()
        assert (qc.status, qc.overall_result, qc.qc_by) == ('in_progress', 'in_progress', buyer)

    def test_all_items_recorded(self, qc, buyer):
        product = pass_all(qc, buyer, failed={3})
        assert (product.passed_qty, product.failed_qty, product.overall_status) == (3, 1, 'partial_pass')
        assert product.qc_summary == {'received_correctly': 3, 'quality_issue': 1}

    def test_result_can_be_corrected(self, qc, buyer):
        record_item_result(qc, 0, 0, 'failed', actor=buyer)
        product = record_item_result(qc, 0, 0, 'passed', actor=buyer)
        assert (product.passed_qty, product.failed_qty) == (1, 0)

    def test_unknown_item_index(self, qc, buyer):
        with pytest.raises(NotFound):
            record_item_result(qc, 0, 4, 'passed', actor=buyer)

    def test_unknown_product_index(self, qc, buyer):
        with pytest.raises(NotFound):
            record_item_result(qc, 1, 0, 'passed', actor=buyer)

    def test_unknown_reason(self, qc, buyer):
        with pytest.raises(InvalidInput):
            record_item_result(qc, 0, 0, 'failed', reasons=['bad_vibes'], actor=buyer)
        assert not QCItemDetail.objects.exclude(status='pending').exists()

    def test_unknown_status(self, qc, buyer):
        with pytest.raises(InvalidInput):
            record_item_result(qc, 0, 0, 'maybe', actor=buyer)


@pytest.mark.django_db
class TestSubmitAndDecide:
    def test_incomplete_submission(self, qc, buyer):
        record_item_result(qc, 0, 0, 'passed', actor=buyer)
        with pytest.raises(IncompleteSubmission) as exc:
            submit_for_approval(qc, actor=buyer)
        assert exc.value.details['pending_items'] == 3

    def test_frozen_after_submission(self, qc, buyer):
        pass_all(qc, buyer)
        submitted = submit_for_approval(qc, actor=buyer, environment={'temperature': '22C'})
        assert submitted.status == 'pending_approval'
        assert submitted.environment == {'temperature': '22C'}

        with pytest.raises(ForbiddenTransition):
            record_item_result(qc, 0, 0, 'failed', actor=buyer)

    def test_approve_opens_warehouse_approval(self, qc, buyer, manager):
        pass_all(qc, buyer, failed={0})
        submit_for_approval(qc, actor=buyer)
        approval = approve_qc(qc, actor=manager, remarks='OK')

        qc.refresh_from_db()
        assert (qc.status, qc.approval_status, qc.approved_by) == ('completed', 'approved', manager)
        assert approval.quality_control_id == qc.id
        assert approval.status == 'pending'
        wp = approval.products.get()
        assert (wp.qc_passed_qty, wp.warehouse_qty, wp.decision) == (3, 3, 'pending')

        receiving = InvoiceReceiving.objects.get(pk=qc.invoice_receiving_id)
        assert (receiving.status, receiving.qc_status) == ('qc_pending', 'partial_pass')
        assert receiving.lines.get().qc_status == 'partial_pass'

    def test_approve_with_nothing_passed_completes_receiving(self, qc, buyer, manager):
        pass_all(qc, buyer, failed={0, 1, 2, 3})
        submit_for_approval(qc, actor=buyer)

        assert approve_qc(qc, actor=manager) is None
        assert not WarehouseApprovalRecord.objects.exists()
        receiving = InvoiceReceiving.objects.get(pk=qc.invoice_receiving_id)
        assert (receiving.status, receiving.qc_status) == ('completed', 'failed')

    def test_approve_requires_submission(self, qc, manager):
        with pytest.raises(ForbiddenTransition):
            approve_qc(qc, actor=manager)

    def test_reject_stops_receiving_counting(self, qc, buyer, manager, ordered_po):
        pass_all(qc, buyer)
        submit_for_approval(qc, actor=buyer)

        with pytest.raises(InvalidInput):
            reject_qc(qc, actor=manager)

        reject_qc(qc, actor=manager, remarks='Cold chain broken')
        qc.refresh_from_db()
        assert (qc.status, qc.approval_remarks) == ('rejected', 'Cold chain broken')
        receiving = InvoiceReceiving.objects.get(pk=qc.invoice_receiving_id)
        assert receiving.status == 'rejected'
        assert PurchaseOrderLine.objects.get(po=ordered_po).received_qty == 0
