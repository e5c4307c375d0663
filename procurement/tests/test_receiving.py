import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest
from django.core.management import call_command
from django.utils import timezone

from core.exceptions import ForbiddenTransition, InvalidInput, InvalidPOState, InvalidQuantity, NotFound, OverReceiptError
from procurement import services
from procurement.models import InvoiceReceiving, PurchaseOrderLine
from procurement.receiving import (
    delete_receiving, recompute_po_receipts, submit_draft_receiving, submit_receiving, update_receiving,
)


pytestmark = pytest.mark.django_db


def line_for(po):
    return PurchaseOrderLine.objects.get(po=po)


class TestSubmitReceiving:
    def test_partial_receipt(self, ordered_po, product, receive):
        receiving = receive(ordered_po, product, 40)

        assert receiving.status == 'submitted'
        assert receiving.receiving_number.startswith('IR-')
        assert receiving.invoice_amount == Decimal('500.00')
        ordered_po.refresh_from_db()
        assert (ordered_po.stage, ordered_po.status) == ('partial_received', 'partial_received')
        line = line_for(ordered_po)
        assert (line.received_qty, line.backlog_qty) == (40, 60)

    def test_full_receipt_across_receivings(self, ordered_po, product, receive):
        receive(ordered_po, product, 40, batch_no='B1')
        receive(ordered_po, product, 60, batch_no='B2')

        ordered_po.refresh_from_db()
        assert ordered_po.status == 'received'
        line = line_for(ordered_po)
        assert (line.received_qty, line.backlog_qty) == (100, 0)
        assert [e.action for e in ordered_po.history.order_by('sequence')][-2:] == ['receive', 'receive']
        assert services.replay_history(ordered_po) == 'received'

    def test_exactly_at_tolerance_boundary_succeeds(self, ordered_po, product, receive):
        receive(ordered_po, product, 110)
        line = line_for(ordered_po)
        assert (line.received_qty, line.backlog_qty) == (110, 0)

    def test_over_tolerance_rejected_and_nothing_persisted(self, ordered_po, product, receive):
        receive(ordered_po, product, 100)
        ordered_po.refresh_from_db()
        stage, history_count = ordered_po.stage, ordered_po.history.count()

        with pytest.raises(OverReceiptError) as exc:
            receive(ordered_po, product, 11, batch_no='B2')

        assert exc.value.details['ordered'] == 100
        assert exc.value.details['already_received'] == 100
        assert exc.value.details['new'] == 11
        assert exc.value.details['max_allowed'] == Decimal('110')
        assert InvoiceReceiving.objects.filter(purchase_order=ordered_po).count() == 1
        assert line_for(ordered_po).received_qty == 100
        ordered_po.refresh_from_db()
        assert (ordered_po.stage, ordered_po.history.count()) == (stage, history_count)

    def test_batches_of_same_product_are_summed(self, ordered_po, product, buyer):
        lines = [
            {'product': product, 'received_qty': 60, 'batch_no': 'B1'},
            {'product': product, 'received_qty': 55, 'batch_no': 'B2'},
        ]
        with pytest.raises(OverReceiptError) as exc:
            submit_receiving(ordered_po, lines, actor=buyer)
        assert exc.value.details['new'] == 115

    def test_zero_quantity_line_is_accepted(self, ordered_po, product, receive):
        receiving = receive(ordered_po, product, 0)

        assert receiving.lines.get().status == 'backlog'
        ordered_po.refresh_from_db()
        assert ordered_po.status == 'ordered'

    def test_po_must_be_ordered(self, draft_po, product, receive):
        with pytest.raises(InvalidPOState) as exc:
            receive(draft_po, product, 10)
        assert exc.value.details['status'] == 'draft'
        assert not InvoiceReceiving.objects.exists()

    def test_missing_po(self, product, receive):
        with pytest.raises(NotFound):
            receive(uuid.uuid4(), product, 10)

    def test_product_not_on_po(self, ordered_po, other_product, receive):
        with pytest.raises(NotFound):
            receive(ordered_po, other_product, 10)

    def test_negative_quantity(self, ordered_po, product, buyer):
        with pytest.raises(InvalidQuantity):
            submit_receiving(ordered_po, [{'product': product, 'received_qty': -1}], actor=buyer)

    def test_expiry_must_follow_manufacture(self, ordered_po, product, buyer):
        with pytest.raises(InvalidInput):
            submit_receiving(
                ordered_po,
                [{'product': product, 'received_qty': 5, 'mfg_date': date(2024, 5, 1), 'exp_date': date(2024, 1, 1)}],
                actor=buyer,
            )

    def test_manufacture_date_not_in_future(self, ordered_po, product, buyer):
        with pytest.raises(InvalidInput):
            submit_receiving(
                ordered_po,
                [{'product': product, 'received_qty': 5, 'mfg_date': timezone.localdate() + timedelta(days=1)}],
                actor=buyer,
            )

    def test_batch_number_length(self, ordered_po, product, buyer):
        with pytest.raises(InvalidInput):
            submit_receiving(ordered_po, [{'product': product, 'received_qty': 5, 'batch_no': 'X' * 51}], actor=buyer)

    def test_explicit_invoice_amount_kept(self, ordered_po, product, receive):
        receiving = receive(ordered_po, product, 10, invoice_amount='99.99')
        assert receiving.invoice_amount == Decimal('99.99')


class TestDrafts:
    def test_draft_does_not_count(self, ordered_po, product, buyer):
        receiving = submit_receiving(ordered_po, [{'product': product, 'received_qty': 50}], actor=buyer, as_draft=True)

        assert receiving.status == 'draft'
        assert line_for(ordered_po).received_qty == 0
        ordered_po.refresh_from_db()
        assert ordered_po.status == 'ordered'

    def test_submit_draft_checks_tolerance_again(self, ordered_po, product, buyer, receive):
        draft = submit_receiving(ordered_po, [{'product': product, 'received_qty': 50}], actor=buyer, as_draft=True)
        receive(ordered_po, product, 70)

        with pytest.raises(OverReceiptError):
            submit_draft_receiving(draft, actor=buyer)
        draft.refresh_from_db()
        assert draft.status == 'draft'

    def test_submit_draft(self, ordered_po, product, buyer):
        draft = submit_receiving(ordered_po, [{'product': product, 'received_qty': 50}], actor=buyer, as_draft=True)
        submitted = submit_draft_receiving(draft, actor=buyer)
        assert submitted.status == 'submitted'
        assert line_for(ordered_po).received_qty == 50

    def test_delete_only_drafts(self, ordered_po, product, buyer, receive):
        draft = submit_receiving(ordered_po, [{'product': product, 'received_qty': 50}], actor=buyer, as_draft=True)
        delete_receiving(draft, actor=buyer)
        assert not InvoiceReceiving.objects.filter(pk=draft.pk).exists()

        submitted = receive(ordered_po, product, 10)
        with pytest.raises(ForbiddenTransition):
            delete_receiving(submitted, actor=buyer)


class TestUpdateReceiving:
    def test_update_excludes_own_lines_from_tolerance(self, ordered_po, product, receive, buyer):
        receiving = receive(ordered_po, product, 100)
        update_receiving(receiving, actor=buyer, lines=[{'product': product, 'received_qty': 105, 'batch_no': 'B1'}])
        assert line_for(ordered_po).received_qty == 105

    def test_update_lowering_quantity_reprojects(self, ordered_po, product, receive, buyer):
        receiving = receive(ordered_po, product, 100)
        update_receiving(receiving, actor=buyer, lines=[{'product': product, 'received_qty': 30}])
        line = line_for(ordered_po)
        assert (line.received_qty, line.backlog_qty) == (30, 70)

    def test_computed_invoice_amount_follows_lines(self, ordered_po, product, receive, buyer):
        receiving = receive(ordered_po, product, 40)
        assert receiving.invoice_amount == Decimal('500.00')

        update_receiving(receiving, actor=buyer, lines=[{'product': product, 'received_qty': 10}])
        receiving.refresh_from_db()
        assert receiving.invoice_amount == Decimal('125.00')
        assert not receiving.invoice_amount_is_manual

    def test_entered_invoice_amount_survives_line_update(self, ordered_po, product, receive, buyer):
        receiving = receive(ordered_po, product, 40, invoice_amount='480.00')
        update_receiving(receiving, actor=buyer, lines=[{'product': product, 'received_qty': 10}])
        receiving.refresh_from_db()
        assert (receiving.invoice_amount, receiving.invoice_amount_is_manual) == (Decimal('480.00'), True)

    def test_clearing_invoice_amount_recomputes(self, ordered_po, product, receive, buyer):
        receiving = receive(ordered_po, product, 40, invoice_amount='480.00')
        update_receiving(receiving, actor=buyer, invoice_amount=None)
        receiving.refresh_from_db()
        assert (receiving.invoice_amount, receiving.invoice_amount_is_manual) == (Decimal('500.00'), False)

    def test_completed_receiving_is_immutable(self, ordered_po, product, receive, buyer):
        receiving = receive(ordered_po, product, 10)
        InvoiceReceiving.objects.filter(pk=receiving.pk).update(status='completed')
        with pytest.raises(ForbiddenTransition):
            update_receiving(receiving, actor=buyer, notes='late edit')


class TestReceiptProjection:
    def test_idempotent(self, ordered_po, product, receive):
        receive(ordered_po, product, 40)
        history_count = ordered_po.history.count()

        recompute_po_receipts(ordered_po)
        recompute_po_receipts(ordered_po)

        line = line_for(ordered_po)
        assert (line.received_qty, line.backlog_qty) == (40, 60)
        assert ordered_po.history.count() == history_count

    def test_repairs_drifted_quantities(self, ordered_po, product, receive):
        receive(ordered_po, product, 40)
        PurchaseOrderLine.objects.filter(po=ordered_po).update(received_qty=0, backlog_qty=100)

        recompute_po_receipts(ordered_po)
        assert line_for(ordered_po).received_qty == 40

    def test_rejected_receivings_do_not_count(self, ordered_po, product, receive):
        receiving = receive(ordered_po, product, 40)
        InvoiceReceiving.objects.filter(pk=receiving.pk).update(status='rejected')

        recompute_po_receipts(ordered_po)
        assert line_for(ordered_po).received_qty == 0

    def test_management_command(self, ordered_po, product, receive, capsys):
        receive(ordered_po, product, 40)
        PurchaseOrderLine.objects.filter(po=ordered_po).update(received_qty=0, backlog_qty=100)

        call_command('reconcile_po_receipts', po=ordered_po.po_number)

        assert line_for(ordered_po).received_qty == 40
        assert ordered_po.po_number in capsys.readouterr().out
