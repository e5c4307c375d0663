"""
Invoice Receiving Reconciliation
================================
This module contains:
1. submit_receiving - validate a delivery against the PO and record it
2. update_receiving / submit_draft_receiving / delete_receiving
3. recompute_po_receipts - idempotent projection of received quantities
   and receipt stage onto the purchase order
4. close_fulfilled_po - complete the PO once every receiving is stocked

Cumulative receipts per product may not exceed the ordered quantity by
more than the configured tolerance (RECEIVING_TOLERANCE, default 10%).
"""

import logging
from collections import OrderedDict
from datetime import date
from decimal import Decimal

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from core.conf import receiving_tolerance
from core.exceptions import (
    ForbiddenTransition, InvalidInput, InvalidPOState, InvalidQuantity, NotFound, OverReceiptError
)
from . import workflow
from .models import InvoiceReceiving, PurchaseOrder, ReceivedLine
from .services import record_history, to_decimal

logger = logging.getLogger(__name__)

RECEIVING_FIELDS = (
    'invoice_number', 'invoice_date', 'invoice_amount', 'due_date', 'received_date', 'notes', 'qc_required',
)
LINE_FIELDS = (
    'product', 'po_line', 'received_qty', 'foc', 'unit_price', 'batch_no', 'mfg_date', 'exp_date',
    'status', 'remarks',
)


# ============================================================================
# VALIDATION
# ============================================================================

def _lock_receivable_po(po):
    po = PurchaseOrder.get_for_update(po)
    if po.status not in workflow.RECEIVABLE_STATUSES:
        raise InvalidPOState(
            f"Purchase order {po.po_number} cannot receive goods in status '{po.status}'",
            po_number=po.po_number,
            status=po.status,
            allowed=sorted(workflow.RECEIVABLE_STATUSES),
        )
    return po


def _prepare_lines(po, lines):
    """
    Resolve and validate incoming receiving lines.

    Returns:
        list of dicts ready to build ReceivedLine rows
    """
    if not lines:
        raise InvalidInput("A receiving needs at least one line", po_number=po.po_number)

    po_lines = list(po.lines.select_related('product'))
    by_id = {line.id: line for line in po_lines}
    by_product = {}
    for line in po_lines:
        by_product.setdefault(line.product_id, line)

    today = timezone.localdate()
    prepared = []
    for position, data in enumerate(lines):
        unknown = set(data) - set(LINE_FIELDS)
        if unknown:
            raise InvalidInput("Unknown receiving line fields", fields=sorted(unknown))

        po_line_id = getattr(data.get('po_line'), 'pk', data.get('po_line'))
        product_id = getattr(data.get('product'), 'pk', data.get('product'))
        if po_line_id is not None:
            po_line = by_id.get(po_line_id)
        else:
            po_line = by_product.get(product_id)
        if po_line is None or (product_id is not None and po_line.product_id != product_id):
            raise NotFound(
                "Product is not on the purchase order",
                po_number=po.po_number,
                product=product_id,
                po_line=po_line_id,
            )

        received_qty = data.get('received_qty')
        foc = data.get('foc', 0)
        for field, value in (('received_qty', received_qty), ('foc', foc)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidQuantity(
                    f"{field} must be a non-negative whole number",
                    product=po_line.product.product_code, **{field: value}
                )

        batch_no = (data.get('batch_no') or '').strip()
        if len(batch_no) > 50:
            raise InvalidInput("Batch number cannot exceed 50 characters", batch_no=batch_no)

        mfg_date = data.get('mfg_date')
        exp_date = data.get('exp_date')
        for field, value in (('mfg_date', mfg_date), ('exp_date', exp_date)):
            if value is not None and not isinstance(value, date):
                raise InvalidInput(f"{field} must be a date", **{field: value})
        if mfg_date and mfg_date > today:
            raise InvalidInput("Manufacturing date cannot be in the future", mfg_date=mfg_date)
        if mfg_date and exp_date and exp_date <= mfg_date:
            raise InvalidInput(
                "Expiry date must be after manufacturing date",
                mfg_date=mfg_date, exp_date=exp_date
            )

        status = data.get('status') or ('received' if received_qty else 'backlog')
        if status not in dict(ReceivedLine.STATUS_CHOICES):
            raise InvalidInput("Unknown receiving line status", status=status)

        unit_price = data.get('unit_price')
        prepared.append({
            'po_line': po_line,
            'product': po_line.product,
            'position': position,
            'ordered_qty': po_line.ordered_qty,
            'received_qty': received_qty,
            'foc': foc,
            'unit_price': po_line.unit_price if unit_price is None else to_decimal(unit_price, 'unit_price'),
            'batch_no': batch_no,
            'mfg_date': mfg_date,
            'exp_date': exp_date,
            'status': status,
            'remarks': data.get('remarks', '') or '',
        })
    return prepared


def check_tolerance(po, prepared, exclude_receiving=None):
    """
    Reject a receiving that would push any product past its tolerance.

    Cumulative total = qualifying receivings already recorded (excluding
    ``exclude_receiving``) + every line of ``prepared`` for the product.

    Raises:
        OverReceiptError: with product, ordered, already received, new and max allowed
    """
    tolerance = receiving_tolerance()
    new_by_product = OrderedDict()
    for line in prepared:
        new_by_product[line['product']] = new_by_product.get(line['product'], 0) + line['received_qty']

    for product, new_qty in new_by_product.items():
        ordered = po.lines.filter(product=product).aggregate(total=Sum('ordered_qty'))['total'] or 0
        existing = ReceivedLine.objects.filter(
            receiving__purchase_order=po,
            receiving__status__in=InvoiceReceiving.QUALIFYING_STATUSES,
            product=product,
        )
        if exclude_receiving is not None:
            existing = existing.exclude(receiving=exclude_receiving)
        already = existing.aggregate(total=Sum('received_qty'))['total'] or 0

        max_allowed = Decimal(ordered) * (Decimal('1') + tolerance)
        if already + new_qty > max_allowed:
            raise OverReceiptError(
                f"Receiving {new_qty} of {product.product_code} would exceed the ordered "
                f"quantity {ordered} by more than {tolerance:%}",
                po_number=po.po_number,
                product=product.product_code,
                ordered=ordered,
                already_received=already,
                new=new_qty,
                max_allowed=max_allowed,
            )

        if new_qty == 0:
            logger.warning(
                "Zero quantity received for %s on PO %s", product.product_code, po.po_number
            )


def _write_lines(receiving, prepared):
    receiving.lines.all().delete()
    ReceivedLine.objects.bulk_create([
        ReceivedLine(receiving=receiving, **line) for line in prepared
    ])
    if not receiving.invoice_amount_is_manual:
        receiving.invoice_amount = receiving.computed_invoice_amount()
        receiving.save(update_fields=['invoice_amount', 'updated_at'])


# ============================================================================
# RECEIPT PROJECTION
# ============================================================================

def recompute_po_receipts(po, actor=None):
    """
    Project qualifying receivings onto the purchase order.

    For every line: received_qty = sum over qualifying receivings,
    backlog_qty = max(0, ordered - received). While the PO is in a receipt
    stage it moves to ``received`` when nothing is outstanding and
    ``partial_received`` when something has arrived. Safe to run repeatedly.
    """
    with transaction.atomic():
        po = PurchaseOrder.get_for_update(po)
        received = dict(
            ReceivedLine.objects.filter(
                receiving__purchase_order=po,
                receiving__status__in=InvoiceReceiving.QUALIFYING_STATUSES,
            ).values('po_line').annotate(total=Sum('received_qty')).values_list('po_line', 'total')
        )

        lines = list(po.lines.all())
        for line in lines:
            line.received_qty = received.get(line.id, 0) or 0
            line.backlog_qty = max(0, line.ordered_qty - line.received_qty)
            line.save(update_fields=['received_qty', 'backlog_qty', 'updated_at'])

        if po.stage in workflow.RECEIPT_STAGES:
            any_received = any(line.received_qty > 0 for line in lines)
            fully_received = all(line.backlog_qty == 0 for line in lines)
            if any_received and fully_received:
                target = workflow.RECEIVED
            elif any_received:
                target = workflow.PARTIAL_RECEIVED
            else:
                target = po.stage

            if target != po.stage:
                from_stage = po.stage
                po.stage = target
                po.save(update_fields=['stage', 'updated_at'])
                record_history(po, 'receive', from_stage, actor, "Receipt quantities recomputed")
                logger.info("PO %s: receive %s -> %s", po.po_number, from_stage, target)

    return po


def close_fulfilled_po(po, actor=None):
    """
    Complete a fully received purchase order once every qualifying receiving
    has finished QC and warehouse approval.

    The PO walks ``qc_check -> approve -> complete`` with one history entry per
    step. Runs inside the caller's transaction; the caller holds the PO lock.
    Returns True when the PO was completed.
    """
    if po.stage != workflow.RECEIVED or po.lines.filter(backlog_qty__gt=0).exists():
        return False
    receivings = po.receivings.filter(status__in=InvoiceReceiving.QUALIFYING_STATUSES)
    if not receivings.exists() or receivings.exclude(status='completed').exists():
        return False

    for action in ('qc_check', 'approve', 'complete'):
        from_stage = po.stage
        po.stage = workflow.next_stage(from_stage, action)
        if po.stage == workflow.COMPLETED:
            po.closed_at = timezone.now()
        po.save(update_fields=['stage', 'closed_at', 'updated_at'])
        record_history(po, action, from_stage, actor, "All receivings inspected and stocked")

    logger.info("PO %s completed after warehouse approval", po.po_number)
    return True


# ============================================================================
# RECEIVING OPERATIONS
# ============================================================================

def submit_receiving(po, lines, actor=None, as_draft=False, **fields):
    """
    Record a delivery against a purchase order.

    The receiving is validated against the PO and the tolerance, saved as a
    draft, submitted (unless ``as_draft``) and projected onto the PO in one
    transaction. Nothing is written when validation fails.

    Args:
        po: PurchaseOrder instance or id
        lines: list of dicts with product (or po_line), received_qty and
            optional batch_no, mfg_date, exp_date, foc, unit_price, status, remarks
        actor: receiving user
        fields: invoice_number, invoice_date, invoice_amount, due_date,
            received_date, notes, qc_required

    Raises:
        NotFound, InvalidPOState, InvalidInput, InvalidQuantity, OverReceiptError
    """
    unknown = set(fields) - set(RECEIVING_FIELDS)
    if unknown:
        raise InvalidInput("Unknown receiving fields", fields=sorted(unknown))
    if fields.get('invoice_amount') is not None:
        fields['invoice_amount'] = to_decimal(fields['invoice_amount'], 'invoice_amount')
        fields['invoice_amount_is_manual'] = True
    else:
        fields.pop('invoice_amount', None)

    with transaction.atomic():
        po = _lock_receivable_po(po)
        prepared = _prepare_lines(po, lines)
        check_tolerance(po, prepared)

        receiving = InvoiceReceiving.objects.create(
            purchase_order=po,
            received_by=actor,
            status='draft',
            **fields
        )
        _write_lines(receiving, prepared)

        if not as_draft:
            receiving.status = 'submitted'
            receiving.submitted_at = timezone.now()
            receiving.save(update_fields=['status', 'submitted_at', 'updated_at'])

        recompute_po_receipts(po, actor)

    logger.info(
        "Receiving %s recorded for PO %s (%s units, %s)",
        receiving.receiving_number, po.po_number,
        sum(line['received_qty'] for line in prepared), receiving.status
    )
    return receiving


def _lock_receiving(receiving):
    receiving_id = getattr(receiving, 'pk', receiving)
    po_id = InvoiceReceiving.objects.filter(pk=receiving_id).values_list('purchase_order_id', flat=True).first()
    if po_id is None:
        raise NotFound("Invoice receiving not found", model='InvoiceReceiving', id=receiving_id)
    po = PurchaseOrder.get_for_update(po_id)
    return po, InvoiceReceiving.get_for_update(receiving_id)


def update_receiving(receiving, actor=None, lines=None, **fields):
    """
    Edit a draft or submitted receiving. Replacement lines are validated
    against the tolerance without counting the receiving's own old lines.
    """
    unknown = set(fields) - set(RECEIVING_FIELDS)
    if unknown:
        raise InvalidInput("Unknown receiving fields", fields=sorted(unknown))

    with transaction.atomic():
        po, receiving = _lock_receiving(receiving)
        if not receiving.is_editable:
            raise ForbiddenTransition(
                f"Receiving {receiving.receiving_number} cannot be edited in status '{receiving.status}'",
                receiving_number=receiving.receiving_number,
                status=receiving.status,
            )

        for field, value in fields.items():
            if field == 'invoice_amount':
                # None hands the amount back to the line total
                receiving.invoice_amount_is_manual = value is not None
                value = receiving.computed_invoice_amount() if value is None else to_decimal(
                    value, 'invoice_amount'
                )
            setattr(receiving, field, value)
        receiving.save()

        if lines is not None:
            prepared = _prepare_lines(po, lines)
            check_tolerance(po, prepared, exclude_receiving=receiving)
            _write_lines(receiving, prepared)

        recompute_po_receipts(po, actor)

    logger.info("Receiving %s updated", receiving.receiving_number)
    return receiving


def submit_draft_receiving(receiving, actor=None):
    """Submit a draft receiving so it counts towards the PO."""
    with transaction.atomic():
        po, receiving = _lock_receiving(receiving)
        if receiving.status != 'draft':
            raise ForbiddenTransition(
                f"Receiving {receiving.receiving_number} is not a draft",
                receiving_number=receiving.receiving_number,
                status=receiving.status,
            )
        if po.status not in workflow.RECEIVABLE_STATUSES:
            raise InvalidPOState(
                f"Purchase order {po.po_number} cannot receive goods in status '{po.status}'",
                po_number=po.po_number,
                status=po.status,
            )

        prepared = [
            {'product': line.product, 'received_qty': line.received_qty}
            for line in receiving.lines.select_related('product')
        ]
        check_tolerance(po, prepared, exclude_receiving=receiving)

        receiving.status = 'submitted'
        receiving.submitted_at = timezone.now()
        receiving.save(update_fields=['status', 'submitted_at', 'updated_at'])
        recompute_po_receipts(po, actor)

    logger.info("Receiving %s submitted", receiving.receiving_number)
    return receiving


def delete_receiving(receiving, actor=None):
    """Delete a draft receiving."""
    with transaction.atomic():
        po, receiving = _lock_receiving(receiving)
        if receiving.status != 'draft':
            raise ForbiddenTransition(
                f"Only draft receivings can be deleted; {receiving.receiving_number} is '{receiving.status}'",
                receiving_number=receiving.receiving_number,
                status=receiving.status,
            )
        number = receiving.receiving_number
        receiving.delete()
        recompute_po_receipts(po, actor)

    logger.info("Receiving %s deleted", number)
