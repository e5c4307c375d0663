"""
Quality Control Services
========================
This module contains:
1. create_qc_record - open inspection of a submitted receiving
2. record_item_result / record_item_results - unit outcomes
3. submit_for_approval
4. approve_qc / reject_qc - terminal manager decisions
"""

import logging

from django.db import transaction
from django.utils import timezone

from approvals.services import create_from_quality_control
from core.exceptions import ForbiddenTransition, IncompleteSubmission, InvalidInput, InvalidQuantity, NotFound
from procurement.models import InvoiceReceiving, PurchaseOrder
from procurement.receiving import recompute_po_receipts
from .models import QC_REASONS, QCItemDetail, QCProduct, QualityControlRecord, reduce_product_statuses

logger = logging.getLogger(__name__)


# ============================================================================
# LOCKING
# ============================================================================

def _lock_chain(qc):
    """Lock purchase order, receiving and QC record, in that order."""
    qc_id = getattr(qc, 'pk', qc)
    ids = QualityControlRecord.objects.filter(pk=qc_id).values_list(
        'purchase_order_id', 'invoice_receiving_id'
    ).first()
    if ids is None:
        raise NotFound("Quality control record not found", model='QualityControlRecord', id=qc_id)
    po = PurchaseOrder.get_for_update(ids[0])
    receiving = InvoiceReceiving.get_for_update(ids[1])
    return po, receiving, QualityControlRecord.get_for_update(qc_id)


def _require_status(qc, *statuses):
    if qc.status not in statuses:
        raise ForbiddenTransition(
            f"QC {qc.qc_number} is '{qc.status}'",
            qc_number=qc.qc_number,
            status=qc.status,
            expected=list(statuses),
        )


# ============================================================================
# CREATION
# ============================================================================

def create_qc_record(receiving, actor=None, qc_type='standard', priority='medium', assigned_to=None):
    """
    Open a QC record for a submitted receiving.

    One pending item is created for every unit received; lines with zero
    quantity are not inspected.
    """
    receiving_id = getattr(receiving, 'pk', receiving)
    po_id = InvoiceReceiving.objects.filter(pk=receiving_id).values_list('purchase_order_id', flat=True).first()
    if po_id is None:
        raise NotFound("Invoice receiving not found", model='InvoiceReceiving', id=receiving_id)

    with transaction.atomic():
        po = PurchaseOrder.get_for_update(po_id)
        receiving = InvoiceReceiving.get_for_update(receiving_id)
        if receiving.status != 'submitted':
            raise ForbiddenTransition(
                f"Receiving {receiving.receiving_number} must be submitted before QC",
                receiving_number=receiving.receiving_number,
                status=receiving.status,
            )
        if QualityControlRecord.objects.filter(invoice_receiving=receiving).exists():
            raise ForbiddenTransition(
                f"Receiving {receiving.receiving_number} already has a QC record",
                receiving_number=receiving.receiving_number,
            )

        lines = [line for line in receiving.lines.select_related('product') if line.received_qty > 0]
        if not lines:
            raise InvalidQuantity(
                f"Receiving {receiving.receiving_number} has no units to inspect",
                receiving_number=receiving.receiving_number,
            )

        qc = QualityControlRecord.objects.create(
            invoice_receiving=receiving,
            purchase_order=po,
            qc_type=qc_type,
            priority=priority,
            assigned_to=assigned_to,
        )
        for position, line in enumerate(lines):
            product = QCProduct.objects.create(
                qc=qc,
                position=position,
                received_line=line,
                product=line.product,
                batch_no=line.batch_no,
                mfg_date=line.mfg_date,
                exp_date=line.exp_date,
                received_qty=line.received_qty,
            )
            QCItemDetail.objects.bulk_create([
                QCItemDetail(product=product, item_number=number)
                for number in range(1, line.received_qty + 1)
            ])

        receiving.status = 'qc_pending'
        receiving.qc_status = 'in_progress'
        receiving.save(update_fields=['status', 'qc_status', 'updated_at'])

    logger.info(
        "Opened QC %s for receiving %s (%s units)",
        qc.qc_number, receiving.receiving_number, sum(line.received_qty for line in lines)
    )
    return qc


# ============================================================================
# INSPECTION
# ============================================================================

def record_item_results(qc, product_index, results, actor=None):
    """
    Record outcomes for several units of one product.

    Args:
        qc: QualityControlRecord instance or id
        product_index: 0-based product position
        results: iterable of dicts with item_index (0-based), status and
            optional reasons, remarks

    Returns:
        QCProduct with refreshed summary and status
    """
    results = list(results)
    for result in results:
        if result.get('status') not in dict(QCItemDetail.STATUS_CHOICES):
            raise InvalidInput("Unknown item status", status=result.get('status'))
        unknown = set(result.get('reasons') or []) - QC_REASONS
        if unknown:
            raise InvalidInput("Unknown QC reason codes", reasons=sorted(unknown))

    with transaction.atomic():
        qc = QualityControlRecord.get_for_update(qc)
        _require_status(qc, 'pending', 'in_progress')

        product = qc.products.filter(position=product_index).first()
        if product is None:
            raise NotFound("QC product not found", qc_number=qc.qc_number, product_index=product_index)

        now = timezone.now()
        for result in results:
            item_index = result.get('item_index')
            item = product.items.filter(item_number=item_index + 1).first() if isinstance(item_index, int) else None
            if item is None:
                raise NotFound(
                    "QC item not found",
                    qc_number=qc.qc_number, product_index=product_index, item_index=item_index
                )
            item.status = result['status']
            item.reasons = list(result.get('reasons') or [])
            item.remarks = result.get('remarks', '') or ''
            item.inspected_by = actor if item.status != 'pending' else None
            item.inspected_at = now if item.status != 'pending' else None
            item.save()

        product.refresh_results()
        qc.overall_result = reduce_product_statuses(qc.products.values_list('overall_status', flat=True))
        if qc.status == 'pending':
            qc.status = 'in_progress'
        if qc.qc_date is None:
            qc.qc_date = now
            qc.qc_by = actor
        qc.save()

    logger.info(
        "QC %s product %s: %s units recorded, status %s",
        qc.qc_number, product_index, len(results), product.overall_status
    )
    return product


def record_item_result(qc, product_index, item_index, status, reasons=None, actor=None, remarks=''):
    """Record the outcome of one unit and recompute product and record results."""
    return record_item_results(
        qc, product_index,
        [{'item_index': item_index, 'status': status, 'reasons': reasons or [], 'remarks': remarks}],
        actor=actor,
    )


def submit_for_approval(qc, actor=None, remarks='', environment=None):
    """
    Freeze an inspected record for manager approval.

    Raises:
        IncompleteSubmission: some units are still pending
    """
    with transaction.atomic():
        qc = QualityControlRecord.get_for_update(qc)
        _require_status(qc, 'in_progress')

        pending = qc.pending_item_count()
        if pending:
            raise IncompleteSubmission(
                f"QC {qc.qc_number} still has {pending} uninspected units",
                qc_number=qc.qc_number,
                pending_items=pending,
            )

        qc.status = 'pending_approval'
        qc.submitted_at = timezone.now()
        qc.qc_remarks = remarks
        if environment:
            qc.environment = environment
        qc.save()

    logger.info("QC %s submitted for approval (%s)", qc.qc_number, qc.overall_result)
    return qc


# ============================================================================
# MANAGER DECISION
# ============================================================================

def approve_qc(qc, actor=None, remarks=''):
    """
    Approve an inspected record.

    The record completes and a warehouse approval is opened for every
    product that passed or partially passed. When nothing passed, the
    receiving completes with no warehouse approval.

    Returns:
        WarehouseApprovalRecord or None
    """
    with transaction.atomic():
        po, receiving, qc = _lock_chain(qc)
        _require_status(qc, 'pending_approval')

        now = timezone.now()
        qc.status = 'completed'
        qc.approval_status = 'approved'
        qc.approved_by = actor
        qc.approval_date = now
        qc.approval_remarks = remarks
        qc.save()

        for product in qc.products.select_related('received_line'):
            line = product.received_line
            line.qc_status = product.overall_status
            line.save(update_fields=['qc_status'])

        receiving.qc_status = qc.overall_result
        approval = create_from_quality_control(qc, actor)
        if approval is None:
            receiving.status = 'completed'
        receiving.save(update_fields=['status', 'qc_status', 'updated_at'])

    logger.info("QC %s approved (%s)", qc.qc_number, qc.overall_result)
    return approval


def reject_qc(qc, actor=None, remarks=''):
    """Reject a record; its receiving is rejected and stops counting towards the PO."""
    if not (remarks or '').strip():
        raise InvalidInput("Remarks are required to reject a QC record")

    with transaction.atomic():
        po, receiving, qc = _lock_chain(qc)
        _require_status(qc, 'pending_approval')

        qc.status = 'rejected'
        qc.approval_status = 'rejected'
        qc.approved_by = actor
        qc.approval_date = timezone.now()
        qc.approval_remarks = remarks
        qc.save()

        receiving.status = 'rejected'
        receiving.qc_status = 'failed'
        receiving.save(update_fields=['status', 'qc_status', 'updated_at'])
        recompute_po_receipts(po, actor)

    logger.info("QC %s rejected: %s", qc.qc_number, remarks)
    return qc
