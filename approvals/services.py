"""
Warehouse Approval Services
===========================
This module contains:
1. create_from_quality_control - open approval for QC-passed products
2. record_warehouse_check - per-product warehouse decision
3. record_manager_action - sequential manager levels; the final approval
   creates inventory in the same transaction
"""

import logging

from django.db import transaction
from django.utils import timezone

from core.conf import procurement_setting
from core.exceptions import ForbiddenTransition, IncompleteSubmission, InvalidInput, InvalidQuantity, NotFound
from core.models import Warehouse
from inventory.services import receive_into_stock
from .models import ManagerApproval, WarehouseApprovalRecord, WarehouseProduct, reduce_decisions

logger = logging.getLogger(__name__)

LOCATION_FIELDS = ('zone', 'rack', 'shelf', 'bin')


def create_from_quality_control(qc, actor=None):
    """
    Open a warehouse approval seeded with every passed or partially passed
    product of an approved QC record. Runs inside the caller's transaction.

    Returns:
        WarehouseApprovalRecord, or None when no product passed
    """
    products = [p for p in qc.products.select_related('product') if p.overall_status in ('passed', 'partial_pass')]
    if not products:
        logger.info("QC %s has no passed products; no warehouse approval opened", qc.qc_number)
        return None

    po = qc.purchase_order
    approval = WarehouseApprovalRecord.objects.create(
        quality_control=qc,
        invoice_receiving=qc.invoice_receiving,
        purchase_order=po,
        warehouse=po.ship_to,
        priority=qc.priority,
    )
    WarehouseProduct.objects.bulk_create([
        WarehouseProduct(
            approval=approval,
            position=position,
            qc_product=qc_product,
            product=qc_product.product,
            batch_no=qc_product.batch_no,
            mfg_date=qc_product.mfg_date,
            exp_date=qc_product.exp_date,
            qc_passed_qty=qc_product.passed_qty,
            warehouse_qty=qc_product.passed_qty,
        )
        for position, qc_product in enumerate(products)
    ])

    logger.info(
        "Opened warehouse approval %s for QC %s (%s products)",
        approval.approval_number, qc.qc_number, len(products)
    )
    return approval


def _lock_chain(approval):
    """Lock purchase order, receiving, QC and approval, in that order."""
    from procurement.models import InvoiceReceiving, PurchaseOrder
    from quality.models import QualityControlRecord

    approval_id = getattr(approval, 'pk', approval)
    ids = WarehouseApprovalRecord.objects.filter(pk=approval_id).values_list(
        'purchase_order_id', 'invoice_receiving_id', 'quality_control_id'
    ).first()
    if ids is None:
        raise NotFound("Warehouse approval not found", model='WarehouseApprovalRecord', id=approval_id)
    po = PurchaseOrder.get_for_update(ids[0])
    receiving = InvoiceReceiving.get_for_update(ids[1])
    QualityControlRecord.get_for_update(ids[2])
    return po, receiving, WarehouseApprovalRecord.get_for_update(approval_id)


def record_warehouse_check(approval, product_index, decision, actor=None, approved_qty=None, warehouse=None,
                           location=None, conditions=None, rejection_reasons=None, remarks=''):
    """
    Record the warehouse decision for one product.

    approved          - approved_qty = warehouse_qty
    rejected          - approved_qty = 0
    partial_approved  - approved_qty given explicitly, 0 <= approved_qty <= warehouse_qty

    Once every product is decided the record waits for manager approval.
    """
    if decision not in ('approved', 'rejected', 'partial_approved'):
        raise InvalidInput("Unknown warehouse decision", decision=decision)
    location = location or {}
    unknown = set(location) - set(LOCATION_FIELDS)
    if unknown:
        raise InvalidInput("Unknown location fields", fields=sorted(unknown))
    known_reasons = set(dict(WarehouseProduct.REJECTION_REASONS))
    if rejection_reasons and set(rejection_reasons) - known_reasons:
        raise InvalidInput(
            "Unknown rejection reasons", reasons=sorted(set(rejection_reasons) - known_reasons)
        )

    with transaction.atomic():
        approval = WarehouseApprovalRecord.get_for_update(approval)
        if approval.status not in ('pending', 'in_progress', 'pending_manager_approval'):
            raise ForbiddenTransition(
                f"Warehouse approval {approval.approval_number} is '{approval.status}'",
                approval_number=approval.approval_number,
                status=approval.status,
            )
        if approval.manager_approvals.exists():
            raise ForbiddenTransition(
                f"Warehouse approval {approval.approval_number} already has manager actions",
                approval_number=approval.approval_number,
            )

        product = approval.products.filter(position=product_index).first()
        if product is None:
            raise NotFound(
                "Warehouse product not found",
                approval_number=approval.approval_number, product_index=product_index
            )

        if decision == 'approved':
            qty = product.warehouse_qty
        elif decision == 'rejected':
            qty = 0
        else:
            if isinstance(approved_qty, bool) or not isinstance(approved_qty, int) \
                    or approved_qty < 0 or approved_qty > product.warehouse_qty:
                raise InvalidQuantity(
                    "Partial approval needs a quantity between 0 and the warehouse quantity",
                    product=product.product.product_code,
                    approved_qty=approved_qty,
                    warehouse_qty=product.warehouse_qty,
                )
            qty = approved_qty

        if warehouse is not None:
            warehouse_obj = Warehouse.objects.filter(pk=getattr(warehouse, 'pk', warehouse)).first()
            if warehouse_obj is None:
                raise NotFound("Warehouse not found", model='Warehouse', id=warehouse)
            product.warehouse = warehouse_obj

        product.decision = decision
        product.approved_qty = qty
        product.rejected_qty = product.warehouse_qty - qty
        for key in LOCATION_FIELDS:
            if key in location:
                setattr(product, key, location[key] or '')
        if conditions is not None:
            product.storage_conditions = conditions
        product.rejection_reasons = list(rejection_reasons or [])
        product.remarks = remarks
        product.checked_by = actor
        product.checked_at = timezone.now()
        product.save()

        decisions = list(approval.products.values_list('decision', flat=True))
        approval.overall_result = reduce_decisions(decisions)
        if approval.overall_result == 'pending':
            approval.status = 'in_progress'
        else:
            approval.status = 'pending_manager_approval'
        approval.save()

    logger.info(
        "Warehouse approval %s product %s: %s (%s units)",
        approval.approval_number, product_index, decision, qty
    )
    return product


def record_manager_action(approval, level, action, actor=None, remarks='', conditions=None):
    """
    Append a manager action.

    Levels run 1..WAREHOUSE_APPROVAL_LEVELS in order. Approval at the last
    level completes the record and creates one inventory record per product
    with approved_qty > 0; rejection at any level rejects the record and its
    receiving. Completing the last outstanding receiving of a fully received
    purchase order also completes the purchase order. Everything happens in
    one transaction.
    """
    if action not in ('approve', 'reject'):
        raise InvalidInput("Unknown manager action", action=action)
    if action == 'reject' and not (remarks or '').strip():
        raise InvalidInput("Remarks are required to reject a warehouse approval")

    from procurement.receiving import close_fulfilled_po, recompute_po_receipts

    final_level = procurement_setting('WAREHOUSE_APPROVAL_LEVELS')

    with transaction.atomic():
        po, receiving, approval = _lock_chain(approval)
        if approval.status != 'pending_manager_approval':
            if approval.status in ('pending', 'in_progress') and not approval.all_products_decided:
                raise IncompleteSubmission(
                    f"Warehouse approval {approval.approval_number} has undecided products",
                    approval_number=approval.approval_number,
                    pending_products=approval.products.filter(decision='pending').count(),
                )
            raise ForbiddenTransition(
                f"Warehouse approval {approval.approval_number} is '{approval.status}'",
                approval_number=approval.approval_number,
                status=approval.status,
            )

        expected = approval.get_next_approval_level()
        if level != expected:
            raise ForbiddenTransition(
                f"Expected approval level {expected}, got {level}",
                approval_number=approval.approval_number,
                expected_level=expected,
                level=level,
            )

        ManagerApproval.objects.create(
            approval=approval,
            level=level,
            action=action,
            actor=actor,
            remarks=remarks,
            conditions=list(conditions or []),
        )

        if action == 'reject':
            approval.status = 'rejected'
            approval.inventory_integration_status = 'not_required'
            approval.save()
            receiving.status = 'rejected'
            receiving.save(update_fields=['status', 'updated_at'])
            recompute_po_receipts(po, actor)
            logger.info("Warehouse approval %s rejected at level %s", approval.approval_number, level)
            return approval

        if level < final_level:
            approval.save()
            logger.info("Warehouse approval %s approved at level %s", approval.approval_number, level)
            return approval

        inventory = []
        for product in approval.products.select_related(
            'product', 'qc_product__received_line', 'warehouse', 'product__default_warehouse'
        ):
            if product.approved_qty:
                inventory.append(receive_into_stock(product, actor))

        approval.status = 'completed'
        approval.final_approval_date = timezone.now()
        approval.inventory_integration_status = 'completed' if inventory else 'not_required'
        approval.save()
        receiving.status = 'completed'
        receiving.save(update_fields=['status', 'updated_at'])
        close_fulfilled_po(po, actor)

    logger.info(
        "Warehouse approval %s completed; %s inventory records created",
        approval.approval_number, len(inventory)
    )
    return approval
