"""
Purchase Order Services
=======================
This module contains:
1. create_purchase_order / update_purchase_order
2. perform_action - the single entry point that moves a PO between stages
3. Named wrappers for each workflow action
4. record_history - append-only audit trail writer
"""

import logging
from decimal import Decimal, InvalidOperation

from django.db import transaction
from django.db.models import Max
from django.utils import timezone

from core.exceptions import ForbiddenTransition, InvalidInput, InvalidQuantity, NotFound
from inventory.models import Product
from . import workflow
from .models import PurchaseOrder, PurchaseOrderLine, WorkflowHistoryEntry
from .signals import purchase_order_ordered

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    'po_date', 'principal', 'ship_to', 'to_emails', 'cc_emails', 'terms', 'notes',
    'additional_discount_type', 'additional_discount_value', 'tax_type', 'gst_rate',
    'shipping_charges_type', 'shipping_charges_value',
)


# ============================================================================
# HISTORY
# ============================================================================

def record_history(po, action, from_stage, actor=None, remarks='', changes=None):
    """Append one workflow history entry for ``po`` (caller holds the PO lock)."""
    last_sequence = po.history.aggregate(last=Max('sequence'))['last'] or 0
    return WorkflowHistoryEntry.objects.create(
        purchase_order=po,
        sequence=last_sequence + 1,
        from_stage=from_stage,
        stage=po.stage,
        action=action,
        actor=actor,
        remarks=remarks or '',
        changes=changes,
    )


# ============================================================================
# LINES
# ============================================================================

def to_decimal(value, field):
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidInput(f"{field} must be a number", **{field: value})
    if result < 0:
        raise InvalidQuantity(f"{field} cannot be negative", **{field: value})
    return result


def _build_lines(po, lines):
    if not lines:
        raise InvalidInput("A purchase order needs at least one line", po_number=po.po_number)

    built = []
    for position, data in enumerate(lines):
        product = data.get('product')
        product_id = getattr(product, 'pk', product)
        product = Product.objects.filter(pk=product_id).first()
        if product is None:
            raise NotFound("Product not found", model='Product', id=product_id)

        ordered_qty = data.get('ordered_qty')
        foc = data.get('foc', 0)
        for field, value, minimum in (('ordered_qty', ordered_qty, 1), ('foc', foc, 0)):
            if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
                raise InvalidQuantity(
                    f"{field} must be a whole number of at least {minimum}",
                    product=product.product_code, **{field: value}
                )
        if foc > ordered_qty:
            raise InvalidQuantity(
                "FOC quantity cannot exceed ordered quantity",
                product=product.product_code, ordered_qty=ordered_qty, foc=foc
            )

        discount_type = data.get('discount_type', 'amount')
        if discount_type not in ('amount', 'percentage'):
            raise InvalidInput("Unknown discount type", discount_type=discount_type)

        built.append(PurchaseOrderLine(
            po=po,
            product=product,
            position=position,
            ordered_qty=ordered_qty,
            foc=foc,
            unit_price=to_decimal(data.get('unit_price', 0), 'unit_price'),
            discount=to_decimal(data.get('discount', 0), 'discount'),
            discount_type=discount_type,
        ))

    for line in built:
        line.save()
    return built


def _line_summary(po):
    return [
        {
            'product': line.product.product_code,
            'ordered_qty': line.ordered_qty,
            'foc': line.foc,
            'unit_price': str(line.unit_price),
        }
        for line in po.lines.select_related('product')
    ]


def _serialize(value):
    if value is None or isinstance(value, (bool, int, str, list, dict)):
        return value
    return str(getattr(value, 'pk', value))


# ============================================================================
# CREATE / UPDATE
# ============================================================================

def create_purchase_order(principal, lines, actor=None, remarks='', **fields):
    """
    Create a purchase order in draft with its lines and computed totals.

    Args:
        principal: Principal instance
        lines: list of dicts with product, ordered_qty, unit_price and
            optional foc, discount, discount_type
        actor: requesting user
    """
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise InvalidInput("Unknown purchase order fields", fields=sorted(unknown))

    with transaction.atomic():
        po = PurchaseOrder(principal=principal, requested_by=actor, stage=workflow.DRAFT, **fields)
        po.save()
        _build_lines(po, lines)
        po.calculate_totals()
        po.save()
        record_history(po, 'created', '', actor, remarks)

    logger.info("Created purchase order %s with %s lines", po.po_number, len(lines))
    return po


def update_purchase_order(po, actor=None, lines=None, remarks='', **fields):
    """
    Edit a purchase order while its stage allows ``edit``.

    The history entry records a field-level diff of what changed.

    Raises:
        ForbiddenTransition: stage does not allow editing
    """
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise InvalidInput("Unknown purchase order fields", fields=sorted(unknown))

    with transaction.atomic():
        po = PurchaseOrder.get_for_update(po)
        workflow.next_stage(po.stage, 'edit')

        changes = {}
        for field, new_value in fields.items():
            old_value = getattr(po, field)
            if old_value != new_value:
                changes[field] = {'old': _serialize(old_value), 'new': _serialize(new_value)}
                setattr(po, field, new_value)

        if lines is not None:
            old_lines = _line_summary(po)
            po.lines.all().delete()
            _build_lines(po, lines)
            new_lines = _line_summary(po)
            if old_lines != new_lines:
                changes['lines'] = {'old': old_lines, 'new': new_lines}

        po.calculate_totals()
        po.save()
        record_history(po, 'edit', po.stage, actor, remarks, changes or None)

    logger.info("Updated purchase order %s (%s)", po.po_number, ', '.join(changes) or 'no changes')
    return po


# ============================================================================
# WORKFLOW ACTIONS
# ============================================================================

def perform_action(po, action, actor=None, remarks=''):
    """
    Perform a workflow action on a purchase order.

    Moves the PO exactly one stage and appends exactly one history entry.
    A notification is sent after commit when the PO reaches ``ordered``.

    Raises:
        ForbiddenTransition: action not allowed in the current stage
        InvalidInput: reject/return/cancel without remarks
    """
    if action in ('edit', 'receive'):
        raise ForbiddenTransition(
            f"'{action}' is performed through its own operation",
            action=action,
        )

    with transaction.atomic():
        po = PurchaseOrder.get_for_update(po)
        from_stage = po.stage
        target = workflow.next_stage(from_stage, action)

        if action in workflow.REMARKS_REQUIRED and not (remarks or '').strip():
            raise InvalidInput(f"Remarks are required to {action} a purchase order", action=action)

        now = timezone.now()
        po.stage = target
        if target == workflow.PENDING_APPROVAL and from_stage == workflow.DRAFT:
            po.submitted_at = now
        elif target == workflow.APPROVED_FINAL:
            po.approved_by = actor
            po.approved_at = now
        elif target == workflow.ORDERED and from_stage == workflow.APPROVED_FINAL:
            po.ordered_at = now
        elif target in workflow.TERMINAL_STAGES:
            po.closed_at = now
        po.save()

        record_history(po, action, from_stage, actor, remarks)

        if target == workflow.ORDERED and from_stage == workflow.APPROVED_FINAL:
            transaction.on_commit(
                lambda: purchase_order_ordered.send_robust(sender=PurchaseOrder, purchase_order=po)
            )

    logger.info("PO %s: %s %s -> %s", po.po_number, action, from_stage, target)
    return po


def submit_purchase_order(po, actor=None, remarks=''):
    return perform_action(po, 'submit', actor, remarks)


def approve_purchase_order(po, actor=None, remarks=''):
    """Advance one approval level: pending -> L1 -> final -> ordered."""
    return perform_action(po, 'approve', actor, remarks)


def reject_purchase_order(po, actor=None, remarks=''):
    return perform_action(po, 'reject', actor, remarks)


def return_purchase_order(po, actor=None, remarks=''):
    return perform_action(po, 'return', actor, remarks)


def cancel_purchase_order(po, actor=None, remarks=''):
    return perform_action(po, 'cancel', actor, remarks)


def start_quality_check(po, actor=None, remarks=''):
    return perform_action(po, 'qc_check', actor, remarks)


def complete_purchase_order(po, actor=None, remarks=''):
    return perform_action(po, 'complete', actor, remarks)


def replay_history(po):
    """Stage reconstructed from the PO's workflow history."""
    return workflow.replay_stage(po.history.order_by('sequence'))
