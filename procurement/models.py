"""
Procurement Models
==================
This module contains:
1. Purchase Orders (PO) & Lines
2. Workflow History (append-only PO audit trail)
3. Invoice Receivings & Received Lines
"""

import uuid
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Sum
from django.utils import timezone

from core.models import BaseModel, Warehouse, next_document_number
from inventory.models import Principal, Product
from . import workflow

TWO_PLACES = Decimal('0.01')

AMOUNT_TYPE_CHOICES = [
    ('amount', 'Amount'),
    ('percentage', 'Percentage'),
]


def _apply(base, value, value_type):
    if not value:
        return Decimal('0')
    if value_type == 'percentage':
        return base * Decimal(value) / Decimal('100')
    return Decimal(value)


# ============================================================================
# PURCHASE ORDER (PO)
# ============================================================================

class PurchaseOrder(BaseModel):
    """
    Purchase Order - Commitment to buy products from a principal.

    ``stage`` is moved only by the workflow services; ``status`` is derived
    from it on every save.
    """

    TAX_TYPES = [
        ('IGST', 'IGST'),
        ('CGST_SGST', 'CGST + SGST'),
    ]

    po_number = models.CharField(
        max_length=50,
        unique=True,
        editable=False,
        help_text="Auto-generated PO number (e.g., 'PO-2024-0001')"
    )
    po_date = models.DateField(
        default=timezone.localdate,
        help_text="PO date"
    )
    principal = models.ForeignKey(
        Principal,
        on_delete=models.PROTECT,
        related_name='purchase_orders',
        help_text="Principal (supplier)"
    )
    ship_to = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='purchase_orders',
        help_text="Delivery warehouse"
    )
    to_emails = models.JSONField(
        default=list,
        blank=True,
        help_text="Addresses notified when the PO is ordered"
    )
    cc_emails = models.JSONField(
        default=list,
        blank=True,
        help_text="Copy addresses for the order notification"
    )
    terms = models.TextField(
        blank=True,
        default='',
        help_text="Terms and conditions"
    )
    notes = models.TextField(
        blank=True,
        default='',
        help_text="Internal notes"
    )

    # Workflow
    stage = models.CharField(
        max_length=30,
        choices=workflow.STAGE_CHOICES,
        default=workflow.DRAFT,
        editable=False,
        help_text="Current workflow stage"
    )
    status = models.CharField(
        max_length=30,
        choices=workflow.STATUS_CHOICES,
        default='draft',
        editable=False,
        help_text="Status (derived from stage)"
    )
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='requested_purchase_orders',
        help_text="User who created the PO"
    )
    submitted_at = models.DateTimeField(null=True, blank=True)
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='approved_purchase_orders',
        help_text="User who gave final approval"
    )
    approved_at = models.DateTimeField(null=True, blank=True)
    ordered_at = models.DateTimeField(null=True, blank=True)
    closed_at = models.DateTimeField(null=True, blank=True)

    # Financial summary
    sub_total = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0'))
    product_level_discount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0'))
    additional_discount_type = models.CharField(max_length=20, choices=AMOUNT_TYPE_CHOICES, default='amount')
    additional_discount_value = models.DecimalField(
        max_digits=15, decimal_places=2, default=Decimal('0'), validators=[MinValueValidator(0)]
    )
    tax_type = models.CharField(max_length=20, choices=TAX_TYPES, default='IGST')
    gst_rate = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal('0'),
        validators=[MinValueValidator(0), MaxValueValidator(100)],
        help_text="GST percentage"
    )
    cgst = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0'))
    sgst = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0'))
    igst = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0'))
    shipping_charges_type = models.CharField(max_length=20, choices=AMOUNT_TYPE_CHOICES, default='amount')
    shipping_charges_value = models.DecimalField(
        max_digits=15, decimal_places=2, default=Decimal('0'), validators=[MinValueValidator(0)]
    )
    grand_total = models.DecimalField(
        max_digits=15,
        decimal_places=2,
        default=Decimal('0'),
        help_text="Grand total (calculated)"
    )

    class Meta:
        db_table = 'purchase_orders'
        verbose_name = 'Purchase Order'
        verbose_name_plural = 'Purchase Orders'
        ordering = ['-po_date', '-created_at']
        indexes = [
            models.Index(fields=['po_number']),
            models.Index(fields=['principal', 'status']),
            models.Index(fields=['stage']),
        ]

    def __str__(self):
        return f"{self.po_number} - {self.principal.name} ({self.status})"

    def save(self, *args, **kwargs):
        """Auto-generate PO number and derive status from stage."""
        if not self.po_number:
            year = timezone.now().year
            self.po_number = next_document_number(PurchaseOrder, 'po_number', f'PO-{year}-')

        self.status = workflow.status_for_stage(self.stage)
        update_fields = kwargs.get('update_fields')
        if update_fields is not None and 'stage' in update_fields and 'status' not in update_fields:
            kwargs['update_fields'] = list(update_fields) + ['status']

        super().save(*args, **kwargs)

    @property
    def allowed_actions(self):
        return workflow.allowed_actions(self.stage)

    @property
    def is_fully_received(self):
        return all(line.backlog_qty == 0 for line in self.lines.all())

    def calculate_totals(self):
        """
        Recalculate line totals and the financial summary from the lines.

        Line cost is (ordered - FOC) x unit price less the line discount;
        the additional discount applies to the subtotal; GST and shipping
        apply to the discounted total.
        """
        sub_total = Decimal('0')
        product_level_discount = Decimal('0')

        for line in self.lines.all():
            line.calculate_total()
            line.save(update_fields=['total_cost'])
            product_level_discount += line.discount_amount
            sub_total += line.total_cost

        total_after_discount = sub_total - _apply(
            sub_total, self.additional_discount_value, self.additional_discount_type
        )
        gst_amount = total_after_discount * self.gst_rate / Decimal('100')

        if self.tax_type == 'CGST_SGST':
            self.cgst = (gst_amount / 2).quantize(TWO_PLACES)
            self.sgst = (gst_amount / 2).quantize(TWO_PLACES)
            self.igst = Decimal('0')
        else:
            self.cgst = Decimal('0')
            self.sgst = Decimal('0')
            self.igst = gst_amount.quantize(TWO_PLACES)

        shipping = _apply(total_after_discount, self.shipping_charges_value, self.shipping_charges_type)

        self.sub_total = sub_total.quantize(TWO_PLACES)
        self.product_level_discount = product_level_discount.quantize(TWO_PLACES)
        self.grand_total = (total_after_discount + gst_amount + shipping).quantize(TWO_PLACES)
        return self


class PurchaseOrderLine(models.Model):
    """
    Individual product line in a Purchase Order.

    ``received_qty`` and ``backlog_qty`` are owned by the receipt projection.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    po = models.ForeignKey(
        PurchaseOrder,
        on_delete=models.CASCADE,
        related_name='lines',
        help_text="Purchase order"
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='po_lines',
        help_text="Product"
    )
    ordered_qty = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Ordered quantity"
    )
    foc = models.PositiveIntegerField(
        default=0,
        help_text="Free-of-charge quantity included in the order"
    )
    unit_price = models.DecimalField(
        max_digits=15,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        help_text="Unit price"
    )
    discount = models.DecimalField(
        max_digits=15,
        decimal_places=2,
        default=Decimal('0'),
        validators=[MinValueValidator(0)],
        help_text="Line discount"
    )
    discount_type = models.CharField(
        max_length=20,
        choices=AMOUNT_TYPE_CHOICES,
        default='amount'
    )
    total_cost = models.DecimalField(
        max_digits=15,
        decimal_places=2,
        default=Decimal('0'),
        help_text="Line total (calculated)"
    )
    received_qty = models.PositiveIntegerField(
        default=0,
        help_text="Quantity received across qualifying receivings"
    )
    backlog_qty = models.PositiveIntegerField(
        default=0,
        help_text="Quantity still to be received"
    )
    position = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'purchase_order_lines'
        verbose_name = 'Purchase Order Line'
        verbose_name_plural = 'Purchase Order Lines'
        ordering = ['po', 'position']

    def __str__(self):
        return f"{self.po.po_number} - {self.product.product_code} ({self.ordered_qty})"

    def clean(self):
        if self.foc > self.ordered_qty:
            raise ValidationError({'foc': "FOC quantity cannot exceed ordered quantity."})

    def save(self, *args, **kwargs):
        if self._state.adding:
            self.backlog_qty = self.ordered_qty - self.received_qty
        super().save(*args, **kwargs)

    @property
    def discount_amount(self):
        base = (self.ordered_qty - self.foc) * self.unit_price
        return _apply(base, self.discount, self.discount_type)

    def calculate_total(self):
        base = (self.ordered_qty - self.foc) * self.unit_price
        self.total_cost = (base - self.discount_amount).quantize(TWO_PLACES)
        return self.total_cost


# ============================================================================
# WORKFLOW HISTORY
# ============================================================================

class WorkflowHistoryEntry(models.Model):
    """
    Append-only audit trail of a purchase order.

    One entry per action; replaying the entries reproduces the PO stage.
    """
    id = models.BigAutoField(primary_key=True)
    purchase_order = models.ForeignKey(
        PurchaseOrder,
        on_delete=models.PROTECT,
        related_name='history',
        help_text="Purchase order"
    )
    sequence = models.PositiveIntegerField(
        help_text="Position in the PO history"
    )
    from_stage = models.CharField(
        max_length=30,
        blank=True,
        default='',
        help_text="Stage before the action"
    )
    stage = models.CharField(
        max_length=30,
        choices=workflow.STAGE_CHOICES,
        help_text="Stage after the action"
    )
    action = models.CharField(
        max_length=20,
        help_text="Action performed"
    )
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='po_history_entries',
    )
    acted_at = models.DateTimeField(default=timezone.now)
    remarks = models.TextField(blank=True, default='')
    changes = models.JSONField(
        null=True,
        blank=True,
        help_text="Field-level diff {field: {old, new}} for edits"
    )

    class Meta:
        db_table = 'purchase_order_history'
        verbose_name = 'Workflow History Entry'
        verbose_name_plural = 'Workflow History'
        ordering = ['purchase_order', 'sequence']
        constraints = [
            models.UniqueConstraint(fields=['purchase_order', 'sequence'], name='po_history_sequence_unique'),
        ]

    def __str__(self):
        return f"{self.purchase_order_id} #{self.sequence}: {self.action} -> {self.stage}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Workflow history entries cannot be modified.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Workflow history entries cannot be deleted.")


# ============================================================================
# INVOICE RECEIVING
# ============================================================================

class InvoiceReceiving(BaseModel):
    """
    Invoice Receiving - one physical delivery against a purchase order.
    """

    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('submitted', 'Submitted'),
        ('qc_pending', 'QC Pending'),
        ('completed', 'Completed'),
        ('rejected', 'Rejected'),
    ]

    QC_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('in_progress', 'In Progress'),
        ('passed', 'Passed'),
        ('failed', 'Failed'),
        ('partial_pass', 'Partial Pass'),
    ]

    # Receivings in these states count towards received quantities
    QUALIFYING_STATUSES = ('submitted', 'qc_pending', 'completed')
    EDITABLE_STATUSES = ('draft', 'submitted')

    receiving_number = models.CharField(
        max_length=50,
        unique=True,
        editable=False,
        help_text="Auto-generated receiving number (e.g., 'IR-2024-0001')"
    )
    purchase_order = models.ForeignKey(
        PurchaseOrder,
        on_delete=models.PROTECT,
        related_name='receivings',
        help_text="Purchase order"
    )
    invoice_number = models.CharField(
        max_length=100,
        blank=True,
        default='',
        help_text="Supplier invoice number"
    )
    invoice_date = models.DateField(null=True, blank=True)
    invoice_amount = models.DecimalField(
        max_digits=15,
        decimal_places=2,
        default=Decimal('0'),
        help_text="Invoice amount (computed from lines when not given)"
    )
    invoice_amount_is_manual = models.BooleanField(
        default=False,
        help_text="Amount was entered by hand and is not recomputed from lines"
    )
    due_date = models.DateField(null=True, blank=True)
    received_date = models.DateField(default=timezone.localdate)
    received_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='invoice_receivings',
    )
    notes = models.TextField(blank=True, default='')
    qc_required = models.BooleanField(default=True)
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='draft',
        help_text="Receiving status"
    )
    qc_status = models.CharField(
        max_length=20,
        choices=QC_STATUS_CHOICES,
        default='pending',
        help_text="Quality control progress"
    )
    submitted_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'invoice_receivings'
        verbose_name = 'Invoice Receiving'
        verbose_name_plural = 'Invoice Receivings'
        ordering = ['-received_date', '-created_at']
        indexes = [
            models.Index(fields=['purchase_order', 'status']),
            models.Index(fields=['invoice_number']),
        ]

    def __str__(self):
        return f"{self.receiving_number} for {self.purchase_order.po_number} ({self.status})"

    def save(self, *args, **kwargs):
        if not self.receiving_number:
            year = timezone.now().year
            self.receiving_number = next_document_number(InvoiceReceiving, 'receiving_number', f'IR-{year}-')
        super().save(*args, **kwargs)

    @property
    def is_qualifying(self):
        return self.status in self.QUALIFYING_STATUSES

    @property
    def is_editable(self):
        return self.status in self.EDITABLE_STATUSES

    @property
    def total_received_qty(self):
        return self.lines.aggregate(total=Sum('received_qty'))['total'] or 0

    def computed_invoice_amount(self):
        return sum(
            (line.received_qty * line.unit_price for line in self.lines.all()),
            Decimal('0')
        ).quantize(TWO_PLACES)


class ReceivedLine(models.Model):
    """
    One received batch of a PO product within an invoice receiving.
    """

    STATUS_CHOICES = [
        ('received', 'Received'),
        ('backlog', 'Backlog'),
        ('damaged', 'Damaged'),
        ('rejected', 'Rejected'),
    ]

    QC_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('passed', 'Passed'),
        ('failed', 'Failed'),
        ('partial_pass', 'Partial Pass'),
        ('not_required', 'Not Required'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    receiving = models.ForeignKey(
        InvoiceReceiving,
        on_delete=models.CASCADE,
        related_name='lines',
        help_text="Invoice receiving"
    )
    po_line = models.ForeignKey(
        PurchaseOrderLine,
        on_delete=models.PROTECT,
        related_name='received_lines',
        help_text="PO line being received"
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='received_lines',
    )
    position = models.PositiveIntegerField(default=0)
    ordered_qty = models.PositiveIntegerField(
        help_text="Ordered quantity at the time of receipt"
    )
    received_qty = models.PositiveIntegerField(
        default=0,
        help_text="Quantity received in this batch"
    )
    foc = models.PositiveIntegerField(default=0)
    unit_price = models.DecimalField(
        max_digits=15,
        decimal_places=2,
        default=Decimal('0'),
        validators=[MinValueValidator(0)],
    )
    batch_no = models.CharField(
        max_length=50,
        blank=True,
        default='',
        help_text="Batch / lot number"
    )
    mfg_date = models.DateField(null=True, blank=True)
    exp_date = models.DateField(null=True, blank=True)
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='received'
    )
    qc_status = models.CharField(
        max_length=20,
        choices=QC_STATUS_CHOICES,
        default='pending'
    )
    remarks = models.TextField(blank=True, default='')

    class Meta:
        db_table = 'invoice_receiving_lines'
        verbose_name = 'Received Line'
        verbose_name_plural = 'Received Lines'
        ordering = ['receiving', 'position']

    def __str__(self):
        return f"{self.product.product_code} batch {self.batch_no or '-'}: {self.received_qty}"

    def clean(self):
        if self.mfg_date and self.exp_date and self.exp_date <= self.mfg_date:
            raise ValidationError({'exp_date': "Expiry date must be after manufacturing date."})
