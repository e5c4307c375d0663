"""
Quality Control Models
======================
This module contains:
1. QualityControlRecord - Inspection of one invoice receiving
2. QCProduct - One received batch under inspection
3. QCItemDetail - Outcome for one physical unit
4. Status reductions (item -> product -> record)
"""

from collections import Counter

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

from core.models import BaseModel, next_document_number
from inventory.models import Product


QC_REASON_CHOICES = [
    ('received_correctly', 'Received Correctly'),
    ('damaged_packaging', 'Damaged Packaging'),
    ('damaged_product', 'Damaged Product'),
    ('expired', 'Expired'),
    ('near_expiry', 'Near Expiry'),
    ('wrong_product', 'Wrong Product'),
    ('quantity_mismatch', 'Quantity Mismatch'),
    ('quality_issue', 'Quality Issue'),
    ('labeling_issue', 'Labeling Issue'),
    ('other', 'Other'),
]
QC_REASONS = frozenset(code for code, _label in QC_REASON_CHOICES)

RESULT_CHOICES = [
    ('pending', 'Pending'),
    ('in_progress', 'In Progress'),
    ('passed', 'Passed'),
    ('failed', 'Failed'),
    ('partial_pass', 'Partial Pass'),
]


# ============================================================================
# REDUCTIONS
# ============================================================================

def reduce_item_statuses(statuses):
    """
    Combine unit outcomes into a product status.

    pending      - nothing inspected
    passed       - everything inspected and passed
    failed       - everything inspected and failed
    partial_pass - everything inspected, mixed outcomes
    in_progress  - some units still pending
    """
    statuses = list(statuses)
    inspected = [s for s in statuses if s != 'pending']
    if not inspected:
        return 'pending'
    if len(inspected) < len(statuses):
        return 'in_progress'
    if all(s == 'passed' for s in inspected):
        return 'passed'
    if all(s == 'failed' for s in inspected):
        return 'failed'
    return 'partial_pass'


def reduce_product_statuses(statuses):
    """Combine product statuses into the record's overall result."""
    statuses = list(statuses)
    if not statuses or all(s == 'pending' for s in statuses):
        return 'pending'
    if any(s in ('pending', 'in_progress') for s in statuses):
        return 'in_progress'
    if all(s == 'passed' for s in statuses):
        return 'passed'
    if all(s == 'failed' for s in statuses):
        return 'failed'
    return 'partial_pass'


def summarize_items(items):
    """
    Count inspected units per reason code.

    Units that were not failed and carry no reasons count as
    ``received_correctly``.
    """
    summary = Counter()
    for item in items:
        if item.status == 'pending':
            continue
        reasons = [r for r in (item.reasons or []) if r != 'received_correctly']
        if not reasons and item.status != 'failed':
            summary['received_correctly'] += 1
        for reason in reasons:
            summary[reason] += 1
    return dict(summary)


# ============================================================================
# QUALITY CONTROL RECORD
# ============================================================================

class QualityControlRecord(BaseModel):
    """
    Quality Control - item-level inspection of one invoice receiving.

    Lifecycle: pending -> in_progress -> pending_approval -> completed | rejected
    """

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('in_progress', 'In Progress'),
        ('pending_approval', 'Pending Approval'),
        ('completed', 'Completed'),
        ('rejected', 'Rejected'),
    ]

    QC_TYPES = [
        ('standard', 'Standard'),
        ('urgent', 'Urgent'),
        ('special', 'Special'),
    ]

    PRIORITY_CHOICES = [
        ('low', 'Low'),
        ('medium', 'Medium'),
        ('high', 'High'),
        ('urgent', 'Urgent'),
    ]

    APPROVAL_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('approved', 'Approved'),
        ('rejected', 'Rejected'),
    ]

    qc_number = models.CharField(
        max_length=50,
        unique=True,
        editable=False,
        help_text="Auto-generated QC number (e.g., 'QC-202401-0001')"
    )
    invoice_receiving = models.OneToOneField(
        'procurement.InvoiceReceiving',
        on_delete=models.PROTECT,
        related_name='quality_control',
        help_text="Receiving under inspection"
    )
    purchase_order = models.ForeignKey(
        'procurement.PurchaseOrder',
        on_delete=models.PROTECT,
        related_name='quality_controls',
        help_text="Purchase order"
    )
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='pending'
    )
    qc_type = models.CharField(
        max_length=20,
        choices=QC_TYPES,
        default='standard'
    )
    priority = models.CharField(
        max_length=20,
        choices=PRIORITY_CHOICES,
        default='medium'
    )
    assigned_to = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='assigned_quality_controls',
    )
    overall_result = models.CharField(
        max_length=20,
        choices=RESULT_CHOICES,
        default='pending',
        help_text="Reduction over product statuses"
    )
    approval_status = models.CharField(
        max_length=20,
        choices=APPROVAL_STATUS_CHOICES,
        default='pending'
    )

    # Inspection
    qc_date = models.DateTimeField(null=True, blank=True)
    qc_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='inspected_quality_controls',
    )
    qc_remarks = models.TextField(blank=True, default='')
    environment = models.JSONField(
        default=dict,
        blank=True,
        help_text="Temperature, humidity and light condition during inspection"
    )
    submitted_at = models.DateTimeField(null=True, blank=True)

    # Approval
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='approved_quality_controls',
    )
    approval_date = models.DateTimeField(null=True, blank=True)
    approval_remarks = models.TextField(blank=True, default='')

    class Meta:
        db_table = 'quality_control_records'
        verbose_name = 'Quality Control Record'
        verbose_name_plural = 'Quality Control Records'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status']),
            models.Index(fields=['purchase_order', 'status']),
        ]

    def __str__(self):
        return f"{self.qc_number} ({self.status})"

    def save(self, *args, **kwargs):
        if not self.qc_number:
            self.qc_number = next_document_number(
                QualityControlRecord, 'qc_number', f"QC-{timezone.now():%Y%m}-"
            )
        super().save(*args, **kwargs)

    @property
    def is_open(self):
        return self.status in ('pending', 'in_progress')

    def pending_item_count(self):
        return QCItemDetail.objects.filter(product__qc=self, status='pending').count()


class QCProduct(models.Model):
    """
    One received batch under inspection, addressed by ``position``.
    """
    id = models.BigAutoField(primary_key=True)
    qc = models.ForeignKey(
        QualityControlRecord,
        on_delete=models.CASCADE,
        related_name='products',
    )
    position = models.PositiveIntegerField()
    received_line = models.ForeignKey(
        'procurement.ReceivedLine',
        on_delete=models.PROTECT,
        related_name='qc_products',
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='qc_products',
    )
    batch_no = models.CharField(max_length=50, blank=True, default='')
    mfg_date = models.DateField(null=True, blank=True)
    exp_date = models.DateField(null=True, blank=True)
    received_qty = models.PositiveIntegerField(default=0)
    passed_qty = models.PositiveIntegerField(default=0)
    failed_qty = models.PositiveIntegerField(default=0)
    overall_status = models.CharField(
        max_length=20,
        choices=RESULT_CHOICES,
        default='pending'
    )
    qc_summary = models.JSONField(
        default=dict,
        blank=True,
        help_text="Units per reason code"
    )
    remarks = models.TextField(blank=True, default='')

    class Meta:
        db_table = 'quality_control_products'
        verbose_name = 'QC Product'
        verbose_name_plural = 'QC Products'
        ordering = ['qc', 'position']
        constraints = [
            models.UniqueConstraint(fields=['qc', 'position'], name='qc_product_position_unique'),
        ]

    def __str__(self):
        return f"{self.product.product_code} batch {self.batch_no or '-'} ({self.overall_status})"

    def refresh_results(self):
        """Recompute summary, status and passed/failed counts from the items."""
        items = list(self.items.all())
        self.qc_summary = summarize_items(items)
        self.overall_status = reduce_item_statuses(item.status for item in items)
        self.passed_qty = sum(1 for item in items if item.status == 'passed')
        self.failed_qty = sum(1 for item in items if item.status == 'failed')
        self.save(update_fields=['qc_summary', 'overall_status', 'passed_qty', 'failed_qty'])
        return self.overall_status


class QCItemDetail(models.Model):
    """
    Inspection outcome for one physical unit, addressed by ``item_number``.
    """

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('passed', 'Passed'),
        ('failed', 'Failed'),
    ]

    id = models.BigAutoField(primary_key=True)
    product = models.ForeignKey(
        QCProduct,
        on_delete=models.CASCADE,
        related_name='items',
    )
    item_number = models.PositiveIntegerField(
        help_text="Unit number within the batch (starting at 1)"
    )
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='pending'
    )
    reasons = models.JSONField(
        default=list,
        blank=True,
        help_text="Reason codes"
    )
    remarks = models.TextField(blank=True, default='')
    inspected_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='qc_item_inspections',
    )
    inspected_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'quality_control_items'
        verbose_name = 'QC Item Detail'
        verbose_name_plural = 'QC Item Details'
        ordering = ['product', 'item_number']
        constraints = [
            models.UniqueConstraint(fields=['product', 'item_number'], name='qc_item_number_unique'),
        ]

    def __str__(self):
        return f"Unit {self.item_number}: {self.status}"

    def clean(self):
        unknown = set(self.reasons or []) - QC_REASONS
        if unknown:
            raise ValidationError({'reasons': f"Unknown reason codes: {', '.join(sorted(unknown))}"})
